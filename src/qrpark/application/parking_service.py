# File: src/qrpark/application/parking_service.py
"""
Parking Application Service

This module implements the check-in / check-out use cases around the fee
engine.

Use cases:
1. check_in - a driver scans a space's QR code and a session starts
2. get_checkout_quote - read-only preview of the fee if the driver left now
3. complete_checkout - settle the session, record the payment, free the space
4. compute_fee - price an arbitrary stay with a lot's current pricing
5. Operator queries - dashboard and payment history

Every state change runs inside one Unit of Work and is guarded by a
compare-and-set in the repository, so concurrent requests on the same
space or session cannot both succeed. Domain events are published only
after the transaction committed.
"""

from typing import Callable, List, Optional
import logging
import time

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError

from ..domain.models import (
    DomainEvent, FeeChangedError, PaymentMethod, SessionNotFoundError, SessionAlreadyCompletedError,
    SpaceNotFoundError, SpaceOccupiedError, UnsupportedPaymentMethodError,
    ValidationError, VehicleCheckedOutEvent,
)
from ..domain.aggregates import ParkingSession, PaymentRecord
from ..domain.strategies import ParkingFeeCalculator
from ..infrastructure.messaging import EventBus
from ..infrastructure.repositories import UnitOfWork
from .auth import AuthContext
from .dtos import (
    CheckInResultDTO, CheckoutQuoteDTO, CheckoutResultDTO, DashboardDTO,
    DashboardSpaceDTO, DashboardSummaryDTO, FeeQuoteDTO, ParkingSessionDTO,
    ParkingSpaceDTO, PaymentHistoryRequestDTO, PaymentRecordDTO,
    PricingConfigDTO, SpaceLookupDTO,
)
from .pricing_service import PricingConfigResolver


def system_clock() -> int:
    """Current time as UTC epoch milliseconds"""
    return time.time_ns() // 1_000_000


class ParkingService:
    """
    Main application service for QR parking

    Args:
        uow_factory: returns a fresh Unit of Work per operation
        pricing_resolver: resolves a lot's PricingConfig at call time
        calculator: the fee engine
        event_bus: receives domain events after commit (optional)
        clock: returns "now" in epoch milliseconds
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        pricing_resolver: PricingConfigResolver,
        calculator: ParkingFeeCalculator,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.uow_factory = uow_factory
        self.pricing_resolver = pricing_resolver
        self.calculator = calculator
        self.event_bus = event_bus
        self.clock = clock or system_clock
        self.logger = logging.getLogger(self.__class__.__name__)

        self.logger.info(f"ParkingService initialized ({calculator})")

    # ========================================================================
    # SESSION STATE MACHINE
    # ========================================================================

    def check_in(self, qr_code: str) -> CheckInResultDTO:
        """
        Start a session on the space identified by qr_code

        Use Case: Vehicle Entry
        1. Look up the space by its QR code
        2. Move it from available to occupied (compare-and-set)
        3. Insert the active session with a fresh token
        """
        now = self.clock()
        self.logger.info(f"Processing check-in for QR code {qr_code}")

        try:
            with self.uow_factory() as uow:
                space = uow.parking_spaces.find_by_qr_code(qr_code)
                if space is None:
                    raise SpaceNotFoundError(f"No parking space with QR code {qr_code}")

                session = space.occupy(now)
                if not uow.parking_spaces.occupy_if_available(space.id):
                    raise SpaceOccupiedError(f"Space {space.space_number} is already occupied")
                uow.parking_sessions.add(session)
        except IntegrityError as e:
            # The partial unique index caught a second active session
            raise SpaceOccupiedError(f"Space with QR code {qr_code} is already occupied") from e

        self._publish(space.clear_events())
        self.logger.info(f"Checked in at space {space.space_number}, session {session.id}")

        return CheckInResultDTO(
            session_token=session.session_token,
            space_number=session.space_number,
            entry_time_ms=session.entry_time_ms,
        )

    def get_checkout_quote(self, session_token: str) -> CheckoutQuoteDTO:
        """Fee if the driver left now; changes nothing"""
        now = self.clock()

        with self.uow_factory() as uow:
            session = self._get_active_session(uow, session_token)
            config = self.pricing_resolver.resolve(session.lot_id, uow)

        exit_time_ms = self._exit_time(session, now)
        breakdown = self.calculator.calculate(config, session.entry_time_ms, exit_time_ms)

        return CheckoutQuoteDTO(
            session=ParkingSessionDTO.from_session(session),
            exit_time_ms=exit_time_ms,
            duration_minutes=breakdown.duration_minutes,
            amount=breakdown.amount,
            pricing=PricingConfigDTO.from_config(config),
        )

    def complete_checkout(
        self,
        session_token: str,
        payment_method,
        transaction_id: Optional[str] = None,
        provider_payment_id: Optional[str] = None,
        is_demo: bool = True,
        exit_time_ms: Optional[int] = None,
        expected_amount: Optional[int] = None,
    ) -> CheckoutResultDTO:
        """
        Settle a session

        exit_time_ms pins the exit to a quoted instant (default: now) and
        expected_amount is the amount already charged; a different fee at
        settlement raises FeeChangedError and nothing is written.

        Use Case: Vehicle Exit
        1. Compute the fee at the exit time with the current pricing
        2. Complete the session (compare-and-set active -> completed)
        3. Insert the payment record (one per session)
        4. Release the space (compare-and-set occupied -> available)
        """
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise UnsupportedPaymentMethodError(f"Unknown payment method: {payment_method}")

        now = self.clock()
        self.logger.info(f"Processing checkout via {method.value}")

        try:
            with self.uow_factory() as uow:
                session = self._get_active_session(uow, session_token)
                if exit_time_ms is None:
                    exit_time_ms = now
                elif exit_time_ms > now:
                    raise ValidationError(f"Exit time {exit_time_ms} is in the future")
                exit_time_ms = self._exit_time(session, exit_time_ms)
                config = self.pricing_resolver.resolve(session.lot_id, uow)
                breakdown = self.calculator.calculate(config, session.entry_time_ms, exit_time_ms)
                if expected_amount is not None and breakdown.amount != expected_amount:
                    raise FeeChangedError(
                        f"Fee for space {session.space_number} is {breakdown.amount} yen, "
                        f"{expected_amount} yen was charged"
                    )

                if not uow.parking_sessions.complete_if_active(session.id, exit_time_ms):
                    raise SessionAlreadyCompletedError(
                        f"Session for space {session.space_number} is already settled"
                    )
                session.complete(exit_time_ms)

                record = PaymentRecord(
                    session_id=session.id,
                    lot_id=session.lot_id,
                    space_number=session.space_number,
                    entry_time_ms=session.entry_time_ms,
                    exit_time_ms=exit_time_ms,
                    duration_minutes=breakdown.duration_minutes,
                    amount=breakdown.amount,
                    payment_method=method,
                    transaction_id=transaction_id,
                    provider_payment_id=provider_payment_id,
                    is_demo=is_demo,
                )
                uow.payment_records.add(record)

                if not uow.parking_spaces.release_if_occupied(session.space_id):
                    self.logger.warning(
                        f"Space {session.space_number} of lot {session.lot_id} was not occupied at checkout"
                    )
        except IntegrityError as e:
            raise SessionAlreadyCompletedError("Session is already settled") from e

        self._publish([VehicleCheckedOutEvent(
            lot_id=session.lot_id,
            space_id=session.space_id,
            session_id=session.id,
            payment_id=record.id,
            amount=record.amount,
            duration_minutes=record.duration_minutes,
            payment_method=method,
        )])
        self.logger.info(
            f"Checked out space {session.space_number}: {record.amount} yen, "
            f"{record.duration_minutes} min, transaction {record.transaction_id}"
        )

        return CheckoutResultDTO(
            payment_id=record.id,
            transaction_id=record.transaction_id,
            amount=record.amount,
            duration_minutes=record.duration_minutes,
            exit_time_ms=exit_time_ms,
        )

    def compute_fee(self, lot_id: str, entry_time_ms: int, exit_time_ms: int) -> FeeQuoteDTO:
        """Price a stay with the lot's current pricing"""
        config = self.pricing_resolver.resolve(lot_id)
        return FeeQuoteDTO.from_breakdown(
            self.calculator.calculate(config, entry_time_ms, exit_time_ms)
        )

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_space_by_qr_code(self, qr_code: str) -> SpaceLookupDTO:
        with self.uow_factory() as uow:
            space = uow.parking_spaces.find_by_qr_code(qr_code)
            if space is None:
                raise SpaceNotFoundError(f"No parking space with QR code {qr_code}")
            session = uow.parking_sessions.find_active_by_space(space.id)
            config = self.pricing_resolver.resolve(space.lot_id, uow)

        return SpaceLookupDTO(
            space=ParkingSpaceDTO.from_space(space),
            active_session=ParkingSessionDTO.from_session(session) if session else None,
            pricing=PricingConfigDTO.from_config(config),
        )

    def list_spaces(self, lot_id: Optional[str] = None) -> List[ParkingSpaceDTO]:
        with self.uow_factory() as uow:
            spaces = uow.parking_spaces.find_by_lot(lot_id)
        return [ParkingSpaceDTO.from_space(space) for space in spaces]

    def get_dashboard(self, auth: AuthContext, lot_id: Optional[str] = None) -> DashboardDTO:
        """Every space with its active session, plus occupancy counts"""
        auth.require_operator()

        with self.uow_factory() as uow:
            spaces = uow.parking_spaces.find_by_lot(lot_id)
            sessions = {s.space_id: s for s in uow.parking_sessions.find_active(lot_id)}

        entries = [
            DashboardSpaceDTO(
                space=ParkingSpaceDTO.from_space(space),
                active_session=(
                    ParkingSessionDTO.from_session(sessions[space.id])
                    if space.id in sessions else None
                ),
            )
            for space in spaces
        ]
        occupied = sum(1 for space in spaces if space.is_occupied)

        return DashboardDTO(
            spaces=entries,
            summary=DashboardSummaryDTO(
                total=len(spaces),
                occupied=occupied,
                available=len(spaces) - occupied,
            ),
        )

    def get_payment_history(self, auth: AuthContext, limit: int = 100) -> List[PaymentRecordDTO]:
        """Newest payment records first"""
        auth.require_operator()
        try:
            request = PaymentHistoryRequestDTO(limit=limit)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid history limit {limit}: limit must be between 1 and 500") from e

        with self.uow_factory() as uow:
            records = uow.payment_records.find_recent(request.limit)
        return [PaymentRecordDTO.from_record(record) for record in records]

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _get_active_session(self, uow: UnitOfWork, session_token: str) -> ParkingSession:
        session = uow.parking_sessions.find_by_token(session_token)
        if session is None:
            raise SessionNotFoundError("Parking session not found")
        session.ensure_active()
        return session

    @staticmethod
    def _exit_time(session: ParkingSession, now: int) -> int:
        # A stay always lasts at least one millisecond, so it bills one unit
        return max(now, session.entry_time_ms + 1)

    def _publish(self, events: List[DomainEvent]) -> None:
        if self.event_bus is not None:
            self.event_bus.publish_all(events)
