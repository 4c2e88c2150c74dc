# File: src/qrpark/domain/aggregates.py
"""
Entities and Aggregate Roots for the QR Parking System

Aggregates:
1. ParkingSpace - owns the available/occupied state of one space
2. ParkingSession - one stay on one space, active until settled
3. ParkingLot - pricing overrides and the lot's spaces
4. Owner - default pricing shared by the owner's lots
5. PaymentRecord - append-only settlement of one session

The transitions below enforce the state machine in memory; the repositories
repeat each guard as a compare-and-set so concurrent writers cannot both win.
"""

from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
import secrets
import string
import uuid
import logging

from .models import (
    DomainEvent, LotStatus, PaymentMethod, PaymentStatus, SessionStatus, SpaceStatus,
    SpaceOccupiedError, SessionAlreadyCompletedError,
    TimePeriod, VehicleCheckedInEvent,
)


SESSION_TOKEN_LENGTH = 32
_TOKEN_ALPHABET = string.ascii_letters + string.digits + "_-"


def generate_token(length: int) -> str:
    """URL-safe random identifier"""
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def generate_qr_code(space_number: int) -> str:
    return f"PARK-{space_number:02d}-{generate_token(8)}"


def generate_transaction_id() -> str:
    return f"TXN-{generate_token(16)}"


# ============================================================================
# BASE CLASSES
# ============================================================================

class Entity:
    """
    Base class for all domain entities
    Provides common functionality for entities with identity
    """

    def __init__(self, id: Optional[str] = None):
        self._id = id or str(uuid.uuid4())

    @property
    def id(self) -> str:
        return self._id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return False
        return self.id == other.id and type(self) == type(other)

    def __hash__(self) -> int:
        return hash((self.id, type(self).__name__))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id})"


class AggregateRoot(Entity):
    """
    Base class for all aggregate roots
    Collects domain events until the application layer publishes them
    """

    def __init__(self, id: Optional[str] = None):
        super().__init__(id)
        self._changes: List[DomainEvent] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    def _add_domain_event(self, event: DomainEvent) -> None:
        self._changes.append(event)
        self._logger.debug(f"Added domain event: {event.__class__.__name__}")

    def clear_events(self) -> List[DomainEvent]:
        """Clear and return all domain events"""
        events = self._changes.copy()
        self._changes.clear()
        return events


# ============================================================================
# PRICING OWNERS
# ============================================================================

class Owner(Entity):
    """Entity: the operator whose default pricing applies to every lot it owns"""

    def __init__(
        self,
        name: str,
        pricing_unit_minutes: int = 60,
        pricing_amount: int = 300,
        id: Optional[str] = None,
    ):
        super().__init__(id)
        self.name = name
        self.pricing_unit_minutes = pricing_unit_minutes
        self.pricing_amount = pricing_amount
        self._validate()

    def _validate(self) -> None:
        if self.pricing_unit_minutes <= 0:
            raise ValueError("Pricing unit must be a positive number of minutes")
        if self.pricing_amount < 0:
            raise ValueError("Pricing amount cannot be negative")


class ParkingLot(AggregateRoot):
    """
    Aggregate Root: a lot and its lot-scoped pricing

    pricing_unit_minutes and pricing_amount override the owner's defaults
    when set. The daily maximum exists only at lot level.
    """

    def __init__(
        self,
        owner_id: str,
        name: str,
        address: str = "",
        total_spaces: int = 10,
        status: LotStatus = LotStatus.ACTIVE,
        pricing_unit_minutes: Optional[int] = None,
        pricing_amount: Optional[int] = None,
        max_daily_amount: Optional[int] = None,
        max_daily_amount_enabled: bool = False,
        id: Optional[str] = None,
    ):
        super().__init__(id)
        self.owner_id = owner_id
        self.name = name
        self.address = address
        self.total_spaces = total_spaces
        self.status = status
        self.pricing_unit_minutes = pricing_unit_minutes
        self.pricing_amount = pricing_amount
        self.max_daily_amount = max_daily_amount
        self.max_daily_amount_enabled = max_daily_amount_enabled
        self._validate_invariants()

    def _validate_invariants(self) -> None:
        if self.total_spaces < 0:
            raise ValueError("Total spaces cannot be negative")
        if self.pricing_unit_minutes is not None and self.pricing_unit_minutes <= 0:
            raise ValueError("Pricing unit must be a positive number of minutes")
        if self.pricing_amount is not None and self.pricing_amount < 0:
            raise ValueError("Pricing amount cannot be negative")
        if self.max_daily_amount is not None and self.max_daily_amount < 0:
            raise ValueError("Daily maximum cannot be negative")

    def update_pricing(self, changes: Dict[str, Any]) -> None:
        """Apply a partial pricing update; None clears a lot override"""
        for field_name in ("pricing_unit_minutes", "pricing_amount", "max_daily_amount"):
            if field_name in changes:
                setattr(self, field_name, changes[field_name])
        if "max_daily_amount_enabled" in changes:
            self.max_daily_amount_enabled = bool(changes["max_daily_amount_enabled"])
        self._validate_invariants()


class MaxPricingPeriod(Entity):
    """Entity: a persisted TimePeriod belonging to one lot"""

    def __init__(self, lot_id: str, period: TimePeriod, id: Optional[str] = None):
        super().__init__(id)
        self.lot_id = lot_id
        self.period = period


# ============================================================================
# SESSION STATE MACHINE
# ============================================================================

class ParkingSpace(AggregateRoot):
    """
    Aggregate Root: one space, identified on site by its QR code

    available --occupy()--> occupied --release()--> available
    """

    def __init__(
        self,
        lot_id: str,
        space_number: int,
        qr_code: Optional[str] = None,
        is_occupied: bool = False,
        id: Optional[str] = None,
    ):
        super().__init__(id)
        if space_number <= 0:
            raise ValueError("Space number must be positive")
        self.lot_id = lot_id
        self.space_number = space_number
        self.qr_code = qr_code or generate_qr_code(space_number)
        self.is_occupied = is_occupied

    @property
    def status(self) -> str:
        return (SpaceStatus.OCCUPIED if self.is_occupied else SpaceStatus.AVAILABLE).value

    def occupy(self, entry_time_ms: int) -> 'ParkingSession':
        """Start a session on this space"""
        if self.is_occupied:
            raise SpaceOccupiedError(f"Space {self.space_number} is already occupied")
        self.is_occupied = True
        session = ParkingSession(
            space_id=self.id,
            lot_id=self.lot_id,
            space_number=self.space_number,
            entry_time_ms=entry_time_ms,
        )
        self._add_domain_event(VehicleCheckedInEvent(
            lot_id=self.lot_id,
            space_id=self.id,
            space_number=self.space_number,
            session_id=session.id,
            entry_time_ms=entry_time_ms,
        ))
        return session

    def __str__(self) -> str:
        return f"Space {self.space_number} ({self.qr_code}) - {self.status}"


class ParkingSession(AggregateRoot):
    """
    Aggregate Root: one stay on one space

    Sessions are never deleted; a completed session keeps its exit time.
    """

    def __init__(
        self,
        space_id: str,
        lot_id: str,
        space_number: int,
        entry_time_ms: int,
        session_token: Optional[str] = None,
        exit_time_ms: Optional[int] = None,
        status: SessionStatus = SessionStatus.ACTIVE,
        id: Optional[str] = None,
    ):
        super().__init__(id)
        self.space_id = space_id
        self.lot_id = lot_id
        self.space_number = space_number
        self.entry_time_ms = entry_time_ms
        self.session_token = session_token or generate_token(SESSION_TOKEN_LENGTH)
        self.exit_time_ms = exit_time_ms
        self.status = status

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def ensure_active(self) -> None:
        if not self.is_active:
            raise SessionAlreadyCompletedError(
                f"Session for space {self.space_number} is already settled"
            )

    def complete(self, exit_time_ms: int) -> None:
        self.ensure_active()
        self.exit_time_ms = exit_time_ms
        self.status = SessionStatus.COMPLETED


class PaymentRecord(Entity):
    """Entity: the settlement of exactly one session, never modified"""

    def __init__(
        self,
        session_id: str,
        lot_id: str,
        space_number: int,
        entry_time_ms: int,
        exit_time_ms: int,
        duration_minutes: int,
        amount: int,
        payment_method: PaymentMethod,
        payment_status: PaymentStatus = PaymentStatus.COMPLETED,
        transaction_id: Optional[str] = None,
        provider_payment_id: Optional[str] = None,
        is_demo: bool = True,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None,
    ):
        super().__init__(id)
        if amount is None or amount < 0:
            raise ValueError(f"Payment amount must be a non-negative integer, got {amount}")
        self.session_id = session_id
        self.lot_id = lot_id
        self.space_number = space_number
        self.entry_time_ms = entry_time_ms
        self.exit_time_ms = exit_time_ms
        self.duration_minutes = duration_minutes
        self.amount = amount
        self.payment_method = payment_method
        self.payment_status = payment_status
        self.transaction_id = transaction_id or generate_transaction_id()
        self.provider_payment_id = provider_payment_id
        self.is_demo = is_demo
        self.created_at = created_at or datetime.now(timezone.utc)
