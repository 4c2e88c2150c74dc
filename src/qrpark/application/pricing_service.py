# File: src/qrpark/application/pricing_service.py
"""
Pricing application service

1. PricingConfigResolver - merges owner defaults, lot overrides and the
   lot's time periods into the PricingConfig the fee engine consumes
2. PricingService - operator use cases that change pricing; every change
   invalidates the cached config of the affected lots
"""

from typing import Callable, List, Optional
import logging

from ..domain.models import (
    ConfigNotFoundError, NotFoundError, PricingConfig, TimePeriod,
)
from ..domain.aggregates import MaxPricingPeriod, Owner, ParkingLot, ParkingSpace
from ..infrastructure.repositories import RedisPricingCache, UnitOfWork
from .auth import AuthContext
from .dtos import (
    LotPricingUpdateDTO, OwnerPricingUpdateDTO, ParkingSpaceDTO, PricingConfigDTO,
    PricingSettingsDTO, TimePeriodDTO,
)


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


class PricingConfigResolver:
    """
    Resolves the PricingConfig of a lot

    - unit minutes / unit amount: lot override, else owner default, else
      the configured system default
    - daily cap: lot only (NULL amount -> 0, NULL flag -> disabled)
    - time periods: the lot's rows in insertion order
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        default_unit_minutes: int = 60,
        default_unit_amount: int = 300,
        cache: Optional[RedisPricingCache] = None,
    ):
        self.uow_factory = uow_factory
        self.default_unit_minutes = default_unit_minutes
        self.default_unit_amount = default_unit_amount
        self.cache = cache
        self.logger = logging.getLogger(self.__class__.__name__)

    def resolve(self, lot_id: str, uow: Optional[UnitOfWork] = None) -> PricingConfig:
        """
        Resolve inside the caller's transaction when one is given

        Opening a second transaction from inside a checkout would wait on
        the caller's own write lock.
        """
        if self.cache:
            cached = self.cache.get(lot_id)
            if cached is not None:
                return cached

        if uow is None:
            with self.uow_factory() as fresh_uow:
                config = self.load(fresh_uow, lot_id)
        else:
            config = self.load(uow, lot_id)

        if self.cache:
            self.cache.set(lot_id, config)
        return config

    def invalidate(self, lot_id: str) -> None:
        if self.cache:
            self.cache.invalidate(lot_id)

    def load(self, uow: UnitOfWork, lot_id: str) -> PricingConfig:
        """Resolve from storage, bypassing the cache"""
        lot = uow.parking_lots.get(lot_id)
        if lot is None:
            raise ConfigNotFoundError(f"Parking lot {lot_id} not found")

        owner = uow.owners.get(lot.owner_id)
        if owner is None:
            self.logger.warning(f"Owner {lot.owner_id} of lot {lot_id} missing, using system defaults")

        periods = [row.period for row in uow.pricing_periods.find_by_lot(lot_id)]
        for period in periods:
            if period.is_degenerate:
                self.logger.warning(f"Lot {lot_id} has a period covering no time: {period}")

        return PricingConfig(
            unit_minutes=_first_set(
                lot.pricing_unit_minutes,
                owner.pricing_unit_minutes if owner else None,
                self.default_unit_minutes,
            ),
            unit_amount=_first_set(
                lot.pricing_amount,
                owner.pricing_amount if owner else None,
                self.default_unit_amount,
            ),
            daily_cap_enabled=bool(lot.max_daily_amount_enabled),
            daily_cap_amount=lot.max_daily_amount or 0,
            time_periods=tuple(periods),
        )


class PricingService:
    """Operator use cases for owners, lots and their pricing"""

    def __init__(self, uow_factory: Callable[[], UnitOfWork], resolver: PricingConfigResolver):
        self.uow_factory = uow_factory
        self.resolver = resolver
        self.logger = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # Owners and lots
    # ------------------------------------------------------------------

    def create_owner(self, auth: AuthContext, name: str, pricing: Optional[OwnerPricingUpdateDTO] = None) -> str:
        auth.require_operator()
        pricing = pricing or OwnerPricingUpdateDTO(
            pricing_unit_minutes=self.resolver.default_unit_minutes,
            pricing_amount=self.resolver.default_unit_amount,
        )
        owner = Owner(
            name=name,
            pricing_unit_minutes=pricing.pricing_unit_minutes,
            pricing_amount=pricing.pricing_amount,
        )
        with self.uow_factory() as uow:
            uow.owners.add(owner)
        self.logger.info(f"Created owner {owner.id} ({name})")
        return owner.id

    def create_lot(
        self,
        auth: AuthContext,
        owner_id: str,
        name: str,
        address: str = "",
        total_spaces: int = 10,
    ) -> str:
        """Create a lot together with its numbered spaces"""
        auth.require_operator()
        with self.uow_factory() as uow:
            if uow.owners.get(owner_id) is None:
                raise NotFoundError(f"Owner {owner_id} not found")
            lot = ParkingLot(owner_id=owner_id, name=name, address=address, total_spaces=total_spaces)
            uow.parking_lots.add(lot)
            self._create_missing_spaces(uow, lot)
        self.logger.info(f"Created lot {lot.id} ({name}) with {total_spaces} spaces")
        return lot.id

    def initialize_spaces(self, auth: AuthContext, lot_id: str) -> List[ParkingSpaceDTO]:
        """Create the spaces 1..total_spaces that do not exist yet; safe to repeat"""
        auth.require_operator()
        with self.uow_factory() as uow:
            lot = uow.parking_lots.get(lot_id)
            if lot is None:
                raise ConfigNotFoundError(f"Parking lot {lot_id} not found")
            created = self._create_missing_spaces(uow, lot)
            spaces = uow.parking_spaces.find_by_lot(lot_id)

        if created:
            self.logger.info(f"Initialized {created} spaces for lot {lot_id}")
        return [ParkingSpaceDTO.from_space(space) for space in spaces]

    def _create_missing_spaces(self, uow: UnitOfWork, lot: ParkingLot) -> int:
        existing = {space.space_number for space in uow.parking_spaces.find_by_lot(lot.id)}
        created = 0
        for number in range(1, lot.total_spaces + 1):
            if number not in existing:
                uow.parking_spaces.add(ParkingSpace(lot_id=lot.id, space_number=number))
                created += 1
        return created

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def get_pricing_settings(self, auth: AuthContext, lot_id: str) -> PricingSettingsDTO:
        auth.require_operator()
        with self.uow_factory() as uow:
            lot = uow.parking_lots.get(lot_id)
            if lot is None:
                raise ConfigNotFoundError(f"Parking lot {lot_id} not found")
            owner = uow.owners.get(lot.owner_id)
            rows = uow.pricing_periods.find_by_lot(lot_id)
            resolved = self.resolver.resolve(lot_id, uow)

        return PricingSettingsDTO(
            lot_id=lot_id,
            owner_pricing_unit_minutes=owner.pricing_unit_minutes if owner else None,
            owner_pricing_amount=owner.pricing_amount if owner else None,
            lot_pricing_unit_minutes=lot.pricing_unit_minutes,
            lot_pricing_amount=lot.pricing_amount,
            max_daily_amount=lot.max_daily_amount,
            max_daily_amount_enabled=lot.max_daily_amount_enabled,
            time_periods=[TimePeriodDTO(id=row.id, **row.period.to_dict()) for row in rows],
            resolved=PricingConfigDTO.from_config(resolved),
        )

    def update_owner_defaults(self, auth: AuthContext, owner_id: str, update: OwnerPricingUpdateDTO) -> None:
        auth.require_operator()
        with self.uow_factory() as uow:
            owner = uow.owners.get(owner_id)
            if owner is None:
                raise NotFoundError(f"Owner {owner_id} not found")
            owner.pricing_unit_minutes = update.pricing_unit_minutes
            owner.pricing_amount = update.pricing_amount
            uow.owners.update(owner)
            lot_ids = [lot.id for lot in uow.parking_lots.find_by_owner(owner_id)]

        for lot_id in lot_ids:
            self.resolver.invalidate(lot_id)
        self.logger.info(
            f"Owner {owner_id} defaults set to {update.pricing_amount} yen per "
            f"{update.pricing_unit_minutes} min"
        )

    def update_lot_pricing(self, auth: AuthContext, lot_id: str, update: LotPricingUpdateDTO) -> PricingConfigDTO:
        auth.require_operator()
        with self.uow_factory() as uow:
            lot = uow.parking_lots.get(lot_id)
            if lot is None:
                raise ConfigNotFoundError(f"Parking lot {lot_id} not found")
            lot.update_pricing(update.changes())
            uow.parking_lots.update(lot)
            config = self.resolver.load(uow, lot_id)

        self.resolver.invalidate(lot_id)
        self.logger.info(f"Updated pricing of lot {lot_id}: {update.changes()}")
        return PricingConfigDTO.from_config(config)

    def add_time_period(self, auth: AuthContext, lot_id: str, period: TimePeriodDTO) -> TimePeriodDTO:
        auth.require_operator()
        time_period = TimePeriod(period.start_hour, period.end_hour, period.max_amount)
        if time_period.is_degenerate:
            self.logger.warning(f"Period {time_period} for lot {lot_id} covers no time")

        with self.uow_factory() as uow:
            if uow.parking_lots.get(lot_id) is None:
                raise ConfigNotFoundError(f"Parking lot {lot_id} not found")
            row = MaxPricingPeriod(lot_id=lot_id, period=time_period)
            uow.pricing_periods.add(row)

        self.resolver.invalidate(lot_id)
        self.logger.info(f"Added period {time_period} to lot {lot_id}")
        return TimePeriodDTO(id=row.id, **time_period.to_dict())

    def remove_time_period(self, auth: AuthContext, lot_id: str, period_id: str) -> None:
        auth.require_operator()
        with self.uow_factory() as uow:
            row = uow.pricing_periods.get(period_id)
            if row is None or row.lot_id != lot_id:
                raise NotFoundError(f"Pricing period {period_id} not found for lot {lot_id}")
            uow.pricing_periods.delete(period_id)

        self.resolver.invalidate(lot_id)
        self.logger.info(f"Removed period {row.period} from lot {lot_id}")

    def list_time_periods(self, lot_id: str) -> List[TimePeriodDTO]:
        with self.uow_factory() as uow:
            rows = uow.pricing_periods.find_by_lot(lot_id)
        return [TimePeriodDTO(id=row.id, **row.period.to_dict()) for row in rows]
