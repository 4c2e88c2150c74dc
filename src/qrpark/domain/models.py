# File: src/qrpark/domain/models.py
"""
Domain Models for the QR Parking System

This module contains:
1. Value Objects: TimePeriod, PricingConfig, Stay, FeeBreakdown
2. Enums: statuses and payment methods
3. Domain Events: check-in and check-out notifications
4. Domain Errors: one taxonomy, every error carries a result code

All amounts are integer yen and all instants are UTC epoch milliseconds.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, Tuple
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
import uuid


MS_PER_MINUTE = 60_000
MS_PER_DAY = 24 * 60 * MS_PER_MINUTE


def ceil_div(numerator: int, denominator: int) -> int:
    """Integer ceiling division for non-negative numerators"""
    return -(-numerator // denominator)


def duration_minutes(entry_time_ms: int, exit_time_ms: int) -> int:
    """Billable minutes of an interval, any started minute counts"""
    return ceil_div(exit_time_ms - entry_time_ms, MS_PER_MINUTE)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_epoch_ms(moment: datetime) -> int:
    """Aware datetime to UTC epoch milliseconds"""
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(epoch_ms: int, tz=timezone.utc) -> datetime:
    return (_EPOCH + timedelta(milliseconds=epoch_ms)).astimezone(tz)


# ============================================================================
# DOMAIN ERRORS
# ============================================================================

class ParkingError(Exception):
    """Base class for every error the parking domain raises"""
    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ParkingError):
    code = "NOT_FOUND"


class ConfigNotFoundError(NotFoundError):
    """No parking lot (and therefore no pricing) for the given id"""


class SpaceNotFoundError(NotFoundError):
    pass


class SessionNotFoundError(NotFoundError):
    pass


class InvalidIntervalError(ParkingError, ValueError):
    """Exit time is not strictly after entry time"""
    code = "BAD_REQUEST"


class InvalidStateTransitionError(ParkingError):
    code = "BAD_REQUEST"


class SpaceOccupiedError(InvalidStateTransitionError):
    """Check-in attempted on a space that already has an active session"""
    code = "CONFLICT"


class SessionAlreadyCompletedError(InvalidStateTransitionError):
    """Checkout attempted on a session that is already settled"""


class UnsupportedPaymentMethodError(ParkingError):
    code = "BAD_REQUEST"


class PaymentFailedError(ParkingError):
    """The gateway did not confirm the charge"""
    code = "BAD_REQUEST"


class FeeChangedError(ParkingError):
    """The fee at settlement differs from the amount that was charged"""
    code = "CONFLICT"


class ValidationError(ParkingError):
    code = "BAD_REQUEST"


class AuthenticationRequiredError(ParkingError):
    code = "UNAUTHORIZED"


class PermissionDeniedError(ParkingError):
    code = "FORBIDDEN"


# ============================================================================
# ENUMS FOR DOMAIN TYPES
# ============================================================================

class SpaceStatus(str, Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class LotStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PaymentMethod(str, Enum):
    """Payment methods accepted at checkout"""
    CREDIT_CARD = "credit_card"
    PAYPAY = "paypay"
    DEMO = "demo"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class BillingDayMode(str, Enum):
    """
    How a stay is cut into billing days

    ENTRY: 24-hour days counted from the entry instant
    CALENDAR: days bounded by local midnight in the business timezone
    """
    ENTRY = "entry"
    CALENDAR = "calendar"


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class TimePeriod:
    """
    Value Object: a recurring wall-clock window with its own price ceiling

    start_hour > end_hour wraps past midnight (19 -> 5 covers 19:00-05:00).
    start_hour == end_hour covers no time at all.
    """
    start_hour: int
    end_hour: int
    max_amount: int

    def __post_init__(self):
        for name in ("start_hour", "end_hour"):
            hour = getattr(self, name)
            if not 0 <= hour <= 23:
                raise ValueError(f"{name} must be between 0 and 23, got {hour}")
        if self.max_amount < 0:
            raise ValueError(f"max_amount cannot be negative: {self.max_amount}")

    @property
    def wraps_midnight(self) -> bool:
        return self.start_hour > self.end_hour

    @property
    def is_degenerate(self) -> bool:
        return self.start_hour == self.end_hour

    def occurrence(self, local_date: date, tz) -> Tuple[int, int]:
        """
        The [start, end) instants of the occurrence that starts on local_date

        A wrapping period ends on the following calendar day.
        """
        start = datetime.combine(local_date, time(self.start_hour), tzinfo=tz)
        end_date = local_date + timedelta(days=1) if self.wraps_midnight else local_date
        end = datetime.combine(end_date, time(self.end_hour), tzinfo=tz)
        return to_epoch_ms(start), to_epoch_ms(end)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_hour": self.start_hour,
            "end_hour": self.end_hour,
            "max_amount": self.max_amount,
        }

    def __str__(self) -> str:
        return f"{self.start_hour:02d}:00-{self.end_hour:02d}:00 max {self.max_amount}"


@dataclass(frozen=True)
class PricingConfig:
    """
    Value Object: everything the fee engine needs to price one stay

    Resolved from owner defaults and lot overrides at checkout time and
    never mutated during a computation.
    """
    unit_minutes: int = 60
    unit_amount: int = 300
    daily_cap_enabled: bool = False
    daily_cap_amount: int = 0
    time_periods: Tuple[TimePeriod, ...] = ()

    def __post_init__(self):
        if self.unit_minutes <= 0:
            raise ValueError(f"unit_minutes must be positive, got {self.unit_minutes}")
        if self.unit_amount < 0:
            raise ValueError(f"unit_amount cannot be negative: {self.unit_amount}")
        if self.daily_cap_amount < 0:
            raise ValueError(f"daily_cap_amount cannot be negative: {self.daily_cap_amount}")
        # Accept any iterable of periods while keeping the object hashable
        object.__setattr__(self, "time_periods", tuple(self.time_periods))

    @property
    def daily_cap_active(self) -> bool:
        """A cap of 0 means no cap, even when the flag is on"""
        return self.daily_cap_enabled and self.daily_cap_amount > 0

    @property
    def has_per_day_rules(self) -> bool:
        return bool(self.time_periods) or self.daily_cap_active

    def unit_charge(self, minutes: int) -> int:
        """Ceiling-rounded charge for a number of minutes at the base rate"""
        return ceil_div(minutes, self.unit_minutes) * self.unit_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_minutes": self.unit_minutes,
            "unit_amount": self.unit_amount,
            "daily_cap_enabled": self.daily_cap_enabled,
            "daily_cap_amount": self.daily_cap_amount,
            "time_periods": [period.to_dict() for period in self.time_periods],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PricingConfig':
        return cls(
            unit_minutes=data["unit_minutes"],
            unit_amount=data["unit_amount"],
            daily_cap_enabled=data.get("daily_cap_enabled", False),
            daily_cap_amount=data.get("daily_cap_amount", 0),
            time_periods=tuple(TimePeriod(**period) for period in data.get("time_periods", [])),
        )


@dataclass(frozen=True)
class Stay:
    """Value Object: a billable interval, exit strictly after entry"""
    entry_time_ms: int
    exit_time_ms: int

    def __post_init__(self):
        if self.exit_time_ms <= self.entry_time_ms:
            raise InvalidIntervalError(
                f"Exit time {self.exit_time_ms} must be after entry time {self.entry_time_ms}"
            )

    @property
    def duration_ms(self) -> int:
        return self.exit_time_ms - self.entry_time_ms

    @property
    def duration_minutes(self) -> int:
        return duration_minutes(self.entry_time_ms, self.exit_time_ms)

    def __str__(self) -> str:
        start = from_epoch_ms(self.entry_time_ms).strftime("%Y-%m-%d %H:%M")
        end = from_epoch_ms(self.exit_time_ms).strftime("%Y-%m-%d %H:%M")
        return f"{start} to {end} UTC ({self.duration_minutes} min)"


@dataclass(frozen=True)
class PeriodCharge:
    """Charge of one time period inside one billing day"""
    period: TimePeriod
    minutes: int
    uncapped_amount: int
    amount: int


@dataclass(frozen=True)
class DayCharge:
    """Charge of one billing day before and after the daily cap"""
    start_ms: int
    end_ms: int
    uncapped_amount: int
    amount: int
    period_charges: Tuple[PeriodCharge, ...] = ()


@dataclass(frozen=True)
class FeeBreakdown:
    """Value Object: the engine's answer for one stay"""
    amount: int
    duration_minutes: int
    days: Tuple[DayCharge, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "duration_minutes": self.duration_minutes,
            "days": [
                {
                    "start_ms": day.start_ms,
                    "end_ms": day.end_ms,
                    "uncapped_amount": day.uncapped_amount,
                    "amount": day.amount,
                }
                for day in self.days
            ],
        }


# ============================================================================
# DOMAIN EVENTS (for event-driven architecture)
# ============================================================================

class DomainEvent(ABC):
    """
    Base class for all domain events
    Events represent something that happened in the domain
    """
    event_type = "domain.event"

    def __init__(self):
        self.event_id = str(uuid.uuid4())
        self.timestamp = datetime.now(timezone.utc)
        self.version = "1.0"

    @abstractmethod
    def payload(self) -> Dict[str, Any]:
        pass

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "data": self.payload(),
        }

    def __str__(self) -> str:
        return f"{self.__class__.__name__} at {self.timestamp}"


class VehicleCheckedInEvent(DomainEvent):
    """Event raised when a session starts on a space"""
    event_type = "vehicle.checked_in"

    def __init__(self, lot_id: str, space_id: str, space_number: int, session_id: str, entry_time_ms: int):
        super().__init__()
        self.lot_id = lot_id
        self.space_id = space_id
        self.space_number = space_number
        self.session_id = session_id
        self.entry_time_ms = entry_time_ms

    def payload(self) -> Dict[str, Any]:
        return {
            "lot_id": self.lot_id,
            "space_id": self.space_id,
            "space_number": self.space_number,
            "session_id": self.session_id,
            "entry_time_ms": self.entry_time_ms,
        }


class VehicleCheckedOutEvent(DomainEvent):
    """Event raised when a session is settled and its space released"""
    event_type = "vehicle.checked_out"

    def __init__(
        self,
        lot_id: str,
        space_id: str,
        session_id: str,
        payment_id: str,
        amount: int,
        duration_minutes: int,
        payment_method: PaymentMethod,
    ):
        super().__init__()
        self.lot_id = lot_id
        self.space_id = space_id
        self.session_id = session_id
        self.payment_id = payment_id
        self.amount = amount
        self.duration_minutes = duration_minutes
        self.payment_method = payment_method

    def payload(self) -> Dict[str, Any]:
        return {
            "lot_id": self.lot_id,
            "space_id": self.space_id,
            "session_id": self.session_id,
            "payment_id": self.payment_id,
            "amount": self.amount,
            "duration_minutes": self.duration_minutes,
            "payment_method": self.payment_method.value,
        }
