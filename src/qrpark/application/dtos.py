# File: src/qrpark/application/dtos.py
"""
Data Transfer Objects (DTOs) for the QR Parking System

1. Input DTOs - pricing updates and history queries, validated on creation
2. Output DTOs - what the services hand to callers (API, CLI, commands)

DTO Principles:
- Validation at creation
- No business logic, only data
- Serialization/deserialization support
"""

from typing import Dict, List, Optional, Any
from datetime import datetime
import json

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..domain.models import FeeBreakdown, PricingConfig
from ..domain.aggregates import ParkingSession, ParkingSpace, PaymentRecord


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        """Convert DTO to dictionary"""
        data = self.model_dump(mode="json", **kwargs)
        if exclude_none:
            data = {k: v for k, v in data.items() if v is not None}
        return data

    def to_json(self, **kwargs) -> str:
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseDTO':
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        return cls(**json.loads(json_str))


# ============================================================================
# PRICING DTOs
# ============================================================================

class TimePeriodDTO(BaseDTO):
    """A time-period price ceiling as entered by an operator"""
    id: Optional[str] = Field(default=None, description="Period ID once stored")
    start_hour: int = Field(ge=0, le=23, description="Start hour (local time)")
    end_hour: int = Field(ge=0, le=23, description="End hour (local time), may wrap past midnight")
    max_amount: int = Field(ge=0, description="Maximum charge inside this period, yen")


class PricingConfigDTO(BaseDTO):
    """Resolved pricing of a lot"""
    unit_minutes: int = Field(gt=0, description="Billing increment in minutes")
    unit_amount: int = Field(ge=0, description="Charge per increment, yen")
    daily_cap_enabled: bool = Field(default=False, description="Daily maximum switched on")
    daily_cap_amount: int = Field(default=0, ge=0, description="Daily maximum, yen; 0 means none")
    time_periods: List[TimePeriodDTO] = Field(default_factory=list, description="Periods in insertion order")

    @classmethod
    def from_config(cls, config: PricingConfig) -> 'PricingConfigDTO':
        return cls(
            unit_minutes=config.unit_minutes,
            unit_amount=config.unit_amount,
            daily_cap_enabled=config.daily_cap_enabled,
            daily_cap_amount=config.daily_cap_amount,
            time_periods=[TimePeriodDTO(**period.to_dict()) for period in config.time_periods],
        )


class OwnerPricingUpdateDTO(BaseDTO):
    """Owner-wide default pricing"""
    pricing_unit_minutes: int = Field(gt=0, le=24 * 60, description="Default billing increment in minutes")
    pricing_amount: int = Field(ge=0, description="Default charge per increment, yen")


class LotPricingUpdateDTO(BaseDTO):
    """
    Partial update of a lot's pricing

    Only fields that were provided are applied; an explicit null clears a
    lot override so the owner default applies again.
    """
    pricing_unit_minutes: Optional[int] = Field(default=None, gt=0, le=24 * 60)
    pricing_amount: Optional[int] = Field(default=None, ge=0)
    max_daily_amount: Optional[int] = Field(default=None, ge=0)
    max_daily_amount_enabled: Optional[bool] = Field(default=None)

    @field_validator('max_daily_amount_enabled')
    @classmethod
    def validate_enabled_flag(cls, v):
        if v is None:
            raise ValueError("max_daily_amount_enabled cannot be null")
        return v

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class PricingSettingsDTO(BaseDTO):
    """Raw pricing rows of a lot plus the config they resolve to"""
    lot_id: str
    owner_pricing_unit_minutes: Optional[int] = None
    owner_pricing_amount: Optional[int] = None
    lot_pricing_unit_minutes: Optional[int] = None
    lot_pricing_amount: Optional[int] = None
    max_daily_amount: Optional[int] = None
    max_daily_amount_enabled: bool = False
    time_periods: List[TimePeriodDTO] = Field(default_factory=list)
    resolved: PricingConfigDTO


# ============================================================================
# FEE DTOs
# ============================================================================

class DayChargeDTO(BaseDTO):
    start_ms: int
    end_ms: int
    uncapped_amount: int = Field(ge=0)
    amount: int = Field(ge=0)


class FeeQuoteDTO(BaseDTO):
    """Result of the fee engine for one stay"""
    amount: int = Field(ge=0, description="Fee in yen")
    duration_minutes: int = Field(ge=0, description="Stay length, started minutes count")
    days: List[DayChargeDTO] = Field(default_factory=list, description="Per billing day breakdown")

    @classmethod
    def from_breakdown(cls, breakdown: FeeBreakdown) -> 'FeeQuoteDTO':
        return cls(**breakdown.to_dict())


# ============================================================================
# SPACE AND SESSION DTOs
# ============================================================================

class ParkingSpaceDTO(BaseDTO):
    id: str
    lot_id: str
    space_number: int = Field(gt=0)
    status: str
    qr_code: str

    @classmethod
    def from_space(cls, space: ParkingSpace) -> 'ParkingSpaceDTO':
        return cls(
            id=space.id,
            lot_id=space.lot_id,
            space_number=space.space_number,
            status=space.status,
            qr_code=space.qr_code,
        )


class ParkingSessionDTO(BaseDTO):
    id: str
    space_id: str
    lot_id: str
    space_number: int
    entry_time_ms: int
    exit_time_ms: Optional[int] = None
    status: str
    session_token: str

    @classmethod
    def from_session(cls, session: ParkingSession) -> 'ParkingSessionDTO':
        return cls(
            id=session.id,
            space_id=session.space_id,
            lot_id=session.lot_id,
            space_number=session.space_number,
            entry_time_ms=session.entry_time_ms,
            exit_time_ms=session.exit_time_ms,
            status=session.status.value,
            session_token=session.session_token,
        )


class SpaceLookupDTO(BaseDTO):
    """What a driver sees after scanning a space's QR code"""
    space: ParkingSpaceDTO
    active_session: Optional[ParkingSessionDTO] = None
    pricing: PricingConfigDTO


class CheckInResultDTO(BaseDTO):
    success: bool = True
    session_token: str
    space_number: int
    entry_time_ms: int


class CheckoutQuoteDTO(BaseDTO):
    """Read-only preview of the fee if the driver left now"""
    session: ParkingSessionDTO
    exit_time_ms: int
    duration_minutes: int = Field(ge=0)
    amount: int = Field(ge=0)
    pricing: PricingConfigDTO


class CheckoutResultDTO(BaseDTO):
    success: bool = True
    payment_id: str
    transaction_id: str
    amount: int = Field(ge=0)
    duration_minutes: int = Field(ge=0)
    exit_time_ms: int


# ============================================================================
# ADMIN DTOs
# ============================================================================

class PaymentRecordDTO(BaseDTO):
    id: str
    session_id: str
    lot_id: str
    space_number: int
    entry_time_ms: int
    exit_time_ms: int
    duration_minutes: int
    amount: int
    payment_method: str
    payment_status: str
    transaction_id: str
    provider_payment_id: Optional[str] = None
    is_demo: bool
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: PaymentRecord) -> 'PaymentRecordDTO':
        return cls(
            id=record.id,
            session_id=record.session_id,
            lot_id=record.lot_id,
            space_number=record.space_number,
            entry_time_ms=record.entry_time_ms,
            exit_time_ms=record.exit_time_ms,
            duration_minutes=record.duration_minutes,
            amount=record.amount,
            payment_method=record.payment_method.value,
            payment_status=record.payment_status.value,
            transaction_id=record.transaction_id,
            provider_payment_id=record.provider_payment_id,
            is_demo=record.is_demo,
            created_at=record.created_at,
        )


class PaymentHistoryRequestDTO(BaseDTO):
    limit: int = Field(default=100, ge=1, le=500, description="Number of records, newest first")


class DashboardSpaceDTO(BaseDTO):
    space: ParkingSpaceDTO
    active_session: Optional[ParkingSessionDTO] = None


class DashboardSummaryDTO(BaseDTO):
    total: int = Field(ge=0)
    occupied: int = Field(ge=0)
    available: int = Field(ge=0)


class DashboardDTO(BaseDTO):
    spaces: List[DashboardSpaceDTO] = Field(default_factory=list)
    summary: DashboardSummaryDTO
