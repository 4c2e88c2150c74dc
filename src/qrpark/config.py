# File: src/qrpark/config.py
"""
Application configuration

Settings come from the environment (a local .env file is loaded first) and
are validated once at startup; an invalid value stops the process.
"""

from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import os

from dotenv import load_dotenv

from .domain.models import BillingDayMode


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the parking services"""
    database_url: str = "sqlite:///qrpark.db"
    business_timezone: str = "Asia/Tokyo"
    billing_day_mode: BillingDayMode = BillingDayMode.ENTRY
    default_pricing_unit_minutes: int = 60
    default_pricing_amount: int = 300
    redis_url: Optional[str] = None
    pricing_cache_ttl_seconds: int = 300
    auth_mode: str = "demo"
    demo_admin_id: str = "demo-admin"
    spaces_per_lot: int = 10
    log_level: str = "INFO"
    log_dir: str = "logs"

    def __post_init__(self):
        try:
            ZoneInfo(self.business_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown BUSINESS_TIMEZONE: {self.business_timezone}")
        object.__setattr__(self, "billing_day_mode", BillingDayMode(self.billing_day_mode))
        if self.default_pricing_unit_minutes <= 0:
            raise ValueError("DEFAULT_PRICING_UNIT_MINUTES must be positive")
        if self.default_pricing_amount < 0:
            raise ValueError("DEFAULT_PRICING_AMOUNT cannot be negative")
        if self.auth_mode not in ("demo", "strict"):
            raise ValueError(f"AUTH_MODE must be 'demo' or 'strict', got {self.auth_mode}")
        if self.spaces_per_lot <= 0:
            raise ValueError("SPACES_PER_LOT must be positive")

    @property
    def is_demo(self) -> bool:
        return self.auth_mode == "demo"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> 'Settings':
        load_dotenv(env_file)
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            business_timezone=os.getenv("BUSINESS_TIMEZONE", cls.business_timezone),
            billing_day_mode=os.getenv("BILLING_DAY_MODE", cls.billing_day_mode.value),
            default_pricing_unit_minutes=int(os.getenv("DEFAULT_PRICING_UNIT_MINUTES", cls.default_pricing_unit_minutes)),
            default_pricing_amount=int(os.getenv("DEFAULT_PRICING_AMOUNT", cls.default_pricing_amount)),
            redis_url=os.getenv("REDIS_URL") or None,
            pricing_cache_ttl_seconds=int(os.getenv("PRICING_CACHE_TTL_SECONDS", cls.pricing_cache_ttl_seconds)),
            auth_mode=os.getenv("AUTH_MODE", cls.auth_mode),
            demo_admin_id=os.getenv("DEMO_ADMIN_ID", cls.demo_admin_id),
            spaces_per_lot=int(os.getenv("SPACES_PER_LOT", cls.spaces_per_lot)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            log_dir=os.getenv("LOG_DIR", cls.log_dir),
        )
