# File: src/qrpark/domain/strategies.py
"""
Strategy Pattern Implementation for Parking Fee Computation

This module encapsulates the algorithms that turn a PricingConfig and a
stay into an amount. Each piece can be swapped at runtime:

1. Day Segmentation Strategies - where billing days start and end, and
   which occurrence of a recurring time period belongs to a billing day
2. TimePeriodCapper - prices one billing day against the time periods
3. Pricing Strategies - plain unit billing or per-day tiered billing
4. ParkingFeeCalculator - domain service choosing the pricing strategy

Every function here is pure: no clock, no I/O, same input same output.
"""

from abc import ABC, abstractmethod
from typing import List, Tuple
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo
import logging

from .models import (
    BillingDayMode, DayCharge, FeeBreakdown, PeriodCharge, PricingConfig,
    Stay, TimePeriod, MS_PER_DAY, MS_PER_MINUTE, ceil_div, duration_minutes,
    from_epoch_ms, to_epoch_ms,
)


Window = Tuple[int, int]

DEFAULT_TIMEZONE = "Asia/Tokyo"


def calculate_parking_fee(
    entry_time_ms: int,
    exit_time_ms: int,
    unit_minutes: int = 60,
    unit_amount: int = 300,
) -> int:
    """
    Simple unit billing over the whole stay

    Minutes are rounded up, then units are rounded up:
    30 min -> 300, 61 min -> 600 with the default 60 min / 300 yen unit.
    """
    stay = Stay(entry_time_ms, exit_time_ms)
    return PricingConfig(unit_minutes=unit_minutes, unit_amount=unit_amount).unit_charge(
        stay.duration_minutes
    )


def _clip(window: Window, bounds: Window) -> Window:
    return max(window[0], bounds[0]), min(window[1], bounds[1])


# ============================================================================
# DAY SEGMENTATION STRATEGIES
# ============================================================================

class DaySegmentationStrategy(ABC):
    """
    Abstract base class for billing-day segmentation

    segment() returns contiguous, non-overlapping [start, end) windows that
    start at entry and end at exit. period_windows() tells the capper which
    part of a billing day a time period covers.
    """

    def __init__(self, tz: ZoneInfo):
        self.tz = tz
        self.logger = logging.getLogger(self.__class__.__name__)

    def segment(self, entry_time_ms: int, exit_time_ms: int) -> List[Window]:
        stay = Stay(entry_time_ms, exit_time_ms)
        points = [stay.entry_time_ms] + self._boundaries(stay) + [stay.exit_time_ms]
        return list(zip(points, points[1:]))

    @abstractmethod
    def _boundaries(self, stay: Stay) -> List[int]:
        """Day boundaries strictly between entry and exit, ascending"""
        pass

    @abstractmethod
    def period_windows(self, segment: Window, period: TimePeriod) -> List[Window]:
        """Parts of the segment the period covers, non-empty and ascending"""
        pass

    def _occurrences(self, segment: Window, period: TimePeriod) -> List[Window]:
        """Every occurrence of the period that could touch the segment"""
        first = from_epoch_ms(segment[0], self.tz).date() - timedelta(days=1)
        last = from_epoch_ms(segment[1], self.tz).date()
        occurrences = []
        day = first
        while day <= last:
            occurrences.append(period.occurrence(day, self.tz))
            day += timedelta(days=1)
        return occurrences

    def get_strategy_name(self) -> str:
        return self.__class__.__name__.replace("DaySegmenter", "")

    def __str__(self) -> str:
        return f"{self.get_strategy_name()} days ({self.tz.key})"


class CalendarDaySegmenter(DaySegmentationStrategy):
    """
    Billing days bounded by local midnight

    A wrapping period contributes both its morning tail and its evening head
    on the same calendar day; both are priced as one bucket.
    """

    def _boundaries(self, stay: Stay) -> List[int]:
        boundaries = []
        day = from_epoch_ms(stay.entry_time_ms, self.tz).date() + timedelta(days=1)
        while True:
            midnight = to_epoch_ms(datetime.combine(day, time(0), tzinfo=self.tz))
            if midnight >= stay.exit_time_ms:
                return boundaries
            boundaries.append(midnight)
            day += timedelta(days=1)

    def period_windows(self, segment: Window, period: TimePeriod) -> List[Window]:
        windows = []
        for occurrence in self._occurrences(segment, period):
            start, end = _clip(occurrence, segment)
            if end > start:
                windows.append((start, end))
        return windows


class EntryAnchoredDaySegmenter(DaySegmentationStrategy):
    """
    Billing days of 24 hours counted from the entry instant

    Each period is billed for one occurrence per billing day: the one in
    progress when the day starts, otherwise the next one to begin.
    """

    def _boundaries(self, stay: Stay) -> List[int]:
        return list(range(stay.entry_time_ms + MS_PER_DAY, stay.exit_time_ms, MS_PER_DAY))

    def period_windows(self, segment: Window, period: TimePeriod) -> List[Window]:
        for occurrence in self._occurrences(segment, period):
            start, end = _clip(occurrence, segment)
            if end > start:
                return [(start, end)]
        return []


# ============================================================================
# TIME-PERIOD RATE CAPPER
# ============================================================================

class TimePeriodCapper:
    """
    Prices one billing day against the configured time periods

    Each period is charged independently at the base unit rate for the
    minutes it covers and capped at its own maximum. Minutes outside every
    period are not billed. Without periods the whole day is unit-billed.
    """

    def __init__(self, segmenter: DaySegmentationStrategy):
        self.segmenter = segmenter
        self.logger = logging.getLogger(self.__class__.__name__)

    def price_segment(self, config: PricingConfig, segment: Window) -> Tuple[int, Tuple[PeriodCharge, ...]]:
        if not config.time_periods:
            return config.unit_charge(duration_minutes(*segment)), ()

        charges = []
        for period in config.time_periods:
            if period.is_degenerate:
                continue
            covered_ms = sum(end - start for start, end in self.segmenter.period_windows(segment, period))
            if covered_ms <= 0:
                continue
            minutes = ceil_div(covered_ms, MS_PER_MINUTE)
            uncapped = config.unit_charge(minutes)
            charges.append(PeriodCharge(
                period=period,
                minutes=minutes,
                uncapped_amount=uncapped,
                amount=min(uncapped, period.max_amount),
            ))
        return sum(charge.amount for charge in charges), tuple(charges)


# ============================================================================
# PRICING STRATEGIES
# ============================================================================

class PricingStrategy(ABC):
    """
    Abstract base class for pricing strategies
    Defines the interface for fee calculation algorithms
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def calculate(self, config: PricingConfig, stay: Stay) -> FeeBreakdown:
        pass


class UnitPricingStrategy(PricingStrategy):
    """Whole-stay unit billing, used when no per-day rule applies"""

    def calculate(self, config: PricingConfig, stay: Stay) -> FeeBreakdown:
        amount = config.unit_charge(stay.duration_minutes)
        day = DayCharge(stay.entry_time_ms, stay.exit_time_ms, amount, amount)
        return FeeBreakdown(amount=amount, duration_minutes=stay.duration_minutes, days=(day,))


class TimePeriodPricingStrategy(PricingStrategy):
    """
    Per-day tiered billing

    1. Cut the stay into billing days
    2. Price each day with the TimePeriodCapper
    3. Apply the daily cap to each day when it is active
    4. Sum the days
    """

    def __init__(self, segmenter: DaySegmentationStrategy):
        super().__init__()
        self.segmenter = segmenter
        self.capper = TimePeriodCapper(segmenter)

    def calculate(self, config: PricingConfig, stay: Stay) -> FeeBreakdown:
        days = []
        for segment in self.segmenter.segment(stay.entry_time_ms, stay.exit_time_ms):
            day_total, period_charges = self.capper.price_segment(config, segment)
            amount = min(day_total, config.daily_cap_amount) if config.daily_cap_active else day_total
            days.append(DayCharge(
                start_ms=segment[0],
                end_ms=segment[1],
                uncapped_amount=day_total,
                amount=amount,
                period_charges=period_charges,
            ))
        return FeeBreakdown(
            amount=sum(day.amount for day in days),
            duration_minutes=stay.duration_minutes,
            days=tuple(days),
        )


# ============================================================================
# DOMAIN SERVICE
# ============================================================================

class ParkingFeeCalculator:
    """
    Domain Service: computes the fee for one stay under one PricingConfig

    A config with neither time periods nor an active daily cap is billed
    over the whole stay, so no stay is rounded up twice at a day boundary.
    """

    def __init__(self, segmenter: DaySegmentationStrategy):
        self.segmenter = segmenter
        self.unit_strategy = UnitPricingStrategy()
        self.tiered_strategy = TimePeriodPricingStrategy(segmenter)
        self.logger = logging.getLogger(self.__class__.__name__)

    def select_strategy(self, config: PricingConfig) -> PricingStrategy:
        return self.tiered_strategy if config.has_per_day_rules else self.unit_strategy

    def calculate(self, config: PricingConfig, entry_time_ms: int, exit_time_ms: int) -> FeeBreakdown:
        stay = Stay(entry_time_ms, exit_time_ms)
        breakdown = self.select_strategy(config).calculate(config, stay)
        self.logger.debug(
            f"Fee for {stay}: {breakdown.amount} over {len(breakdown.days)} billing day(s)"
        )
        return breakdown

    def __str__(self) -> str:
        return f"fee calculator, {self.segmenter}"


class PricingStrategyFactory:
    """Builds fee calculators for a billing-day mode"""

    _segmenters = {
        BillingDayMode.ENTRY: EntryAnchoredDaySegmenter,
        BillingDayMode.CALENDAR: CalendarDaySegmenter,
    }

    @classmethod
    def create_segmenter(cls, mode, timezone_name: str = DEFAULT_TIMEZONE) -> DaySegmentationStrategy:
        try:
            billing_mode = BillingDayMode(mode)
        except ValueError:
            raise ValueError(
                f"Unknown billing day mode: {mode}. Valid modes: {[m.value for m in BillingDayMode]}"
            )
        return cls._segmenters[billing_mode](ZoneInfo(timezone_name))

    @classmethod
    def create_calculator(cls, mode=BillingDayMode.ENTRY, timezone_name: str = DEFAULT_TIMEZONE) -> ParkingFeeCalculator:
        return ParkingFeeCalculator(cls.create_segmenter(mode, timezone_name))
