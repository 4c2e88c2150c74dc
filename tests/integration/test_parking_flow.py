#!/usr/bin/env python3
"""
Integration tests: full parking flows against an in-memory SQLite database

The application is wired exactly as the command line wires it; only the
clock is replaced so stays have known lengths.
"""

import unittest
import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from sqlalchemy.exc import IntegrityError, OperationalError

# Add the src directory to the Python path
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from qrpark.config import Settings
from qrpark.main import ParkingApplication, build_parser, parse_instant, run_command
from qrpark.application.commands import (
    CheckInCommand, CompleteCheckoutCommand, ComputeFeeCommand, GetDashboardCommand,
    GetPaymentHistoryCommand, QuoteCheckoutCommand, UpdateLotPricingCommand,
)
from qrpark.application.dtos import LotPricingUpdateDTO, OwnerPricingUpdateDTO, TimePeriodDTO
from qrpark.domain.models import (
    ConfigNotFoundError, FeeChangedError, NotFoundError, PaymentStatus,
    SessionAlreadyCompletedError, SpaceNotFoundError, SpaceOccupiedError,
    ValidationError, to_epoch_ms,
)
from qrpark.infrastructure.messaging import RecordingEventHandler
from qrpark.infrastructure.repositories import ParkingSpaceRepository, SQLAlchemyUnitOfWork


MINUTE = 60_000
HOUR = 60 * MINUTE

# 2026-01-20 03:00 in Tokyo
ENTRY = to_epoch_ms(datetime(2026, 1, 19, 18, 0, tzinfo=timezone.utc))


class FakeClock:
    """Epoch-ms clock the tests move by hand; step moves it on every read"""

    def __init__(self, now: int):
        self.now = now
        self.step = 0

    def __call__(self) -> int:
        now = self.now
        self.now += self.step
        return now

    def advance(self, minutes: int = 0, hours: int = 0):
        self.now += minutes * MINUTE + hours * HOUR


class DictPricingCache:
    """In-process pricing cache with the redis cache's interface"""

    def __init__(self):
        self.configs = {}

    def get(self, lot_id):
        return self.configs.get(lot_id)

    def set(self, lot_id, config):
        self.configs[lot_id] = config

    def invalidate(self, lot_id):
        self.configs.pop(lot_id, None)


# ============================================================================
# BASE TEST CLASS
# ============================================================================

class IntegrationTestBase(unittest.TestCase):
    """Fresh in-memory database and demo lot per test"""

    with_periods = True

    def setUp(self):
        self.clock = FakeClock(ENTRY)
        self.app = ParkingApplication(Settings(database_url="sqlite://"), clock=self.clock)
        self.demo = self.app.create_demo_lot(with_periods=self.with_periods)
        self.lot_id = self.demo["lot_id"]
        self.qr_codes = [space["qr_code"] for space in self.demo["spaces"]]
        self.auth = self.app.auth()

    def process(self, command):
        return self.app.processor.process(command)

    def check_in(self, index=0) -> str:
        result = self.process(CheckInCommand(self.qr_codes[index]))
        self.assertTrue(result["success"], result)
        return result["data"]["session_token"]


# ============================================================================
# CHECK-IN / CHECKOUT
# ============================================================================

class TestSessionLifecycle(IntegrationTestBase):
    """Check-in, quote and checkout through the command processor"""

    def test_full_day_is_capped(self):
        token = self.check_in()
        self.clock.advance(hours=24)

        quote = self.process(QuoteCheckoutCommand(token))
        self.assertEqual(quote["data"]["amount"], 3000)
        self.assertEqual(quote["data"]["duration_minutes"], 24 * 60)

        result = self.process(CompleteCheckoutCommand(token, "demo"))
        self.assertTrue(result["success"], result)
        self.assertEqual(result["data"]["amount"], 3000)
        self.assertTrue(result["data"]["transaction_id"].startswith("TXN-"))

    def test_quote_changes_nothing(self):
        token = self.check_in()
        self.clock.advance(minutes=61)

        first = self.app.parking_service.get_checkout_quote(token)
        second = self.app.parking_service.get_checkout_quote(token)

        self.assertEqual(first.amount, 600)
        self.assertEqual(first.amount, second.amount)
        self.assertEqual(first.session.status, "active")

    def test_checkout_frees_space_and_records_payment(self):
        token = self.check_in()
        self.clock.advance(minutes=61)
        self.process(CompleteCheckoutCommand(token, "credit_card"))

        dashboard = self.app.parking_service.get_dashboard(self.auth, self.lot_id)
        self.assertEqual(dashboard.summary.occupied, 0)
        self.assertIsNone(dashboard.spaces[0].active_session)

        history = self.app.parking_service.get_payment_history(self.auth, limit=10)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].amount, 600)
        self.assertEqual(history[0].duration_minutes, 61)
        self.assertEqual(history[0].payment_method, "credit_card")
        self.assertEqual(history[0].exit_time_ms - history[0].entry_time_ms, 61 * MINUTE)

        # The space can be used again
        self.check_in()

    def test_immediate_checkout_bills_one_unit(self):
        token = self.check_in()

        result = self.app.parking_service.complete_checkout(token, "demo")

        self.assertEqual(result.duration_minutes, 1)
        self.assertEqual(result.amount, 300)

    def test_checkout_settles_at_quoted_exit(self):
        token = self.check_in()
        self.clock.advance(minutes=61)
        # Another hour passes between the quote and the settlement
        self.clock.step = HOUR

        result = self.process(CompleteCheckoutCommand(token, "demo"))

        self.assertTrue(result["success"], result)
        self.assertEqual(result["data"]["amount"], 600)
        self.assertEqual(result["data"]["exit_time_ms"], ENTRY + 61 * MINUTE)

        record = self.app.parking_service.get_payment_history(self.auth)[0]
        charge = self.app.payments.get("demo").get_charge(record.provider_payment_id)
        self.assertEqual(charge.amount, record.amount)
        self.assertEqual(charge.status, PaymentStatus.COMPLETED)

    def test_exit_time_in_the_future_rejected(self):
        token = self.check_in()
        self.clock.advance(minutes=30)

        with self.assertRaises(ValidationError):
            self.app.parking_service.complete_checkout(token, "demo", exit_time_ms=self.clock.now + MINUTE)

        self.assertEqual(self.app.parking_service.get_checkout_quote(token).session.status, "active")

    def test_integrity_error_during_lookup_is_conflict(self):
        error = IntegrityError("SELECT parking_spaces", {}, Exception("UNIQUE constraint failed"))

        with patch.object(ParkingSpaceRepository, "find_by_qr_code", side_effect=error):
            with self.assertRaises(SpaceOccupiedError) as ctx:
                self.app.parking_service.check_in(self.qr_codes[0])

        self.assertIn(self.qr_codes[0], ctx.exception.message)

    def test_second_checkout_is_rejected(self):
        token = self.check_in()
        self.clock.advance(minutes=30)
        self.app.parking_service.complete_checkout(token, "demo")

        with self.assertRaises(SessionAlreadyCompletedError):
            self.app.parking_service.complete_checkout(token, "demo")

        result = self.process(CompleteCheckoutCommand(token, "demo"))
        self.assertEqual(result["code"], "BAD_REQUEST")
        self.assertEqual(len(self.app.parking_service.get_payment_history(self.auth)), 1)

    def test_occupied_space_rejects_check_in(self):
        self.check_in()

        with self.assertRaises(SpaceOccupiedError):
            self.app.parking_service.check_in(self.qr_codes[0])

        result = self.process(CheckInCommand(self.qr_codes[0]))
        self.assertEqual(result["code"], "CONFLICT")

    def test_unknown_qr_code_and_token(self):
        with self.assertRaises(SpaceNotFoundError):
            self.app.parking_service.check_in("PARK-99-unknown0")

        result = self.process(QuoteCheckoutCommand("no-such-token"))
        self.assertEqual(result["code"], "NOT_FOUND")

    def test_events_published_after_commit(self):
        recorder = RecordingEventHandler()
        self.app.event_bus.subscribe("vehicle.checked_in", recorder)
        self.app.event_bus.subscribe("vehicle.checked_out", recorder)

        token = self.check_in()
        self.clock.advance(minutes=90)
        self.app.parking_service.complete_checkout(token, "demo")

        self.assertEqual(
            [event.event_type for event in recorder.events],
            ["vehicle.checked_in", "vehicle.checked_out"],
        )
        self.assertEqual(recorder.events[1].amount, 600)

    def test_space_lookup_shows_active_session(self):
        before = self.app.parking_service.get_space_by_qr_code(self.qr_codes[2])
        self.assertIsNone(before.active_session)

        token = self.check_in(2)
        after = self.app.parking_service.get_space_by_qr_code(self.qr_codes[2])

        self.assertEqual(after.space.status, "occupied")
        self.assertEqual(after.active_session.session_token, token)
        self.assertEqual(len(after.pricing.time_periods), 2)


# ============================================================================
# OPERATOR QUERIES
# ============================================================================

class TestOperatorQueries(IntegrationTestBase):

    def test_dashboard_summary(self):
        self.check_in(0)
        self.check_in(3)

        result = self.process(GetDashboardCommand(self.auth, self.lot_id))

        self.assertEqual(result["data"]["summary"], {"total": 10, "occupied": 2, "available": 8})
        occupied = [entry for entry in result["data"]["spaces"] if entry["active_session"]]
        self.assertEqual([entry["space"]["space_number"] for entry in occupied], [1, 4])

    def test_history_limit_bounds(self):
        for limit in (0, 501):
            with self.subTest(limit=limit):
                with self.assertRaises(ValidationError):
                    self.app.parking_service.get_payment_history(self.auth, limit=limit)

    def test_history_newest_first(self):
        first = self.check_in(0)
        second = self.check_in(1)
        self.clock.advance(minutes=30)
        self.app.parking_service.complete_checkout(first, "demo")
        self.clock.advance(minutes=30)
        self.app.parking_service.complete_checkout(second, "demo")

        result = self.process(GetPaymentHistoryCommand(self.auth, limit=1))

        records = result["data"]["records"]
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0]["space_number"], 2)

    def test_strict_mode_requires_a_principal(self):
        app = ParkingApplication(Settings(database_url="sqlite://", auth_mode="strict"), clock=self.clock)

        result = app.processor.process(GetDashboardCommand(app.auth()))

        self.assertEqual(result["code"], "UNAUTHORIZED")


# ============================================================================
# PRICING ADMINISTRATION
# ============================================================================

class TestPricingAdministration(IntegrationTestBase):
    """Owner defaults, lot overrides and time periods"""

    with_periods = False

    def setUp(self):
        super().setUp()
        self.pricing = self.app.pricing_service
        self.owner_id = self.demo["owner_id"]

    def resolved(self):
        return self.app.pricing_resolver.resolve(self.lot_id)

    def test_owner_defaults_apply_without_lot_override(self):
        self.pricing.update_owner_defaults(
            self.auth, self.owner_id, OwnerPricingUpdateDTO(pricing_unit_minutes=30, pricing_amount=200)
        )

        config = self.resolved()
        self.assertEqual((config.unit_minutes, config.unit_amount), (30, 200))

    def test_lot_override_and_clear(self):
        self.pricing.update_owner_defaults(
            self.auth, self.owner_id, OwnerPricingUpdateDTO(pricing_unit_minutes=30, pricing_amount=200)
        )
        self.pricing.update_lot_pricing(self.auth, self.lot_id, LotPricingUpdateDTO(pricing_amount=500))
        self.assertEqual(self.resolved().unit_amount, 500)
        self.assertEqual(self.resolved().unit_minutes, 30)

        self.pricing.update_lot_pricing(self.auth, self.lot_id, LotPricingUpdateDTO(pricing_amount=None))
        self.assertEqual(self.resolved().unit_amount, 200)

    def test_partial_update_keeps_other_fields(self):
        self.pricing.update_lot_pricing(
            self.auth, self.lot_id, LotPricingUpdateDTO(max_daily_amount=1500, max_daily_amount_enabled=True)
        )
        self.pricing.update_lot_pricing(self.auth, self.lot_id, LotPricingUpdateDTO(pricing_unit_minutes=20))

        settings = self.pricing.get_pricing_settings(self.auth, self.lot_id)
        self.assertEqual(settings.max_daily_amount, 1500)
        self.assertTrue(settings.max_daily_amount_enabled)
        self.assertEqual(settings.lot_pricing_unit_minutes, 20)
        self.assertTrue(settings.resolved.daily_cap_enabled)

    def test_update_command(self):
        result = self.process(UpdateLotPricingCommand(
            self.auth, self.lot_id, LotPricingUpdateDTO(pricing_unit_minutes=15, pricing_amount=100)
        ))
        self.assertEqual(result["data"]["unit_minutes"], 15)
        self.assertEqual(result["data"]["unit_amount"], 100)

    def test_periods_kept_in_insertion_order(self):
        night = self.pricing.add_time_period(self.auth, self.lot_id, TimePeriodDTO(start_hour=19, end_hour=5, max_amount=1300))
        day = self.pricing.add_time_period(self.auth, self.lot_id, TimePeriodDTO(start_hour=5, end_hour=19, max_amount=3000))

        periods = self.pricing.list_time_periods(self.lot_id)
        self.assertEqual([p.id for p in periods], [night.id, day.id])
        self.assertEqual([(p.start_hour, p.end_hour) for p in self.resolved().time_periods], [(19, 5), (5, 19)])

        self.pricing.remove_time_period(self.auth, self.lot_id, night.id)
        self.assertEqual([p.id for p in self.pricing.list_time_periods(self.lot_id)], [day.id])

        with self.assertRaises(NotFoundError):
            self.pricing.remove_time_period(self.auth, self.lot_id, night.id)

    def test_pricing_change_applies_to_active_session(self):
        token = self.check_in()
        self.clock.advance(minutes=61)
        self.assertEqual(self.app.parking_service.get_checkout_quote(token).amount, 600)

        self.pricing.update_lot_pricing(self.auth, self.lot_id, LotPricingUpdateDTO(pricing_amount=400))

        self.assertEqual(self.app.parking_service.complete_checkout(token, "demo").amount, 800)

    def test_fee_change_after_quote_is_rejected(self):
        token = self.check_in()
        self.clock.advance(minutes=61)
        quote = self.app.parking_service.get_checkout_quote(token)

        self.pricing.update_lot_pricing(self.auth, self.lot_id, LotPricingUpdateDTO(pricing_amount=400))

        with self.assertRaises(FeeChangedError):
            self.app.parking_service.complete_checkout(
                token, "demo", exit_time_ms=quote.exit_time_ms, expected_amount=quote.amount
            )
        self.assertEqual(self.app.parking_service.get_checkout_quote(token).amount, 800)
        self.assertEqual(self.app.parking_service.get_payment_history(self.auth), [])

    def test_failed_pricing_update_keeps_cached_config(self):
        cache = DictPricingCache()
        self.app.pricing_resolver.cache = cache
        self.assertEqual(self.resolved().unit_amount, 300)

        error = OperationalError("COMMIT", {}, Exception("disk I/O error"))
        with patch.object(SQLAlchemyUnitOfWork, "commit", side_effect=error):
            with self.assertRaises(OperationalError):
                self.pricing.update_lot_pricing(self.auth, self.lot_id, LotPricingUpdateDTO(pricing_amount=500))

        self.assertEqual(cache.configs[self.lot_id].unit_amount, 300)
        self.assertEqual(self.resolved().unit_amount, 300)

    def test_pricing_update_invalidates_cache_after_commit(self):
        cache = DictPricingCache()
        self.app.pricing_resolver.cache = cache
        self.resolved()

        config = self.pricing.update_lot_pricing(self.auth, self.lot_id, LotPricingUpdateDTO(pricing_amount=500))

        self.assertEqual(config.unit_amount, 500)
        self.assertNotIn(self.lot_id, cache.configs)
        self.assertEqual(self.resolved().unit_amount, 500)

    def test_unknown_lot(self):
        with self.assertRaises(ConfigNotFoundError):
            self.app.pricing_resolver.resolve("missing-lot")

        result = self.process(ComputeFeeCommand("missing-lot", ENTRY, ENTRY + HOUR))
        self.assertEqual(result["code"], "NOT_FOUND")

    def test_initialize_spaces_is_idempotent(self):
        spaces = self.pricing.initialize_spaces(self.auth, self.lot_id)
        again = self.pricing.initialize_spaces(self.auth, self.lot_id)

        self.assertEqual(len(spaces), 10)
        self.assertEqual([s.qr_code for s in spaces], [s.qr_code for s in again])
        self.assertEqual([s.space_number for s in spaces], list(range(1, 11)))


# ============================================================================
# FEE QUERIES
# ============================================================================

class TestComputeFee(IntegrationTestBase):

    def test_day_night_ceilings_with_cap(self):
        result = self.process(ComputeFeeCommand(self.lot_id, ENTRY, ENTRY + 24 * HOUR))

        self.assertTrue(result["success"], result)
        self.assertEqual(result["data"]["amount"], 3000)
        self.assertEqual(result["data"]["days"][0]["uncapped_amount"], 3600)

    def test_two_days(self):
        quote = self.app.parking_service.compute_fee(self.lot_id, ENTRY, ENTRY + 48 * HOUR)
        self.assertEqual(quote.amount, 6000)

    def test_command_line_fee(self):
        args = build_parser().parse_args([
            "fee", "--lot", self.lot_id,
            "--entry", "2026-01-20T03:00:00", "--exit", "2026-01-19T18:00:00Z",
        ])
        result = run_command(self.app, args)
        self.assertEqual(result["code"], "BAD_REQUEST")

        args = build_parser().parse_args([
            "fee", "--lot", self.lot_id,
            "--entry", "2026-01-20T03:00:00", "--exit", "2026-01-21T03:00:00+09:00",
        ])
        self.assertEqual(run_command(self.app, args)["data"]["amount"], 3000)

    def test_parse_instant(self):
        from zoneinfo import ZoneInfo
        tokyo = ZoneInfo("Asia/Tokyo")
        self.assertEqual(parse_instant("2026-01-20T03:00:00", tokyo), ENTRY)
        self.assertEqual(parse_instant("2026-01-19T18:00:00Z", tokyo), ENTRY)


if __name__ == '__main__':
    unittest.main()
