#!/usr/bin/env python3
"""
Unit Tests for the application layer

Components are tested in isolation; services and clients are mocked.
"""

import json
import os
import unittest
import sys
from pathlib import Path
from unittest.mock import Mock, patch

import pydantic
import redis
from sqlalchemy.exc import OperationalError

# Add the src directory to the Python path
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from qrpark.application.auth import (
    AuthContext, DemoPrincipalResolver, Principal, Role, StrictPrincipalResolver,
    create_principal_resolver,
)
from qrpark.application.commands import (
    CheckInCommand, CommandProcessor, CompleteCheckoutCommand, ComputeFeeCommand,
    GetPaymentHistoryCommand, ServiceRegistry, UpdateLotPricingCommand,
)
from qrpark.application.dtos import (
    CheckInResultDTO, CheckoutResultDTO, LotPricingUpdateDTO, TimePeriodDTO,
)
from qrpark.application.payments import DemoPaymentGateway, PaymentGatewayRegistry, PaymentGateway
from qrpark.application.pricing_service import PricingConfigResolver
from qrpark.config import Settings
from qrpark.domain.models import (
    AuthenticationRequiredError, BillingDayMode, FeeChangedError, PaymentMethod, PaymentStatus,
    PermissionDeniedError, PricingConfig, SessionAlreadyCompletedError,
    SpaceOccupiedError, TimePeriod, UnsupportedPaymentMethodError,
    VehicleCheckedInEvent,
)
from qrpark.infrastructure.messaging import EventBus, RecordingEventHandler
from qrpark.infrastructure.repositories import RedisPricingCache


# ============================================================================
# BASE TEST CLASSES
# ============================================================================

class UnitTestBase(unittest.TestCase):
    """Base class for unit tests with common setup"""

    def setUp(self):
        self.mock_parking = Mock()
        self.mock_pricing = Mock()
        self.payments = PaymentGatewayRegistry.demo()
        self.services = ServiceRegistry(
            parking=self.mock_parking, pricing=self.mock_pricing, payments=self.payments
        )
        self.processor = CommandProcessor(self.services)


# ============================================================================
# AUTH CONTEXT
# ============================================================================

class TestAuthContext(unittest.TestCase):
    """Unit tests for principal resolution and role checks"""

    def test_demo_resolver_falls_back_to_demo_admin(self):
        auth = DemoPrincipalResolver("demo-admin").resolve(None)

        principal = auth.require_operator()
        self.assertEqual(principal.user_id, "demo-admin")
        self.assertEqual(principal.role, Role.ADMIN)
        self.assertTrue(principal.is_demo)

    def test_demo_resolver_keeps_real_principal(self):
        owner = Principal(user_id="owner-1", role=Role.OWNER)
        self.assertEqual(DemoPrincipalResolver().resolve(owner).principal, owner)

    def test_strict_resolver_has_no_fallback(self):
        auth = StrictPrincipalResolver().resolve(None)

        self.assertFalse(auth.is_authenticated)
        with self.assertRaises(AuthenticationRequiredError):
            auth.require_operator()

    def test_driver_is_not_an_operator(self):
        auth = AuthContext(Principal(user_id="driver-1", role=Role.DRIVER))
        with self.assertRaises(PermissionDeniedError) as ctx:
            auth.require_operator()
        self.assertEqual(ctx.exception.code, "FORBIDDEN")

    def test_resolver_factory(self):
        self.assertIsInstance(create_principal_resolver("demo"), DemoPrincipalResolver)
        self.assertIsInstance(create_principal_resolver("strict"), StrictPrincipalResolver)
        with self.assertRaises(ValueError):
            create_principal_resolver("open")


# ============================================================================
# PAYMENT GATEWAYS
# ============================================================================

class TestPayments(unittest.TestCase):
    """Unit tests for the demo gateway and the registry"""

    def setUp(self):
        self.gateway = DemoPaymentGateway()

    def test_charge_lifecycle(self):
        charge = self.gateway.create_charge(600, 61, PaymentMethod.DEMO)
        self.assertEqual(charge.status, PaymentStatus.PENDING)
        self.assertTrue(charge.provider_payment_id.startswith("DEMO-"))

        self.gateway.confirm_charge(charge.provider_payment_id)
        self.assertEqual(self.gateway.get_status(charge.provider_payment_id), PaymentStatus.COMPLETED)

    def test_cancel_pending_charge(self):
        charge = self.gateway.create_charge(300, 10, PaymentMethod.PAYPAY)
        self.gateway.cancel_charge(charge.provider_payment_id)
        self.assertEqual(self.gateway.get_status(charge.provider_payment_id), PaymentStatus.FAILED)

    def test_cancel_confirmed_charge_refunds(self):
        charge = self.gateway.create_charge(600, 61, PaymentMethod.CREDIT_CARD)
        self.gateway.confirm_charge(charge.provider_payment_id)

        with self.assertLogs("DemoPaymentGateway", level="INFO"):
            cancelled = self.gateway.cancel_charge(charge.provider_payment_id)

        self.assertEqual(cancelled.status, PaymentStatus.REFUNDED)
        self.assertEqual(self.gateway.get_status(charge.provider_payment_id), PaymentStatus.REFUNDED)

    def test_negative_amount_rejected(self):
        with self.assertRaises(ValueError):
            self.gateway.create_charge(-1, 10, PaymentMethod.DEMO)

    def test_unknown_charge(self):
        with self.assertRaises(ValueError):
            self.gateway.confirm_charge("DEMO-missing")

    def test_registry_selects_gateway(self):
        registry = PaymentGatewayRegistry.demo()
        self.assertIsInstance(registry.get("credit_card"), PaymentGateway)
        self.assertIs(registry.get(PaymentMethod.DEMO), registry.get("paypay"))

    def test_registry_rejects_unknown_method(self):
        with self.assertRaises(UnsupportedPaymentMethodError):
            PaymentGatewayRegistry.demo().get("bitcoin")
        with self.assertRaises(UnsupportedPaymentMethodError):
            PaymentGatewayRegistry().get("demo")


# ============================================================================
# COMMAND PROCESSOR
# ============================================================================

class TestCommandProcessor(UnitTestBase):
    """Unit tests for command execution and result codes"""

    def test_check_in_success(self):
        self.mock_parking.check_in.return_value = CheckInResultDTO(
            session_token="token", space_number=4, entry_time_ms=1000
        )

        result = self.processor.process(CheckInCommand(" PARK-04-abcdefgh "))

        self.assertTrue(result["success"])
        self.assertEqual(result["data"]["session_token"], "token")
        self.mock_parking.check_in.assert_called_once_with("PARK-04-abcdefgh")

    def test_domain_error_becomes_code(self):
        self.mock_parking.check_in.side_effect = SpaceOccupiedError("Space 4 is already occupied")

        result = self.processor.process(CheckInCommand("PARK-04-abcdefgh"))

        self.assertFalse(result["success"])
        self.assertEqual(result["code"], "CONFLICT")
        self.assertEqual(result["error"], "Space 4 is already occupied")

    def test_unexpected_error_is_internal(self):
        self.mock_parking.check_in.side_effect = RuntimeError("database exploded")

        with self.assertLogs("CommandProcessor", level="ERROR"):
            result = self.processor.process(CheckInCommand("PARK-04-abcdefgh"))

        self.assertEqual(result["code"], "INTERNAL_SERVER_ERROR")
        self.assertNotIn("exploded", result["error"])

    def test_invalid_command_is_not_executed(self):
        result = self.processor.process(CheckInCommand(""))

        self.assertEqual(result["code"], "BAD_REQUEST")
        self.mock_parking.check_in.assert_not_called()

    def test_compute_fee_validation(self):
        result = self.processor.process(ComputeFeeCommand("lot", 5000, 5000))
        self.assertEqual(result["code"], "BAD_REQUEST")
        self.mock_parking.compute_fee.assert_not_called()

    def test_history_limit_validation(self):
        auth = AuthContext(Principal("admin", Role.ADMIN))
        result = self.processor.process(GetPaymentHistoryCommand(auth, limit=501))
        self.assertEqual(result["code"], "BAD_REQUEST")

    def test_update_without_fields_rejected(self):
        auth = AuthContext(Principal("admin", Role.ADMIN))
        result = self.processor.process(UpdateLotPricingCommand(auth, "lot", LotPricingUpdateDTO()))
        self.assertEqual(result["code"], "BAD_REQUEST")
        self.mock_pricing.update_lot_pricing.assert_not_called()


class TestCompleteCheckoutCommand(UnitTestBase):
    """Checkout goes through the payment gateway before the session completes"""

    def setUp(self):
        super().setUp()
        self.mock_parking.get_checkout_quote.return_value = Mock(
            amount=600, duration_minutes=61, exit_time_ms=3_660_000
        )
        self.gateway = self.payments.get("demo")

    def charged_payment_id(self):
        return self.mock_parking.complete_checkout.call_args.kwargs["provider_payment_id"]

    def test_charge_confirmed_then_session_completed(self):
        self.mock_parking.complete_checkout.return_value = CheckoutResultDTO(
            payment_id="p", transaction_id="TXN-1", amount=600, duration_minutes=61, exit_time_ms=1
        )

        result = self.processor.process(CompleteCheckoutCommand("token", "demo"))

        self.assertTrue(result["success"])
        kwargs = self.mock_parking.complete_checkout.call_args.kwargs
        self.assertTrue(kwargs["is_demo"])
        self.assertEqual(self.gateway.get_status(kwargs["provider_payment_id"]), PaymentStatus.COMPLETED)

    def test_settles_at_quoted_exit_for_charged_amount(self):
        self.mock_parking.complete_checkout.return_value = CheckoutResultDTO(
            payment_id="p", transaction_id="TXN-1", amount=600, duration_minutes=61, exit_time_ms=3_660_000
        )

        self.processor.process(CompleteCheckoutCommand("token", "demo"))

        kwargs = self.mock_parking.complete_checkout.call_args.kwargs
        self.assertEqual(kwargs["exit_time_ms"], 3_660_000)
        self.assertEqual(kwargs["expected_amount"], 600)

    def test_failed_checkout_refunds_charge(self):
        self.mock_parking.complete_checkout.side_effect = SessionAlreadyCompletedError("already settled")

        result = self.processor.process(CompleteCheckoutCommand("token", "demo"))

        self.assertEqual(result["code"], "BAD_REQUEST")
        self.assertEqual(result["error"], "already settled")
        self.assertEqual(self.gateway.get_status(self.charged_payment_id()), PaymentStatus.REFUNDED)

    def test_changed_fee_refunds_charge(self):
        self.mock_parking.complete_checkout.side_effect = FeeChangedError("fee is 900 yen, 600 yen was charged")

        result = self.processor.process(CompleteCheckoutCommand("token", "demo"))

        self.assertEqual(result["code"], "CONFLICT")
        self.assertEqual(self.gateway.get_status(self.charged_payment_id()), PaymentStatus.REFUNDED)

    def test_database_error_refunds_charge(self):
        self.mock_parking.complete_checkout.side_effect = OperationalError(
            "UPDATE parking_sessions", {}, Exception("database is locked")
        )

        with self.assertLogs("CommandProcessor", level="ERROR"):
            result = self.processor.process(CompleteCheckoutCommand("token", "demo"))

        self.assertEqual(result["code"], "INTERNAL_SERVER_ERROR")
        self.assertEqual(self.gateway.get_status(self.charged_payment_id()), PaymentStatus.REFUNDED)

    def test_unknown_payment_method(self):
        result = self.processor.process(CompleteCheckoutCommand("token", "bitcoin"))

        self.assertEqual(result["code"], "BAD_REQUEST")
        self.mock_parking.get_checkout_quote.assert_not_called()


# ============================================================================
# DTOs
# ============================================================================

class TestDTOs(unittest.TestCase):
    """Validation at creation"""

    def test_partial_update_keeps_explicit_nulls(self):
        update = LotPricingUpdateDTO(pricing_amount=None, max_daily_amount=2000)
        self.assertEqual(update.changes(), {"pricing_amount": None, "max_daily_amount": 2000})

    def test_enabled_flag_cannot_be_null(self):
        with self.assertRaises(pydantic.ValidationError):
            LotPricingUpdateDTO(max_daily_amount_enabled=None)

    def test_period_hours_validated(self):
        with self.assertRaises(pydantic.ValidationError):
            TimePeriodDTO(start_hour=24, end_hour=5, max_amount=100)
        with self.assertRaises(pydantic.ValidationError):
            TimePeriodDTO(start_hour=5, end_hour=19, max_amount=-1)

    def test_json_round_trip(self):
        dto = CheckInResultDTO(session_token="t", space_number=1, entry_time_ms=10)
        self.assertEqual(CheckInResultDTO.from_json(dto.to_json()), dto)


# ============================================================================
# PRICING CACHE AND RESOLVER
# ============================================================================

class TestRedisPricingCache(unittest.TestCase):
    """Unit tests for the redis-backed pricing cache"""

    def setUp(self):
        self.client = Mock()
        self.cache = RedisPricingCache(self.client, ttl_seconds=120)
        self.config = PricingConfig(unit_minutes=30, time_periods=(TimePeriod(5, 19, 3000),))

    def test_set_writes_json_with_ttl(self):
        self.cache.set("lot-1", self.config)

        key, value = self.client.set.call_args.args
        self.assertEqual(key, "qrpark:pricing:lot-1")
        self.assertEqual(json.loads(value), self.config.to_dict())
        self.assertEqual(self.client.set.call_args.kwargs, {"ex": 120})

    def test_hit_and_miss(self):
        self.client.get.return_value = None
        self.assertIsNone(self.cache.get("lot-1"))

        self.client.get.return_value = json.dumps(self.config.to_dict()).encode()
        self.assertEqual(self.cache.get("lot-1"), self.config)

    def test_redis_failure_degrades_to_miss(self):
        self.client.get.side_effect = redis.ConnectionError("down")
        self.client.delete.side_effect = redis.ConnectionError("down")

        with self.assertLogs("RedisPricingCache", level="WARNING"):
            self.assertIsNone(self.cache.get("lot-1"))
            self.cache.invalidate("lot-1")

    def test_invalidate_deletes_key(self):
        self.cache.invalidate("lot-1")
        self.client.delete.assert_called_once_with("qrpark:pricing:lot-1")


class TestPricingConfigResolverCache(unittest.TestCase):

    def test_cached_config_skips_database(self):
        cache = Mock()
        cache.get.return_value = PricingConfig(unit_amount=500)
        uow_factory = Mock()

        resolver = PricingConfigResolver(uow_factory, cache=cache)

        self.assertEqual(resolver.resolve("lot-1").unit_amount, 500)
        uow_factory.assert_not_called()


# ============================================================================
# EVENT BUS
# ============================================================================

class TestEventBus(unittest.TestCase):

    def setUp(self):
        self.bus = EventBus()
        self.event = VehicleCheckedInEvent("lot", "space", 1, "session", 0)

    def test_subscribers_receive_events_of_their_type(self):
        recorder = RecordingEventHandler()
        self.bus.subscribe("vehicle.checked_in", recorder)
        self.bus.subscribe("vehicle.checked_in", recorder)

        self.bus.publish(self.event)

        self.assertEqual(recorder.events, [self.event])

    def test_failing_handler_does_not_stop_others(self):
        failing = Mock()
        failing.can_handle.return_value = True
        failing.handle.side_effect = RuntimeError("handler bug")
        recorder = RecordingEventHandler()
        self.bus.subscribe("vehicle.checked_in", failing)
        self.bus.subscribe("vehicle.checked_in", recorder)

        with self.assertLogs("EventBus", level="ERROR"):
            self.bus.publish(self.event)

        self.assertEqual(recorder.events, [self.event])

    def test_unsubscribe(self):
        recorder = RecordingEventHandler()
        self.bus.subscribe("vehicle.checked_in", recorder)
        self.bus.unsubscribe("vehicle.checked_in", recorder)

        self.bus.publish(self.event)
        self.assertEqual(recorder.events, [])


# ============================================================================
# CONFIGURATION
# ============================================================================

class TestSettings(unittest.TestCase):
    """Settings from the environment"""

    def load(self, **env):
        with patch.dict(os.environ, env, clear=True):
            return Settings.from_env(os.devnull)

    def test_defaults(self):
        settings = self.load()
        self.assertEqual(settings.database_url, "sqlite:///qrpark.db")
        self.assertEqual(settings.business_timezone, "Asia/Tokyo")
        self.assertEqual(settings.billing_day_mode, BillingDayMode.ENTRY)
        self.assertIsNone(settings.redis_url)
        self.assertTrue(settings.is_demo)

    def test_overrides(self):
        settings = self.load(
            BILLING_DAY_MODE="calendar",
            BUSINESS_TIMEZONE="Europe/Berlin",
            DEFAULT_PRICING_AMOUNT="200",
            AUTH_MODE="strict",
            REDIS_URL="redis://localhost:6379/0",
            LOG_LEVEL="debug",
        )
        self.assertEqual(settings.billing_day_mode, BillingDayMode.CALENDAR)
        self.assertEqual(settings.default_pricing_amount, 200)
        self.assertFalse(settings.is_demo)
        self.assertEqual(settings.redis_url, "redis://localhost:6379/0")
        self.assertEqual(settings.log_level, "DEBUG")

    def test_invalid_values(self):
        invalid = [
            {"BUSINESS_TIMEZONE": "Mars/Olympus"},
            {"BILLING_DAY_MODE": "weekly"},
            {"AUTH_MODE": "open"},
            {"DEFAULT_PRICING_UNIT_MINUTES": "0"},
        ]
        for env in invalid:
            with self.subTest(env=env):
                with self.assertRaises(ValueError):
                    self.load(**env)


if __name__ == '__main__':
    unittest.main()
