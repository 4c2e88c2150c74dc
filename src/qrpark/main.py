# File: src/qrpark/main.py
"""
Main application entry point for the QR Parking System

Wires settings, persistence, the fee engine and the services together and
exposes them through the `qrpark` command line.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo
import argparse
import json
import logging
import os
import sys

from .config import Settings
from .domain.models import ParkingError, to_epoch_ms
from .domain.strategies import PricingStrategyFactory
from .infrastructure.messaging import create_default_event_bus
from .infrastructure.repositories import RedisPricingCache, RepositoryFactory, UnitOfWork
from .application.auth import AuthContext, Principal, create_principal_resolver
from .application.commands import (
    CheckInCommand, CommandProcessor, CompleteCheckoutCommand, ComputeFeeCommand,
    GetDashboardCommand, GetPaymentHistoryCommand, QuoteCheckoutCommand, ServiceRegistry,
)
from .application.dtos import LotPricingUpdateDTO, TimePeriodDTO
from .application.parking_service import ParkingService
from .application.payments import PaymentGatewayRegistry
from .application.pricing_service import PricingConfigResolver, PricingService


def setup_logging(settings: Settings) -> logging.Logger:
    """Setup application logging configuration"""
    log_dir = settings.log_dir
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(os.path.join(log_dir, 'qrpark.log')),
            logging.StreamHandler(sys.stdout)
        ]
    )
    return logging.getLogger(__name__)


class ParkingApplication:
    """Main application controller that sets up all components"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        uow_factory: Optional[Callable[[], UnitOfWork]] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.logger = logging.getLogger(self.__class__.__name__)
        self.setup_components(uow_factory, clock)

    def setup_components(self, uow_factory=None, clock=None):
        """Initialize all application components with dependency injection"""
        settings = self.settings

        # 1. Persistence
        self.uow_factory = uow_factory or RepositoryFactory.create_uow_factory(settings.database_url)
        cache = None
        if settings.redis_url:
            cache = RedisPricingCache.from_url(settings.redis_url, settings.pricing_cache_ttl_seconds)
            self.logger.info("Pricing cache enabled")

        # 2. Fee engine
        self.pricing_resolver = PricingConfigResolver(
            self.uow_factory,
            default_unit_minutes=settings.default_pricing_unit_minutes,
            default_unit_amount=settings.default_pricing_amount,
            cache=cache,
        )
        self.calculator = PricingStrategyFactory.create_calculator(
            settings.billing_day_mode, settings.business_timezone
        )

        # 3. Application services
        self.event_bus = create_default_event_bus()
        self.parking_service = ParkingService(
            self.uow_factory, self.pricing_resolver, self.calculator,
            event_bus=self.event_bus, clock=clock,
        )
        self.pricing_service = PricingService(self.uow_factory, self.pricing_resolver)
        self.payments = PaymentGatewayRegistry.demo()
        self.principal_resolver = create_principal_resolver(settings.auth_mode, settings.demo_admin_id)
        self.processor = CommandProcessor(
            ServiceRegistry(parking=self.parking_service, pricing=self.pricing_service, payments=self.payments)
        )
        self.logger.info(
            f"Components initialized (billing day: {settings.billing_day_mode.value}, "
            f"timezone: {settings.business_timezone}, auth: {settings.auth_mode})"
        )

    def auth(self, principal: Optional[Principal] = None) -> AuthContext:
        return self.principal_resolver.resolve(principal)

    def create_demo_lot(self, name: str = "Demo Parking", with_periods: bool = False) -> Dict[str, Any]:
        """Owner, lot and spaces; optionally the day/night ceilings with a daily maximum"""
        auth = self.auth()
        owner_id = self.pricing_service.create_owner(auth, "Demo Owner")
        lot_id = self.pricing_service.create_lot(
            auth, owner_id, name, total_spaces=self.settings.spaces_per_lot
        )
        if with_periods:
            self.pricing_service.add_time_period(auth, lot_id, TimePeriodDTO(start_hour=5, end_hour=19, max_amount=3000))
            self.pricing_service.add_time_period(auth, lot_id, TimePeriodDTO(start_hour=19, end_hour=5, max_amount=1300))
            self.pricing_service.update_lot_pricing(
                auth, lot_id, LotPricingUpdateDTO(max_daily_amount=3000, max_daily_amount_enabled=True)
            )

        spaces = self.parking_service.list_spaces(lot_id)
        self.logger.info(f"Demo lot {lot_id} created with {len(spaces)} spaces")
        return {
            "owner_id": owner_id,
            "lot_id": lot_id,
            "spaces": [{"space_number": s.space_number, "qr_code": s.qr_code} for s in spaces],
            "pricing": self.pricing_service.get_pricing_settings(auth, lot_id).resolved.to_dict(),
        }


# ============================================================================
# COMMAND LINE
# ============================================================================

def parse_instant(value: str, tz: ZoneInfo) -> int:
    """ISO-8601 to epoch ms; naive values are read in the business timezone"""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=tz)
    return to_epoch_ms(moment)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qrpark", description="QR code parking: fees, check-in and checkout")
    parser.add_argument("--env-file", help="Read settings from this .env file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_demo = subparsers.add_parser("init-demo", help="Create a demo owner, lot and spaces")
    init_demo.add_argument("--name", default="Demo Parking", help="Lot name (default: Demo Parking)")
    init_demo.add_argument("--with-periods", action="store_true",
                           help="Add 5-19 / 19-5 ceilings and a 3000 yen daily maximum")

    fee = subparsers.add_parser("fee", help="Compute the fee of a stay")
    fee.add_argument("--lot", required=True, help="Parking lot id")
    fee.add_argument("--entry", required=True, help="Entry time, ISO-8601")
    fee.add_argument("--exit", required=True, help="Exit time, ISO-8601")

    check_in = subparsers.add_parser("check-in", help="Start a session by QR code")
    check_in.add_argument("qr_code")

    quote = subparsers.add_parser("quote", help="Preview the fee of an active session")
    quote.add_argument("session_token")

    checkout = subparsers.add_parser("checkout", help="Pay and settle a session")
    checkout.add_argument("session_token")
    checkout.add_argument("--method", default="demo", help="Payment method (default: demo)")

    dashboard = subparsers.add_parser("dashboard", help="Show spaces and active sessions")
    dashboard.add_argument("--lot", help="Limit to one parking lot")

    history = subparsers.add_parser("history", help="Show recent payments")
    history.add_argument("--limit", type=int, default=100, help="Number of records (1-500, default: 100)")

    return parser


def run_command(app: ParkingApplication, args: argparse.Namespace) -> Dict[str, Any]:
    if args.command == "init-demo":
        try:
            return {"success": True, "data": app.create_demo_lot(args.name, args.with_periods)}
        except ParkingError as e:
            return {"success": False, "code": e.code, "error": e.message}

    if args.command == "fee":
        tz = ZoneInfo(app.settings.business_timezone)
        try:
            entry_ms = parse_instant(args.entry, tz)
            exit_ms = parse_instant(args.exit, tz)
        except ValueError as e:
            return {"success": False, "code": "BAD_REQUEST", "error": f"Invalid timestamp: {e}"}
        command = ComputeFeeCommand(args.lot, entry_ms, exit_ms)
    elif args.command == "check-in":
        command = CheckInCommand(args.qr_code)
    elif args.command == "quote":
        command = QuoteCheckoutCommand(args.session_token)
    elif args.command == "checkout":
        command = CompleteCheckoutCommand(args.session_token, args.method)
    elif args.command == "dashboard":
        command = GetDashboardCommand(app.auth(), args.lot)
    else:
        command = GetPaymentHistoryCommand(app.auth(), args.limit)

    return app.processor.process(command)


def main(argv=None) -> int:
    """Main entry point for the application"""
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env(args.env_file)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    logger = setup_logging(settings)
    try:
        app = ParkingApplication(settings)
        result = run_command(app, args)
    except Exception as e:
        logger.error(f"Fatal error in main: {e}", exc_info=True)
        return 1

    print(json.dumps(result, indent=2, ensure_ascii=False, default=str))
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    sys.exit(main())
