# File: src/qrpark/application/commands.py
"""
Command Pattern Implementation for the QR Parking System

Each driver or operator action is wrapped in a command object that can be
validated, executed against the application services and recorded. The
CommandProcessor is the single place where typed domain errors become
result codes, so every caller (CLI, tests, a future HTTP layer) sees the
same {"success", "code", "error"} shape.

Command Types:
1. Session Commands - check-in, checkout quote, checkout
2. Pricing Commands - fee computation, lot pricing updates
3. Operator Queries - dashboard, payment history
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import logging
import uuid

from ..domain.models import (
    ParkingError, PaymentFailedError, PaymentMethod, PaymentStatus, ValidationError,
)
from .auth import AuthContext
from .dtos import LotPricingUpdateDTO
from .parking_service import ParkingService
from .payments import PaymentGatewayRegistry
from .pricing_service import PricingService


@dataclass
class ServiceRegistry:
    """The services a command may use"""
    parking: ParkingService
    pricing: PricingService
    payments: PaymentGatewayRegistry


# ============================================================================
# COMMAND INTERFACES AND BASE CLASSES
# ============================================================================

class Command(ABC):
    """
    Abstract base class for all commands

    A command represents an intent to change or read the system state.
    Commands are named in the imperative (e.g., CheckInCommand).
    """

    def __init__(self, command_id: Optional[str] = None):
        self.command_id = command_id or str(uuid.uuid4())
        self.executed_at: Optional[datetime] = None
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def execute(self, services: ServiceRegistry) -> Dict[str, Any]:
        """Run the command and return its data; domain errors propagate"""
        pass

    @abstractmethod
    def validate(self) -> Tuple[bool, List[str]]:
        """
        Validate command parameters before execution

        Returns: (is_valid, error_messages)
        """
        pass

    def get_description(self) -> str:
        return self.__class__.__name__.replace("Command", "")

# ============================================================================
# COMMAND RESULT
# ============================================================================

@dataclass
class CommandResult:
    """Outcome of one processed command"""
    success: bool
    command_id: str
    command_type: str
    executed_at: datetime
    data: Optional[Dict[str, Any]] = None
    code: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": self.success,
            "command_id": self.command_id,
            "command_type": self.command_type,
            "executed_at": self.executed_at.isoformat(),
        }
        if self.success:
            result["data"] = self.data
        else:
            result["code"] = self.code
            result["error"] = self.error
        if self.metadata:
            result["metadata"] = self.metadata
        return result


# ============================================================================
# SESSION COMMANDS
# ============================================================================

class CheckInCommand(Command):
    """Command: start a session on the space behind a QR code"""

    def __init__(self, qr_code: str):
        super().__init__()
        self.qr_code = (qr_code or "").strip()

    def execute(self, services: ServiceRegistry) -> Dict[str, Any]:
        return services.parking.check_in(self.qr_code).to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        errors = []
        if not self.qr_code:
            errors.append("QR code is required")
        return len(errors) == 0, errors


class QuoteCheckoutCommand(Command):
    """Command: preview the fee of an active session"""

    def __init__(self, session_token: str):
        super().__init__()
        self.session_token = session_token

    def execute(self, services: ServiceRegistry) -> Dict[str, Any]:
        return services.parking.get_checkout_quote(self.session_token).to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        if not self.session_token:
            return False, ["Session token is required"]
        return True, []


class CompleteCheckoutCommand(Command):
    """
    Command: pay for and settle a session

    Business Operation: the quoted fee is charged through the gateway of the
    chosen payment method and the session is settled at the quoted exit time
    for exactly that amount. If settling fails for any reason the charge is
    cancelled (refunded once confirmed) before the error propagates.
    """

    def __init__(self, session_token: str, payment_method: str):
        super().__init__()
        self.session_token = session_token
        self.payment_method = payment_method

    def execute(self, services: ServiceRegistry) -> Dict[str, Any]:
        gateway = services.payments.get(self.payment_method)
        method = PaymentMethod(self.payment_method)

        quote = services.parking.get_checkout_quote(self.session_token)
        charge = gateway.create_charge(quote.amount, quote.duration_minutes, method)
        charge = gateway.confirm_charge(charge.provider_payment_id)
        if charge.status != PaymentStatus.COMPLETED:
            raise PaymentFailedError(f"Payment {charge.provider_payment_id} was not confirmed")

        try:
            result = services.parking.complete_checkout(
                self.session_token,
                method,
                provider_payment_id=charge.provider_payment_id,
                is_demo=charge.is_demo,
                exit_time_ms=quote.exit_time_ms,
                expected_amount=charge.amount,
            )
        except Exception:
            charge = gateway.cancel_charge(charge.provider_payment_id)
            self.logger.warning(
                f"Checkout failed, charge {charge.provider_payment_id} is now {charge.status.value}"
            )
            raise
        return result.to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        errors = []
        if not self.session_token:
            errors.append("Session token is required")
        if self.payment_method not in {m.value for m in PaymentMethod}:
            errors.append(f"Unsupported payment method: {self.payment_method}")
        return len(errors) == 0, errors


# ============================================================================
# PRICING COMMANDS
# ============================================================================

class ComputeFeeCommand(Command):
    """Command: price a stay with a lot's current configuration"""

    def __init__(self, lot_id: str, entry_time_ms: int, exit_time_ms: int):
        super().__init__()
        self.lot_id = lot_id
        self.entry_time_ms = entry_time_ms
        self.exit_time_ms = exit_time_ms

    def execute(self, services: ServiceRegistry) -> Dict[str, Any]:
        return services.parking.compute_fee(self.lot_id, self.entry_time_ms, self.exit_time_ms).to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        errors = []
        if not self.lot_id:
            errors.append("Lot id is required")
        if self.exit_time_ms <= self.entry_time_ms:
            errors.append("Exit time must be after entry time")
        return len(errors) == 0, errors


class UpdateLotPricingCommand(Command):
    """Command: partially update a lot's pricing"""

    def __init__(self, auth: AuthContext, lot_id: str, update: LotPricingUpdateDTO):
        super().__init__()
        self.auth = auth
        self.lot_id = lot_id
        self.update = update

    def execute(self, services: ServiceRegistry) -> Dict[str, Any]:
        return services.pricing.update_lot_pricing(self.auth, self.lot_id, self.update).to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        if not self.update.changes():
            return False, ["No pricing fields to update"]
        return True, []


# ============================================================================
# OPERATOR QUERIES
# ============================================================================

class GetDashboardCommand(Command):
    """Query: spaces with their active sessions"""

    def __init__(self, auth: AuthContext, lot_id: Optional[str] = None):
        super().__init__()
        self.auth = auth
        self.lot_id = lot_id

    def execute(self, services: ServiceRegistry) -> Dict[str, Any]:
        return services.parking.get_dashboard(self.auth, self.lot_id).to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        return True, []


class GetPaymentHistoryCommand(Command):
    """Query: newest payment records"""

    def __init__(self, auth: AuthContext, limit: int = 100):
        super().__init__()
        self.auth = auth
        self.limit = limit

    def execute(self, services: ServiceRegistry) -> Dict[str, Any]:
        records = services.parking.get_payment_history(self.auth, self.limit)
        return {"records": [record.to_dict() for record in records]}

    def validate(self) -> Tuple[bool, List[str]]:
        if not 1 <= self.limit <= 500:
            return False, ["Limit must be between 1 and 500"]
        return True, []


# ============================================================================
# COMMAND PROCESSOR
# ============================================================================

class CommandProcessor:
    """
    Processes commands:
    - validation before execution
    - typed errors mapped to result codes
    """

    def __init__(self, services: ServiceRegistry):
        self.services = services
        self.logger = logging.getLogger(self.__class__.__name__)

    def process(self, command: Command) -> Dict[str, Any]:
        self.logger.info(f"Processing command: {command.get_description()}")
        command_type = command.__class__.__name__

        try:
            is_valid, errors = command.validate()
            if not is_valid:
                raise ValidationError(f"Validation failed: {'; '.join(errors)}")

            data = command.execute(self.services)
            command.executed_at = datetime.now(timezone.utc)
            result = CommandResult(
                success=True,
                command_id=command.command_id,
                command_type=command_type,
                executed_at=command.executed_at,
                data=data,
            )
        except ParkingError as e:
            self.logger.warning(f"{command_type} failed with {e.code}: {e.message}")
            result = CommandResult(
                success=False,
                command_id=command.command_id,
                command_type=command_type,
                executed_at=datetime.now(timezone.utc),
                code=e.code,
                error=e.message,
            )
        except Exception as e:
            self.logger.error(f"Error processing command: {e}", exc_info=True)
            result = CommandResult(
                success=False,
                command_id=command.command_id,
                command_type=command_type,
                executed_at=datetime.now(timezone.utc),
                code=ParkingError.code,
                error="Internal server error",
            )
        return result.to_dict()
