# File: src/qrpark/application/payments.py
"""
Payment gateway boundary

The fee engine's (amount, duration_minutes) is handed to a gateway before
a checkout may complete. Only the demo gateway ships here; real providers
implement the same interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict
import logging

from ..domain.aggregates import generate_token
from ..domain.models import PaymentMethod, PaymentStatus, UnsupportedPaymentMethodError


@dataclass
class Charge:
    """A charge as tracked by a gateway"""
    provider_payment_id: str
    amount: int
    duration_minutes: int
    payment_method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    is_demo: bool = False


class PaymentGateway(ABC):
    """Interface every payment provider adapter implements"""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def create_charge(self, amount: int, duration_minutes: int, payment_method: PaymentMethod) -> Charge:
        pass

    @abstractmethod
    def confirm_charge(self, provider_payment_id: str) -> Charge:
        pass

    @abstractmethod
    def cancel_charge(self, provider_payment_id: str) -> Charge:
        pass

    @abstractmethod
    def get_status(self, provider_payment_id: str) -> PaymentStatus:
        pass


class DemoPaymentGateway(PaymentGateway):
    """In-memory gateway that confirms every charge"""

    def __init__(self):
        super().__init__()
        self._charges: Dict[str, Charge] = {}

    def create_charge(self, amount: int, duration_minutes: int, payment_method: PaymentMethod) -> Charge:
        if amount < 0:
            raise ValueError(f"Charge amount cannot be negative: {amount}")
        charge = Charge(
            provider_payment_id=f"DEMO-{generate_token(16)}",
            amount=amount,
            duration_minutes=duration_minutes,
            payment_method=payment_method,
            is_demo=True,
        )
        self._charges[charge.provider_payment_id] = charge
        self.logger.info(f"Created demo charge {charge.provider_payment_id} for {amount} yen")
        return charge

    def get_charge(self, provider_payment_id: str) -> Charge:
        try:
            return self._charges[provider_payment_id]
        except KeyError:
            raise ValueError(f"Unknown charge: {provider_payment_id}")

    def confirm_charge(self, provider_payment_id: str) -> Charge:
        charge = self.get_charge(provider_payment_id)
        if charge.status == PaymentStatus.PENDING:
            charge.status = PaymentStatus.COMPLETED
        return charge

    def cancel_charge(self, provider_payment_id: str) -> Charge:
        """Void a pending charge, refund a confirmed one"""
        charge = self.get_charge(provider_payment_id)
        if charge.status == PaymentStatus.PENDING:
            charge.status = PaymentStatus.FAILED
        elif charge.status == PaymentStatus.COMPLETED:
            charge.status = PaymentStatus.REFUNDED
            self.logger.info(f"Refunded demo charge {provider_payment_id} of {charge.amount} yen")
        return charge

    def get_status(self, provider_payment_id: str) -> PaymentStatus:
        return self.get_charge(provider_payment_id).status


class PaymentGatewayRegistry:
    """Selects the gateway responsible for a payment method"""

    def __init__(self):
        self._gateways: Dict[PaymentMethod, PaymentGateway] = {}

    def register(self, payment_method: PaymentMethod, gateway: PaymentGateway) -> None:
        self._gateways[PaymentMethod(payment_method)] = gateway

    def get(self, payment_method) -> PaymentGateway:
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise UnsupportedPaymentMethodError(f"Unknown payment method: {payment_method}")
        if method not in self._gateways:
            raise UnsupportedPaymentMethodError(f"No gateway configured for {method.value}")
        return self._gateways[method]

    @classmethod
    def demo(cls) -> 'PaymentGatewayRegistry':
        """Every method served by the demo gateway"""
        registry = cls()
        gateway = DemoPaymentGateway()
        for method in PaymentMethod:
            registry.register(method, gateway)
        return registry
