# File: src/qrpark/infrastructure/messaging.py
"""
Messaging Infrastructure for the QR Parking System

In-process publish/subscribe for domain events. Services publish only
after their transaction committed, so handlers never see a state that
was rolled back. A failing handler is logged and does not affect the
caller or the other handlers.
"""

from abc import ABC, abstractmethod
from typing import Dict, List
import logging

from ..domain.models import DomainEvent, VehicleCheckedInEvent, VehicleCheckedOutEvent


# ============================================================================
# EVENT HANDLERS
# ============================================================================

class EventHandler(ABC):
    """Abstract base class for event handlers"""

    @abstractmethod
    def handle(self, event: DomainEvent) -> None:
        pass

    def can_handle(self, event: DomainEvent) -> bool:
        return True


class ParkingEventHandler(EventHandler):
    """Writes an audit line for every check-in and check-out"""

    def __init__(self):
        self._logger = logging.getLogger(self.__class__.__name__)

    def handle(self, event: DomainEvent) -> None:
        if isinstance(event, VehicleCheckedInEvent):
            self._logger.info(
                f"Space {event.space_number} of lot {event.lot_id} occupied "
                f"(session {event.session_id})"
            )
        elif isinstance(event, VehicleCheckedOutEvent):
            self._logger.info(
                f"Session {event.session_id} settled: {event.amount} yen for "
                f"{event.duration_minutes} min via {event.payment_method.value}"
            )


class RecordingEventHandler(EventHandler):
    """Keeps every handled event in memory"""

    def __init__(self):
        self.events: List[DomainEvent] = []

    def handle(self, event: DomainEvent) -> None:
        self.events.append(event)


# ============================================================================
# EVENT BUS (In-memory)
# ============================================================================

class EventBus:
    """
    In-memory event bus for intra-process event publishing

    Handlers subscribe by event type string, e.g. "vehicle.checked_in".
    """

    def __init__(self):
        self._subscribers: Dict[str, List[EventHandler]] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._subscribers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)
            self._logger.debug(f"Subscribed {handler.__class__.__name__} to {event_type}")

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            self._logger.debug(f"Unsubscribed {handler.__class__.__name__} from {event_type}")

    def publish(self, event: DomainEvent) -> None:
        self._logger.info(f"Publishing event: {event.event_type} (ID: {event.event_id})")

        for handler in list(self._subscribers.get(event.event_type, [])):
            if not handler.can_handle(event):
                continue
            try:
                handler.handle(event)
            except Exception as e:
                self._logger.error(
                    f"Error handling event {event.event_type} with {handler.__class__.__name__}: {e}",
                    exc_info=True,
                )

    def publish_all(self, events: List[DomainEvent]) -> None:
        for event in events:
            self.publish(event)

    def clear_subscribers(self) -> None:
        """Clear all subscribers (for testing)"""
        self._subscribers.clear()


def create_default_event_bus() -> EventBus:
    """Bus with the audit handler subscribed to every parking event"""
    bus = EventBus()
    handler = ParkingEventHandler()
    for event_class in (VehicleCheckedInEvent, VehicleCheckedOutEvent):
        bus.subscribe(event_class.event_type, handler)
    return bus
