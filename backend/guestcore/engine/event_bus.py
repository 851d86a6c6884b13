"""
guestcore/engine/event_bus.py

In-process publish/subscribe bus.
Carries zone transitions and reservation lifecycle events between runtime
components. Handlers run synchronously and are isolated from each other's
failures.
"""
from typing import Callable, Dict, List, Any, Protocol, Tuple
from dataclasses import dataclass, field
from datetime import datetime
import logging
import threading
import uuid

logger = logging.getLogger(__name__)

# Type aliases
EventId = str


def _generate_event_id() -> EventId:
    """Generate a unique event id."""
    return f"{datetime.now().strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex[:8]}"


class EventHandler(Protocol):
    """Event handler protocol."""

    def __call__(self, event: "Event") -> None:
        ...


@dataclass
class Event:
    """
    Bus event.

    Attributes:
        event_type: Event type (e.g. "zone.entered")
        timestamp: Event timestamp
        data: Event payload
        source: Producing component
        event_id: Unique event id
    """

    event_type: str
    timestamp: datetime
    data: Dict[str, Any]
    source: str = ""
    event_id: EventId = field(default_factory=_generate_event_id)


@dataclass
class PublishResult:
    """
    Result of publishing one event.

    Attributes:
        event_type: Event type
        subscriber_count: Number of handlers invoked
        success_count: Handlers that returned normally
        failure_count: Handlers that raised
        errors: (handler, exception) pairs
    """

    event_type: str
    subscriber_count: int
    success_count: int
    failure_count: int
    errors: List[Tuple[Callable, Exception]] = field(default_factory=list)


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventBus:
    """
    Event bus, one instance per runtime.

    Features:
    - Thread-safe subscription management
    - Handler exception isolation

    Example:
        >>> bus = EventBus()
        >>> bus.subscribe("zone.entered", lambda e: print(e.data))
        >>> bus.emit("zone.entered", {"zone_id": "hotel-main"})
    """

    def __init__(self):
        self._subscribers: Dict[str, List[EventHandler]] = {}
        self._subscriber_lock = threading.RLock()
        logger.debug("EventBus initialized")

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """
        Subscribe a handler to an event type.

        Returns:
            A callable that removes the subscription.
        """
        with self._subscriber_lock:
            handlers = self._subscribers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)
                logger.debug(f"Handler {_handler_name(handler)} subscribed to {event_type}")

        def _unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return _unsubscribe

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        with self._subscriber_lock:
            if event_type in self._subscribers and handler in self._subscribers[event_type]:
                self._subscribers[event_type].remove(handler)
                logger.debug(f"Handler {_handler_name(handler)} unsubscribed from {event_type}")

    def publish(self, event: Event) -> PublishResult:
        """
        Publish an event to its subscribers synchronously.

        A failing handler does not prevent the remaining handlers from
        running; failures are collected in the result.
        """
        with self._subscriber_lock:
            handlers = list(self._subscribers.get(event.event_type, []))

        result = PublishResult(
            event_type=event.event_type,
            subscriber_count=len(handlers),
            success_count=0,
            failure_count=0,
            errors=[],
        )

        for handler in handlers:
            try:
                handler(event)
                result.success_count += 1
            except Exception as e:
                result.failure_count += 1
                result.errors.append((handler, e))
                logger.error(
                    f"Event handler {_handler_name(handler)} error for {event.event_type}: {e}",
                    exc_info=True,
                )

        return result

    def emit(self, event_type: str, data: Dict[str, Any], source: str = "") -> PublishResult:
        """Shortcut: build an Event stamped with the current time and publish it."""
        return self.publish(
            Event(event_type=event_type, timestamp=datetime.now(), data=data, source=source)
        )


__all__ = [
    "EventId",
    "EventHandler",
    "Event",
    "PublishResult",
    "EventBus",
]
