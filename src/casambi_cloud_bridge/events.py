"""Event bus for pub/sub delivery of connection and session events."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from .logging import get_logger


@dataclass(frozen=True)
class BridgeEvent:
    """Event with type, timestamp, and data."""

    event_type: str
    timestamp: str
    data: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, event_type: str, data: Optional[Mapping[str, Any]] = None) -> "BridgeEvent":
        """Create a new event stamped with the current time."""
        return cls(
            event_type=event_type,
            timestamp=datetime.now(tz=timezone.utc).isoformat(),
            data=dict(data or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        return {
            "event": self.event_type,
            "timestamp": self.timestamp,
            "data": dict(self.data),
        }


Subscriber = Callable[[BridgeEvent], Any]


class EventBus:
    """
    Pub/sub event bus.

    Subscribers register for a specific event type or for every event with
    '*'. Delivery happens synchronously in publish order; coroutine
    subscribers are scheduled as tasks on the running loop. A failing
    subscriber is logged and does not stop delivery to the others.
    """

    def __init__(self, name: str = "bus") -> None:
        self.name = name
        self.logger = get_logger("casambi.events")
        self._subscribers: Dict[str, Set[Subscriber]] = defaultdict(set)
        self._wildcard_subscribers: Set[Subscriber] = set()
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def publish(self, event_type: str, data: Optional[Mapping[str, Any]] = None) -> BridgeEvent:
        """
        Publish event to all subscribers.

        Args:
            event_type: Type of event (e.g., 'unitChanged', 'close')
            data: Event data mapping

        Returns:
            The published event
        """
        event = BridgeEvent.create(event_type, data)
        subscribers = list(self._subscribers.get(event_type, ())) + list(self._wildcard_subscribers)
        for callback in subscribers:
            try:
                if asyncio.iscoroutinefunction(callback):
                    task = asyncio.get_running_loop().create_task(callback(event))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                else:
                    callback(event)
            except Exception:
                self.logger.exception(
                    "Event subscriber failed",
                    extra={"bus": self.name, "event_type": event_type},
                )
        return event

    def subscribe(self, event_type: str, callback: Subscriber) -> Callable[[], None]:
        """
        Subscribe to specific event type.

        Args:
            event_type: Type of event to subscribe to, or '*' for all events
            callback: Function to call when event is published (can be async)

        Returns:
            Unsubscribe function
        """
        if event_type == "*":
            self._wildcard_subscribers.add(callback)
        else:
            self._subscribers[event_type].add(callback)

        def unsubscribe() -> None:
            if event_type == "*":
                self._wildcard_subscribers.discard(callback)
            else:
                self._subscribers[event_type].discard(callback)

        return unsubscribe

    def subscriber_count(self, event_type: Optional[str] = None) -> int:
        if event_type is None:
            total = len(self._wildcard_subscribers)
            total += sum(len(subs) for subs in self._subscribers.values())
            return total
        if event_type == "*":
            return len(self._wildcard_subscribers)
        return len(self._subscribers.get(event_type, set()))

    def event_types(self) -> List[str]:
        """Get list of event types with active subscribers."""
        return [name for name, subs in self._subscribers.items() if subs]

    def clear(self) -> None:
        self._subscribers.clear()
        self._wildcard_subscribers.clear()


# Connection lifecycle
EVENT_OPEN = "open"
EVENT_CLOSE = "close"
EVENT_TIMEOUT = "timeout"
EVENT_MESSAGE = "message"
EVENT_WIRE_STATUS = "wireStatus"
EVENT_WIRE_OPENED = "wireOpened"
EVENT_WIRE_CLOSED = "wireClosed"

# Network events pushed by the cloud
EVENT_UNIT_CHANGED = "unitChanged"
EVENT_PEER_CHANGED = "peerChanged"
EVENT_NETWORK_UPDATED = "networkUpdated"
NETWORK_EVENTS = (EVENT_UNIT_CHANGED, EVENT_PEER_CHANGED, EVENT_NETWORK_UPDATED)

# Bridge level
EVENT_UNIT_STATE = "unit_state"
EVENT_HEALTH_STATUS_CHANGED = "health_status_changed"
