"""Explicit publish/subscribe channel for pipeline and monitor events."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Literal, Optional

logger = logging.getLogger(__name__)

EventType = Literal["alert", "approval_request", "pipeline_completed", "health_check"]
EVENT_TYPES: tuple[str, ...] = (
    "alert",
    "approval_request",
    "pipeline_completed",
    "health_check",
)


@dataclass(frozen=True)
class Event:
    type: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[Event], None]


class EventChannel:
    """
    Deliver events synchronously to subscribers, in publish order.

    Subscribers registered for a specific type run before wildcard subscribers,
    each group in registration order. A subscriber that raises is logged and
    skipped; the remaining subscribers still receive the event.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[Optional[str], List[Subscriber]] = {}
        self._lock = Lock()

    def subscribe(self, callback: Subscriber, event_type: str | None = None) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        if event_type is not None and event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(event_type, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return _unsubscribe

    def publish(self, event_type: str, payload: Dict[str, Any]) -> Event:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        event = Event(type=event_type, payload=payload)
        with self._lock:
            targets = list(self._subscribers.get(event_type, [])) + list(
                self._subscribers.get(None, [])
            )
        for callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %r failed handling %s event", callback, event_type)
        return event


class EventRecorder:
    """Subscriber that keeps every event it receives; handy for sinks and tests."""

    def __init__(self) -> None:
        self.events: List[Event] = []
        self._lock = Lock()

    def __call__(self, event: Event) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[Event]:
        with self._lock:
            return [event for event in self.events if event.type == event_type]
