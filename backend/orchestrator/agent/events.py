"""In-process publish/subscribe for cross-subsystem notifications.

Delivery is best effort: events live only in memory, a process restart
loses them, and nothing is redelivered. Each listener runs isolated, so a
failing listener never stops the others or the publisher.
"""
import logging
import threading
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)

WILDCARD = "*"

INTAKE_CREATED = "intake:created"
TASK_STATUS_CHANGED = "task:status_changed"
DECISION_REQUIRES_APPROVAL = "decision:requires_approval"
DISPATCH_FAILED = "dispatch:failed"
AUTOMATION_COMPLETED = "automation:completed"
AUTOMATION_FAILED = "automation:failed"
AUTOMATION_TRIGGERED = "automation:triggered"
CALENDAR_EVENT_CREATED = "calendar:event_created"
WEBHOOK_CALLBACK_RECEIVED = "webhook:callback_received"


@dataclass(frozen=True)
class Event:
    type: str
    payload: dict[str, Any]
    event_id: str
    timestamp: datetime
    correlation_id: str | None = None


@dataclass
class EmitResult:
    """What happened when an event was published."""
    event_type: str
    event_id: str
    handlers_invoked: int = 0
    results: list[Any] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


EventHandler = Callable[[Event], Any]


@dataclass(eq=False)
class _Subscription:
    handler: EventHandler
    once: bool = False


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class EventBus:
    """Thread-safe in-memory event bus with a bounded history."""

    def __init__(self, history_size: int = 100, max_workers: int = 4):
        self._subscriptions: dict[str, list[_Subscription]] = {}
        self._history: deque[Event] = deque(maxlen=history_size)
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="event-bus")
        self._emitted = 0
        self._handler_errors = 0

    def on(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe a handler. Returns a function that unsubscribes it."""
        return self._subscribe(event_type, handler, once=False)

    def once(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe a handler for the next matching event only."""
        return self._subscribe(event_type, handler, once=True)

    def on_any(self, handler: EventHandler) -> Callable[[], None]:
        """Subscribe a handler to every event."""
        return self._subscribe(WILDCARD, handler, once=False)

    def _subscribe(self, event_type: str, handler: EventHandler, once: bool) -> Callable[[], None]:
        subscription = _Subscription(handler=handler, once=once)
        with self._lock:
            self._subscriptions.setdefault(event_type, []).append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                subscriptions = self._subscriptions.get(event_type, [])
                if subscription in subscriptions:
                    subscriptions.remove(subscription)

        return unsubscribe

    def off(self, event_type: str, handler: EventHandler | None = None) -> None:
        """Remove one handler, or every handler for the event type."""
        with self._lock:
            if handler is None:
                self._subscriptions.pop(event_type, None)
                return
            self._subscriptions[event_type] = [
                s for s in self._subscriptions.get(event_type, []) if s.handler != handler
            ]

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()
            self._history.clear()

    def listener_count(self, event_type: str | None = None) -> int:
        with self._lock:
            if event_type is None:
                return sum(len(subs) for subs in self._subscriptions.values())
            return len(self._subscriptions.get(event_type, []))

    def emit(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> EmitResult:
        """Publish an event and run its handlers on the calling thread.

        Handler exceptions are logged and collected in the result; they never
        propagate to the publisher.
        """
        event = Event(
            type=event_type,
            payload=payload or {},
            event_id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc),
            correlation_id=correlation_id,
        )

        with self._lock:
            matched = list(self._subscriptions.get(event_type, [])) + list(self._subscriptions.get(WILDCARD, []))
            for subscription in matched:
                if subscription.once:
                    for key in (event_type, WILDCARD):
                        if subscription in self._subscriptions.get(key, []):
                            self._subscriptions[key].remove(subscription)
            self._history.append(event)
            self._emitted += 1

        result = EmitResult(event_type=event_type, event_id=event.event_id)
        for subscription in matched:
            result.handlers_invoked += 1
            try:
                result.results.append(subscription.handler(event))
            except Exception as e:
                logger.exception(
                    "Event handler %s failed for %s correlation_id=%s",
                    _handler_name(subscription.handler), event_type, correlation_id,
                )
                result.errors.append({"handler": _handler_name(subscription.handler), "error": str(e)})

        if result.errors:
            with self._lock:
                self._handler_errors += len(result.errors)
        return result

    def emit_background(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> Future:
        """Publish on a worker thread. The returned future resolves to the EmitResult."""
        return self._executor.submit(self.emit, event_type, payload, correlation_id)

    def history(self, event_type: str | None = None, limit: int | None = None) -> list[Event]:
        """Most recent events, oldest first."""
        with self._lock:
            events = [e for e in self._history if event_type is None or e.type == event_type]
        return events[-limit:] if limit else events

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "eventsEmitted": self._emitted,
                "handlerErrors": self._handler_errors,
                "historySize": len(self._history),
                "listeners": {k: len(v) for k, v in self._subscriptions.items() if v},
            }


event_bus = EventBus()
