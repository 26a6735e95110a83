"""In-process event publisher for compliance notifications.

The publisher hands events to registered hooks. It supports:
- Multiple hooks, each optionally filtered by event type or company
- Buffering of recent events for inspection
- Isolation of hook failures: a failing hook is logged, never raised
"""

import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from ttb_compliance.events.types import ComplianceEvent, EventType

logger = structlog.get_logger(__name__)

EventHook = Callable[[ComplianceEvent], None]


@dataclass
class Subscription:
    """A hook plus the events it wants."""

    hook: EventHook
    event_types: set[EventType] = field(default_factory=set)
    company_ids: set[int] = field(default_factory=set)

    def matches(self, event: ComplianceEvent) -> bool:
        if self.event_types and event.event_type not in self.event_types:
            return False
        if self.company_ids and event.company_id not in self.company_ids:
            return False
        return True


class EventPublisher:
    """Delivers compliance events to subscribed hooks.

    Usage:
        publisher = EventPublisher()
        publisher.add_event_hook(notify, event_types={EventType.REPORT_APPROVED})

        # Publish events
        publisher.publish(some_event)
    """

    def __init__(self, buffer_size: int = 100):
        self._buffer_size = buffer_size
        self._event_buffer: deque[ComplianceEvent] = deque(maxlen=buffer_size)
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

        self._logger = logger.bind(component="event_publisher")

    @property
    def recent_events(self) -> list[ComplianceEvent]:
        """Get recently published events."""
        with self._lock:
            return list(self._event_buffer)

    @property
    def hook_count(self) -> int:
        return len(self._subscriptions)

    def add_event_hook(
        self,
        hook: EventHook,
        event_types: set[EventType] | None = None,
        company_ids: set[int] | None = None,
    ) -> None:
        """Add a hook to be called for matching events.

        Args:
            hook: Function that receives each event.
            event_types: Only deliver these types. Empty means all.
            company_ids: Only deliver events for these companies. Empty means all.
        """
        with self._lock:
            self._subscriptions.append(
                Subscription(
                    hook=hook,
                    event_types=set(event_types or ()),
                    company_ids=set(company_ids or ()),
                )
            )

    def remove_event_hook(self, hook: EventHook) -> None:
        """Remove every subscription of a hook."""
        with self._lock:
            self._subscriptions = [s for s in self._subscriptions if s.hook is not hook]

    def publish(self, event: ComplianceEvent) -> None:
        """Publish an event to all matching hooks.

        Hooks run synchronously in the caller's thread. Failures are logged
        and do not reach the caller: the change the event describes has
        already been committed.

        Args:
            event: The event to publish.
        """
        with self._lock:
            self._event_buffer.append(event)
            subscriptions = list(self._subscriptions)

        self._logger.debug(
            "event_published",
            event_type=event.event_type.value,
            company_id=event.company_id,
        )

        for subscription in subscriptions:
            if not subscription.matches(event):
                continue
            try:
                subscription.hook(event)
            except Exception as e:
                self._logger.error(
                    "event_hook_error",
                    event_type=event.event_type.value,
                    error=str(e),
                )

    def clear(self) -> None:
        """Drop buffered events."""
        with self._lock:
            self._event_buffer.clear()

    def get_status(self) -> dict[str, Any]:
        """Get publisher status information."""
        with self._lock:
            return {
                "hook_count": len(self._subscriptions),
                "buffer_size": len(self._event_buffer),
                "buffer_capacity": self._buffer_size,
                "subscriptions": [
                    {
                        "event_types": sorted(t.value for t in s.event_types),
                        "company_ids": sorted(s.company_ids),
                    }
                    for s in self._subscriptions
                ],
            }


# Global publisher instance for convenience
_publisher: EventPublisher | None = None


def get_publisher() -> EventPublisher:
    """Get or create the global event publisher instance."""
    global _publisher
    if _publisher is None:
        _publisher = EventPublisher()
    return _publisher


def reset_publisher() -> None:
    """Discard the global publisher and its hooks."""
    global _publisher
    _publisher = None
