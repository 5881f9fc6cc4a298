"""Change notifications for orders.

Subscribers (push transports, dashboards) learn about order changes
through an EventPublisher. Publishing is best-effort: a failing
publisher is logged and never undoes or blocks the state change that
triggered it.
"""

from __future__ import annotations

import abc
import logging
import threading
from typing import Iterable, Optional

from tradeguard.models.order import OrderChanged
from tradeguard.persistence.event_log import EventKind, EventLog

logger = logging.getLogger(__name__)


class EventPublisher(abc.ABC):
    @abc.abstractmethod
    def publish(self, event: OrderChanged) -> None: ...


class InMemoryPublisher(EventPublisher):
    """Collects published events; used by tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[OrderChanged] = []

    def publish(self, event: OrderChanged) -> None:
        with self._lock:
            self.events.append(event)

    def kinds_for(self, order_id: str) -> list[str]:
        with self._lock:
            return [e.kind for e in self.events if e.order_id == order_id]


class EventLogPublisher(EventPublisher):
    """Writes order changes into the audit log."""

    def __init__(self, event_log: EventLog) -> None:
        self._log = event_log

    def publish(self, event: OrderChanged) -> None:
        kind = {
            "created": EventKind.ORDER_CREATED,
            "expired": EventKind.ORDER_EXPIRED,
            "settled": EventKind.ORDER_SETTLED,
        }.get(event.kind, EventKind.ORDER_TRANSITION)
        self._log.record(kind, "system", {"order_id": event.order_id, "kind": event.kind})


class CompositePublisher(EventPublisher):
    def __init__(self, publishers: Iterable[EventPublisher]) -> None:
        self._publishers = list(publishers)

    def publish(self, event: OrderChanged) -> None:
        for publisher in self._publishers:
            safe_publish(publisher, event)


def safe_publish(
    publisher: Optional[EventPublisher],
    event: OrderChanged,
) -> None:
    """Publish and absorb any failure with a logged warning."""
    if publisher is None:
        return
    try:
        publisher.publish(event)
    except Exception:
        logger.warning(
            "Publishing %s for %s failed", event.kind, event.order_id,
            exc_info=True,
        )
