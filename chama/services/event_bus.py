"""
LEDGER EVENT BUS
================

In-process message passing for ledger change notifications.

- The ledger store publishes {entity_type, operation, entity} events
  after each insert commits.
- Each subscriber gets its own queue and must ack() an event once its
  reaction has committed; nack() puts it back for redelivery.
- Delivery is at-least-once: publishing with duplicate=N enqueues the
  same change N extra times, the way a change stream may replay it.
- Unsubscribing closes the queue; blocked consumers wake up with None.
- The trace keeps only the most recent `trace_limit` entries (0 turns it off).
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from chama.models import utcnow

logger = logging.getLogger(__name__)


class EntityType:
    LOAN = "loan"
    SAVING = "saving"
    MEMBER = "member"
    FINE = "fine"


class Operation:
    INSERT = "insert"
    UPDATE = "update"


@dataclass(frozen=True)
class ChangeEvent:
    id: int
    entity_type: str
    operation: str
    entity_id: int
    entity: Dict[str, Any]
    published_at: datetime
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_redelivery(self) -> bool:
        return "duplicate_of" in self.attributes


class Subscription:
    def __init__(self, bus: "LedgerEventBus", name: str, entity_types: Optional[Iterable[str]] = None):
        self._bus = bus
        self.name = name
        self.entity_types = frozenset(entity_types) if entity_types else None
        self._ready: deque = deque()
        self._in_flight: Dict[int, ChangeEvent] = {}
        self._cond = threading.Condition()
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        return self.entity_types is None or event.entity_type in self.entity_types

    def _offer(self, event: ChangeEvent) -> None:
        with self._cond:
            if self.closed:
                return
            self._ready.append(event)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or None on timeout / after close."""
        with self._cond:
            if not self._ready and not self.closed:
                self._cond.wait_for(lambda: self._ready or self.closed, timeout=timeout)
            if self.closed or not self._ready:
                return None
            event = self._ready.popleft()
            self._in_flight[event.id] = event
            return event

    def get_nowait(self) -> Optional[ChangeEvent]:
        return self.get(timeout=0)

    def ack(self, event_id: int) -> None:
        with self._cond:
            self._in_flight.pop(event_id, None)
        self._bus._record("acked", event_id, self.name)

    def nack(self, event_id: int) -> None:
        with self._cond:
            event = self._in_flight.pop(event_id, None)
            if event is None or self.closed:
                return
            self._ready.append(event)
            self._cond.notify()
        self._bus._record("requeued", event_id, self.name)

    def backlog(self) -> int:
        with self._cond:
            return len(self._ready)

    def in_flight(self) -> int:
        with self._cond:
            return len(self._in_flight)

    def close(self) -> None:
        with self._cond:
            self.closed = True
            self._ready.clear()
            self._in_flight.clear()
            self._cond.notify_all()

    def unsubscribe(self) -> None:
        self._bus.unsubscribe(self)


class LedgerEventBus:
    def __init__(self, clock: Callable[[], datetime] = utcnow, trace_limit: int = 1000):
        self._clock = clock
        self._seq = itertools.count(1)
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []
        self.trace_limit = max(0, trace_limit)
        self._trace: deque = deque(maxlen=self.trace_limit)

    def subscribe(self, name: str, entity_types: Optional[Iterable[str]] = None) -> Subscription:
        sub = Subscription(self, name, entity_types)
        with self._lock:
            self._subscriptions.append(sub)
        logger.debug("Subscriber %s registered for %s", name, sorted(sub.entity_types or ["*"]))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
        sub.close()
        logger.debug("Subscriber %s removed", sub.name)

    def publish(
        self,
        entity_type: str,
        operation: str,
        entity_id: int,
        entity: Optional[Dict[str, Any]] = None,
        *,
        duplicate: int = 0,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> List[int]:
        ids: List[int] = []
        with self._lock:
            targets = list(self._subscriptions)
        for dup_idx in range(1 + max(0, duplicate)):
            attrs = dict(attributes or {})
            if dup_idx > 0:
                attrs["duplicate_of"] = ids[0]
            event = ChangeEvent(
                id=next(self._seq),
                entity_type=entity_type,
                operation=operation,
                entity_id=entity_id,
                entity=dict(entity or {}),
                published_at=self._clock(),
                attributes=attrs,
            )
            ids.append(event.id)
            self._record("published", event.id, entity_type, duplicate_of=attrs.get("duplicate_of"))
            for sub in targets:
                if sub.matches(event):
                    sub._offer(event)
        return ids

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _record(self, what: str, event_id: int, subject: str, **extra: Any) -> None:
        if not self.trace_limit:
            return
        entry = {"event": what, "id": event_id, "subject": subject, "time": self._clock().isoformat()}
        entry.update(extra)
        with self._lock:
            self._trace.append(entry)

    @property
    def trace(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._trace)
