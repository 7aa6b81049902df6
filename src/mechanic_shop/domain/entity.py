"""Base mixin for records that raise domain events.

The pending-event queue lives in the instance ``__dict__`` under a key
the ORM does not map, so it survives attribute expiry and rollback.
Rows loaded from the database start with an empty queue.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TypeVar

from .events import DomainEvent

E = TypeVar("E", bound=DomainEvent)

_QUEUE_KEY = "_pending_domain_events"


class Entity:
    """Mixin giving a record an ordered queue of pending domain events."""

    @property
    def _event_queue(self) -> list[DomainEvent]:
        return self.__dict__.setdefault(_QUEUE_KEY, [])

    @property
    def domain_events(self) -> tuple[DomainEvent, ...]:
        """Pending events in enqueue order."""
        return tuple(self._event_queue)

    @property
    def has_domain_events(self) -> bool:
        return bool(self.__dict__.get(_QUEUE_KEY))

    def raise_event(self, event: E) -> E:
        """Enqueue *event* and hand it back to the caller."""
        self._event_queue.append(event)
        return event

    def clear_domain_events(self) -> None:
        self._event_queue.clear()

    def discard_domain_events(self, events: Iterable[DomainEvent]) -> None:
        """Drop exactly *events* (by identity); anything raised since stays queued."""
        dispatched = {id(e) for e in events}
        self._event_queue[:] = [e for e in self._event_queue if id(e) not in dispatched]
