"""Event publishing port and in-memory implementation.

Design goals
------------
1.  **Type-routed dispatching**: subscribers register for a concrete
    ``DomainEvent`` subclass.  When an event is published the bus routes
    it to every handler whose registered type matches ``type(event)``.
2.  **Sequential delivery**: handlers run one after another, in
    subscription order, inside the ``publish()`` call.
3.  **Errors propagate by default**: a failing handler stops delivery
    of that event and its exception reaches the publisher (for
    ``save_changes`` that means "persisted, partially notified").  With
    ``isolate_errors=True`` failures are recorded as dead letters and
    the remaining handlers still run.

This module provides:

*  ``IEventPublisher``: the one-method port ``PersistenceContext`` needs.
*  ``IEventBus``: publisher plus subscription and observability.
*  ``InMemoryEventBus``: deterministic implementation.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from mechanic_shop.domain.events import DomainEvent

logger = logging.getLogger(__name__)

# Type alias for async event handlers.
EventHandler = Callable[[DomainEvent], Awaitable[None]]


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class IEventPublisher(Protocol):
    """Notification port: offer one event to its registered handlers."""

    async def publish(self, event: DomainEvent) -> None:
        ...


@runtime_checkable
class IEventBus(IEventPublisher, Protocol):
    """Publish/subscribe bus routed by **event type**."""

    def subscribe(
        self,
        event_type: type[DomainEvent],
        handler: EventHandler,
    ) -> None:
        """Register *handler* for events of exactly *event_type*."""
        ...

    def unsubscribe(
        self,
        event_type: type[DomainEvent],
        handler: EventHandler,
    ) -> None:
        ...

    # -- Observability -----------------------------------------------------

    def get_history(
        self,
        event_type: type[DomainEvent] | None = None,
    ) -> list[DomainEvent]:
        """Return published events, optionally filtered by type."""
        ...

    @property
    def dead_letters(self) -> list[tuple[DomainEvent, str]]:
        """Events whose handlers failed, with the error message."""
        ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryEventBus:
    """Deterministic, in-process event bus.

    Parameters
    ----------
    isolate_errors
        When ``False`` (default), the first handler exception is logged
        and re-raised.  When ``True``, it is recorded as a dead letter
        and delivery continues with the next handler.
    """

    def __init__(self, *, isolate_errors: bool = False) -> None:
        self._handlers: dict[
            type[DomainEvent], list[EventHandler]
        ] = defaultdict(list)
        self._history: list[DomainEvent] = []
        self._error_counts: dict[str, int] = defaultdict(int)
        self._dead_letters: list[tuple[DomainEvent, str]] = []
        self._messages_processed: int = 0
        self._isolate_errors = isolate_errors

    # -- Core API ----------------------------------------------------------

    async def publish(self, event: DomainEvent) -> None:
        """Publish *event* to all handlers subscribed to ``type(event)``.

        Raises
        ------
        Exception
            Whatever a handler raised, unless ``isolate_errors`` is on.
        """
        event_cls = type(event)
        self._history.append(event)

        for handler in list(self._handlers.get(event_cls, [])):
            try:
                await handler(event)
                self._messages_processed += 1
            except Exception as exc:
                key = event_cls.__name__
                self._error_counts[key] += 1
                if not self._isolate_errors:
                    logger.error(
                        "Handler %s failed on %s %s: %s",
                        getattr(handler, "__qualname__", repr(handler)),
                        key, event.event_id, exc,
                    )
                    raise
                self._dead_letters.append((event, str(exc)))
                logger.exception(
                    "Handler error on %s: %s", key, exc,
                )

    def subscribe(
        self,
        event_type: type[DomainEvent],
        handler: EventHandler,
    ) -> None:
        """Register *handler* for *event_type*."""
        self._handlers[event_type].append(handler)

    def unsubscribe(
        self,
        event_type: type[DomainEvent],
        handler: EventHandler,
    ) -> None:
        """Remove *handler*; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event_type: type[DomainEvent]) -> int:
        return len(self._handlers.get(event_type, []))

    # -- Observability -----------------------------------------------------

    def get_history(
        self,
        event_type: type[DomainEvent] | None = None,
    ) -> list[DomainEvent]:
        """Return published events, optionally filtered."""
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if type(e) is event_type]

    def clear_history(self) -> None:
        """Clear the event history (testing helper)."""
        self._history.clear()

    def get_error_counts(self) -> dict[str, int]:
        return dict(self._error_counts)

    @property
    def dead_letters(self) -> list[tuple[DomainEvent, str]]:
        return list(self._dead_letters)

    def clear_dead_letters(self) -> list[tuple[DomainEvent, str]]:
        """Drain and return dead letters."""
        drained = self._dead_letters[:]
        self._dead_letters.clear()
        return drained

    @property
    def messages_processed(self) -> int:
        return self._messages_processed
