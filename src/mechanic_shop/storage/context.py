"""Unit of work over the shop's record collections.

``PersistenceContext`` wraps one :class:`AsyncSession` and couples
"commit pending mutations" with "tell interested parties" in a single
``save_changes`` call:

1.  Scan the session's tracked entities (pending first, then the
    identity map) for non-empty pending-event queues.
2.  Flatten those events, entity order then enqueue order.
3.  Commit everything atomically.  A failed commit is rolled back and
    re-raised unchanged; nothing is published and no queue is cleared.
4.  Publish the captured events, in order, through the optional
    publisher.
5.  Drop the captured events from their source queues, even if a
    handler raised in step 4.  Events raised while publishing stay
    queued for the next save.

In ``DispatchMode.OUTBOX`` step 3 also writes one ``OutboxMessage`` per
event inside the same transaction and step 4 is skipped; delivery is
left to :class:`~mechanic_shop.storage.outbox.OutboxDispatcher`.

Without a publisher (schema tooling, scripts) saves never dispatch and
the captured events are discarded after the commit.

One caller drives one context through one save at a time; there is no
internal locking.
"""

from __future__ import annotations

import asyncio
from typing import Any

from sqlalchemy import event as sa_event
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session

from mechanic_shop.core.config import DispatchConfig
from mechanic_shop.core.enums import DispatchMode, OutboxStatus
from mechanic_shop.core.errors import SaveCancelledError
from mechanic_shop.core.ids import utc_now
from mechanic_shop.domain.entity import Entity
from mechanic_shop.domain.events import DomainEvent
from mechanic_shop.domain.serialization import event_to_payload
from mechanic_shop.infrastructure.event_bus import IEventPublisher
from mechanic_shop.observability.logger import begin_save, get_logger, set_save_id

from .collections import RecordCollection
from .models import (
    Customer,
    Employee,
    Invoice,
    OutboxMessage,
    Part,
    RefreshToken,
    RepairTask,
    Vehicle,
    WorkOrder,
)

logger = get_logger(__name__)


class PersistenceContext:
    """Record collections plus transactional event dispatch.

    Parameters
    ----------
    session
        The session this context owns.  Should come from
        :func:`~mechanic_shop.storage.connection.create_session_factory`
        (no autoflush) so staged changes stay pending until the save.
    publisher
        Optional notification port.  ``None`` means saves never publish.
    dispatch_mode
        ``INLINE`` publishes right after commit; ``OUTBOX`` persists the
        events with the commit instead.
    """

    def __init__(
        self,
        session: AsyncSession,
        publisher: IEventPublisher | None = None,
        *,
        dispatch_mode: DispatchMode = DispatchMode.INLINE,
    ) -> None:
        self._session = session
        self._publisher = publisher
        self._dispatch_mode = DispatchMode(dispatch_mode)
        self._flushed_changes = 0

        sa_event.listen(session.sync_session, "after_flush", self._on_after_flush)
        sa_event.listen(session.sync_session, "after_rollback", self._on_after_rollback)

        self.customers: RecordCollection[Customer] = RecordCollection(session, Customer)
        self.parts: RecordCollection[Part] = RecordCollection(session, Part)
        self.repair_tasks: RecordCollection[RepairTask] = RecordCollection(session, RepairTask)
        self.vehicles: RecordCollection[Vehicle] = RecordCollection(session, Vehicle)
        self.work_orders: RecordCollection[WorkOrder] = RecordCollection(session, WorkOrder)
        self.invoices: RecordCollection[Invoice] = RecordCollection(session, Invoice)
        self.employees: RecordCollection[Employee] = RecordCollection(session, Employee)
        self.refresh_tokens: RecordCollection[RefreshToken] = RecordCollection(
            session, RefreshToken,
        )

    @classmethod
    def open(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: IEventPublisher | None = None,
        *,
        dispatch_mode: DispatchMode = DispatchMode.INLINE,
    ) -> PersistenceContext:
        """Create a context over a fresh session from *session_factory*."""
        return cls(session_factory(), publisher, dispatch_mode=dispatch_mode)

    @classmethod
    def from_config(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: IEventPublisher | None,
        config: DispatchConfig,
    ) -> PersistenceContext:
        """Open a context whose dispatch mode comes from ``settings.dispatch``."""
        return cls.open(session_factory, publisher, dispatch_mode=config.mode)

    # -- Properties --------------------------------------------------------

    @property
    def session(self) -> AsyncSession:
        return self._session

    @property
    def publisher(self) -> IEventPublisher | None:
        return self._publisher

    @property
    def dispatch_mode(self) -> DispatchMode:
        return self._dispatch_mode

    # -- Change tracking ---------------------------------------------------

    def tracked_entities(self) -> list[Entity]:
        """Event-capable entities in the session, pending first."""
        return [obj for obj in self._session.sync_session if isinstance(obj, Entity)]

    def pending_events(self) -> list[DomainEvent]:
        """Events that the next ``save_changes`` would dispatch."""
        return [
            event
            for entity in self.tracked_entities()
            for event in entity.domain_events
        ]

    def _on_after_flush(self, session: Session, flush_context: Any) -> None:
        # new/dirty and attribute history still show the pre-flush state here;
        # flush_context.states also holds cascade and orphan deletes.
        deleted = {
            state
            for state, (is_delete, list_only) in flush_context.states.items()
            if is_delete and not list_only
        }
        inserted = [inspect(obj) for obj in session.new]
        updated = [
            inspect(obj)
            for obj in session.dirty
            if session.is_modified(obj, include_collections=False)
        ]
        rows = deleted.union(
            state for state in [*inserted, *updated] if state not in deleted
        )
        self._flushed_changes += sum(
            1 for state in rows if not issubclass(state.class_, OutboxMessage)
        )

    def _on_after_rollback(self, session: Session) -> None:
        self._flushed_changes = 0

    # -- Save --------------------------------------------------------------

    async def save_changes(self, *, cancel: asyncio.Event | None = None) -> int:
        """Commit all staged mutations, then dispatch their domain events.

        Args:
            cancel: Cooperative cancellation signal, honoured only
                before the commit starts.

        Returns:
            Number of rows inserted, updated or deleted since the last
            save, counted at flush time (cascade deletes and earlier
            explicit flushes included, outbox rows excluded).

        Raises:
            SaveCancelledError: *cancel* was set before the commit.
            sqlalchemy.exc.SQLAlchemyError: The store rejected the commit
                (re-raised unchanged; queues left intact).
            Exception: A handler failed after the commit succeeded.
        """
        save_id = begin_save()
        try:
            return await self._save(save_id, cancel)
        finally:
            set_save_id("")

    async def _save(self, save_id: str, cancel: asyncio.Event | None) -> int:
        captured = [
            (entity, entity.domain_events)
            for entity in self.tracked_entities()
            if entity.has_domain_events
        ]
        events = [event for _, queued in captured for event in queued]

        if cancel is not None and cancel.is_set():
            logger.info("save_cancelled", save_id=save_id, pending_events=len(events))
            raise SaveCancelledError("Save cancelled before commit")

        if self._dispatch_mode is DispatchMode.OUTBOX:
            self._stage_outbox(events)

        try:
            await self._session.commit()
        except BaseException as exc:
            # CancelledError too: every failed commit is rolled back.
            logger.warning(
                "save_commit_failed",
                save_id=save_id,
                error=type(exc).__name__,
                pending_events=len(events),
            )
            await self._rollback_quietly()
            raise

        changes, self._flushed_changes = self._flushed_changes, 0

        logger.debug(
            "save_committed",
            save_id=save_id,
            changes=changes,
            events=len(events),
            mode=self._dispatch_mode.value,
        )

        try:
            await self._dispatch(events)
        finally:
            for entity, queued in captured:
                entity.discard_domain_events(queued)

        return changes

    def _stage_outbox(self, events: list[DomainEvent]) -> None:
        enqueued_at = utc_now()
        for position, event in enumerate(events):
            self._session.add(OutboxMessage(
                id=event.event_id,
                event_type=event.event_type,
                aggregate_id=event.aggregate_id,
                payload=event_to_payload(event),
                occurred_at=event.occurred_at,
                enqueued_at=enqueued_at,
                position=position,
                status=OutboxStatus.PENDING.value,
                attempts=0,
            ))

    async def _dispatch(self, events: list[DomainEvent]) -> None:
        if not events or self._dispatch_mode is DispatchMode.OUTBOX:
            return
        if self._publisher is None:
            logger.debug("save_events_discarded", reason="no_publisher", events=len(events))
            return

        for event in events:
            await self._publisher.publish(event)

    async def _rollback_quietly(self) -> None:
        try:
            await self._session.rollback()
        except SQLAlchemyError:
            logger.exception("save_rollback_failed")

    # -- Lifecycle ---------------------------------------------------------

    async def close(self) -> None:
        await self._session.close()

    async def __aenter__(self) -> PersistenceContext:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
