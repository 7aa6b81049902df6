"""Outbox drain for events persisted by ``DispatchMode.OUTBOX`` saves.

Delivery is **at-least-once**: a message is marked ``processed`` only
after its publish returned, and that mark is committed per message, so
a crash between the two re-delivers just that message.  Handlers fed
from the outbox must therefore be idempotent on ``event.event_id``.

Messages are delivered oldest first by ``(enqueued_at, position)``.  A
publish failure stops the current batch so later events never overtake
an earlier one; the failing message is retried on the next drain until
``max_attempts`` is reached, after which it is marked ``failed`` and
the queue moves on.
"""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mechanic_shop.core.config import DispatchConfig
from mechanic_shop.core.enums import OutboxStatus
from mechanic_shop.core.errors import OutboxError
from mechanic_shop.core.ids import utc_now
from mechanic_shop.domain.events import EVENT_REGISTRY, DomainEvent
from mechanic_shop.domain.serialization import event_from_payload
from mechanic_shop.infrastructure.event_bus import IEventPublisher
from mechanic_shop.observability.logger import get_logger

from .models import OutboxMessage

logger = get_logger(__name__)


class OutboxDispatcher:
    """Publishes pending ``OutboxMessage`` rows through *publisher*."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: IEventPublisher,
        *,
        batch_size: int = 100,
        max_attempts: int = 5,
        registry: dict[str, type[DomainEvent]] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._publisher = publisher
        self._batch_size = max(1, batch_size)
        self._max_attempts = max(1, max_attempts)
        self._registry = registry if registry is not None else EVENT_REGISTRY

    @classmethod
    def from_config(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: IEventPublisher,
        config: DispatchConfig,
    ) -> OutboxDispatcher:
        return cls(
            session_factory,
            publisher,
            batch_size=config.outbox_batch_size,
            max_attempts=config.outbox_max_attempts,
        )

    # -- Queries -----------------------------------------------------------

    async def pending_count(self) -> int:
        async with self._session_factory() as session:
            stmt = (
                select(func.count())
                .select_from(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.PENDING.value)
            )
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def failed_messages(self) -> Sequence[OutboxMessage]:
        async with self._session_factory() as session:
            stmt = (
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.FAILED.value)
                .order_by(OutboxMessage.enqueued_at, OutboxMessage.position)
            )
            result = await session.execute(stmt)
            return result.scalars().all()

    # -- Delivery ----------------------------------------------------------

    async def drain(self) -> int:
        """Deliver up to one batch of pending messages.

        Returns:
            Number of messages published successfully.
        """
        delivered = 0
        async with self._session_factory() as session:
            stmt = (
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.PENDING.value)
                .order_by(OutboxMessage.enqueued_at, OutboxMessage.position)
                .limit(self._batch_size)
            )
            result = await session.execute(stmt)
            messages = result.scalars().all()

            for message in messages:
                try:
                    event = event_from_payload(
                        message.event_type, message.payload, self._registry,
                    )
                except (OutboxError, TypeError, ValueError) as exc:
                    message.status = OutboxStatus.FAILED.value
                    message.last_error = f"decode: {exc}"
                    await session.commit()
                    logger.error(
                        "outbox_message_undecodable",
                        message_id=message.id,
                        event_type=message.event_type,
                        error=str(exc),
                    )
                    continue

                message.attempts += 1
                try:
                    await self._publisher.publish(event)
                except Exception as exc:
                    message.last_error = f"{type(exc).__name__}: {exc}"
                    if message.attempts >= self._max_attempts:
                        message.status = OutboxStatus.FAILED.value
                    await session.commit()
                    logger.warning(
                        "outbox_delivery_failed",
                        message_id=message.id,
                        event_type=message.event_type,
                        attempt=message.attempts,
                        max_attempts=self._max_attempts,
                        error=str(exc),
                    )
                    break

                message.status = OutboxStatus.PROCESSED.value
                message.processed_at = utc_now()
                message.last_error = None
                await session.commit()
                delivered += 1

        if delivered:
            logger.info("outbox_drained", delivered=delivered)
        return delivered

    async def drain_all(self, *, max_batches: int = 100) -> int:
        """Drain batch after batch until one comes back short."""
        total = 0
        for _ in range(max_batches):
            delivered = await self.drain()
            total += delivered
            if delivered < self._batch_size:
                break
        return total

    async def requeue_failed(self) -> int:
        """Reset every ``failed`` message to ``pending`` with zero attempts."""
        async with self._session_factory() as session:
            stmt = (
                update(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.FAILED.value)
                .values(status=OutboxStatus.PENDING.value, attempts=0)
            )
            result = await session.execute(stmt)
            await session.commit()
            count = result.rowcount or 0
        if count:
            logger.info("outbox_requeued", count=count)
        return count
