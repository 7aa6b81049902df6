"""Typed record collections exposed by ``PersistenceContext``.

Each collection is a thin, table-like view over one mapped class bound
to the context's session.  Mutations (``add`` / ``remove``) are only
staged; nothing reaches the store until ``save_changes`` commits.
Reads go to the store, so rows added since the last save are not
visible to ``get`` / ``list`` / ``find`` yet.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any, Generic, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Base

T = TypeVar("T", bound=Base)


class RecordCollection(Generic[T]):
    """Addressable set of ``model`` records keyed by ``id``."""

    def __init__(self, session: AsyncSession, model: type[T]) -> None:
        self._session = session
        self._model = model

    @property
    def model(self) -> type[T]:
        return self._model

    def add(self, record: T) -> T:
        """Stage *record* for insertion."""
        self._session.add(record)
        return record

    def add_all(self, records: Iterable[T]) -> None:
        self._session.add_all(list(records))

    async def remove(self, record: T) -> None:
        """Stage *record* for deletion."""
        await self._session.delete(record)

    async def get(self, record_id: str) -> T | None:
        """Return the record with *record_id*, or ``None``."""
        return await self._session.get(self._model, record_id)

    async def list(self) -> Sequence[T]:
        result = await self._session.execute(select(self._model))
        return result.scalars().all()

    async def find(self, *criteria: Any) -> Sequence[T]:
        """Return records matching all SQL *criteria*.

        Usage::

            await ctx.work_orders.find(WorkOrder.state == "scheduled")
        """
        stmt = select(self._model).where(*criteria)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count(self) -> int:
        stmt = select(func.count()).select_from(self._model)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    def __repr__(self) -> str:
        return f"<RecordCollection({self._model.__name__})>"
