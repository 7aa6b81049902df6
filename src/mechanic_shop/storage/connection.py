"""SQLAlchemy async engine pool and session management.

Provides a factory for creating async engines (asyncpg for PostgreSQL,
aiosqlite for SQLite), a session factory configured for
``PersistenceContext`` (no autoflush, no expiry on commit), and
lifecycle helpers for schema creation and graceful shutdown.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from mechanic_shop.core.config import DatabaseConfig
from mechanic_shop.core.errors import EngineNotInitialisedError

from .models import Base

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singleton (set via ``init_engine``)
# ---------------------------------------------------------------------------
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine(
    url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    echo: bool = False,
    use_null_pool: bool = False,
) -> AsyncEngine:
    """Create and return a new SQLAlchemy :class:`AsyncEngine`.

    Args:
        url: Database connection URL, e.g. ``postgresql+asyncpg://...`` or
            ``sqlite+aiosqlite:///shop.db``.
        pool_size: Number of persistent connections to keep in the pool.
        max_overflow: Maximum additional connections beyond *pool_size*.
        pool_timeout: Seconds to wait for a connection from the pool before
            raising a timeout error.
        pool_recycle: Seconds after which a connection is recycled to avoid
            stale TCP connections.
        echo: If ``True``, log all emitted SQL statements.
        use_null_pool: If ``True``, disable connection pooling entirely.
            Useful in short-lived processes (tests, one-off scripts).

    Returns:
        A configured :class:`AsyncEngine` instance.
    """
    pool_kwargs: dict = {}
    if use_null_pool:
        pool_kwargs["poolclass"] = NullPool
    elif url.startswith("sqlite"):
        # One shared connection, so ``:memory:`` databases survive
        # across sessions.
        pool_kwargs["poolclass"] = StaticPool
    else:
        pool_kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
        )

    engine = create_async_engine(
        url,
        echo=echo,
        **pool_kwargs,
    )
    logger.info("Created async engine for %s (pool_size=%s)", url.split("@")[-1], pool_size)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for ``PersistenceContext``.

    ``autoflush`` is off so pending changes stay pending until
    ``save_changes`` commits them; ``expire_on_commit`` is off so
    entities stay readable after the commit.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


async def init_engine(config: DatabaseConfig) -> AsyncEngine:
    """Initialise the module-level engine and session factory.

    This is the primary entry-point at application startup. Subsequent calls
    to :func:`get_session_factory` will use the engine created here.

    Args:
        config: Database settings; ``config.create_tables`` runs
            ``CREATE TABLE IF NOT EXISTS`` for all ORM models (dev/test).

    Returns:
        The initialised :class:`AsyncEngine`.
    """
    global _engine, _session_factory  # noqa: PLW0603

    _engine = create_engine(
        config.url,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout,
        pool_recycle=config.pool_recycle,
        echo=config.echo,
    )
    _session_factory = create_session_factory(_engine)

    if config.create_tables:
        await create_all(_engine)

    return _engine


async def create_all(engine: AsyncEngine | None = None) -> None:
    """Create all tables defined in the ORM metadata.

    Args:
        engine: Engine to use. Falls back to the module-level engine.

    Raises:
        EngineNotInitialisedError: If no engine is available.
    """
    eng = engine or _engine
    if eng is None:
        raise EngineNotInitialisedError(
            "No engine available. Call init_engine() first or pass an engine."
        )

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created / verified.")


async def drop_all(engine: AsyncEngine | None = None) -> None:
    """Drop every table in the ORM metadata (tests only)."""
    eng = engine or _engine
    if eng is None:
        raise EngineNotInitialisedError(
            "No engine available. Call init_engine() first or pass an engine."
        )

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def dispose() -> None:
    """Dispose of the module-level engine and release all pooled connections."""
    global _engine, _session_factory  # noqa: PLW0603

    if _engine is not None:
        await _engine.dispose()
        logger.info("Engine disposed.")
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the module-level session factory.

    Raises:
        EngineNotInitialisedError: If :func:`init_engine` has not been called.
    """
    if _session_factory is None:
        raise EngineNotInitialisedError(
            "Session factory not initialised. Call init_engine() first."
        )
    return _session_factory


def get_engine() -> AsyncEngine:
    """Return the module-level engine.

    Raises:
        EngineNotInitialisedError: If :func:`init_engine` has not been called.
    """
    if _engine is None:
        raise EngineNotInitialisedError("Engine not initialised. Call init_engine() first.")
    return _engine
