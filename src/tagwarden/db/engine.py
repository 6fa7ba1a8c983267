"""Async database engine and session management.

Provides async connections via SQLModel: asyncpg for PostgreSQL in
production, aiosqlite for the throwaway stores used by the test suite.
Includes connection pool instrumentation for diagnostics.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession

from tagwarden.config import get_settings
from tagwarden.errors import Conflict, GovernanceError, StoreError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncEngine
    from sqlalchemy.pool import _ConnectionRecord

logger = logging.getLogger(__name__)
_pool_logger = logging.getLogger(f"{__name__}.pool")


def _pool_status(pool: object) -> str:
    """Format current pool status for logging."""

    # QueuePool exposes these as methods; NullPool/StaticPool do not
    def _get(name: str) -> object:
        attr = getattr(pool, name, None)
        if attr is None:
            return "?"
        return attr() if callable(attr) else attr

    return (
        f"size={_get('size')} checked_in={_get('checkedin')}"
        f" checked_out={_get('checkedout')} overflow={_get('overflow')}"
    )


def _install_pool_listeners(engine: AsyncEngine) -> None:
    """Attach event listeners to the connection pool for diagnostics.

    Logs checkout, checkin and invalidation events with current pool
    status so connection leaks and exhaustion show up in the logs.
    """
    pool = engine.sync_engine.pool

    @event.listens_for(pool, "checkout")
    def _on_checkout(
        _dbapi_conn: object, _rec: _ConnectionRecord, _proxy: object
    ) -> None:
        _pool_logger.debug("CHECKOUT %s", _pool_status(pool))

    @event.listens_for(pool, "checkin")
    def _on_checkin(_dbapi_conn: object, _rec: _ConnectionRecord) -> None:
        _pool_logger.debug("CHECKIN  %s", _pool_status(pool))

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(
        _dbapi_conn: object,
        _rec: _ConnectionRecord,
        exception: BaseException | None,
        _soft: bool,
    ) -> None:
        _pool_logger.warning(
            "INVALIDATE soft=%s exception=%s %s",
            _soft,
            type(exception).__name__ if exception else None,
            _pool_status(pool),
        )


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """SQLite ignores FK actions unless the pragma is set per connection."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn: Any, _rec: _ConnectionRecord) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@dataclass
class _DatabaseState:
    """Internal state holder for database engine and session factory."""

    engine: AsyncEngine | None = field(default=None)
    session_factory: async_sessionmaker[AsyncSession] | None = field(default=None)


# Module-level state (initialized on startup)
_state = _DatabaseState()


def get_database_url() -> str:
    """Get database URL from Settings.

    Raises:
        ValueError: If DATABASE__URL is not configured.
    """
    url = get_settings().database.url
    if not url:
        msg = (
            "DATABASE__URL is not configured. "
            "Set it in your .env file or as an environment variable."
        )
        raise ValueError(msg)
    return url


def get_engine() -> AsyncEngine | None:
    """Get the database engine for direct access.

    Primarily for test fixtures that need to call create_all/drop_all.
    """
    return _state.engine


async def init_db(url: str | None = None) -> None:
    """Initialize database engine and session factory.

    Args:
        url: Explicit connection string. Defaults to ``DATABASE__URL``.
    """
    url = url or get_database_url()
    settings = get_settings()
    backend = make_url(url).get_backend_name()

    if backend == "sqlite":
        _state.engine = create_async_engine(url, echo=settings.dev.database_echo)
        _enable_sqlite_foreign_keys(_state.engine)
    else:
        _state.engine = create_async_engine(
            url,
            echo=settings.dev.database_echo,
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,  # Recycle stale connections after 1 hour
            connect_args={
                "timeout": 10,  # Connection timeout in seconds
                "command_timeout": 30,  # Query timeout in seconds
            },
        )
        _install_pool_listeners(_state.engine)

    _state.session_factory = async_sessionmaker(
        _state.engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    logger.info("Database engine initialised (backend=%s)", backend)


async def close_db() -> None:
    """Close database connections and clear module state."""
    if _state.engine:
        await _state.engine.dispose()
        _state.engine = None
        _state.session_factory = None


def _describe_integrity_error(exc: IntegrityError) -> str:
    detail = str(exc.orig) if exc.orig is not None else str(exc)
    return f"Uniqueness or reference constraint violated: {detail}"


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Get an async database session: one atomic unit of work.

    Commits on success and rolls back on any error. Store exceptions are
    translated before they leave the engine: ``IntegrityError`` becomes
    ``Conflict``, any other DBAPI failure becomes ``StoreError``.

    Lazily initializes the database engine on first use so the engine is
    created in the current event loop context.

    Usage:
        async with get_session() as session:
            tag = await session.get(Tag, tag_id)
    """
    if _state.session_factory is None:
        await init_db()

    session_factory = _state.session_factory
    assert session_factory is not None  # For type narrowing

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except GovernanceError:
            await session.rollback()
            raise
        except IntegrityError as exc:
            logger.warning("Constraint violation, rolling back: %s", exc.orig)
            await session.rollback()
            raise Conflict(_describe_integrity_error(exc)) from exc
        except DBAPIError as exc:
            logger.exception("Database session error, rolling back transaction")
            await session.rollback()
            raise StoreError(str(exc.orig)) from exc
        except Exception:
            logger.exception("Unexpected error in session, rolling back transaction")
            await session.rollback()
            raise


@asynccontextmanager
async def session_scope(session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
    """Join the caller's transaction if one is given, else open a new one.

    Lets an operation such as provisioning run standalone or inside a
    larger unit of work (tenant creation) without committing early.
    """
    if session is not None:
        yield session
        return
    async with get_session() as own:
        yield own
