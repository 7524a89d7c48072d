"""Async database connection management.

One engine per process, created lazily from ``settings.database_url``.
Services never reach for the global engine themselves: they are handed a
session factory, which tests replace with one bound to a throwaway SQLite
file.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

import folio.db.models  # noqa: F401 - register tables on SQLModel.metadata
from folio.config import settings
from folio.errors import PersistenceError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from contextlib import AbstractAsyncContextManager

    SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

log = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    """Create an async engine; SQLite engines get foreign keys switched on."""
    url = url or settings.database_url
    kwargs: dict[str, Any] = {"echo": settings.db_echo if echo is None else echo}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = settings.db_pool_size
        kwargs["pool_pre_ping"] = True

    engine = create_async_engine(url, **kwargs)
    if url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory whose objects stay readable after commit."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Get (or lazily create) the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = create_engine()
        log.debug("Database engine created", url=_engine.url.render_as_string(hide_password=True))
    return _engine


def async_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the process-wide session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a session from the process-wide factory."""
    async with async_session_factory()() as session:
        yield session


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables that do not exist yet."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    log.info("Database initialized", tables=len(SQLModel.metadata.tables))


async def close_db() -> None:
    """Dispose of the process-wide engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def check_db_health(engine: AsyncEngine | None = None) -> bool:
    """Return True if a trivial query succeeds."""
    engine = engine or get_engine()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        log.warning("Database health check failed", error=str(e))
        return False
    return True


@asynccontextmanager
async def transaction(
    session_factory: SessionFactory, operation: str, **log_context: Any
) -> AsyncIterator[AsyncSession]:
    """Run a block in one transaction, committing on success.

    SQLAlchemy failures are re-raised as PersistenceError (chained to the
    original). Any other exception rolls back and propagates untouched.
    """
    try:
        async with session_factory() as session, session.begin():
            yield session
    except SQLAlchemyError as e:
        log.error("Persistence failure", operation=operation, error=str(e), **log_context)
        raise PersistenceError(
            f"{operation} failed: {e}",
            details={"operation": operation, **{k: str(v) for k, v in log_context.items()}},
        ) from e
