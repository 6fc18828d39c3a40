"""Async SQLAlchemy engine and session management."""

from __future__ import annotations

import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from oneclicktag.storage.models import Base
from oneclicktag.storage.tenant_filter import TenantScopedSession

logger = logging.getLogger("oneclicktag.storage")

_engine: AsyncEngine | None = None
_session_factory: sessionmaker | None = None


async def init_db(url: str) -> None:
    """Create the engine for *url* and create missing tables."""
    global _engine, _session_factory

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    if url.startswith("sqlite"):
        _engine = create_async_engine(url, echo=False)

        @event.listens_for(_engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):  # type: ignore[no-untyped-def]
            # The driver's own deferred BEGIN is disabled; see begin_immediate.
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(_engine.sync_engine, "begin")
        def begin_immediate(conn):  # type: ignore[no-untyped-def]
            # Take the write lock at BEGIN so a transaction's reads and writes
            # are serialised against every other writer.
            conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        _engine = create_async_engine(url, echo=False, pool_size=20, max_overflow=10)

    _session_factory = sessionmaker(  # type: ignore[call-overload]
        _engine,
        class_=AsyncSession,
        sync_session_class=TenantScopedSession,
        expire_on_commit=False,
    )

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized (%s)", _engine.url.render_as_string(hide_password=True))


async def close_db() -> None:
    """Close the database connection."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session() -> AsyncSession:
    """Get a new database session."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory()
