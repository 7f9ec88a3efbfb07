"""Async database engine and session management utilities.

- WAL mode so readers never block the single SQLite writer
- Driver-level autocommit disabled and an explicit BEGIN emitted by SQLAlchemy,
  which makes SAVEPOINT (``session.begin_nested()``) behave on pysqlite/aiosqlite
- Store errors are never retried here: lock timeouts and every other
  ``OperationalError`` reach the caller unchanged

Key invariants:
- Every public write operation runs inside exactly one transaction (see ``atomic``)
- Foreign keys are enforced on SQLite so assignment/policy rows cascade with their tool
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from .config import DatabaseSettings, Settings, clear_settings_cache, get_settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_schema_ready = False
_schema_lock: asyncio.Lock | None = None


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Build the async SQLAlchemy engine.

    For SQLite the driver's own transaction handling is switched off and SQLAlchemy
    emits ``BEGIN`` itself; without this pysqlite/aiosqlite silently break SAVEPOINT,
    which the reconciliation conflict path depends on.
    """
    from sqlalchemy import event
    from sqlalchemy.engine import make_url

    connect_args: dict[str, Any] = {}
    is_sqlite = "sqlite" in settings.url.lower()

    if is_sqlite:
        parsed = make_url(settings.url)
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        connect_args = {
            "timeout": 30.0,
            "check_same_thread": False,
        }

    pool_kwargs: dict[str, Any] = {}
    if settings.pool_size is not None:
        pool_kwargs["pool_size"] = settings.pool_size
    if settings.max_overflow is not None:
        pool_kwargs["max_overflow"] = settings.max_overflow
    if settings.pool_timeout is not None:
        pool_kwargs["pool_timeout"] = settings.pool_timeout

    engine = create_async_engine(
        settings.url,
        echo=settings.echo,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_reset_on_return="rollback",
        connect_args=connect_args,
        **pool_kwargs,
    )

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
            # Stop the driver from issuing its own BEGIN/COMMIT around statements.
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA busy_timeout=30000")
                cursor.execute("PRAGMA foreign_keys=ON")
            finally:
                cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def do_begin(conn: Any) -> None:
            conn.exec_driver_sql("BEGIN")

    return engine


def init_engine(settings: Settings | None = None) -> None:
    """Initialise global engine and session factory once."""
    global _engine, _session_factory
    if _engine is not None and _session_factory is not None:
        return
    resolved_settings = settings or get_settings()
    _engine = _build_engine(resolved_settings.database)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)


def get_engine() -> AsyncEngine:
    if _engine is None:
        init_engine()
    assert _engine is not None
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Provide an async database session with guaranteed cleanup.

    The close is shielded so task cancellation cannot leak a checked-out
    connection; uncommitted work is rolled back by the pool on return.
    """
    factory = get_session_factory()
    session = factory()
    try:
        yield session
    finally:
        close_task = asyncio.create_task(session.close())
        try:
            await asyncio.shield(close_task)
        except BaseException:
            with suppress(BaseException):
                await close_task
            raise


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run a unit of work as one transaction on ``session``.

    When the session has no transaction yet, one is begun here and committed on
    success (rolled back on any exception). When the caller already holds a
    transaction, the work runs in a SAVEPOINT and the caller keeps ownership of
    the final commit.
    """
    if session.in_transaction():
        async with session.begin_nested():
            yield session
    else:
        async with session.begin():
            yield session


async def ensure_schema(settings: Settings | None = None) -> None:
    """Create tables (and partial unique indexes) from the SQLModel metadata once per process."""
    global _schema_ready, _schema_lock
    if _schema_ready:
        return
    if _schema_lock is None:
        _schema_lock = asyncio.Lock()
    async with _schema_lock:
        if _schema_ready:
            return
        init_engine(settings)
        # Register every table on SQLModel.metadata before create_all.
        from . import models  # noqa: F401

        engine = get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        _schema_ready = True


def reset_database_state() -> None:
    """Test helper to reset global engine/session state."""
    global _engine, _session_factory, _schema_ready, _schema_lock
    if _engine is not None:
        engine = _engine
        try:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not None and running.is_running():
                # Can't block inside a running loop; fall back to sync pool disposal.
                engine.sync_engine.dispose()
            else:
                asyncio.run(engine.dispose())
        except Exception:
            with suppress(Exception):
                engine.sync_engine.dispose()
    _engine = None
    _session_factory = None
    _schema_ready = False
    _schema_lock = None
    clear_settings_cache()


def get_database_path(settings: Settings | None = None) -> Path | None:
    """Return the SQLite database file path, or None for other backends and in-memory databases."""
    resolved = settings or get_settings()
    try:
        from sqlalchemy.engine import make_url

        parsed = make_url(resolved.database.url)
    except Exception:
        return None
    if parsed.get_backend_name() != "sqlite":
        return None
    if not parsed.database or parsed.database == ":memory:":
        return None
    return Path(parsed.database)
