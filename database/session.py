"""
Async engine and session lifecycle for the message store.

URL translation (sync URLs in settings.yaml, async drivers at runtime):
  postgresql://  → postgresql+asyncpg://     (extra: postgres)
  mysql://       → mysql+aiomysql://         (extra: mysql)
  sqlite://      → sqlite+aiosqlite://       (default)

SQLite is the expected deployment (a single board next to the model), so
its connections are tuned for one writer shared by the visitor API, the
background jobs and the admin panel: WAL so readers never block the
writer, a busy timeout so concurrent placeholder inserts queue up instead
of failing with "database is locked", and foreign keys on.

Usage:
    await init_db()                    # once at startup
    async with get_session() as db:    # one transaction per store call
        result = await db.execute(...)
    await close_db()                   # at shutdown
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

SQLITE_BUSY_TIMEOUT_SECONDS = 15

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    replacements = [
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
        ("mysql://", "mysql+aiomysql://"),
        ("mysql+pymysql://", "mysql+aiomysql://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ]
    for sync_prefix, async_prefix in replacements:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    return db_url


def _engine_options(db_url: str, debug: bool) -> dict[str, Any]:
    if db_url.startswith("sqlite"):
        return {
            "echo": debug,
            "connect_args": {"timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        }
    # server databases: a small pool is plenty for one process
    return {
        "echo": debug,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def _configure_sqlite(engine: AsyncEngine) -> None:

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_SECONDS * 1000}")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _safe_url(engine: AsyncEngine) -> str:
    return engine.url.render_as_string(hide_password=True)


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        url = _to_async_url(db_url or settings.database.url)
        _engine = create_async_engine(url, **_engine_options(url, settings.debug))
        if _engine.dialect.name == "sqlite":
            _configure_sqlite(_engine)
        logger.info("database_engine_created", dialect=_engine.dialect.name, url=_safe_url(_engine))
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: committed on success, rolled back and re-raised on error."""
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    """Create missing tables."""
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    """Dispose the engine; the next get_engine() builds a fresh one."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
