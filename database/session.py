"""
Engine and session lifecycle for SqlChatStore.

Sync URLs from settings are rewritten to their async drivers:
  postgresql:// / postgres://   → postgresql+asyncpg://
  mysql:// / mysql+pymysql://   → mysql+aiomysql://
  sqlite://                     → sqlite+aiosqlite://

SQLite runs in WAL mode with a busy timeout so the scheduler tick and the
delivery worker can write the same file without "database is locked".
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None

_DRIVER_PREFIXES = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "mysql+pymysql://": "mysql+aiomysql://",
    "mysql://": "mysql+aiomysql://",
    "sqlite://": "sqlite+aiosqlite://",
}

SQLITE_BUSY_TIMEOUT_MS = 5000


def async_url(db_url: str) -> str:
    """Rewrite a sync database URL to use the async driver."""
    for prefix, replacement in _DRIVER_PREFIXES.items():
        if db_url.startswith(prefix):
            return replacement + db_url[len(prefix):]
    return db_url


def _pool_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # aiosqlite hands connections across threads
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """Return the process engine, building it on first use."""
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    url = async_url(db_url or settings.database.url)
    _engine = create_async_engine(url, echo=settings.debug, **_pool_options(url))
    if _engine.dialect.name == "sqlite":
        _install_sqlite_pragmas(_engine)

    logger.info("database_engine_created",
                dialect=_engine.dialect.name,
                url=str(_engine.url).split("@")[-1])
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit on success, roll back and re-raise on error."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False)

    async with _sessions() as session:
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
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def ping_db() -> bool:
    """Round-trip a trivial query; used by the health endpoint."""
    if _engine is None:
        return False
    try:
        async with _engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("database_ping_failed", error=str(e))
        return False


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
