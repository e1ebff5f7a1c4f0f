"""
Async engine and session scope for the job store.

  postgresql://  → postgresql+asyncpg://
  mysql://       → mysql+aiomysql://
  sqlite://      → sqlite+aiosqlite://

The engine is opened once with connect() (init_db() also creates the
outbox_jobs / messages tables) and released with close_db(). SqlJobStore
runs each operation in its own get_session() transaction.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    for prefix, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(prefix):
            return async_prefix + db_url[len(prefix):]
    return db_url


def connect(db_url: str, echo: bool = False) -> AsyncEngine:
    """Open the process-wide engine. A second call returns the open engine."""
    global _engine, _session_factory
    if _engine is not None:
        return _engine

    url = _to_async_url(db_url)
    kwargs: dict = {"echo": echo}
    if not url.startswith("sqlite"):
        # one tick at a time per worker; a small pool is plenty
        kwargs.update(pool_size=2, max_overflow=3, pool_recycle=1800, pool_pre_ping=True)

    _engine = create_async_engine(url, **kwargs)
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    logger.info("database_engine_created", dialect=_engine.dialect.name)
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("database not connected; call init_db() first")
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: committed on success, rolled back on error."""
    if _session_factory is None:
        raise RuntimeError("database not connected; call init_db() first")
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: str, echo: bool = False) -> None:
    """Connect and create any missing tables."""
    engine = connect(db_url, echo)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database_closed")
