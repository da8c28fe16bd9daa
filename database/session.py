"""
Engine and session lifecycle for the SQL repositories.

The URL in settings names the database in its plain form
(``postgresql://``, ``mysql://``, ``sqlite://``); the async driver is
chosen here so operators never write driver names into config.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Union

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    """Swap a plain scheme for its async driver; URLs that already name a driver pass through."""
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in ASYNC_DRIVERS:
        return db_url
    return f"{ASYNC_DRIVERS[scheme]}://{rest}"


def _engine_kwargs(url: str, config: DatabaseConfig) -> dict:
    kwargs = {"echo": config.echo}
    if url.startswith("sqlite"):
        # aiosqlite serializes on one connection; wait out writers instead of failing fast
        kwargs["connect_args"] = {"timeout": config.pool_timeout_seconds}
        return kwargs
    kwargs.update(
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout_seconds,
        pool_recycle=1800,
        pool_pre_ping=True,
    )
    return kwargs


def get_engine(database: Union[DatabaseConfig, str, None] = None) -> AsyncEngine:
    """Return the process engine, creating it on first use."""
    global _engine
    if _engine is not None:
        return _engine

    if isinstance(database, str):
        config = DatabaseConfig(url=database)
    else:
        config = database or get_settings().database
    url = _to_async_url(config.url)
    _engine = create_async_engine(url, **_engine_kwargs(url, config))
    logger.info("database_engine_created",
                dialect=_engine.dialect.name,
                host=_engine.url.host or _engine.url.database)
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on success, roll back on any error."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(database: Union[DatabaseConfig, str, None] = None) -> None:
    """Create the conversations and messages tables if they are missing."""
    engine = get_engine(database)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", tables=sorted(Base.metadata.tables))


async def ping_db() -> bool:
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error("database_ping_failed", error=str(e))
        return False


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
