"""
Async engine and session scope for the SQL record store and message log.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

The monitor, the side-effect runner and the router write concurrently, so
SQLite connections run in WAL mode with a busy timeout; server databases
get a pooled engine sized from settings.database.pool_size.

Usage:
    init_engine("sqlite:///./relay.db")   # optional, defaults to settings
    await init_db()                       # create tables
    async with get_session() as db:       # commit on exit, rollback on error
        ...
    await close_db()
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)


def _to_async_url(db_url: str) -> str:
    """Swap a sync driver prefix for its async equivalent. Unknown URLs pass through."""
    for sync_prefix, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(sync_prefix):
            return async_prefix + db_url[len(sync_prefix):]
    return db_url


def _is_sqlite(db_url: str) -> bool:
    return db_url.startswith("sqlite")


def _engine_kwargs(db_url: str, config: Optional[DatabaseConfig] = None) -> dict[str, Any]:
    config = config or get_settings().database
    kwargs: dict[str, Any] = {"echo": get_settings().debug}
    if _is_sqlite(db_url):
        kwargs["connect_args"] = {"check_same_thread": False}
        return kwargs
    kwargs.update(
        pool_size=config.pool_size,
        max_overflow=config.pool_size * 2,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )
    return kwargs


def _configure_sqlite(engine: AsyncEngine, busy_timeout_ms: int) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.close()


def _redact(url: Any) -> str:
    """Drop credentials from a URL before it is logged."""
    rendered = str(url)
    return rendered.split("@")[-1] if "@" in rendered else rendered


def init_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """(Re)create the process-wide engine. Defaults to settings.database.url."""
    global _engine, _session_factory
    config = get_settings().database
    url = _to_async_url(db_url or config.url)
    _engine = create_async_engine(url, **_engine_kwargs(url, config))
    if _is_sqlite(url):
        _configure_sqlite(_engine, config.sqlite_busy_timeout_ms)
    _session_factory = None
    logger.info("database_engine_created", dialect=_engine.dialect.name, url=_redact(_engine.url))
    return _engine


def get_engine() -> AsyncEngine:
    return _engine if _engine is not None else init_engine()


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commits when the block exits, rolls back and re-raises on error."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), class_=AsyncSession,
                                              expire_on_commit=False)
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def ping_db() -> bool:
    """True when a trivial query succeeds on the current engine."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.error("database_unreachable", error=str(e))
        return False


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed", dialect=_engine.dialect.name)
    _engine = None
    _session_factory = None
