"""
Database engine and sessions for execution state and flow versions.

Tables (database.models):
  flow_definitions    every saved version of every flow
  execution_states    one live row per conversation, compare-and-set on revision
  execution_history   archived (completed / aborted) executions

settings.database.url is a plain driver URL (postgresql://, mysql://,
sqlite://). It is switched to the matching async driver, which must be
installed: asyncpg, aiomysql or aiosqlite. A SQLite file gets its parent
directory created, so "sqlite:///./data/converse_flows.db" works on a fresh
checkout.

Usage:
    await init_db()                    # once at startup, when a backend is "sql"
    async with get_session() as db:    # one transaction
        await db.execute(...)
    await close_db()                   # at shutdown
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base, ExecutionArchiveRow, ExecutionStateRow, FlowDefinitionRow

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

ENGINE_TABLES = {
    FlowDefinitionRow.__tablename__: FlowDefinitionRow,
    ExecutionStateRow.__tablename__: ExecutionStateRow,
    ExecutionArchiveRow.__tablename__: ExecutionArchiveRow,
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def uses_sql(config: Union[DatabaseConfig, dict[str, Any]]) -> bool:
    """True when the execution store or the flow repository lives in the database."""
    if isinstance(config, dict):
        backends = (config.get("store_backend"), config.get("flow_backend"))
    else:
        backends = (config.store_backend, config.flow_backend)
    return "sql" in backends


def async_url(db_url: str) -> URL:
    url = make_url(db_url)
    driver = ASYNC_DRIVERS.get(url.drivername)
    return url.set(drivername=driver) if driver else url


def _prepare_sqlite(url: URL) -> None:
    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """Return the process-wide engine, creating it from db_url or settings on first use."""
    global _engine
    if _engine is not None:
        return _engine

    url = async_url(db_url or get_settings().database.url)
    options: dict[str, Any] = {"echo": get_settings().debug}
    if url.get_backend_name() == "sqlite":
        _prepare_sqlite(url)
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(pool_size=10, max_overflow=20, pool_recycle=1800, pool_pre_ping=True)

    _engine = create_async_engine(url, **options)
    logger.info("database_engine_created", dialect=_engine.dialect.name,
                url=url.render_as_string(hide_password=True))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """One transaction: committed on exit, rolled back on error."""
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


async def init_db(db_url: Optional[str] = None) -> None:
    """Create the flow and execution tables if they do not exist."""
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(ENGINE_TABLES))


async def describe_database() -> dict[str, Any]:
    """Dialect and row count per engine table (for the stats endpoint)."""
    counts = {}
    async with get_session() as db:
        for name, row in ENGINE_TABLES.items():
            counts[name] = await db.scalar(select(func.count()).select_from(row))
    return {"dialect": get_engine().dialect.name, "tables": counts}


async def close_db() -> None:
    global _engine, _sessions
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _sessions = None
        logger.info("database_closed")
