"""
Async engine and session helpers for the SQL store.

Sync-style URLs from config are mapped to their async driver:
  sqlite://      → sqlite+aiosqlite://
  postgresql://  → postgresql+asyncpg://     (asyncpg installed separately)

Each SqlStore owns one engine and one session factory; nothing here is
module-global.
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

ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
}

# Server databases only; SQLite uses the default pool
SERVER_POOL = {"pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}


def to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep or "+" in scheme:
        return db_url
    return f"{ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def create_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    url = to_async_url(db_url)
    options: dict = {"echo": echo}
    if not url.startswith("sqlite"):
        options.update(SERVER_POOL)
    engine = create_async_engine(url, **options)
    logger.info("sql_engine_created", dialect=engine.dialect.name, database=engine.url.database)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit when the block exits cleanly, roll back otherwise."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """Create the campaign-relay tables if they are missing."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("sql_schema_ready", tables=sorted(Base.metadata.tables))
