"""
Async engine and session factory for the SQL ledger backend.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from goallive.config import LedgerConfig

logger = logging.getLogger(__name__)


def create_engine(config: LedgerConfig) -> AsyncEngine:
    """Create an async engine for the configured database URL."""
    url = make_url(config.database_url)

    if url.get_backend_name() == "sqlite":
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        return create_async_engine(url, echo=config.echo_sql)

    # Convert sync URL to async
    if url.drivername in ("postgresql", "postgresql+psycopg2"):
        url = url.set(drivername="postgresql+asyncpg")

    return create_async_engine(
        url,
        echo=config.echo_sql,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


@asynccontextmanager
async def get_db_session(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for a transactional session.

    Usage:
        async with get_db_session(factory) as db:
            result = await db.execute(select(...))

    Commits on clean exit and rolls back on error.
    """
    session = factory()
    try:
        async with session.begin():
            yield session
    except Exception:
        logger.debug("Rolling back ledger transaction")
        raise
    finally:
        await session.close()
