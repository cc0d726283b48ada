"""
Async database engine and session factory.

The engine and session factory are built explicitly and handed to the
SqlAlchemyAtomicStore; nothing here is a module-level singleton.
"""

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from database.models import Base
from shared.config import Settings

logger = logging.getLogger(__name__)


def create_engine_from_settings(settings: Settings, **engine_kwargs) -> AsyncEngine:
    """
    Create the async engine for DATABASE_URL.

    PostgreSQL (asyncpg) gets a bounded pool with pre-ping; other drivers
    (sqlite+aiosqlite in tests) use their defaults.
    """
    url = settings.DATABASE_URL
    kwargs = {"echo": settings.DATABASE_ECHO}

    if url.startswith("postgresql"):
        kwargs.update(pool_size=10, max_overflow=20, pool_pre_ping=True)

    kwargs.update(engine_kwargs)
    engine = create_async_engine(url, **kwargs)
    logger.info(f"Database engine created: dialect={engine.dialect.name}")
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create the ledger tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ledger tables ensured")
