"""Database configuration and session management.

Provides async SQLAlchemy engine and session factory builders. Nothing
connects at import time; the caller decides which URL to use.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from orderflow.infrastructure.config import settings

# Base class for models
Base = declarative_base()


def build_engine(database_url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """Create the async engine.

    Args:
        database_url: Connection URL (defaults to ``settings.database_url``).
        echo: Log SQL statements (defaults to ``settings.debug``).
    """
    return create_async_engine(
        database_url or settings.database_url,
        echo=settings.debug if echo is None else echo,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create every table that does not exist yet."""
    from orderflow.infrastructure import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Get database session.

    Commits when the block exits cleanly and rolls back otherwise.

    Yields:
        AsyncSession for database operations.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
