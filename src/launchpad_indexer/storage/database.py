"""Database connection and session management.

This module provides the async engine, session factory, and the
transactional session scope used by every component of the indexer.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from launchpad_indexer.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


def _normalize_async_database_url(database_url: str) -> str:
    if database_url.startswith("postgresql://"):
        logger.warning(
            "Database URL uses sync dialect 'postgresql://'; using async driver 'postgresql+asyncpg://'."
        )
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def create_async_db_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an asynchronous SQLAlchemy engine.

    Pool sizing options are dropped for SQLite, whose async driver does not
    take them.

    Args:
        database_url: Database connection URL (e.g., postgresql+asyncpg://...).
        **kwargs: Additional engine options.

    Returns:
        SQLAlchemy AsyncEngine instance.
    """
    url = _normalize_async_database_url(database_url)
    if url.startswith("sqlite"):
        kwargs.pop("pool_size", None)
        kwargs.pop("max_overflow", None)
    return create_async_engine(url, **kwargs)


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an asynchronous session factory.

    Args:
        engine: SQLAlchemy AsyncEngine instance.

    Returns:
        Async session factory.
    """
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Open a session that commits on success and rolls back on error."""
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_async_db(engine: AsyncEngine) -> None:
    """Create all tables defined in the models (tests and local SQLite runs)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema initialized (async)")


class DatabaseManager:
    """Owns the async engine and hands out transactional sessions."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        """Initialize database manager.

        Args:
            database_url: Database connection URL.
            pool_size: Connection pool size.
            max_overflow: Maximum overflow connections.
            echo: Echo SQL statements for debugging.
        """
        self.database_url = database_url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo

        self._async_engine: AsyncEngine | None = None
        self._async_session_factory: async_sessionmaker[AsyncSession] | None = None

    def _get_async_engine(self) -> AsyncEngine:
        """Get or create the asynchronous engine."""
        if self._async_engine is None:
            self._async_engine = create_async_db_engine(
                self.database_url,
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                echo=self._echo,
            )
        return self._async_engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Session factory for components that manage their own transactions."""
        if self._async_session_factory is None:
            self._async_session_factory = create_async_session_factory(self._get_async_engine())
        return self._async_session_factory

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an asynchronous session as a context manager.

        Commits on success, rolls back on error.

        Yields:
            SQLAlchemy AsyncSession instance.
        """
        async with session_scope(self.session_factory) as session:
            yield session

    async def init_schema_async(self) -> None:
        """Initialize database schema asynchronously."""
        await init_async_db(self._get_async_engine())

    async def dispose_async(self) -> None:
        """Dispose of all async database connections."""
        if self._async_engine is not None:
            await self._async_engine.dispose()
            self._async_engine = None
            self._async_session_factory = None
        logger.info("Async database connections disposed")
