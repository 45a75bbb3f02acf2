"""Async database engine and session management.

This module provides the async SQLAlchemy 2.0 engine configuration,
session factory, and FastAPI dependency injection for database sessions.

Usage:
    from recipestream.database import get_session

    async def my_route(db: AsyncSession = Depends(get_session)):
        result = await db.execute(select(RecipeVideo))
        ...

Workers and services open their own short transactions instead:

    async with async_session_factory() as db, db.begin():
        job = await db.get(TranscodeJob, job_id)
"""

import os
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from recipestream.config import get_database_url

# DATABASE_URL may be absent while tests import this module
_database_url = os.getenv("DATABASE_URL")

if _database_url:
    engine = create_async_engine(
        get_database_url(),
        pool_size=10,
        max_overflow=5,
        pool_pre_ping=True,
        echo=os.getenv("DATABASE_ECHO", "").lower() == "true",
    )
else:
    engine = None  # type: ignore[assignment]


async_session_factory: async_sessionmaker[AsyncSession] | None = (
    async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # keep attributes readable after the claim transaction closes
    )
    if engine
    else None
)


def require_session_factory(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Return the given factory, or the configured one.

    Raises:
        RuntimeError: If neither is available.
    """
    factory = factory or async_session_factory
    if factory is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")
    return factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database session injection.

    Yields an async database session with automatic commit on success
    and rollback on exception.

    Raises:
        RuntimeError: If database is not configured.
    """
    factory = require_session_factory()

    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, async_session_factory) for testing.
    """
    test_engine = create_async_engine(
        database_url,
        echo=False,
    )
    test_session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return test_engine, test_session_factory
