"""Dependency providers for the patient passport database."""

from collections.abc import AsyncIterator
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from passport_sync.db.target import create_session_factory, create_target_engine
from passport_sync.settings import settings


@lru_cache(maxsize=1)
def get_target_engine() -> AsyncEngine:
    """Get singleton passport database engine."""
    return create_target_engine(settings.target_database_url, settings.target_pool_size)


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get singleton session factory bound to the passport engine."""
    return create_session_factory(get_target_engine())


async def get_session() -> AsyncIterator[AsyncSession]:
    """Request-scoped passport session."""
    async with get_session_factory()() as session:
        yield session
