"""
Patient passport database: declarative base, engine and session factories.
"""

import logging

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, NoSuchModuleError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from passport_sync.exceptions import FatalConfig

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_target_engine(database_url: str, pool_size: int = 5) -> AsyncEngine:
    """
    Create the async engine for the passport database.

    Raises:
        FatalConfig: If the URL is invalid or its driver is not installed
    """
    try:
        url = make_url(database_url)
        kwargs: dict[str, object] = {"pool_pre_ping": True}
        if url.get_backend_name() != "sqlite":
            kwargs.update(pool_size=pool_size, max_overflow=pool_size, pool_recycle=3600)
        return create_async_engine(url, **kwargs)
    except (ArgumentError, NoSuchModuleError, ImportError) as e:
        raise FatalConfig(f"Invalid target database configuration: {e}") from e


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory; objects stay readable after commit."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create any missing passport tables."""
    # Import registers the ORM tables on Base.metadata
    from passport_sync.models import passport  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Passport schema ensured (%d tables)", len(Base.metadata.tables))
