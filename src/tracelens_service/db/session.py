"""Database session management with lazy initialization."""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tracelens_service.core.config import get_settings
from tracelens_service.core.logging import get_logger
from tracelens_service.db.models import Base

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create async database engine (lazy initialization)."""
    global _engine

    if _engine is None:
        settings = get_settings()
        engine_kwargs: dict[str, Any] = {"echo": False, "pool_pre_ping": True}
        # SQLite (local development) does not take queue pool sizing arguments
        if not settings.database_url.startswith("sqlite"):
            engine_kwargs.update(pool_size=5, max_overflow=10)
        _engine = create_async_engine(settings.database_url, **engine_kwargs)
        logger.info("Database engine initialized")

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create async session factory."""
    global _session_factory

    if _session_factory is None:
        engine = get_engine()
        _session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("Session factory initialized")

    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for FastAPI to get database session."""
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create all tables that do not exist yet.

    Intended for local development and the CLI; deployed databases are
    managed through Alembic migrations.
    """
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


async def check_db() -> bool:
    """Return True when the database answers a trivial query."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return False


async def close_db() -> None:
    """Close database engine and cleanup resources."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Async database engine closed")
