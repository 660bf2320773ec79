"""Database connection management."""

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from hodwatch.config.settings import get_settings
from hodwatch.database.models import Base

_async_engine: AsyncEngine | None = None


def async_database_url(url: str) -> str:
    """Point a postgres:// or postgresql:// URL at the asyncpg driver."""
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def get_async_engine() -> AsyncEngine:
    """Create (once) and return the async database engine."""
    global _async_engine
    if _async_engine is None:
        settings = get_settings()
        _async_engine = create_async_engine(
            async_database_url(str(settings.database_url)),
            pool_pre_ping=True,
            pool_size=5,
            max_overflow=10,
            echo=settings.log_level == "DEBUG",
        )
    return _async_engine


async def dispose_engine() -> None:
    """Close pooled connections held by the shared engine."""
    global _async_engine
    if _async_engine is not None:
        await _async_engine.dispose()
        _async_engine = None


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Initialize the database by creating all tables."""
    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
