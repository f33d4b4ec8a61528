"""Database connection and session management for the Persona backend.

Provides the declarative base, a lazily created async engine and session
factory, the FastAPI session dependency, and start-up/shutdown helpers.
"""

from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .config import get_settings_instance
from .exceptions import DatabaseConnectionError, DatabaseSessionError
from .logging import get_logger

logger = get_logger(__name__)

Base = declarative_base()

# Lazily initialised so importing models never needs a reachable database
_async_engine: AsyncEngine | None = None
_AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _redact(database_url: str) -> str:
    """Strip credentials from a database URL for logging."""
    return database_url.split("@", 1)[1] if "@" in database_url else "URL format"


def async_database_url(database_url: str) -> str:
    """Force the asyncpg driver onto a PostgreSQL URL."""
    for prefix in ("postgresql+psycopg2://", "postgresql://"):
        if database_url.startswith(prefix):
            return "postgresql+asyncpg://" + database_url[len(prefix) :]
    return database_url


def get_async_engine() -> AsyncEngine:
    global _async_engine  # noqa: PLW0603
    if _async_engine is None:
        settings = get_settings_instance()
        try:
            logger.debug("Creating database engine", extra={"database": _redact(settings.database_url)})
            _async_engine = create_async_engine(
                async_database_url(settings.database_url),
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
                pool_recycle=settings.database_pool_recycle,
                pool_pre_ping=True,
                echo=False,
            )
        except Exception as e:
            logger.error(f"Failed to create async database engine: {e}")
            raise DatabaseConnectionError(f"engine creation: {e}") from e
    return _async_engine


def get_async_session_local() -> async_sessionmaker[AsyncSession]:
    global _AsyncSessionLocal  # noqa: PLW0603
    if _AsyncSessionLocal is None:
        _AsyncSessionLocal = async_sessionmaker(
            bind=get_async_engine(),
            expire_on_commit=False,
            autoflush=False,
            class_=AsyncSession,
        )
    return _AsyncSessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session that is rolled back on database errors."""
    session_local = get_async_session_local()
    async with session_local() as session:
        try:
            yield session
        except SQLAlchemyError as e:
            logger.error(f"Database session error: {e}")
            await session.rollback()
            raise DatabaseSessionError(f"session operation: {e}") from e


async def init_db() -> None:
    """Create the pgvector extension and all tables.

    Intended for development and tests; deployed databases are migrated with Alembic.
    """
    from ..models import register_all_models

    register_all_models()
    engine = get_async_engine()
    try:
        async with engine.begin() as conn:
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized successfully")
    except SQLAlchemyError as e:
        logger.error(f"Database initialization failed: {e}")
        raise DatabaseSessionError(f"database initialization: {e}") from e


async def close_db() -> None:
    global _async_engine, _AsyncSessionLocal  # noqa: PLW0603
    if _async_engine is None:
        return
    await _async_engine.dispose()
    _async_engine = None
    _AsyncSessionLocal = None
    logger.debug("Database connections closed")


async def check_db_connection() -> bool:
    """Check if the database answers a trivial query."""
    try:
        async with get_async_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError, DatabaseConnectionError) as e:
        logger.warning(f"Database connection check failed: {e}")
        return False
