"""Database connection and session management."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from storymeter.config import settings
from storymeter.database.models import Base

logger = structlog.get_logger()


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, applying pool settings for server databases only."""
    engine_kwargs: dict[str, Any] = {"echo": echo}
    if not database_url.startswith("sqlite"):
        engine_kwargs.update(
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_POOL_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
        )
    return create_async_engine(database_url, **engine_kwargs)


class _DatabaseHolder:
    """Holder for the engine and session factory to avoid global statements."""

    engine: AsyncEngine | None = None
    session_factory: async_sessionmaker[AsyncSession] | None = None


_db = _DatabaseHolder()


def configure_database(engine: AsyncEngine) -> None:
    """Point the session factory at an existing engine."""
    _db.engine = engine
    _db.session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Get the engine, creating it from DATABASE_URL on first use."""
    if _db.engine is None:
        configure_database(create_engine_for_url(settings.DATABASE_URL, echo=settings.DEBUG))
    assert _db.engine is not None
    return _db.engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory bound to the current engine."""
    if _db.session_factory is None:
        get_engine()
    assert _db.session_factory is not None
    return _db.session_factory


async def init_database() -> None:
    """Initialize database connection and create tables if needed.

    In development/test: Creates tables from models using create_all().
    In production: schema is managed by migrations.
    """
    # Only log the database host, not credentials or path
    try:
        db_host = settings.DATABASE_URL.split("@")[-1].split(":")[0].split("/")[0]
    except (IndexError, AttributeError):
        db_host = "unknown"
    logger.info("Initializing database connection", host=db_host)

    if settings.ENVIRONMENT in ("development", "test"):
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created/verified (development mode)")
    else:
        logger.info("Skipping create_all in production - migrations manage schema")


async def close_database() -> None:
    """Close database connection pool."""
    if _db.engine is None:
        return
    logger.info("Closing database connection pool")
    await _db.engine.dispose()
    _db.engine = None
    _db.session_factory = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting database session.

    Usage:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_session_factory()() as session:
        try:
            yield session
            if session.new or session.dirty or session.deleted:
                await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for database session.

    Usage:
        async with get_db_context() as db:
            ...
    """
    async with get_session_factory()() as session:
        try:
            yield session
            if session.new or session.dirty or session.deleted:
                await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
