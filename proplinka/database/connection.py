"""Database connection and session management."""
from collections.abc import AsyncGenerator
from typing import Any, Dict

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from proplinka.config import get_settings
from proplinka.database.models import Base, Country

logger = structlog.get_logger(__name__)

# Global engine and session factory
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None

SUPPORTED_COUNTRIES = [
    {"code": "ZA", "name": "South Africa", "currency": "ZAR", "currency_symbol": "R"},
    {"code": "NA", "name": "Namibia", "currency": "NAD", "currency_symbol": "N$"},
]


def _engine_options(database_url: str) -> Dict[str, Any]:
    settings = get_settings()
    if database_url.startswith("sqlite"):
        # In-memory SQLite needs a single shared connection
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_pre_ping": True,  # Verify connections before using
        "pool_recycle": 3600,  # Recycle connections after 1 hour
    }


def get_engine() -> AsyncEngine:
    """
    Get or create the database engine.

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            **_engine_options(settings.database_url),
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the session factory.

    Returns:
        async_sessionmaker: SQLAlchemy async session factory
    """
    global _async_session_factory
    if _async_session_factory is None:
        engine = get_engine()
        _async_session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )
    return _async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """
    Dependency for getting database sessions.

    Yields:
        AsyncSession: Database session

    Example:
        @app.get("/properties")
        async def list_properties(db: AsyncSession = Depends(get_db)):
            ...
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def seed_reference_data(session: AsyncSession) -> int:
    """Insert supported countries that are missing. Returns the number added."""
    existing = set((await session.execute(select(Country.code))).scalars().all())
    added = 0
    for country in SUPPORTED_COUNTRIES:
        if country["code"] not in existing:
            session.add(Country(**country))
            added += 1
    if added:
        await session.commit()
        logger.info("reference_data_seeded", countries_added=added)
    return added


async def init_db() -> None:
    """
    Initialize database tables.

    Creates all tables defined in models if they don't exist and seeds
    the supported countries.
    """
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with get_session_factory()() as session:
        await seed_reference_data(session)


async def close_db() -> None:
    """Close database connections and dispose of the engine."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
