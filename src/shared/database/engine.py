from __future__ import annotations

from typing import Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from src.shared.config import get_settings

logger = structlog.get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


async def create_database_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Initialize the async engine & session factory with sane pooling defaults.
    """
    global _engine, _session_factory
    settings = get_settings()
    database_url = database_url or settings.DATABASE_URL

    engine_kwargs = {"pool_pre_ping": True}
    if settings.is_testing or database_url.startswith("sqlite"):
        engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_timeout=30,
            pool_recycle=3600,
        )

    _engine = create_async_engine(database_url, echo=False, **engine_kwargs)

    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=True,
    )

    # Smoke test
    async with _engine.begin() as conn:
        await conn.execute(sa.text("SELECT 1"))

    logger.info("Database connection established")
    return _engine


async def close_database_engine() -> None:
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _session_factory = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call create_database_engine first.")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Session factory not initialized. Call create_database_engine first.")
    return _session_factory


def set_session_factory(factory: Optional[async_sessionmaker[AsyncSession]]) -> None:
    """Install an externally built session factory (tests, scripts)."""
    global _session_factory
    _session_factory = factory
