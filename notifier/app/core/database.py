"""
Database layer — async SQL via SQLAlchemy 2.0.

Provides:
    • Lazily built async engine and session factory
    • Base model for ORM entities
    • Table creation and shutdown helpers

The engine is only built when the delivery ledger is configured for the
database backend (``DELIVERY_STORE=database``).

Usage:
    from notifier.app.core.database import get_session_factory, init_db

    await init_db()
    factory = get_session_factory()
    async with factory() as session:
        ...
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from notifier.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


# ── Engine ──
def create_engine_from_url(url: str, *, echo: bool = False) -> AsyncEngine:
    """Build an async engine; pool sizing applies to server databases only."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, future=True)
    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=echo,
        future=True,
    )


def get_engine(url: Optional[str] = None) -> AsyncEngine:
    global _engine
    if _engine is None:
        target = url or settings.DATABASE_URL
        _engine = create_engine_from_url(target, echo=settings.DATABASE_ECHO)
        logger.info("Database engine created: %s", target.split("@")[-1])
    return _engine


# ── Session Factory ──
def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_session_factory(url: Optional[str] = None) -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine(url))
    return _session_factory


# ── Lifecycle ──
async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Register ORM tables on Base.metadata
    from notifier.app.delivery import orm  # noqa: F401

    target = engine or get_engine()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db() -> None:
    """Dispose engine connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")
