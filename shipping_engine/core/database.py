"""
Database configuration and session management

The engine is built lazily from an explicit Settings object so importing the
models never opens a connection. Pool sizing follows the environment:
production uses the configured limits, everything else a small local pool.
"""
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from shipping_engine.core.config import Settings, get_settings

Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def build_engine(settings: Settings) -> AsyncEngine:
    """Create an async engine with pool settings for the environment."""
    if settings.DATABASE_URL.startswith("sqlite"):
        # SQLite drivers do not accept QueuePool sizing arguments
        pool_config = {}
    elif settings.ENVIRONMENT == "production":
        pool_config = {
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_recycle": settings.DB_POOL_RECYCLE,
            "pool_pre_ping": True,  # Verify connections before use
        }
    else:
        pool_config = {
            "pool_size": 2,
            "max_overflow": 5,
            "pool_pre_ping": True,
        }

    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        future=True,
        **pool_config,
    )


def get_session_factory(settings: Optional[Settings] = None) -> async_sessionmaker:
    """Return the process session factory, building the engine on first use."""
    global _engine, _session_factory
    if _session_factory is None:
        _engine = build_engine(settings or get_settings())
        _session_factory = async_sessionmaker(
            _engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


@asynccontextmanager
async def get_db_session(settings: Optional[Settings] = None):
    """
    Context manager for database sessions.

    Use this in:
    - Background jobs (tracking sync, label retry)
    - Webhook handlers
    - CLI scripts

    Usage:
        async with get_db_session() as db:
            result = await db.execute(...)
    """
    factory = get_session_factory(settings)
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def dispose_engine() -> None:
    """Close pooled connections (application shutdown)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
