"""
Async database engine and session factory.

The like store is optional: without DATABASE_URL the service runs on the
in-memory repository.
"""

from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from db.base import Base

logger = structlog.get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


async def init_db(database_url: str, echo: bool = False) -> async_sessionmaker[AsyncSession]:
    """Create the engine, ensure tables exist and return the session factory."""
    global _engine, _session_factory

    if _session_factory is not None:
        return _session_factory

    # Register models on Base.metadata
    import models  # noqa: F401

    _engine = create_async_engine(database_url, echo=echo, pool_pre_ping=True)
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    logger.info("database_initialized")
    return _session_factory


async def close_db() -> None:
    """Dispose of the engine's connection pool."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed")
    _engine = None
    _session_factory = None
