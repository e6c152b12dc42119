"""
Repository provider for dependency injection.

The admission pipeline talks to the like store only through
LikeRepositoryProtocol. PostgreSQL backs it when DATABASE_URL is set;
otherwise an in-memory repository is used (local development, tests).

Usage:
    like_repo = await create_like_repository(settings)
    liked = await like_repo.toggle_like(post_id, session_id, ip_hash, fp_hash)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable

import structlog

from core.config import Settings

logger = structlog.get_logger(__name__)


@dataclass
class RecentVote:
    """A vote as seen by the anomaly and fingerprint checks."""

    session_id: str
    ip_hash: str
    voted_at: datetime


# =============================================================================
# Repository Protocols (Interfaces)
# =============================================================================


@runtime_checkable
class LikeRepositoryProtocol(Protocol):
    """Protocol defining like repository operations."""

    async def toggle_like(
        self,
        post_id: str,
        session_id: str,
        ip_hash: str,
        fingerprint_hash: str,
        user_agent: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool: ...

    async def recent_fingerprint_sessions(
        self, fingerprint_hash: str, since: datetime, limit: int = 50
    ) -> set[str]: ...

    async def recent_votes_for_post(
        self, post_id: str, since: datetime, limit: int = 100
    ) -> list[RecentVote]: ...


async def create_like_repository(settings: Settings) -> LikeRepositoryProtocol:
    """Build the like repository for the configured backend."""
    if settings.DATABASE_URL:
        from db.session import init_db
        from repositories.like_repository import LikeRepository

        session_factory = await init_db(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        logger.info("like_repository_initialized", backend="postgres")
        return LikeRepository(session_factory)

    from repositories.memory_like_repository import InMemoryLikeRepository

    logger.warning("like_repository_initialized", backend="in_memory", note="likes are not persisted")
    return InMemoryLikeRepository()
