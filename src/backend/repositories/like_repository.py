"""
Like repository for database operations.

The toggle is a single INSERT ... ON CONFLICT DO UPDATE statement, so two
concurrent votes for the same (post, session) can never both read the old
state and double-toggle.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog
from sqlalchemy import and_, not_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import StorageError
from models.like import AnonymousLike
from repositories.provider import RecentVote

logger = structlog.get_logger(__name__)


class LikeRepository:
    """Repository for anonymous like operations (PostgreSQL)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def toggle_like(
        self,
        post_id: str,
        session_id: str,
        ip_hash: str,
        fingerprint_hash: str,
        user_agent: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Flip the like state for (post_id, session_id) and return the new state.

        A first vote inserts liked=True; every later vote negates the stored
        value in the same statement.
        """
        now = datetime.now(timezone.utc)
        stmt = pg_insert(AnonymousLike).values(
            id=str(uuid4()),
            post_id=post_id,
            session_id=session_id,
            ip_hash=ip_hash,
            device_fingerprint=fingerprint_hash,
            user_agent=user_agent,
            liked=True,
            vote_metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[AnonymousLike.post_id, AnonymousLike.session_id],
            set_={
                "liked": not_(AnonymousLike.liked),
                "ip_hash": stmt.excluded.ip_hash,
                "device_fingerprint": stmt.excluded.device_fingerprint,
                "user_agent": stmt.excluded.user_agent,
                "vote_metadata": stmt.excluded.vote_metadata,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(AnonymousLike.liked)

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                liked = bool(result.scalar_one())
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("toggle_like_failed", post_id=post_id, error=str(e))
            raise StorageError("toggle_like", str(e)) from e

        return liked

    async def recent_fingerprint_sessions(
        self,
        fingerprint_hash: str,
        since: datetime,
        limit: int = 50,
    ) -> set[str]:
        """Distinct sessions that voted with this fingerprint since `since`."""
        query = (
            select(AnonymousLike.session_id)
            .where(
                and_(
                    AnonymousLike.device_fingerprint == fingerprint_hash,
                    AnonymousLike.updated_at >= since,
                )
            )
            .distinct()
            .limit(limit)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return {str(row) for row in result.scalars().all()}
        except SQLAlchemyError as e:
            raise StorageError("recent_fingerprint_sessions", str(e)) from e

    async def recent_votes_for_post(
        self,
        post_id: str,
        since: datetime,
        limit: int = 100,
    ) -> list[RecentVote]:
        """Votes on a post since `since`, newest first."""
        query = (
            select(AnonymousLike.session_id, AnonymousLike.ip_hash, AnonymousLike.updated_at)
            .where(
                and_(
                    AnonymousLike.post_id == post_id,
                    AnonymousLike.updated_at >= since,
                )
            )
            .order_by(AnonymousLike.updated_at.desc())
            .limit(limit)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return [
                    RecentVote(session_id=row.session_id, ip_hash=row.ip_hash, voted_at=row.updated_at)
                    for row in result.all()
                ]
        except SQLAlchemyError as e:
            raise StorageError("recent_votes_for_post", str(e)) from e
