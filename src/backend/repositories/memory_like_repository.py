"""
In-memory like repository.

Same contract as the PostgreSQL repository; the toggle runs under a lock so
concurrent votes on one (post, session) pair flip exactly once each.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from repositories.provider import RecentVote


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LikeRecord:
    post_id: str
    session_id: str
    ip_hash: str
    fingerprint_hash: str
    user_agent: str
    liked: bool
    created_at: datetime
    updated_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


class InMemoryLikeRepository:
    """Process-local like store."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._likes: dict[tuple[str, str], LikeRecord] = {}

    async def toggle_like(
        self,
        post_id: str,
        session_id: str,
        ip_hash: str,
        fingerprint_hash: str,
        user_agent: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        async with self._lock:
            now = self._clock()
            record = self._likes.get((post_id, session_id))
            if record is None:
                record = LikeRecord(
                    post_id=post_id,
                    session_id=session_id,
                    ip_hash=ip_hash,
                    fingerprint_hash=fingerprint_hash,
                    user_agent=user_agent,
                    liked=True,
                    created_at=now,
                    updated_at=now,
                    metadata=dict(metadata or {}),
                )
                self._likes[(post_id, session_id)] = record
                return True

            record.liked = not record.liked
            record.ip_hash = ip_hash
            record.fingerprint_hash = fingerprint_hash
            record.user_agent = user_agent
            record.metadata = dict(metadata or {})
            record.updated_at = now
            return record.liked

    async def recent_fingerprint_sessions(
        self,
        fingerprint_hash: str,
        since: datetime,
        limit: int = 50,
    ) -> set[str]:
        async with self._lock:
            sessions = [
                r.session_id
                for r in self._likes.values()
                if r.fingerprint_hash == fingerprint_hash and r.updated_at >= since
            ]
        return set(sessions[:limit])

    async def recent_votes_for_post(
        self,
        post_id: str,
        since: datetime,
        limit: int = 100,
    ) -> list[RecentVote]:
        async with self._lock:
            records = sorted(
                (r for r in self._likes.values() if r.post_id == post_id and r.updated_at >= since),
                key=lambda r: r.updated_at,
                reverse=True,
            )
        return [RecentVote(session_id=r.session_id, ip_hash=r.ip_hash, voted_at=r.updated_at) for r in records[:limit]]

    async def count_liked(self, post_id: str) -> int:
        async with self._lock:
            return sum(1 for r in self._likes.values() if r.post_id == post_id and r.liked)
