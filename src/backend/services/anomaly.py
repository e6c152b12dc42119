"""
Resource-level voting anomaly detection.

A burst of votes on one post is fine when it comes from many networks. The
same burst from a handful of IP hashes looks like a farm, and further votes
on that post need a CAPTCHA until the burst ages out of the window.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from pydantic import BaseModel

from repositories.provider import LikeRepositoryProtocol

logger = structlog.get_logger(__name__)


class AnomalyReport(BaseModel):
    suspicious: bool = False
    vote_count: int = 0
    unique_ips: int = 0
    reason: Optional[str] = None


class VotingAnomalyDetector:
    """Flags low-diversity vote bursts on a single post."""

    def __init__(
        self,
        repository: LikeRepositoryProtocol,
        window_minutes: int = 5,
        burst_threshold: int = 50,
        min_unique_ips: int = 10,
        sample_limit: int = 100,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repository = repository
        self.window = timedelta(minutes=window_minutes)
        self.burst_threshold = burst_threshold
        self.min_unique_ips = min_unique_ips
        self.sample_limit = sample_limit
        self._clock = clock

    async def detect(self, post_id: str) -> AnomalyReport:
        since = self._clock() - self.window
        votes = await self.repository.recent_votes_for_post(post_id, since, limit=self.sample_limit)

        if len(votes) <= self.burst_threshold:
            return AnomalyReport(vote_count=len(votes))

        unique_ips = len({v.ip_hash for v in votes})
        logger.warning("vote_spike_detected", post_id=post_id, votes=len(votes), unique_ips=unique_ips)

        if unique_ips < self.min_unique_ips:
            return AnomalyReport(
                suspicious=True,
                vote_count=len(votes),
                unique_ips=unique_ips,
                reason="Unusual voting pattern detected",
            )

        return AnomalyReport(vote_count=len(votes), unique_ips=unique_ips)
