"""
Tests for post-level voting anomaly detection.
"""

from datetime import datetime, timedelta, timezone

import pytest

from repositories.memory_like_repository import InMemoryLikeRepository
from services.anomaly import VotingAnomalyDetector


async def cast(repo: InMemoryLikeRepository, post_id: str, votes: int, distinct_ips: int) -> None:
    for i in range(votes):
        await repo.toggle_like(post_id, f"session-{i}", f"ip-{i % distinct_ips}", f"fp-{i}")


@pytest.mark.unit
class TestVotingAnomalyDetector:
    """Tests for VotingAnomalyDetector.detect."""

    async def test_quiet_post(self, like_repository: InMemoryLikeRepository) -> None:
        """A quiet post is not suspicious."""
        await cast(like_repository, "post-1", 5, 1)

        report = await VotingAnomalyDetector(like_repository).detect("post-1")

        assert report.suspicious is False
        assert report.vote_count == 5

    async def test_burst_from_few_ips(self, like_repository: InMemoryLikeRepository) -> None:
        """A burst from few IPs is suspicious."""
        await cast(like_repository, "post-1", 51, 3)

        report = await VotingAnomalyDetector(like_repository).detect("post-1")

        assert report.suspicious is True
        assert report.vote_count == 51
        assert report.unique_ips == 3
        assert report.reason == "Unusual voting pattern detected"

    async def test_burst_from_many_ips_is_fine(self, like_repository: InMemoryLikeRepository) -> None:
        """A burst from many IPs is not suspicious."""
        await cast(like_repository, "post-1", 60, 20)

        report = await VotingAnomalyDetector(like_repository).detect("post-1")

        assert report.suspicious is False
        assert report.unique_ips == 20

    async def test_threshold_is_exclusive(self, like_repository: InMemoryLikeRepository) -> None:
        """Exactly the burst threshold is not suspicious."""
        await cast(like_repository, "post-1", 50, 1)

        report = await VotingAnomalyDetector(like_repository).detect("post-1")

        assert report.suspicious is False

    async def test_other_posts_do_not_count(self, like_repository: InMemoryLikeRepository) -> None:
        """Votes on other posts are ignored."""
        await cast(like_repository, "post-2", 80, 1)

        report = await VotingAnomalyDetector(like_repository).detect("post-1")

        assert report.suspicious is False
        assert report.vote_count == 0

    async def test_old_votes_age_out(self, like_repository: InMemoryLikeRepository) -> None:
        """Votes outside the window are ignored."""
        await cast(like_repository, "post-1", 51, 1)
        later = datetime.now(timezone.utc) + timedelta(minutes=6)

        report = await VotingAnomalyDetector(like_repository, clock=lambda: later).detect("post-1")

        assert report.suspicious is False

    async def test_custom_thresholds(self, like_repository: InMemoryLikeRepository) -> None:
        """Thresholds are configurable."""
        await cast(like_repository, "post-1", 6, 2)

        detector = VotingAnomalyDetector(like_repository, burst_threshold=5, min_unique_ips=3)

        assert (await detector.detect("post-1")).suspicious is True
