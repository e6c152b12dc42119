"""
Tests for the in-memory like repository and the repository provider.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from repositories import InMemoryLikeRepository, LikeRepositoryProtocol, create_like_repository
from repositories.like_repository import LikeRepository


class StepClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.mark.unit
class TestInMemoryLikeRepository:
    async def test_toggle_alternates(self) -> None:
        """Each toggle flips the like state."""
        repo = InMemoryLikeRepository()

        states = [await repo.toggle_like("post-1", "s1", "ip", "fp") for _ in range(3)]

        assert states == [True, False, True]
        assert await repo.count_liked("post-1") == 1

    async def test_sessions_are_independent(self) -> None:
        """Likes are keyed by post and session."""
        repo = InMemoryLikeRepository()

        assert await repo.toggle_like("post-1", "s1", "ip", "fp") is True
        assert await repo.toggle_like("post-1", "s2", "ip", "fp") is True
        assert await repo.toggle_like("post-2", "s1", "ip", "fp") is True
        assert await repo.count_liked("post-1") == 2

    async def test_concurrent_toggles_flip_once_each(self) -> None:
        """Concurrent toggles are serialized."""
        repo = InMemoryLikeRepository()

        results = await asyncio.gather(*(repo.toggle_like("post-1", "s1", "ip", "fp") for _ in range(10)))

        assert results.count(True) == 5
        assert results.count(False) == 5
        assert await repo.count_liked("post-1") == 0

    async def test_metadata_replaced_on_toggle(self) -> None:
        """The latest vote's metadata is kept."""
        repo = InMemoryLikeRepository()

        await repo.toggle_like("post-1", "s1", "ip", "fp", metadata={"captchaVerified": True})
        await repo.toggle_like("post-1", "s1", "ip", "fp", metadata={"captchaVerified": False})

        assert repo._likes[("post-1", "s1")].metadata == {"captchaVerified": False}

    async def test_recent_fingerprint_sessions(self) -> None:
        """Only recent sessions with the fingerprint are returned."""
        clock = StepClock()
        repo = InMemoryLikeRepository(clock=clock)
        await repo.toggle_like("post-1", "old", "ip", "fp")
        clock.now += timedelta(minutes=20)
        await repo.toggle_like("post-1", "s1", "ip", "fp")
        await repo.toggle_like("post-2", "s1", "ip", "fp")
        await repo.toggle_like("post-2", "s2", "ip", "fp")
        await repo.toggle_like("post-2", "s3", "ip", "other-fp")

        sessions = await repo.recent_fingerprint_sessions("fp", since=clock.now - timedelta(minutes=10))

        assert sessions == {"s1", "s2"}

    async def test_recent_votes_newest_first(self) -> None:
        """Recent votes are newest first and limited."""
        clock = StepClock()
        repo = InMemoryLikeRepository(clock=clock)
        for i in range(3):
            await repo.toggle_like("post-1", f"s{i}", f"ip-{i}", "fp")
            clock.now += timedelta(seconds=1)

        votes = await repo.recent_votes_for_post("post-1", since=clock.now - timedelta(minutes=5), limit=2)

        assert [v.session_id for v in votes] == ["s2", "s1"]
        assert votes[0].ip_hash == "ip-2"

    def test_satisfies_protocol(self) -> None:
        """The in-memory store implements the repository protocol."""
        assert isinstance(InMemoryLikeRepository(), LikeRepositoryProtocol)


@pytest.mark.unit
class TestCreateLikeRepository:
    async def test_in_memory_without_database_url(self, test_settings) -> None:
        """No DATABASE_URL selects the in-memory store."""
        settings = test_settings.model_copy(update={"DATABASE_URL": None})

        repo = await create_like_repository(settings)

        assert isinstance(repo, InMemoryLikeRepository)

    async def test_postgres_with_database_url(self, test_settings) -> None:
        """A DATABASE_URL selects the PostgreSQL repository."""
        settings = test_settings.model_copy(update={"DATABASE_URL": "postgresql+asyncpg://u:p@db/vibes"})
        factory = MagicMock()

        with patch("db.session.init_db", AsyncMock(return_value=factory)) as mock_init:
            repo = await create_like_repository(settings)

        assert isinstance(repo, LikeRepository)
        assert repo.session_factory is factory
        mock_init.assert_awaited_once_with("postgresql+asyncpg://u:p@db/vibes", echo=False)
