"""
Tests for the PostgreSQL like repository.
"""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from core.exceptions import StorageError
from repositories.like_repository import LikeRepository


@pytest.fixture
def session_factory(mock_session):
    """Factory whose sessions are the shared mock session."""
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=mock_session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


@pytest.mark.unit
class TestLikeRepository:
    """Test LikeRepository operations."""

    async def test_toggle_returns_new_state(self, mock_session, session_factory) -> None:
        """Toggle returns the stored state and commits."""
        mock_result = MagicMock()
        mock_result.scalar_one = MagicMock(return_value=False)
        mock_session.execute = AsyncMock(return_value=mock_result)

        repo = LikeRepository(session_factory)
        liked = await repo.toggle_like("post-1", "session-1", "ip-hash", "fp-hash", "ua", {"captchaVerified": False})

        assert liked is False
        mock_session.commit.assert_awaited_once()

    async def test_toggle_is_single_upsert(self, mock_session, session_factory) -> None:
        """The flip happens in the database, not read-then-write."""
        mock_result = MagicMock()
        mock_result.scalar_one = MagicMock(return_value=True)
        mock_session.execute = AsyncMock(return_value=mock_result)

        repo = LikeRepository(session_factory)
        await repo.toggle_like("post-1", "session-1", "ip-hash", "fp-hash")

        mock_session.execute.assert_awaited_once()
        stmt = mock_session.execute.call_args.args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "ON CONFLICT (post_id, session_id) DO UPDATE" in sql
        assert "NOT anonymous_likes.liked" in sql
        assert "RETURNING anonymous_likes.liked" in sql

    async def test_toggle_wraps_database_errors(self, mock_session, session_factory) -> None:
        """Database errors surface as StorageError."""
        mock_session.execute = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("connection refused")))

        repo = LikeRepository(session_factory)
        with pytest.raises(StorageError) as exc_info:
            await repo.toggle_like("post-1", "session-1", "ip-hash", "fp-hash")

        assert exc_info.value.operation == "toggle_like"
        mock_session.commit.assert_not_awaited()

    async def test_recent_fingerprint_sessions_are_distinct(self, mock_session, session_factory) -> None:
        """Sessions sharing a fingerprint are deduplicated."""
        mock_result = MagicMock()
        mock_result.scalars.return_value.all.return_value = ["a", "b", "a"]
        mock_session.execute = AsyncMock(return_value=mock_result)

        repo = LikeRepository(session_factory)
        sessions = await repo.recent_fingerprint_sessions("fp-hash", since=datetime.now(timezone.utc))

        assert sessions == {"a", "b"}

    async def test_recent_votes_for_post(self, mock_session, session_factory) -> None:
        """Rows map onto RecentVote."""
        voted_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        mock_result = MagicMock()
        mock_result.all.return_value = [SimpleNamespace(session_id="s1", ip_hash="h1", updated_at=voted_at)]
        mock_session.execute = AsyncMock(return_value=mock_result)

        repo = LikeRepository(session_factory)
        votes = await repo.recent_votes_for_post("post-1", since=voted_at)

        assert len(votes) == 1
        assert votes[0].session_id == "s1"
        assert votes[0].ip_hash == "h1"
        assert votes[0].voted_at == voted_at

    async def test_recent_votes_wraps_database_errors(self, mock_session, session_factory) -> None:
        """Query errors surface as StorageError."""
        mock_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("timeout")))

        repo = LikeRepository(session_factory)
        with pytest.raises(StorageError):
            await repo.recent_votes_for_post("post-1", since=datetime.now(timezone.utc))
