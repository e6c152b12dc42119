"""
Tests for behavioral analysis and reputation scoring.
"""

from datetime import datetime, timedelta, timezone

import pytest

from services.behavior import (
    REASON_CONSISTENT_TIMING,
    REASON_NO_MOUSE,
    REASON_REPETITIVE,
    REASON_SUPERHUMAN_SPEED,
    ActionEvent,
    ActionLog,
    BehaviorHistory,
    ReputationScorer,
    SessionReputation,
    analyze_behavior,
    calculate_reputation_score,
)
from services.state_store import InMemoryStateStore


def make_actions(timestamps: list[int], actions: list[str] | str = "click_like") -> list[ActionEvent]:
    if isinstance(actions, str):
        actions = [actions] * len(timestamps)
    return [ActionEvent(timestamp=t, action=a) for t, a in zip(timestamps, actions)]


class TestAnalyzeBehavior:
    """Tests for analyze_behavior heuristics."""

    @pytest.mark.parametrize("count", [0, 1])
    def test_too_few_actions_never_flagged(self, count: int) -> None:
        """Fewer than two actions are never flagged."""
        result = analyze_behavior(make_actions(list(range(0, count * 10, 10))))

        assert result.is_bot is False
        assert result.confidence == 0
        assert result.reasons == []

    def test_consistent_timing_alone_is_not_a_bot(self) -> None:
        """Six evenly spaced, slow actions score 40, below the threshold."""
        result = analyze_behavior(make_actions([0, 1000, 2000, 3000, 4000, 5000]))

        assert result.reasons == [REASON_CONSISTENT_TIMING]
        assert result.confidence == 40
        assert result.is_bot is False

    def test_consistent_timing_needs_six_actions(self) -> None:
        """Consistent timing needs at least six actions."""
        result = analyze_behavior(make_actions([0, 1000, 2000, 3000, 4000]))

        assert REASON_CONSISTENT_TIMING not in result.reasons

    def test_fast_regular_actions_are_a_bot(self) -> None:
        """Fast regular actions are flagged as a bot."""
        result = analyze_behavior(make_actions([0, 100, 200, 300, 400, 500]))

        assert result.is_bot is True
        assert result.confidence == 70
        assert set(result.reasons) == {REASON_CONSISTENT_TIMING, REASON_SUPERHUMAN_SPEED}

    def test_superhuman_speed_needs_more_than_half(self) -> None:
        """Superhuman speed needs more than half the gaps fast."""
        # Deltas 100, 100, 800, 1000: exactly half are fast
        result = analyze_behavior(make_actions([0, 100, 200, 1000, 2000]))
        assert REASON_SUPERHUMAN_SPEED not in result.reasons

        # Deltas 100, 100, 100, 1000
        result = analyze_behavior(make_actions([0, 100, 200, 300, 1300]))
        assert result.reasons == [REASON_SUPERHUMAN_SPEED]
        assert result.confidence == 30

    def test_scripted_clicks_max_out_confidence(self) -> None:
        """Scripted clicks trip every heuristic."""
        result = analyze_behavior(make_actions([i * 50 for i in range(11)]))

        assert result.is_bot is True
        assert result.confidence == 100
        assert set(result.reasons) == {
            REASON_CONSISTENT_TIMING,
            REASON_SUPERHUMAN_SPEED,
            REASON_NO_MOUSE,
            REASON_REPETITIVE,
        }

    def test_twenty_identical_clicks_at_fifty_ms(self) -> None:
        """Twenty clicks 50ms apart trip every heuristic."""
        result = analyze_behavior(make_actions([i * 50 for i in range(20)]))

        assert result.is_bot is True
        assert result.confidence == 100
        assert len(result.reasons) == 4

    def test_pattern_checks_need_eleven_actions(self) -> None:
        """Pattern checks need eleven actions."""
        result = analyze_behavior(make_actions([i * 1000 + (i % 2) * 400 for i in range(10)]))

        assert REASON_NO_MOUSE not in result.reasons
        assert REASON_REPETITIVE not in result.reasons

    def test_human_like_session(self) -> None:
        """Varied, mouse-driven sessions pass."""
        timestamps = [0, 700, 1900, 2600, 4100, 4800, 6600, 7300, 8900, 10200, 12000]
        kinds = ["mouse_move", "scroll", "mouse_move", "key_press", "mouse_move", "scroll",
                 "mouse_move", "mouse_move", "scroll", "mouse_move", "click_like"]

        result = analyze_behavior(make_actions(timestamps, kinds))

        assert result.is_bot is False
        assert result.confidence == 0

    def test_custom_threshold(self) -> None:
        """The bot threshold is configurable."""
        result = analyze_behavior(make_actions([0, 1000, 2000, 3000, 4000, 5000]), bot_threshold=40)

        assert result.is_bot is True


class TestActionLog:
    """Tests for the action ring buffer."""

    def test_drops_oldest(self) -> None:
        """The ring buffer drops the oldest action."""
        log = ActionLog(capacity=3, clock=lambda: 0)
        for i in range(5):
            log.record(f"a{i}", timestamp=i)

        assert [e.action for e in log.snapshot()] == ["a2", "a3", "a4"]
        assert len(log) == 3

    def test_snapshot_last(self) -> None:
        """Snapshots can be limited to the newest actions."""
        log = ActionLog(clock=lambda: 42)
        for name in ("mouse_move", "scroll", "click_like"):
            log.record(name)

        recent = log.snapshot(last=2)

        assert [e.action for e in recent] == ["scroll", "click_like"]
        assert all(e.timestamp == 42 for e in recent)

    def test_default_capacity_is_fifty(self) -> None:
        """The default capacity is fifty actions."""
        log = ActionLog(clock=lambda: 0)
        for _ in range(60):
            log.record("mouse_move")

        assert len(log) == 50


class TestReputation:
    """Tests for reputation scoring."""

    def test_new_session_scores_full(self) -> None:
        """A session without history scores 100."""
        assert calculate_reputation_score(SessionReputation(session_id="s")) == 100

    @pytest.mark.parametrize(
        ("flagged", "expected"),
        [(0, 100), (1, 100), (2, 90), (4, 70), (6, 50)],
    )
    def test_flag_rate_penalties(self, flagged: int, expected: int) -> None:
        """Flag rates map onto penalty bands."""
        rep = SessionReputation(session_id="s", total_actions=10, flagged_actions=flagged)

        assert calculate_reputation_score(rep) == expected

    def test_age_bonus_is_clamped(self) -> None:
        """Age bonuses never push the score above 100."""
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        rep = SessionReputation(
            session_id="s",
            total_actions=10,
            flagged_actions=2,
            first_seen=now - timedelta(days=100),
        )

        assert calculate_reputation_score(rep, now=now) == 100

    async def test_scorer_reads_history(self, state_store: InMemoryStateStore, clock) -> None:
        """The scorer summarizes recorded history."""
        history = BehaviorHistory(state_store, max_entries=10, clock=clock)
        for flagged in (True, True, True, False):
            await history.record("s1", "post-1", success=True, flagged=flagged)

        scorer = ReputationScorer(history)
        rep = await scorer.reputation("s1")

        assert rep.total_actions == 4
        assert rep.flagged_actions == 3
        assert rep.first_seen is not None
        assert await scorer.score("s1") == 50

    async def test_history_is_capped(self, state_store: InMemoryStateStore, clock) -> None:
        """History keeps only the newest entries."""
        history = BehaviorHistory(state_store, max_entries=2, clock=clock)
        for post in ("p1", "p2", "p3"):
            await history.record("s1", post, success=True, flagged=False)

        entries = await history.entries("s1")

        assert [e["post_id"] for e in entries] == ["p2", "p3"]
        assert entries[0]["action"] == "vote"
