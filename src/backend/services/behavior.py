"""
Behavioral analysis for anonymous votes.

Scores a short log of timestamped client actions for bot-likeness. Bots
typically exhibit:
- Perfectly regular timing between actions
- Superhuman action speed
- No pointer activity at all
- Very few distinct action kinds

Also keeps a per-session history of admitted votes, which feeds the optional
reputation scorer.
"""

import math
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from pydantic import BaseModel, Field

from services.state_store import StateStore, now_ms

ACTION_LOG_CAPACITY = 50

CONSISTENT_TIMING_STDDEV_MS = 100
CONSISTENT_TIMING_MIN_ACTIONS = 6
SUPERHUMAN_DELTA_MS = 500
PATTERN_MIN_ACTIONS = 11
MIN_DISTINCT_ACTIONS = 3

REASON_CONSISTENT_TIMING = "Consistent action timing"
REASON_SUPERHUMAN_SPEED = "Superhuman action speed"
REASON_NO_MOUSE = "No mouse interactions"
REASON_REPETITIVE = "Repetitive action patterns"


class ActionEvent(BaseModel):
    """One client-side interaction (mouse_move, click_like, scroll, ...)."""

    timestamp: int = Field(..., ge=0)  # epoch ms
    action: str = Field(..., min_length=1, max_length=64)


class BehaviorAnalysis(BaseModel):
    """Bot-likeness verdict for an action log."""

    is_bot: bool = False
    confidence: int = 0  # 0-100
    reasons: list[str] = Field(default_factory=list)


class ActionLog:
    """Ring buffer of the most recent actions (oldest dropped first)."""

    def __init__(self, capacity: int = ACTION_LOG_CAPACITY, clock: Callable[[], int] = now_ms):
        self._events: deque[ActionEvent] = deque(maxlen=capacity)
        self._clock = clock

    def record(self, action: str, timestamp: Optional[int] = None) -> ActionEvent:
        event = ActionEvent(timestamp=self._clock() if timestamp is None else timestamp, action=action)
        self._events.append(event)
        return event

    def snapshot(self, last: Optional[int] = None) -> list[ActionEvent]:
        events = list(self._events)
        return events[-last:] if last else events

    def __len__(self) -> int:
        return len(self._events)


def analyze_behavior(actions: Sequence[ActionEvent], bot_threshold: int = 50) -> BehaviorAnalysis:
    """
    Score an ordered action log.

    Heuristics are additive and independent; several can fire at once.
    Fewer than two actions carry no timing signal and are never flagged.
    """
    if len(actions) < 2:
        return BehaviorAnalysis()

    score = 0
    reasons: list[str] = []

    deltas = [actions[i].timestamp - actions[i - 1].timestamp for i in range(1, len(actions))]
    mean = sum(deltas) / len(deltas)
    std_dev = math.sqrt(sum((d - mean) ** 2 for d in deltas) / len(deltas))

    if std_dev < CONSISTENT_TIMING_STDDEV_MS and len(actions) >= CONSISTENT_TIMING_MIN_ACTIONS:
        score += 40
        reasons.append(REASON_CONSISTENT_TIMING)

    too_fast = sum(1 for d in deltas if d < SUPERHUMAN_DELTA_MS)
    if too_fast > len(deltas) / 2:
        score += 30
        reasons.append(REASON_SUPERHUMAN_SPEED)

    if len(actions) >= PATTERN_MIN_ACTIONS:
        if not any("mouse" in a.action for a in actions):
            score += 20
            reasons.append(REASON_NO_MOUSE)

        if len({a.action for a in actions}) < MIN_DISTINCT_ACTIONS:
            score += 30
            reasons.append(REASON_REPETITIVE)

    return BehaviorAnalysis(
        is_bot=score >= bot_threshold,
        confidence=min(score, 100),
        reasons=reasons,
    )


# =============================================================================
# Behavior history and reputation
# =============================================================================


class SessionReputation(BaseModel):
    """Aggregate trust inputs for one session."""

    session_id: str
    total_actions: int = 0
    flagged_actions: int = 0
    first_seen: Optional[datetime] = None


def calculate_reputation_score(reputation: SessionReputation, now: Optional[datetime] = None) -> int:
    """
    Trust score 0-100 for a session.

    Starts at 100, loses points for a high share of flagged actions and
    gains points for longevity.
    """
    score = 100

    if reputation.total_actions:
        flag_rate = reputation.flagged_actions / reputation.total_actions
        if flag_rate > 0.5:
            score -= 50
        elif flag_rate > 0.3:
            score -= 30
        elif flag_rate > 0.1:
            score -= 10

    if reputation.first_seen:
        now = now or datetime.now(timezone.utc)
        days_old = (now - reputation.first_seen).total_seconds() / 86400
        if days_old > 30:
            score += 10
        if days_old > 90:
            score += 10

    return max(0, min(100, score))


class BehaviorHistory:
    """Per-session record of admitted votes, kept in the shared state store."""

    def __init__(
        self,
        store: StateStore,
        max_entries: int = 100,
        ttl_seconds: int = 7 * 24 * 3600,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _key(self, session_id: str) -> str:
        return f"{StateStore.PREFIX_HISTORY}{session_id}"

    async def record(self, session_id: str, post_id: str, success: bool, flagged: bool) -> None:
        await self.store.push_capped(
            self._key(session_id),
            {
                "timestamp": self._clock(),
                "action": "vote",
                "post_id": post_id,
                "success": success,
                "flagged": flagged,
            },
            self.max_entries,
            self.ttl_seconds,
        )

    async def entries(self, session_id: str) -> list[dict]:
        return await self.store.get_list(self._key(session_id))


class ReputationScorer:
    """Derives a session's reputation score from its behavior history."""

    def __init__(self, history: BehaviorHistory):
        self.history = history

    async def reputation(self, session_id: str) -> SessionReputation:
        entries = await self.history.entries(session_id)
        return summarize_history(session_id, entries)

    async def score(self, session_id: str) -> int:
        return calculate_reputation_score(await self.reputation(session_id))


def summarize_history(session_id: str, entries: Iterable[dict]) -> SessionReputation:
    entries = list(entries)
    timestamps = [e["timestamp"] for e in entries if e.get("timestamp")]
    first_seen = (
        datetime.fromtimestamp(min(timestamps) / 1000, tz=timezone.utc) if timestamps else None
    )
    return SessionReputation(
        session_id=session_id,
        total_actions=len(entries),
        flagged_actions=sum(1 for e in entries if e.get("flagged")),
        first_seen=first_seen,
    )
