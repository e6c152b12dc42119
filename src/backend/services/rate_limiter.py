"""
Fixed-window rate limiting for vote submissions.

Keys identify scope and principal, e.g. "ip:<hash>" or "session:<id>".
Counters live in the shared StateStore so every instance sees the same
window.
"""

from dataclasses import dataclass
from typing import Callable

from services.state_store import StateStore, now_ms


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    reset_time: int  # epoch ms when the current window ends


class RateLimiter:
    """Fixed-window counter keyed by arbitrary identifiers."""

    def __init__(self, store: StateStore, clock: Callable[[], int] = now_ms):
        self.store = store
        self._clock = clock

    async def check_rate_limit(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        """
        Count one request against key's window.

        A new or expired window starts at count=1. A full window is reported
        with remaining=0 and its existing reset time; it is not incremented
        further, so the count never exceeds max_requests.
        """
        if not key:
            raise ValueError("rate limit key must be non-empty")
        if max_requests <= 0 or window_ms <= 0:
            raise ValueError("max_requests and window_ms must be positive")

        hit = await self.store.increment_window(
            f"{StateStore.PREFIX_RATE_LIMIT}{key}",
            max_requests,
            window_ms,
            self._clock(),
        )
        if not hit.allowed:
            return RateLimitResult(allowed=False, remaining=0, reset_time=hit.record.window_reset_at)

        return RateLimitResult(
            allowed=True,
            remaining=max_requests - hit.record.count,
            reset_time=hit.record.window_reset_at,
        )
