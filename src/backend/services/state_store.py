"""
Shared mutable state for the admission pipeline.

Holds the rate-limit windows, the consumed-challenge ledger and the
per-session behavior history. Two backends share one interface:

- InMemoryStateStore: single-process, for local development and tests
- RedisStateStore: shared across service instances (required once more
  than one instance serves votes)

Every read-modify-write is atomic per key: an asyncio lock in memory, a Lua
script or MULTI pipeline in Redis.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from core.exceptions import StorageError

logger = structlog.get_logger(__name__)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class RateLimitRecord:
    """Fixed-window counter for one (scope, identifier) key."""

    key: str
    count: int
    window_reset_at: int


@dataclass
class WindowHit:
    """Outcome of one atomic window increment."""

    allowed: bool
    record: RateLimitRecord


# Fixed-window check-and-increment. Expired or missing windows restart at 1;
# a full window is reported without incrementing.
FIXED_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local max_requests = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local now = tonumber(ARGV[3])

    local count = tonumber(redis.call('HGET', key, 'count'))
    local reset_at = tonumber(redis.call('HGET', key, 'reset_at'))

    if count == nil or reset_at == nil or reset_at <= now then
        redis.call('HSET', key, 'count', 1, 'reset_at', now + window_ms)
        redis.call('PEXPIRE', key, window_ms)
        return {1, 1, now + window_ms}
    end

    if count >= max_requests then
        return {0, count, reset_at}
    end

    count = redis.call('HINCRBY', key, 'count', 1)
    return {1, count, reset_at}
"""


class StateStore(ABC):
    """Interface for the shared counter, ledger and history state."""

    # Key prefixes for namespacing
    PREFIX_RATE_LIMIT = "rate:"
    PREFIX_CONSUMED = "consumed:"
    PREFIX_HISTORY = "history:"

    @abstractmethod
    async def get_window(self, key: str) -> Optional[RateLimitRecord]:
        """Return the current window for key, or None if absent or expired."""

    @abstractmethod
    async def increment_window(
        self,
        key: str,
        max_requests: int,
        window_ms: int,
        now: int,
    ) -> WindowHit:
        """Atomically count one request against the fixed window for key."""

    @abstractmethod
    async def claim(self, key: str, ttl_ms: int) -> bool:
        """Mark key as used for ttl_ms. Returns False if it was already claimed."""

    @abstractmethod
    async def push_capped(self, key: str, item: dict[str, Any], max_len: int, ttl_seconds: int) -> None:
        """Append item to the list at key, keeping only the newest max_len items."""

    @abstractmethod
    async def get_list(self, key: str) -> list[dict[str, Any]]:
        """Return the list stored at key, oldest first."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key from every namespace."""

    async def close(self) -> None:
        """Release backend connections."""


class InMemoryStateStore(StateStore):
    """
    Process-local state store.

    Only correct for a single-node deployment: counters are not visible to
    other instances.
    """

    SWEEP_EVERY = 1000

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._windows: dict[str, RateLimitRecord] = {}
        self._claims: dict[str, int] = {}  # key -> expires_at (ms)
        self._lists: dict[str, tuple[list[dict[str, Any]], int]] = {}  # key -> (items, expires_at)
        self._ops = 0

    async def get_window(self, key: str) -> Optional[RateLimitRecord]:
        async with self._lock:
            record = self._windows.get(key)
            if record is None or record.window_reset_at <= self._clock():
                return None
            return RateLimitRecord(record.key, record.count, record.window_reset_at)

    async def increment_window(
        self,
        key: str,
        max_requests: int,
        window_ms: int,
        now: int,
    ) -> WindowHit:
        async with self._lock:
            self._maybe_sweep(now)
            record = self._windows.get(key)

            if record is None or record.window_reset_at <= now:
                record = RateLimitRecord(key=key, count=1, window_reset_at=now + window_ms)
                self._windows[key] = record
                return WindowHit(True, RateLimitRecord(key, 1, record.window_reset_at))

            if record.count >= max_requests:
                return WindowHit(False, RateLimitRecord(key, record.count, record.window_reset_at))

            record.count += 1
            return WindowHit(True, RateLimitRecord(key, record.count, record.window_reset_at))

    async def claim(self, key: str, ttl_ms: int) -> bool:
        async with self._lock:
            now = self._clock()
            expires_at = self._claims.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._claims[key] = now + ttl_ms
            return True

    async def push_capped(self, key: str, item: dict[str, Any], max_len: int, ttl_seconds: int) -> None:
        async with self._lock:
            now = self._clock()
            items, expires_at = self._lists.get(key, ([], 0))
            if expires_at and expires_at <= now:
                items = []
            items.append(item)
            self._lists[key] = (items[-max_len:], now + ttl_seconds * 1000)

    async def get_list(self, key: str) -> list[dict[str, Any]]:
        async with self._lock:
            items, expires_at = self._lists.get(key, ([], 0))
            if expires_at and expires_at <= self._clock():
                del self._lists[key]
                return []
            return list(items)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._windows.pop(key, None)
            self._claims.pop(key, None)
            self._lists.pop(key, None)

    def _maybe_sweep(self, now: int) -> None:
        """Drop expired entries every SWEEP_EVERY window operations."""
        self._ops += 1
        if self._ops % self.SWEEP_EVERY:
            return
        self._windows = {k: r for k, r in self._windows.items() if r.window_reset_at > now}
        self._claims = {k: exp for k, exp in self._claims.items() if exp > now}
        self._lists = {k: v for k, v in self._lists.items() if v[1] > now}


class RedisStateStore(StateStore):
    """Redis-backed state store shared by all service instances."""

    def __init__(self, redis_client: Optional[Any] = None, redis_url: Optional[str] = None):
        self._redis_url = redis_url
        self._redis = redis_client
        self._window_script: Optional[Any] = None

    def _get_redis(self) -> Any:
        """Get or create the Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def get_window(self, key: str) -> Optional[RateLimitRecord]:
        try:
            data = await self._get_redis().hgetall(key)
        except RedisError as e:
            raise StorageError("rate_limit_read", str(e)) from e

        if not data:
            return None
        record = RateLimitRecord(key=key, count=int(data["count"]), window_reset_at=int(data["reset_at"]))
        if record.window_reset_at <= now_ms():
            return None
        return record

    async def increment_window(
        self,
        key: str,
        max_requests: int,
        window_ms: int,
        now: int,
    ) -> WindowHit:
        try:
            redis_client = self._get_redis()
            if self._window_script is None:
                self._window_script = redis_client.register_script(FIXED_WINDOW_SCRIPT)
            allowed, count, reset_at = await self._window_script(
                keys=[key],
                args=[max_requests, window_ms, now],
            )
        except RedisError as e:
            logger.error("rate_limit_check_failed", key=key[:16], error=str(e))
            raise StorageError("rate_limit_increment", str(e)) from e

        return WindowHit(
            allowed=bool(int(allowed)),
            record=RateLimitRecord(key=key, count=int(count), window_reset_at=int(reset_at)),
        )

    async def claim(self, key: str, ttl_ms: int) -> bool:
        try:
            result = await self._get_redis().set(key, "1", nx=True, px=ttl_ms)
        except RedisError as e:
            raise StorageError("challenge_claim", str(e)) from e
        return bool(result)

    async def push_capped(self, key: str, item: dict[str, Any], max_len: int, ttl_seconds: int) -> None:
        try:
            pipe = self._get_redis().pipeline(transaction=True)
            pipe.rpush(key, json.dumps(item))
            pipe.ltrim(key, -max_len, -1)
            pipe.expire(key, ttl_seconds)
            await pipe.execute()
        except RedisError as e:
            raise StorageError("history_append", str(e)) from e

    async def get_list(self, key: str) -> list[dict[str, Any]]:
        try:
            raw = await self._get_redis().lrange(key, 0, -1)
        except RedisError as e:
            raise StorageError("history_read", str(e)) from e
        return [json.loads(entry) for entry in raw]

    async def delete(self, key: str) -> None:
        try:
            await self._get_redis().delete(key)
        except RedisError as e:
            raise StorageError("state_delete", str(e)) from e

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_state_store(redis_url: Optional[str]) -> StateStore:
    """Pick the Redis store when configured, otherwise the in-memory one."""
    if redis_url:
        logger.info("state_store_initialized", backend="redis")
        return RedisStateStore(redis_url=redis_url)
    logger.warning("state_store_initialized", backend="in_memory", note="single node only")
    return InMemoryStateStore()
