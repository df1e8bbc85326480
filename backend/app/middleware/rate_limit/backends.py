"""Rate limit storage backends.

Both backends implement a fixed window per client key: the window opens
on the first request from a key and resets once ``window_seconds`` have
elapsed since it opened. A request is admitted only while the count is
below ``max_requests``; rejected requests do not advance the count.
"""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, Optional

import redis
import redis.asyncio as aioredis

from backend.app.core.logging import get_logger
from backend.app.middleware.rate_limit.models import RateLimitEntry, RateLimitResult

logger = get_logger(__name__)


class RateLimitBackend(ABC):
    """Abstract base class for rate limit backends."""

    def __init__(self, window_seconds: int, max_requests: int):
        self.window_seconds = window_seconds
        self.max_requests = max_requests

    @abstractmethod
    async def hit(self, key: str) -> RateLimitResult:
        """Count a request against ``key`` if its window has room.

        Args:
            key: Rate limit key

        Returns:
            RateLimitResult with allowed status and metadata
        """

    @abstractmethod
    async def release(self, key: str, window_start: float) -> None:
        """Give back one request counted by a previous ``hit``.

        Does nothing when the window that counted the request has since
        been reset, so a release can never push a fresh window negative.
        """

    async def cleanup(self) -> None:
        """Clean up expired entries."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryRateLimiter(RateLimitBackend):
    """In-memory fixed window rate limiter.

    Suitable for single-instance deployments. Counters are mutated under
    an asyncio lock so concurrent requests sharing a key never lose
    updates.

    Memory optimization:
    - Uses OrderedDict for LRU cache behavior
    - Limits max entries to prevent unbounded memory growth
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        window_seconds: int = 15 * 60,
        max_requests: int = 100,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize rate limiter.

        Args:
            window_seconds: Length of the window in seconds
            max_requests: Requests admitted per key and window
            max_entries: Maximum number of keys to track (LRU eviction)
            clock: Time source, injectable for tests
        """
        super().__init__(window_seconds, max_requests)
        self._max_entries = max_entries
        self._clock = clock
        self._storage: OrderedDict[str, RateLimitEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    def _enforce_lru_limit(self) -> None:
        """Enforce max entries limit using LRU eviction."""
        if len(self._storage) > self._max_entries:
            # Remove oldest 20% of entries
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(remove_count):
                self._storage.popitem(last=False)

    def _expired(self, entry: RateLimitEntry, now: float) -> bool:
        return now - entry.window_start >= self.window_seconds

    async def hit(self, key: str) -> RateLimitResult:
        async with self._lock:
            now = self._clock()

            self._enforce_lru_limit()

            # Move key to end (most recently used)
            if key in self._storage:
                self._storage.move_to_end(key)

            entry = self._storage.get(key)

            # Reset window if expired
            if entry is None or self._expired(entry, now):
                entry = RateLimitEntry(requests=0, window_start=now)
                self._storage[key] = entry

            window_end = entry.window_start + self.window_seconds
            reset_time = math.ceil(window_end)

            if entry.requests >= self.max_requests:
                return RateLimitResult(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_time=reset_time,
                    retry_after=max(1, math.ceil(window_end - now)),
                    window_start=entry.window_start,
                )

            entry.requests += 1

            return RateLimitResult(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - entry.requests,
                reset_time=reset_time,
                window_start=entry.window_start,
            )

    async def release(self, key: str, window_start: float) -> None:
        async with self._lock:
            entry = self._storage.get(key)
            if entry is None or entry.window_start != window_start:
                return
            if entry.requests > 0:
                entry.requests -= 1

    async def cleanup(self) -> None:
        """Drop windows that have expired."""
        async with self._lock:
            now = self._clock()
            expired = [
                key for key, entry in self._storage.items()
                if self._expired(entry, now)
            ]
            for key in expired:
                del self._storage[key]

    def __len__(self) -> int:
        return len(self._storage)


# Atomic check-and-count for one fixed window stored as a hash
# {start: <ms>, count: <n>}. The key expires together with its window.
HIT_SCRIPT = """
    local key = KEYS[1]
    local max_requests = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    local start = redis.call('HGET', key, 'start')
    local count = tonumber(redis.call('HGET', key, 'count')) or 0

    if start == false or now_ms - tonumber(start) >= window_ms then
        start = ARGV[3]
        count = 0
        redis.call('HSET', key, 'start', start, 'count', 0)
        redis.call('PEXPIRE', key, window_ms)
    end

    if count >= max_requests then
        return {0, count, start}
    end

    count = redis.call('HINCRBY', key, 'count', 1)
    return {1, count, start}
"""

# Decrement only if the window that counted the request is still current
RELEASE_SCRIPT = """
    local key = KEYS[1]
    local start = redis.call('HGET', key, 'start')
    if start ~= ARGV[1] then
        return 0
    end
    local count = tonumber(redis.call('HGET', key, 'count')) or 0
    if count > 0 then
        redis.call('HINCRBY', key, 'count', -1)
    end
    return 1
"""


class RedisRateLimiter(RateLimitBackend):
    """Redis-based distributed rate limiter.

    Shares counters between processes. Each hit runs a single Lua script,
    so the check and the increment are atomic across instances.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: str = "redis://localhost:6379/0",
        window_seconds: int = 15 * 60,
        max_requests: int = 100,
        fail_closed: bool = True,
    ):
        """Initialize Redis rate limiter.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL
            window_seconds: Length of the window in seconds
            max_requests: Requests admitted per key and window
            fail_closed: Deny requests when Redis cannot be reached
        """
        super().__init__(window_seconds, max_requests)
        self._redis_url = redis_url
        self._redis = redis_client
        self.fail_closed = fail_closed

    def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def hit(self, key: str) -> RateLimitResult:
        window_ms = self.window_seconds * 1000
        now_ms = int(time.time() * 1000)
        try:
            allowed, count, start = await self._get_redis().eval(
                HIT_SCRIPT, 1, key, self.max_requests, window_ms, now_ms
            )
        except redis.ConnectionError as e:
            logger.error(f"Redis connection failed: {e}")
            return self._handle_redis_failure("connection_error")
        except redis.TimeoutError as e:
            logger.warning(f"Redis timeout: {e}")
            return self._handle_redis_failure("timeout")
        except redis.RedisError as e:
            logger.error(f"Redis error: {e}")
            return self._handle_redis_failure("redis_error")

        start_ms = int(start)
        window_end = (start_ms + window_ms) / 1000
        count = int(count)

        if not int(allowed):
            return RateLimitResult(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_time=math.ceil(window_end),
                retry_after=max(1, math.ceil(window_end - now_ms / 1000)),
                window_start=start_ms / 1000,
            )

        return RateLimitResult(
            allowed=True,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_time=math.ceil(window_end),
            window_start=start_ms / 1000,
        )

    async def release(self, key: str, window_start: float) -> None:
        try:
            await self._get_redis().eval(
                RELEASE_SCRIPT, 1, key, str(int(round(window_start * 1000)))
            )
        except redis.RedisError as e:
            # The slot stays counted, which errs on the strict side
            logger.warning(f"Redis release failed for rate limit key: {e}")

    def _handle_redis_failure(self, error_type: str) -> RateLimitResult:
        """Handle Redis failure with configurable fail-open/fail-closed policy.

        Args:
            error_type: Type of error for logging purposes

        Returns:
            RateLimitResult based on fail_closed configuration
        """
        now = time.time()
        if self.fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {error_type}. "
                "Request denied."
            )
            return RateLimitResult(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_time=math.ceil(now + self.window_seconds),
                retry_after=self.window_seconds,
            )

        logger.warning(
            f"Rate limiting fail-open triggered due to {error_type}. "
            "Request allowed without rate limit check."
        )
        return RateLimitResult(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests,
            reset_time=math.ceil(now + self.window_seconds),
        )

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
