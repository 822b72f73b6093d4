"""Rate limit backends.

Both backends implement the sliding window log algorithm: every admitted
request is recorded with its timestamp, timestamps older than the window are
dropped on each check, and a request is admitted while fewer than ``limit``
timestamps remain.
"""

import asyncio
import math
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

from redis.exceptions import RedisError

from scaffold.app.core.logging import get_logger
from scaffold.app.exceptions import RateLimitBackendError
from scaffold.app.middleware.rate_limit.models import RateLimitResult, WindowCounter

logger = get_logger(__name__)

T = TypeVar("T")

# Redis keys outlive the window by this much so a slow request never
# loses its own entries to expiry.
REDIS_EXPIRY_GRACE_SECONDS = 60


class RateLimitBackend(ABC):
    """Abstract base class for rate limit backends."""

    def __init__(self, limit: int, window_seconds: float):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds

    @abstractmethod
    async def allow(self, key: str) -> RateLimitResult:
        """Check whether one more request is allowed for ``key`` and record it if so.

        Args:
            key: Rate limit key

        Returns:
            RateLimitResult with allowed status and quota metadata

        Raises:
            RateLimitBackendError: If the backing store fails or times out
        """

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget every recorded request for ``key``. Idempotent."""

    @abstractmethod
    async def cleanup(self) -> int:
        """Drop idle state and return the number of keys purged."""

    def _allowed(self, now: float, count: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            limit=self.limit,
            remaining=max(0, self.limit - count - 1),
            reset_time=now + self.window_seconds,
        )

    def _denied(self, now: float, count: int, oldest: float | None) -> RateLimitResult:
        if oldest is None:
            retry_after = self.window_seconds
        else:
            retry_after = max(0.0, oldest + self.window_seconds - now)
        return RateLimitResult(
            allowed=False,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_time=now + retry_after,
            retry_after=retry_after,
        )


class InMemoryRateLimiter(RateLimitBackend):
    """In-process sliding window rate limiter.

    Suitable for single-instance deployments. The key map is guarded by one
    lock used only to look up, insert or remove counters; each counter has
    its own lock for the evict/count/append sequence, so concurrent checks
    on the same key serialize while different keys proceed independently.

    Idle counters are not dropped on access; call :meth:`cleanup`
    periodically (see ``run_cleanup_loop``) to bound memory.
    """

    def __init__(
        self,
        limit: int = 100,
        window_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize rate limiter.

        Args:
            limit: Maximum requests per window
            window_seconds: Window length in seconds
            clock: Time source returning UNIX time in seconds
        """
        super().__init__(limit, window_seconds)
        self._clock = clock
        self._counters: dict[str, WindowCounter] = {}
        self._lock = asyncio.Lock()

    async def _get_counter(self, key: str) -> WindowCounter:
        async with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                counter = WindowCounter()
                self._counters[key] = counter
            return counter

    async def allow(self, key: str) -> RateLimitResult:
        counter = await self._get_counter(key)

        async with counter.lock:
            now = self._clock()
            counter.evict_before(now - self.window_seconds)
            count = len(counter.requests)

            if count < self.limit:
                counter.requests.append(now)
                return self._allowed(now, count)

            oldest = counter.requests[0] if counter.requests else None
            return self._denied(now, count, oldest)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._counters.pop(key, None)

    async def cleanup(self) -> int:
        """Remove counters left empty after evicting expired timestamps."""
        async with self._lock:
            floor = self._clock() - self.window_seconds
            idle = []
            for key, counter in self._counters.items():
                # A held lock means a check is in flight for this key
                if counter.lock.locked():
                    continue
                counter.evict_before(floor)
                if not counter.requests:
                    idle.append(key)
            for key in idle:
                del self._counters[key]
            return len(idle)

    def __len__(self) -> int:
        return len(self._counters)


class RedisRateLimiter(RateLimitBackend):
    """Redis-based distributed rate limiter.

    Uses Redis for rate limiting across multiple instances. Each key is a
    sorted set of request members scored by timestamp. Trim, count, insert,
    expire and the oldest-entry lookup run as one MULTI/EXEC transaction, so
    two instances cannot both take the last slot. A denied request removes
    its own member afterwards; until then a concurrent check may see one
    extra entry and deny slightly early.

    If the transaction times out after Redis has committed it, the caller
    gets :class:`RateLimitBackendError` and never learns the member; that
    member keeps its slot until it ages out of the window.
    """

    def __init__(
        self,
        redis_client: Any,
        limit: int = 100,
        window_seconds: float = 3600.0,
        timeout: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize Redis rate limiter.

        Args:
            redis_client: ``redis.asyncio.Redis`` client
            limit: Maximum requests per window
            window_seconds: Window length in seconds
            timeout: Upper bound in seconds for each backend call
            clock: Time source returning UNIX time in seconds
        """
        super().__init__(limit, window_seconds)
        self._redis = redis_client
        self._timeout = timeout
        self._clock = clock
        self._expiry = math.ceil(window_seconds) + REDIS_EXPIRY_GRACE_SECONDS

    async def _run(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.warning("Redis rate limit timeout", extra={"operation": operation})
            raise RateLimitBackendError(operation, "timeout") from e
        except RedisError as e:
            logger.error("Redis rate limit error", extra={"operation": operation, "error": str(e)})
            raise RateLimitBackendError(operation, str(e)) from e

    async def _record(self, key: str, now: float, member: str) -> list[Any]:
        pipe = self._redis.pipeline(transaction=True)
        pipe.zremrangebyscore(key, "-inf", now - self.window_seconds)
        pipe.zcard(key)
        pipe.zadd(key, {member: now})
        pipe.expire(key, self._expiry)
        pipe.zrange(key, 0, 0, withscores=True)
        return await pipe.execute()

    async def allow(self, key: str) -> RateLimitResult:
        now = self._clock()
        member = f"{now:.6f}:{uuid.uuid4().hex[:12]}"

        results = await self._run("allow", self._record(key, now, member))

        count = int(results[1])
        if count < self.limit:
            return self._allowed(now, count)

        # Denied requests must not occupy a slot; the removal has its own
        # timeout so a slow transaction never skips it.
        try:
            await self._run("release", self._redis.zrem(key, member))
        except RateLimitBackendError:
            pass  # logged by _run; the member ages out with the window
        oldest_entries = results[4]
        oldest = float(oldest_entries[0][1]) if oldest_entries else None
        return self._denied(now, count, oldest)

    async def reset(self, key: str) -> None:
        await self._run("reset", self._redis.delete(key))

    async def cleanup(self) -> int:
        """No-op for Redis (keys expire automatically)."""
        return 0
