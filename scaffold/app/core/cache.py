"""Cache abstraction layer for the service.

Provides a pluggable key-value store with in-memory and Redis
implementations. The store client is constructed once by the application
factory and passed to every component that needs it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Awaitable, Callable, TypeVar
import asyncio
import json
import time

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from scaffold.app.core.config import Settings
from scaffold.app.core.logging import get_logger
from scaffold.app.exceptions import CacheBackendError

logger = get_logger(__name__)

T = TypeVar("T")

# Common expiration times (seconds)
EXPIRE_1_MINUTE = 60
EXPIRE_5_MINUTES = 5 * 60
EXPIRE_15_MINUTES = 15 * 60
EXPIRE_30_MINUTES = 30 * 60
EXPIRE_1_HOUR = 60 * 60
EXPIRE_6_HOURS = 6 * 60 * 60
EXPIRE_12_HOURS = 12 * 60 * 60
EXPIRE_24_HOURS = 24 * 60 * 60
EXPIRE_7_DAYS = 7 * 24 * 60 * 60


@dataclass
class _CacheEntry:
    """Internal cache entry with TTL tracking."""

    value: bytes
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        """Check if the entry has expired at ``now``."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at


class CacheBackend(ABC):
    """Abstract base class for cache backends.

    All cache implementations must inherit from this class and implement
    the abstract methods.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Retrieve a value from the cache.

        Args:
            key: The cache key to look up.

        Returns:
            The cached value as bytes, or None if not found or expired.
        """

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: int) -> None:
        """Store a value in the cache.

        Args:
            key: The cache key.
            value: The value to store (as bytes).
            ttl: Time-to-live in seconds. Zero or less stores without expiry.
        """

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Remove one or more keys from the cache.

        Returns:
            Number of keys that existed and were removed.
        """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a key exists in the cache.

        Returns:
            True if the key exists and is not expired, False otherwise.
        """

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]:
        """List the keys matching a glob-style pattern (``*``, ``?``, ``[...]``)."""

    @abstractmethod
    async def clear(self) -> None:
        """Clear all entries from the cache."""

    async def ping(self) -> bool:
        """Check that the store is reachable."""
        return True

    async def close(self) -> None:
        """Release connections held by the backend."""


class InMemoryCache(CacheBackend):
    """In-memory cache implementation with TTL support.

    This is the default cache backend. It stores all data in a Python
    dictionary and expires entries lazily based on TTL.

    Note: This cache is not distributed and data is lost when the
    application restarts.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize the in-memory cache.

        Args:
            clock: Time source returning UNIX time in seconds.
        """
        self._data: dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _live_entry(self, key: str) -> _CacheEntry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry is not None else None

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        async with self._lock:
            expires_at = self._clock() + ttl if ttl > 0 else None
            self._data[key] = _CacheEntry(value=value, expires_at=expires_at)

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._data.pop(key, None) is not None:
                    removed += 1
            return removed

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live_entry(key) is not None

    async def keys(self, pattern: str) -> list[str]:
        async with self._lock:
            now = self._clock()
            return [
                key
                for key, entry in self._data.items()
                if not entry.is_expired(now) and fnmatchcase(key, pattern)
            ]

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()

    async def cleanup_expired(self) -> int:
        """Remove all expired entries from the cache.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._data.items() if entry.is_expired(now)
            ]
            for key in expired_keys:
                del self._data[key]
            return len(expired_keys)


class RedisCache(CacheBackend):
    """Redis-based cache implementation.

    Wraps an injected ``redis.asyncio.Redis`` client. Every call is bounded
    by ``timeout`` seconds; Redis errors and timeouts surface as
    :class:`CacheBackendError`.

    Example:
        >>> cache = RedisCache.from_url("redis://localhost:6379/0")
        >>> await cache.set("key", b"value", ttl=300)
    """

    def __init__(self, client: aioredis.Redis, timeout: float = 2.0) -> None:
        self._redis = client
        self._timeout = timeout

    @classmethod
    def from_url(cls, redis_url: str, timeout: float = 2.0) -> "RedisCache":
        return cls(aioredis.from_url(redis_url), timeout=timeout)

    @property
    def client(self) -> aioredis.Redis:
        return self._redis

    async def _run(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise CacheBackendError(operation, "timeout") from e
        except RedisError as e:
            raise CacheBackendError(operation, str(e)) from e

    async def get(self, key: str) -> bytes | None:
        return await self._run("get", self._redis.get(key))

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        if ttl > 0:
            await self._run("set", self._redis.set(key, value, ex=ttl))
        else:
            await self._run("set", self._redis.set(key, value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._run("delete", self._redis.delete(*keys))

    async def exists(self, key: str) -> bool:
        return await self._run("exists", self._redis.exists(key)) > 0

    async def keys(self, pattern: str) -> list[str]:
        async def _scan() -> list[str]:
            found = []
            async for key in self._redis.scan_iter(match=pattern, count=500):
                found.append(key.decode() if isinstance(key, bytes) else key)
            return found

        return await self._run("keys", _scan())

    async def clear(self) -> None:
        """Clear all entries from the cache.

        WARNING: This uses FLUSHDB which clears the entire Redis database.
        Be careful when using a shared Redis instance.
        """
        await self._run("flushdb", self._redis.flushdb())

    async def ping(self) -> bool:
        return bool(await self._run("ping", self._redis.ping()))

    async def close(self) -> None:
        """Close the Redis connection."""
        # aclose() replaces close() in redis-py 5.0+
        await self._redis.aclose()


def create_redis_client(settings: Settings) -> aioredis.Redis | None:
    """Build the shared Redis client from settings.

    Returns:
        A client when ``redis_enabled`` is set, otherwise None. The client
        connects lazily, so reachability is checked separately at startup.
    """
    if not settings.redis_enabled:
        return None
    return aioredis.from_url(
        settings.redis_url,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_timeout,
        max_connections=settings.redis_max_connections,
    )


def create_cache(
    settings: Settings,
    redis_client: aioredis.Redis | None = None,
) -> CacheBackend:
    """Create the cache backend for the given store client.

    Uses Redis when a client is supplied, otherwise an in-memory cache.
    """
    if redis_client is not None:
        logger.info("Using Redis cache backend")
        return RedisCache(redis_client, timeout=settings.cache_store_timeout)
    logger.info("Using in-memory cache backend")
    return InMemoryCache()


def build_cache_key(*parts: str) -> str:
    """Join key parts with ``:``."""
    return ":".join(parts)


async def cache_get_json(cache: CacheBackend, key: str) -> Any | None:
    """Fetch and decode a JSON value.

    Returns:
        The decoded value, or None when the key is absent.

    Raises:
        CacheBackendError: If the store fails.
        ValueError: If the stored payload is not valid JSON.
    """
    raw = await cache.get(key)
    if raw is None:
        return None
    return json.loads(raw)


async def cache_set_json(cache: CacheBackend, key: str, value: Any, ttl: int) -> None:
    """Encode ``value`` as JSON and store it."""
    await cache.set(key, json.dumps(value, default=str).encode(), ttl)


async def cache_get_or_set(
    cache: CacheBackend,
    key: str,
    ttl: int,
    fetch: Callable[[], Awaitable[T]],
) -> T:
    """Return the cached JSON value for ``key`` or fetch and cache it.

    Store failures and malformed payloads behave like a miss; failures to
    store the fetched value are logged and do not fail the call. Errors
    raised by ``fetch`` propagate.
    """
    try:
        cached = await cache_get_json(cache, key)
    except (CacheBackendError, ValueError) as e:
        logger.warning("Cache read failed, fetching", extra={"cache_key": key, "error": str(e)})
        cached = None
    if cached is not None:
        return cached

    result = await fetch()

    try:
        await cache_set_json(cache, key, result, ttl)
    except CacheBackendError as e:
        logger.error("Failed to cache result", extra={"cache_key": key, "error": str(e)})
    return result
