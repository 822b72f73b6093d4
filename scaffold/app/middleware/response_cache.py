"""HTTP response caching middleware.

``ResponseCacheMiddleware`` serves eligible requests from previously
captured responses and captures fresh 2xx responses for later requests.
``CacheInvalidationMiddleware`` drops cached responses after successful
writes.

Both are raw ASGI middleware: the response is forwarded to the client as the
handler produces it while a copy is buffered for storage.

Cache failures never fail a request. A lookup error or unreadable entry is
treated as a miss and a store error is only logged.
"""

import base64
import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from scaffold.app.core.cache import CacheBackend, build_cache_key
from scaffold.app.core.config import Settings
from scaffold.app.core.logging import get_logger
from scaffold.app.core.utils import path_matches
from scaffold.app.exceptions import CacheBackendError

logger = get_logger(__name__)

CacheKeyBuilder = Callable[[Request], str]
SkipPredicate = Callable[[Request], bool]

CACHE_NAMESPACE = "http"
DEFAULT_TTL = 300
DEFAULT_METHODS = ("GET",)
DEFAULT_SKIP_PATHS = ("/health", "/health/*", "/metrics")
MUTATING_METHODS = ("POST", "PUT", "PATCH", "DELETE")

CACHE_STATUS_HEADER = "X-Cache"
CACHE_TIME_HEADER = "X-Cache-Time"
_DIAGNOSTIC_HEADERS = {CACHE_STATUS_HEADER.lower(), CACHE_TIME_HEADER.lower()}


def default_cache_key_builder(request: Request) -> str:
    """Build ``http:<METHOD>:<path>:<digest>`` from method, path and raw query."""
    method = request.method
    path = request.url.path
    raw_query = request.scope.get("query_string", b"")

    h = hashlib.md5(usedforsecurity=False)
    h.update(method.encode())
    h.update(path.encode())
    h.update(raw_query)
    return build_cache_key(CACHE_NAMESPACE, method, path, h.hexdigest()[:8])


def skip_authenticated_requests(request: Request) -> bool:
    """Skip requests carrying an Authorization header (caller-specific responses)."""
    return bool(request.headers.get("Authorization"))


def skip_query_params(request: Request) -> bool:
    """Skip requests that have a query string."""
    return bool(request.scope.get("query_string"))


@dataclass(frozen=True)
class CachedResponse:
    """A captured HTTP response.

    Headers are kept as ordered (name, value) pairs so repeated headers
    such as ``set-cookie`` survive a round trip.
    """

    status_code: int
    headers: tuple[tuple[str, str], ...]
    body: bytes
    captured_at: float

    def to_json(self) -> bytes:
        return json.dumps(
            {
                "status_code": self.status_code,
                "headers": [list(pair) for pair in self.headers],
                "body": base64.b64encode(self.body).decode("ascii"),
                "timestamp": self.captured_at,
            }
        ).encode()

    @classmethod
    def from_json(cls, raw: bytes | str) -> "CachedResponse":
        """Decode a stored response.

        Raises:
            ValueError: If the payload is malformed.
        """
        try:
            data = json.loads(raw)
            return cls(
                status_code=int(data["status_code"]),
                headers=tuple((str(name), str(value)) for name, value in data["headers"]),
                body=base64.b64decode(data["body"], validate=True),
                captured_at=float(data["timestamp"]),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"malformed cached response: {e}") from e

    @property
    def captured_at_rfc3339(self) -> str:
        return datetime.fromtimestamp(self.captured_at, tz=timezone.utc).isoformat(
            timespec="seconds"
        )


@dataclass
class CacheMiddlewareConfig:
    """Response cache behaviour.

    Empty or zero values are replaced by the defaults: TTL of 5 minutes,
    GET only, and the default key builder.
    """

    default_ttl: int = DEFAULT_TTL
    only_methods: tuple[str, ...] = DEFAULT_METHODS
    skip_paths: tuple[str, ...] = DEFAULT_SKIP_PATHS
    skip_cache: tuple[SkipPredicate, ...] = (skip_authenticated_requests,)
    key_builder: Optional[CacheKeyBuilder] = default_cache_key_builder

    def __post_init__(self) -> None:
        if self.default_ttl <= 0:
            self.default_ttl = DEFAULT_TTL
        self.only_methods = tuple(m.upper() for m in self.only_methods) or DEFAULT_METHODS
        self.skip_paths = tuple(self.skip_paths)
        self.skip_cache = tuple(self.skip_cache)
        if self.key_builder is None:
            self.key_builder = default_cache_key_builder

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheMiddlewareConfig":
        return cls(
            default_ttl=settings.cache_default_ttl,
            only_methods=tuple(settings.cache_only_methods),
            skip_paths=tuple(settings.cache_skip_paths),
        )


@dataclass
class _ResponseCapture:
    """Wraps ``send``: forwards every message and keeps a copy of the response.

    With ``buffer_body`` off only the status and headers are kept.
    """

    send: Send
    buffer_body: bool = True
    status_code: int = 200
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytearray = field(default_factory=bytearray)
    started: bool = False
    complete: bool = False

    async def __call__(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.started = True
            self.status_code = message["status"]
            self.headers = [
                (name.decode("latin-1"), value.decode("latin-1"))
                for name, value in message.get("headers", [])
            ]
        elif message["type"] == "http.response.body":
            if self.buffer_body:
                self.body.extend(message.get("body", b""))
            if not message.get("more_body", False):
                self.complete = True
        await self.send(message)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def to_cached_response(self, captured_at: float) -> CachedResponse:
        return CachedResponse(
            status_code=self.status_code,
            headers=tuple(self.headers),
            body=bytes(self.body),
            captured_at=captured_at,
        )


class ResponseCacheMiddleware:
    """ASGI middleware caching successful responses to eligible requests.

    A request is eligible when its method is in ``only_methods``, its path
    matches no skip pattern and no skip predicate returns True.

    Usage:
        app.add_middleware(ResponseCacheMiddleware, cache=cache, config=CacheMiddlewareConfig())
    """

    def __init__(
        self,
        app: ASGIApp,
        cache: CacheBackend,
        config: Optional[CacheMiddlewareConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.app = app
        self.cache = cache
        self.config = config or CacheMiddlewareConfig()
        self._clock = clock

    def is_cacheable(self, request: Request) -> bool:
        if request.method not in self.config.only_methods:
            return False
        if path_matches(request.url.path, self.config.skip_paths):
            return False
        return not any(skip(request) for skip in self.config.skip_cache)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        if not self.is_cacheable(request):
            await self.app(scope, receive, send)
            return

        key = self.config.key_builder(request)
        cached = await self._lookup(key)
        if cached is not None:
            await self._serve_cached(send, cached)
            logger.info("Cache hit", extra={"cache_key": key})
            return

        capture = _ResponseCapture(send)
        await self.app(scope, receive, capture)

        if capture.complete and capture.is_success:
            await self._store(key, capture.to_cached_response(self._clock()))

    async def _lookup(self, key: str) -> Optional[CachedResponse]:
        try:
            raw = await self.cache.get(key)
        except CacheBackendError as e:
            logger.warning("Cache lookup failed, serving live", extra={"cache_key": key, "error": str(e)})
            return None
        if raw is None:
            return None
        try:
            return CachedResponse.from_json(raw)
        except ValueError as e:
            logger.warning("Discarding unreadable cache entry", extra={"cache_key": key, "error": str(e)})
            return None

    async def _store(self, key: str, response: CachedResponse) -> None:
        try:
            await self.cache.set(key, response.to_json(), self.config.default_ttl)
        except CacheBackendError as e:
            logger.error("Failed to cache response", extra={"cache_key": key, "error": str(e)})
            return
        logger.info("Response cached", extra={"cache_key": key, "ttl_s": self.config.default_ttl})

    async def _serve_cached(self, send: Send, cached: CachedResponse) -> None:
        headers = [
            (name.encode("latin-1"), value.encode("latin-1"))
            for name, value in cached.headers
            if name.lower() not in _DIAGNOSTIC_HEADERS
        ]
        headers.append((CACHE_STATUS_HEADER.lower().encode(), b"HIT"))
        headers.append((CACHE_TIME_HEADER.lower().encode(), cached.captured_at_rfc3339.encode()))

        await send(
            {
                "type": "http.response.start",
                "status": cached.status_code,
                "headers": headers,
            }
        )
        await send(
            {
                "type": "http.response.body",
                "body": cached.body,
            }
        )


class CacheInvalidationMiddleware:
    """ASGI middleware deleting cached responses after successful writes.

    After a POST/PUT/PATCH/DELETE completes with a 2xx status, every key
    matching one of ``patterns`` is deleted. Listing and deleting are
    separate store calls, so an entry written in between survives until the
    next invalidation.

    Args:
        app: The ASGI application
        cache: Store holding cached responses
        patterns: Glob key patterns to delete (default: the whole HTTP namespace)
        paths: Restrict invalidation to these path patterns (default: all paths)
        methods: Methods that trigger invalidation
    """

    def __init__(
        self,
        app: ASGIApp,
        cache: CacheBackend,
        patterns: Optional[Iterable[str]] = None,
        paths: Optional[Iterable[str]] = None,
        methods: Iterable[str] = MUTATING_METHODS,
    ):
        self.app = app
        self.cache = cache
        self.patterns = tuple(patterns or ()) or (f"{CACHE_NAMESPACE}:*",)
        self.paths = tuple(paths or ())
        self.methods = frozenset(m.upper() for m in methods)

    def _applies_to(self, scope: Scope) -> bool:
        if scope["method"] not in self.methods:
            return False
        return not self.paths or path_matches(scope["path"], self.paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self._applies_to(scope):
            await self.app(scope, receive, send)
            return

        capture = _ResponseCapture(send, buffer_body=False)
        await self.app(scope, receive, capture)

        if capture.started and capture.is_success:
            await self.invalidate()

    async def invalidate(self) -> int:
        """Delete all keys matching the configured patterns.

        Returns:
            Number of keys deleted.
        """
        deleted = 0
        for pattern in self.patterns:
            try:
                keys = await self.cache.keys(pattern)
            except CacheBackendError as e:
                logger.error(
                    "Failed to get cache keys for invalidation",
                    extra={"pattern": pattern, "error": str(e)},
                )
                continue

            if not keys:
                continue

            try:
                deleted += await self.cache.delete(*keys)
            except CacheBackendError as e:
                logger.error("Failed to invalidate cache", extra={"pattern": pattern, "error": str(e)})
                continue
            logger.info("Cache invalidated", extra={"pattern": pattern, "keys_count": len(keys)})
        return deleted
