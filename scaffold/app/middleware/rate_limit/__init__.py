"""Rate limiting middleware for the service.

This module provides rate limiting to prevent abuse and ensure fair usage of
the API. Supports in-memory and Redis backends, both using the sliding
window log algorithm.
"""

import asyncio
import math
from typing import Any, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from scaffold.app.core.config import Settings
from scaffold.app.core.logging import get_logger
from scaffold.app.core.utils import path_matches
from scaffold.app.exceptions import RateLimitBackendError, RateLimitExceededError

# Re-export models
from scaffold.app.middleware.rate_limit.models import (
    API_POLICY,
    DEFAULT_POLICY,
    LOGIN_POLICY,
    POLICIES,
    STRICT_POLICY,
    RateLimitPolicy,
    RateLimitResult,
    WindowCounter,
    get_policy,
)

# Re-export key builders
from scaffold.app.middleware.rate_limit.keys import (
    default_key_builder,
    get_client_ip,
    path_key_builder,
    user_key_builder,
)

# Re-export backends
from scaffold.app.middleware.rate_limit.backends import (
    InMemoryRateLimiter,
    RateLimitBackend,
    RedisRateLimiter,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "RateLimitResult",
    "RateLimitPolicy",
    "WindowCounter",
    "DEFAULT_POLICY",
    "STRICT_POLICY",
    "API_POLICY",
    "LOGIN_POLICY",
    "POLICIES",
    "get_policy",
    # Key builders
    "get_client_ip",
    "default_key_builder",
    "user_key_builder",
    "path_key_builder",
    # Backends
    "RateLimitBackend",
    "InMemoryRateLimiter",
    "RedisRateLimiter",
    # Main classes
    "RateLimiter",
    "RateLimitMiddleware",
    "policy_from_settings",
    "RouteRateLimit",
    "run_cleanup_loop",
]


def policy_from_settings(settings: Settings) -> RateLimitPolicy:
    """Build the application-wide policy from settings."""
    return RateLimitPolicy(
        requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window,
        key_builder=default_key_builder,
        skip_paths=tuple(settings.rate_limit_skip_paths),
        include_headers=settings.rate_limit_include_headers,
        message=settings.rate_limit_message,
        status_code=settings.rate_limit_status_code,
    )


class RateLimiter:
    """Main rate limiter that owns the active backend.

    Starts on the in-memory backend. :meth:`select_backend` switches to the
    Redis backend when a shared store client is configured and answers a
    ping within ``store_timeout``.
    """

    def __init__(
        self,
        policy: RateLimitPolicy = DEFAULT_POLICY,
        backend: Optional[RateLimitBackend] = None,
        store_timeout: float = 2.0,
    ):
        """Initialize rate limiter.

        Args:
            policy: Limit, window and HTTP behaviour
            backend: Explicit backend (defaults to in-memory)
            store_timeout: Bound in seconds for shared store calls
        """
        self.policy = policy
        self.store_timeout = store_timeout
        if backend is None:
            backend = InMemoryRateLimiter(
                limit=policy.requests,
                window_seconds=policy.window_seconds,
            )
        self._backend: RateLimitBackend = backend

    @property
    def backend(self) -> RateLimitBackend:
        return self._backend

    @property
    def backend_name(self) -> str:
        return "redis" if isinstance(self._backend, RedisRateLimiter) else "memory"

    async def select_backend(self, redis_client: Optional[Any]) -> RateLimitBackend:
        """Pick the Redis backend if the shared store is reachable.

        Args:
            redis_client: ``redis.asyncio.Redis`` client, or None when no
                shared store is configured

        Returns:
            The backend now in use
        """
        if redis_client is None:
            logger.info("Using in-memory rate limiter backend (no shared store configured)")
            return self._backend

        try:
            await asyncio.wait_for(redis_client.ping(), timeout=self.store_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning(
                f"Shared store unreachable: {e}. Using in-memory rate limiter backend."
            )
            return self._backend

        self._backend = RedisRateLimiter(
            redis_client,
            limit=self.policy.requests,
            window_seconds=self.policy.window_seconds,
            timeout=self.store_timeout,
        )
        logger.info("Using Redis rate limiter backend")
        return self._backend

    async def allow(self, key: str) -> RateLimitResult:
        """Check if request is allowed."""
        return await self._backend.allow(key)

    async def reset(self, key: str) -> None:
        """Clear recorded requests for a key."""
        await self._backend.reset(key)

    async def cleanup(self) -> int:
        """Clean up idle keys."""
        return await self._backend.cleanup()


class RouteRateLimit:
    """FastAPI dependency enforcing a limiter on individual routes.

    The limiter is looked up on ``app.state`` under ``state_attr`` at request
    time; when it is absent the dependency does nothing. Keys get a
    ``:route:<scope>`` suffix so they never share state with the
    application-wide middleware. A denied request raises
    :class:`RateLimitExceededError`; backend failures fail open.

    Usage:
        @router.post("", dependencies=[Depends(RouteRateLimit("write_limiter", "writes"))])
    """

    def __init__(self, state_attr: str, scope: str):
        self.state_attr = state_attr
        self.scope = scope

    async def __call__(self, request: Request) -> Optional[RateLimitResult]:
        limiter: Optional[RateLimiter] = getattr(request.app.state, self.state_attr, None)
        if limiter is None:
            return None

        key = f"{limiter.policy.key_builder(request)}:route:{self.scope}"
        try:
            result = await limiter.allow(key)
        except RateLimitBackendError as e:
            logger.warning(
                "Route rate limiting error, allowing request",
                extra={"rate_limit_key": key, "error": str(e)},
            )
            return None

        if not result.allowed:
            logger.warning(
                "Route rate limit exceeded",
                extra={"rate_limit_key": key, "limit": result.limit, "path": request.url.path},
            )
            raise RateLimitExceededError(result.retry_after, limiter.policy.message)
        return result


async def run_cleanup_loop(limiter: RateLimiter, interval_seconds: float) -> None:
    """Periodically purge idle in-memory counters until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        purged = await limiter.cleanup()
        if purged:
            logger.debug("Purged idle rate limit counters", extra={"purged": purged})


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    Backend failures fail open: the request proceeds and a warning is
    logged, so an unavailable store never rejects legitimate traffic.
    """

    def __init__(self, app, limiter: RateLimiter):
        super().__init__(app)
        self.limiter = limiter

    @property
    def policy(self) -> RateLimitPolicy:
        return self.limiter.policy

    def _should_skip(self, request: Request) -> bool:
        if self.policy.skip_func is not None and self.policy.skip_func(request):
            return True
        return path_matches(request.url.path, self.policy.skip_paths)

    @staticmethod
    def _build_headers(result: RateLimitResult) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(int(result.reset_time)),
        }
        if not result.allowed:
            headers["Retry-After"] = str(math.ceil(result.retry_after))
        return headers

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if self._should_skip(request):
            return await call_next(request)

        key = self.policy.key_builder(request)
        request_id = getattr(request.state, "request_id", None)

        try:
            result = await self.limiter.allow(key)
        except RateLimitBackendError as e:
            logger.warning(
                "Rate limiting error, allowing request",
                extra={"rate_limit_key": key, "error": str(e), "request_id": request_id},
            )
            return await call_next(request)

        headers = self._build_headers(result) if self.policy.include_headers else {}

        if not result.allowed:
            retry_after = math.ceil(result.retry_after)
            logger.warning(
                "Rate limit exceeded",
                extra={
                    "rate_limit_key": key,
                    "limit": result.limit,
                    "path": request.url.path,
                    "client_ip": get_client_ip(request),
                    "request_id": request_id,
                },
            )
            return JSONResponse(
                status_code=self.policy.status_code,
                content={"error": self.policy.message, "retry_after": retry_after},
                headers=headers,
            )

        logger.debug(
            "Rate limit check passed",
            extra={"rate_limit_key": key, "remaining": result.remaining, "limit": result.limit},
        )

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response
