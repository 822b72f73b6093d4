"""Rate limiting data models.

This module contains the result value object, the per-key window state of
the in-process backend and the policy profiles.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from starlette.requests import Request

from scaffold.app.middleware.rate_limit.keys import (
    KeyBuilder,
    default_key_builder,
    user_key_builder,
)

SkipPredicate = Callable[[Request], bool]

DEFAULT_SKIP_PATHS = ("/health", "/health/*", "/metrics")


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Max requests per window.
        remaining: Requests left in the current window (never negative).
        reset_time: UNIX epoch seconds at which quota is next restored.
        retry_after: Seconds to wait before retrying (0 when allowed).
    """
    allowed: bool
    limit: int
    remaining: int
    reset_time: float
    retry_after: float = 0.0


@dataclass
class WindowCounter:
    """Request timestamps for one key within the trailing window (sliding window log).

    ``requests`` stays sorted ascending because timestamps are only appended
    under ``lock`` and come from a monotonically advancing clock.
    """
    requests: deque[float] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def evict_before(self, floor: float) -> None:
        """Drop timestamps at or below ``floor``."""
        while self.requests and self.requests[0] <= floor:
            self.requests.popleft()


@dataclass(frozen=True)
class RateLimitPolicy:
    """Request-count/window pair plus the HTTP behaviour of the middleware."""
    requests: int = 100
    window_seconds: float = 3600.0
    key_builder: KeyBuilder = default_key_builder
    skip_paths: tuple[str, ...] = DEFAULT_SKIP_PATHS
    skip_func: Optional[SkipPredicate] = None
    include_headers: bool = True
    message: str = "Rate limit exceeded"
    status_code: int = 429

    def __post_init__(self) -> None:
        if self.requests < 1:
            raise ValueError("requests must be >= 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


DEFAULT_POLICY = RateLimitPolicy()

# High-security endpoints
STRICT_POLICY = RateLimitPolicy(
    requests=10,
    window_seconds=60,
    key_builder=user_key_builder,
    skip_paths=(),
    message="Rate limit exceeded for this endpoint",
)

# General API endpoints
API_POLICY = RateLimitPolicy(
    requests=1000,
    window_seconds=3600,
    message="API rate limit exceeded",
)

# Authentication endpoints
LOGIN_POLICY = RateLimitPolicy(
    requests=5,
    window_seconds=15 * 60,
    skip_paths=(),
    message="Too many login attempts",
)

POLICIES: dict[str, RateLimitPolicy] = {
    "default": DEFAULT_POLICY,
    "strict": STRICT_POLICY,
    "api": API_POLICY,
    "login": LOGIN_POLICY,
}


def get_policy(name: str) -> RateLimitPolicy:
    """Look up a predefined policy profile by name.

    Raises:
        KeyError: If no profile has that name.
    """
    try:
        return POLICIES[name.lower()]
    except KeyError:
        raise KeyError(f"Unknown rate limit policy: {name!r}") from None
