"""Middleware package for the service."""

from scaffold.app.middleware.rate_limit import RateLimiter, RateLimitMiddleware
from scaffold.app.middleware.request_id import RequestIdMiddleware, get_request_id
from scaffold.app.middleware.response_cache import (
    CacheInvalidationMiddleware,
    CacheMiddlewareConfig,
    ResponseCacheMiddleware,
)

__all__ = [
    "RateLimiter",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
    "CacheInvalidationMiddleware",
    "CacheMiddlewareConfig",
    "ResponseCacheMiddleware",
]
