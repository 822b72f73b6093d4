"""Core utilities for the service."""

from scaffold.app.core.cache import (
    CacheBackend,
    InMemoryCache,
    RedisCache,
    create_cache,
    create_redis_client,
)
from scaffold.app.core.config import Settings, settings
from scaffold.app.core.logging import get_logger, setup_logging

__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
    "create_cache",
    "create_redis_client",
    "Settings",
    "settings",
    "get_logger",
    "setup_logging",
]
