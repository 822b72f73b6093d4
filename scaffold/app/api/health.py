"""Health check endpoint."""

import uuid
from typing import Any

from fastapi import APIRouter, Request

from scaffold.app.core.cache import RedisCache
from scaffold.app.core.logging import get_logger
from scaffold.app.exceptions import CacheBackendError

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Report cache store and rate limiter status."""
    health_status: dict[str, Any] = {
        "status": "ok",
        "components": {},
    }

    cache = request.app.state.cache
    cache_type = "redis" if isinstance(cache, RedisCache) else "memory"
    test_key = f"_health_check:{uuid.uuid4().hex[:8]}"
    try:
        await cache.set(test_key, b"ping", ttl=5)
        value = await cache.get(test_key)
        await cache.delete(test_key)
    except CacheBackendError as e:
        logger.warning("Cache health check failed", extra={"error": str(e)})
        health_status["status"] = "degraded"
        health_status["components"]["cache"] = {
            "status": "error",
            "type": cache_type,
            "error": str(e)[:100],  # Truncate for security
        }
    else:
        if value == b"ping":
            health_status["components"]["cache"] = {"status": "ok", "type": cache_type}
        else:
            health_status["status"] = "degraded"
            health_status["components"]["cache"] = {
                "status": "error",
                "type": cache_type,
                "error": "Unexpected value",
            }

    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is not None:
        health_status["components"]["rate_limiter"] = {
            "status": "ok",
            "backend": limiter.backend_name,
        }

    return health_status
