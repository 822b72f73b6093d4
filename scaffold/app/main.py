import asyncio
import contextlib
import math
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from scaffold.app.api import health_router, items_router
from scaffold.app.core.cache import CacheBackend, RedisCache, create_cache, create_redis_client
from scaffold.app.core.config import DEFAULT_WRITE_POLICY, Settings, settings as default_settings
from scaffold.app.core.logging import get_logger, setup_logging
from scaffold.app.exceptions import RateLimitExceededError, ScaffoldException
from scaffold.app.middleware.rate_limit import (
    RateLimiter,
    RateLimitMiddleware,
    get_policy,
    policy_from_settings,
    run_cleanup_loop,
)
from scaffold.app.middleware.request_id import RequestIdMiddleware
from scaffold.app.middleware.response_cache import (
    CacheInvalidationMiddleware,
    CacheMiddlewareConfig,
    ResponseCacheMiddleware,
)
from scaffold.app.services.item_service import ItemService


def create_app(
    settings: Optional[Settings] = None,
    redis_client: Optional[Any] = None,
    cache: Optional[CacheBackend] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The shared store client is built here once and injected into the cache
    backend and the rate limiter.

    Args:
        settings: Configuration (defaults to the environment-loaded settings)
        redis_client: Shared ``redis.asyncio.Redis`` client; built from
            settings when omitted and ``redis_enabled`` is set
        cache: Cache backend override, mainly for tests

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or default_settings
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger(__name__)

    if redis_client is None:
        redis_client = create_redis_client(settings)
    if cache is None:
        cache = create_cache(settings, redis_client)

    rate_limiter = RateLimiter(
        policy=policy_from_settings(settings),
        store_timeout=settings.rate_limit_store_timeout,
    )
    try:
        write_policy = get_policy(settings.rate_limit_write_policy)
    except KeyError:
        logger.warning(
            "Unknown write rate limit policy, using default",
            extra={"policy": settings.rate_limit_write_policy, "default": DEFAULT_WRITE_POLICY},
        )
        write_policy = get_policy(DEFAULT_WRITE_POLICY)
    write_limiter = RateLimiter(
        policy=write_policy,
        store_timeout=settings.rate_limit_store_timeout,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Selects the rate limit backend and starts the idle-key sweep on
        startup; stops the sweep and closes store connections on shutdown.
        """
        cleanup_tasks: list[asyncio.Task] = []
        if settings.rate_limit_enabled:
            for limiter in (rate_limiter, write_limiter):
                await limiter.select_backend(redis_client)
                cleanup_tasks.append(
                    asyncio.create_task(
                        run_cleanup_loop(limiter, settings.rate_limit_cleanup_interval_seconds)
                    )
                )

        logger.info(
            "Application startup complete",
            extra={
                "rate_limit_enabled": settings.rate_limit_enabled,
                "rate_limit_backend": rate_limiter.backend_name,
                "rate_limit_requests": settings.rate_limit_requests,
                "rate_limit_window_s": settings.rate_limit_window,
                "cache_enabled": settings.cache_enabled,
                "debug_mode": settings.debug,
            },
        )

        try:
            yield
        finally:
            for task in cleanup_tasks:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

            await cache.close()
            if redis_client is not None and not isinstance(cache, RedisCache):
                await redis_client.aclose()

            logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        description="Example service with rate limiting and response caching",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.cache = cache
    app.state.rate_limiter = rate_limiter
    if settings.rate_limit_enabled:
        app.state.write_limiter = write_limiter
    app.state.item_service = ItemService(cache=cache, ttl=settings.cache_default_ttl)

    # Add middleware (order matters: last added = first executed)
    if settings.cache_enabled:
        app.add_middleware(
            ResponseCacheMiddleware,
            cache=cache,
            config=CacheMiddlewareConfig.from_settings(settings),
        )
        app.add_middleware(
            CacheInvalidationMiddleware,
            cache=cache,
            patterns=settings.cache_invalidate_patterns,
        )

    if settings.rate_limit_enabled:
        app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)

    # Request ID middleware (outermost, so every layer sees the ID)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(health_router)
    app.include_router(items_router)

    @app.exception_handler(ScaffoldException)
    async def scaffold_exception_handler(request: Request, exc: ScaffoldException) -> JSONResponse:
        """Map service exceptions to their HTTP status."""
        headers = None
        if isinstance(exc, RateLimitExceededError):
            headers = {"Retry-After": str(max(1, math.ceil(exc.retry_after)))}
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error_code, "message": exc.message},
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; full details are logged
        server-side.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
            },
        )

        if settings.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                    "request_id": request_id,
                },
            )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "Internal server error",
                "request_id": request_id,
            },
        )

    return app


# Create the application instance
app = create_app()
