"""API endpoints package for the service."""

from scaffold.app.api.health import router as health_router
from scaffold.app.api.items import router as items_router

__all__ = [
    "health_router",
    "items_router",
]
