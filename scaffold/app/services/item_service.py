"""In-memory item repository used by the example CRUD endpoints."""

import asyncio
import time
from typing import Any, Optional

from scaffold.app.core.cache import CacheBackend, EXPIRE_5_MINUTES, build_cache_key, cache_get_or_set
from scaffold.app.core.logging import get_logger
from scaffold.app.exceptions import CacheBackendError, ItemNotFoundError

logger = get_logger(__name__)

ITEM_CACHE_NAMESPACE = "item"


class ItemService:
    """Item store with per-item read-through caching.

    Items are plain dicts: ``id``, ``name``, ``description``, ``price``,
    ``created_at`` and ``updated_at``.
    """

    def __init__(self, cache: Optional[CacheBackend] = None, ttl: int = EXPIRE_5_MINUTES):
        self._items: dict[int, dict[str, Any]] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()
        self._cache = cache
        self._ttl = ttl

    @staticmethod
    def cache_key(item_id: int) -> str:
        return build_cache_key(ITEM_CACHE_NAMESPACE, str(item_id))

    async def _forget(self, item_id: int) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.delete(self.cache_key(item_id))
        except CacheBackendError as e:
            logger.error("Failed to evict cached item", extra={"item_id": item_id, "error": str(e)})

    async def create(self, name: str, description: str = "", price: float = 0.0) -> dict[str, Any]:
        async with self._lock:
            now = time.time()
            item = {
                "id": self._next_id,
                "name": name,
                "description": description,
                "price": price,
                "created_at": now,
                "updated_at": now,
            }
            self._items[item["id"]] = item
            self._next_id += 1
        logger.info("Item created", extra={"item_id": item["id"]})
        return dict(item)

    async def _load(self, item_id: int) -> dict[str, Any]:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise ItemNotFoundError(item_id)
            return dict(item)

    async def get(self, item_id: int) -> dict[str, Any]:
        """Fetch one item, reading through the cache when one is configured.

        Raises:
            ItemNotFoundError: If the item does not exist.
        """
        if self._cache is None:
            return await self._load(item_id)
        return await cache_get_or_set(
            self._cache, self.cache_key(item_id), self._ttl, lambda: self._load(item_id)
        )

    async def list_items(self, name_contains: Optional[str] = None, limit: int = 100) -> list[dict[str, Any]]:
        async with self._lock:
            items = sorted(self._items.values(), key=lambda i: i["id"])
        if name_contains:
            needle = name_contains.lower()
            items = [i for i in items if needle in i["name"].lower()]
        return [dict(i) for i in items[:limit]]

    async def update(self, item_id: int, name: str, description: str, price: float) -> dict[str, Any]:
        """Replace every mutable field of an item."""
        return await self.patch(item_id, {"name": name, "description": description, "price": price})

    async def patch(self, item_id: int, changes: dict[str, Any]) -> dict[str, Any]:
        """Apply a partial update; unknown fields are ignored."""
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise ItemNotFoundError(item_id)
            for field in ("name", "description", "price"):
                if field in changes and changes[field] is not None:
                    item[field] = changes[field]
            item["updated_at"] = time.time()
            updated = dict(item)
        await self._forget(item_id)
        return updated

    async def delete(self, item_id: int) -> None:
        async with self._lock:
            if self._items.pop(item_id, None) is None:
                raise ItemNotFoundError(item_id)
        await self._forget(item_id)
        logger.info("Item deleted", extra={"item_id": item_id})
