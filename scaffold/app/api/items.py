"""Example CRUD endpoints for items.

Reads are served through the response cache; successful writes invalidate
it.
"""

from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, Field

from scaffold.app.core.logging import get_logger
from scaffold.app.middleware.rate_limit import RouteRateLimit
from scaffold.app.services.item_service import ItemService

router = APIRouter(prefix="/items", tags=["items"])
logger = get_logger(__name__)


class ItemCreate(BaseModel):
    """Schema for creating or replacing an item."""

    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=2000)
    price: float = Field(0.0, ge=0)


class ItemPatch(BaseModel):
    """Schema for partially updating an item."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    price: Optional[float] = Field(None, ge=0)


class ItemResponse(BaseModel):
    """Schema for item response."""

    id: int
    name: str
    description: str
    price: float
    created_at: float
    updated_at: float


def get_item_service(request: Request) -> ItemService:
    return request.app.state.item_service


ItemServiceDep = Annotated[ItemService, Depends(get_item_service)]

# Writes are limited per caller under the configured write policy
write_rate_limit = Depends(RouteRateLimit("write_limiter", "item_writes"))


@router.get("", response_model=List[ItemResponse])
async def list_items(
    service: ItemServiceDep,
    q: Optional[str] = None,
    limit: int = 100,
) -> list[dict]:
    """List items, optionally filtered by a name substring."""
    return await service.list_items(name_contains=q, limit=limit)


@router.get("/{item_id}", response_model=ItemResponse)
async def get_item(item_id: int, service: ItemServiceDep) -> dict:
    """Get a single item."""
    return await service.get(item_id)


@router.post(
    "",
    response_model=ItemResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[write_rate_limit],
)
async def create_item(data: ItemCreate, service: ItemServiceDep) -> dict:
    """Create an item."""
    return await service.create(data.name, data.description, data.price)


@router.put("/{item_id}", response_model=ItemResponse, dependencies=[write_rate_limit])
async def replace_item(item_id: int, data: ItemCreate, service: ItemServiceDep) -> dict:
    """Replace an item."""
    return await service.update(item_id, data.name, data.description, data.price)


@router.patch("/{item_id}", response_model=ItemResponse, dependencies=[write_rate_limit])
async def patch_item(item_id: int, data: ItemPatch, service: ItemServiceDep) -> dict:
    """Partially update an item."""
    return await service.patch(item_id, data.model_dump(exclude_unset=True))


@router.delete(
    "/{item_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[write_rate_limit],
)
async def delete_item(item_id: int, service: ItemServiceDep) -> Response:
    """Delete an item."""
    await service.delete(item_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
