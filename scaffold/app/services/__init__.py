"""Services package for the example application."""

from scaffold.app.services.item_service import ItemService

__all__ = ["ItemService"]
