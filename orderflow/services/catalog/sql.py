"""
SQL Catalog Service

Reads the menu_items table owned by the menu management service.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging

from orderflow.models import MenuItem
from orderflow.services.catalog.base import BaseCatalogService, CatalogItem

logger = logging.getLogger(__name__)


class SqlCatalogService(BaseCatalogService):
    """Production catalog backed by the shared database."""

    @property
    def provider_name(self) -> str:
        return "sql"

    async def get_item(self, menu_item_id, session):
        row = await session.get(MenuItem, menu_item_id)
        if row is None:
            logger.warning(f"Catalog lookup miss: menu item {menu_item_id}")
            return None

        return CatalogItem(
            id=row.id,
            name=row.name,
            price=row.price,
            station=row.station,
            requires_prep=row.requires_prep,
            available=row.is_available,
        )
