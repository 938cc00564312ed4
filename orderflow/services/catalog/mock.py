"""
Mock Catalog Service

In-memory menu for development and tests. Prices can be changed at runtime
to show that existing lines keep their snapshot.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import replace
from decimal import Decimal
from typing import Iterable, Optional

from orderflow.services.catalog.base import BaseCatalogService, CatalogItem

logger = logging.getLogger(__name__)


DEFAULT_MENU = (
    CatalogItem(id=1, name="Chicken Karahi", price=Decimal("1800.00"), station="GRILL"),
    CatalogItem(id=2, name="Beef Biryani", price=Decimal("950.00"), station="KITCHEN"),
    CatalogItem(id=3, name="Garlic Naan", price=Decimal("120.00"), station="TANDOOR"),
    CatalogItem(id=4, name="Mint Margarita", price=Decimal("350.00"), station="BAR"),
    CatalogItem(id=5, name="Mineral Water", price=Decimal("100.00"), station=None, requires_prep=False),
    CatalogItem(id=6, name="Soft Drink", price=Decimal("150.00"), station=None, requires_prep=False),
)


class MockCatalogService(BaseCatalogService):
    """Mock catalog backed by a dict."""

    def __init__(self, items: Optional[Iterable[CatalogItem]] = None):
        self._items = {item.id: item for item in (items if items is not None else DEFAULT_MENU)}
        logger.info(f"MockCatalogService initialized ({len(self._items)} items)")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def get_item(self, menu_item_id, session=None):
        return self._items.get(menu_item_id)

    def set_price(self, menu_item_id: int, price: Decimal) -> None:
        """Change a menu price. Lines created earlier are unaffected."""
        self._items[menu_item_id] = replace(self._items[menu_item_id], price=Decimal(price))
        logger.info(f"Mock catalog: item {menu_item_id} repriced to {price}")

    def set_available(self, menu_item_id: int, available: bool) -> None:
        self._items[menu_item_id] = replace(self._items[menu_item_id], available=available)
