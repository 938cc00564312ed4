"""
Catalog Service Abstract Base Class

Read-only menu lookup used when a line is created. The engine copies what it
reads into the line (the pricing snapshot) and never asks again.

Author: Khalil Bannouri
Version: 1.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class CatalogItem:
    """Menu item as seen at lookup time."""
    id: int
    name: str
    price: Decimal
    station: Optional[str] = None
    requires_prep: bool = True
    available: bool = True


class BaseCatalogService(ABC):
    """Abstract base class for catalog lookups."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def get_item(self, menu_item_id: int, session: AsyncSession) -> Optional[CatalogItem]:
        """
        Look up one menu item.

        Args:
            menu_item_id: Catalog identifier
            session: The caller's session, so the read joins its transaction

        Returns:
            CatalogItem or None if the id is unknown
        """
        pass
