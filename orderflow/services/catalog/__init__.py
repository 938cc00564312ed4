"""
Catalog Service Factory

Returns the Mock or SQL catalog based on ENV_MODE.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.catalog.base import BaseCatalogService, CatalogItem
from orderflow.services.catalog.mock import MockCatalogService
from orderflow.services.catalog.sql import SqlCatalogService

logger = logging.getLogger(__name__)


@lru_cache()
def get_catalog_service() -> BaseCatalogService:
    """Get the configured catalog service."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Catalog Service: Using MockCatalogService (development mode)")
        return MockCatalogService()
    else:
        logger.info(f"Catalog Service: Using SqlCatalogService ({settings.env_mode.value} mode)")
        return SqlCatalogService()


def reset_catalog_service() -> None:
    """Clear the cached service instance."""
    get_catalog_service.cache_clear()


__all__ = [
    "get_catalog_service",
    "reset_catalog_service",
    "BaseCatalogService",
    "CatalogItem",
    "MockCatalogService",
    "SqlCatalogService",
]
