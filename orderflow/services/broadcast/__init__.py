"""
Broadcast Service Factory

Returns Mock or Redis broadcast service based on ENV_MODE.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.broadcast.base import (
    KITCHEN_DISPATCH,
    ORDER_CLOSED,
    ORDER_READY,
    RESOURCE_STATE_CHANGED,
    RIDER_BALANCE_CHANGED,
    BaseBroadcastService,
    BroadcastResult,
    EngineEvent,
)
from orderflow.services.broadcast.mock import MockBroadcastService
from orderflow.services.broadcast.redis_pubsub import RedisBroadcastService

logger = logging.getLogger(__name__)


@lru_cache()
def get_broadcast_service() -> BaseBroadcastService:
    """Get the configured broadcast service."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Broadcast Service: Using MockBroadcastService (development mode)")
        return MockBroadcastService()
    else:
        logger.info(f"Broadcast Service: Using RedisBroadcastService ({settings.env_mode.value} mode)")
        return RedisBroadcastService()


def reset_broadcast_service() -> None:
    """Clear the cached service instance."""
    get_broadcast_service.cache_clear()


__all__ = [
    "get_broadcast_service",
    "reset_broadcast_service",
    "BaseBroadcastService",
    "BroadcastResult",
    "EngineEvent",
    "MockBroadcastService",
    "RedisBroadcastService",
    "KITCHEN_DISPATCH",
    "ORDER_READY",
    "ORDER_CLOSED",
    "RESOURCE_STATE_CHANGED",
    "RIDER_BALANCE_CHANGED",
]
