"""
Redis Broadcast Service

Production implementation publishing JSON events to a Redis pub/sub channel.
Kitchen display, floor and rider apps subscribe to the channel.

Author: Khalil Bannouri
Version: 1.0.0
"""

import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from orderflow.core.config import get_settings
from orderflow.services.broadcast.base import (
    BaseBroadcastService,
    BroadcastResult,
    EngineEvent,
)

logger = logging.getLogger(__name__)


class RedisBroadcastService(BaseBroadcastService):
    """Publishes engine events through Redis pub/sub."""

    def __init__(self, redis_url: Optional[str] = None, channel: Optional[str] = None):
        settings = get_settings()
        self.channel = channel or settings.broadcast_channel
        self.client = aioredis.from_url(redis_url or settings.redis_url, decode_responses=True)
        logger.info(f"RedisBroadcastService initialized (channel={self.channel})")

    @property
    def provider_name(self) -> str:
        return "redis"

    async def publish(self, event: EngineEvent) -> BroadcastResult:
        """Publish an event; failures are reported, not raised."""
        message = json.dumps(event.to_dict(), default=str)

        try:
            receivers = await self.client.publish(self.channel, message)
        except RedisError as e:
            logger.error(f"Broadcast of {event.event_type} failed: {e}")
            return BroadcastResult(success=False, error_message=str(e), provider="redis")

        logger.debug(f"Broadcast {event.event_type} to {receivers} subscriber(s)")
        return BroadcastResult(success=True, receivers=receivers, provider="redis")

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()
