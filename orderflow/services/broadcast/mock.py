"""
Mock Broadcast Service

Records and logs events for development and tests.
Nothing leaves the process.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging

from orderflow.services.broadcast.base import (
    BaseBroadcastService,
    BroadcastResult,
    EngineEvent,
)

logger = logging.getLogger(__name__)


class MockBroadcastService(BaseBroadcastService):
    """Mock broadcast service keeping every published event in memory."""

    def __init__(self):
        self.published: list[EngineEvent] = []
        logger.info("MockBroadcastService initialized")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def publish(self, event: EngineEvent) -> BroadcastResult:
        self.published.append(event)
        logger.info(f"Mock broadcast {event.event_type}: {event.payload}")
        return BroadcastResult(success=True, receivers=0, provider="mock")

    def events_of(self, event_type: str) -> list[EngineEvent]:
        """Events of one type, in publish order."""
        return [event for event in self.published if event.event_type == event_type]

    def clear(self) -> None:
        self.published.clear()

    async def health_check(self) -> bool:
        """Mock always returns healthy."""
        return True
