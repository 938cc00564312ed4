"""
Broadcast Service Abstract Base Class

Defines the interface for pushing engine events to kitchen screens, floor
displays and rider apps. Events are published only after the owning
transaction has committed.

Author: Khalil Bannouri
Version: 1.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from orderflow.core.timeutils import utcnow

# Event types
KITCHEN_DISPATCH = "kitchen.dispatch"
ORDER_READY = "order.ready"
ORDER_CLOSED = "order.closed"
RESOURCE_STATE_CHANGED = "resource.state_changed"
RIDER_BALANCE_CHANGED = "rider.balance_changed"


@dataclass
class EngineEvent:
    """One event produced by a committed engine operation."""
    event_type: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


@dataclass
class BroadcastResult:
    """Result from publishing an event."""
    success: bool
    receivers: int = 0
    error_message: Optional[str] = None
    provider: str = "unknown"


class BaseBroadcastService(ABC):
    """Abstract base class for broadcast services."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def publish(self, event: EngineEvent) -> BroadcastResult:
        """Publish one event to subscribers."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass

    async def close(self) -> None:
        """Release connections, if any."""
        return None
