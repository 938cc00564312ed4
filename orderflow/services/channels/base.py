"""
Channel Handler Abstract Base Class

Each channel owns one extension row and decides what happens to its
resource at creation, fire, settlement and cancellation. The shared state
machine and pricing never branch on channel themselves; they ask the handler.

Author: Khalil Bannouri
Version: 1.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from orderflow.core.exceptions import EmptyOrder, InvalidTransition
from orderflow.models import LineStatus, Order, OrderChannel
from orderflow.services.resources import ResourceLock
from orderflow.services.unit_of_work import UnitOfWork


@dataclass
class OrderOpening:
    """Channel-specific fields supplied when an order is created."""
    table_id: Optional[int] = None
    guest_count: Optional[int] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    delivery_address: Optional[str] = None
    delivery_instructions: Optional[str] = None
    waiter_id: Optional[int] = None


class BaseChannelHandler(ABC):
    """Abstract base class for channel handlers."""

    channel: OrderChannel

    def __init__(self, resources: ResourceLock):
        self.resources = resources

    @abstractmethod
    async def open(self, uow: UnitOfWork, order: Order, opening: OrderOpening) -> None:
        """Create the extension row and take any resource, in the caller's transaction."""
        pass

    def validate_for_fire(self, order: Order) -> None:
        """
        Check fire preconditions.

        Raises:
            EmptyOrder: no lines, or nothing still held back
        """
        if not order.lines:
            raise EmptyOrder(
                f"Order #{order.id} has no items to send to the kitchen",
                details={"order_id": order.id},
            )
        if not any(line.status == LineStatus.DRAFT for line in order.lines):
            raise EmptyOrder(
                f"Order #{order.id} has no new items to send to the kitchen",
                details={"order_id": order.id},
            )

    async def on_fired(self, uow: UnitOfWork, order: Order) -> dict[str, Any]:
        """Channel work inside the fire transaction. Returns extra result fields."""
        return {}

    def ensure_direct_settlement(self, order: Order) -> None:
        """Raise if this order must not be settled at the counter."""
        return None

    async def on_settled(self, uow: UnitOfWork, order: Order) -> None:
        """Channel work inside the settlement transaction."""
        return None

    async def on_cancelled(self, uow: UnitOfWork, order: Order) -> None:
        """Channel work inside the cancellation transaction."""
        return None

    def ensure_extension(self, order: Order) -> None:
        if getattr(order, self.extension_attribute) is None:
            raise InvalidTransition(
                f"Order #{order.id} is missing its {self.channel.value} details",
                details={"order_id": order.id},
            )

    @property
    def extension_attribute(self) -> str:
        return self.channel.value.lower()
