"""
Channel Handler Factory

Usage:
    from orderflow.services.channels import get_channel_handler

    handler = get_channel_handler(order.channel, resources)
    handler.validate_for_fire(order)
"""

from orderflow.models import OrderChannel
from orderflow.services.channels.base import BaseChannelHandler, OrderOpening
from orderflow.services.channels.delivery import DeliveryHandler
from orderflow.services.channels.dine_in import DineInHandler
from orderflow.services.channels.takeaway import TakeawayHandler
from orderflow.services.resources import ResourceLock

_HANDLERS = {
    OrderChannel.DINE_IN: DineInHandler,
    OrderChannel.TAKEAWAY: TakeawayHandler,
    OrderChannel.DELIVERY: DeliveryHandler,
}


def get_channel_handler(channel: OrderChannel, resources: ResourceLock) -> BaseChannelHandler:
    """Return the handler for ``channel``."""
    try:
        handler_class = _HANDLERS[OrderChannel(channel)]
    except (KeyError, ValueError):
        raise ValueError(f"Unsupported order channel: {channel}")
    return handler_class(resources)


__all__ = [
    "get_channel_handler",
    "BaseChannelHandler",
    "OrderOpening",
    "DineInHandler",
    "TakeawayHandler",
    "DeliveryHandler",
]
