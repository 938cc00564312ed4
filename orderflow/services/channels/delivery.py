"""
Delivery Channel

The address may be filled in after creation; it is only required when the
order is fired. Once a rider has the order, the cash comes back through
rider settlement, not the counter.
"""

from orderflow.core.exceptions import InvalidTransition, MissingDeliveryAddress
from orderflow.models import DeliveryOrder, Order, OrderChannel
from orderflow.services.channels.base import BaseChannelHandler, OrderOpening
from orderflow.services.unit_of_work import UnitOfWork


class DeliveryHandler(BaseChannelHandler):
    channel = OrderChannel.DELIVERY

    async def open(self, uow: UnitOfWork, order: Order, opening: OrderOpening) -> None:
        order.delivery = DeliveryOrder(
            delivery_address=(opening.delivery_address or "").strip() or None,
            delivery_instructions=opening.delivery_instructions,
        )

    def validate_for_fire(self, order: Order) -> None:
        super().validate_for_fire(order)
        self.ensure_extension(order)
        address = order.delivery.delivery_address
        if not address or not address.strip():
            raise MissingDeliveryAddress(
                f"Order #{order.id} needs a delivery address before it can be fired",
                details={"order_id": order.id},
            )

    def ensure_direct_settlement(self, order: Order) -> None:
        self.ensure_extension(order)
        if order.delivery.rider_id is not None:
            raise InvalidTransition(
                f"Order #{order.id} is with rider {order.delivery.rider_id}; settle it through rider settlement",
                details={"order_id": order.id, "rider_id": order.delivery.rider_id},
            )
