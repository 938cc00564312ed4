"""
Dine-In Channel

Seating a party binds the table. The order, its extension and the table
lock are written in one transaction, so a failure leaves the table free.
"""

import logging

from orderflow.core.exceptions import InvalidRequest
from orderflow.models import DineInOrder, Order, OrderChannel
from orderflow.services.channels.base import BaseChannelHandler, OrderOpening
from orderflow.services.resources import ResourceRef
from orderflow.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class DineInHandler(BaseChannelHandler):
    channel = OrderChannel.DINE_IN

    async def open(self, uow: UnitOfWork, order: Order, opening: OrderOpening) -> None:
        if opening.table_id is None:
            raise InvalidRequest("Dine-in orders need a table")
        guest_count = 1 if opening.guest_count is None else opening.guest_count
        if guest_count < 1:
            raise InvalidRequest("Guest count must be at least 1")

        await self.resources.acquire(uow, ResourceRef.table(opening.table_id), order.id)

        order.table_id = opening.table_id
        order.guest_count = guest_count
        order.waiter_id = opening.waiter_id
        order.dine_in = DineInOrder(
            table_id=opening.table_id,
            guest_count=guest_count,
            seated_at=uow.now,
        )
        logger.info(f"Seated {guest_count} guest(s) at table {opening.table_id} (order #{order.id})")

    async def on_settled(self, uow: UnitOfWork, order: Order) -> None:
        await self.resources.release(
            uow, ResourceRef.table(order.table_id), order.id, needs_cleaning=True
        )

    async def on_cancelled(self, uow: UnitOfWork, order: Order) -> None:
        await self.resources.release(uow, ResourceRef.table(order.table_id), order.id)
