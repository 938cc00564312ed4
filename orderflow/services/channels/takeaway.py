"""
Takeaway Channel

The pickup token is minted the first time the order is fired and never
changes afterwards.
"""

import logging

from orderflow.models import Order, OrderChannel, TakeawayOrder
from orderflow.services.channels.base import BaseChannelHandler, OrderOpening
from orderflow.services.tokens import mint_token
from orderflow.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class TakeawayHandler(BaseChannelHandler):
    channel = OrderChannel.TAKEAWAY

    async def open(self, uow: UnitOfWork, order: Order, opening: OrderOpening) -> None:
        order.takeaway = TakeawayOrder()

    async def on_fired(self, uow, order):
        self.ensure_extension(order)
        takeaway = order.takeaway
        if takeaway.token_number is None:
            takeaway.token_number, takeaway.token_date = await mint_token(uow.session, uow.settings, uow.now)
            logger.info(f"Order #{order.id} got takeaway token {takeaway.token_number}")
        return {"token_number": takeaway.token_number}

    async def on_settled(self, uow, order):
        self.ensure_extension(order)
        if order.takeaway.picked_up_at is None:
            order.takeaway.picked_up_at = uow.now
