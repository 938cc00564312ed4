"""
Fire Transaction

Sends held (DRAFT) lines to production. Lines that need cooking go to the
kitchen as PENDING; grab-and-go lines (drinks, water) are DONE immediately.
Only the PENDING lines are broadcast to kitchen displays.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from orderflow.core.exceptions import InvalidTransition
from orderflow.models import LineStatus, Order, OrderLine, OrderStatus
from orderflow.services.broadcast.base import KITCHEN_DISPATCH, ORDER_READY
from orderflow.services.channels.base import BaseChannelHandler
from orderflow.services.lifecycle import refresh_readiness, transition_line
from orderflow.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


@dataclass
class FireResult:
    order: Order
    sent_to_kitchen: list[OrderLine] = field(default_factory=list)
    completed_at_fire: list[OrderLine] = field(default_factory=list)
    token_number: Optional[str] = None
    became_ready: bool = False


def kitchen_ticket(order: Order, lines: list[OrderLine], token_number: Optional[str]) -> dict:
    """Payload for kitchen displays: PENDING lines only."""
    return {
        "order_id": order.id,
        "channel": order.channel.value,
        "table_id": order.table_id,
        "token_number": token_number,
        "lines": [
            {
                "line_id": line.id,
                "item_name": line.item_name,
                "quantity": line.quantity,
                "station": line.station,
                "notes": line.notes,
            }
            for line in lines
        ],
    }


async def fire_order(uow: UnitOfWork, order: Order, handler: BaseChannelHandler) -> FireResult:
    """
    Fire every DRAFT line on a locked order.

    Args:
        uow: Open unit of work
        order: Order loaded FOR UPDATE
        handler: Channel handler for the order

    Returns:
        FireResult with the lines sent to the kitchen and those completed at fire

    Raises:
        InvalidTransition: order is not ACTIVE
        EmptyOrder: no lines, or nothing new to fire
        MissingDeliveryAddress: delivery order without an address
    """
    if order.status != OrderStatus.ACTIVE:
        raise InvalidTransition(
            f"Order #{order.id} is {order.status.value} and cannot be fired",
            details={"order_id": order.id, "status": order.status.value},
        )
    handler.validate_for_fire(order)

    result = FireResult(order=order)
    for line in order.lines:
        if line.status != LineStatus.DRAFT:
            continue
        if line.requires_prep:
            transition_line(line, LineStatus.PENDING, order.channel, uow.now, via_fire=True)
            result.sent_to_kitchen.append(line)
        else:
            transition_line(line, LineStatus.DONE, order.channel, uow.now, via_fire=True)
            result.completed_at_fire.append(line)

    extra = await handler.on_fired(uow, order)
    result.token_number = extra.get("token_number")

    if order.fired_at is None:
        order.fired_at = uow.now
    order.touch(uow.staff_id, f"Fired {len(result.sent_to_kitchen) + len(result.completed_at_fire)} item(s)")

    uow.audit("ORDER_FIRED", "order", order.id, {
        "sent_to_kitchen": [line.id for line in result.sent_to_kitchen],
        "completed_at_fire": [line.id for line in result.completed_at_fire],
        "token_number": result.token_number,
    })

    result.became_ready = refresh_readiness(order, uow.now)

    if result.sent_to_kitchen:
        uow.emit(KITCHEN_DISPATCH, kitchen_ticket(order, result.sent_to_kitchen, result.token_number))
    if result.became_ready:
        uow.emit(ORDER_READY, {"order_id": order.id, "channel": order.channel.value})

    logger.info(
        f"Order #{order.id} fired: {len(result.sent_to_kitchen)} to kitchen, "
        f"{len(result.completed_at_fire)} ready at fire"
    )
    return result
