"""
Settlement Transaction

Closes an order against a payment. When lines are still in the kitchen the
first call returns DecisionRequired (ranked options, nothing written); staff
then call again with an override naming what they chose. The override may
carry a discount, which is checked against the acting role before anything
else happens.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from orderflow.core.config import Settings
from orderflow.core.exceptions import (
    AuthorizationRequired,
    EmptyOrder,
    InvalidRequest,
    InvalidTransition,
    OrderAlreadyClosed,
)
from orderflow.models import (
    LineStatus,
    Order,
    OrderLine,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    TransactionKind,
)
from orderflow.services.broadcast.base import ORDER_CLOSED, ORDER_READY
from orderflow.services.channels.base import BaseChannelHandler
from orderflow.services.guidance import Recommendation, RecommendationKind, recommend
from orderflow.services.lifecycle import (
    SkipTag,
    non_terminal_lines,
    refresh_readiness,
    skip_line,
    transition_order,
)
from orderflow.services.pricing import ZERO, apply_totals, money
from orderflow.services.staff.base import StaffIdentity
from orderflow.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class SettlementOverride:
    """Staff decision for lines that are not ready."""
    action: RecommendationKind
    reason: str
    discount: Decimal = ZERO
    authorized_by: Optional[int] = None


@dataclass(frozen=True)
class PendingLine:
    line_id: int
    item_name: str
    quantity: int
    status: LineStatus
    line_total: Decimal
    fired_at: Optional[datetime]


@dataclass
class DecisionRequired:
    """Returned instead of settling; no state was changed."""
    order_id: int
    amount_due: Decimal
    pending_lines: list[PendingLine]
    recommendations: list[Recommendation]
    outcome: str = "decision_required"


@dataclass
class SettlementResult:
    order: Order
    transaction: PaymentTransaction
    change_due: Decimal
    skipped_lines: list[OrderLine] = field(default_factory=list)
    recommendation_followed: Optional[str] = None
    outcome: str = "settled"


SettlementOutcome = Union[DecisionRequired, SettlementResult]


# =============================================================================
# CHECKS
# =============================================================================

def ensure_settleable(order: Order, handler: BaseChannelHandler) -> None:
    if order.status == OrderStatus.CLOSED:
        raise OrderAlreadyClosed(
            f"Order #{order.id} is already closed",
            details={"order_id": order.id, "payment_status": order.payment_status.value},
        )
    if order.status in (OrderStatus.CANCELLED, OrderStatus.VOIDED):
        raise InvalidTransition(
            f"Order #{order.id} is {order.status.value} and cannot be settled",
            details={"order_id": order.id, "status": order.status.value},
        )
    if not order.lines:
        raise EmptyOrder(f"Order #{order.id} has no items to settle", details={"order_id": order.id})
    handler.ensure_direct_settlement(order)


def authorize_discount(
    discount: Decimal,
    subtotal: Decimal,
    actor: Optional[StaffIdentity],
    approver: Optional[StaffIdentity],
    settings: Settings,
) -> Optional[int]:
    """
    Check a discount against the acting role.

    Non-elevated staff may discount up to discount_ceiling_rate of the
    subtotal. Anything above needs a manager or admin, either acting or
    named in ``authorized_by``. Discounts are never silently clamped.

    Returns:
        Id of the staff member whose authority covers the discount

    Raises:
        InvalidRequest: negative discount or discount above the subtotal
        AuthorizationRequired: above the ceiling without elevated authority
    """
    discount = money(discount)
    if discount < 0:
        raise InvalidRequest("Discount cannot be negative", details={"discount": str(discount)})
    if discount > subtotal:
        raise InvalidRequest(
            f"Discount {discount} exceeds the order subtotal {subtotal}",
            details={"discount": str(discount), "subtotal": str(subtotal)},
        )

    ceiling = money(subtotal * settings.discount_ceiling_rate)
    if discount <= ceiling:
        return actor.id if actor else None

    authority = approver or actor
    if authority is not None and authority.is_elevated:
        return authority.id

    raise AuthorizationRequired(
        f"Discount {discount} is above the {ceiling} limit; a manager must authorize it",
        details={
            "discount": str(discount),
            "ceiling": str(ceiling),
            "role": authority.role.value if authority else None,
        },
    )


def pending_view(lines: list[OrderLine]) -> list[PendingLine]:
    return [
        PendingLine(
            line_id=line.id,
            item_name=line.item_name,
            quantity=line.quantity,
            status=line.status,
            line_total=money(line.line_total),
            fired_at=line.fired_at,
        )
        for line in lines
    ]


# =============================================================================
# SETTLE
# =============================================================================

async def settle_order(
    uow: UnitOfWork,
    order: Order,
    handler: BaseChannelHandler,
    *,
    method: PaymentMethod,
    amount: Decimal,
    actor: Optional[StaffIdentity],
    approver: Optional[StaffIdentity] = None,
    override: Optional[SettlementOverride] = None,
) -> SettlementOutcome:
    """
    Settle a locked order.

    Args:
        uow: Open unit of work
        order: Order loaded FOR UPDATE
        handler: Channel handler for the order
        method: Payment method
        amount: Amount tendered
        actor: Staff member settling
        approver: Staff member named in override.authorized_by, if any
        override: Decision for non-ready lines

    Returns:
        SettlementResult, or DecisionRequired when lines are pending and no override was given
    """
    ensure_settleable(order, handler)

    amount = money(amount)
    if amount < 0:
        raise InvalidRequest("Amount cannot be negative", details={"amount": str(amount)})

    pending = non_terminal_lines(order.lines)
    if pending and override is None:
        logger.info(f"Order #{order.id} has {len(pending)} unready line(s); decision required")
        return DecisionRequired(
            order_id=order.id,
            amount_due=money(order.total),
            pending_lines=pending_view(pending),
            recommendations=recommend(pending, uow.now, uow.settings),
        )

    skipped: list[OrderLine] = []
    authorized_by = None
    if override is not None:
        tag = SkipTag(actor_id=uow.staff_id, reason=override.reason)
        authorized_by = authorize_discount(
            override.discount, money(order.subtotal), actor, approver, uow.settings
        )
        for line in pending:
            skip_line(line, tag, uow.now)
            skipped.append(line)
        order.discount = money(override.discount)

    if refresh_readiness(order, uow.now):
        uow.emit(ORDER_READY, {"order_id": order.id, "channel": order.channel.value})

    totals = apply_totals(order, uow.settings)
    if amount <= 0 and totals.total > 0:
        raise InvalidRequest(
            f"Order #{order.id} owes {totals.total}; a settlement must collect something",
            details={"order_id": order.id, "amount": str(amount), "total": str(totals.total)},
        )

    applied = min(amount, totals.total)
    change_due = money(amount - totals.total) if amount > totals.total else ZERO
    order.payment_status = PaymentStatus.PAID if amount >= totals.total else PaymentStatus.PARTIALLY_PAID

    transaction = PaymentTransaction(
        kind=TransactionKind.PAYMENT,
        method=method,
        amount=applied,
        amount_tendered=amount,
        change_due=change_due,
        processed_by=uow.staff_id,
        recommendation_followed=override.action.value if override else None,
        notes=override.reason if override else None,
        created_at=uow.now,
    )
    order.transactions.append(transaction)

    transition_order(order, OrderStatus.CLOSED)
    order.closed_at = uow.now
    order.touch(uow.staff_id, f"Settled {applied} by {method.value}")

    await handler.on_settled(uow, order)

    uow.audit("ORDER_SETTLED", "order", order.id, {
        "method": method.value,
        "amount_tendered": str(amount),
        "amount_applied": str(applied),
        "total": str(totals.total),
        "discount": str(totals.discount),
        "discount_authorized_by": authorized_by,
        "skipped_lines": [line.id for line in skipped],
        "recommendation_followed": transaction.recommendation_followed,
        "payment_status": order.payment_status.value,
    })
    uow.emit(ORDER_CLOSED, {
        "order_id": order.id,
        "channel": order.channel.value,
        "total": str(totals.total),
        "payment_status": order.payment_status.value,
    })

    logger.info(
        f"Order #{order.id} settled: {applied} {method.value} "
        f"({order.payment_status.value}, change {change_due})"
    )
    return SettlementResult(
        order=order,
        transaction=transaction,
        change_due=change_due,
        skipped_lines=skipped,
        recommendation_followed=transaction.recommendation_followed,
    )
