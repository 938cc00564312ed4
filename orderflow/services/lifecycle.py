"""
Order and Line State Machines

Order:
    ACTIVE -> READY      (derived from lines, never requested)
    READY  -> CLOSED
    ACTIVE -> CANCELLED
    CLOSED -> VOIDED

Line:
    DRAFT     -> PENDING | DONE   (fire only; requires_prep decides)
    PENDING   -> PREPARING
    PREPARING -> DONE
    DONE      -> SERVED           (dine-in only)
    non-terminal -> SKIPPED       (settlement override with actor + reason)

Readiness is always recomputed from the full current line set, so the order
in which kitchen bumps arrive does not matter.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from orderflow.core.exceptions import InvalidRequest, InvalidTransition
from orderflow.models import LineStatus, Order, OrderChannel, OrderLine, OrderStatus

logger = logging.getLogger(__name__)


ORDER_TRANSITIONS = {
    OrderStatus.ACTIVE: {OrderStatus.READY, OrderStatus.CANCELLED},
    OrderStatus.READY: {OrderStatus.CLOSED},
    OrderStatus.CLOSED: {OrderStatus.VOIDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.VOIDED: set(),
}

# Reached only through readiness evaluation
DERIVED_ORDER_TRANSITIONS = {(OrderStatus.ACTIVE, OrderStatus.READY)}

LIVE_ORDER_STATUSES = frozenset({OrderStatus.ACTIVE, OrderStatus.READY})

LINE_TRANSITIONS = {
    LineStatus.DRAFT: {LineStatus.PENDING, LineStatus.DONE},
    LineStatus.PENDING: {LineStatus.PREPARING},
    LineStatus.PREPARING: {LineStatus.DONE},
    LineStatus.DONE: {LineStatus.SERVED},
    LineStatus.SERVED: set(),
    LineStatus.SKIPPED: set(),
}

# Only the fire transaction moves lines out of DRAFT
FIRE_LINE_TRANSITIONS = {
    (LineStatus.DRAFT, LineStatus.PENDING),
    (LineStatus.DRAFT, LineStatus.DONE),
}

TERMINAL_LINE_STATUSES = frozenset({LineStatus.DONE, LineStatus.SERVED, LineStatus.SKIPPED})

# Targets a kitchen display or waiter may request directly
REQUESTABLE_LINE_TARGETS = frozenset({LineStatus.PREPARING, LineStatus.DONE, LineStatus.SERVED})


@dataclass(frozen=True)
class SkipTag:
    """Who skipped a line and why. Both are mandatory."""
    actor_id: int
    reason: str

    def __post_init__(self):
        if self.actor_id is None:
            raise InvalidRequest("Skipping a line requires the acting staff member")
        if not self.reason or not self.reason.strip():
            raise InvalidRequest("Skipping a line requires a reason")


# =============================================================================
# ORDER TRANSITIONS
# =============================================================================

def transition_order(order: Order, target: OrderStatus, *, derived: bool = False) -> None:
    """
    Move an order to ``target`` or raise.

    Args:
        order: Order being changed (must be locked by the caller)
        target: Requested status
        derived: True only when called from readiness evaluation

    Raises:
        InvalidTransition: edge not in the table, or a derived edge requested directly
    """
    current = order.status
    if target not in ORDER_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Order #{order.id} cannot move from {current.value} to {target.value}",
            details={"order_id": order.id, "from": current.value, "to": target.value},
        )
    if (current, target) in DERIVED_ORDER_TRANSITIONS and not derived:
        raise InvalidTransition(
            f"Order #{order.id} becomes READY on its own once every line is done",
            details={"order_id": order.id, "from": current.value, "to": target.value},
        )
    order.status = target


# =============================================================================
# LINE TRANSITIONS
# =============================================================================

def transition_line(
    line: OrderLine,
    target: LineStatus,
    channel: OrderChannel,
    now: datetime,
    *,
    via_fire: bool = False,
) -> None:
    """Move a line to ``target`` or raise InvalidTransition."""
    current = line.status

    if target == LineStatus.SKIPPED:
        raise InvalidTransition(
            "Lines are skipped only through a settlement override",
            details={"line_id": line.id},
        )
    if target not in LINE_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Line {line.item_name} cannot move from {current.value} to {target.value}",
            details={"line_id": line.id, "from": current.value, "to": target.value},
        )
    if (current, target) in FIRE_LINE_TRANSITIONS and not via_fire:
        raise InvalidTransition(
            f"Line {line.item_name} has not been fired yet",
            details={"line_id": line.id, "from": current.value, "to": target.value},
        )
    if target == LineStatus.SERVED and channel != OrderChannel.DINE_IN:
        raise InvalidTransition(
            "Only dine-in lines are marked served",
            details={"line_id": line.id, "channel": channel.value},
        )

    line.status = target
    if target in (LineStatus.PENDING, LineStatus.DONE) and line.fired_at is None and via_fire:
        line.fired_at = now
    if target == LineStatus.DONE:
        line.completed_at = now


def skip_line(line: OrderLine, tag: SkipTag, now: datetime) -> None:
    """Mark a non-terminal line SKIPPED with its actor and reason."""
    if line.status in TERMINAL_LINE_STATUSES:
        raise InvalidTransition(
            f"Line {line.item_name} is already {line.status.value}",
            details={"line_id": line.id, "from": line.status.value, "to": LineStatus.SKIPPED.value},
        )
    line.status = LineStatus.SKIPPED
    line.skipped_by = tag.actor_id
    line.skip_reason = tag.reason.strip()
    line.skipped_at = now


# =============================================================================
# READINESS
# =============================================================================

def non_terminal_lines(lines: Iterable[OrderLine]) -> list[OrderLine]:
    return [line for line in lines if line.status not in TERMINAL_LINE_STATUSES]


def is_fulfilled(lines: Iterable[OrderLine]) -> bool:
    """True when there is at least one line and every line is terminal."""
    lines = list(lines)
    return bool(lines) and not non_terminal_lines(lines)


def refresh_readiness(order: Order, now: datetime) -> bool:
    """
    Advance ACTIVE -> READY if every line is terminal.

    Idempotent: calling it again on a READY order changes nothing.

    Returns:
        True if the order advanced in this call
    """
    if order.status != OrderStatus.ACTIVE or not is_fulfilled(order.lines):
        return False

    transition_order(order, OrderStatus.READY, derived=True)
    order.ready_at = now
    logger.info(f"Order #{order.id} is READY")
    return True
