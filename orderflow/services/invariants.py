"""
Consistency Invariants

Read-only checks over the whole database. They report drift for an
external sweep to act on and never change anything themselves.

Codes:
    CLOSED_WITHOUT_PAYMENT    closed (or voided) order with no PAYMENT transaction
    ORPHANED_TABLE            occupied table whose order is missing, finished or elsewhere
    TABLE_BACKREF_MISMATCH    live dine-in order whose table does not point back
    READINESS_DRIFT           order status disagrees with its lines
    RIDER_BALANCE_DRIFT       materialised balance differs from the ledger
    RIDER_LIABILITY_MISMATCH  ledger differs from outstanding liabilities + shortages
                              + unreturned shift floats
    RIDER_SLOT_MISMATCH       bound rider slot whose order points at another driver

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.models import (
    DeliveryOrder,
    DiningTable,
    Order,
    OrderChannel,
    OrderStatus,
    PaymentTransaction,
    RiderAccount,
    RiderLedgerEntry,
    RiderSettlement,
    RiderShift,
    TableStatus,
    TransactionKind,
)
from orderflow.services.lifecycle import LIVE_ORDER_STATUSES, is_fulfilled, non_terminal_lines
from orderflow.services.pricing import ZERO, money
from orderflow.services.resources import BOUND_DISPATCH_STATUSES

logger = logging.getLogger(__name__)


CLOSED_WITHOUT_PAYMENT = "CLOSED_WITHOUT_PAYMENT"
ORPHANED_TABLE = "ORPHANED_TABLE"
TABLE_BACKREF_MISMATCH = "TABLE_BACKREF_MISMATCH"
READINESS_DRIFT = "READINESS_DRIFT"
RIDER_BALANCE_DRIFT = "RIDER_BALANCE_DRIFT"
RIDER_LIABILITY_MISMATCH = "RIDER_LIABILITY_MISMATCH"
RIDER_SLOT_MISMATCH = "RIDER_SLOT_MISMATCH"


@dataclass(frozen=True)
class InvariantViolation:
    code: str
    entity_type: str
    entity_id: int
    detail: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "detail": self.detail,
        }


async def _closed_without_payment(session: AsyncSession) -> list[InvariantViolation]:
    paid = select(PaymentTransaction.order_id).where(PaymentTransaction.kind == TransactionKind.PAYMENT)
    rows = (
        await session.execute(
            select(Order.id, Order.status).where(
                Order.status.in_([OrderStatus.CLOSED, OrderStatus.VOIDED]),
                Order.id.not_in(paid),
            )
        )
    ).all()
    return [
        InvariantViolation(CLOSED_WITHOUT_PAYMENT, "order", row.id, f"{row.status.value} order has no payment")
        for row in rows
    ]


async def _table_bindings(session: AsyncSession) -> list[InvariantViolation]:
    violations = []

    tables = (await session.execute(select(DiningTable).order_by(DiningTable.id))).scalars().all()
    for table in tables:
        if table.status != TableStatus.OCCUPIED:
            if table.active_order_id is not None:
                violations.append(InvariantViolation(
                    ORPHANED_TABLE, "table", table.id,
                    f"{table.status.value} table still points at order #{table.active_order_id}",
                ))
            continue
        if table.active_order_id is None:
            violations.append(InvariantViolation(
                ORPHANED_TABLE, "table", table.id, "occupied with no order",
            ))
            continue
        order = await session.get(Order, table.active_order_id)
        if order is None:
            detail = f"order #{table.active_order_id} does not exist"
        elif order.status not in LIVE_ORDER_STATUSES:
            detail = f"order #{order.id} is {order.status.value}"
        elif order.table_id != table.id:
            detail = f"order #{order.id} is seated at table {order.table_id}"
        else:
            continue
        violations.append(InvariantViolation(ORPHANED_TABLE, "table", table.id, detail))

    live_dine_in = (
        await session.execute(
            select(Order.id, Order.table_id, DiningTable.active_order_id)
            .outerjoin(DiningTable, DiningTable.id == Order.table_id)
            .where(
                Order.channel == OrderChannel.DINE_IN,
                Order.status.in_(LIVE_ORDER_STATUSES),
            )
        )
    ).all()
    for row in live_dine_in:
        if row.active_order_id != row.id:
            violations.append(InvariantViolation(
                TABLE_BACKREF_MISMATCH, "order", row.id,
                f"table {row.table_id} is bound to order #{row.active_order_id}",
            ))
    return violations


async def _readiness(session: AsyncSession) -> list[InvariantViolation]:
    violations = []
    orders = (
        await session.execute(select(Order).where(Order.status.in_(LIVE_ORDER_STATUSES)).order_by(Order.id))
    ).scalars().all()
    for order in orders:
        if order.status == OrderStatus.ACTIVE and is_fulfilled(order.lines):
            violations.append(InvariantViolation(
                READINESS_DRIFT, "order", order.id, "ACTIVE but every line is finished",
            ))
        elif order.status == OrderStatus.READY and non_terminal_lines(order.lines):
            violations.append(InvariantViolation(
                READINESS_DRIFT, "order", order.id,
                f"READY with {len(non_terminal_lines(order.lines))} unfinished line(s)",
            ))
    return violations


async def _rider_accounts(session: AsyncSession) -> list[InvariantViolation]:
    violations = []

    ledger = dict(
        (await session.execute(
            select(RiderLedgerEntry.rider_id, func.sum(RiderLedgerEntry.amount)).group_by(RiderLedgerEntry.rider_id)
        )).all()
    )
    shortages = dict(
        (await session.execute(
            select(RiderSettlement.rider_id, func.sum(RiderSettlement.shortage)).group_by(RiderSettlement.rider_id)
        )).all()
    )
    shift_floats = dict(
        (await session.execute(
            select(
                RiderShift.rider_id,
                func.coalesce(func.sum(RiderShift.opening_float), 0)
                - func.coalesce(func.sum(RiderShift.closing_cash_received), 0),
            ).group_by(RiderShift.rider_id)
        )).all()
    )
    liabilities = dict(
        (await session.execute(
            select(DeliveryOrder.rider_id, func.sum(Order.total + DeliveryOrder.float_given))
            .join(Order, Order.id == DeliveryOrder.order_id)
            .where(DeliveryOrder.dispatch_status.in_(BOUND_DISPATCH_STATUSES))
            .group_by(DeliveryOrder.rider_id)
        )).all()
    )

    accounts = (await session.execute(select(RiderAccount).order_by(RiderAccount.rider_id))).scalars().all()
    for account in accounts:
        rider_id = account.rider_id
        ledger_balance = money(ledger.get(rider_id, ZERO))
        if money(account.cash_in_hand) != ledger_balance:
            violations.append(InvariantViolation(
                RIDER_BALANCE_DRIFT, "rider", rider_id,
                f"cash in hand {money(account.cash_in_hand)} but ledger sums to {ledger_balance}",
            ))
        expected = money(
            money(liabilities.get(rider_id, ZERO))
            + money(shortages.get(rider_id, ZERO))
            + money(shift_floats.get(rider_id, ZERO))
        )
        if ledger_balance != expected:
            violations.append(InvariantViolation(
                RIDER_LIABILITY_MISMATCH, "rider", rider_id,
                f"ledger {ledger_balance} but outstanding + shortages + shift floats is {expected}",
            ))

    slots = (
        await session.execute(
            select(DeliveryOrder.order_id, DeliveryOrder.rider_id, Order.driver_id)
            .join(Order, Order.id == DeliveryOrder.order_id)
            .where(DeliveryOrder.dispatch_status.in_(BOUND_DISPATCH_STATUSES))
        )
    ).all()
    for row in slots:
        if row.rider_id is None or row.driver_id != row.rider_id:
            violations.append(InvariantViolation(
                RIDER_SLOT_MISMATCH, "order", row.order_id,
                f"slot held by rider {row.rider_id} but order driver is {row.driver_id}",
            ))
    return violations


async def check_invariants(session: AsyncSession) -> list[InvariantViolation]:
    """Run every check and return all violations found."""
    violations = []
    violations.extend(await _closed_without_payment(session))
    violations.extend(await _table_bindings(session))
    violations.extend(await _readiness(session))
    violations.extend(await _rider_accounts(session))

    if violations:
        logger.warning(f"Consistency check found {len(violations)} violation(s)")
    else:
        logger.info("Consistency check passed")
    return violations
