"""
Tests for the consistency checks. Drift is injected with raw UPDATEs that
bypass the engine.
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from orderflow.models import (
    AppendOnlyViolation,
    AuditLog,
    DeliveryOrder,
    DiningTable,
    LineStatus,
    Order,
    OrderLine,
    OrderStatus,
    PaymentTransaction,
    RiderAccount,
    TableStatus,
)
from orderflow.services.invariants import (
    CLOSED_WITHOUT_PAYMENT,
    ORPHANED_TABLE,
    READINESS_DRIFT,
    RIDER_BALANCE_DRIFT,
    RIDER_LIABILITY_MISMATCH,
    RIDER_SLOT_MISMATCH,
    TABLE_BACKREF_MISMATCH,
    check_invariants,
)

from tests.helpers import BIRYANI, CASHIER, KARAHI, MANAGER, RIDER, WAITER, cook, delivery, seat, takeaway


async def execute(session_maker, stmt):
    async with session_maker() as session:
        async with session.begin():
            await session.execute(stmt)


def codes(violations):
    return sorted(v.code for v in violations)


class TestCheckInvariants:
    async def test_clean_database(self, engine, tables):
        order = await seat(engine, tables[0].id, KARAHI)
        await engine.fire_order(order.id, staff_id=WAITER)
        assert await engine.check_consistency() == []

    async def test_closed_without_payment(self, engine, session_maker):
        order = await cook(engine, (await takeaway(engine, KARAHI)).id)
        await execute(session_maker, update(Order).where(Order.id == order.id).values(status=OrderStatus.CLOSED))

        violations = await engine.check_consistency()

        assert codes(violations) == [CLOSED_WITHOUT_PAYMENT]
        assert violations[0].entity_id == order.id

    async def test_orphaned_table(self, engine, session_maker, tables):
        await execute(
            session_maker,
            update(DiningTable)
            .where(DiningTable.id == tables[2].id)
            .values(status=TableStatus.OCCUPIED, active_order_id=4242),
        )

        violations = await engine.check_consistency()

        assert codes(violations) == [ORPHANED_TABLE]
        assert "4242" in violations[0].detail

    async def test_table_lost_its_order(self, engine, session_maker, tables):
        order = await seat(engine, tables[0].id, KARAHI)
        await execute(
            session_maker,
            update(DiningTable).where(DiningTable.id == tables[0].id).values(
                status=TableStatus.AVAILABLE, active_order_id=None
            ),
        )

        violations = await engine.check_consistency()

        assert codes(violations) == [TABLE_BACKREF_MISMATCH]
        assert violations[0].entity_id == order.id

    async def test_readiness_drift(self, engine, session_maker, tables):
        order = await seat(engine, tables[0].id, KARAHI)
        await engine.fire_order(order.id, staff_id=WAITER)
        await execute(
            session_maker,
            update(OrderLine).where(OrderLine.order_id == order.id).values(status=LineStatus.DONE),
        )

        assert codes(await engine.check_consistency()) == [READINESS_DRIFT]

    async def test_rider_balance_drift(self, engine, session_maker):
        order = await cook(engine, (await delivery(engine, BIRYANI)).id)
        await engine.dispatch_to_rider([order.id], RIDER, Decimal("500"), MANAGER)
        await execute(
            session_maker,
            update(RiderAccount).where(RiderAccount.rider_id == RIDER).values(cash_in_hand=Decimal("0")),
        )

        assert codes(await engine.check_consistency()) == [RIDER_BALANCE_DRIFT]

    async def test_rider_slot_and_liability(self, engine, session_maker):
        order = await cook(engine, (await delivery(engine, BIRYANI)).id)
        await engine.dispatch_to_rider([order.id], RIDER, Decimal("500"), MANAGER)
        await execute(session_maker, update(Order).where(Order.id == order.id).values(driver_id=None))
        await execute(
            session_maker,
            update(DeliveryOrder).where(DeliveryOrder.order_id == order.id).values(float_given=Decimal("0")),
        )

        assert codes(await engine.check_consistency()) == [RIDER_LIABILITY_MISMATCH, RIDER_SLOT_MISMATCH]

    async def test_checks_do_not_write(self, engine, session_maker, tables):
        await seat(engine, tables[0].id, KARAHI)

        async with session_maker() as session:
            before = (await session.execute(select(func.count(AuditLog.id)))).scalar_one()
            await check_invariants(session)
            assert not session.dirty and not session.new
        async with session_maker() as session:
            after = (await session.execute(select(func.count(AuditLog.id)))).scalar_one()
        assert before == after


class TestAppendOnly:
    async def test_payment_transactions_cannot_be_rewritten(self, engine, session_maker):
        order = await cook(engine, (await takeaway(engine, KARAHI)).id)
        await engine.settle_order(order.id, CASHIER, "CASH", order.total)

        async with session_maker() as session:
            transaction = (await session.execute(select(PaymentTransaction))).scalars().first()
            transaction.amount = Decimal("1.00")
            with pytest.raises(AppendOnlyViolation):
                await session.flush()
