"""
Tests for the settlement transaction, guided overrides and discount authority.
"""

import asyncio
from decimal import Decimal

import pytest

from orderflow.core.exceptions import (
    AuthorizationRequired,
    EmptyOrder,
    InvalidRequest,
    InvalidTransition,
    OrderAlreadyClosed,
)
from orderflow.models import (
    LineStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    TableStatus,
    TransactionKind,
)
from orderflow.services.broadcast import ORDER_CLOSED
from orderflow.services.guidance import RecommendationKind
from orderflow.services.settlement import DecisionRequired, SettlementOverride, SettlementResult

from tests.helpers import (
    ADMIN,
    CASHIER,
    KARAHI,
    MANAGER,
    NAAN,
    WAITER,
    WATER,
    cook,
    seat,
    takeaway,
)


class TestDirectSettlement:
    async def test_settles_ready_order(self, engine, broadcaster, tables):
        order = await cook(engine, (await seat(engine, tables[0].id, KARAHI, (NAAN, 2))).id)

        outcome = await engine.settle_order(order.id, CASHIER, PaymentMethod.CARD, Decimal("2468.40"))

        assert isinstance(outcome, SettlementResult)
        assert outcome.order.status == OrderStatus.CLOSED
        assert outcome.order.payment_status == PaymentStatus.PAID
        assert outcome.change_due == Decimal("0.00")
        assert outcome.transaction.kind == TransactionKind.PAYMENT
        assert outcome.transaction.amount == Decimal("2468.40")

        stored = await engine.get_order(order.id)
        assert stored.closed_at is not None
        assert len(stored.transactions) == 1
        assert len(broadcaster.events_of(ORDER_CLOSED)) == 1

        table = {t.id: t for t in await engine.list_tables()}[tables[0].id]
        assert table.status == TableStatus.NEEDS_CLEANING
        assert table.active_order_id is None

    async def test_overpayment_gives_change(self, engine):
        order = await cook(engine, (await takeaway(engine, KARAHI)).id)

        outcome = await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, Decimal("2500.00"))

        assert order.total == Decimal("2088.00")
        assert outcome.change_due == Decimal("412.00")
        assert outcome.transaction.amount == Decimal("2088.00")
        assert outcome.transaction.amount_tendered == Decimal("2500.00")

    async def test_underpayment_closes_as_partially_paid(self, engine):
        order = await cook(engine, (await takeaway(engine, KARAHI)).id)

        outcome = await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, Decimal("2000.00"))

        assert outcome.order.status == OrderStatus.CLOSED
        assert outcome.order.payment_status == PaymentStatus.PARTIALLY_PAID

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("0.004")])
    async def test_nothing_tendered_is_rejected(self, engine, tables, amount):
        order = await cook(engine, (await seat(engine, tables[0].id, KARAHI)).id)

        with pytest.raises(InvalidRequest):
            await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, amount)

        stored = await engine.get_order(order.id)
        assert stored.status == OrderStatus.READY
        assert stored.payment_status == PaymentStatus.UNPAID
        assert stored.transactions == []
        table = {t.id: t for t in await engine.list_tables()}[tables[0].id]
        assert table.status == TableStatus.OCCUPIED

    async def test_takeaway_records_pickup(self, engine):
        order = await cook(engine, (await takeaway(engine, KARAHI)).id)
        outcome = await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, order.total)
        assert outcome.order.takeaway.picked_up_at is not None

    async def test_settling_twice_is_rejected(self, engine):
        order = await cook(engine, (await takeaway(engine, KARAHI)).id)
        await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, order.total)

        with pytest.raises(OrderAlreadyClosed):
            await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, order.total)

        stored = await engine.get_order(order.id)
        assert len(stored.transactions) == 1

    async def test_concurrent_settlement_charges_once(self, engine):
        order = await cook(engine, (await takeaway(engine, KARAHI)).id)

        results = await asyncio.gather(
            engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, order.total),
            engine.settle_order(order.id, MANAGER, PaymentMethod.CARD, order.total),
            return_exceptions=True,
        )

        assert sum(isinstance(r, SettlementResult) for r in results) == 1
        assert sum(isinstance(r, OrderAlreadyClosed) for r in results) == 1
        assert len((await engine.get_order(order.id)).transactions) == 1

    async def test_cancelled_order_cannot_settle(self, engine, tables):
        order = await seat(engine, tables[0].id, KARAHI)
        await engine.cancel_order(order.id, staff_id=WAITER)

        with pytest.raises(InvalidTransition):
            await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, Decimal("100"))

    async def test_empty_order_cannot_settle(self, engine, tables):
        order = await seat(engine, tables[0].id)
        with pytest.raises(EmptyOrder):
            await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, Decimal("0"))


class TestDecisionRequired:
    async def test_pending_lines_return_guidance_without_writing(self, engine, broadcaster, tables):
        order = await seat(engine, tables[0].id, KARAHI, WATER)
        await engine.fire_order(order.id, staff_id=WAITER)
        broadcaster.clear()

        outcome = await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, Decimal("5000"))

        assert isinstance(outcome, DecisionRequired)
        assert outcome.outcome == "decision_required"
        assert [line.item_name for line in outcome.pending_lines] == ["Chicken Karahi"]
        assert outcome.recommendations
        assert outcome.amount_due == order.total

        stored = await engine.get_order(order.id)
        assert stored.status == OrderStatus.ACTIVE
        assert stored.payment_status == PaymentStatus.UNPAID
        assert stored.transactions == []
        assert [line.status for line in stored.lines] == [LineStatus.PENDING, LineStatus.DONE]
        assert broadcaster.published == []

    async def test_unfired_order_also_gets_guidance(self, engine, tables):
        order = await seat(engine, tables[0].id, KARAHI)
        outcome = await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, order.total)

        assert isinstance(outcome, DecisionRequired)
        assert outcome.recommendations[0].kind == RecommendationKind.SKIP_REMAINING


class TestOverride:
    async def test_serve_later_skips_with_tag(self, engine, tables):
        order = await seat(engine, tables[0].id, KARAHI, WATER)
        await engine.fire_order(order.id, staff_id=WAITER)

        outcome = await engine.settle_order(
            order.id,
            CASHIER,
            PaymentMethod.CASH,
            order.total,
            override=SettlementOverride(action=RecommendationKind.SERVE_LATER, reason="Guest in a hurry"),
        )

        assert isinstance(outcome, SettlementResult)
        assert outcome.recommendation_followed == "SERVE_LATER"
        skipped = outcome.skipped_lines[0]
        assert skipped.status == LineStatus.SKIPPED
        assert skipped.skipped_by == CASHIER
        assert skipped.skip_reason == "Guest in a hurry"
        assert outcome.order.status == OrderStatus.CLOSED
        assert outcome.transaction.recommendation_followed == "SERVE_LATER"
        assert await engine.check_consistency() == []

    async def test_discount_within_ceiling_needs_no_manager(self, engine, tables):
        order = await seat(engine, tables[0].id, KARAHI, (NAAN, 2))
        await engine.fire_order(order.id, staff_id=WAITER)

        outcome = await engine.settle_order(
            order.id,
            CASHIER,
            PaymentMethod.CASH,
            Decimal("3000"),
            override=SettlementOverride(
                action=RecommendationKind.GOODWILL_DISCOUNT, reason="Long wait", discount=Decimal("204.00")
            ),
        )

        assert outcome.order.discount == Decimal("204.00")
        assert outcome.order.total == Decimal("2264.40")
        assert outcome.change_due == Decimal("735.60")

    async def test_large_discount_requires_elevation(self, engine, tables):
        order = await seat(engine, tables[0].id, KARAHI, (NAAN, 2))
        await engine.fire_order(order.id, staff_id=WAITER)
        override = SettlementOverride(
            action=RecommendationKind.SKIP_REMAINING, reason="Kitchen out of stock", discount=Decimal("2040.00")
        )

        with pytest.raises(AuthorizationRequired):
            await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, Decimal("0"), override=override)

        stored = await engine.get_order(order.id)
        assert stored.status == OrderStatus.ACTIVE
        assert {line.status for line in stored.lines} == {LineStatus.PENDING}

    async def test_manager_can_authorize_large_discount(self, engine, tables):
        order = await seat(engine, tables[0].id, KARAHI, (NAAN, 2))
        await engine.fire_order(order.id, staff_id=WAITER)
        override = SettlementOverride(
            action=RecommendationKind.SKIP_REMAINING,
            reason="Kitchen out of stock",
            discount=Decimal("2040.00"),
            authorized_by=MANAGER,
        )

        outcome = await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, Decimal("428.40"), override=override)

        assert outcome.order.total == Decimal("428.40")
        assert outcome.order.payment_status == PaymentStatus.PAID
        assert len(outcome.skipped_lines) == 2

    async def test_elevated_actor_needs_no_approver(self, engine):
        order = await takeaway(engine, KARAHI)
        override = SettlementOverride(
            action=RecommendationKind.FORCE_CLOSE, reason="Guest left", discount=Decimal("1800.00")
        )

        outcome = await engine.settle_order(order.id, ADMIN, PaymentMethod.CASH, Decimal("288.00"), override=override)

        assert outcome.recommendation_followed == "FORCE_CLOSE"

    async def test_discount_above_subtotal_is_rejected(self, engine):
        order = await takeaway(engine, KARAHI)
        override = SettlementOverride(
            action=RecommendationKind.SKIP_REMAINING, reason="Test", discount=Decimal("1800.01"), authorized_by=MANAGER
        )

        with pytest.raises(InvalidRequest):
            await engine.settle_order(order.id, MANAGER, PaymentMethod.CASH, Decimal("0"), override=override)

    async def test_override_needs_a_reason(self, engine):
        order = await takeaway(engine, KARAHI)
        override = SettlementOverride(action=RecommendationKind.SERVE_LATER, reason=" ")

        with pytest.raises(InvalidRequest):
            await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, order.total, override=override)


class TestCancelAndVoid:
    async def test_fired_order_needs_cancel_reason(self, engine, tables):
        order = await seat(engine, tables[0].id, KARAHI)
        await engine.fire_order(order.id, staff_id=WAITER)

        with pytest.raises(InvalidRequest):
            await engine.cancel_order(order.id, staff_id=WAITER)

        order = await engine.cancel_order(order.id, staff_id=WAITER, reason="Guest changed their mind")
        assert order.status == OrderStatus.CANCELLED
        assert order.cancellation_reason == "Guest changed their mind"

    async def test_ready_order_cannot_be_cancelled(self, engine):
        order = await cook(engine, (await takeaway(engine, KARAHI)).id)
        with pytest.raises(InvalidTransition):
            await engine.cancel_order(order.id, staff_id=CASHIER, reason="Too late")

    async def test_void_needs_elevated_role(self, engine):
        order = await cook(engine, (await takeaway(engine, KARAHI)).id)
        await engine.settle_order(order.id, CASHIER, PaymentMethod.CARD, order.total)

        with pytest.raises(AuthorizationRequired):
            await engine.void_order(order.id, CASHIER, "Wrong order rung up")

    async def test_void_records_refund(self, engine):
        order = await cook(engine, (await takeaway(engine, KARAHI)).id)
        await engine.settle_order(order.id, CASHIER, PaymentMethod.CARD, order.total)

        voided = await engine.void_order(order.id, CASHIER, "Wrong order rung up", authorized_by=MANAGER)

        assert voided.status == OrderStatus.VOIDED
        assert voided.payment_status == PaymentStatus.REFUNDED
        assert voided.voided_by == MANAGER
        refund = voided.transactions[-1]
        assert refund.kind == TransactionKind.REFUND
        assert refund.amount == Decimal("2088.00")
        assert await engine.check_consistency() == []

    async def test_only_closed_orders_can_be_voided(self, engine):
        order = await takeaway(engine, KARAHI)
        with pytest.raises(InvalidTransition):
            await engine.void_order(order.id, MANAGER, "Mistake")
