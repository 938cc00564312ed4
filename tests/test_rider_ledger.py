"""
Tests for rider dispatch, float allocation and cash settlement.
"""

from decimal import Decimal

import pytest

from orderflow.core.exceptions import (
    InvalidRequest,
    InvalidSettlementSelection,
    InvalidTransition,
    NotFound,
    ResourceConflict,
)
from orderflow.models import DispatchStatus, OrderStatus, PaymentMethod, PaymentStatus, ShiftStatus
from orderflow.services.broadcast import RIDER_BALANCE_CHANGED
from orderflow.services.resources import ResourceKind, ResourceState
from orderflow.services.rider_ledger import allocate_float

from tests.helpers import (
    BIRYANI,
    CASHIER,
    KARAHI,
    MANAGER,
    NAAN,
    OTHER_RIDER,
    RIDER,
    cook,
    delivery,
)

# Delivery totals: Biryani 950 + 152 tax + 200 fee, Karahi 1800 + 288 tax + 200 fee
BIRYANI_TOTAL = Decimal("1302.00")
KARAHI_TOTAL = Decimal("2288.00")
NAAN_TOTAL = Decimal("339.20")


async def ready_deliveries(engine, *items):
    orders = []
    for item in items:
        order = await delivery(engine, item)
        orders.append(await cook(engine, order.id))
    return orders


async def out_and_back(engine, float_given=Decimal("1000.00")):
    """Two orders dispatched to RIDER and delivered."""
    orders = await ready_deliveries(engine, BIRYANI, KARAHI)
    ids = [order.id for order in orders]
    await engine.dispatch_to_rider(ids, RIDER, float_given, MANAGER)
    for order_id in ids:
        await engine.mark_delivered(order_id, CASHIER)
    return ids


class TestAllocateFloat:
    def test_proportional_with_remainder_on_last(self):
        shares = allocate_float([Decimal("2500"), Decimal("3200"), Decimal("1800")], Decimal("5000"))
        assert shares == [Decimal("1666.67"), Decimal("2133.33"), Decimal("1200.00")]

    def test_shares_always_sum_to_float(self):
        shares = allocate_float([Decimal("1302.00"), Decimal("2288.00"), Decimal("999.99")], Decimal("1000.00"))
        assert sum(shares) == Decimal("1000.00")

    def test_zero_value_orders_split_evenly(self):
        assert allocate_float([Decimal("0"), Decimal("0")], Decimal("100")) == [Decimal("50.00"), Decimal("50.00")]

    def test_empty_batch(self):
        assert allocate_float([], Decimal("100")) == []


class TestDispatch:
    async def test_dispatch_books_liability(self, engine, broadcaster):
        orders = await ready_deliveries(engine, BIRYANI, KARAHI)

        result = await engine.dispatch_to_rider([o.id for o in orders], RIDER, Decimal("1000.00"), MANAGER)

        assert result.float_allocation == {orders[0].id: Decimal("362.67"), orders[1].id: Decimal("637.33")}
        assert result.liability_added == Decimal("4590.00")
        assert result.cash_in_hand == Decimal("4590.00")
        assert len(broadcaster.events_of(RIDER_BALANCE_CHANGED)) == 1

        stored = await engine.get_order(orders[0].id)
        assert stored.status == OrderStatus.READY
        assert stored.driver_id == RIDER
        assert stored.delivery.rider_id == RIDER
        assert stored.delivery.dispatch_status == DispatchStatus.OUT_FOR_DELIVERY

        slot = await engine.get_resource_state(ResourceKind.RIDER_SLOT, orders[0].id)
        assert slot.state == ResourceState.ASSIGNED
        assert slot.holder_id == RIDER
        assert slot.back_reference_ok is True

    async def test_one_float_across_a_three_order_batch(self, engine):
        orders = await ready_deliveries(engine, BIRYANI, KARAHI, NAAN)
        ids = [o.id for o in orders]

        result = await engine.dispatch_to_rider(ids, RIDER, Decimal("5000.00"), MANAGER)

        assert result.float_allocation == {
            ids[0]: Decimal("1656.83"),
            ids[1]: Decimal("2911.53"),
            ids[2]: Decimal("431.64"),
        }
        assert sum(result.float_allocation.values()) == Decimal("5000.00")
        assert result.liability_added == BIRYANI_TOTAL + KARAHI_TOTAL + NAAN_TOTAL + Decimal("5000.00")
        assert result.liability_added == Decimal("8929.20")
        assert result.cash_in_hand == Decimal("8929.20")

        balance = await engine.get_rider_balance(RIDER)
        assert balance.outstanding_liability == Decimal("8929.20")
        assert balance.ledger_balance == balance.cash_in_hand
        assert await engine.check_consistency() == []

    async def test_omitted_float_uses_the_default(self, engine, settings):
        (order,) = await ready_deliveries(engine, BIRYANI)

        result = await engine.dispatch_to_rider([order.id], RIDER, None, MANAGER)

        assert result.float_allocation == {order.id: settings.default_rider_float}
        assert result.liability_added == BIRYANI_TOTAL + settings.default_rider_float
        stored = await engine.get_order(order.id)
        assert stored.delivery.shift_id is None

    async def test_order_cannot_go_out_twice(self, engine):
        (order,) = await ready_deliveries(engine, BIRYANI)
        await engine.dispatch_to_rider([order.id], RIDER, Decimal("0"), MANAGER)

        with pytest.raises(ResourceConflict):
            await engine.dispatch_to_rider([order.id], OTHER_RIDER, Decimal("0"), MANAGER)

    async def test_batch_is_all_or_nothing(self, engine):
        (ready,) = await ready_deliveries(engine, BIRYANI)
        unfired = await delivery(engine, KARAHI)

        with pytest.raises(InvalidTransition):
            await engine.dispatch_to_rider([ready.id, unfired.id], RIDER, Decimal("500"), MANAGER)

        balance = await engine.get_rider_balance(RIDER)
        assert balance.cash_in_hand == Decimal("0.00")
        assert (await engine.get_order(ready.id)).delivery.rider_id is None

    async def test_only_riders_carry_orders(self, engine):
        (order,) = await ready_deliveries(engine, BIRYANI)
        with pytest.raises(InvalidRequest):
            await engine.dispatch_to_rider([order.id], CASHIER, Decimal("0"), MANAGER)

    async def test_duplicate_and_missing_orders(self, engine):
        (order,) = await ready_deliveries(engine, BIRYANI)
        with pytest.raises(InvalidRequest):
            await engine.dispatch_to_rider([order.id, order.id], RIDER, Decimal("0"), MANAGER)
        with pytest.raises(NotFound):
            await engine.dispatch_to_rider([order.id, 9999], RIDER, Decimal("0"), MANAGER)

    async def test_dispatched_order_is_not_settled_at_the_counter(self, engine):
        (order,) = await ready_deliveries(engine, BIRYANI)
        await engine.dispatch_to_rider([order.id], RIDER, Decimal("0"), MANAGER)

        with pytest.raises(InvalidTransition):
            await engine.settle_order(order.id, CASHIER, PaymentMethod.CASH, order.total)

    async def test_undispatched_delivery_settles_at_the_counter(self, engine):
        (order,) = await ready_deliveries(engine, BIRYANI)
        outcome = await engine.settle_order(order.id, CASHIER, PaymentMethod.ONLINE, order.total)
        assert outcome.order.status == OrderStatus.CLOSED

    async def test_delivered_requires_out_for_delivery(self, engine):
        (order,) = await ready_deliveries(engine, BIRYANI)
        with pytest.raises(InvalidTransition):
            await engine.mark_delivered(order.id, CASHIER)


class TestRiderSettlement:
    async def test_settlement_with_shortage(self, engine):
        ids = await out_and_back(engine)

        result = await engine.settle_rider(RIDER, ids, Decimal("4490.00"), MANAGER, notes="Short by 100")

        settlement = result.settlement
        assert settlement.expected_amount == Decimal("4590.00")
        assert settlement.received_amount == Decimal("4490.00")
        assert settlement.shortage == Decimal("100.00")
        assert result.cash_in_hand == Decimal("100.00")

        for order_id in ids:
            order = await engine.get_order(order_id)
            assert order.status == OrderStatus.CLOSED
            assert order.payment_status == PaymentStatus.PAID
            assert order.delivery.dispatch_status == DispatchStatus.SETTLED
            assert order.delivery.settlement_id == settlement.id
            assert order.transactions[0].rider_settlement_id == settlement.id

        balance = await engine.get_rider_balance(RIDER)
        assert balance.outstanding == []
        assert balance.ledger_balance == balance.cash_in_hand
        assert balance.cash_in_hand == balance.outstanding_liability + balance.total_shortage
        assert await engine.check_consistency() == []

    async def test_partial_selection_leaves_the_rest_outstanding(self, engine):
        first, second = await out_and_back(engine)

        result = await engine.settle_rider(RIDER, [first], Decimal("1664.67"), MANAGER)

        assert result.settlement.shortage == Decimal("0.00")
        balance = await engine.get_rider_balance(RIDER)
        assert [o.order_id for o in balance.outstanding] == [second]
        assert balance.cash_in_hand == Decimal("2925.33")
        assert balance.cash_in_hand == balance.outstanding_liability + balance.total_shortage

    async def test_overage_is_a_negative_shortage(self, engine):
        ids = await out_and_back(engine)
        result = await engine.settle_rider(RIDER, ids, Decimal("4600.00"), MANAGER)

        assert result.settlement.shortage == Decimal("-10.00")
        assert result.cash_in_hand == Decimal("-10.00")
        assert await engine.check_consistency() == []

    async def test_already_settled_orders_are_rejected(self, engine):
        ids = await out_and_back(engine)
        await engine.settle_rider(RIDER, ids, Decimal("4590.00"), MANAGER)

        with pytest.raises(InvalidSettlementSelection):
            await engine.settle_rider(RIDER, ids, Decimal("4590.00"), MANAGER)

    async def test_undelivered_orders_are_rejected(self, engine):
        orders = await ready_deliveries(engine, BIRYANI)
        await engine.dispatch_to_rider([orders[0].id], RIDER, Decimal("0"), MANAGER)

        with pytest.raises(InvalidSettlementSelection):
            await engine.settle_rider(RIDER, [orders[0].id], BIRYANI_TOTAL, MANAGER)

    async def test_other_riders_orders_are_rejected(self, engine):
        ids = await out_and_back(engine)
        with pytest.raises(InvalidSettlementSelection):
            await engine.settle_rider(OTHER_RIDER, ids, Decimal("4590.00"), MANAGER)

    @pytest.mark.parametrize("selection", ["empty", "duplicate", "missing"])
    async def test_bad_selection_writes_nothing(self, engine, selection):
        ids = await out_and_back(engine)
        order_ids = {"empty": [], "duplicate": [ids[0], ids[0]], "missing": [ids[0], 9999]}[selection]

        with pytest.raises(InvalidSettlementSelection):
            await engine.settle_rider(RIDER, order_ids, Decimal("1000.00"), MANAGER)

        balance = await engine.get_rider_balance(RIDER)
        assert balance.cash_in_hand == Decimal("4590.00")
        assert len(balance.outstanding) == 2


class TestShifts:
    async def test_opening_books_the_default_float(self, engine, broadcaster):
        result = await engine.open_shift(RIDER, MANAGER)

        assert result.shift.status == ShiftStatus.OPEN
        assert result.shift.opening_float == Decimal("1000.00")
        assert result.shift.opened_by == MANAGER
        assert result.cash_in_hand == Decimal("1000.00")
        assert len(broadcaster.events_of(RIDER_BALANCE_CHANGED)) == 1

        active = await engine.get_active_shift(RIDER)
        assert active.id == result.shift.id
        assert await engine.get_active_shift(OTHER_RIDER) is None

    async def test_one_open_shift_per_rider(self, engine):
        first = await engine.open_shift(RIDER, MANAGER, Decimal("500.00"))

        with pytest.raises(ResourceConflict) as exc_info:
            await engine.open_shift(RIDER, MANAGER, Decimal("500.00"))

        assert exc_info.value.details["shift_id"] == first.shift.id
        balance = await engine.get_rider_balance(RIDER)
        assert balance.cash_in_hand == Decimal("500.00")

    async def test_only_riders_open_shifts(self, engine):
        with pytest.raises(InvalidRequest):
            await engine.open_shift(CASHIER, MANAGER)

    async def test_negative_float_is_rejected(self, engine):
        with pytest.raises(InvalidRequest):
            await engine.open_shift(RIDER, MANAGER, Decimal("-1"))
        assert await engine.get_active_shift(RIDER) is None

    async def test_dispatch_during_a_shift_adds_no_float(self, engine):
        shift = (await engine.open_shift(RIDER, MANAGER)).shift
        (order,) = await ready_deliveries(engine, BIRYANI)

        result = await engine.dispatch_to_rider([order.id], RIDER, None, MANAGER)

        assert result.float_allocation == {order.id: Decimal("0.00")}
        assert result.cash_in_hand == Decimal("1000.00") + BIRYANI_TOTAL
        stored = await engine.get_order(order.id)
        assert stored.delivery.shift_id == shift.id

    async def test_close_records_the_variance(self, engine):
        shift = (await engine.open_shift(RIDER, MANAGER)).shift
        (order,) = await ready_deliveries(engine, BIRYANI)
        await engine.dispatch_to_rider([order.id], RIDER, None, MANAGER)
        await engine.mark_delivered(order.id, CASHIER)

        result = await engine.close_shift(shift.id, MANAGER, Decimal("900.00"), notes="Lost change")

        closed = result.shift
        assert closed.status == ShiftStatus.CLOSED
        assert closed.closed_by == MANAGER
        assert closed.expected_cash == Decimal("1000.00")
        assert closed.closing_cash_received == Decimal("900.00")
        assert closed.cash_difference == Decimal("-100.00")
        assert result.cash_in_hand == Decimal("1402.00")

        balance = await engine.get_rider_balance(RIDER)
        assert balance.shift_float_due == Decimal("100.00")
        assert balance.cash_in_hand == balance.expected_balance
        assert balance.ledger_balance == balance.cash_in_hand
        assert await engine.get_active_shift(RIDER) is None
        assert await engine.check_consistency() == []

    async def test_unsettled_orders_carry_over(self, engine):
        shift = (await engine.open_shift(RIDER, MANAGER)).shift
        (order,) = await ready_deliveries(engine, BIRYANI)
        await engine.dispatch_to_rider([order.id], RIDER, None, MANAGER)
        await engine.mark_delivered(order.id, CASHIER)
        await engine.close_shift(shift.id, MANAGER, Decimal("1000.00"))

        balance = await engine.get_rider_balance(RIDER)
        assert [o.order_id for o in balance.outstanding] == [order.id]
        assert balance.cash_in_hand == BIRYANI_TOTAL

        await engine.open_shift(RIDER, MANAGER, Decimal("0"))
        result = await engine.settle_rider(RIDER, [order.id], BIRYANI_TOTAL, MANAGER)

        assert result.cash_in_hand == Decimal("0.00")
        assert await engine.check_consistency() == []

    async def test_closing_twice_is_rejected(self, engine):
        shift = (await engine.open_shift(RIDER, MANAGER)).shift
        await engine.close_shift(shift.id, MANAGER, Decimal("1000.00"))

        with pytest.raises(InvalidTransition):
            await engine.close_shift(shift.id, MANAGER, Decimal("1000.00"))

        balance = await engine.get_rider_balance(RIDER)
        assert balance.cash_in_hand == Decimal("0.00")

    async def test_unknown_shift(self, engine):
        with pytest.raises(NotFound):
            await engine.close_shift(404, MANAGER, Decimal("0"))
        with pytest.raises(NotFound):
            await engine.get_shift_summary(404)

    async def test_summary_counts_the_shift_orders(self, engine):
        shift = (await engine.open_shift(RIDER, MANAGER)).shift
        orders = await ready_deliveries(engine, BIRYANI, KARAHI)
        await engine.dispatch_to_rider([o.id for o in orders], RIDER, None, MANAGER)
        await engine.mark_delivered(orders[0].id, CASHIER)

        summary = await engine.get_shift_summary(shift.id)

        assert summary.order_count == 2
        assert summary.out_for_delivery == 1
        assert summary.delivered == 1
        assert summary.settled == 0
        assert summary.sales_total == BIRYANI_TOTAL
        assert summary.outstanding_liability == BIRYANI_TOTAL + KARAHI_TOTAL
