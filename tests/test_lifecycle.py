"""
Tests for the order and line state machines and readiness derivation.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from orderflow.core.exceptions import InvalidRequest, InvalidTransition
from orderflow.models import LineStatus, Order, OrderChannel, OrderLine, OrderStatus
from orderflow.services.broadcast import ORDER_READY
from orderflow.services.lifecycle import (
    SkipTag,
    is_fulfilled,
    refresh_readiness,
    skip_line,
    transition_line,
    transition_order,
)

from tests.helpers import CASHIER, KARAHI, NAAN, WAITER, seat, takeaway

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_line(status=LineStatus.DRAFT, line_id=1):
    return OrderLine(
        id=line_id,
        menu_item_id=1,
        item_name="Chicken Karahi",
        unit_price=Decimal("1800.00"),
        quantity=1,
        line_total=Decimal("1800.00"),
        requires_prep=True,
        status=status,
    )


def make_order(status=OrderStatus.ACTIVE, lines=(), channel=OrderChannel.DINE_IN):
    return Order(id=1, channel=channel, status=status, lines=list(lines))


class TestOrderTransitions:
    def test_ready_is_derived_only(self):
        order = make_order()
        with pytest.raises(InvalidTransition):
            transition_order(order, OrderStatus.READY)

    def test_active_cannot_close_directly(self):
        order = make_order()
        with pytest.raises(InvalidTransition):
            transition_order(order, OrderStatus.CLOSED)

    @pytest.mark.parametrize("status", [OrderStatus.CANCELLED, OrderStatus.VOIDED])
    def test_terminal_statuses_are_final(self, status):
        order = make_order(status=status)
        for target in OrderStatus:
            with pytest.raises(InvalidTransition):
                transition_order(order, target)

    def test_closed_can_only_be_voided(self):
        order = make_order(status=OrderStatus.CLOSED)
        transition_order(order, OrderStatus.VOIDED)
        assert order.status == OrderStatus.VOIDED


class TestLineTransitions:
    def test_draft_leaves_only_through_fire(self):
        line = make_line()
        with pytest.raises(InvalidTransition):
            transition_line(line, LineStatus.PENDING, OrderChannel.DINE_IN, NOW)

        transition_line(line, LineStatus.PENDING, OrderChannel.DINE_IN, NOW, via_fire=True)
        assert line.status == LineStatus.PENDING
        assert line.fired_at == NOW

    def test_cannot_jump_from_pending_to_done(self):
        line = make_line(LineStatus.PENDING)
        with pytest.raises(InvalidTransition):
            transition_line(line, LineStatus.DONE, OrderChannel.DINE_IN, NOW)

    def test_served_is_dine_in_only(self):
        line = make_line(LineStatus.DONE)
        with pytest.raises(InvalidTransition):
            transition_line(line, LineStatus.SERVED, OrderChannel.TAKEAWAY, NOW)

        transition_line(line, LineStatus.SERVED, OrderChannel.DINE_IN, NOW)
        assert line.status == LineStatus.SERVED

    def test_skipped_is_not_a_plain_transition(self):
        line = make_line(LineStatus.PENDING)
        with pytest.raises(InvalidTransition):
            transition_line(line, LineStatus.SKIPPED, OrderChannel.DINE_IN, NOW)

    def test_done_sets_completed_at(self):
        line = make_line(LineStatus.PREPARING)
        transition_line(line, LineStatus.DONE, OrderChannel.DINE_IN, NOW)
        assert line.completed_at == NOW


class TestSkip:
    def test_skip_records_actor_and_reason(self):
        line = make_line(LineStatus.PREPARING)
        skip_line(line, SkipTag(actor_id=CASHIER, reason="  guest left  "), NOW)

        assert line.status == LineStatus.SKIPPED
        assert line.skipped_by == CASHIER
        assert line.skip_reason == "guest left"
        assert line.skipped_at == NOW

    @pytest.mark.parametrize("actor, reason", [(None, "guest left"), (CASHIER, ""), (CASHIER, "   ")])
    def test_tag_requires_actor_and_reason(self, actor, reason):
        with pytest.raises(InvalidRequest):
            SkipTag(actor_id=actor, reason=reason)

    def test_terminal_line_cannot_be_skipped(self):
        line = make_line(LineStatus.DONE)
        with pytest.raises(InvalidTransition):
            skip_line(line, SkipTag(actor_id=CASHIER, reason="late"), NOW)


class TestReadiness:
    def test_empty_order_is_not_fulfilled(self):
        assert is_fulfilled([]) is False

    def test_advances_when_every_line_is_terminal(self):
        order = make_order(lines=[
            make_line(LineStatus.DONE, 1),
            make_line(LineStatus.SERVED, 2),
            make_line(LineStatus.SKIPPED, 3),
        ])

        assert refresh_readiness(order, NOW) is True
        assert order.status == OrderStatus.READY
        assert order.ready_at == NOW

    def test_is_idempotent(self):
        order = make_order(lines=[make_line(LineStatus.DONE)])
        refresh_readiness(order, NOW)

        assert refresh_readiness(order, NOW) is False
        assert order.status == OrderStatus.READY

    def test_does_not_advance_with_open_lines(self):
        order = make_order(lines=[make_line(LineStatus.DONE, 1), make_line(LineStatus.PREPARING, 2)])
        assert refresh_readiness(order, NOW) is False
        assert order.status == OrderStatus.ACTIVE


class TestKitchenBumps:
    async def test_bump_order_does_not_matter(self, engine, broadcaster, tables):
        order = await seat(engine, tables[0].id, KARAHI, NAAN)
        fired = await engine.fire_order(order.id, staff_id=WAITER)
        first, second = [line.id for line in fired.sent_to_kitchen]

        await engine.mark_line_status(order.id, second, LineStatus.PREPARING)
        await engine.mark_line_status(order.id, second, LineStatus.DONE)
        await engine.mark_line_status(order.id, first, LineStatus.PREPARING)
        order = await engine.mark_line_status(order.id, first, LineStatus.DONE)

        assert order.status == OrderStatus.READY
        assert len(broadcaster.events_of(ORDER_READY)) == 1

    async def test_served_after_ready_keeps_order_ready(self, engine, tables):
        order = await seat(engine, tables[0].id, KARAHI)
        fired = await engine.fire_order(order.id, staff_id=WAITER)
        line_id = fired.sent_to_kitchen[0].id
        await engine.mark_line_status(order.id, line_id, LineStatus.PREPARING)
        await engine.mark_line_status(order.id, line_id, LineStatus.DONE)

        order = await engine.mark_line_status(order.id, line_id, LineStatus.SERVED, staff_id=WAITER)

        assert order.status == OrderStatus.READY
        assert order.lines[0].status == LineStatus.SERVED

    async def test_pending_cannot_be_requested(self, engine):
        order = await takeaway(engine, KARAHI)
        with pytest.raises(InvalidTransition):
            await engine.mark_line_status(order.id, order.lines[0].id, LineStatus.PENDING)

    async def test_reevaluate_is_a_no_op_on_ready_orders(self, engine):
        order = await takeaway(engine, KARAHI)
        fired = await engine.fire_order(order.id, staff_id=CASHIER)
        line_id = fired.sent_to_kitchen[0].id
        await engine.mark_line_status(order.id, line_id, LineStatus.PREPARING)
        await engine.mark_line_status(order.id, line_id, LineStatus.DONE)

        assert await engine.reevaluate_readiness(order.id) is False
        assert (await engine.get_order(order.id)).status == OrderStatus.READY
