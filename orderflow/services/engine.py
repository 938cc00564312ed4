"""
Order Engine

Single entry point for every order operation. Each mutating call runs in
one database transaction: rows that are read and then written are locked,
typed failures roll everything back, and events are published only after
the commit succeeds.

Usage:
    from orderflow.services.engine import get_order_engine

    engine = get_order_engine()
    order = await engine.create_order(OrderChannel.DINE_IN, staff_id=3,
                                      opening=OrderOpening(table_id=4, guest_count=2))
    await engine.fire_order(order.id, staff_id=3)

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from functools import lru_cache
from typing import AsyncIterator, Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.config import Settings, get_settings
from orderflow.core.exceptions import (
    AuthorizationRequired,
    InvalidRequest,
    InvalidTransition,
    NotFound,
)
from orderflow.database import get_session_maker
from orderflow.models import (
    DiningTable,
    LineStatus,
    Order,
    OrderChannel,
    OrderLine,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    RiderShift,
    TransactionKind,
)
from orderflow.services.broadcast import BaseBroadcastService, EngineEvent, get_broadcast_service
from orderflow.services.broadcast.base import ORDER_READY
from orderflow.services.catalog import BaseCatalogService, get_catalog_service
from orderflow.services.channels import BaseChannelHandler, OrderOpening, get_channel_handler
from orderflow.services.firing import FireResult, fire_order
from orderflow.services.invariants import InvariantViolation, check_invariants
from orderflow.services.lifecycle import (
    LIVE_ORDER_STATUSES,
    REQUESTABLE_LINE_TARGETS,
    refresh_readiness,
    transition_line,
    transition_order,
)
from orderflow.services.locking import lock_one
from orderflow.services.pricing import ZERO, NewLine, apply_totals, money, snapshot_line
from orderflow.services.resources import ResourceKind, ResourceLock, ResourceRef, ResourceSnapshot
from orderflow.services.rider_ledger import (
    DispatchResult,
    RiderBalance,
    RiderLedger,
    RiderSettlementResult,
    ShiftResult,
    ShiftSummary,
)
from orderflow.services.settlement import SettlementOutcome, SettlementOverride, settle_order
from orderflow.services.staff import BaseStaffDirectory, StaffIdentity, get_staff_directory
from orderflow.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class OrderEngine:
    """Transaction boundaries and collaborators for the order lifecycle."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        catalog: Optional[BaseCatalogService] = None,
        staff: Optional[BaseStaffDirectory] = None,
        broadcaster: Optional[BaseBroadcastService] = None,
    ):
        self.sessions = session_maker
        self.settings = settings or get_settings()
        self.catalog = catalog or get_catalog_service()
        self.staff = staff or get_staff_directory()
        self.broadcaster = broadcaster or get_broadcast_service()
        self.resources = ResourceLock()
        self.ledger = RiderLedger(self.resources)

    # =========================================================================
    # PLUMBING
    # =========================================================================

    @asynccontextmanager
    async def _transaction(self, staff_id: Optional[int] = None) -> AsyncIterator[UnitOfWork]:
        """One transaction per operation; events go out only after commit."""
        async with self.sessions() as session:
            async with session.begin():
                uow = UnitOfWork(session=session, settings=self.settings, staff_id=staff_id)
                yield uow
        await self._publish(uow.events)

    async def _publish(self, events: list[EngineEvent]) -> None:
        for event in events:
            try:
                result = await self.broadcaster.publish(event)
            except Exception:
                # Already committed
                logger.exception(f"Broadcast of {event.event_type} raised")
                continue
            if not result.success:
                logger.warning(f"Broadcast of {event.event_type} failed: {result.error_message}")

    def _handler(self, channel: OrderChannel) -> BaseChannelHandler:
        return get_channel_handler(channel, self.resources)

    async def _lock_order(self, session: AsyncSession, order_id: int) -> Order:
        order = await lock_one(session, select(Order).where(Order.id == order_id))
        if order is None:
            raise NotFound(f"Order #{order_id} does not exist", details={"order_id": order_id})
        return order

    async def _lock_orders(self, session: AsyncSession, order_ids: Iterable[int]) -> list[Order]:
        """Lock several orders in ascending id order."""
        orders = []
        for order_id in sorted(set(order_ids)):
            order = await lock_one(session, select(Order).where(Order.id == order_id))
            if order is not None:
                orders.append(order)
        return orders

    async def _staff(self, session: AsyncSession, staff_id: Optional[int]) -> Optional[StaffIdentity]:
        if staff_id is None:
            return None
        return await self.staff.get_staff(staff_id, session)

    async def _priced_line(self, session: AsyncSession, requested) -> OrderLine:
        item = await self.catalog.get_item(requested.menu_item_id, session)
        if item is None:
            raise InvalidRequest(
                f"Menu item {requested.menu_item_id} does not exist",
                details={"menu_item_id": requested.menu_item_id},
            )
        return snapshot_line(item, requested.quantity, requested.notes)

    @staticmethod
    def _ensure_active(order: Order, action: str) -> None:
        if order.status != OrderStatus.ACTIVE:
            raise InvalidTransition(
                f"Cannot {action} on order #{order.id}: it is {order.status.value}",
                details={"order_id": order.id, "status": order.status.value},
            )

    # =========================================================================
    # ORDER CREATION AND EDITING
    # =========================================================================

    async def create_order(
        self,
        channel: OrderChannel,
        staff_id: int,
        opening: Optional[OrderOpening] = None,
        lines: Sequence[NewLine] = (),
    ) -> Order:
        """
        Create an order with its channel extension, resource and initial lines.

        Args:
            channel: DINE_IN, TAKEAWAY or DELIVERY
            staff_id: Staff member creating the order
            opening: Table, guests, customer and address details
            lines: Items to add as DRAFT lines

        Returns:
            The new ACTIVE order

        Raises:
            ResourceConflict: table already occupied or awaiting cleaning
        """
        channel = OrderChannel(channel)
        opening = opening or OrderOpening()
        handler = self._handler(channel)

        async with self._transaction(staff_id) as uow:
            order = Order(
                channel=channel,
                status=OrderStatus.ACTIVE,
                payment_status=PaymentStatus.UNPAID,
                customer_name=opening.customer_name,
                customer_phone=opening.customer_phone,
                created_by=staff_id,
                created_at=uow.now,
                lines=[],
                transactions=[],
                dine_in=None,
                takeaway=None,
                delivery=None,
            )
            uow.session.add(order)
            await uow.session.flush()

            await handler.open(uow, order, opening)
            for requested in lines:
                order.lines.append(await self._priced_line(uow.session, requested))
            apply_totals(order, self.settings)
            order.touch(staff_id, f"Created {channel.value} order")

            await uow.session.flush()
            uow.audit("ORDER_CREATED", "order", order.id, {
                "channel": channel.value,
                "table_id": order.table_id,
                "line_count": len(order.lines),
            })

        logger.info(f"Order #{order.id} created ({channel.value}, {len(order.lines)} line(s))")
        return order

    async def add_line(
        self,
        order_id: int,
        staff_id: int,
        menu_item_id: int,
        quantity: int = 1,
        notes: Optional[str] = None,
    ) -> Order:
        """Add a DRAFT line with a fresh pricing snapshot."""
        async with self._transaction(staff_id) as uow:
            order = await self._lock_order(uow.session, order_id)
            self._ensure_active(order, "add items")

            line = await self._priced_line(uow.session, NewLine(menu_item_id, quantity, notes))
            order.lines.append(line)
            apply_totals(order, self.settings)
            order.touch(staff_id, f"Added {quantity}x {line.item_name}")
            await uow.session.flush()

            uow.audit("LINE_ADDED", "order", order.id, {
                "line_id": line.id,
                "menu_item_id": menu_item_id,
                "quantity": quantity,
                "unit_price": str(line.unit_price),
            })

        logger.info(f"Order #{order_id}: added {quantity}x {line.item_name}")
        return order

    async def remove_line(self, order_id: int, line_id: int, staff_id: int) -> Order:
        """Remove a line that has not been fired."""
        async with self._transaction(staff_id) as uow:
            order = await self._lock_order(uow.session, order_id)
            self._ensure_active(order, "remove items")

            line = next((candidate for candidate in order.lines if candidate.id == line_id), None)
            if line is None:
                raise NotFound(
                    f"Line {line_id} is not on order #{order_id}",
                    details={"order_id": order_id, "line_id": line_id},
                )
            if line.status != LineStatus.DRAFT:
                raise InvalidTransition(
                    f"{line.item_name} was already sent to the kitchen and cannot be removed",
                    details={"line_id": line_id, "status": line.status.value},
                )

            order.lines.remove(line)
            apply_totals(order, self.settings)
            order.touch(staff_id, f"Removed {line.item_name}")
            uow.audit("LINE_REMOVED", "order", order.id, {"line_id": line_id, "item_name": line.item_name})

            if refresh_readiness(order, uow.now):
                uow.emit(ORDER_READY, {"order_id": order.id, "channel": order.channel.value})

        return order

    async def update_delivery_details(
        self,
        order_id: int,
        staff_id: int,
        delivery_address: Optional[str] = None,
        delivery_instructions: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> Order:
        """Fill in or correct delivery details until a rider takes the order."""
        async with self._transaction(staff_id) as uow:
            order = await self._lock_order(uow.session, order_id)
            if order.channel != OrderChannel.DELIVERY or order.delivery is None:
                raise InvalidRequest(f"Order #{order_id} is not a delivery order", details={"order_id": order_id})
            if order.status not in LIVE_ORDER_STATUSES or order.delivery.rider_id is not None:
                raise InvalidTransition(
                    f"Delivery details of order #{order_id} can no longer change",
                    details={"order_id": order_id, "status": order.status.value},
                )

            if delivery_address is not None:
                order.delivery.delivery_address = delivery_address.strip() or None
            if delivery_instructions is not None:
                order.delivery.delivery_instructions = delivery_instructions
            if customer_name is not None:
                order.customer_name = customer_name
            if customer_phone is not None:
                order.customer_phone = customer_phone
            order.touch(staff_id, "Updated delivery details")

        return order

    # =========================================================================
    # KITCHEN
    # =========================================================================

    async def fire_order(self, order_id: int, staff_id: int) -> FireResult:
        """Send held lines to production."""
        async with self._transaction(staff_id) as uow:
            order = await self._lock_order(uow.session, order_id)
            result = await fire_order(uow, order, self._handler(order.channel))
        return result

    async def mark_line_status(
        self,
        order_id: int,
        line_id: int,
        status: LineStatus,
        staff_id: Optional[int] = None,
    ) -> Order:
        """
        Move a line along the kitchen workflow (PREPARING, DONE, SERVED).

        Readiness is recomputed from all lines after every change.
        """
        status = LineStatus(status)
        async with self._transaction(staff_id) as uow:
            order = await self._lock_order(uow.session, order_id)
            if order.status not in LIVE_ORDER_STATUSES:
                raise InvalidTransition(
                    f"Order #{order_id} is {order.status.value}; its lines can no longer change",
                    details={"order_id": order_id, "status": order.status.value},
                )
            if status not in REQUESTABLE_LINE_TARGETS:
                raise InvalidTransition(
                    f"Lines cannot be set to {status.value} directly",
                    details={"line_id": line_id, "to": status.value},
                )

            line = next((candidate for candidate in order.lines if candidate.id == line_id), None)
            if line is None:
                raise NotFound(
                    f"Line {line_id} is not on order #{order_id}",
                    details={"order_id": order_id, "line_id": line_id},
                )

            previous = line.status
            transition_line(line, status, order.channel, uow.now)
            if refresh_readiness(order, uow.now):
                uow.emit(ORDER_READY, {"order_id": order.id, "channel": order.channel.value})

        logger.info(f"Order #{order_id} line {line_id}: {previous.value} -> {status.value}")
        return order

    async def reevaluate_readiness(self, order_id: int) -> bool:
        """Recompute readiness for an order. Returns True if it just became READY."""
        async with self._transaction() as uow:
            order = await self._lock_order(uow.session, order_id)
            advanced = refresh_readiness(order, uow.now)
            if advanced:
                uow.emit(ORDER_READY, {"order_id": order.id, "channel": order.channel.value})
        return advanced

    # =========================================================================
    # SETTLEMENT, CANCEL, VOID
    # =========================================================================

    async def settle_order(
        self,
        order_id: int,
        staff_id: int,
        payment_method: PaymentMethod,
        amount: Decimal,
        override: Optional[SettlementOverride] = None,
    ) -> SettlementOutcome:
        """Settle an order, or return DecisionRequired without writing anything."""
        async with self._transaction(staff_id) as uow:
            order = await self._lock_order(uow.session, order_id)
            actor = await self._staff(uow.session, staff_id)
            approver = await self._staff(uow.session, override.authorized_by) if override else None
            outcome = await settle_order(
                uow,
                order,
                self._handler(order.channel),
                method=PaymentMethod(payment_method),
                amount=amount,
                actor=actor,
                approver=approver,
                override=override,
            )
        return outcome

    async def cancel_order(self, order_id: int, staff_id: int, reason: Optional[str] = None) -> Order:
        """
        Cancel an ACTIVE order and free its resource.

        A reason is required once anything has gone to the kitchen.
        """
        async with self._transaction(staff_id) as uow:
            order = await self._lock_order(uow.session, order_id)
            reason = (reason or "").strip() or None
            if order.status == OrderStatus.ACTIVE and order.fired_at is not None and reason is None:
                raise InvalidRequest(
                    f"Order #{order_id} was already fired; give a reason to cancel it",
                    details={"order_id": order_id},
                )

            transition_order(order, OrderStatus.CANCELLED)
            order.cancelled_at = uow.now
            order.cancelled_by = staff_id
            order.cancellation_reason = reason
            order.touch(staff_id, "Cancelled")

            await self._handler(order.channel).on_cancelled(uow, order)
            uow.audit("ORDER_CANCELLED", "order", order.id, {
                "reason": reason,
                "fired": order.fired_at is not None,
            })

        logger.info(f"Order #{order_id} cancelled by staff {staff_id}")
        return order

    async def void_order(
        self,
        order_id: int,
        staff_id: int,
        reason: str,
        authorized_by: Optional[int] = None,
    ) -> Order:
        """Void a CLOSED order and record the refund. Manager or admin only."""
        async with self._transaction(staff_id) as uow:
            order = await self._lock_order(uow.session, order_id)

            authority = await self._staff(uow.session, authorized_by or staff_id)
            if authority is None or not authority.is_elevated:
                raise AuthorizationRequired(
                    f"Voiding order #{order_id} needs a manager",
                    details={"order_id": order_id, "role": authority.role.value if authority else None},
                )
            reason = (reason or "").strip()
            if not reason:
                raise InvalidRequest("A reason is required to void an order", details={"order_id": order_id})

            transition_order(order, OrderStatus.VOIDED)

            paid = sum(
                (money(tx.amount) for tx in order.transactions if tx.kind == TransactionKind.PAYMENT), ZERO
            ) - sum((money(tx.amount) for tx in order.transactions if tx.kind == TransactionKind.REFUND), ZERO)
            if paid > 0:
                original = next(tx for tx in order.transactions if tx.kind == TransactionKind.PAYMENT)
                order.transactions.append(PaymentTransaction(
                    kind=TransactionKind.REFUND,
                    method=original.method,
                    amount=money(paid),
                    amount_tendered=money(paid),
                    change_due=ZERO,
                    processed_by=staff_id,
                    notes=reason,
                    created_at=uow.now,
                ))

            order.payment_status = PaymentStatus.REFUNDED
            order.voided_at = uow.now
            order.voided_by = authority.id
            order.void_reason = reason
            order.touch(staff_id, "Voided")

            uow.audit("ORDER_VOIDED", "order", order.id, {
                "reason": reason,
                "authorized_by": authority.id,
                "refunded": str(money(paid)),
            })

        logger.warning(f"Order #{order_id} voided by {authority.id}: {reason}")
        return order

    # =========================================================================
    # DELIVERY AND RIDERS
    # =========================================================================

    async def dispatch_to_rider(
        self,
        order_ids: Sequence[int],
        rider_id: int,
        float_given: Optional[Decimal],
        staff_id: int,
    ) -> DispatchResult:
        """Hand a batch of READY delivery orders and a cash float to a rider."""
        if len(set(order_ids)) != len(order_ids):
            raise InvalidRequest("An order appears twice in the dispatch batch")

        async with self._transaction(staff_id) as uow:
            orders = await self._lock_orders(uow.session, order_ids)
            missing = sorted(set(order_ids) - {order.id for order in orders})
            if missing:
                raise NotFound(f"Orders not found: {missing}", details={"order_ids": missing})

            rider = await self._staff(uow.session, rider_id)
            result = await self.ledger.dispatch(uow, rider, orders, float_given)
        return result

    async def mark_delivered(self, order_id: int, staff_id: int) -> Order:
        async with self._transaction(staff_id) as uow:
            order = await self._lock_order(uow.session, order_id)
            await self.ledger.mark_delivered(uow, order)
        return order

    async def settle_rider(
        self,
        rider_id: int,
        order_ids: Sequence[int],
        received: Decimal,
        staff_id: int,
        notes: Optional[str] = None,
    ) -> RiderSettlementResult:
        """Close an explicit selection of a rider's delivered orders against the cash handed in."""
        async with self._transaction(staff_id) as uow:
            orders = await self._lock_orders(uow.session, order_ids)
            result = await self.ledger.settle(uow, rider_id, list(order_ids), orders, money(received), notes)
        return result

    async def get_rider_balance(self, rider_id: int) -> RiderBalance:
        async with self.sessions() as session:
            return await self.ledger.balance(session, rider_id)

    async def open_shift(
        self,
        rider_id: int,
        staff_id: int,
        opening_float: Optional[Decimal] = None,
        notes: Optional[str] = None,
    ) -> ShiftResult:
        """Start a rider's shift and book its opening float."""
        async with self._transaction(staff_id) as uow:
            rider = await self._staff(uow.session, rider_id)
            result = await self.ledger.open_shift(uow, rider, opening_float, notes)
        return result

    async def close_shift(
        self,
        shift_id: int,
        staff_id: int,
        closing_cash: Decimal,
        notes: Optional[str] = None,
    ) -> ShiftResult:
        """Close a shift against the cash returned for its float."""
        async with self._transaction(staff_id) as uow:
            result = await self.ledger.close_shift(uow, shift_id, closing_cash, notes)
        return result

    async def get_active_shift(self, rider_id: int) -> Optional[RiderShift]:
        async with self.sessions() as session:
            return await self.ledger.active_shift(session, rider_id)

    async def get_shift_summary(self, shift_id: int) -> ShiftSummary:
        async with self.sessions() as session:
            return await self.ledger.shift_summary(session, shift_id)

    # =========================================================================
    # RESOURCES
    # =========================================================================

    async def get_resource_state(self, kind: ResourceKind, resource_id: int) -> ResourceSnapshot:
        async with self.sessions() as session:
            return await self.resources.get_state(session, ResourceRef(ResourceKind(kind), resource_id))

    async def mark_table_cleaned(self, table_id: int, staff_id: int) -> DiningTable:
        async with self._transaction(staff_id) as uow:
            table = await self.resources.mark_cleaned(uow, table_id)
        return table

    async def create_table(self, name: str, capacity: int = 4) -> DiningTable:
        """Add a table to the floor plan."""
        if capacity < 1:
            raise InvalidRequest("Table capacity must be at least 1")
        async with self._transaction() as uow:
            exists = (
                await uow.session.execute(select(DiningTable.id).where(DiningTable.name == name))
            ).scalar_one_or_none()
            if exists is not None:
                raise InvalidRequest(f"Table {name} already exists", details={"table_id": exists})
            table = DiningTable(name=name, capacity=capacity, updated_at=uow.now)
            uow.session.add(table)
            await uow.session.flush()
        logger.info(f"Table {name} added (capacity {capacity})")
        return table

    async def list_tables(self) -> list[DiningTable]:
        async with self.sessions() as session:
            return list((await session.execute(select(DiningTable).order_by(DiningTable.id))).scalars().all())

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order(self, order_id: int) -> Order:
        async with self.sessions() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise NotFound(f"Order #{order_id} does not exist", details={"order_id": order_id})
            return order

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        channel: Optional[OrderChannel] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Order]:
        stmt = select(Order).order_by(Order.id.desc()).limit(limit).offset(offset)
        if status is not None:
            stmt = stmt.where(Order.status == OrderStatus(status))
        if channel is not None:
            stmt = stmt.where(Order.channel == OrderChannel(channel))
        async with self.sessions() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def check_consistency(self) -> list[InvariantViolation]:
        async with self.sessions() as session:
            return await check_invariants(session)


@lru_cache()
def get_order_engine() -> OrderEngine:
    """Process-wide engine wired to the configured collaborators."""
    return OrderEngine(
        session_maker=get_session_maker(),
        settings=get_settings(),
        catalog=get_catalog_service(),
        staff=get_staff_directory(),
        broadcaster=get_broadcast_service(),
    )
