"""
Rider Cash Ledger

A rider leaves with orders to collect on plus a float of change. Each
dispatch books a liability (order total + float share) on the rider; each
settlement books the cash actually handed in. A shift books its opening
float when it opens and the cash returned for it when it closes. Closing
a shift does not clear order liabilities; those carry over into the next
shift until a settlement selects them. Ledger entries are append-only and
the materialised balance on RiderAccount only moves while its row is
locked in the same transaction as the entry.

Balance identity:
    cash_in_hand == sum(ledger entries)
                 == sum(outstanding liabilities) + sum(settlement shortages)
                    + sum(shift floats) - sum(shift closing cash)

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import (
    InvalidRequest,
    InvalidSettlementSelection,
    InvalidTransition,
    NotFound,
    ResourceConflict,
)
from orderflow.models import (
    DeliveryOrder,
    DispatchStatus,
    LedgerEntryKind,
    Order,
    OrderChannel,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    RiderAccount,
    RiderLedgerEntry,
    RiderSettlement,
    RiderShift,
    ShiftStatus,
    StaffRole,
    TransactionKind,
)
from orderflow.services.broadcast.base import ORDER_CLOSED, RIDER_BALANCE_CHANGED
from orderflow.services.lifecycle import transition_order
from orderflow.services.locking import lock_one, lock_or_create
from orderflow.services.pricing import ZERO, money
from orderflow.services.resources import BOUND_DISPATCH_STATUSES, ResourceLock, ResourceRef
from orderflow.services.staff.base import StaffIdentity
from orderflow.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class DispatchResult:
    rider_id: int
    orders: list[Order]
    float_allocation: dict[int, Decimal]
    liability_added: Decimal
    cash_in_hand: Decimal


@dataclass
class RiderSettlementResult:
    settlement: RiderSettlement
    orders: list[Order]
    cash_in_hand: Decimal


@dataclass
class ShiftResult:
    shift: RiderShift
    cash_in_hand: Decimal


@dataclass
class ShiftSummary:
    """Counts and money for the orders a rider carried during one shift."""
    shift: RiderShift
    order_count: int
    out_for_delivery: int
    delivered: int
    settled: int
    sales_total: Decimal
    outstanding_liability: Decimal


@dataclass
class OutstandingOrder:
    order_id: int
    total: Decimal
    float_given: Decimal
    dispatch_status: DispatchStatus

    @property
    def liability(self) -> Decimal:
        return money(self.total + self.float_given)


@dataclass
class RiderBalance:
    rider_id: int
    cash_in_hand: Decimal
    ledger_balance: Decimal
    outstanding: list[OutstandingOrder] = field(default_factory=list)
    total_shortage: Decimal = ZERO
    shift_float_due: Decimal = ZERO  # Shift floats minus cash returned at shift close

    @property
    def outstanding_liability(self) -> Decimal:
        return money(sum((o.liability for o in self.outstanding), ZERO))

    @property
    def expected_balance(self) -> Decimal:
        """What the ledger should sum to given outstanding orders, shortages and shift floats."""
        return money(self.outstanding_liability + self.total_shortage + self.shift_float_due)


# =============================================================================
# FLOAT ALLOCATION
# =============================================================================

def allocate_float(totals: Sequence[Decimal], float_given: Decimal) -> list[Decimal]:
    """
    Split the float across a batch in proportion to order totals.

    Each share is rounded to cents and the last order takes the remainder,
    so the shares always add up to exactly ``float_given``. A batch of
    zero-value orders splits evenly.

    >>> allocate_float([Decimal("2500"), Decimal("3200"), Decimal("1800")], Decimal("5000"))
    [Decimal('1666.67'), Decimal('2133.33'), Decimal('1200.00')]
    """
    float_given = money(float_given)
    if not totals:
        return []

    grand_total = sum(totals, ZERO)
    shares = []
    for value in totals[:-1]:
        if grand_total > 0:
            shares.append(money(float_given * value / grand_total))
        else:
            shares.append(money(float_given / len(totals)))
    shares.append(money(float_given - sum(shares, ZERO)))
    return shares


# =============================================================================
# LEDGER
# =============================================================================

class RiderLedger:
    """Dispatch, delivery and cash settlement for riders."""

    def __init__(self, resources: ResourceLock):
        self.resources = resources

    @staticmethod
    def _account_stmt(rider_id: int):
        return select(RiderAccount).where(RiderAccount.rider_id == rider_id)

    @staticmethod
    async def _open_shift_for(session: AsyncSession, rider_id: int) -> Optional[RiderShift]:
        return (
            await session.execute(
                select(RiderShift).where(RiderShift.rider_id == rider_id, RiderShift.status == ShiftStatus.OPEN)
            )
        ).scalar_one_or_none()

    def _post(
        self,
        uow: UnitOfWork,
        account: RiderAccount,
        kind: LedgerEntryKind,
        amount: Decimal,
        order_id: Optional[int] = None,
        settlement_id: Optional[int] = None,
        shift_id: Optional[int] = None,
    ) -> RiderLedgerEntry:
        """Append a ledger entry and move the locked balance by the same amount."""
        entry = RiderLedgerEntry(
            rider_id=account.rider_id,
            kind=kind,
            amount=money(amount),
            order_id=order_id,
            settlement_id=settlement_id,
            shift_id=shift_id,
            created_by=uow.staff_id,
            created_at=uow.now,
        )
        uow.session.add(entry)
        account.cash_in_hand = money(money(account.cash_in_hand) + entry.amount)
        account.updated_at = uow.now
        return entry

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def dispatch(
        self,
        uow: UnitOfWork,
        rider: Optional[StaffIdentity],
        orders: list[Order],
        float_given: Optional[Decimal] = None,
    ) -> DispatchResult:
        """
        Hand a batch of READY delivery orders to a rider. All or nothing.

        Args:
            uow: Open unit of work
            rider: Directory entry for the rider
            orders: Orders loaded FOR UPDATE, ascending id
            float_given: Change float handed to the rider for the whole batch.
                When omitted, a rider on an open shift gets none (the shift
                float covers change) and anyone else gets default_rider_float.

        Raises:
            InvalidRequest: unknown or inactive rider, empty batch, negative float
            InvalidTransition: an order is not a READY delivery order
            ResourceConflict: an order already has a rider
        """
        if rider is None or not rider.active or rider.role != StaffRole.RIDER:
            raise InvalidRequest(
                "Orders can only be dispatched to an active rider",
                details={"rider_id": rider.id if rider else None},
            )
        if not orders:
            raise InvalidRequest("Select at least one order to dispatch")
        if float_given is not None and money(float_given) < 0:
            raise InvalidRequest("Float cannot be negative", details={"float_given": str(money(float_given))})

        for order in orders:
            if order.channel != OrderChannel.DELIVERY:
                raise InvalidTransition(
                    f"Order #{order.id} is not a delivery order",
                    details={"order_id": order.id, "channel": order.channel.value},
                )
            if order.status != OrderStatus.READY:
                raise InvalidTransition(
                    f"Order #{order.id} is {order.status.value}; only READY orders can be dispatched",
                    details={"order_id": order.id, "status": order.status.value},
                )

        account = await lock_or_create(
            uow.session,
            self._account_stmt(rider.id),
            lambda: RiderAccount(rider_id=rider.id, cash_in_hand=ZERO, created_at=uow.now),
        )
        shift = await self._open_shift_for(uow.session, rider.id)
        if float_given is None:
            float_given = ZERO if shift is not None else uow.settings.default_rider_float
        float_given = money(float_given)
        shift_id = shift.id if shift is not None else None

        shares = allocate_float([money(order.total) for order in orders], float_given)
        allocation = {}
        added = ZERO
        for order, share in zip(orders, shares):
            await self.resources.acquire(uow, ResourceRef.rider_slot(order.id), order.id, holder_id=rider.id)
            order.delivery.float_given = share
            order.delivery.shift_id = shift_id
            liability = money(money(order.total) + share)
            self._post(uow, account, LedgerEntryKind.DISPATCH, liability, order_id=order.id, shift_id=shift_id)
            order.touch(uow.staff_id, f"Dispatched with rider {rider.name}")
            allocation[order.id] = share
            added += liability

        uow.audit("RIDER_DISPATCH", "rider", rider.id, {
            "order_ids": [order.id for order in orders],
            "float_given": str(float_given),
            "shift_id": shift_id,
            "allocation": {str(k): str(v) for k, v in allocation.items()},
            "liability_added": str(added),
        })
        uow.emit(RIDER_BALANCE_CHANGED, {"rider_id": rider.id, "cash_in_hand": str(account.cash_in_hand)})

        logger.info(
            f"Dispatched {len(orders)} order(s) to rider {rider.id}: "
            f"liability +{added}, cash in hand {account.cash_in_hand}"
        )
        return DispatchResult(
            rider_id=rider.id,
            orders=orders,
            float_allocation=allocation,
            liability_added=money(added),
            cash_in_hand=money(account.cash_in_hand),
        )

    async def mark_delivered(self, uow: UnitOfWork, order: Order) -> Order:
        """OUT_FOR_DELIVERY -> DELIVERED."""
        delivery = order.delivery
        if delivery is None or delivery.dispatch_status != DispatchStatus.OUT_FOR_DELIVERY:
            current = delivery.dispatch_status.value if delivery else None
            raise InvalidTransition(
                f"Order #{order.id} is not out for delivery",
                details={"order_id": order.id, "dispatch_status": current},
            )
        delivery.dispatch_status = DispatchStatus.DELIVERED
        delivery.delivered_at = uow.now
        order.touch(uow.staff_id, "Delivered")
        uow.audit("ORDER_DELIVERED", "order", order.id, {"rider_id": delivery.rider_id})
        logger.info(f"Order #{order.id} delivered by rider {delivery.rider_id}")
        return order

    # =========================================================================
    # SETTLEMENT
    # =========================================================================

    async def settle(
        self,
        uow: UnitOfWork,
        rider_id: int,
        order_ids: Sequence[int],
        orders: list[Order],
        received: Decimal,
        notes: Optional[str] = None,
    ) -> RiderSettlementResult:
        """
        Settle an explicit selection of a rider's delivered orders.

        Args:
            uow: Open unit of work
            rider_id: Rider handing in cash
            order_ids: Selection exactly as requested (checked for duplicates)
            orders: The selected orders loaded FOR UPDATE, ascending id
            received: Cash handed in
            notes: Free text for the record

        Raises:
            InvalidSettlementSelection: empty, duplicate, unknown, foreign,
                undelivered or already-settled orders; nothing is written
        """
        received = money(received)
        self._validate_selection(rider_id, order_ids, orders)
        if received < 0:
            raise InvalidSettlementSelection(
                "Received amount cannot be negative", details={"received": str(received)}
            )

        account = await lock_one(uow.session, self._account_stmt(rider_id))
        if account is None:
            raise InvalidSettlementSelection(
                f"Rider {rider_id} has never been dispatched", details={"rider_id": rider_id}
            )

        expected = money(sum((money(o.total) + money(o.delivery.float_given) for o in orders), ZERO))
        shortage = money(expected - received)

        settlement = RiderSettlement(
            rider_id=rider_id,
            expected_amount=expected,
            received_amount=received,
            shortage=shortage,
            processed_by=uow.staff_id,
            notes=notes,
            created_at=uow.now,
        )
        uow.session.add(settlement)
        await uow.session.flush()

        for order in orders:
            order.delivery.settlement_id = settlement.id
            await self.resources.release(uow, ResourceRef.rider_slot(order.id), order.id)

            order.transactions.append(PaymentTransaction(
                kind=TransactionKind.PAYMENT,
                method=PaymentMethod.CASH,
                amount=money(order.total),
                amount_tendered=money(order.total),
                change_due=ZERO,
                processed_by=uow.staff_id,
                rider_settlement_id=settlement.id,
                created_at=uow.now,
            ))
            transition_order(order, OrderStatus.CLOSED)
            order.payment_status = PaymentStatus.PAID
            order.closed_at = uow.now
            order.touch(uow.staff_id, f"Settled with rider {rider_id}")
            uow.emit(ORDER_CLOSED, {
                "order_id": order.id,
                "channel": order.channel.value,
                "total": str(money(order.total)),
                "payment_status": order.payment_status.value,
            })

        self._post(uow, account, LedgerEntryKind.SETTLEMENT, -received, settlement_id=settlement.id)

        uow.audit("RIDER_SETTLEMENT", "rider", rider_id, {
            "settlement_id": settlement.id,
            "order_ids": [order.id for order in orders],
            "expected": str(expected),
            "received": str(received),
            "shortage": str(shortage),
        })
        uow.emit(RIDER_BALANCE_CHANGED, {"rider_id": rider_id, "cash_in_hand": str(account.cash_in_hand)})

        if shortage > 0:
            logger.warning(f"Rider {rider_id} settlement #{settlement.id} short by {shortage}")
        logger.info(
            f"Rider {rider_id} settled {len(orders)} order(s): expected {expected}, "
            f"received {received}, cash in hand {account.cash_in_hand}"
        )
        return RiderSettlementResult(
            settlement=settlement,
            orders=orders,
            cash_in_hand=money(account.cash_in_hand),
        )

    @staticmethod
    def _validate_selection(rider_id: int, order_ids: Sequence[int], orders: list[Order]) -> None:
        if not order_ids:
            raise InvalidSettlementSelection("Select at least one order to settle")

        duplicates = sorted({oid for oid in order_ids if list(order_ids).count(oid) > 1})
        if duplicates:
            raise InvalidSettlementSelection(
                f"Orders selected more than once: {duplicates}", details={"order_ids": duplicates}
            )

        found = {order.id for order in orders}
        missing = sorted(set(order_ids) - found)
        if missing:
            raise InvalidSettlementSelection(
                f"Orders not found: {missing}", details={"order_ids": missing}
            )

        for order in orders:
            delivery = order.delivery
            if delivery is None or delivery.rider_id != rider_id:
                raise InvalidSettlementSelection(
                    f"Order #{order.id} is not assigned to rider {rider_id}",
                    details={"order_id": order.id},
                )
            if delivery.settlement_id is not None or delivery.dispatch_status == DispatchStatus.SETTLED:
                raise InvalidSettlementSelection(
                    f"Order #{order.id} was already settled",
                    details={"order_id": order.id, "settlement_id": delivery.settlement_id},
                )
            if delivery.dispatch_status != DispatchStatus.DELIVERED:
                raise InvalidSettlementSelection(
                    f"Order #{order.id} has not been delivered yet",
                    details={"order_id": order.id, "dispatch_status": delivery.dispatch_status.value},
                )

    # =========================================================================
    # SHIFTS
    # =========================================================================

    async def open_shift(
        self,
        uow: UnitOfWork,
        rider: Optional[StaffIdentity],
        opening_float: Optional[Decimal] = None,
        notes: Optional[str] = None,
    ) -> ShiftResult:
        """
        Start a shift and hand the rider its opening float.

        Args:
            uow: Open unit of work
            rider: Directory entry for the rider
            opening_float: Change float for the shift; default_rider_float when omitted
            notes: Free text for the record

        Raises:
            InvalidRequest: unknown or inactive rider, negative float
            ResourceConflict: the rider already has an open shift
        """
        if rider is None or not rider.active or rider.role != StaffRole.RIDER:
            raise InvalidRequest(
                "Shifts can only be opened for an active rider",
                details={"rider_id": rider.id if rider else None},
            )
        if opening_float is None:
            opening_float = uow.settings.default_rider_float
        opening_float = money(opening_float)
        if opening_float < 0:
            raise InvalidRequest("Float cannot be negative", details={"opening_float": str(opening_float)})

        # The account row lock serialises shift changes for one rider
        account = await lock_or_create(
            uow.session,
            self._account_stmt(rider.id),
            lambda: RiderAccount(rider_id=rider.id, cash_in_hand=ZERO, created_at=uow.now),
        )
        existing = await self._open_shift_for(uow.session, rider.id)
        if existing is not None:
            raise ResourceConflict(
                f"Rider {rider.name} already has an open shift",
                details={"rider_id": rider.id, "shift_id": existing.id},
            )

        shift = RiderShift(
            rider_id=rider.id,
            status=ShiftStatus.OPEN,
            opening_float=opening_float,
            opened_by=uow.staff_id,
            opened_at=uow.now,
            notes=notes,
        )
        uow.session.add(shift)
        await uow.session.flush()

        if opening_float != 0:
            self._post(uow, account, LedgerEntryKind.SHIFT_FLOAT, opening_float, shift_id=shift.id)
            uow.emit(RIDER_BALANCE_CHANGED, {"rider_id": rider.id, "cash_in_hand": str(account.cash_in_hand)})

        uow.audit("SHIFT_OPENED", "rider", rider.id, {
            "shift_id": shift.id,
            "opening_float": str(opening_float),
        })
        logger.info(f"Rider {rider.id} opened shift #{shift.id} with float {opening_float}")
        return ShiftResult(shift=shift, cash_in_hand=money(account.cash_in_hand))

    async def close_shift(
        self,
        uow: UnitOfWork,
        shift_id: int,
        closing_cash: Decimal,
        notes: Optional[str] = None,
    ) -> ShiftResult:
        """
        Close a shift against the cash returned for its float.

        The expected cash is the opening float. Order cash is collected
        through rider settlements; anything still unsettled stays on the
        rider's balance for the next shift.

        Raises:
            NotFound: unknown shift
            InvalidTransition: the shift is already closed
            InvalidRequest: negative closing cash
        """
        closing_cash = money(closing_cash)
        if closing_cash < 0:
            raise InvalidRequest("Closing cash cannot be negative", details={"closing_cash": str(closing_cash)})

        shift = await lock_one(uow.session, select(RiderShift).where(RiderShift.id == shift_id))
        if shift is None:
            raise NotFound(f"Shift #{shift_id} does not exist", details={"shift_id": shift_id})
        if shift.status != ShiftStatus.OPEN:
            raise InvalidTransition(
                f"Shift #{shift_id} is already closed",
                details={"shift_id": shift_id, "status": shift.status.value},
            )
        account = await lock_one(uow.session, self._account_stmt(shift.rider_id))

        expected = money(shift.opening_float)
        difference = money(closing_cash - expected)
        shift.status = ShiftStatus.CLOSED
        shift.closed_by = uow.staff_id
        shift.closed_at = uow.now
        shift.expected_cash = expected
        shift.closing_cash_received = closing_cash
        shift.cash_difference = difference
        if notes:
            shift.notes = notes

        if closing_cash != 0:
            self._post(uow, account, LedgerEntryKind.SHIFT_CLOSE, -closing_cash, shift_id=shift.id)
            uow.emit(RIDER_BALANCE_CHANGED, {"rider_id": shift.rider_id, "cash_in_hand": str(account.cash_in_hand)})

        uow.audit("SHIFT_CLOSED", "rider", shift.rider_id, {
            "shift_id": shift.id,
            "expected": str(expected),
            "received": str(closing_cash),
            "difference": str(difference),
        })

        if difference < 0:
            logger.warning(f"Rider {shift.rider_id} shift #{shift.id} closed short by {-difference}")
        logger.info(
            f"Rider {shift.rider_id} closed shift #{shift.id}: expected {expected}, "
            f"received {closing_cash}, cash in hand {account.cash_in_hand}"
        )
        return ShiftResult(shift=shift, cash_in_hand=money(account.cash_in_hand))

    # =========================================================================
    # READ
    # =========================================================================

    async def balance(self, session: AsyncSession, rider_id: int) -> RiderBalance:
        """Materialised and ledger-derived balance with what is still outstanding."""
        account = await session.get(RiderAccount, rider_id)
        ledger_total = (
            await session.execute(
                select(func.coalesce(func.sum(RiderLedgerEntry.amount), 0)).where(
                    RiderLedgerEntry.rider_id == rider_id
                )
            )
        ).scalar_one()
        shortage_total = (
            await session.execute(
                select(func.coalesce(func.sum(RiderSettlement.shortage), 0)).where(
                    RiderSettlement.rider_id == rider_id
                )
            )
        ).scalar_one()
        shift_float_due = (
            await session.execute(
                select(
                    func.coalesce(func.sum(RiderShift.opening_float), 0)
                    - func.coalesce(func.sum(RiderShift.closing_cash_received), 0)
                ).where(RiderShift.rider_id == rider_id)
            )
        ).scalar_one()

        rows = (
            await session.execute(
                select(Order.id, Order.total, DeliveryOrder.float_given, DeliveryOrder.dispatch_status)
                .join(DeliveryOrder, DeliveryOrder.order_id == Order.id)
                .where(
                    DeliveryOrder.rider_id == rider_id,
                    DeliveryOrder.dispatch_status.in_(BOUND_DISPATCH_STATUSES),
                )
                .order_by(Order.id)
            )
        ).all()

        return RiderBalance(
            rider_id=rider_id,
            cash_in_hand=money(account.cash_in_hand) if account else ZERO,
            ledger_balance=money(ledger_total),
            outstanding=[
                OutstandingOrder(
                    order_id=row.id,
                    total=money(row.total),
                    float_given=money(row.float_given),
                    dispatch_status=row.dispatch_status,
                )
                for row in rows
            ],
            total_shortage=money(shortage_total),
            shift_float_due=money(shift_float_due),
        )

    async def active_shift(self, session: AsyncSession, rider_id: int) -> Optional[RiderShift]:
        return await self._open_shift_for(session, rider_id)

    async def shift_summary(self, session: AsyncSession, shift_id: int) -> ShiftSummary:
        """Order counts, delivered sales and what is still outstanding for one shift."""
        shift = await session.get(RiderShift, shift_id)
        if shift is None:
            raise NotFound(f"Shift #{shift_id} does not exist", details={"shift_id": shift_id})

        rows = (
            await session.execute(
                select(Order.total, DeliveryOrder.float_given, DeliveryOrder.dispatch_status)
                .join(DeliveryOrder, DeliveryOrder.order_id == Order.id)
                .where(DeliveryOrder.shift_id == shift_id)
            )
        ).all()

        delivered = [row for row in rows if row.dispatch_status in (DispatchStatus.DELIVERED, DispatchStatus.SETTLED)]
        bound = [row for row in rows if row.dispatch_status in BOUND_DISPATCH_STATUSES]
        return ShiftSummary(
            shift=shift,
            order_count=len(rows),
            out_for_delivery=sum(1 for row in rows if row.dispatch_status == DispatchStatus.OUT_FOR_DELIVERY),
            delivered=sum(1 for row in rows if row.dispatch_status == DispatchStatus.DELIVERED),
            settled=sum(1 for row in rows if row.dispatch_status == DispatchStatus.SETTLED),
            sales_total=money(sum((money(row.total) for row in delivered), ZERO)),
            outstanding_liability=money(
                sum((money(row.total) + money(row.float_given) for row in bound), ZERO)
            ),
        )
