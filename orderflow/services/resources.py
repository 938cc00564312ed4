"""
Resource Lock

Tables and rider assignment slots are bound to at most one live order.

Acquisition is a compare-and-set UPDATE: the row only changes if it is still
free, and the rowcount tells the caller whether it won. The loser gets
ResourceConflict straight away; nothing is queued and nothing is overwritten.
Acquisition runs in the caller's transaction, so a failed order creation
rolls the lock back with everything else.

Author: Khalil Bannouri
Version: 1.0.0
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import NotFound, ResourceConflict
from orderflow.models import (
    DeliveryOrder,
    DiningTable,
    DispatchStatus,
    Order,
    OrderStatus,
    TableStatus,
)
from orderflow.services.broadcast.base import RESOURCE_STATE_CHANGED
from orderflow.services.lifecycle import LIVE_ORDER_STATUSES
from orderflow.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class ResourceKind(str, enum.Enum):
    TABLE = "table"
    RIDER_SLOT = "rider_slot"


class ResourceState(str, enum.Enum):
    FREE = "FREE"
    ASSIGNED = "ASSIGNED"
    NEEDS_CLEANING = "NEEDS_CLEANING"


@dataclass(frozen=True)
class ResourceRef:
    """
    A lockable resource.

    For tables ``id`` is the table id. For rider slots it is the delivery
    order id, since each delivery order has exactly one slot.
    """
    kind: ResourceKind
    id: int

    @classmethod
    def table(cls, table_id: int) -> "ResourceRef":
        return cls(ResourceKind.TABLE, table_id)

    @classmethod
    def rider_slot(cls, order_id: int) -> "ResourceRef":
        return cls(ResourceKind.RIDER_SLOT, order_id)


@dataclass(frozen=True)
class ResourceSnapshot:
    resource: ResourceRef
    state: ResourceState
    order_id: Optional[int]
    holder_id: Optional[int]
    back_reference_ok: bool
    label: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "kind": self.resource.kind.value,
            "id": self.resource.id,
            "state": self.state.value,
            "order_id": self.order_id,
            "holder_id": self.holder_id,
            "back_reference_ok": self.back_reference_ok,
            "label": self.label,
        }


BOUND_DISPATCH_STATUSES = frozenset({DispatchStatus.OUT_FOR_DELIVERY, DispatchStatus.DELIVERED})


class ResourceLock:
    """Compare-and-set binding of tables and rider slots to orders."""

    # =========================================================================
    # ACQUIRE
    # =========================================================================

    async def acquire(
        self,
        uow: UnitOfWork,
        resource: ResourceRef,
        order_id: int,
        holder_id: Optional[int] = None,
    ) -> None:
        """
        Bind ``resource`` to ``order_id``.

        Args:
            uow: Open unit of work
            resource: Table or rider slot
            order_id: Order taking the resource
            holder_id: Rider id (rider slots only)

        Raises:
            ResourceConflict: resource is bound or waiting to be cleaned
            NotFound: resource does not exist
        """
        if resource.kind == ResourceKind.TABLE:
            await self._acquire_table(uow, resource.id, order_id)
        else:
            await self._acquire_rider_slot(uow, resource.id, holder_id)

        logger.info(f"Acquired {resource.kind.value} {resource.id} for order #{order_id}")
        uow.emit(RESOURCE_STATE_CHANGED, {
            "kind": resource.kind.value,
            "id": resource.id,
            "state": ResourceState.ASSIGNED.value,
            "order_id": order_id,
        })

    async def _acquire_table(self, uow: UnitOfWork, table_id: int, order_id: int) -> None:
        result = await uow.session.execute(
            update(DiningTable)
            .where(
                DiningTable.id == table_id,
                DiningTable.status == TableStatus.AVAILABLE,
                DiningTable.active_order_id.is_(None),
            )
            .values(status=TableStatus.OCCUPIED, active_order_id=order_id, updated_at=uow.now)
            .execution_options(synchronize_session="evaluate")
        )
        if result.rowcount == 1:
            return

        table = await uow.session.get(DiningTable, table_id)
        if table is None:
            raise NotFound(f"Table {table_id} does not exist", details={"table_id": table_id})
        if table.status == TableStatus.NEEDS_CLEANING:
            raise ResourceConflict(
                f"Table {table.name} needs cleaning before it can be seated",
                details={"table_id": table_id, "state": ResourceState.NEEDS_CLEANING.value},
            )
        raise ResourceConflict(
            f"Table {table.name} is already occupied",
            details={"table_id": table_id, "order_id": table.active_order_id},
        )

    async def _acquire_rider_slot(self, uow: UnitOfWork, order_id: int, rider_id: Optional[int]) -> None:
        if rider_id is None:
            raise ValueError("Rider slots need a holder")

        result = await uow.session.execute(
            update(DeliveryOrder)
            .where(
                DeliveryOrder.order_id == order_id,
                DeliveryOrder.rider_id.is_(None),
                DeliveryOrder.dispatch_status == DispatchStatus.AWAITING_DISPATCH,
            )
            .values(
                rider_id=rider_id,
                dispatch_status=DispatchStatus.OUT_FOR_DELIVERY,
                dispatched_at=uow.now,
            )
            .execution_options(synchronize_session="evaluate")
        )
        if result.rowcount != 1:
            delivery = (
                await uow.session.execute(select(DeliveryOrder).where(DeliveryOrder.order_id == order_id))
            ).scalar_one_or_none()
            if delivery is None:
                raise NotFound(
                    f"Order #{order_id} is not a delivery order",
                    details={"order_id": order_id},
                )
            raise ResourceConflict(
                f"Order #{order_id} is already assigned to a rider",
                details={"order_id": order_id, "rider_id": delivery.rider_id},
            )

        # Back-reference on the order completes the slot
        await uow.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(driver_id=rider_id)
            .execution_options(synchronize_session="evaluate")
        )

    # =========================================================================
    # RELEASE
    # =========================================================================

    async def release(
        self,
        uow: UnitOfWork,
        resource: ResourceRef,
        order_id: int,
        *,
        needs_cleaning: bool = False,
    ) -> bool:
        """
        Unbind ``resource`` from ``order_id``. Idempotent.

        Tables go to NEEDS_CLEANING after a meal and to AVAILABLE after a
        cancellation. Rider slots are released by settling the delivery leg.

        Returns:
            True if something was released in this call
        """
        if resource.kind == ResourceKind.TABLE:
            new_status = TableStatus.NEEDS_CLEANING if needs_cleaning else TableStatus.AVAILABLE
            result = await uow.session.execute(
                update(DiningTable)
                .where(DiningTable.id == resource.id, DiningTable.active_order_id == order_id)
                .values(status=new_status, active_order_id=None, updated_at=uow.now)
                .execution_options(synchronize_session="evaluate")
            )
            state = ResourceState.NEEDS_CLEANING if needs_cleaning else ResourceState.FREE
        else:
            result = await uow.session.execute(
                update(DeliveryOrder)
                .where(
                    DeliveryOrder.order_id == resource.id,
                    DeliveryOrder.dispatch_status == DispatchStatus.DELIVERED,
                )
                .values(dispatch_status=DispatchStatus.SETTLED, settled_at=uow.now)
                .execution_options(synchronize_session="evaluate")
            )
            state = ResourceState.FREE

        if result.rowcount == 0:
            logger.debug(f"Release of {resource.kind.value} {resource.id} was a no-op")
            return False

        logger.info(f"Released {resource.kind.value} {resource.id} from order #{order_id} ({state.value})")
        uow.emit(RESOURCE_STATE_CHANGED, {
            "kind": resource.kind.value,
            "id": resource.id,
            "state": state.value,
            "order_id": None,
        })
        return True

    async def mark_cleaned(self, uow: UnitOfWork, table_id: int) -> DiningTable:
        """NEEDS_CLEANING -> AVAILABLE. Cleaning a free table is a no-op."""
        table = await uow.session.get(DiningTable, table_id, with_for_update=True, populate_existing=True)
        if table is None:
            raise NotFound(f"Table {table_id} does not exist", details={"table_id": table_id})
        if table.status == TableStatus.OCCUPIED:
            raise ResourceConflict(
                f"Table {table.name} is occupied by order #{table.active_order_id}",
                details={"table_id": table_id, "order_id": table.active_order_id},
            )
        if table.status == TableStatus.NEEDS_CLEANING:
            table.status = TableStatus.AVAILABLE
            table.updated_at = uow.now
            uow.emit(RESOURCE_STATE_CHANGED, {
                "kind": ResourceKind.TABLE.value,
                "id": table_id,
                "state": ResourceState.FREE.value,
                "order_id": None,
            })
            logger.info(f"Table {table.name} cleaned and available")
        return table

    # =========================================================================
    # INSPECT
    # =========================================================================

    async def get_state(self, session: AsyncSession, resource: ResourceRef) -> ResourceSnapshot:
        """Current state, bound order, and whether the order points back."""
        if resource.kind == ResourceKind.TABLE:
            return await self._table_state(session, resource)
        return await self._rider_slot_state(session, resource)

    async def _table_state(self, session: AsyncSession, resource: ResourceRef) -> ResourceSnapshot:
        table = await session.get(DiningTable, resource.id)
        if table is None:
            raise NotFound(f"Table {resource.id} does not exist", details={"table_id": resource.id})

        if table.status == TableStatus.OCCUPIED:
            order = await session.get(Order, table.active_order_id) if table.active_order_id else None
            back_ok = (
                order is not None
                and order.table_id == table.id
                and order.status in LIVE_ORDER_STATUSES
            )
            return ResourceSnapshot(
                resource=resource,
                state=ResourceState.ASSIGNED,
                order_id=table.active_order_id,
                holder_id=None,
                back_reference_ok=back_ok,
                label=table.name,
            )

        state = ResourceState.NEEDS_CLEANING if table.status == TableStatus.NEEDS_CLEANING else ResourceState.FREE
        return ResourceSnapshot(
            resource=resource,
            state=state,
            order_id=None,
            holder_id=None,
            back_reference_ok=table.active_order_id is None,
            label=table.name,
        )

    async def _rider_slot_state(self, session: AsyncSession, resource: ResourceRef) -> ResourceSnapshot:
        order = await session.get(Order, resource.id)
        if order is None or order.delivery is None:
            raise NotFound(
                f"Order #{resource.id} is not a delivery order",
                details={"order_id": resource.id},
            )

        delivery = order.delivery
        if delivery.dispatch_status in BOUND_DISPATCH_STATUSES:
            return ResourceSnapshot(
                resource=resource,
                state=ResourceState.ASSIGNED,
                order_id=order.id,
                holder_id=delivery.rider_id,
                back_reference_ok=(
                    delivery.rider_id is not None
                    and order.driver_id == delivery.rider_id
                    and order.status == OrderStatus.READY
                ),
                label=f"order-{order.id}",
            )

        return ResourceSnapshot(
            resource=resource,
            state=ResourceState.FREE,
            order_id=None,
            holder_id=delivery.rider_id,
            back_reference_ok=order.driver_id == delivery.rider_id,
            label=f"order-{order.id}",
        )
