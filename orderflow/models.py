"""
SQLAlchemy Database Models

Persisted state for the order lifecycle and settlement engine:
- Orders with exactly one channel extension (dine-in / takeaway / delivery)
- Order lines carrying an immutable pricing snapshot
- Dining tables (the lockable table resource)
- Daily takeaway token counters
- Payment transactions, rider ledger entries and rider settlements (append-only)
- Rider shifts with their opening float and closing count
- Audit log
- Read-only menu and staff lookup tables for the SQL collaborators

Author: Khalil Bannouri
Version: 1.0.0
"""

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship

from orderflow.core.timeutils import utcnow
from orderflow.database import Base

Money = Numeric(12, 2)


# =============================================================================
# ENUMS
# =============================================================================

class OrderChannel(str, enum.Enum):
    """Order channel; decides which extension row the order owns."""
    DINE_IN = "DINE_IN"
    TAKEAWAY = "TAKEAWAY"
    DELIVERY = "DELIVERY"


class OrderStatus(str, enum.Enum):
    """Fulfilment axis of an order."""
    ACTIVE = "ACTIVE"
    READY = "READY"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"
    VOIDED = "VOIDED"


class PaymentStatus(str, enum.Enum):
    """Payment axis of an order, orthogonal to OrderStatus."""
    UNPAID = "UNPAID"
    PAID = "PAID"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    REFUNDED = "REFUNDED"


class LineStatus(str, enum.Enum):
    """Kitchen workflow of a single order line."""
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    PREPARING = "PREPARING"
    DONE = "DONE"
    SERVED = "SERVED"
    SKIPPED = "SKIPPED"


class TableStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    OCCUPIED = "OCCUPIED"
    NEEDS_CLEANING = "NEEDS_CLEANING"


class DispatchStatus(str, enum.Enum):
    """Delivery leg, tracked on the delivery extension."""
    AWAITING_DISPATCH = "AWAITING_DISPATCH"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    SETTLED = "SETTLED"


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    CARD = "CARD"
    ONLINE = "ONLINE"


class TransactionKind(str, enum.Enum):
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"


class LedgerEntryKind(str, enum.Enum):
    DISPATCH = "DISPATCH"
    SETTLEMENT = "SETTLEMENT"
    SHIFT_FLOAT = "SHIFT_FLOAT"
    SHIFT_CLOSE = "SHIFT_CLOSE"


class ShiftStatus(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class StaffRole(str, enum.Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    CASHIER = "CASHIER"
    WAITER = "WAITER"
    RIDER = "RIDER"


ELEVATED_ROLES = frozenset({StaffRole.ADMIN, StaffRole.MANAGER})


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """
    One customer transaction.

    Owns exactly one channel extension and its lines. The status and
    payment_status columns move independently: an order can be READY while
    UNPAID, and CLOSED only ever happens together with a payment transaction.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    channel = Column(Enum(OrderChannel), nullable=False, index=True)
    status = Column(Enum(OrderStatus), default=OrderStatus.ACTIVE, nullable=False, index=True)
    payment_status = Column(
        Enum(PaymentStatus), default=PaymentStatus.UNPAID, nullable=False, index=True
    )

    # =========================================================================
    # PRICING BREAKDOWN
    # =========================================================================
    subtotal = Column(Money, nullable=False, default=0)
    tax = Column(Money, nullable=False, default=0)
    service_charge = Column(Money, nullable=False, default=0)
    delivery_fee = Column(Money, nullable=False, default=0)
    discount = Column(Money, nullable=False, default=0)
    total = Column(Money, nullable=False, default=0)

    # =========================================================================
    # PARTIES
    # =========================================================================
    customer_name = Column(String(100), nullable=True)
    customer_phone = Column(String(20), nullable=True)
    guest_count = Column(Integer, nullable=True)
    waiter_id = Column(Integer, nullable=True)
    table_id = Column(Integer, ForeignKey("dining_tables.id"), nullable=True, index=True)
    driver_id = Column(Integer, nullable=True, index=True)
    created_by = Column(Integer, nullable=False)

    # =========================================================================
    # LIFECYCLE TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    fired_at = Column(DateTime(timezone=True), nullable=True)
    ready_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    last_action_at = Column(DateTime(timezone=True), nullable=True)
    last_action_by = Column(Integer, nullable=True)
    last_action_desc = Column(String(255), nullable=True)

    # =========================================================================
    # CANCEL / VOID
    # =========================================================================
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(Integer, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    voided_at = Column(DateTime(timezone=True), nullable=True)
    voided_by = Column(Integer, nullable=True)
    void_reason = Column(Text, nullable=True)

    lines = relationship(
        "OrderLine",
        back_populates="order",
        order_by="OrderLine.id",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    dine_in = relationship("DineInOrder", back_populates="order", uselist=False, lazy="selectin")
    takeaway = relationship("TakeawayOrder", back_populates="order", uselist=False, lazy="selectin")
    delivery = relationship("DeliveryOrder", back_populates="order", uselist=False, lazy="selectin")
    transactions = relationship(
        "PaymentTransaction", back_populates="order", order_by="PaymentTransaction.id", lazy="selectin"
    )

    def touch(self, staff_id: int, description: str) -> None:
        """Record the last action taken on the order."""
        self.last_action_at = utcnow()
        self.last_action_by = staff_id
        self.last_action_desc = description[:255]

    def __repr__(self):
        return f"<Order #{self.id} - {self.channel.value} - {self.status.value}/{self.payment_status.value}>"


class OrderLine(Base):
    """
    One menu item instance on an order.

    item_name, unit_price, station and requires_prep are copied from the
    catalog when the line is created and never written again.
    """
    __tablename__ = "order_lines"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_lines_quantity_positive"),
        CheckConstraint(
            "status != 'SKIPPED' OR (skipped_by IS NOT NULL AND skip_reason IS NOT NULL)",
            name="ck_order_lines_skip_is_tagged",
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    menu_item_id = Column(Integer, nullable=False)

    # Pricing snapshot
    item_name = Column(String(100), nullable=False)
    unit_price = Column(Money, nullable=False)
    station = Column(String(50), nullable=True)
    requires_prep = Column(Boolean, nullable=False, default=True)

    quantity = Column(Integer, nullable=False, default=1)
    line_total = Column(Money, nullable=False)
    notes = Column(Text, nullable=True)

    status = Column(Enum(LineStatus), default=LineStatus.DRAFT, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    fired_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # SKIPPED tag
    skipped_by = Column(Integer, nullable=True)
    skip_reason = Column(Text, nullable=True)
    skipped_at = Column(DateTime(timezone=True), nullable=True)

    order = relationship("Order", back_populates="lines")

    def __repr__(self):
        return f"<OrderLine #{self.id} {self.quantity}x {self.item_name} - {self.status.value}>"


class DineInOrder(Base):
    __tablename__ = "dine_in_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)
    table_id = Column(Integer, ForeignKey("dining_tables.id"), nullable=False)
    guest_count = Column(Integer, nullable=False, default=1)
    seated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    order = relationship("Order", back_populates="dine_in")


class TakeawayOrder(Base):
    __tablename__ = "takeaway_orders"
    __table_args__ = (
        UniqueConstraint("token_date", "token_number", name="uq_takeaway_token_per_day"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)
    token_number = Column(String(20), nullable=True)
    token_date = Column(Date, nullable=True)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)

    order = relationship("Order", back_populates="takeaway")


class DeliveryOrder(Base):
    """
    Delivery extension and rider assignment slot.

    The slot is bound while dispatch_status is OUT_FOR_DELIVERY or DELIVERED;
    rider_id here and Order.driver_id must agree.
    """
    __tablename__ = "delivery_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)
    delivery_address = Column(String(255), nullable=True)
    delivery_instructions = Column(Text, nullable=True)
    rider_id = Column(Integer, nullable=True, index=True)
    dispatch_status = Column(
        Enum(DispatchStatus), default=DispatchStatus.AWAITING_DISPATCH, nullable=False, index=True
    )
    float_given = Column(Money, nullable=False, default=0)
    dispatched_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    settlement_id = Column(Integer, ForeignKey("rider_settlements.id"), nullable=True, index=True)
    shift_id = Column(Integer, ForeignKey("rider_shifts.id"), nullable=True, index=True)

    order = relationship("Order", back_populates="delivery")


# =============================================================================
# RESOURCES
# =============================================================================

class DiningTable(Base):
    """
    Lockable table resource.

    active_order_id is deliberately not a foreign key: a dangling value is
    exactly what the consistency sweep looks for.
    """
    __tablename__ = "dining_tables"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(50), nullable=False, unique=True)
    capacity = Column(Integer, nullable=False, default=4)
    status = Column(Enum(TableStatus), default=TableStatus.AVAILABLE, nullable=False, index=True)
    active_order_id = Column(Integer, nullable=True, unique=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<DiningTable {self.name} - {self.status.value}>"


class DailyTokenCounter(Base):
    """Last takeaway token handed out per restaurant per local business day."""
    __tablename__ = "daily_token_counters"

    restaurant_code = Column(String(50), primary_key=True)
    business_date = Column(Date, primary_key=True)
    last_token = Column(Integer, nullable=False, default=0)


# =============================================================================
# MONEY RECORDS (APPEND-ONLY)
# =============================================================================

class PaymentTransaction(Base):
    """Payment or refund recorded against an order."""
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    kind = Column(Enum(TransactionKind), nullable=False, default=TransactionKind.PAYMENT)
    method = Column(Enum(PaymentMethod), nullable=False)
    amount = Column(Money, nullable=False)  # Amount applied to the order
    amount_tendered = Column(Money, nullable=False)
    change_due = Column(Money, nullable=False, default=0)
    processed_by = Column(Integer, nullable=False)
    recommendation_followed = Column(String(30), nullable=True)
    rider_settlement_id = Column(Integer, ForeignKey("rider_settlements.id"), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    order = relationship("Order", back_populates="transactions")


class RiderAccount(Base):
    """
    Materialised cash-in-hand for a rider.

    Created on the rider's first dispatch or shift, never deleted, only
    changed while the row is locked inside a ledger transaction.
    """
    __tablename__ = "rider_accounts"

    rider_id = Column(Integer, primary_key=True)
    cash_in_hand = Column(Money, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class RiderLedgerEntry(Base):
    """
    Signed movement on a rider's balance: +liability on dispatch or shift
    opening, -cash on settlement or shift close.
    """
    __tablename__ = "rider_ledger_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey("rider_accounts.rider_id"), nullable=False, index=True)
    kind = Column(Enum(LedgerEntryKind), nullable=False)
    amount = Column(Money, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    settlement_id = Column(Integer, ForeignKey("rider_settlements.id"), nullable=True)
    shift_id = Column(Integer, ForeignKey("rider_shifts.id"), nullable=True)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class RiderSettlement(Base):
    """Immutable record of one cash hand-over by a rider."""
    __tablename__ = "rider_settlements"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    rider_id = Column(Integer, nullable=False, index=True)
    expected_amount = Column(Money, nullable=False)
    received_amount = Column(Money, nullable=False)
    shortage = Column(Money, nullable=False)  # Negative means overage
    processed_by = Column(Integer, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    orders = relationship("DeliveryOrder", order_by="DeliveryOrder.order_id", lazy="selectin", viewonly=True)


class RiderShift(Base):
    """
    One working shift of a rider.

    The opening float is booked on the rider's ledger when the shift opens
    and the cash returned for it is booked when it closes. Orders delivered
    during the shift carry its id; their cash is cleared through rider
    settlements, so whatever is unsettled at close stays on the balance.
    """
    __tablename__ = "rider_shifts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey("rider_accounts.rider_id"), nullable=False, index=True)
    status = Column(Enum(ShiftStatus), nullable=False, default=ShiftStatus.OPEN, index=True)
    opening_float = Column(Money, nullable=False, default=0)
    opened_by = Column(Integer, nullable=False)
    opened_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    closed_by = Column(Integer, nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    expected_cash = Column(Money, nullable=True)
    closing_cash_received = Column(Money, nullable=True)
    cash_difference = Column(Money, nullable=True)  # received - expected; negative means short
    notes = Column(Text, nullable=True)

    orders = relationship("DeliveryOrder", order_by="DeliveryOrder.order_id", lazy="selectin", viewonly=True)

    def __repr__(self):
        return f"<RiderShift #{self.id} rider {self.rider_id} - {self.status.value}>"


class AppendOnlyViolation(RuntimeError):
    """Raised when code tries to rewrite an append-only record."""


def _reject_mutation(mapper, connection, target):
    raise AppendOnlyViolation(f"{type(target).__name__} records are append-only")


for _model in (PaymentTransaction, RiderLedgerEntry, RiderSettlement):
    event.listen(_model, "before_update", _reject_mutation)
    event.listen(_model, "before_delete", _reject_mutation)


# =============================================================================
# AUDIT
# =============================================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    action_type = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(Integer, nullable=True, index=True)
    staff_id = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<AuditLog {self.action_type} {self.entity_type}#{self.entity_id}>"


# =============================================================================
# LOOKUP TABLES (OWNED BY OTHER SERVICES, READ HERE)
# =============================================================================

class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    price = Column(Money, nullable=False)
    station = Column(String(50), nullable=True)
    requires_prep = Column(Boolean, nullable=False, default=True)
    is_available = Column(Boolean, nullable=False, default=True)


class Staff(Base):
    __tablename__ = "staff"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    role = Column(Enum(StaffRole), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
