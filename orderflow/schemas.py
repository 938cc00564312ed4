"""
Pydantic Schemas for Request/Response Validation

Request bodies for every engine operation and response models built from
the ORM objects and result dataclasses the engine returns.

Author: Khalil Bannouri
Version: 1.0.0
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from orderflow.models import (
    DispatchStatus,
    LineStatus,
    OrderChannel,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ShiftStatus,
    TableStatus,
    TransactionKind,
)
from orderflow.services.guidance import RecommendationKind


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class LineCreate(BaseModel):
    """Single item to put on an order."""
    menu_item_id: int = Field(..., ge=1, examples=[1])
    quantity: int = Field(default=1, ge=1, le=99, examples=[2])
    notes: Optional[str] = Field(None, max_length=200, examples=["Extra spicy"])


class OrderCreate(BaseModel):
    """Request schema for creating a new order."""
    channel: OrderChannel = Field(..., examples=["DINE_IN"])
    staff_id: int = Field(..., ge=1)

    # Dine-in
    table_id: Optional[int] = Field(None, ge=1)
    guest_count: Optional[int] = Field(None, ge=1, le=50)
    waiter_id: Optional[int] = Field(None, ge=1)

    # Customer (takeaway / delivery)
    customer_name: Optional[str] = Field(None, max_length=100)
    customer_phone: Optional[str] = Field(None, max_length=20)

    # Delivery (address can be filled in later, it is required only to fire)
    delivery_address: Optional[str] = Field(None, max_length=255)
    delivery_instructions: Optional[str] = Field(None, max_length=500)

    lines: List[LineCreate] = Field(default_factory=list)


class StaffAction(BaseModel):
    """Body for actions that only need to know who is acting."""
    staff_id: int = Field(..., ge=1)


class LineAdd(LineCreate):
    staff_id: int = Field(..., ge=1)


class LineStatusUpdate(BaseModel):
    status: LineStatus = Field(..., examples=["PREPARING"])
    staff_id: Optional[int] = Field(None, ge=1)


class DeliveryDetailsUpdate(BaseModel):
    staff_id: int = Field(..., ge=1)
    delivery_address: Optional[str] = Field(None, max_length=255)
    delivery_instructions: Optional[str] = Field(None, max_length=500)
    customer_name: Optional[str] = Field(None, max_length=100)
    customer_phone: Optional[str] = Field(None, max_length=20)


class SettlementOverrideRequest(BaseModel):
    """Staff decision for lines that are not ready."""
    action: RecommendationKind
    reason: str = Field(..., min_length=1, max_length=500)
    discount: Decimal = Field(default=Decimal("0.00"), ge=0)
    authorized_by: Optional[int] = Field(None, ge=1)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Reason must not be blank")
        return v.strip()


class SettleRequest(BaseModel):
    staff_id: int = Field(..., ge=1)
    payment_method: PaymentMethod = Field(default=PaymentMethod.CASH)
    amount: Decimal = Field(..., ge=0, examples=["2500.00"])
    override: Optional[SettlementOverrideRequest] = None


class CancelRequest(BaseModel):
    staff_id: int = Field(..., ge=1)
    reason: Optional[str] = Field(None, max_length=500)


class VoidRequest(BaseModel):
    staff_id: int = Field(..., ge=1)
    reason: str = Field(..., min_length=1, max_length=500)
    authorized_by: Optional[int] = Field(None, ge=1)


class DispatchRequest(BaseModel):
    order_ids: List[int] = Field(..., min_length=1)
    rider_id: int = Field(..., ge=1)
    float_given: Optional[Decimal] = Field(None, ge=0)  # Omitted: shift float or default_rider_float
    staff_id: int = Field(..., ge=1)


class RiderSettleRequest(BaseModel):
    # Duplicates and empty selections are rejected by the ledger, not here
    order_ids: List[int]
    received: Decimal = Field(..., ge=0)
    staff_id: int = Field(..., ge=1)
    notes: Optional[str] = Field(None, max_length=500)


class ShiftOpenRequest(BaseModel):
    rider_id: int = Field(..., ge=1)
    staff_id: int = Field(..., ge=1)
    opening_float: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=500)


class ShiftCloseRequest(BaseModel):
    shift_id: int = Field(..., ge=1)
    staff_id: int = Field(..., ge=1)
    closing_cash: Decimal = Field(..., ge=0)
    notes: Optional[str] = Field(None, max_length=500)


class TableCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50, examples=["T1"])
    capacity: int = Field(default=4, ge=1, le=50)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class LineResponse(BaseModel):
    id: int
    menu_item_id: int
    item_name: str
    unit_price: Decimal
    station: Optional[str]
    requires_prep: bool
    quantity: int
    line_total: Decimal
    notes: Optional[str]
    status: LineStatus
    fired_at: Optional[datetime]
    completed_at: Optional[datetime]
    skipped_by: Optional[int]
    skip_reason: Optional[str]

    class Config:
        from_attributes = True


class TransactionResponse(BaseModel):
    id: int
    kind: TransactionKind
    method: PaymentMethod
    amount: Decimal
    amount_tendered: Decimal
    change_due: Decimal
    processed_by: int
    recommendation_followed: Optional[str]
    rider_settlement_id: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


class DineInResponse(BaseModel):
    table_id: int
    guest_count: int
    seated_at: datetime

    class Config:
        from_attributes = True


class TakeawayResponse(BaseModel):
    token_number: Optional[str]
    token_date: Optional[date]
    picked_up_at: Optional[datetime]

    class Config:
        from_attributes = True


class DeliveryResponse(BaseModel):
    delivery_address: Optional[str]
    delivery_instructions: Optional[str]
    rider_id: Optional[int]
    dispatch_status: DispatchStatus
    float_given: Decimal
    dispatched_at: Optional[datetime]
    delivered_at: Optional[datetime]
    settled_at: Optional[datetime]
    settlement_id: Optional[int]

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: int
    channel: OrderChannel
    status: OrderStatus
    payment_status: PaymentStatus
    subtotal: Decimal
    tax: Decimal
    service_charge: Decimal
    delivery_fee: Decimal
    discount: Decimal
    total: Decimal
    customer_name: Optional[str]
    customer_phone: Optional[str]
    guest_count: Optional[int]
    table_id: Optional[int]
    driver_id: Optional[int]
    created_by: int
    created_at: datetime
    fired_at: Optional[datetime]
    ready_at: Optional[datetime]
    closed_at: Optional[datetime]
    last_action_desc: Optional[str]
    cancellation_reason: Optional[str]
    void_reason: Optional[str]
    lines: List[LineResponse]
    transactions: List[TransactionResponse]
    dine_in: Optional[DineInResponse]
    takeaway: Optional[TakeawayResponse]
    delivery: Optional[DeliveryResponse]

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


class FireResponse(BaseModel):
    success: bool = True
    order: OrderResponse
    sent_to_kitchen: List[int]
    completed_at_fire: List[int]
    token_number: Optional[str]
    became_ready: bool


class PendingLineResponse(BaseModel):
    line_id: int
    item_name: str
    quantity: int
    status: LineStatus
    line_total: Decimal
    fired_at: Optional[datetime]

    class Config:
        from_attributes = True


class RecommendationResponse(BaseModel):
    kind: RecommendationKind
    confidence: float
    justification: str
    suggested_discount: Decimal

    class Config:
        from_attributes = True


class DecisionRequiredResponse(BaseModel):
    """Settlement paused: lines are not ready and staff must choose."""
    outcome: Literal["decision_required"] = "decision_required"
    order_id: int
    amount_due: Decimal
    pending_lines: List[PendingLineResponse]
    recommendations: List[RecommendationResponse]


class SettlementResponse(BaseModel):
    outcome: Literal["settled"] = "settled"
    order: OrderResponse
    transaction: TransactionResponse
    change_due: Decimal
    skipped_line_ids: List[int]
    recommendation_followed: Optional[str]


class DispatchResponse(BaseModel):
    rider_id: int
    order_ids: List[int]
    float_allocation: dict[int, Decimal]
    liability_added: Decimal
    cash_in_hand: Decimal


class RiderSettlementResponse(BaseModel):
    settlement_id: int
    rider_id: int
    expected_amount: Decimal
    received_amount: Decimal
    shortage: Decimal
    order_ids: List[int]
    cash_in_hand: Decimal


class OutstandingOrderResponse(BaseModel):
    order_id: int
    total: Decimal
    float_given: Decimal
    liability: Decimal
    dispatch_status: DispatchStatus


class RiderBalanceResponse(BaseModel):
    rider_id: int
    cash_in_hand: Decimal
    ledger_balance: Decimal
    outstanding_liability: Decimal
    total_shortage: Decimal
    shift_float_due: Decimal
    outstanding: List[OutstandingOrderResponse]


class ShiftResponse(BaseModel):
    id: int
    rider_id: int
    status: ShiftStatus
    opening_float: Decimal
    opened_by: int
    opened_at: datetime
    closed_by: Optional[int]
    closed_at: Optional[datetime]
    expected_cash: Optional[Decimal]
    closing_cash_received: Optional[Decimal]
    cash_difference: Optional[Decimal]
    notes: Optional[str]

    class Config:
        from_attributes = True


class ShiftActionResponse(BaseModel):
    shift: ShiftResponse
    cash_in_hand: Decimal


class ShiftSummaryResponse(BaseModel):
    shift: ShiftResponse
    order_count: int
    out_for_delivery: int
    delivered: int
    settled: int
    sales_total: Decimal
    outstanding_liability: Decimal


class TableResponse(BaseModel):
    id: int
    name: str
    capacity: int
    status: TableStatus
    active_order_id: Optional[int]

    class Config:
        from_attributes = True


class ResourceStateResponse(BaseModel):
    kind: str
    id: int
    state: str
    order_id: Optional[int]
    holder_id: Optional[int]
    back_reference_ok: bool
    label: Optional[str]


class ViolationResponse(BaseModel):
    code: str
    entity_type: str
    entity_id: int
    detail: str


class ConsistencyReport(BaseModel):
    healthy: bool
    violation_count: int
    violations: List[ViolationResponse]
    checked_at: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    requires_elevation: bool = False


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    broadcast_service: str
    catalog_service: str
    staff_directory: str
    timestamp: datetime
