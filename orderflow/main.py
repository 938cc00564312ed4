"""
FastAPI Application Entry Point

Order lifecycle and settlement engine for dine-in, takeaway and delivery.
Supports both Mock collaborators (development) and SQL / Redis (production).

Endpoints:
    - POST /api/orders: Create order (seats dine-in parties)
    - POST /api/orders/{id}/fire: Send held items to the kitchen
    - PATCH /api/orders/{id}/lines/{line_id}/status: Kitchen display bumps
    - POST /api/orders/{id}/settle: Settle, or get guidance when items are pending
    - POST /api/deliveries/dispatch: Hand delivery orders to a rider
    - POST /api/riders/{id}/settle: Rider cash hand-over
    - POST /api/riders/shift/open, /api/riders/shift/close: Rider shifts and their float
    - GET /api/consistency: Invariant report
    - GET /health: System health check

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

# Windows-specific event loop policy (psycopg async needs the selector loop)
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from orderflow.core.config import get_settings, setup_logging
from orderflow.core.exceptions import AuthorizationRequired, OrderEngineError
from orderflow.core.timeutils import utcnow
from orderflow.database import get_db, get_engine, init_db
from orderflow.models import LineStatus, OrderChannel, OrderStatus
from orderflow.schemas import (
    CancelRequest,
    ConsistencyReport,
    DecisionRequiredResponse,
    DeliveryDetailsUpdate,
    DispatchRequest,
    DispatchResponse,
    ErrorResponse,
    FireResponse,
    HealthResponse,
    LineAdd,
    LineStatusUpdate,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    OutstandingOrderResponse,
    PendingLineResponse,
    RecommendationResponse,
    ResourceStateResponse,
    RiderBalanceResponse,
    RiderSettlementResponse,
    RiderSettleRequest,
    SettlementResponse,
    SettleRequest,
    ShiftActionResponse,
    ShiftCloseRequest,
    ShiftOpenRequest,
    ShiftResponse,
    ShiftSummaryResponse,
    StaffAction,
    TableCreate,
    TableResponse,
    TransactionResponse,
    ViolationResponse,
    VoidRequest,
)
from orderflow.services.broadcast import get_broadcast_service
from orderflow.services.catalog import get_catalog_service
from orderflow.services.channels import OrderOpening
from orderflow.services.engine import OrderEngine, get_order_engine
from orderflow.services.pricing import NewLine
from orderflow.services.resources import ResourceKind
from orderflow.services.settlement import DecisionRequired, SettlementOverride
from orderflow.services.staff import get_staff_directory

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Restaurant: {settings.restaurant_name} ({settings.restaurant_code})")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    # Initialize database
    await init_db()
    logger.info("✅ Database initialized")

    # Log collaborator configuration
    logger.info(f"✅ Catalog Service: {get_catalog_service().provider_name}")
    logger.info(f"✅ Staff Directory: {get_staff_directory().provider_name}")
    logger.info(f"✅ Broadcast Service: {get_broadcast_service().provider_name}")

    # Validate production config
    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await get_broadcast_service().close()
    await get_engine().dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order lifecycle and settlement engine: table and rider locking, kitchen firing, "
        "guided settlement and the rider cash ledger."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def to_override(request: SettleRequest) -> Optional[SettlementOverride]:
    if request.override is None:
        return None
    return SettlementOverride(
        action=request.override.action,
        reason=request.override.reason,
        discount=request.override.discount,
        authorized_by=request.override.authorized_by,
    )


def decision_response(decision: DecisionRequired) -> DecisionRequiredResponse:
    return DecisionRequiredResponse(
        order_id=decision.order_id,
        amount_due=decision.amount_due,
        pending_lines=[PendingLineResponse.model_validate(line) for line in decision.pending_lines],
        recommendations=[RecommendationResponse.model_validate(rec) for rec in decision.recommendations],
    )


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db)
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(select(1))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check Redis
    redis_status = "healthy"
    try:
        client = aioredis.from_url(settings.redis_url, socket_timeout=2)
        await client.ping()
        await client.aclose()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    # Check broadcast service
    broadcast = get_broadcast_service()
    broadcast_status = "healthy" if await broadcast.health_check() else "unhealthy"

    overall = "healthy" if all(
        s == "healthy" for s in [db_status, redis_status, broadcast_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        broadcast_service=f"{broadcast_status} ({broadcast.provider_name})",
        catalog_service=get_catalog_service().provider_name,
        staff_directory=get_staff_directory().provider_name,
        timestamp=utcnow(),
    )


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Create Order",
)
async def create_order(
    order_data: OrderCreate,
    engine: OrderEngine = Depends(get_order_engine),
) -> OrderResponse:
    """
    Create a new order.

    Dine-in orders seat the party: the table is locked in the same
    transaction, and a second party on the same table gets 409.
    """
    logger.info(f"Creating {order_data.channel.value} order (staff {order_data.staff_id})")

    order = await engine.create_order(
        order_data.channel,
        staff_id=order_data.staff_id,
        opening=OrderOpening(
            table_id=order_data.table_id,
            guest_count=order_data.guest_count,
            customer_name=order_data.customer_name,
            customer_phone=order_data.customer_phone,
            delivery_address=order_data.delivery_address,
            delivery_instructions=order_data.delivery_instructions,
            waiter_id=order_data.waiter_id,
        ),
        lines=[NewLine(line.menu_item_id, line.quantity, line.notes) for line in order_data.lines],
    )
    return OrderResponse.model_validate(order)


@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = Query(None),
    channel: Optional[OrderChannel] = Query(None),
    engine: OrderEngine = Depends(get_order_engine),
) -> OrderListResponse:
    """Retrieve paginated list of orders, newest first."""
    orders = await engine.list_orders(status=status, channel=channel, limit=limit, offset=skip)
    return OrderListResponse(
        total=len(orders),
        orders=[OrderResponse.model_validate(order) for order in orders],
    )


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def get_order(
    order_id: int,
    engine: OrderEngine = Depends(get_order_engine),
) -> OrderResponse:
    """Get a specific order by ID."""
    return OrderResponse.model_validate(await engine.get_order(order_id))


@app.post("/api/orders/{order_id}/lines", response_model=OrderResponse, responses=ERROR_RESPONSES, tags=["Orders"])
async def add_line(
    order_id: int,
    body: LineAdd,
    engine: OrderEngine = Depends(get_order_engine),
) -> OrderResponse:
    order = await engine.add_line(order_id, body.staff_id, body.menu_item_id, body.quantity, body.notes)
    return OrderResponse.model_validate(order)


@app.delete(
    "/api/orders/{order_id}/lines/{line_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def remove_line(
    order_id: int,
    line_id: int,
    staff_id: int = Query(..., ge=1),
    engine: OrderEngine = Depends(get_order_engine),
) -> OrderResponse:
    return OrderResponse.model_validate(await engine.remove_line(order_id, line_id, staff_id))


@app.patch("/api/orders/{order_id}/delivery", response_model=OrderResponse, responses=ERROR_RESPONSES, tags=["Orders"])
async def update_delivery_details(
    order_id: int,
    body: DeliveryDetailsUpdate,
    engine: OrderEngine = Depends(get_order_engine),
) -> OrderResponse:
    order = await engine.update_delivery_details(
        order_id,
        body.staff_id,
        delivery_address=body.delivery_address,
        delivery_instructions=body.delivery_instructions,
        customer_name=body.customer_name,
        customer_phone=body.customer_phone,
    )
    return OrderResponse.model_validate(order)


@app.post("/api/orders/{order_id}/cancel", response_model=OrderResponse, responses=ERROR_RESPONSES, tags=["Orders"])
async def cancel_order(
    order_id: int,
    body: CancelRequest,
    engine: OrderEngine = Depends(get_order_engine),
) -> OrderResponse:
    return OrderResponse.model_validate(await engine.cancel_order(order_id, body.staff_id, body.reason))


@app.post("/api/orders/{order_id}/void", response_model=OrderResponse, responses=ERROR_RESPONSES, tags=["Orders"])
async def void_order(
    order_id: int,
    body: VoidRequest,
    engine: OrderEngine = Depends(get_order_engine),
) -> OrderResponse:
    """Void a closed order. Needs a manager or admin, acting or authorizing."""
    order = await engine.void_order(order_id, body.staff_id, body.reason, body.authorized_by)
    return OrderResponse.model_validate(order)


# =============================================================================
# KITCHEN ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders/{order_id}/fire",
    response_model=FireResponse,
    responses=ERROR_RESPONSES,
    tags=["Kitchen"],
    summary="Fire Order",
)
async def fire_order(
    order_id: int,
    body: StaffAction,
    engine: OrderEngine = Depends(get_order_engine),
) -> FireResponse:
    """Send held items to the kitchen. Items without prep are ready at once."""
    result = await engine.fire_order(order_id, body.staff_id)
    return FireResponse(
        order=OrderResponse.model_validate(result.order),
        sent_to_kitchen=[line.id for line in result.sent_to_kitchen],
        completed_at_fire=[line.id for line in result.completed_at_fire],
        token_number=result.token_number,
        became_ready=result.became_ready,
    )


@app.patch(
    "/api/orders/{order_id}/lines/{line_id}/status",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Kitchen"],
)
async def mark_line_status(
    order_id: int,
    line_id: int,
    body: LineStatusUpdate,
    engine: OrderEngine = Depends(get_order_engine),
) -> OrderResponse:
    order = await engine.mark_line_status(order_id, line_id, LineStatus(body.status), body.staff_id)
    return OrderResponse.model_validate(order)


@app.post("/api/orders/{order_id}/readiness", tags=["Kitchen"], responses=ERROR_RESPONSES)
async def reevaluate_readiness(
    order_id: int,
    engine: OrderEngine = Depends(get_order_engine),
) -> dict[str, bool]:
    return {"became_ready": await engine.reevaluate_readiness(order_id)}


# =============================================================================
# SETTLEMENT ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders/{order_id}/settle",
    response_model=SettlementResponse | DecisionRequiredResponse,
    responses=ERROR_RESPONSES,
    tags=["Settlement"],
    summary="Settle Order",
)
async def settle_order(
    order_id: int,
    body: SettleRequest,
    engine: OrderEngine = Depends(get_order_engine),
) -> SettlementResponse | DecisionRequiredResponse:
    """
    Settle an order.

    If items are still in the kitchen and no override is given, nothing is
    written and the response lists them with ranked recommendations.
    """
    outcome = await engine.settle_order(
        order_id,
        staff_id=body.staff_id,
        payment_method=body.payment_method,
        amount=body.amount,
        override=to_override(body),
    )
    if isinstance(outcome, DecisionRequired):
        return decision_response(outcome)

    return SettlementResponse(
        order=OrderResponse.model_validate(outcome.order),
        transaction=TransactionResponse.model_validate(outcome.transaction),
        change_due=outcome.change_due,
        skipped_line_ids=[line.id for line in outcome.skipped_lines],
        recommendation_followed=outcome.recommendation_followed,
    )


# =============================================================================
# DELIVERY & RIDER ENDPOINTS
# =============================================================================

@app.post(
    "/api/deliveries/dispatch",
    response_model=DispatchResponse,
    responses=ERROR_RESPONSES,
    tags=["Riders"],
)
async def dispatch_to_rider(
    body: DispatchRequest,
    engine: OrderEngine = Depends(get_order_engine),
) -> DispatchResponse:
    result = await engine.dispatch_to_rider(body.order_ids, body.rider_id, body.float_given, body.staff_id)
    return DispatchResponse(
        rider_id=result.rider_id,
        order_ids=[order.id for order in result.orders],
        float_allocation=result.float_allocation,
        liability_added=result.liability_added,
        cash_in_hand=result.cash_in_hand,
    )


@app.post(
    "/api/orders/{order_id}/delivered",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Riders"],
)
async def mark_delivered(
    order_id: int,
    body: StaffAction,
    engine: OrderEngine = Depends(get_order_engine),
) -> OrderResponse:
    return OrderResponse.model_validate(await engine.mark_delivered(order_id, body.staff_id))


@app.post(
    "/api/riders/{rider_id}/settle",
    response_model=RiderSettlementResponse,
    responses=ERROR_RESPONSES,
    tags=["Riders"],
)
async def settle_rider(
    rider_id: int,
    body: RiderSettleRequest,
    engine: OrderEngine = Depends(get_order_engine),
) -> RiderSettlementResponse:
    result = await engine.settle_rider(rider_id, body.order_ids, body.received, body.staff_id, body.notes)
    settlement = result.settlement
    return RiderSettlementResponse(
        settlement_id=settlement.id,
        rider_id=settlement.rider_id,
        expected_amount=settlement.expected_amount,
        received_amount=settlement.received_amount,
        shortage=settlement.shortage,
        order_ids=[order.id for order in result.orders],
        cash_in_hand=result.cash_in_hand,
    )


@app.get("/api/riders/{rider_id}/balance", response_model=RiderBalanceResponse, tags=["Riders"])
async def get_rider_balance(
    rider_id: int,
    engine: OrderEngine = Depends(get_order_engine),
) -> RiderBalanceResponse:
    balance = await engine.get_rider_balance(rider_id)
    return RiderBalanceResponse(
        rider_id=balance.rider_id,
        cash_in_hand=balance.cash_in_hand,
        ledger_balance=balance.ledger_balance,
        outstanding_liability=balance.outstanding_liability,
        total_shortage=balance.total_shortage,
        shift_float_due=balance.shift_float_due,
        outstanding=[
            OutstandingOrderResponse(
                order_id=o.order_id,
                total=o.total,
                float_given=o.float_given,
                liability=o.liability,
                dispatch_status=o.dispatch_status,
            )
            for o in balance.outstanding
        ],
    )


@app.post(
    "/api/riders/shift/open",
    response_model=ShiftActionResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Riders"],
)
async def open_rider_shift(
    body: ShiftOpenRequest,
    engine: OrderEngine = Depends(get_order_engine),
) -> ShiftActionResponse:
    """Start a rider's shift; the opening float is booked on the rider's balance."""
    result = await engine.open_shift(body.rider_id, body.staff_id, body.opening_float, body.notes)
    return ShiftActionResponse(shift=ShiftResponse.model_validate(result.shift), cash_in_hand=result.cash_in_hand)


@app.post(
    "/api/riders/shift/close",
    response_model=ShiftActionResponse,
    responses=ERROR_RESPONSES,
    tags=["Riders"],
)
async def close_rider_shift(
    body: ShiftCloseRequest,
    engine: OrderEngine = Depends(get_order_engine),
) -> ShiftActionResponse:
    result = await engine.close_shift(body.shift_id, body.staff_id, body.closing_cash, body.notes)
    return ShiftActionResponse(shift=ShiftResponse.model_validate(result.shift), cash_in_hand=result.cash_in_hand)


@app.get("/api/riders/{rider_id}/active-shift", response_model=Optional[ShiftResponse], tags=["Riders"])
async def get_active_shift(
    rider_id: int,
    engine: OrderEngine = Depends(get_order_engine),
) -> Optional[ShiftResponse]:
    shift = await engine.get_active_shift(rider_id)
    return ShiftResponse.model_validate(shift) if shift else None


@app.get(
    "/api/riders/shifts/{shift_id}",
    response_model=ShiftSummaryResponse,
    responses=ERROR_RESPONSES,
    tags=["Riders"],
)
async def get_shift_summary(
    shift_id: int,
    engine: OrderEngine = Depends(get_order_engine),
) -> ShiftSummaryResponse:
    summary = await engine.get_shift_summary(shift_id)
    return ShiftSummaryResponse(
        shift=ShiftResponse.model_validate(summary.shift),
        order_count=summary.order_count,
        out_for_delivery=summary.out_for_delivery,
        delivered=summary.delivered,
        settled=summary.settled,
        sales_total=summary.sales_total,
        outstanding_liability=summary.outstanding_liability,
    )


# =============================================================================
# RESOURCE ENDPOINTS
# =============================================================================

@app.post("/api/tables", response_model=TableResponse, status_code=201, responses=ERROR_RESPONSES, tags=["Resources"])
async def create_table(
    body: TableCreate,
    engine: OrderEngine = Depends(get_order_engine),
) -> TableResponse:
    return TableResponse.model_validate(await engine.create_table(body.name, body.capacity))


@app.get("/api/tables", response_model=list[TableResponse], tags=["Resources"])
async def list_tables(engine: OrderEngine = Depends(get_order_engine)) -> list[TableResponse]:
    return [TableResponse.model_validate(table) for table in await engine.list_tables()]


@app.post(
    "/api/tables/{table_id}/cleaned",
    response_model=TableResponse,
    responses=ERROR_RESPONSES,
    tags=["Resources"],
)
async def mark_table_cleaned(
    table_id: int,
    body: StaffAction,
    engine: OrderEngine = Depends(get_order_engine),
) -> TableResponse:
    return TableResponse.model_validate(await engine.mark_table_cleaned(table_id, body.staff_id))


@app.get(
    "/api/resources/{kind}/{resource_id}",
    response_model=ResourceStateResponse,
    responses=ERROR_RESPONSES,
    tags=["Resources"],
)
async def get_resource_state(
    kind: ResourceKind,
    resource_id: int,
    engine: OrderEngine = Depends(get_order_engine),
) -> ResourceStateResponse:
    snapshot = await engine.get_resource_state(kind, resource_id)
    return ResourceStateResponse(**snapshot.to_dict())


@app.get("/api/consistency", response_model=ConsistencyReport, tags=["Resources"])
async def check_consistency(engine: OrderEngine = Depends(get_order_engine)) -> ConsistencyReport:
    """Report invariant violations. Nothing is repaired here."""
    violations = await engine.check_consistency()
    return ConsistencyReport(
        healthy=not violations,
        violation_count=len(violations),
        violations=[ViolationResponse(**v.to_dict()) for v in violations],
        checked_at=utcnow(),
    )


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderEngineError)
async def order_engine_exception_handler(request: Request, exc: OrderEngineError) -> JSONResponse:
    """Typed engine failures become structured 4xx responses."""
    logger.warning(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.message,
            detail=exc.message,
            code=exc.code,
            details=exc.details,
            requires_elevation=isinstance(exc, AuthorizationRequired),
        ).model_dump(mode="json"),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "orderflow.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="info",
    )
