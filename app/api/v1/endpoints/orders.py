from typing import Optional, List
import uuid
from math import ceil

from fastapi import APIRouter, HTTPException, status, Query, Body

from app.api.deps import DB, SessionFactory, CurrentActor, AdminActor, ClockDep, OrderScheduler
from app.core.actor import Actor
from app.models.order import Order, OrderStatus
from app.schemas.audit import AuditEntryResponse
from app.schemas.order import (
    OrderCreate,
    OrderStatusUpdate,
    PaymentResultUpdate,
    OrderResponse,
    OrderDetailResponse,
    OrderListResponse,
    SchedulerStatusResponse,
)
from app.services.audit_service import AuditService
from app.services.order_service import OrderService


router = APIRouter(tags=["Orders"])


def _build_order_response(order: Order) -> OrderResponse:
    """Build OrderResponse from Order model."""
    return OrderResponse.model_validate(order)


def _build_order_detail_response(order: Order) -> OrderDetailResponse:
    """Build OrderDetailResponse from Order model (items and history must be loaded)."""
    return OrderDetailResponse.model_validate(order)


def _build_list_response(orders: List[Order], total: int, page: int, size: int) -> OrderListResponse:
    return OrderListResponse(
        items=[_build_order_response(o) for o in orders],
        total=total,
        page=page,
        size=size,
        pages=ceil(total / size) if total > 0 else 1,
    )


async def _get_accessible_order(service: OrderService, order_id: uuid.UUID, actor: Actor) -> Order:
    order = await service.get_order(order_id)
    if not order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found"
        )
    if not actor.can_access(order.user_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to access this order"
        )
    return order


# ==================== SCHEDULER ====================

@router.get("/scheduler/status", response_model=SchedulerStatusResponse)
async def get_scheduler_status(
    admin: AdminActor,
    order_scheduler: OrderScheduler,
):
    """Get automatic transition scheduler state."""
    return SchedulerStatusResponse(**order_scheduler.get_status())


@router.post("/scheduler/run")
async def run_scheduler_tick(
    admin: AdminActor,
    order_scheduler: OrderScheduler,
):
    """Run one automatic transition pass now."""
    result = await order_scheduler.run_tick()
    return result.to_dict()


# ==================== ORDERS ====================

@router.post(
    "",
    response_model=OrderDetailResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_order(
    data: OrderCreate,
    db: DB,
    session_factory: SessionFactory,
    actor: CurrentActor,
    clock: ClockDep,
):
    """
    Create a new order.

    Stock for every line is validated and reserved; if the order cannot be
    written the reservation is released before the error is returned.
    """
    service = OrderService(db, session_factory, clock)
    order = await service.create_order(data, actor)
    return _build_order_detail_response(order)


@router.get("", response_model=OrderListResponse)
async def list_orders(
    db: DB,
    admin: AdminActor,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = Query(None),
    user_id: Optional[str] = Query(None),
):
    """
    Get paginated list of orders.
    Requires: admin
    """
    service = OrderService(db)
    orders, total = await service.list_orders(status=status, user_id=user_id, page=page, size=size)
    return _build_list_response(orders, total, page, size)


@router.get("/mine", response_model=OrderListResponse)
async def list_my_orders(
    db: DB,
    actor: CurrentActor,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = Query(None),
):
    """Get the caller's own orders."""
    service = OrderService(db)
    orders, total = await service.list_orders(status=status, user_id=actor.id, page=page, size=size)
    return _build_list_response(orders, total, page, size)


@router.get("/number/{order_number}", response_model=OrderDetailResponse)
async def get_order_by_number(
    order_number: str,
    db: DB,
    actor: CurrentActor,
):
    """Get order details by order number."""
    service = OrderService(db)
    order = await service.get_order_by_number(order_number)

    if not order or not actor.can_access(order.user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found"
        )

    return _build_order_detail_response(order)


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: uuid.UUID,
    db: DB,
    actor: CurrentActor,
):
    """Get order details by ID."""
    service = OrderService(db)
    order = await _get_accessible_order(service, order_id, actor)
    return _build_order_detail_response(order)


@router.get("/{order_id}/history", response_model=List[AuditEntryResponse])
async def get_order_history(
    order_id: uuid.UUID,
    db: DB,
    session_factory: SessionFactory,
    admin: AdminActor,
    limit: int = Query(50, ge=1, le=200),
):
    """Get the order's audit trail, newest first."""
    order = await OrderService(db).get_order(order_id)
    if not order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found"
        )

    audit = AuditService(session_factory, db=db)
    return await audit.get_formatted_order_history(order_id, limit)


@router.put("/{order_id}/pay", response_model=OrderDetailResponse)
async def mark_order_paid(
    order_id: uuid.UUID,
    db: DB,
    session_factory: SessionFactory,
    actor: CurrentActor,
    clock: ClockDep,
    payment_result: Optional[PaymentResultUpdate] = Body(None),
):
    """Mark an order as paid."""
    service = OrderService(db, session_factory, clock)
    await _get_accessible_order(service, order_id, actor)

    order = await service.mark_paid(
        order_id,
        actor,
        payment_result=payment_result.model_dump(exclude_none=True) if payment_result else None,
    )
    return _build_order_detail_response(order)


@router.put("/{order_id}/deliver", response_model=OrderDetailResponse)
async def mark_order_delivered(
    order_id: uuid.UUID,
    db: DB,
    session_factory: SessionFactory,
    admin: AdminActor,
    clock: ClockDep,
):
    """
    Confirm delivery.
    Requires: admin; order must be delivering
    """
    service = OrderService(db, session_factory, clock)
    order = await service.mark_delivered(order_id, admin)
    return _build_order_detail_response(order)


@router.put("/{order_id}/status", response_model=OrderDetailResponse)
async def update_order_status(
    order_id: uuid.UUID,
    data: OrderStatusUpdate,
    db: DB,
    session_factory: SessionFactory,
    admin: AdminActor,
    clock: ClockDep,
):
    """
    Change order status.
    Requires: admin

    cancelled and refunded return the items to stock.
    """
    service = OrderService(db, session_factory, clock)
    order = await service.change_status(order_id, data.status, admin, notes=data.notes)
    return _build_order_detail_response(order)
