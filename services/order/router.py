"""
services/order/router.py
Order history for customers, the live order board for staff, and status
transitions. Orders are only ever created by checkout settlement.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.order import state_machine
from services.order.state_machine import ACTIVE_STATUSES
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import Order, OrderStatus, User, UserRole
from shared.schemas.schemas import OrderResponse, OrderStatusUpdateRequest
from shared.utils.audit import record_admin_action
from tasks.notification_tasks import queue_push

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.get("/me", response_model=list[OrderResponse])
async def my_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Order)
        .where(Order.user_id == current_user.id)
        .order_by(Order.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [OrderResponse.model_validate(o) for o in result.scalars()]


@router.get("", response_model=list[OrderResponse])
async def list_orders(
    status: Optional[OrderStatus] = Query(None),
    active_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Staff order board, oldest active orders first."""
    query = select(Order)
    if status:
        query = query.where(Order.status == status)
    elif active_only:
        query = query.where(Order.status.in_(ACTIVE_STATUSES))
    query = query.order_by(
        Order.created_at.asc() if active_only else Order.created_at.desc()
    )
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return [OrderResponse.model_validate(o) for o in result.scalars()]


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    order = await db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.user_id != current_user.id and current_user.role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Not your order")
    return OrderResponse.model_validate(order)


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: UUID,
    data: OrderStatusUpdateRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Staff drive the order through the kitchen and delivery states.
    A customer may only cancel their own order while it is still pending.
    """
    result = await db.execute(select(Order).where(Order.id == order_id).with_for_update())
    order = result.scalar_one_or_none()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    is_admin = current_user.role == UserRole.ADMIN
    if not is_admin:
        if order.user_id != current_user.id:
            raise HTTPException(status_code=403, detail="Not your order")
        if data.status != OrderStatus.CANCELLED or order.status != OrderStatus.PENDING:
            raise HTTPException(
                status_code=403, detail="Only pending orders can be cancelled by the customer"
            )

    outcome = await state_machine.transition(db, order, data.status, current_user)
    if is_admin:
        record_admin_action(
            db, current_user, "UPDATE_ORDER_STATUS", "order", order.id,
            {"from": outcome.previous.value, "to": order.status.value},
            request,
        )
    await db.commit()

    for notification in outcome.notifications:
        queue_push([order.user_id], notification)
    return OrderResponse.model_validate(order)
