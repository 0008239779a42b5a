"""
services/admin/router.py
Admin-only endpoints: points adjustments, earn-rule settings, broadcasts,
today's dashboard, the unsettled-payments queue, user moderation, and the
immutable audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.order.service import today_stats
from services.points import service as ledger
from shared.middleware.auth import require_admin
from shared.models.models import AdminAuditLog, Payment, PaymentStatus, User, UserRole
from shared.schemas.schemas import (
    AuditLogResponse,
    BroadcastRequest,
    MessageResponse,
    PaymentResponse,
    PointsAdjustRequest,
    PointsHistoryResponse,
    SettingResponse,
    SettingUpdateRequest,
    TodayStatsResponse,
    UserSuspendRequest,
)
from shared.utils.audit import record_admin_action

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


async def _get_user(db: AsyncSession, user_id: UUID) -> User:
    user = await db.get(User, user_id)
    if not user or user.is_deleted:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# ── Points ─────────────────────────────────────────────────────────────────────

@router.post("/points/adjust", response_model=PointsHistoryResponse, status_code=status.HTTP_201_CREATED)
async def adjust_points(
    data: PointsAdjustRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Goodwill credit or correction. A debit can never take the balance below zero."""
    await _get_user(db, data.user_id)
    entry = await ledger.adjust(db, data.user_id, data.delta, data.description)
    record_admin_action(
        db, current_user, "ADJUST_POINTS", "user", data.user_id,
        {"delta": data.delta, "description": data.description},
        request,
    )
    await db.commit()
    return PointsHistoryResponse.model_validate(entry)


# ── Settings ───────────────────────────────────────────────────────────────────

@router.get("/settings", response_model=list[SettingResponse])
async def get_points_settings(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Effective earn-rule values; is_default marks those still coming from the environment."""
    return [SettingResponse(**row) for row in await ledger.list_settings(db)]


@router.put("/settings/{key}", response_model=SettingResponse)
async def update_points_setting(
    key: str,
    data: SettingUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Takes effect on the next quote; orders already settled keep what they earned."""
    previous, setting = await ledger.update_setting(db, key, data.value, current_user.id)
    record_admin_action(
        db, current_user, "UPDATE_SETTING", "setting", key,
        {"previous": previous, "value": setting.value},
        request,
    )
    await db.commit()
    return SettingResponse(
        key=key,
        value=data.value,
        description=ledger.SETTING_DESCRIPTIONS[key],
        is_default=False,
        updated_at=setting.updated_at,
    )


# ── Broadcast ──────────────────────────────────────────────────────────────────

@router.post("/broadcast", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
async def broadcast(
    data: BroadcastRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Promotion to every active customer: an inbox entry plus a push, written by a worker."""
    from tasks.notification_tasks import broadcast_to_customers

    record_admin_action(db, current_user, "BROADCAST", "notification", None, {"title": data.title}, request)
    await db.commit()
    try:
        broadcast_to_customers.delay(data.title, data.body, data.data or {})
    except Exception:
        logger.exception("Could not queue broadcast '%s'", data.title)
        raise HTTPException(status_code=503, detail="Broadcast could not be queued")
    return MessageResponse(message="Broadcast queued")


# ── Dashboard ──────────────────────────────────────────────────────────────────

@router.get("/stats/today", response_model=TodayStatsResponse)
async def stats_today(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Counts since UTC midnight; revenue per currency excludes cancelled orders."""
    return TodayStatsResponse(**await today_stats(db))


@router.get("/payments/unsettled", response_model=list[PaymentResponse])
async def unsettled_payments(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Charged payments with no order. Rows at RECONCILE_MAX_ATTEMPTS are no
    longer retried by the sweep and need a refund or manual settlement.
    """
    result = await db.execute(
        select(Payment)
        .where(Payment.status == PaymentStatus.SUCCEEDED, Payment.order_id.is_(None))
        .order_by(Payment.settlement_attempts.desc(), Payment.paid_at.asc())
    )
    return [PaymentResponse.model_validate(p) for p in result.scalars()]


# ── User Moderation ────────────────────────────────────────────────────────────

@router.post("/users/{user_id}/suspend", response_model=MessageResponse)
async def suspend_user(
    user_id: UUID,
    data: UserSuspendRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Deactivate a customer account. Admins cannot be suspended."""
    user = await _get_user(db, user_id)
    if user.role == UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Cannot suspend admin users")
    if not user.is_active:
        raise HTTPException(status_code=409, detail="User is already suspended")

    user.is_active = False
    record_admin_action(db, current_user, "SUSPEND_USER", "user", user_id, {"reason": data.reason}, request)
    await db.commit()
    return MessageResponse(message="User suspended")


@router.post("/users/{user_id}/reactivate", response_model=MessageResponse)
async def reactivate_user(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await _get_user(db, user_id)
    user.is_active = True
    record_admin_action(db, current_user, "REACTIVATE_USER", "user", user_id, {}, request)
    await db.commit()
    return MessageResponse(message="User reactivated")


# ── Audit Log ─────────────────────────────────────────────────────────────────

@router.get("/audit-logs", response_model=list[AuditLogResponse])
async def get_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action type e.g. UPDATE_ORDER_STATUS"),
    entity_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(AdminAuditLog).order_by(AdminAuditLog.created_at.desc())
    if action:
        query = query.where(AdminAuditLog.action == action)
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return [AuditLogResponse.model_validate(log) for log in result.scalars()]
