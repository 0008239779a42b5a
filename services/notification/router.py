"""
services/notification/router.py
In-app notification inbox, device push-token registration, and the live
WebSocket stream fed by the Redis relay.
"""

import asyncio
import logging
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from jose import JWTError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import database
from config import redis_client as redis_module
from config.database import get_db
from config.redis_client import RedisCache
from config.settings import settings
from services.notification import service as notifications
from shared.middleware.auth import get_current_user
from shared.models.models import Notification, PushToken, User, UserRole
from shared.schemas.schemas import (
    MessageResponse,
    NotificationResponse,
    PushTokenRegisterRequest,
    PushTokenResponse,
    UnreadCountResponse,
)
from shared.utils.security import verify_access_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ── Inbox ─────────────────────────────────────────────────────

@router.get("", response_model=list[NotificationResponse])
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's in-app notifications, newest first."""
    query = (
        select(Notification)
        .where(Notification.user_id == current_user.id)
        .order_by(Notification.created_at.desc())
    )
    if unread_only:
        query = query.where(Notification.is_read.is_(False))

    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [NotificationResponse.model_validate(n) for n in result.scalars()]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == current_user.id,
            Notification.is_read.is_(False),
        )
    )
    return UnreadCountResponse(unread=count or 0)


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == current_user.id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return MessageResponse(message="All notifications marked as read")


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Idempotent. Someone else's notification looks like a missing one."""
    changed = await notifications.mark_read(db, current_user.id, notification_id)
    if not changed:
        exists = await db.scalar(
            select(Notification.id).where(
                Notification.id == notification_id, Notification.user_id == current_user.id
            )
        )
        if exists is None:
            raise HTTPException(status_code=404, detail="Notification not found")
    await db.commit()
    return MessageResponse(message="Marked as read")


# ── Push tokens ───────────────────────────────────────────────

@router.post("/push-tokens", response_model=PushTokenResponse, status_code=status.HTTP_201_CREATED)
async def register_push_token(
    data: PushTokenRegisterRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Called by the app on launch and whenever FCM rotates the token."""
    token = await notifications.upsert_push_token(db, current_user.id, data.token, data.device_type)
    await db.commit()
    return PushTokenResponse.model_validate(token)


@router.delete("/push-tokens/{token}", response_model=MessageResponse)
async def unregister_push_token(
    token: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Called on logout so the device stops receiving pushes for this account."""
    await db.execute(
        update(PushToken)
        .where(PushToken.token == token, PushToken.user_id == current_user.id)
        .values(is_active=False)
    )
    await db.commit()
    return MessageResponse(message="Push token removed")


# ── Live stream ───────────────────────────────────────────────

async def _authenticate_socket(token: str):
    try:
        payload = verify_access_token(token)
    except JWTError:
        return None
    client = redis_module.redis_client
    if client is not None and await RedisCache(client).is_token_revoked(payload.get("jti", "")):
        return None
    async with database.AsyncSessionLocal() as db:
        user = await db.get(User, UUID(payload["sub"]))
    if user is None or not user.is_active or user.is_deleted:
        return None
    return user


@router.websocket("/stream")
async def notification_stream(websocket: WebSocket, token: str = Query(...)):
    """
    Push in-app notifications to a foregrounded app as JSON messages.
    Staff also receive the shared staff channel (new orders, new reviews).
    Missed messages are not replayed; the inbox endpoint is the source of truth.
    """
    user = await _authenticate_socket(token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    client = redis_module.redis_client
    if client is None:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    await websocket.accept()
    channels = [notifications.user_channel(user.id)]
    if user.role == UserRole.ADMIN:
        channels.append(settings.INAPP_CHANNEL)

    pubsub = client.pubsub()
    await pubsub.subscribe(*channels)

    async def relay():
        async for message in pubsub.listen():
            if message.get("type") == "message":
                await websocket.send_text(message["data"])

    async def drain():
        # Clients do not send anything meaningful; this only notices the disconnect
        while True:
            await websocket.receive_text()

    tasks = [asyncio.create_task(relay()), asyncio.create_task(drain())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Notification stream for %s ended: %s", user.id, exc)
    finally:
        for task in tasks:
            task.cancel()
        await pubsub.unsubscribe(*channels)
        await pubsub.aclose()
