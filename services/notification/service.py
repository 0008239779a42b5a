"""
services/notification/service.py
In-app notification records, push token bookkeeping, and the Redis relay
used by the WebSocket stream.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import redis_client as redis_module
from config.redis_client import RedisCache
from config.settings import settings
from shared.models.models import (
    Notification,
    NotificationType,
    OrderStatus,
    PushToken,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)


# ── Templates ─────────────────────────────────────────────────

ORDER_STATUS_TEMPLATES = {
    OrderStatus.PENDING: ("⏳ Order Received", "Order {order_number} has been received."),
    OrderStatus.CONFIRMED: ("👍 Order Confirmed", "Order {order_number} has been confirmed."),
    OrderStatus.PREPARING: ("👨‍🍳 Order Being Prepared", "Order {order_number} is being prepared."),
    OrderStatus.READY: ("✅ Order Ready", "Order {order_number} is ready and about to head out."),
    OrderStatus.DELIVERING: ("🚚 Order On The Way", "Order {order_number} is on its way to you!"),
    OrderStatus.DELIVERED: ("🎉 Order Delivered", "Order {order_number} has been delivered. Enjoy!"),
    OrderStatus.CANCELLED: ("❌ Order Cancelled", "Order {order_number} has been cancelled."),
}


def order_status_message(status: OrderStatus, order_number: str) -> tuple[str, str]:
    title, body = ORDER_STATUS_TEMPLATES.get(
        status, ("Order Updated", "Order {order_number} was updated.")
    )
    return title, body.format(order_number=order_number)


# ── In-app ────────────────────────────────────────────────────

def add_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    type: NotificationType,
    title: str,
    body: str,
    order_id: Optional[uuid.UUID] = None,
    data: Optional[dict] = None,
) -> Notification:
    """Stage a Notification row in the caller's transaction."""
    notification = Notification(
        user_id=user_id,
        order_id=order_id,
        type=type,
        title=title,
        body=body,
        data=data,
    )
    db.add(notification)
    return notification


def inapp_payload(notification: Notification) -> dict:
    return {
        "id": str(notification.id),
        "type": notification.type.value,
        "title": notification.title,
        "body": notification.body,
        "order_id": str(notification.order_id) if notification.order_id else None,
        "data": notification.data or {},
    }


async def publish_inapp(channel: str, payload: dict) -> int:
    """Relay to foregrounded sessions. Best-effort: failures are logged and 0 is returned."""
    client = redis_module.redis_client
    if client is None:
        return 0
    try:
        return await RedisCache(client).publish_json(channel, payload)
    except Exception:
        logger.exception("In-app publish to %s failed", channel)
        return 0


def user_channel(user_id: uuid.UUID) -> str:
    return f"{settings.INAPP_USER_CHANNEL_PREFIX}{user_id}"


async def mark_read(db: AsyncSession, user_id: uuid.UUID, notification_id: uuid.UUID) -> bool:
    result = await db.execute(
        update(Notification)
        .where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
            Notification.is_read.is_(False),
        )
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    return result.rowcount > 0


# ── Recipients & Tokens ───────────────────────────────────────

async def active_admin_ids(db: AsyncSession) -> List[uuid.UUID]:
    result = await db.execute(
        select(User.id).where(
            User.role == UserRole.ADMIN,
            User.is_active.is_(True),
            User.deleted_at.is_(None),
        )
    )
    return list(result.scalars().all())


async def admin_push_tokens(db: AsyncSession) -> List[str]:
    result = await db.execute(
        select(PushToken.token)
        .join(User, User.id == PushToken.user_id)
        .where(
            PushToken.is_active.is_(True),
            User.role == UserRole.ADMIN,
            User.is_active.is_(True),
            User.deleted_at.is_(None),
        )
    )
    return list(result.scalars().all())


async def user_push_tokens(db: AsyncSession, user_ids: Iterable[uuid.UUID]) -> List[str]:
    result = await db.execute(
        select(PushToken.token).where(
            PushToken.user_id.in_(list(user_ids)),
            PushToken.is_active.is_(True),
        )
    )
    return list(result.scalars().all())


async def upsert_push_token(
    db: AsyncSession, user_id: uuid.UUID, token: str, device_type: str
) -> PushToken:
    """
    Register a device token. The token is the key: re-registering moves it to
    the caller and reactivates it. Concurrent writers race; the last one wins.
    """
    now = datetime.now(timezone.utc)
    existing = await db.scalar(select(PushToken).where(PushToken.token == token))
    if existing is None:
        push_token = PushToken(
            user_id=user_id,
            token=token,
            device_type=device_type,
            is_active=True,
            last_used_at=now,
        )
        try:
            async with db.begin_nested():
                db.add(push_token)
                await db.flush()
            return push_token
        except IntegrityError:
            # Another registration inserted the same token first; only the
            # savepoint is rolled back, the rest of the session is untouched
            existing = await db.scalar(select(PushToken).where(PushToken.token == token))

    existing.user_id = user_id
    existing.device_type = device_type
    existing.is_active = True
    existing.last_used_at = now
    await db.flush()
    return existing


async def deactivate_tokens(db: AsyncSession, tokens: Iterable[str]) -> int:
    tokens = list(tokens)
    if not tokens:
        return 0
    result = await db.execute(
        update(PushToken).where(PushToken.token.in_(tokens)).values(is_active=False)
    )
    return result.rowcount
