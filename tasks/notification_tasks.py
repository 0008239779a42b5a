"""
tasks/notification_tasks.py
Celery tasks for push delivery to customers.

The Notification rows are written by the domain transaction that caused
them; these tasks only deliver to devices and live sessions, after commit.

Usage from a route, once the transaction is committed:
    from tasks.notification_tasks import queue_push
    queue_push([order.user_id], notification)
"""

import logging
import uuid
from typing import Iterable, List, Optional

from sqlalchemy import select

from services.notification.dispatcher import DispatchEvent, NotificationDispatcher
from services.notification.push import FirebasePushGateway
from shared.models.models import Notification, NotificationType, User, UserRole
from tasks.celery_app import AsyncDatabaseTask, celery_app

logger = logging.getLogger(__name__)

ROUTING_BY_TYPE = {
    NotificationType.ORDER_STATUS: "order_status",
    NotificationType.REVIEW_REQUEST: "review_request",
    NotificationType.POINTS_EARNED: "points_earned",
    NotificationType.BROADCAST: "broadcast",
}


def queue_push(user_ids: Iterable[uuid.UUID], notification: Notification) -> None:
    """Hand a committed notification to the workers. Broker trouble is logged, never raised."""
    try:
        push_to_users.delay(
            user_ids=[str(u) for u in user_ids],
            title=notification.title,
            body=notification.body,
            routing_type=ROUTING_BY_TYPE.get(notification.type, "default"),
            data={**(notification.data or {}), "notification_id": str(notification.id)},
        )
    except Exception:
        logger.exception("Could not queue push for notification %s", notification.id)


# ── Delivery ──────────────────────────────────────────────────────────────────

async def _push_to_users(
    session_factory,
    user_ids: List[str],
    event: DispatchEvent,
    tokens: Optional[List[str]] = None,
    relay: bool = True,
):
    dispatcher = NotificationDispatcher(session_factory, FirebasePushGateway())
    return await dispatcher.push_to_users(
        [uuid.UUID(u) for u in user_ids], event, tokens=tokens, relay=relay
    )


@celery_app.task(bind=True, base=AsyncDatabaseTask, max_retries=3, default_retry_delay=60)
def push_to_users(
    self,
    user_ids: List[str],
    title: str,
    body: str,
    routing_type: str,
    data: Optional[dict] = None,
    tokens: Optional[List[str]] = None,
):
    """
    Push one notification to every active device of the given users.
    Retries cover only the devices that failed; live sessions are relayed on
    the first attempt alone.
    """
    event = DispatchEvent(title=title, body=body, routing_type=routing_type, data=data or {})
    first_attempt = self.request.retries == 0
    report = self.run_async(_push_to_users, user_ids, event, tokens, first_attempt)

    if report.errors or report.retry_tokens:
        if self.request.retries < self.max_retries:
            raise self.retry(
                kwargs={
                    "user_ids": user_ids,
                    "title": title,
                    "body": body,
                    "routing_type": routing_type,
                    "data": data,
                    # A failed attempt gets the same devices again
                    "tokens": tokens if report.errors else report.retry_tokens,
                },
                countdown=60 * (2 ** self.request.retries),
            )
        logger.warning(
            "Giving up on %s push to %d devices after %d retries",
            routing_type, len(report.retry_tokens), self.request.retries,
        )
    return {"sent": report.sent, "failed": report.failed, "deactivated": report.deactivated}


# ── Broadcast ─────────────────────────────────────────────────────────────────

async def _broadcast(session_factory, title: str, body: str, data: dict) -> int:
    """Notification row for every active customer, then one push fan-out."""
    from services.notification import service as notifications

    async with session_factory() as db:
        result = await db.execute(
            select(User.id).where(
                User.role == UserRole.CUSTOMER,
                User.is_active.is_(True),
                User.deleted_at.is_(None),
            )
        )
        user_ids = list(result.scalars().all())
        for user_id in user_ids:
            notifications.add_notification(
                db, user_id, NotificationType.BROADCAST, title, body, data=data
            )
        await db.commit()

    if user_ids:
        event = DispatchEvent(title=title, body=body, routing_type="broadcast", data=data)
        dispatcher = NotificationDispatcher(session_factory, FirebasePushGateway())
        await dispatcher.push_to_users(user_ids, event)
    logger.info("Broadcast '%s' to %d customers", title, len(user_ids))
    return len(user_ids)


@celery_app.task(bind=True, base=AsyncDatabaseTask, max_retries=1)
def broadcast_to_customers(self, title: str, body: str, data: Optional[dict] = None):
    return self.run_async(_broadcast, title, body, data or {})
