"""
services/notification/dispatcher.py
Staff fan-out: turns a domain event into an in-app notification for every
admin and one push batch to every active admin device.

dispatch() never raises. Each stage is isolated; its failure is logged,
counted and reported, and the remaining stages still run.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from prometheus_client import Counter

from config.database import AsyncSessionLocal
from config.settings import settings
from services.notification import service as notifications
from services.notification.push import FirebasePushGateway, PushResult, build_message
from shared.events.change_feed import NEW_ORDER, NEW_REVIEW, REVIEW_MODERATED, ChangeEvent
from shared.models.models import NotificationType

logger = logging.getLogger(__name__)

PUSH_FAILURES = Counter(
    "fanout_push_failures_total",
    "Per-token push delivery failures",
    ["routing_type"],
)
DISPATCHES = Counter(
    "fanout_dispatches_total",
    "Events dispatched to staff",
    ["routing_type"],
)

NOTIFICATION_TYPES = {
    "new_order": NotificationType.NEW_ORDER,
    "new_review": NotificationType.NEW_REVIEW,
    "review_moderated": NotificationType.REVIEW_MODERATED,
    "order_status": NotificationType.ORDER_STATUS,
    "review_request": NotificationType.REVIEW_REQUEST,
    "broadcast": NotificationType.BROADCAST,
}


@dataclass
class DispatchEvent:
    title: str
    body: str
    routing_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    push: bool = True


@dataclass
class DispatchReport:
    recipients: int = 0
    inapp_created: int = 0
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    deactivated: int = 0
    errors: List[str] = field(default_factory=list)
    # Devices that failed for a transient reason; worth another attempt
    retry_tokens: List[str] = field(default_factory=list)


def _as_uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def event_from_change(change: ChangeEvent) -> Optional[DispatchEvent]:
    """Map a committed row change to the staff notification it produces."""
    data = change.data
    if change.kind == NEW_ORDER:
        return DispatchEvent(
            title="🔔 New Order!",
            body=f"{data.get('order_number')} - {data.get('total_amount')} {data.get('currency')}",
            routing_type="new_order",
            data={"order_id": data.get("order_id"), "order_number": data.get("order_number")},
        )
    if change.kind == NEW_REVIEW:
        target = "product" if data.get("product_id") else "restaurant"
        return DispatchEvent(
            title="⭐ New Review",
            body=f"New {data.get('rating')}-star {target} review awaiting moderation",
            routing_type="new_review",
            data={"review_id": data.get("review_id")},
        )
    if change.kind == REVIEW_MODERATED:
        return DispatchEvent(
            title="Review moderated",
            body=f"Review {data.get('review_id')} was {data.get('state')}",
            routing_type="review_moderated",
            data={"review_id": data.get("review_id"), "state": data.get("state")},
            push=False,
        )
    logger.debug("No dispatch for change kind %s", change.kind)
    return None


class NotificationDispatcher:

    def __init__(
        self,
        session_factory: Callable = AsyncSessionLocal,
        gateway: Optional[Any] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway or FirebasePushGateway()

    async def dispatch(self, event: DispatchEvent) -> DispatchReport:
        report = DispatchReport()
        tokens: List[str] = []

        if event.push:
            try:
                async with self.session_factory() as db:
                    tokens = await notifications.admin_push_tokens(db)
            except Exception as exc:
                logger.exception("Admin token lookup failed for %s", event.routing_type)
                report.errors.append(f"tokens: {exc}")

        try:
            await self._record_inapp(event, report)
        except Exception as exc:
            logger.exception("In-app notifications failed for %s", event.routing_type)
            report.errors.append(f"inapp: {exc}")

        try:
            await notifications.publish_inapp(
                settings.INAPP_CHANNEL,
                {"type": event.routing_type, "title": event.title, "body": event.body, "data": event.data},
            )
        except Exception as exc:
            logger.exception("In-app relay failed for %s", event.routing_type)
            report.errors.append(f"relay: {exc}")

        if event.push and tokens:
            try:
                await self._push(event, tokens, report)
            except Exception as exc:
                logger.exception("Push fan-out failed for %s", event.routing_type)
                report.errors.append(f"push: {exc}")

        DISPATCHES.labels(routing_type=event.routing_type).inc()
        logger.info(
            "Dispatched %s to %d staff: %d sent, %d failed, %d deactivated",
            event.routing_type, report.recipients, report.sent, report.failed, report.deactivated,
        )
        return report

    async def _record_inapp(self, event: DispatchEvent, report: DispatchReport) -> None:
        """Write one Notification per admin."""
        notification_type = NOTIFICATION_TYPES.get(event.routing_type, NotificationType.GENERAL)
        async with self.session_factory() as db:
            admin_ids = await notifications.active_admin_ids(db)
            for admin_id in admin_ids:
                notifications.add_notification(
                    db,
                    admin_id,
                    notification_type,
                    event.title,
                    event.body,
                    order_id=_as_uuid(event.data.get("order_id")),
                    data=event.data,
                )
            await db.commit()

        report.recipients = len(admin_ids)
        report.inapp_created = len(admin_ids)

    async def _push(self, event: DispatchEvent, tokens: List[str], report: DispatchReport) -> None:
        messages = [
            build_message(token, event.title, event.body, event.routing_type, event.data)
            for token in tokens
        ]
        results: List[PushResult] = await self.gateway.send_batch(messages)

        report.attempted = len(results)
        unregistered = []
        for result in results:
            if result.success:
                report.sent += 1
                continue
            report.failed += 1
            PUSH_FAILURES.labels(routing_type=event.routing_type).inc()
            logger.warning("Push to token %s... failed: %s", result.token[:12], result.error)
            if result.unregistered:
                unregistered.append(result.token)
            else:
                report.retry_tokens.append(result.token)

        if unregistered:
            async with self.session_factory() as db:
                report.deactivated = await notifications.deactivate_tokens(db, unregistered)
                await db.commit()

    async def push_to_users(
        self,
        user_ids: List[uuid.UUID],
        event: DispatchEvent,
        tokens: Optional[List[str]] = None,
        relay: bool = True,
    ) -> DispatchReport:
        """
        Deliver an already-recorded notification to specific users' devices and
        foregrounded sessions. Never raises.

        With ``tokens`` given only those devices are pushed. A retry passes the
        previous report's ``retry_tokens`` with ``relay=False`` so devices and
        sessions that already got the message are left alone.
        """
        report = DispatchReport(recipients=len(user_ids))
        if relay:
            for user_id in user_ids:
                await notifications.publish_inapp(
                    notifications.user_channel(user_id),
                    {"type": event.routing_type, "title": event.title, "body": event.body, "data": event.data},
                )

        try:
            if tokens is None:
                async with self.session_factory() as db:
                    tokens = await notifications.user_push_tokens(db, user_ids)
            if tokens:
                await self._push(event, tokens, report)
        except Exception as exc:
            logger.exception("Push to %d users failed for %s", len(user_ids), event.routing_type)
            report.errors.append(f"push: {exc}")
        return report
