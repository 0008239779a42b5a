"""
shared/events/change_feed.py
Row-change capture for the notification fan-out.

Session hooks record inserted orders, inserted reviews and review moderation
as the unit of work flushes. The records only become events once the
transaction commits; a rollback discards them. Committed events are appended
to a Redis stream, which services/notification/listener.py consumes.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import List

from sqlalchemy import event, inspect
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from config import redis_client as redis_module
from config.settings import settings
from shared.models.models import Order, Review

logger = logging.getLogger(__name__)

PENDING_KEY = "pending_changes"
COMMITTED_KEY = "committed_changes"

NEW_ORDER = "new_order"
NEW_REVIEW = "new_review"
REVIEW_MODERATED = "review_moderated"


@dataclass
class ChangeEvent:
    kind: str
    table: str
    row_id: str
    data: dict = field(default_factory=dict)

    def to_fields(self) -> dict:
        return {
            "kind": self.kind,
            "table": self.table,
            "row_id": self.row_id,
            "data": json.dumps(self.data, default=str),
        }

    @classmethod
    def from_fields(cls, fields: dict) -> "ChangeEvent":
        return cls(
            kind=fields["kind"],
            table=fields["table"],
            row_id=fields["row_id"],
            data=json.loads(fields.get("data") or "{}"),
        )


# ── Capture ───────────────────────────────────────────────────

def _order_inserted(order: Order) -> ChangeEvent:
    return ChangeEvent(
        kind=NEW_ORDER,
        table="orders",
        row_id=str(order.id),
        data={
            "order_id": str(order.id),
            "order_number": order.order_number,
            "user_id": str(order.user_id),
            "total_amount": str(order.total_amount),
            "currency": order.currency,
        },
    )


def _review_data(review: Review) -> dict:
    return {
        "review_id": str(review.id),
        "user_id": str(review.user_id),
        "order_id": str(review.order_id) if review.order_id else None,
        "product_id": str(review.product_id) if review.product_id else None,
        "rating": review.rating,
        "comment": review.comment,
    }


def _moderation_changed(review: Review) -> bool:
    state = inspect(review)
    return any(
        state.attrs[name].history.has_changes()
        for name in ("is_approved", "is_rejected")
    )


@event.listens_for(Session, "after_flush")
def _capture_changes(session: Session, flush_context) -> None:
    captured: List[ChangeEvent] = session.info.setdefault(PENDING_KEY, [])

    for obj in session.new:
        if isinstance(obj, Order):
            captured.append(_order_inserted(obj))
        elif isinstance(obj, Review):
            captured.append(
                ChangeEvent(NEW_REVIEW, "reviews", str(obj.id), _review_data(obj))
            )

    for obj in session.dirty:
        if isinstance(obj, Review) and _moderation_changed(obj):
            data = _review_data(obj)
            data["state"] = obj.moderation_state
            data["moderated_by_id"] = str(obj.moderated_by_id) if obj.moderated_by_id else None
            captured.append(ChangeEvent(REVIEW_MODERATED, "reviews", str(obj.id), data))


@event.listens_for(Session, "after_commit")
def _promote_changes(session: Session) -> None:
    pending = session.info.pop(PENDING_KEY, [])
    if pending:
        session.info.setdefault(COMMITTED_KEY, []).extend(pending)


@event.listens_for(Session, "after_rollback")
def _discard_changes(session: Session) -> None:
    session.info.pop(PENDING_KEY, None)


# ── Publish ───────────────────────────────────────────────────

async def publish_committed_changes(session: AsyncSession) -> int:
    """
    Append committed events to the change stream. Returns how many were written.
    Failures are logged only; the originating transaction is already durable.
    """
    events: List[ChangeEvent] = session.info.pop(COMMITTED_KEY, [])
    if not events:
        return 0

    client = redis_module.redis_client
    if client is None:
        logger.warning("Redis unavailable; dropped %d change events", len(events))
        return 0

    written = 0
    for change in events:
        try:
            await client.xadd(
                settings.FANOUT_STREAM_KEY,
                change.to_fields(),
                maxlen=settings.FANOUT_STREAM_MAXLEN,
                approximate=True,
            )
            written += 1
        except Exception:
            logger.exception("Failed to publish %s for %s", change.kind, change.row_id)
    return written
