"""
services/order/state_machine.py
Order status transitions and their side effects.

    pending → confirmed → preparing → ready → delivering → delivered
    pending | confirmed | preparing → cancelled

delivered and cancelled are terminal. An invalid request raises
InvalidTransitionError before anything is touched.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List

from sqlalchemy.ext.asyncio import AsyncSession

from services.notification import service as notifications
from services.points import service as ledger
from shared.exceptions import InvalidTransitionError
from shared.models.models import (
    Notification,
    NotificationType,
    Order,
    OrderStatus,
    PointsType,
    User,
)

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.DELIVERING}),
    OrderStatus.DELIVERING: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

ACTIVE_STATUSES = frozenset(
    {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PREPARING,
     OrderStatus.READY, OrderStatus.DELIVERING}
)


@dataclass
class TransitionResult:
    order: Order
    previous: OrderStatus
    # Staged for the owner; pushed to their devices once the caller commits
    notifications: List[Notification] = field(default_factory=list)


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


async def _reverse_points(db: AsyncSession, order: Order) -> None:
    """
    Give back redeemed points and take back earned ones. The earned reversal
    is capped at what is left so the balance never goes below zero.
    """
    if not order.points_used and not order.points_earned:
        return

    balance = await ledger.get_balance(db, order.user_id, for_update=True)
    if order.points_used:
        await ledger.post_entry(
            db, order.user_id, order.points_used, PointsType.USED,
            f"Returned from cancelled order {order.order_number}", order.id,
        )
        balance += order.points_used

    clawback = min(order.points_earned, balance)
    if clawback:
        await ledger.post_entry(
            db, order.user_id, -clawback, PointsType.EARNED,
            f"Reversed for cancelled order {order.order_number}", order.id,
        )
    if clawback < order.points_earned:
        logger.warning(
            "Order %s: only %d of %d earned points could be reversed",
            order.order_number, clawback, order.points_earned,
        )


async def transition(
    db: AsyncSession, order: Order, new_status: OrderStatus, actor: User
) -> TransitionResult:
    current = order.status
    if not can_transition(current, new_status):
        raise InvalidTransitionError(current.value, OrderStatus(new_status).value)

    now = datetime.now(timezone.utc)
    order.status = new_status
    if new_status == OrderStatus.CONFIRMED:
        order.confirmed_at = now
    elif new_status == OrderStatus.DELIVERED:
        order.delivered_at = now
    elif new_status == OrderStatus.CANCELLED:
        order.cancelled_at = now
        await _reverse_points(db, order)

    result = TransitionResult(order=order, previous=current)

    title, body = notifications.order_status_message(new_status, order.order_number)
    result.notifications.append(
        notifications.add_notification(
            db, order.user_id, NotificationType.ORDER_STATUS, title, body, order.id,
            {"order_id": str(order.id), "status": new_status.value},
        )
    )

    if new_status == OrderStatus.DELIVERED:
        # Opens the order's products for review
        result.notifications.append(
            notifications.add_notification(
                db, order.user_id, NotificationType.REVIEW_REQUEST,
                "⭐ How was your order?",
                f"Tell us what you thought of order {order.order_number}.",
                order.id,
                {"order_id": str(order.id)},
            )
        )

    await db.flush()
    logger.info(
        "Order %s: %s -> %s by %s", order.order_number, current.value, new_status.value, actor.id
    )
    return result
