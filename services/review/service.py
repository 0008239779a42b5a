"""
services/review/service.py
Review submission and moderation.

A review starts pending (is_approved = is_rejected = False). Moderators move it
to approved or rejected, and may flip it later; the two flags are never both
set. Inserts and moderation changes reach staff through the change feed.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import (
    DuplicateReviewError,
    NotFoundError,
    RejectionReasonRequiredError,
    ReviewNotAllowedError,
)
from shared.models.models import Order, OrderItem, OrderStatus, Review, User

logger = logging.getLogger(__name__)


async def list_reviewable(db: AsyncSession, order_id: uuid.UUID, user_id: uuid.UUID) -> List[uuid.UUID]:
    """
    Products of a delivered order the user has not reviewed yet.
    Anything else (unknown order, someone else's, not delivered) is an empty list.
    """
    order = await db.get(Order, order_id)
    if order is None or order.user_id != user_id or order.status != OrderStatus.DELIVERED:
        return []

    reviewed = set(
        (
            await db.execute(
                select(Review.product_id).where(
                    Review.order_id == order_id,
                    Review.user_id == user_id,
                    Review.product_id.is_not(None),
                )
            )
        ).scalars()
    )
    seen = set()
    reviewable = []
    for item in order.items:
        if item.product_id not in reviewed and item.product_id not in seen:
            seen.add(item.product_id)
            reviewable.append(item.product_id)
    return reviewable


async def _insert(db: AsyncSession, review: Review) -> Review:
    db.add(review)
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicateReviewError("You have already reviewed this") from exc
    return review


async def submit_review(
    db: AsyncSession,
    user_id: uuid.UUID,
    order_id: uuid.UUID,
    product_id: uuid.UUID,
    rating: int,
    comment: Optional[str] = None,
    images: Optional[List[str]] = None,
) -> Review:
    order = await db.get(Order, order_id)
    if order is None or order.user_id != user_id:
        raise ReviewNotAllowedError("Order not found")
    if order.status != OrderStatus.DELIVERED:
        raise ReviewNotAllowedError("Order must be delivered before reviewing")
    in_order = await db.scalar(
        select(OrderItem.id).where(OrderItem.order_id == order_id, OrderItem.product_id == product_id).limit(1)
    )
    if in_order is None:
        raise ReviewNotAllowedError("Product is not part of this order")
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ReviewNotAllowedError("Rating must be a whole number from 1 to 5")

    # The unique constraint is the real guard; this gives a clean error first
    existing = await db.scalar(
        select(Review.id).where(
            Review.order_id == order_id,
            Review.product_id == product_id,
            Review.user_id == user_id,
        )
    )
    if existing is not None:
        raise DuplicateReviewError("You have already reviewed this product for this order")

    review = await _insert(
        db,
        Review(
            order_id=order_id,
            product_id=product_id,
            user_id=user_id,
            rating=rating,
            comment=comment,
            images=list(images or []),
        ),
    )
    logger.info("Review %s submitted for product %s (order %s)", review.id, product_id, order_id)
    return review


async def submit_restaurant_review(
    db: AsyncSession, user_id: uuid.UUID, rating: int, comment: Optional[str] = None
) -> Review:
    """One per customer, ever, whatever happened to the first one."""
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ReviewNotAllowedError("Rating must be a whole number from 1 to 5")

    existing = await db.scalar(
        select(Review.id).where(Review.user_id == user_id, Review.product_id.is_(None))
    )
    if existing is not None:
        raise DuplicateReviewError("You have already reviewed the restaurant")

    review = await _insert(
        db, Review(user_id=user_id, rating=rating, comment=comment, images=[])
    )
    logger.info("Restaurant review %s submitted by %s", review.id, user_id)
    return review


# ── Moderation ────────────────────────────────────────────────

async def _get_for_update(db: AsyncSession, review_id: uuid.UUID) -> Review:
    result = await db.execute(select(Review).where(Review.id == review_id).with_for_update())
    review = result.scalar_one_or_none()
    if review is None:
        raise NotFoundError("Review not found")
    return review


async def approve(db: AsyncSession, review_id: uuid.UUID, moderator: User) -> Review:
    review = await _get_for_update(db, review_id)
    if review.is_approved:
        return review
    review.is_approved = True
    review.is_rejected = False
    review.rejection_reason = None
    review.moderated_by_id = moderator.id
    review.moderated_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Review %s approved by %s", review.id, moderator.id)
    return review


async def reject(
    db: AsyncSession, review_id: uuid.UUID, moderator: User, reason: Optional[str]
) -> Review:
    if not reason or not reason.strip():
        raise RejectionReasonRequiredError()

    review = await _get_for_update(db, review_id)
    if review.is_rejected:
        return review
    review.is_rejected = True
    review.is_approved = False
    review.rejection_reason = reason.strip()
    review.moderated_by_id = moderator.id
    review.moderated_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Review %s rejected by %s", review.id, moderator.id)
    return review


# ── Read side ─────────────────────────────────────────────────

def approved():
    return Review.is_approved.is_(True)


async def product_rating(db: AsyncSession, product_id: uuid.UUID) -> tuple[Optional[float], int]:
    avg, count = (
        await db.execute(
            select(func.avg(Review.rating), func.count(Review.id)).where(
                Review.product_id == product_id, approved()
            )
        )
    ).one()
    return (round(float(avg), 2) if avg is not None else None), count
