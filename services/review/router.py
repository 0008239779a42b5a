"""
services/review/router.py
Product and restaurant reviews, and the staff moderation queue.
"""

from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.review import service as reviews
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import Review, User
from shared.schemas.schemas import (
    ProductRatingResponse,
    RestaurantReviewCreateRequest,
    ReviewableResponse,
    ReviewCreateRequest,
    ReviewRejectRequest,
    ReviewResponse,
)
from shared.utils.audit import record_admin_action

router = APIRouter(prefix="/reviews", tags=["Reviews"])


# ── Customer ───────────────────────────────────────────────────────────────────

@router.post("", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    data: ReviewCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Review a product from one of your delivered orders.
    One review per (order, product); it stays hidden until approved.
    """
    review = await reviews.submit_review(
        db, current_user.id, data.order_id, data.product_id,
        data.rating, data.comment, data.images,
    )
    await db.commit()
    return ReviewResponse.model_validate(review)


@router.post("/restaurant", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def create_restaurant_review(
    data: RestaurantReviewCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    review = await reviews.submit_restaurant_review(db, current_user.id, data.rating, data.comment)
    await db.commit()
    return ReviewResponse.model_validate(review)


@router.get("/orders/{order_id}/reviewable", response_model=ReviewableResponse)
async def reviewable_products(
    order_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    product_ids = await reviews.list_reviewable(db, order_id, current_user.id)
    return ReviewableResponse(order_id=order_id, product_ids=product_ids)


@router.get("/me", response_model=list[ReviewResponse])
async def my_reviews(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """All of your reviews with their moderation state."""
    result = await db.execute(
        select(Review).where(Review.user_id == current_user.id).order_by(Review.created_at.desc())
    )
    return [ReviewResponse.model_validate(r) for r in result.scalars()]


# ── Public ─────────────────────────────────────────────────────────────────────

@router.get("/product/{product_id}", response_model=list[ReviewResponse])
async def product_reviews(
    product_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Approved reviews only."""
    result = await db.execute(
        select(Review)
        .where(Review.product_id == product_id, reviews.approved())
        .order_by(Review.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [ReviewResponse.model_validate(r) for r in result.scalars()]


@router.get("/product/{product_id}/rating", response_model=ProductRatingResponse)
async def product_rating(product_id: UUID, db: AsyncSession = Depends(get_db)):
    average, count = await reviews.product_rating(db, product_id)
    return ProductRatingResponse(product_id=product_id, average_rating=average, review_count=count)


@router.get("/restaurant", response_model=list[ReviewResponse])
async def restaurant_reviews(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Review)
        .where(Review.product_id.is_(None), reviews.approved())
        .order_by(Review.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [ReviewResponse.model_validate(r) for r in result.scalars()]


# ── Moderation ─────────────────────────────────────────────────────────────────

@router.get("/pending", response_model=list[ReviewResponse])
async def pending_reviews(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Moderation queue, oldest first."""
    result = await db.execute(
        select(Review)
        .where(Review.is_approved.is_(False), Review.is_rejected.is_(False))
        .order_by(Review.created_at.asc())
    )
    return [ReviewResponse.model_validate(r) for r in result.scalars()]


@router.get("", response_model=list[ReviewResponse])
async def list_reviews(
    state: Optional[Literal["pending", "approved", "rejected"]] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Review)
    if state == "approved":
        query = query.where(Review.is_approved.is_(True))
    elif state == "rejected":
        query = query.where(Review.is_rejected.is_(True))
    elif state == "pending":
        query = query.where(Review.is_approved.is_(False), Review.is_rejected.is_(False))
    result = await db.execute(
        query.order_by(Review.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    )
    return [ReviewResponse.model_validate(r) for r in result.scalars()]


@router.post("/{review_id}/approve", response_model=ReviewResponse)
async def approve_review(
    review_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    review = await reviews.approve(db, review_id, current_user)
    record_admin_action(db, current_user, "APPROVE_REVIEW", "review", review.id, request=request)
    await db.commit()
    return ReviewResponse.model_validate(review)


@router.post("/{review_id}/reject", response_model=ReviewResponse)
async def reject_review(
    review_id: UUID,
    data: ReviewRejectRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    review = await reviews.reject(db, review_id, current_user, data.reason)
    record_admin_action(
        db, current_user, "REJECT_REVIEW", "review", review.id, {"reason": review.rejection_reason}, request
    )
    await db.commit()
    return ReviewResponse.model_validate(review)
