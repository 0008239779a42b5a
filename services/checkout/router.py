"""
services/checkout/router.py
Two-step checkout:
  POST /checkout          → quote the cart and open a Stripe PaymentIntent
  POST /checkout/confirm  → verify the intent with Stripe, then settle the order

The client confirms the card with Stripe.js / the mobile SDK in between using
the returned client_secret.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.cart.router import get_or_create_cart
from services.order.service import CheckoutContext, cart_lines, quote, settle_and_commit
from services.payment import service as payments
from services.points import service as ledger
from shared.exceptions import NotFoundError
from shared.middleware.auth import get_current_user
from shared.models.models import Address, Notification, User
from shared.schemas.schemas import (
    CheckoutConfirmRequest,
    CheckoutRequest,
    CheckoutResponse,
    OrderResponse,
)
from tasks.notification_tasks import queue_push

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["Checkout"])


@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def start_checkout(
    data: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    """
    Price the cart server-side and create the intent for the exact total.
    The checkout context is stored on the payment so that a crash between
    payment and settlement can be recovered by the reconciliation sweep.
    """
    address = await db.scalar(
        select(Address.id).where(Address.id == data.address_id, Address.user_id == current_user.id)
    )
    if address is None:
        raise NotFoundError("Address not found")

    cart = await get_or_create_cart(db, current_user)
    ctx = CheckoutContext(
        user_id=current_user.id,
        lines=cart_lines(cart.items),
        address_id=data.address_id,
        points_to_use=data.points_to_use,
        currency=(data.currency or settings.DEFAULT_CURRENCY).upper(),
        notes=data.notes,
    )
    balance = await ledger.get_balance(db, current_user.id)
    priced = await quote(db, ctx, balance)

    handle = await payments.create_intent(
        db,
        current_user.id,
        priced.total,
        ctx.currency,
        metadata={"points_to_use": str(priced.points_to_use)},
        snapshot=ctx.to_snapshot(),
        idempotency_key=idempotency_key,
    )
    await db.commit()

    return CheckoutResponse(
        payment_id=handle.payment.id,
        intent_id=handle.intent_id,
        client_secret=handle.client_secret,
        subtotal_amount=priced.subtotal,
        points_to_use=priced.points_to_use,
        points_discount=priced.points_discount,
        total_amount=priced.total,
        points_to_earn=priced.points_to_earn,
        currency=ctx.currency,
    )


@router.post("/confirm", response_model=OrderResponse)
async def confirm_checkout(
    data: CheckoutConfirmRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Safe to retry: a second call for a settled intent returns the same order.
    If settlement fails after the charge went through, the payment stays
    succeeded-but-unsettled and is retried by reconciliation.
    """
    payment = await payments.confirm_intent(db, data.intent_id, current_user.id)
    # The processor outcome is durable before settlement is attempted
    await db.commit()

    if payment.checkout_snapshot is None:
        raise NotFoundError("Checkout context not found for this payment")
    already_settled = payment.order_id is not None
    ctx = CheckoutContext.from_snapshot(current_user.id, payment.checkout_snapshot)
    order = await settle_and_commit(db, ctx, data.intent_id)
    if already_settled:
        return OrderResponse.model_validate(order)

    result = await db.execute(
        select(Notification).where(
            Notification.order_id == order.id,
            Notification.user_id == current_user.id,
        )
    )
    for notification in result.scalars():
        queue_push([current_user.id], notification)

    return OrderResponse.model_validate(order)
