"""
services/payment/router.py
Stripe webhook, payment history, and admin refunds.
Intent creation and confirmation are driven by the checkout flow.
"""

from uuid import UUID

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.payment import service as payments
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import Payment, User
from shared.schemas.schemas import PaymentResponse, RefundRequest
from shared.utils.audit import record_admin_action
from shared.utils.security import construct_stripe_event

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Stripe webhook. Signature checked against STRIPE_WEBHOOK_SECRET.
    Handles payment_intent.succeeded and payment_intent.payment_failed.
    """
    body = await request.body()
    try:
        event = construct_stripe_event(body, stripe_signature or "")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    changed = await payments.apply_webhook_event(db, event)
    await db.commit()
    return {"received": True, "applied": changed}


@router.get("/me/history", response_model=list[PaymentResponse])
async def my_payment_history(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rows = await payments.list_user_payments(db, current_user.id)
    return [PaymentResponse.model_validate(p) for p in rows]


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: UUID,
    data: RefundRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Full refund through Stripe. Cancelling the linked order is a separate action."""
    result = await db.execute(select(Payment).where(Payment.id == payment_id).with_for_update())
    payment = result.scalar_one_or_none()
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")

    payment = await payments.refund(db, payment, data.reason)
    record_admin_action(
        db, current_user, "REFUND_PAYMENT", "payment", payment.id,
        {"amount": str(payment.amount), "currency": payment.currency, "reason": data.reason},
        request,
    )
    await db.commit()
    return PaymentResponse.model_validate(payment)
