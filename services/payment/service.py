"""
services/payment/service.py
Stripe payment intents mirrored into local Payment rows.

Local rows are a cache of processor state. Only a PaymentIntent the processor
reports as succeeded ever moves a row to succeeded, and confirmation is
bounded by STRIPE_CONFIRM_TIMEOUT_SECONDS; past the deadline it fails closed.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

import stripe
from pybreaker import CircuitBreaker, CircuitBreakerError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import settings
from shared.exceptions import (
    NotFoundError,
    PaymentConfirmError,
    PaymentInitError,
    UnsupportedCurrencyError,
)
from shared.models.models import Payment, PaymentStatus

logger = logging.getLogger(__name__)

stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.api_version = settings.STRIPE_API_VERSION

# Opens after 5 consecutive processor failures; declined cards and bad
# parameters are the caller's problem and do not count.
stripe_breaker = CircuitBreaker(
    fail_max=5,
    reset_timeout=60,
    exclude=[stripe.CardError, stripe.InvalidRequestError],
    name="stripe",
)

FAILED_INTENT_STATUSES = {"canceled", "requires_payment_method"}


@dataclass
class IntentHandle:
    payment: Payment
    intent_id: str
    client_secret: str


# ── Processor calls ───────────────────────────────────────────

@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    retry=retry_if_exception_type(stripe.APIConnectionError),
    reraise=True,
)
def _call_stripe(fn, **kwargs):
    return stripe_breaker.call(fn, **kwargs)


async def _stripe(fn, **kwargs):
    """Run a blocking Stripe SDK call off the event loop."""
    return await asyncio.to_thread(_call_stripe, fn, **kwargs)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _card_details(intent) -> tuple[Optional[str], Optional[str]]:
    charge = intent.get("latest_charge")
    if not isinstance(charge, dict):
        return None, None
    card = (charge.get("payment_method_details") or {}).get("card") or {}
    return card.get("brand"), card.get("last4")


def _failure_message(intent) -> Optional[str]:
    error = intent.get("last_payment_error")
    if isinstance(error, dict):
        return error.get("message")
    return None


def _mark_succeeded(payment: Payment, intent) -> None:
    payment.status = PaymentStatus.SUCCEEDED
    payment.paid_at = payment.paid_at or datetime.now(timezone.utc)
    payment.error_message = None
    brand, last4 = _card_details(intent)
    payment.card_brand = brand or payment.card_brand
    payment.card_last4 = last4 or payment.card_last4


# ── Intent lifecycle ──────────────────────────────────────────

async def get_payment_by_intent(
    db: AsyncSession, intent_id: str, *, for_update: bool = False
) -> Optional[Payment]:
    query = select(Payment).where(Payment.processor_intent_id == intent_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def create_intent(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: Decimal,
    currency: str,
    metadata: Optional[dict] = None,
    snapshot: Optional[dict] = None,
    idempotency_key: Optional[str] = None,
) -> IntentHandle:
    """
    Create a processor intent and its pending local mirror.
    A repeated idempotency key returns the intent (and row) already created.
    """
    if amount <= 0:
        raise PaymentInitError("Payment amount must be greater than zero")
    currency = currency.upper()
    if currency not in settings.supported_currencies_list:
        raise UnsupportedCurrencyError(f"Currency {currency} is not supported")

    key = f"{user_id}:{idempotency_key}" if idempotency_key else f"{user_id}:{uuid.uuid4()}"
    try:
        intent = await _stripe(
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount),
            currency=currency.lower(),
            automatic_payment_methods={"enabled": True},
            metadata={"user_id": str(user_id), **(metadata or {})},
            idempotency_key=key,
        )
    except CircuitBreakerError as exc:
        logger.error("Stripe circuit open; intent not created: %s", exc)
        raise PaymentInitError("Payment processor temporarily unavailable") from exc
    except stripe.StripeError as exc:
        logger.error("Stripe rejected intent for user %s: %s", user_id, exc)
        raise PaymentInitError(exc.user_message or "Payment could not be initialised") from exc

    payment = await get_payment_by_intent(db, intent["id"])
    if payment is None:
        payment = Payment(
            user_id=user_id,
            processor_intent_id=intent["id"],
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            checkout_snapshot=snapshot,
        )
        db.add(payment)
        await db.flush()
        logger.info("Created intent %s for %s %s", intent["id"], amount, currency)

    return IntentHandle(payment=payment, intent_id=intent["id"], client_secret=intent["client_secret"])


async def confirm_intent(db: AsyncSession, intent_id: str, user_id: uuid.UUID) -> Payment:
    """
    Verify with the processor that the intent succeeded.
    Idempotent: an already-succeeded row is returned without a processor call.
    Raises PaymentConfirmError for anything other than success within the deadline.
    """
    payment = await get_payment_by_intent(db, intent_id, for_update=True)
    if payment is None or payment.user_id != user_id:
        raise NotFoundError("Payment not found")

    if payment.status == PaymentStatus.SUCCEEDED:
        return payment
    if payment.status == PaymentStatus.REFUNDED:
        raise PaymentConfirmError("Payment was refunded", processor_status="refunded")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.STRIPE_CONFIRM_TIMEOUT_SECONDS
    poll = settings.STRIPE_CONFIRM_POLL_INTERVAL_SECONDS

    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise PaymentConfirmError("Payment confirmation timed out", processor_status="timeout")
        try:
            intent = await asyncio.wait_for(
                _stripe(stripe.PaymentIntent.retrieve, id=intent_id, expand=["latest_charge"]),
                timeout=remaining,
            )
        except asyncio.TimeoutError as exc:
            raise PaymentConfirmError(
                "Payment confirmation timed out", processor_status="timeout"
            ) from exc
        except (stripe.StripeError, CircuitBreakerError) as exc:
            logger.error("Could not retrieve intent %s: %s", intent_id, exc)
            raise PaymentConfirmError("Payment status could not be verified") from exc

        status = intent["status"]
        if status == "succeeded":
            _mark_succeeded(payment, intent)
            await db.flush()
            logger.info("Intent %s confirmed", intent_id)
            return payment

        if status == "processing" and loop.time() + poll < deadline:
            await asyncio.sleep(poll)
            continue

        if status in FAILED_INTENT_STATUSES:
            payment.status = PaymentStatus.FAILED
            payment.error_message = _failure_message(intent) or f"Payment {status}"
            # Persist the failure before the error aborts the request transaction
            await db.commit()
        logger.warning("Intent %s not confirmed: processor status %s", intent_id, status)
        raise PaymentConfirmError(
            f"Payment not completed (status: {status})", processor_status=status
        )


async def apply_webhook_event(db: AsyncSession, event) -> bool:
    """Mirror processor-pushed intent outcomes. Returns True if a row changed."""
    event_type = event["type"]
    if event_type not in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        return False

    intent = event["data"]["object"]
    payment = await get_payment_by_intent(db, intent["id"], for_update=True)
    if payment is None:
        logger.warning("Webhook %s for unknown intent %s", event_type, intent["id"])
        return False

    if event_type == "payment_intent.succeeded":
        if payment.status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
            return False
        _mark_succeeded(payment, intent)
    else:
        if payment.status != PaymentStatus.PENDING:
            return False
        payment.status = PaymentStatus.FAILED
        payment.error_message = _failure_message(intent) or "Payment failed"

    await db.flush()
    logger.info("Webhook %s applied to payment %s", event_type, payment.id)
    return True


async def refund(db: AsyncSession, payment: Payment, reason: Optional[str] = None) -> Payment:
    if payment.status != PaymentStatus.SUCCEEDED:
        raise PaymentInitError(f"Cannot refund a {payment.status.value} payment")
    try:
        result = await _stripe(
            stripe.Refund.create,
            payment_intent=payment.processor_intent_id,
            reason="requested_by_customer",
            metadata={"reason": reason or ""},
            idempotency_key=f"refund:{payment.id}",
        )
    except (stripe.StripeError, CircuitBreakerError) as exc:
        logger.error("Refund failed for payment %s: %s", payment.id, exc)
        raise PaymentInitError("Refund could not be issued") from exc

    payment.status = PaymentStatus.REFUNDED
    payment.refund_id = result["id"]
    payment.refunded_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Refunded payment %s (%s)", payment.id, result["id"])
    return payment


async def refresh_stale_intent(db: AsyncSession, payment: Payment) -> PaymentStatus:
    """
    Re-read an intent left pending past PENDING_INTENT_STALE_HOURS.
    A success found here is picked up by the reconciliation sweep afterwards.
    """
    intent = await _stripe(stripe.PaymentIntent.retrieve, id=payment.processor_intent_id)
    status = intent["status"]
    if status == "succeeded":
        _mark_succeeded(payment, intent)
    elif status in FAILED_INTENT_STATUSES:
        if status != "canceled":
            await _stripe(stripe.PaymentIntent.cancel, intent=payment.processor_intent_id)
        payment.status = PaymentStatus.FAILED
        payment.error_message = "Abandoned checkout"
    await db.flush()
    return payment.status


async def stale_pending_payments(db: AsyncSession) -> List[Payment]:
    cutoff = datetime.now(timezone.utc) - timedelta(hours=settings.PENDING_INTENT_STALE_HOURS)
    result = await db.execute(
        select(Payment).where(
            Payment.status == PaymentStatus.PENDING,
            Payment.created_at < cutoff,
        )
    )
    return list(result.scalars().all())


async def list_user_payments(db: AsyncSession, user_id: uuid.UUID) -> List[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc())
    )
    return list(result.scalars().all())
