"""
tasks/payment_tasks.py
Celery tasks for the payment lifecycle:
- Reconciliation of payments that succeeded at Stripe but never became orders
- Refresh of intents abandoned in pending

Both are idempotent. Settlement refuses a second order for the same intent,
so running the sweep twice has no side effect.
"""

import logging

from services.order.service import CheckoutContext, settle_and_commit, unsettled_payments
from services.payment import service as payments
from shared.events.change_feed import publish_committed_changes
from tasks.celery_app import AsyncDatabaseTask, celery_app

logger = logging.getLogger(__name__)


# ── Reconciliation ─────────────────────────────────────────────────────────────

async def reconcile(session_factory) -> dict:
    """
    Settle each eligible payment from the checkout snapshot stored at intent
    creation. Every payment gets its own session; one failure does not stop
    the sweep. Failures, including a failed commit, are recorded on the payment.
    """
    async with session_factory() as db:
        candidates = [
            (p.processor_intent_id, p.user_id, p.checkout_snapshot)
            for p in await unsettled_payments(db)
        ]

    settled = failed = 0
    for intent_id, user_id, snapshot in candidates:
        async with session_factory() as db:
            try:
                ctx = CheckoutContext.from_snapshot(user_id, snapshot)
                order = await settle_and_commit(db, ctx, intent_id, session_factory=session_factory)
            except Exception as exc:
                failed += 1
                logger.warning("Reconciliation could not settle intent %s: %s", intent_id, exc)
                continue
            finally:
                await publish_committed_changes(db)
            settled += 1
            logger.info("Reconciled intent %s as order %s", intent_id, order.order_number)

    logger.info(
        "Reconciliation: %d candidates, %d settled, %d failed",
        len(candidates), settled, failed,
    )
    return {"candidates": len(candidates), "settled": settled, "failed": failed}


@celery_app.task(bind=True, base=AsyncDatabaseTask, max_retries=0)
def reconcile_unsettled_payments(self):
    """Periodic: every RECONCILE_AFTER_MINUTES."""
    return self.run_async(reconcile)


# ── Stale intents ──────────────────────────────────────────────────────────────

async def refresh_stale(session_factory) -> dict:
    counts: dict = {}
    async with session_factory() as db:
        for payment in await payments.stale_pending_payments(db):
            try:
                status = await payments.refresh_stale_intent(db, payment)
                await db.commit()
            except Exception as exc:
                await db.rollback()
                logger.warning(
                    "Could not refresh intent %s: %s", payment.processor_intent_id, exc
                )
                continue
            counts[status.value] = counts.get(status.value, 0) + 1
    logger.info("Stale intent refresh: %s", counts or "nothing to do")
    return counts


@celery_app.task(bind=True, base=AsyncDatabaseTask, max_retries=0)
def refresh_stale_intents(self):
    """Periodic: hourly."""
    return self.run_async(refresh_stale)
