"""
tasks/user_tasks.py
Celery tasks for accounts and the points ledger:
- Retrying registrations the database refused at request time
- Expiring points balances that have gone quiet
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from services.auth.service import EmailAlreadyRegistered, persist_user
from services.points.service import expire_inactive_points as expire_balances
from tasks.celery_app import AsyncDatabaseTask, celery_app

logger = logging.getLogger(__name__)


async def _persist(session_factory, payload: dict) -> str:
    async with session_factory() as db:
        user = await persist_user(db, **payload)
        return str(user.id)


@celery_app.task(bind=True, base=AsyncDatabaseTask, max_retries=5, default_retry_delay=30)
def persist_pending_user(self, payload: dict):
    """
    Write a registration accepted with a 202. The client keeps polling login;
    the account exists once this succeeds.
    """
    try:
        user_id = self.run_async(_persist, payload)
    except EmailAlreadyRegistered:
        logger.info("Pending registration for %s already exists; dropping", payload.get("email"))
        return None
    except SQLAlchemyError as exc:
        logger.warning("Pending registration for %s failed again: %s", payload.get("email"), exc)
        raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))
    logger.info("Persisted pending registration %s as %s", payload.get("email"), user_id)
    return user_id


async def _expire(session_factory) -> int:
    async with session_factory() as db:
        count = await expire_balances(db)
        await db.commit()
        return count


@celery_app.task(bind=True, base=AsyncDatabaseTask)
def expire_inactive_points(self):
    """Daily at 03:00 UTC."""
    count = self.run_async(_expire)
    logger.info("Expired points for %d inactive customers", count)
    return count
