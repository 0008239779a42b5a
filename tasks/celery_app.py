"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

import asyncio

from celery import Celery, Task
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "storefront",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.payment_tasks",
        "tasks.user_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Reliability: acknowledge task AFTER execution, not before
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    task_max_retries=3,

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.notification_tasks.push_to_users": {"rate_limit": "30/s"},
    },

    # Routing: separate queues for different priority levels
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.payment_tasks.*": {"queue": "payments"},
        "tasks.user_tasks.*": {"queue": "default"},
    },

    # Worker prefetch: 1 task at a time for long-running tasks
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Settle payments that succeeded at the processor but have no order
    "reconcile-unsettled-payments": {
        "task": "tasks.payment_tasks.reconcile_unsettled_payments",
        "schedule": 60 * settings.RECONCILE_AFTER_MINUTES,
    },

    # Re-check intents abandoned in pending
    "refresh-stale-intents": {
        "task": "tasks.payment_tasks.refresh_stale_intents",
        "schedule": crontab(minute=15),  # hourly
    },

    # Expire balances with no ledger activity for POINTS_EXPIRY_DAYS
    "expire-inactive-points": {
        "task": "tasks.user_tasks.expire_inactive_points",
        "schedule": crontab(hour=3, minute=0),
    },
}


# ── Async bridge ──────────────────────────────────────────────────────────────

class AsyncDatabaseTask(Task):
    """
    Base class for tasks that drive the async service layer.
    Each run gets its own event loop, engine and Redis client; pooled asyncpg
    connections cannot be shared across loops.
    """
    abstract = True

    def run_async(self, coro_fn, *args, **kwargs):
        return asyncio.run(_with_resources(coro_fn, *args, **kwargs))


async def _with_resources(coro_fn, *args, **kwargs):
    import redis.asyncio as aioredis
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import NullPool

    from config import redis_client as redis_module

    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    session_factory = async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    redis_module.redis_client = aioredis.from_url(
        settings.REDIS_URL, encoding="utf-8", decode_responses=True
    )
    try:
        return await coro_fn(session_factory, *args, **kwargs)
    finally:
        await redis_module.redis_client.aclose()
        redis_module.redis_client = None
        await engine.dispose()
