"""
tests/test_notifications.py
Tests for the in-app inbox, push token registration, customer push queueing
and the broadcast task.
"""

import uuid

import pytest
from celery.exceptions import Retry
from httpx import AsyncClient
from sqlalchemy import inspect, select

from services.notification import service as notifications
from services.notification.dispatcher import DispatchReport, NotificationDispatcher
from shared.models.models import Notification, NotificationType, PushToken, User
from tasks import notification_tasks
from tasks.notification_tasks import _broadcast, queue_push
from tests.conftest import auth_headers


async def _inbox(db, user, count=2):
    rows = [
        notifications.add_notification(
            db, user.id, NotificationType.ORDER_STATUS, f"Update {n}", "Order ORD-1 is on its way"
        )
        for n in range(count)
    ]
    await db.commit()
    return rows


@pytest.mark.asyncio
async def test_notifications_empty(client: AsyncClient, user: User):
    response = await client.get("/notifications", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_inbox_and_unread_count(client: AsyncClient, db, user: User, other_user: User):
    await _inbox(db, user, 3)
    await _inbox(db, other_user, 1)

    response = await client.get("/notifications", headers=auth_headers(user))
    assert len(response.json()) == 3

    count = await client.get("/notifications/unread-count", headers=auth_headers(user))
    assert count.json() == {"unread": 3}


@pytest.mark.asyncio
async def test_mark_read(client: AsyncClient, db, user: User):
    first, _ = await _inbox(db, user)
    headers = auth_headers(user)

    response = await client.post(f"/notifications/{first.id}/read", headers=headers)
    assert response.status_code == 200
    # Idempotent
    again = await client.post(f"/notifications/{first.id}/read", headers=headers)
    assert again.status_code == 200

    unread = await client.get("/notifications?unread_only=true", headers=headers)
    assert len(unread.json()) == 1


@pytest.mark.asyncio
async def test_cannot_read_someone_elses_notification(client: AsyncClient, db, user: User, other_user: User):
    (theirs,) = await _inbox(db, other_user, 1)
    response = await client.post(f"/notifications/{theirs.id}/read", headers=auth_headers(user))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_read_all(client: AsyncClient, db, user: User):
    await _inbox(db, user, 4)
    headers = auth_headers(user)
    response = await client.post("/notifications/read-all", headers=headers)
    assert response.status_code == 200
    count = await client.get("/notifications/unread-count", headers=headers)
    assert count.json()["unread"] == 0


# ── Push tokens ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_push_token_upsert_moves_ownership(
    client: AsyncClient, session_factory, user: User, other_user: User
):
    body = {"token": "fcm-token-0123456789", "device_type": "android"}
    first = await client.post("/notifications/push-tokens", headers=auth_headers(user), json=body)
    assert first.status_code == 201

    second = await client.post(
        "/notifications/push-tokens", headers=auth_headers(other_user), json={**body, "device_type": "ios"}
    )
    assert second.status_code == 201
    assert second.json()["id"] == first.json()["id"]

    async with session_factory() as session:
        rows = (await session.execute(select(PushToken))).scalars().all()
        assert len(rows) == 1
        assert rows[0].user_id == other_user.id
        assert rows[0].device_type == "ios"


@pytest.mark.asyncio
async def test_unregister_push_token(client: AsyncClient, session_factory, user: User):
    body = {"token": "fcm-token-abcdefghij", "device_type": "web"}
    headers = auth_headers(user)
    await client.post("/notifications/push-tokens", headers=headers, json=body)

    response = await client.delete(f"/notifications/push-tokens/{body['token']}", headers=headers)
    assert response.status_code == 200

    async with session_factory() as session:
        token = await session.scalar(select(PushToken))
        assert token.is_active is False


@pytest.mark.asyncio
async def test_push_token_race_keeps_session_state(
    db, session_factory, monkeypatch, user: User, other_user: User
):
    async with session_factory() as session:
        session.add(PushToken(user_id=other_user.id, token="fcm-token-racing", device_type="ios"))
        await session.commit()

    # The competing insert lands between our lookup and our insert
    real_scalar = db.scalar
    lookups = []

    async def scalar(statement, *args, **kwargs):
        lookups.append(statement)
        if len(lookups) == 1:
            return None
        return await real_scalar(statement, *args, **kwargs)

    monkeypatch.setattr(db, "scalar", scalar)
    token = await notifications.upsert_push_token(db, user.id, "fcm-token-racing", "android")
    await db.commit()

    assert token.user_id == user.id
    assert "email" not in inspect(user).expired_attributes
    assert user.email == "ayla@example.com"
    async with session_factory() as session:
        rows = (await session.execute(select(PushToken))).scalars().all()
        assert [(r.user_id, r.device_type) for r in rows] == [(user.id, "android")]


@pytest.mark.asyncio
async def test_push_token_validation(client: AsyncClient, user: User):
    response = await client.post(
        "/notifications/push-tokens",
        headers=auth_headers(user),
        json={"token": "fcm-token-0123456789", "device_type": "blackberry"},
    )
    assert response.status_code == 422


# ── Queueing & broadcast ──────────────────────────────────────

@pytest.mark.asyncio
async def test_queue_push_payload(db, queued, user: User):
    notification = notifications.add_notification(
        db, user.id, NotificationType.POINTS_EARNED, "🎁 You earned points!", "You earned 200 points.",
        data={"points": 200},
    )
    await db.commit()

    queue_push([user.id], notification)

    (call,) = queued["push"]
    assert call["user_ids"] == [str(user.id)]
    assert call["routing_type"] == "points_earned"
    assert call["data"]["notification_id"] == str(notification.id)
    assert call["data"]["points"] == 200


@pytest.mark.asyncio
async def test_queue_push_swallows_broker_errors(db, monkeypatch, user: User):
    def broker_down(*args, **kwargs):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(notification_tasks.push_to_users, "delay", broker_down)
    notification = notifications.add_notification(db, user.id, NotificationType.GENERAL, "Hi", "There")
    await db.commit()

    queue_push([user.id], notification)


@pytest.mark.asyncio
async def test_broadcast_reaches_active_customers(
    db, session_factory, redis, monkeypatch, user: User, other_user: User, admin_user: User
):
    other_user.is_active = False
    await db.commit()

    pushed = []

    async def fake_push(self, user_ids, event):
        pushed.append((list(user_ids), event))

    monkeypatch.setattr(NotificationDispatcher, "push_to_users", fake_push)

    count = await _broadcast(session_factory, "Weekend deal", "20% off all pizzas", {"promo": "WKND20"})

    assert count == 1
    async with session_factory() as session:
        rows = (await session.execute(select(Notification))).scalars().all()
        assert [(r.user_id, r.type) for r in rows] == [(user.id, NotificationType.BROADCAST)]
    assert pushed[0][0] == [user.id]
    assert pushed[0][1].routing_type == "broadcast"


# ── Push retries ──────────────────────────────────────────────

CUSTOMER_ID = str(uuid.uuid4())


@pytest.fixture
def push_task(monkeypatch):
    """push_to_users with delivery and Celery's retry replaced by recorders."""
    task = notification_tasks.push_to_users
    recorded = {"runs": [], "retries": [], "report": DispatchReport()}

    def run_async(coro_fn, *args):
        recorded["runs"].append(args)
        return recorded["report"]

    def retry(**kwargs):
        recorded["retries"].append(kwargs)
        return Retry()

    monkeypatch.setattr(task, "run_async", run_async)
    monkeypatch.setattr(task, "retry", retry)
    return task, recorded


def test_push_retry_targets_only_failed_devices(push_task):
    task, recorded = push_task
    recorded["report"] = DispatchReport(attempted=3, sent=2, failed=1, retry_tokens=["tok-flaky"])

    with pytest.raises(Retry):
        task.run(user_ids=[CUSTOMER_ID], title="Hi", body="There", routing_type="order_status")

    _, _, tokens, relay = recorded["runs"][0]
    assert tokens is None
    assert relay is True
    (retry,) = recorded["retries"]
    assert retry["kwargs"]["tokens"] == ["tok-flaky"]
    assert retry["kwargs"]["user_ids"] == [CUSTOMER_ID]


def test_push_retry_does_not_relay_again(push_task):
    task, recorded = push_task
    recorded["report"] = DispatchReport(attempted=1, sent=1)

    task.push_request(retries=1)
    try:
        result = task.run(
            user_ids=[CUSTOMER_ID], title="Hi", body="There", routing_type="order_status",
            tokens=["tok-flaky"],
        )
    finally:
        task.pop_request()

    _, _, tokens, relay = recorded["runs"][0]
    assert tokens == ["tok-flaky"]
    assert relay is False
    assert recorded["retries"] == []
    assert result["sent"] == 1


def test_failed_attempt_retries_same_devices(push_task):
    task, recorded = push_task
    recorded["report"] = DispatchReport(errors=["push: gateway down"])

    with pytest.raises(Retry):
        task.run(user_ids=[CUSTOMER_ID], title="Hi", body="There", routing_type="order_status")

    assert recorded["retries"][0]["kwargs"]["tokens"] is None
