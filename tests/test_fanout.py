"""
tests/test_fanout.py
Tests for the staff notification fan-out: change capture on commit, event
mapping, dispatch with per-token push outcomes, and the bounded listener queue.
"""

import asyncio
import contextlib
import uuid
from decimal import Decimal
from typing import List

import pytest
from sqlalchemy import select

from services.notification import service as notifications
from services.notification.dispatcher import (
    DispatchEvent,
    NotificationDispatcher,
    event_from_change,
)
from services.notification.listener import ChangeFeedListener
from services.notification.push import PushResult, routing_for
from shared.events.change_feed import (
    NEW_ORDER,
    NEW_REVIEW,
    REVIEW_MODERATED,
    ChangeEvent,
    publish_committed_changes,
)
from shared.models.models import (
    Notification,
    NotificationType,
    Order,
    PushToken,
    Review,
    UserRole,
)
from tests.conftest import make_order, make_user


class FakeGateway:
    """Answers per token; tokens listed in `fail` fail, those in `gone` are unregistered."""

    def __init__(self, fail=(), gone=()):
        self.fail = set(fail)
        self.gone = set(gone)
        self.batches: List[list] = []

    async def send_batch(self, messages):
        self.batches.append(list(messages))
        results = []
        for message in messages:
            if message.token in self.gone:
                results.append(PushResult(message.token, False, "unregistered", unregistered=True))
            elif message.token in self.fail:
                results.append(PushResult(message.token, False, "internal error"))
            else:
                results.append(PushResult(message.token, True))
        return results


class ExplodingGateway:
    async def send_batch(self, messages):
        raise RuntimeError("gateway down")


async def _admin_with_tokens(db, email, tokens):
    admin = await make_user(db, email, UserRole.ADMIN)
    for token in tokens:
        db.add(PushToken(user_id=admin.id, token=token, device_type="android"))
    await db.commit()
    return admin


NEW_ORDER_EVENT = DispatchEvent(
    title="🔔 New Order!",
    body="ORD-00000001 - 40.00 CAD",
    routing_type="new_order",
    data={"order_number": "ORD-00000001"},
)


# ── Event mapping ─────────────────────────────────────────────

def test_new_order_change_maps_to_high_priority_event():
    change = ChangeEvent(
        NEW_ORDER, "orders", "1",
        {"order_id": str(uuid.uuid4()), "order_number": "ORD-00000007", "total_amount": "40.00", "currency": "CAD"},
    )
    event = event_from_change(change)
    assert event.routing_type == "new_order"
    assert event.body == "ORD-00000007 - 40.00 CAD"
    assert event.push is True
    assert routing_for("new_order").priority == "high"


def test_restaurant_review_change():
    change = ChangeEvent(NEW_REVIEW, "reviews", "1", {"review_id": "r1", "rating": 4, "product_id": None})
    event = event_from_change(change)
    assert "restaurant" in event.body
    assert routing_for(event.routing_type).priority == "normal"


def test_moderation_is_inapp_only():
    change = ChangeEvent(REVIEW_MODERATED, "reviews", "1", {"review_id": "r1", "state": "approved"})
    assert event_from_change(change).push is False


def test_unknown_change_kind_is_ignored():
    assert event_from_change(ChangeEvent("something_else", "x", "1")) is None


def test_change_event_fields_round_trip():
    change = ChangeEvent(NEW_ORDER, "orders", "abc", {"total_amount": "40.00"})
    assert ChangeEvent.from_fields(change.to_fields()) == change


# ── Dispatch ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dispatch_reaches_every_admin_and_device(db, session_factory, redis, user):
    await _admin_with_tokens(db, "kitchen@shop.test", ["tok-kitchen-1", "tok-kitchen-2"])
    await _admin_with_tokens(db, "front@shop.test", ["tok-front-1"])
    db.add(PushToken(user_id=user.id, token="tok-customer", device_type="ios"))
    await db.commit()

    gateway = FakeGateway()
    report = await NotificationDispatcher(session_factory, gateway).dispatch(NEW_ORDER_EVENT)

    assert report.recipients == 2
    assert report.inapp_created == 2
    assert report.attempted == 3
    assert report.sent == 3
    assert report.errors == []
    # One batch, staff devices only
    assert len(gateway.batches) == 1
    assert {m.token for m in gateway.batches[0]} == {"tok-kitchen-1", "tok-kitchen-2", "tok-front-1"}

    async with session_factory() as session:
        types = (await session.execute(select(Notification.type))).scalars().all()
        assert types == [NotificationType.NEW_ORDER, NotificationType.NEW_ORDER]


@pytest.mark.asyncio
async def test_one_bad_token_does_not_hide_the_rest(db, session_factory, redis):
    await _admin_with_tokens(db, "kitchen@shop.test", ["tok-a", "tok-b", "tok-c", "tok-d"])

    gateway = FakeGateway(fail={"tok-b"}, gone={"tok-c"})
    report = await NotificationDispatcher(session_factory, gateway).dispatch(NEW_ORDER_EVENT)

    assert report.attempted == 4
    assert report.sent == 2
    assert report.failed == 2
    assert report.deactivated == 1
    async with session_factory() as session:
        inactive = (
            await session.execute(select(PushToken.token).where(PushToken.is_active.is_(False)))
        ).scalars().all()
        assert inactive == ["tok-c"]


@pytest.mark.asyncio
async def test_push_failure_keeps_inapp_records(db, session_factory, redis):
    await _admin_with_tokens(db, "kitchen@shop.test", ["tok-a"])

    report = await NotificationDispatcher(session_factory, ExplodingGateway()).dispatch(NEW_ORDER_EVENT)

    assert report.inapp_created == 1
    assert any(e.startswith("push:") for e in report.errors)
    async with session_factory() as session:
        assert len((await session.execute(select(Notification))).scalars().all()) == 1


@pytest.mark.asyncio
async def test_inapp_only_event_skips_gateway(db, session_factory, redis):
    await _admin_with_tokens(db, "kitchen@shop.test", ["tok-a"])
    gateway = FakeGateway()
    event = DispatchEvent("Review moderated", "Review r1 was approved", "review_moderated", push=False)

    report = await NotificationDispatcher(session_factory, gateway).dispatch(event)

    assert report.inapp_created == 1
    assert gateway.batches == []


@pytest.mark.asyncio
async def test_dispatch_relays_to_foregrounded_staff(db, session_factory, redis):
    await _admin_with_tokens(db, "kitchen@shop.test", [])
    pubsub = redis.pubsub()
    await pubsub.subscribe("inapp:admins")
    await pubsub.get_message(timeout=0.1)  # subscribe confirmation

    await NotificationDispatcher(session_factory, FakeGateway()).dispatch(NEW_ORDER_EVENT)

    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
    assert message is not None
    assert "new_order" in message["data"]
    await pubsub.aclose()


@pytest.mark.asyncio
async def test_push_to_users_targets_only_their_devices(db, session_factory, redis, user, other_user):
    db.add(PushToken(user_id=user.id, token="tok-ayla", device_type="ios"))
    db.add(PushToken(user_id=other_user.id, token="tok-deniz", device_type="ios"))
    await db.commit()

    gateway = FakeGateway()
    event = DispatchEvent("👍 Order Confirmed", "Order ORD-1 has been confirmed.", "order_status")
    report = await NotificationDispatcher(session_factory, gateway).push_to_users([user.id], event)

    assert report.sent == 1
    assert [m.token for m in gateway.batches[0]] == ["tok-ayla"]


class CommitFailsSession:
    """Wraps a real session; reads work, commit raises."""

    def __init__(self, session):
        self._session = session

    def __getattr__(self, name):
        return getattr(self._session, name)

    async def commit(self):
        raise RuntimeError("db write failed")


def commit_fails(session_factory):
    @contextlib.asynccontextmanager
    async def factory():
        async with session_factory() as session:
            yield CommitFailsSession(session)

    return factory


@pytest.mark.asyncio
async def test_failed_inapp_write_still_pushes(db, session_factory, redis):
    await _admin_with_tokens(db, "kitchen@shop.test", ["tok-a", "tok-b"])

    gateway = FakeGateway()
    report = await NotificationDispatcher(commit_fails(session_factory), gateway).dispatch(NEW_ORDER_EVENT)

    assert any(e.startswith("inapp:") for e in report.errors)
    assert len(gateway.batches) == 1
    assert {m.token for m in gateway.batches[0]} == {"tok-a", "tok-b"}
    assert report.sent == 2
    async with session_factory() as session:
        assert (await session.execute(select(Notification))).scalars().all() == []


@pytest.mark.asyncio
async def test_transient_failures_are_offered_for_retry(db, session_factory, redis):
    await _admin_with_tokens(db, "kitchen@shop.test", ["tok-a", "tok-b", "tok-c"])

    gateway = FakeGateway(fail={"tok-b"}, gone={"tok-c"})
    report = await NotificationDispatcher(session_factory, gateway).dispatch(NEW_ORDER_EVENT)

    assert report.retry_tokens == ["tok-b"]


@pytest.mark.asyncio
async def test_push_to_users_retry_skips_relay_and_delivered_devices(
    db, session_factory, redis, user
):
    db.add(PushToken(user_id=user.id, token="tok-phone", device_type="ios"))
    db.add(PushToken(user_id=user.id, token="tok-tablet", device_type="ios"))
    await db.commit()
    pubsub = redis.pubsub()
    await pubsub.subscribe(notifications.user_channel(user.id))
    await pubsub.get_message(timeout=0.1)

    gateway = FakeGateway()
    event = DispatchEvent("👍 Order Confirmed", "Order ORD-1 has been confirmed.", "order_status")
    report = await NotificationDispatcher(session_factory, gateway).push_to_users(
        [user.id], event, tokens=["tok-tablet"], relay=False
    )

    assert report.sent == 1
    assert [m.token for m in gateway.batches[0]] == ["tok-tablet"]
    assert await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.2) is None
    await pubsub.aclose()


# ── Change capture ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_committed_order_reaches_stream(db, redis, user, product):
    order = await make_order(db, user, product)
    written = await publish_committed_changes(db)

    assert written == 1
    entries = await redis.xrange("changes:storefront")
    assert len(entries) == 1
    _, fields = entries[0]
    assert fields["kind"] == NEW_ORDER
    assert fields["row_id"] == str(order.id)


@pytest.mark.asyncio
async def test_rolled_back_order_is_not_published(db, redis, user):
    db.add(
        Order(
            order_number="ORD-ROLLBACK",
            user_id=user.id,
            subtotal_amount=Decimal("1.00"),
            total_amount=Decimal("1.00"),
            currency="CAD",
            delivery_address={},
        )
    )
    await db.flush()
    await db.rollback()

    assert await publish_committed_changes(db) == 0
    assert await redis.xlen("changes:storefront") == 0


@pytest.mark.asyncio
async def test_review_moderation_is_captured(db, redis, user, admin_user):
    review = Review(user_id=user.id, rating=5, comment="Lovely")
    db.add(review)
    await db.commit()
    await publish_committed_changes(db)

    review.is_approved = True
    review.moderated_by_id = admin_user.id
    await db.commit()
    await publish_committed_changes(db)

    kinds = [fields["kind"] for _, fields in await redis.xrange("changes:storefront")]
    assert kinds == [NEW_REVIEW, REVIEW_MODERATED]


# ── Listener ──────────────────────────────────────────────────

class RecordingDispatcher:
    def __init__(self):
        self.events: List[DispatchEvent] = []

    async def dispatch(self, event):
        self.events.append(event)


@pytest.mark.asyncio
async def test_listener_drops_when_queue_full(redis):
    listener = ChangeFeedListener(redis, RecordingDispatcher(), queue_size=2, workers=1)
    change = ChangeEvent(NEW_ORDER, "orders", "1", {"order_number": "ORD-1"})

    assert listener.offer("1-0", change) is True
    assert listener.offer("2-0", change) is True
    assert listener.offer("3-0", change) is False
    assert listener.dropped == 1
    assert listener.queue.qsize() == 2


@pytest.mark.asyncio
async def test_listener_dispatches_stream_entries(redis):
    dispatcher = RecordingDispatcher()
    listener = ChangeFeedListener(redis, dispatcher, block_ms=50, workers=2)
    await listener.start()
    try:
        change = ChangeEvent(
            NEW_ORDER, "orders", "1",
            {"order_id": str(uuid.uuid4()), "order_number": "ORD-00000042", "total_amount": "12.00", "currency": "CAD"},
        )
        await redis.xadd("changes:storefront", change.to_fields())
        for _ in range(100):
            if dispatcher.events:
                break
            await asyncio.sleep(0.02)
    finally:
        await listener.stop()

    assert [e.routing_type for e in dispatcher.events] == ["new_order"]
    assert "ORD-00000042" in dispatcher.events[0].body


def _order_change(number: str) -> ChangeEvent:
    return ChangeEvent(
        NEW_ORDER, "orders", number,
        {"order_id": str(uuid.uuid4()), "order_number": number, "total_amount": "12.00", "currency": "CAD"},
    )


async def _run_until_dispatched(listener, dispatcher, count=1):
    await listener.start()
    try:
        for _ in range(100):
            if len(dispatcher.events) >= count and not listener.in_flight:
                break
            await asyncio.sleep(0.02)
    finally:
        await listener.stop()


@pytest.mark.asyncio
async def test_listener_claims_entries_abandoned_by_dead_consumer(redis):
    stream = "changes:storefront"
    await redis.xgroup_create(stream, "fanout", id="$", mkstream=True)
    await redis.xadd(stream, _order_change("ORD-00000051").to_fields())
    # A consumer that read the entry and died before acknowledging it
    await redis.xreadgroup("fanout", "worker-gone", {stream: ">"}, count=10)

    dispatcher = RecordingDispatcher()
    listener = ChangeFeedListener(
        redis, dispatcher, block_ms=50, workers=1, claim_idle_ms=0, consumer_name="worker-new"
    )
    await _run_until_dispatched(listener, dispatcher)

    assert [e.body.split(" ")[0] for e in dispatcher.events] == ["ORD-00000051"]
    pending = await redis.xpending(stream, "fanout")
    assert pending["pending"] == 0


@pytest.mark.asyncio
async def test_listener_replays_own_backlog_after_restart(redis):
    stream = "changes:storefront"
    await redis.xgroup_create(stream, "fanout", id="$", mkstream=True)
    await redis.xadd(stream, _order_change("ORD-00000052").to_fields())
    await redis.xadd(stream, _order_change("ORD-00000053").to_fields())
    # Same consumer name, previous process stopped mid-batch
    await redis.xreadgroup("fanout", "kitchen-1", {stream: ">"}, count=10)

    dispatcher = RecordingDispatcher()
    listener = ChangeFeedListener(redis, dispatcher, block_ms=50, workers=1, consumer_name="kitchen-1")
    await _run_until_dispatched(listener, dispatcher, count=2)

    assert sorted(e.body.split(" ")[0] for e in dispatcher.events) == ["ORD-00000052", "ORD-00000053"]
    assert (await redis.xpending(stream, "fanout"))["pending"] == 0


@pytest.mark.asyncio
async def test_listener_does_not_queue_an_entry_twice(redis):
    listener = ChangeFeedListener(redis, RecordingDispatcher(), queue_size=5, workers=1)
    change = _order_change("ORD-00000054")

    assert listener.offer("1-0", change) is True
    assert listener.offer("1-0", change) is True
    assert listener.queue.qsize() == 1
