"""
tests/test_settlement.py
Tests for order settlement: totals, points ledger pair, idempotency, failure
recording, order numbering, and the reconciliation sweep.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from config import redis_client as redis_module
from services.order import service as orders
from services.order.service import CheckoutContext, cart_lines
from services.points import service as ledger
from shared.exceptions import InsufficientPointsError, NotFoundError, SettlementError
from shared.models.models import (
    CartItem,
    Notification,
    NotificationType,
    Order,
    Payment,
    PaymentStatus,
    PointsHistory,
    PointsType,
    Setting,
)
from tasks.payment_tasks import reconcile
from tests.conftest import new_intent_id


async def _paid_payment(db, user, amount, ctx: CheckoutContext, **extra) -> Payment:
    payment = Payment(
        user_id=user.id,
        processor_intent_id=new_intent_id(),
        amount=Decimal(amount),
        currency="CAD",
        status=PaymentStatus.SUCCEEDED,
        paid_at=extra.pop("paid_at", datetime.now(timezone.utc)),
        checkout_snapshot=ctx.to_snapshot(),
        **extra,
    )
    db.add(payment)
    await db.commit()
    return payment


def _context(user, cart, address, points_to_use=0) -> CheckoutContext:
    return CheckoutContext(
        user_id=user.id,
        lines=cart_lines(cart.items),
        address_id=address.id,
        points_to_use=points_to_use,
        currency="CAD",
    )


@pytest.mark.asyncio
async def test_quote_prices_from_catalogue(db, user, cart, address):
    priced = await orders.quote(db, _context(user, cart, address), balance=0)
    assert priced.subtotal == Decimal("42.00")
    assert priced.lines[0].unit_price == Decimal("21.00")
    assert priced.total == Decimal("42.00")


@pytest.mark.asyncio
async def test_quote_uses_stored_earn_rate(db, user, cart, address):
    db.add(Setting(key="points_rate", value="10"))
    await db.commit()

    priced = await orders.quote(db, _context(user, cart, address), balance=0)
    assert priced.points_to_earn == 420


@pytest.mark.asyncio
async def test_quote_rejects_points_beyond_balance(db, user, cart, address):
    with pytest.raises(InsufficientPointsError):
        await orders.quote(db, _context(user, cart, address, points_to_use=600), balance=500)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "quantities, with_option, points, expected_total",
    [
        ([1], False, 0, "20.00"),
        ([3], True, 150, "61.50"),
        ([1, 1], True, 4200, "0.00"),
        ([2, 3], False, 999, "90.01"),
    ],
)
async def test_quote_totals_invariant(
    db, user, address, product, option, quantities, with_option, points, expected_total
):
    ctx = CheckoutContext(
        user_id=user.id,
        lines=[
            orders.CartLine(product.id, qty, [option.id] if with_option else [])
            for qty in quantities
        ],
        address_id=address.id,
        points_to_use=points,
    )
    priced = await orders.quote(db, ctx, balance=10_000)

    assert priced.subtotal == sum(line.unit_price * line.quantity for line in priced.lines)
    assert priced.total == priced.subtotal - ledger.points_to_cash(points)
    assert priced.total == Decimal(expected_total)
    assert priced.points_to_earn == ledger.calculate_points_to_earn(priced.total)


@pytest.mark.asyncio
async def test_quote_points_cannot_exceed_order_value(db, user, address, product):
    ctx = CheckoutContext(
        user_id=user.id,
        lines=[orders.CartLine(product.id, 1)],
        address_id=address.id,
        points_to_use=2001,
    )
    with pytest.raises(SettlementError):
        await orders.quote(db, ctx, balance=10_000)


@pytest.mark.asyncio
async def test_settle_with_points(db, session_factory, user, cart, address):
    """$42.00 cart, 500 points, 200 used ($2.00) → $40.00 total, 200 earned."""
    await ledger.post_entry(db, user.id, 500, PointsType.EARNED, "welcome")
    await db.commit()
    ctx = _context(user, cart, address, points_to_use=200)
    payment = await _paid_payment(db, user, "40.00", ctx)

    async with session_factory() as session:
        order = await orders.settle_order(session, ctx, payment.processor_intent_id)
        await session.commit()

    assert order.total_amount == Decimal("40.00")
    assert order.subtotal_amount == Decimal("42.00")
    assert order.points_used == 200
    assert order.points_earned == 200
    assert order.order_number.startswith("ORD-")
    assert order.delivery_address["postal_code"] == "M5H 2N2"

    async with session_factory() as session:
        entries = (
            await session.execute(
                select(PointsHistory.type, PointsHistory.points).where(PointsHistory.order_id == order.id)
            )
        ).all()
        assert sorted(entries) == sorted([(PointsType.USED, -200), (PointsType.EARNED, 200)])
        assert await ledger.get_balance(session, user.id) == 500

        linked = await session.get(Payment, payment.id)
        assert linked.order_id == order.id

        cart_count = await session.scalar(select(func.count(CartItem.id)))
        assert cart_count == 0

        types = set(
            (
                await session.execute(
                    select(Notification.type).where(Notification.order_id == order.id)
                )
            ).scalars()
        )
        assert types == {NotificationType.ORDER_STATUS, NotificationType.POINTS_EARNED}


@pytest.mark.asyncio
async def test_settle_twice_returns_same_order(db, session_factory, user, cart, address):
    ctx = _context(user, cart, address)
    payment = await _paid_payment(db, user, "42.00", ctx)

    async with session_factory() as session:
        first = await orders.settle_order(session, ctx, payment.processor_intent_id)
        await session.commit()
    async with session_factory() as session:
        second = await orders.settle_order(session, ctx, payment.processor_intent_id)
        await session.commit()

    assert first.id == second.id
    async with session_factory() as session:
        assert await session.scalar(select(func.count(Order.id))) == 1
        assert await session.scalar(select(func.count(PointsHistory.id))) == 1


@pytest.mark.asyncio
async def test_settle_amount_mismatch_records_failure(db, session_factory, user, cart, address):
    ctx = _context(user, cart, address)
    payment = await _paid_payment(db, user, "10.00", ctx)

    async with session_factory() as session:
        with pytest.raises(SettlementError):
            await orders.settle_order(
                session, ctx, payment.processor_intent_id, session_factory=session_factory
            )

    async with session_factory() as session:
        refreshed = await session.get(Payment, payment.id)
        assert refreshed.order_id is None
        assert refreshed.settlement_attempts == 1
        assert "SettlementError" in refreshed.last_settlement_error
        # Cart is untouched so the customer can retry
        assert await session.scalar(select(func.count(CartItem.id))) == 1
        assert await session.scalar(select(func.count(Order.id))) == 0


@pytest.mark.asyncio
async def test_failed_commit_after_settlement_counts_as_attempt(
    db, session_factory, monkeypatch, user, cart, address
):
    ctx = _context(user, cart, address)
    payment = await _paid_payment(db, user, "42.00", ctx)

    async def commit_rejected():
        raise IntegrityError("COMMIT", {}, Exception("deferred constraint violated"))

    async with session_factory() as session:
        monkeypatch.setattr(session, "commit", commit_rejected)
        with pytest.raises(IntegrityError):
            await orders.settle_and_commit(
                session, ctx, payment.processor_intent_id, session_factory=session_factory
            )

    async with session_factory() as session:
        refreshed = await session.get(Payment, payment.id)
        assert refreshed.order_id is None
        assert refreshed.settlement_attempts == 1
        assert "IntegrityError" in refreshed.last_settlement_error
        assert await session.scalar(select(func.count(Order.id))) == 0
        assert await session.scalar(select(func.count(PointsHistory.id))) == 0


@pytest.mark.asyncio
async def test_settle_refuses_unpaid_intent(db, session_factory, user, cart, address):
    ctx = _context(user, cart, address)
    payment = await _paid_payment(db, user, "42.00", ctx)
    payment.status = PaymentStatus.PENDING
    await db.commit()

    async with session_factory() as session:
        with pytest.raises(SettlementError):
            await orders.settle_order(session, ctx, payment.processor_intent_id)


@pytest.mark.asyncio
async def test_order_numbers_increase(db):
    first = await orders.next_order_number(db)
    second = await orders.next_order_number(db)
    await db.commit()
    assert first == "ORD-00000001"
    assert second == "ORD-00000002"


@pytest.mark.asyncio
async def test_snapshot_round_trip(user, cart, address):
    ctx = _context(user, cart, address, points_to_use=150)
    restored = CheckoutContext.from_snapshot(user.id, ctx.to_snapshot())
    assert restored == ctx


@pytest.mark.asyncio
async def test_reconcile_settles_unsettled_payment(db, session_factory, redis, user, cart, address):
    ctx = _context(user, cart, address)
    stale = datetime.now(timezone.utc) - timedelta(minutes=30)
    payment = await _paid_payment(db, user, "42.00", ctx, paid_at=stale)
    fresh = await _paid_payment(db, user, "42.00", ctx)

    result = await reconcile(session_factory)

    assert result == {"candidates": 1, "settled": 1, "failed": 0}
    async with session_factory() as session:
        settled = await session.get(Payment, payment.id)
        assert settled.order_id is not None
        untouched = await session.get(Payment, fresh.id)
        assert untouched.order_id is None
    # The new order reached the change stream for staff fan-out
    assert await redis.xlen("changes:storefront") == 1


@pytest.mark.asyncio
async def test_reconcile_skips_exhausted_payments(db, session_factory, user, cart, address):
    ctx = _context(user, cart, address)
    stale = datetime.now(timezone.utc) - timedelta(minutes=30)
    await _paid_payment(db, user, "42.00", ctx, paid_at=stale, settlement_attempts=5)

    result = await reconcile(session_factory)
    assert result["candidates"] == 0


@pytest.mark.asyncio
async def test_settle_unknown_intent(db, user, cart, address):
    with pytest.raises(NotFoundError):
        await orders.settle_order(db, _context(user, cart, address), f"pi_{uuid.uuid4().hex}")


@pytest.mark.asyncio
async def test_reconcile_settles_while_redis_is_down(db, session_factory, monkeypatch, user, cart, address):
    monkeypatch.setattr(redis_module, "redis_client", None)
    ctx = _context(user, cart, address)
    stale = datetime.now(timezone.utc) - timedelta(minutes=30)
    payment = await _paid_payment(db, user, "42.00", ctx, paid_at=stale)

    result = await reconcile(session_factory)

    assert result == {"candidates": 1, "settled": 1, "failed": 0}
    async with session_factory() as session:
        settled = await session.get(Payment, payment.id)
        assert settled.order_id is not None
        assert settled.settlement_attempts == 0
        assert await session.scalar(select(func.count(PointsHistory.id))) == 1
