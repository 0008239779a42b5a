"""
services/order/service.py
Order settlement: turns a succeeded payment and a checkout context into an
order, its line items, the points used/earned ledger pair, a cleared cart and
an "order received" notification, all in one transaction.

Settlement never trusts client totals. Lines are re-priced from the catalogue
and the result must equal the amount the processor actually charged.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import database
from config.settings import settings
from services.notification import service as notifications
from services.payment.service import get_payment_by_intent
from services.points import service as ledger
from shared.exceptions import (
    DuplicateOrderSettlementError,
    EmptyCartError,
    InsufficientPointsError,
    NotFoundError,
    SettlementError,
)
from shared.models.models import (
    Address,
    Cart,
    CartItem,
    NotificationType,
    Order,
    OrderCounter,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    PointsType,
    Product,
    ProductOption,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


# ── Checkout context ──────────────────────────────────────────

@dataclass
class CartLine:
    product_id: uuid.UUID
    quantity: int
    option_ids: List[uuid.UUID] = field(default_factory=list)
    special_instructions: Optional[str] = None


@dataclass
class CheckoutContext:
    """Everything settlement needs, passed explicitly per request."""
    user_id: uuid.UUID
    lines: List[CartLine]
    address_id: uuid.UUID
    points_to_use: int = 0
    currency: str = settings.DEFAULT_CURRENCY
    notes: Optional[str] = None

    def to_snapshot(self) -> dict:
        data = asdict(self)
        data.pop("user_id")
        data["address_id"] = str(self.address_id)
        data["lines"] = [
            {
                "product_id": str(line.product_id),
                "quantity": line.quantity,
                "option_ids": [str(o) for o in line.option_ids],
                "special_instructions": line.special_instructions,
            }
            for line in self.lines
        ]
        return data

    @classmethod
    def from_snapshot(cls, user_id: uuid.UUID, snapshot: dict) -> "CheckoutContext":
        return cls(
            user_id=user_id,
            lines=[
                CartLine(
                    product_id=uuid.UUID(line["product_id"]),
                    quantity=int(line["quantity"]),
                    option_ids=[uuid.UUID(o) for o in line.get("option_ids", [])],
                    special_instructions=line.get("special_instructions"),
                )
                for line in snapshot["lines"]
            ],
            address_id=uuid.UUID(snapshot["address_id"]),
            points_to_use=int(snapshot.get("points_to_use", 0)),
            currency=snapshot.get("currency", settings.DEFAULT_CURRENCY),
            notes=snapshot.get("notes"),
        )


@dataclass
class PricedLine:
    product_id: uuid.UUID
    product_name: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    customizations: List[dict]
    special_instructions: Optional[str]


@dataclass
class Quote:
    lines: List[PricedLine]
    subtotal: Decimal
    points_to_use: int
    points_discount: Decimal
    total: Decimal
    points_to_earn: int


def cart_lines(items: Sequence[CartItem]) -> List[CartLine]:
    return [
        CartLine(
            product_id=item.product_id,
            quantity=item.quantity,
            option_ids=[uuid.UUID(str(o)) for o in item.option_ids or []],
            special_instructions=item.special_instructions,
        )
        for item in items
    ]


# ── Pricing ───────────────────────────────────────────────────

async def price_lines(db: AsyncSession, lines: Sequence[CartLine]) -> List[PricedLine]:
    """Unit price = product price + option surcharges, read from the catalogue."""
    product_ids = {line.product_id for line in lines}
    option_ids = {o for line in lines for o in line.option_ids}

    products: Dict[uuid.UUID, Product] = {
        p.id: p
        for p in (
            await db.execute(select(Product).where(Product.id.in_(product_ids)))
        ).scalars()
    }
    options: Dict[uuid.UUID, ProductOption] = {}
    if option_ids:
        options = {
            o.id: o
            for o in (
                await db.execute(select(ProductOption).where(ProductOption.id.in_(option_ids)))
            ).scalars()
        }

    priced = []
    for line in lines:
        if line.quantity <= 0:
            raise SettlementError("Quantity must be positive")
        product = products.get(line.product_id)
        if product is None or not product.is_active:
            raise SettlementError(f"Product {line.product_id} is no longer available")

        customizations = []
        unit_price = Decimal(product.price)
        for option_id in line.option_ids:
            option = options.get(option_id)
            if option is None or not option.is_active:
                raise SettlementError(f"Option {option_id} is no longer available")
            unit_price += Decimal(option.price)
            customizations.append(
                {"option_id": str(option.id), "name": option.name, "price": str(option.price)}
            )

        unit_price = unit_price.quantize(CENT)
        priced.append(
            PricedLine(
                product_id=product.id,
                product_name=product.name,
                quantity=line.quantity,
                unit_price=unit_price,
                subtotal=(unit_price * line.quantity).quantize(CENT),
                customizations=customizations,
                special_instructions=line.special_instructions,
            )
        )
    return priced


async def quote(db: AsyncSession, ctx: CheckoutContext, balance: int) -> Quote:
    """
    total = sum(line subtotals) - cash value of points_to_use.
    Points may not exceed the balance nor the value of the order.
    """
    if not ctx.lines:
        raise EmptyCartError("Cart is empty")
    if ctx.points_to_use < 0:
        raise SettlementError("points_to_use cannot be negative")
    if ctx.points_to_use > balance:
        raise InsufficientPointsError(requested=ctx.points_to_use, available=balance)

    lines = await price_lines(db, ctx.lines)
    subtotal = sum((line.subtotal for line in lines), Decimal("0.00"))
    discount = ledger.points_to_cash(ctx.points_to_use)
    if discount > subtotal:
        raise SettlementError("Points used cannot exceed the order value")
    total = (subtotal - discount).quantize(CENT)
    return Quote(
        lines=lines,
        subtotal=subtotal,
        points_to_use=ctx.points_to_use,
        points_discount=discount,
        total=total,
        points_to_earn=ledger.calculate_points_to_earn(total, await ledger.get_earn_rule(db)),
    )


# ── Settlement ────────────────────────────────────────────────

async def next_order_number(db: AsyncSession) -> str:
    """Row-locked increment; concurrent settlements queue on the counter row."""
    result = await db.execute(
        update(OrderCounter)
        .where(OrderCounter.name == OrderCounter.ORDERS)
        .values(value=OrderCounter.value + 1)
        .returning(OrderCounter.value)
        .execution_options(synchronize_session=False)
    )
    value = result.scalar_one_or_none()
    if value is None:
        db.add(OrderCounter(name=OrderCounter.ORDERS, value=1))
        await db.flush()
        value = 1
    return f"ORD-{value:08d}"


async def _settle(db: AsyncSession, ctx: CheckoutContext, intent_id: str) -> Order:
    payment = await get_payment_by_intent(db, intent_id, for_update=True)
    if payment is None or payment.user_id != ctx.user_id:
        raise NotFoundError("Payment not found")

    if payment.order_id is not None:
        existing = await db.get(Order, payment.order_id)
        raise DuplicateOrderSettlementError(existing)

    if payment.status != PaymentStatus.SUCCEEDED:
        raise SettlementError(f"Payment is {payment.status.value}, not succeeded")

    balance = await ledger.get_balance(db, ctx.user_id, for_update=True)
    priced = await quote(db, ctx, balance)

    if priced.total != Decimal(payment.amount).quantize(CENT) or ctx.currency.upper() != payment.currency:
        raise SettlementError(
            f"Recomputed total {priced.total} {ctx.currency} does not match "
            f"charged {payment.amount} {payment.currency}"
        )

    address = await db.scalar(
        select(Address).where(Address.id == ctx.address_id, Address.user_id == ctx.user_id)
    )
    if address is None:
        raise SettlementError("Delivery address not found")

    order_number = await next_order_number(db)
    order = Order(
        order_number=order_number,
        user_id=ctx.user_id,
        status=OrderStatus.PENDING,
        subtotal_amount=priced.subtotal,
        total_amount=priced.total,
        currency=payment.currency,
        delivery_address=address.snapshot(),
        notes=ctx.notes,
        points_used=priced.points_to_use,
        points_earned=priced.points_to_earn,
        items=[
            OrderItem(
                product_id=line.product_id,
                product_name=line.product_name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                subtotal=line.subtotal,
                customizations=line.customizations,
                special_instructions=line.special_instructions,
            )
            for line in priced.lines
        ],
    )
    db.add(order)
    await db.flush()

    if priced.points_to_use:
        await ledger.post_entry(
            db, ctx.user_id, -priced.points_to_use, PointsType.USED,
            f"Redeemed on order {order_number}", order.id,
        )
    if priced.points_to_earn:
        await ledger.post_entry(
            db, ctx.user_id, priced.points_to_earn, PointsType.EARNED,
            f"Earned on order {order_number}", order.id,
        )

    payment.order_id = order.id

    await db.execute(
        delete(CartItem).where(
            CartItem.cart_id.in_(select(Cart.id).where(Cart.user_id == ctx.user_id))
        )
    )

    title, body = notifications.order_status_message(OrderStatus.PENDING, order_number)
    notifications.add_notification(
        db, ctx.user_id, NotificationType.ORDER_STATUS, title, body, order.id,
        {"order_id": str(order.id), "status": OrderStatus.PENDING.value},
    )
    if priced.points_to_earn:
        notifications.add_notification(
            db, ctx.user_id, NotificationType.POINTS_EARNED,
            "🎁 You earned points!",
            f"You earned {priced.points_to_earn} points on order {order_number}.",
            order.id,
            {"order_id": str(order.id), "points": priced.points_to_earn},
        )
    await db.flush()

    logger.info(
        "Settled intent %s as %s: total %s %s, points used %d, earned %d",
        intent_id, order_number, priced.total, payment.currency,
        priced.points_to_use, priced.points_to_earn,
    )
    return order


async def settle_order(
    db: AsyncSession,
    ctx: CheckoutContext,
    intent_id: str,
    *,
    session_factory: Optional[Callable] = None,
) -> Order:
    """
    Settle a succeeded intent. Retrying an intent that is already settled
    returns the existing order and posts nothing.
    On failure the transaction is rolled back and the attempt is recorded on
    the payment for the reconciliation sweep, then the error is re-raised.
    """
    try:
        return await _settle(db, ctx, intent_id)
    except DuplicateOrderSettlementError as dup:
        logger.info("Intent %s already settled as %s", intent_id, dup.order.order_number)
        return dup.order
    except Exception as exc:
        await db.rollback()
        await record_settlement_failure(intent_id, exc, session_factory)
        raise


async def settle_and_commit(
    db: AsyncSession,
    ctx: CheckoutContext,
    intent_id: str,
    *,
    session_factory: Optional[Callable] = None,
) -> Order:
    """settle_order followed by the commit; a commit that fails counts as a failed attempt."""
    order = await settle_order(db, ctx, intent_id, session_factory=session_factory)
    try:
        await db.commit()
    except Exception as exc:
        await db.rollback()
        await record_settlement_failure(intent_id, exc, session_factory)
        raise
    return order


async def record_settlement_failure(
    intent_id: str, error: Exception, session_factory: Optional[Callable] = None
) -> None:
    """Separate transaction, so the record survives the settlement rollback."""
    factory = session_factory or database.AsyncSessionLocal
    try:
        async with factory() as session:
            await session.execute(
                update(Payment)
                .where(
                    Payment.processor_intent_id == intent_id,
                    Payment.status == PaymentStatus.SUCCEEDED,
                    Payment.order_id.is_(None),
                )
                .values(
                    settlement_attempts=Payment.settlement_attempts + 1,
                    last_settlement_error=f"{type(error).__name__}: {error}"[:1000],
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
    except Exception:
        logger.exception("Could not record settlement failure for intent %s", intent_id)
    logger.error("Settlement failed for intent %s: %s", intent_id, error)


# ── Reconciliation ────────────────────────────────────────────

async def unsettled_payments(db: AsyncSession, now: Optional[datetime] = None) -> List[Payment]:
    """Paid but unsettled payments old enough for the sweep to retry."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=settings.RECONCILE_AFTER_MINUTES)
    result = await db.execute(
        select(Payment)
        .where(
            Payment.status == PaymentStatus.SUCCEEDED,
            Payment.order_id.is_(None),
            Payment.checkout_snapshot.is_not(None),
            Payment.settlement_attempts < settings.RECONCILE_MAX_ATTEMPTS,
            Payment.paid_at < cutoff,
        )
        .order_by(Payment.paid_at)
    )
    return list(result.scalars().all())


# ── Queries ───────────────────────────────────────────────────

async def get_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
    order = await db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def today_stats(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    rows = (
        await db.execute(
            select(Order.status, Order.currency, func.count(Order.id), func.sum(Order.total_amount))
            .where(Order.created_at >= start)
            .group_by(Order.status, Order.currency)
        )
    ).all()

    total = completed = cancelled = 0
    revenue: Dict[str, Decimal] = {}
    for status, currency, count, amount in rows:
        total += count
        if status == OrderStatus.DELIVERED:
            completed += count
        if status == OrderStatus.CANCELLED:
            cancelled += count
        else:
            revenue[currency] = revenue.get(currency, Decimal("0.00")) + Decimal(amount or 0)

    return {
        "total_orders": total,
        "completed": completed,
        "cancelled": cancelled,
        "active": total - completed - cancelled,
        "revenue": revenue,
        "success_rate": round(completed / total * 100, 1) if total else 0.0,
    }
