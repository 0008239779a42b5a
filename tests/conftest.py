"""
tests/conftest.py
Shared fixtures: a throwaway SQLite database per test, fakeredis in place of
Redis, an httpx client bound to the app, and seeded users/catalogue/cart.
"""

import os

# Settings are read at import time; these must be set before any app import
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_CONFIRM_TIMEOUT_SECONDS"] = "1.0"
os.environ["STRIPE_CONFIRM_POLL_INTERVAL_SECONDS"] = "0.01"
os.environ["FANOUT_ENABLED"] = "false"
os.environ["RATE_LIMIT_UNAUTH_PER_MINUTE"] = "10000"
os.environ["BOOTSTRAP_ADMIN_EMAIL"] = "owner@shop.test"

import uuid
from decimal import Decimal

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config import database
from config import redis_client as redis_module
from config.database import Base
from main import app
from services.payment.service import stripe_breaker
from shared.models.models import (
    Address,
    Cart,
    CartItem,
    Order,
    OrderCounter,
    OrderItem,
    OrderStatus,
    Product,
    ProductOption,
    User,
    UserRole,
)
from shared.utils.security import create_access_token, hash_password

TEST_PASSWORD = "Secret123"
_PASSWORD_HASH = hash_password(TEST_PASSWORD)


# ── Infrastructure ────────────────────────────────────────────

@pytest_asyncio.fixture
async def session_factory(tmp_path, monkeypatch):
    """File-backed SQLite so every session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with factory() as session:
        session.add(OrderCounter(name=OrderCounter.ORDERS, value=0))
        await session.commit()

    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "AsyncSessionLocal", factory)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def redis(monkeypatch):
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr(redis_module, "redis_client", client)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory, redis):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture(autouse=True)
def reset_stripe_breaker():
    stripe_breaker.close()
    yield
    stripe_breaker.close()


@pytest.fixture(autouse=True)
def queued(monkeypatch):
    """Capture Celery .delay() calls instead of talking to a broker."""
    from tasks import notification_tasks, user_tasks

    calls = {"push": [], "broadcast": [], "pending_user": []}
    monkeypatch.setattr(
        notification_tasks.push_to_users, "delay", lambda *a, **kw: calls["push"].append(kw)
    )
    monkeypatch.setattr(
        notification_tasks.broadcast_to_customers, "delay", lambda *a, **kw: calls["broadcast"].append(a)
    )
    monkeypatch.setattr(
        user_tasks.persist_pending_user, "delay", lambda *a, **kw: calls["pending_user"].append(a)
    )
    return calls


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(user.id, user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


# ── Seed data ─────────────────────────────────────────────────

async def make_user(db: AsyncSession, email: str, role: UserRole = UserRole.CUSTOMER) -> User:
    user = User(
        email=email,
        password_hash=_PASSWORD_HASH,
        full_name=email.split("@")[0].title(),
        role=role,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def user(db) -> User:
    return await make_user(db, "ayla@example.com")


@pytest_asyncio.fixture
async def other_user(db) -> User:
    return await make_user(db, "deniz@example.com")


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await make_user(db, "staff@shop.test", UserRole.ADMIN)


@pytest_asyncio.fixture
async def product(db) -> Product:
    p = Product(name="Margherita Pizza", price=Decimal("20.00"))
    db.add(p)
    await db.commit()
    return p


@pytest_asyncio.fixture
async def option(db) -> ProductOption:
    o = ProductOption(name="Extra cheese", price=Decimal("1.00"))
    db.add(o)
    await db.commit()
    return o


@pytest_asyncio.fixture
async def address(db, user) -> Address:
    a = Address(
        user_id=user.id,
        label="Home",
        street="100 Queen St W",
        city="Toronto",
        province="ON",
        postal_code="M5H 2N2",
        is_default=True,
    )
    db.add(a)
    await db.commit()
    return a


@pytest_asyncio.fixture
async def cart(db, user, product, option) -> Cart:
    """2 x (20.00 + 1.00 cheese) = 42.00"""
    c = Cart(
        user_id=user.id,
        items=[CartItem(product_id=product.id, quantity=2, option_ids=[str(option.id)])],
    )
    db.add(c)
    await db.commit()
    return c


def new_intent_id() -> str:
    return f"pi_{uuid.uuid4().hex[:24]}"


_order_seq = 0


async def make_order(
    db: AsyncSession,
    user: User,
    product: Product,
    status: OrderStatus = OrderStatus.PENDING,
    points_used: int = 0,
    points_earned: int = 0,
) -> Order:
    """An already-settled order, inserted directly for lifecycle tests."""
    global _order_seq
    _order_seq += 1
    order = Order(
        order_number=f"ORD-T{_order_seq:07d}",
        user_id=user.id,
        status=status,
        subtotal_amount=Decimal("20.00"),
        total_amount=Decimal("20.00"),
        currency="CAD",
        delivery_address={"city": "Toronto", "postal_code": "M5H 2N2"},
        points_used=points_used,
        points_earned=points_earned,
        items=[
            OrderItem(
                product_id=product.id,
                product_name=product.name,
                quantity=1,
                unit_price=Decimal("20.00"),
                subtotal=Decimal("20.00"),
                customizations=[],
            )
        ],
    )
    db.add(order)
    await db.commit()
    return order

