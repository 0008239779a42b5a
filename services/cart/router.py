"""
services/cart/router.py
Server-side cart. Prices shown here are indicative; checkout re-prices
every line from the catalogue.
"""

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import Cart, CartItem, Product, ProductOption, User
from shared.schemas.schemas import (
    CartItemCreate,
    CartItemUpdate,
    CartLineResponse,
    CartResponse,
    MessageResponse,
)

router = APIRouter(prefix="/cart", tags=["Cart"])


# ── Helpers ────────────────────────────────────────────────────────────────────

async def get_or_create_cart(db: AsyncSession, user: User) -> Cart:
    cart = await db.scalar(select(Cart).where(Cart.user_id == user.id))
    if cart is None:
        cart = Cart(user_id=user.id, items=[])
        db.add(cart)
        await db.flush()
    return cart


async def _cart_response(db: AsyncSession, cart: Cart) -> CartResponse:
    product_ids = {item.product_id for item in cart.items}
    option_ids = {UUID(str(o)) for item in cart.items for o in item.option_ids or []}
    products = {}
    options = {}
    if product_ids:
        products = {
            p.id: p for p in (await db.execute(select(Product).where(Product.id.in_(product_ids)))).scalars()
        }
    if option_ids:
        options = {
            o.id: o
            for o in (await db.execute(select(ProductOption).where(ProductOption.id.in_(option_ids)))).scalars()
        }

    lines = []
    for item in cart.items:
        product = products.get(item.product_id)
        if product is None:
            continue
        unit_price = Decimal(product.price) + sum(
            (Decimal(options[UUID(str(o))].price) for o in item.option_ids or [] if UUID(str(o)) in options),
            Decimal("0.00"),
        )
        lines.append(
            CartLineResponse(
                id=item.id,
                product_id=item.product_id,
                product_name=product.name,
                quantity=item.quantity,
                unit_price=unit_price,
                subtotal=unit_price * item.quantity,
                option_ids=[UUID(str(o)) for o in item.option_ids or []],
                special_instructions=item.special_instructions,
            )
        )
    return CartResponse(
        id=cart.id,
        items=lines,
        subtotal=sum((line.subtotal for line in lines), Decimal("0.00")),
    )


async def _get_own_item(db: AsyncSession, user: User, item_id: UUID) -> CartItem:
    item = await db.scalar(
        select(CartItem)
        .join(Cart, Cart.id == CartItem.cart_id)
        .where(CartItem.id == item_id, Cart.user_id == user.id)
    )
    if not item:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return item


# ── Endpoints ──────────────────────────────────────────────────────────────────

@router.get("", response_model=CartResponse)
async def get_cart(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    cart = await get_or_create_cart(db, current_user)
    await db.commit()
    return await _cart_response(db, cart)


@router.post("/items", response_model=CartResponse, status_code=status.HTTP_201_CREATED)
async def add_item(
    data: CartItemCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    product = await db.get(Product, data.product_id)
    if not product or not product.is_active:
        raise HTTPException(status_code=404, detail="Product not found")
    if data.option_ids:
        found = await db.scalars(
            select(ProductOption.id).where(
                ProductOption.id.in_(data.option_ids),
                ProductOption.is_active.is_(True),
            )
        )
        if len(set(found.all())) != len(set(data.option_ids)):
            raise HTTPException(status_code=404, detail="Product option not found")

    cart = await get_or_create_cart(db, current_user)
    cart.items.append(
        CartItem(
            product_id=data.product_id,
            quantity=data.quantity,
            option_ids=[str(o) for o in data.option_ids],
            special_instructions=data.special_instructions,
        )
    )
    await db.commit()
    return await _cart_response(db, cart)


@router.patch("/items/{item_id}", response_model=CartResponse)
async def update_item(
    item_id: UUID,
    data: CartItemUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    item = await _get_own_item(db, current_user, item_id)
    item.quantity = data.quantity
    await db.commit()
    cart = await get_or_create_cart(db, current_user)
    return await _cart_response(db, cart)


@router.delete("/items/{item_id}", response_model=CartResponse)
async def remove_item(
    item_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    item = await _get_own_item(db, current_user, item_id)
    cart = await get_or_create_cart(db, current_user)
    cart.items.remove(item)
    await db.commit()
    return await _cart_response(db, cart)


@router.delete("", response_model=MessageResponse)
async def clear_cart(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    cart = await db.scalar(select(Cart).where(Cart.user_id == current_user.id))
    if cart:
        await db.execute(delete(CartItem).where(CartItem.cart_id == cart.id))
        await db.commit()
    return MessageResponse(message="Cart cleared")
