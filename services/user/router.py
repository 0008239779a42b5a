"""
services/user/router.py
User profile management and the delivery address book.
"""

from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import Address, RefreshToken, User
from shared.schemas.schemas import (
    AddressCreate,
    AddressResponse,
    MessageResponse,
    UserResponse,
    UserUpdateRequest,
)

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the currently authenticated user's profile."""
    return UserResponse.model_validate(current_user)


@router.put("/me", response_model=UserResponse)
async def update_me(
    data: UserUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Only non-None fields in the request body are updated."""
    updates = data.model_dump(exclude_none=True)
    for field, value in updates.items():
        setattr(current_user, field, value)

    if updates:
        await db.commit()
    return UserResponse.model_validate(current_user)


@router.delete("/me", response_model=MessageResponse)
async def delete_me(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Soft delete. Personal fields are anonymised; orders, payments and the
    points ledger stay for accounting.
    """
    current_user.email = f"deleted-{current_user.id}@deleted.invalid"
    current_user.full_name = "Deleted user"
    current_user.phone = None
    current_user.is_active = False
    current_user.deleted_at = datetime.now(timezone.utc)

    await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == current_user.id)
        .values(is_revoked=True)
    )
    await db.commit()
    return MessageResponse(message="Account deleted")


# ── Address Book ───────────────────────────────────────────────────────────────

async def _get_own_address(db: AsyncSession, user: User, address_id: UUID) -> Address:
    address = await db.scalar(
        select(Address).where(Address.id == address_id, Address.user_id == user.id)
    )
    if not address:
        raise HTTPException(status_code=404, detail="Address not found")
    return address


async def _clear_default(db: AsyncSession, user: User) -> None:
    # Cleared and flushed first so the one-default-per-user index never sees two
    await db.execute(
        update(Address)
        .where(Address.user_id == user.id, Address.is_default.is_(True))
        .values(is_default=False)
        .execution_options(synchronize_session="fetch")
    )


@router.get("/me/addresses", response_model=list[AddressResponse])
async def get_addresses(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Address)
        .where(Address.user_id == current_user.id)
        .order_by(Address.is_default.desc(), Address.created_at.desc())
    )
    return [AddressResponse.model_validate(a) for a in result.scalars()]


@router.post("/me/addresses", response_model=AddressResponse, status_code=status.HTTP_201_CREATED)
async def add_address(
    data: AddressCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The first address saved becomes the default."""
    has_any = await db.scalar(select(Address.id).where(Address.user_id == current_user.id).limit(1))
    make_default = data.is_default or has_any is None
    if make_default:
        await _clear_default(db, current_user)

    address = Address(user_id=current_user.id, **data.model_dump(exclude={"is_default"}))
    address.is_default = make_default
    db.add(address)
    await db.commit()
    return AddressResponse.model_validate(address)


@router.put("/me/addresses/{address_id}/default", response_model=AddressResponse)
async def set_default_address(
    address_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    address = await _get_own_address(db, current_user, address_id)
    if not address.is_default:
        await _clear_default(db, current_user)
        address.is_default = True
        await db.commit()
    return AddressResponse.model_validate(address)


@router.delete("/me/addresses/{address_id}", response_model=MessageResponse)
async def delete_address(
    address_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Past orders keep their own copy of the address."""
    address = await _get_own_address(db, current_user, address_id)
    await db.delete(address)
    await db.commit()
    return MessageResponse(message="Address deleted")
