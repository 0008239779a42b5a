"""
services/auth/router.py
Email/password authentication endpoints.
Implements: Register → Login → Refresh (rotation) → Logout → Me
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.auth.service import EmailAlreadyRegistered, create_user
from shared.middleware.auth import TokenData, get_current_user, get_token_data
from shared.models.models import RefreshToken, User
from shared.schemas.schemas import (
    AuthResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PendingRegistrationResponse,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from shared.utils.security import (
    create_access_token,
    create_refresh_token,
    hash_token,
    is_strong_password,
    remaining_ttl,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


# ── Helper ────────────────────────────────────────────────────

def _issue_tokens(user: User, db: AsyncSession, request: Request) -> tuple[str, str]:
    """Issue access + refresh tokens. Only the refresh token's hash is stored."""
    access_token, _ = create_access_token(
        user_id=user.id,
        role=user.role.value,
        email=user.email,
    )
    raw_refresh, hashed_refresh, expires_at = create_refresh_token()
    db.add(
        RefreshToken(
            user_id=user.id,
            token_hash=hashed_refresh,
            expires_at=expires_at,
            user_agent=request.headers.get("user-agent"),
        )
    )
    return access_token, raw_refresh


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ── Endpoints ─────────────────────────────────────────────────

@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    responses={202: {"model": PendingRegistrationResponse}},
    summary="Create a customer account",
)
async def register(
    data: RegisterRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    201 with tokens once the account row is durable.
    202 without tokens when the write failed and was queued for retry;
    the client should try logging in again shortly.
    """
    if not is_strong_password(data.password):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Password must contain at least one letter and one digit",
        )

    try:
        record = await create_user(
            db,
            email=data.email,
            password=data.password,
            full_name=data.full_name,
            phone=data.phone,
        )
    except EmailAlreadyRegistered:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    if not record.persisted:
        from tasks.user_tasks import persist_pending_user

        try:
            persist_pending_user.delay(record.to_task_payload())
        except Exception:
            logger.exception("Could not queue pending registration for %s", record.email)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Registration is temporarily unavailable",
            )
        pending = PendingRegistrationResponse(
            email=record.email,
            full_name=record.full_name,
            message="Your account is being created. Please try logging in shortly.",
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=pending.model_dump(mode="json"))

    user = record.user
    access_token, raw_refresh = _issue_tokens(user, db, request)
    await db.commit()

    return AuthResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


@router.post("/login", response_model=AuthResponse, summary="Log in with email and password")
async def login(
    data: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(User).where(
            func.lower(User.email) == data.email.lower(),
            User.deleted_at.is_(None),
        )
    )
    user = result.scalar_one_or_none()
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    access_token, raw_refresh = _issue_tokens(user, db, request)
    await db.commit()

    return AuthResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


@router.post("/refresh", response_model=TokenResponse, summary="Refresh access token")
async def refresh_token(
    data: RefreshRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Issue a new access token using a valid refresh token.
    Rotates the refresh token: the presented one is revoked.
    """
    result = await db.execute(
        select(RefreshToken).where(
            RefreshToken.token_hash == hash_token(data.refresh_token),
            RefreshToken.is_revoked.is_(False),
        )
    )
    db_token = result.scalar_one_or_none()
    if not db_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or revoked refresh token",
        )
    if _as_utc(db_token.expires_at) < datetime.now(timezone.utc):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token expired",
        )

    user = await db.get(User, db_token.user_id)
    if not user or not user.is_active or user.is_deleted:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    db_token.is_revoked = True
    access_token, raw_refresh = _issue_tokens(user, db, request)
    await db.commit()

    return TokenResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    data: LogoutRequest,
    token_data: TokenData = Depends(get_token_data),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Deny-list the access token in Redis and revoke the refresh token if given."""
    ttl = remaining_ttl(token_data.exp)
    if ttl > 0:
        await RedisCache(redis).revoke_token(token_data.jti, ttl)

    if data.refresh_token:
        result = await db.execute(
            select(RefreshToken).where(
                RefreshToken.token_hash == hash_token(data.refresh_token),
                RefreshToken.user_id == current_user.id,
            )
        )
        db_token = result.scalar_one_or_none()
        if db_token:
            db_token.is_revoked = True
    await db.commit()

    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse, summary="Get current user")
async def get_me(current_user: User = Depends(get_current_user)):
    """Returns the authenticated user's profile."""
    return UserResponse.model_validate(current_user)
