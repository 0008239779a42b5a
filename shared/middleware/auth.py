"""
shared/middleware/auth.py
FastAPI dependencies for authentication and role checks.
Access tokens are verified, checked against the Redis deny-list, and resolved
to a live account on every protected route.
"""

import uuid
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import User, UserRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)

_UNAUTHORIZED = {"WWW-Authenticate": "Bearer"}


class TokenData:
    """Claims of a verified access token."""

    def __init__(self, payload: dict):
        self.user_id: uuid.UUID = uuid.UUID(payload["sub"])
        self.role: UserRole = UserRole(payload["role"])
        self.email: str = payload["email"]
        self.jti: str = payload["jti"]
        self.exp: int = int(payload.get("exp", 0))


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    if credentials is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Authentication required", _UNAUTHORIZED)

    try:
        token = TokenData(verify_access_token(credentials.credentials))
    except (JWTError, KeyError, ValueError):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or expired token", _UNAUTHORIZED)

    # Logged-out tokens stay on the deny-list until they would have expired
    if await RedisCache(redis).is_token_revoked(token.jti):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token has been revoked", _UNAUTHORIZED)
    return token


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    """The account behind the token. Deleted accounts are unknown, suspended ones forbidden."""
    user = await db.get(User, token_data.user_id)
    if user is None or user.is_deleted:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "User not found", _UNAUTHORIZED)
    if not user.is_active:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "User account is inactive")
    return user


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(self, current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in self.roles:
            raise HTTPException(
                status.HTTP_403_FORBIDDEN,
                f"Required role: {[r.value for r in self.roles]}",
            )
        return current_user


require_admin = RoleRequired(UserRole.ADMIN)
