"""
services/auth/service.py
Account creation.

create_user never reports success for a row that was not written: callers get
either a PersistedUser holding the durable row, or a PendingPersistUser when
the database refused the write and the registration was queued for retry.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import User, UserRole
from shared.utils.security import hash_password

logger = logging.getLogger(__name__)


class EmailAlreadyRegistered(Exception):
    pass


@dataclass(frozen=True)
class PersistedUser:
    user: User
    persisted = True


@dataclass(frozen=True)
class PendingPersistUser:
    email: str
    full_name: str
    phone: Optional[str]
    password_hash: str
    role: str
    error: str
    persisted = False

    def to_task_payload(self) -> dict:
        payload = asdict(self)
        payload.pop("error")
        return payload


UserRecord = Union[PersistedUser, PendingPersistUser]


def role_for_email(email: str) -> UserRole:
    bootstrap = settings.BOOTSTRAP_ADMIN_EMAIL
    if bootstrap and email.lower() == bootstrap.lower():
        return UserRole.ADMIN
    return UserRole.CUSTOMER


async def email_taken(db: AsyncSession, email: str) -> bool:
    existing = await db.scalar(
        select(User.id).where(func.lower(User.email) == email.lower())
    )
    return existing is not None


async def persist_user(
    db: AsyncSession,
    *,
    email: str,
    full_name: str,
    phone: Optional[str],
    password_hash: str,
    role: str,
) -> User:
    """Insert and commit. Raises EmailAlreadyRegistered on a unique violation."""
    user = User(
        email=email.lower(),
        full_name=full_name,
        phone=phone,
        password_hash=password_hash,
        role=UserRole(role),
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise EmailAlreadyRegistered(email) from exc
    return user


async def create_user(
    db: AsyncSession,
    *,
    email: str,
    password: str,
    full_name: str,
    phone: Optional[str] = None,
) -> UserRecord:
    if await email_taken(db, email):
        raise EmailAlreadyRegistered(email)

    fields = dict(
        email=email.lower(),
        full_name=full_name,
        phone=phone,
        password_hash=hash_password(password),
        role=role_for_email(email).value,
    )
    try:
        user = await persist_user(db, **fields)
    except EmailAlreadyRegistered:
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("User write failed for %s; queued for retry: %s", email, exc)
        return PendingPersistUser(error=str(exc), **fields)

    logger.info("Registered user %s (%s)", user.id, user.role.value)
    return PersistedUser(user=user)
