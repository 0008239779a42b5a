"""
shared/utils/security.py
JWT creation/verification, password hashing, and Stripe webhook verification.
"""

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone

import stripe
from jose import JWTError, jwt
from passlib.context import CryptContext

from config.settings import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


# ── JWT ───────────────────────────────────────────────────────

def create_access_token(user_id: uuid.UUID, role: str, email: str) -> tuple[str, str]:
    """
    Create a signed JWT access token.
    Returns (token, jti); the jti is deny-listed on logout.
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "jti": jti,
        "iat": now,
        "exp": now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
        "type": "access",
    }
    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token, jti


def create_refresh_token() -> tuple[str, str, datetime]:
    """
    Create a random refresh token.
    Returns (raw_token, hashed_token, expires_at); only the hash is stored.
    """
    raw_token = secrets.token_urlsafe(64)
    expires_at = datetime.now(timezone.utc) + timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS)
    return raw_token, hash_token(raw_token), expires_at


def hash_token(token: str) -> str:
    """SHA-256 hash for securely storing refresh tokens."""
    return hashlib.sha256(token.encode()).hexdigest()


def verify_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.
    Raises JWTError on invalid/expired token.
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
    )
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    return payload


def remaining_ttl(exp: int) -> int:
    """Seconds until a token's exp claim. Used for JWT deny-list TTL."""
    remaining = exp - datetime.now(timezone.utc).timestamp()
    return max(0, int(remaining))


# ── Password ──────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)



def is_strong_password(password: str) -> bool:
    """At least 8 characters with one letter and one digit."""
    return (
        len(password) >= 8
        and any(c.isalpha() for c in password)
        and any(c.isdigit() for c in password)
    )


# ── Stripe Webhook Signature ──────────────────────────────────

def construct_stripe_event(payload_body: bytes, signature: str) -> stripe.Event:
    """
    Verify the Stripe-Signature header and parse the event.
    Raises ValueError on a malformed body and
    stripe.error.SignatureVerificationError on a bad signature.
    """
    return stripe.Webhook.construct_event(
        payload_body, signature, settings.STRIPE_WEBHOOK_SECRET
    )
