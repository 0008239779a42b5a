"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Storefront Settlement API"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    JWT_REFRESH_TOKEN_EXPIRE_DAYS: int = 30

    # ── Stripe ───────────────────────────────────────────────
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_VERSION: str = "2023-10-16"
    STRIPE_CONFIRM_TIMEOUT_SECONDS: float = 20.0
    STRIPE_CONFIRM_POLL_INTERVAL_SECONDS: float = 1.0

    # ── Firebase ─────────────────────────────────────────────
    FIREBASE_CREDENTIALS_PATH: str = "./config/firebase-credentials.json"
    FIREBASE_PROJECT_ID: str = ""

    # ── CORS ─────────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:8081,http://localhost:19006"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Currency & Points ────────────────────────────────────
    SUPPORTED_CURRENCIES: str = "CAD,TRY"
    DEFAULT_CURRENCY: str = "CAD"
    POINT_CASH_VALUE: Decimal = Decimal("0.01")     # 1 point = 1 cent
    POINTS_EARN_RATE_PERCENT: Decimal = Decimal("5")
    POINTS_MIN_ORDER_AMOUNT: Decimal = Decimal("0")
    POINTS_EXPIRY_DAYS: int = 365

    # ── Settlement Reconciliation ────────────────────────────
    RECONCILE_AFTER_MINUTES: int = 5
    RECONCILE_MAX_ATTEMPTS: int = 5
    PENDING_INTENT_STALE_HOURS: int = 24

    # ── Notification Fan-out ─────────────────────────────────
    FANOUT_ENABLED: bool = True
    FANOUT_STREAM_KEY: str = "changes:storefront"
    FANOUT_STREAM_MAXLEN: int = 10000
    FANOUT_QUEUE_SIZE: int = 1000
    FANOUT_WORKERS: int = 4
    FANOUT_BLOCK_MS: int = 5000
    FANOUT_CLAIM_IDLE_MS: int = 60000
    FANOUT_CONSUMER_NAME: Optional[str] = None      # hostname when unset; unique per process
    INAPP_CHANNEL: str = "inapp:admins"
    INAPP_USER_CHANNEL_PREFIX: str = "inapp:user:"

    # ── Account Bootstrap ────────────────────────────────────
    BOOTSTRAP_ADMIN_EMAIL: Optional[str] = None

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def supported_currencies_list(self) -> List[str]:
        return [c.strip().upper() for c in self.SUPPORTED_CURRENCIES.split(",") if c.strip()]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance; import `settings` rather than calling this."""
    return Settings()


settings = get_settings()
