"""
services/points/service.py
Points ledger. The balance is always the sum of a user's PointsHistory rows;
writes that depend on the balance read it under a lock on the user row.

The earn rule (rate and minimum order) is editable at runtime through the
settings table; values not stored there come from the environment.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.exceptions import InsufficientPointsError, InvalidSettingError, NotFoundError
from shared.models.models import PointsHistory, PointsType, Setting, User

logger = logging.getLogger(__name__)


async def get_balance(db: AsyncSession, user_id: uuid.UUID, *, for_update: bool = False) -> int:
    """
    Current balance. With for_update the user row is locked first so that
    concurrent settlements for the same user serialize on this read.
    """
    if for_update:
        locked = await db.execute(
            select(User.id).where(User.id == user_id).with_for_update()
        )
        if locked.scalar_one_or_none() is None:
            raise NotFoundError("User not found")

    total = await db.scalar(
        select(func.coalesce(func.sum(PointsHistory.points), 0)).where(
            PointsHistory.user_id == user_id
        )
    )
    return int(total or 0)


async def post_entry(
    db: AsyncSession,
    user_id: uuid.UUID,
    points: int,
    type: PointsType,
    description: Optional[str] = None,
    order_id: Optional[uuid.UUID] = None,
) -> PointsHistory:
    entry = PointsHistory(
        user_id=user_id,
        points=points,
        type=type,
        description=description,
        order_id=order_id,
    )
    db.add(entry)
    await db.flush()
    return entry


# ── Earn rule ─────────────────────────────────────────────────

POINTS_RATE = "points_rate"
POINTS_MIN_ORDER = "points_min_order"

SETTING_DESCRIPTIONS: Dict[str, str] = {
    POINTS_RATE: "Percent of the paid total returned as points",
    POINTS_MIN_ORDER: "Smallest paid total that earns points",
}


@dataclass(frozen=True)
class EarnRule:
    rate_percent: Decimal
    min_order_amount: Decimal

    @classmethod
    def from_env(cls) -> "EarnRule":
        return cls(settings.POINTS_EARN_RATE_PERCENT, settings.POINTS_MIN_ORDER_AMOUNT)


def _env_defaults() -> Dict[str, Decimal]:
    return {
        POINTS_RATE: settings.POINTS_EARN_RATE_PERCENT,
        POINTS_MIN_ORDER: settings.POINTS_MIN_ORDER_AMOUNT,
    }


def _parse(setting: Optional[Setting], default: Decimal) -> Decimal:
    if setting is None:
        return default
    try:
        return Decimal(setting.value)
    except InvalidOperation:
        logger.warning("Unreadable setting %s=%r, using %s", setting.key, setting.value, default)
        return default


async def stored_settings(db: AsyncSession) -> Dict[str, Setting]:
    result = await db.execute(select(Setting).where(Setting.key.in_(list(SETTING_DESCRIPTIONS))))
    return {s.key: s for s in result.scalars()}


async def get_earn_rule(db: AsyncSession) -> EarnRule:
    """Stored values win; anything missing or unreadable falls back to the environment."""
    stored = await stored_settings(db)
    defaults = _env_defaults()
    return EarnRule(
        rate_percent=_parse(stored.get(POINTS_RATE), defaults[POINTS_RATE]),
        min_order_amount=_parse(stored.get(POINTS_MIN_ORDER), defaults[POINTS_MIN_ORDER]),
    )


async def list_settings(db: AsyncSession) -> List[dict]:
    stored = await stored_settings(db)
    defaults = _env_defaults()
    rows = []
    for key, description in SETTING_DESCRIPTIONS.items():
        setting = stored.get(key)
        rows.append({
            "key": key,
            "value": _parse(setting, defaults[key]),
            "description": description,
            "is_default": setting is None,
            "updated_at": setting.updated_at if setting else None,
        })
    return rows


async def update_setting(
    db: AsyncSession, key: str, value: Decimal, updated_by: uuid.UUID
) -> Tuple[Optional[str], Setting]:
    """Store a new value. Returns the previous stored value (None when it was the default)."""
    if key not in SETTING_DESCRIPTIONS:
        raise NotFoundError(f"Unknown setting '{key}'")
    if value < 0:
        raise InvalidSettingError(f"{key} cannot be negative")
    if key == POINTS_RATE and value > 100:
        raise InvalidSettingError("points_rate is a percentage between 0 and 100")

    setting = await db.get(Setting, key)
    previous = setting.value if setting else None
    if setting is None:
        setting = Setting(key=key, value=str(value), updated_by_id=updated_by)
        db.add(setting)
    else:
        setting.value = str(value)
        setting.updated_by_id = updated_by
    await db.flush()
    logger.info("Setting %s changed from %s to %s", key, previous, value)
    return previous, setting


def calculate_points_to_earn(total: Decimal, rule: Optional[EarnRule] = None) -> int:
    """
    Points earned for a settled total: the earn rate applied to the total,
    expressed in points. With defaults, $40.00 earns 200 points.
    """
    rule = rule or EarnRule.from_env()
    if total <= 0 or total < rule.min_order_amount:
        return 0
    reward_value = total * rule.rate_percent / Decimal("100")
    return int((reward_value / settings.POINT_CASH_VALUE).to_integral_value(rounding=ROUND_FLOOR))


def points_to_cash(points: int) -> Decimal:
    return (Decimal(points) * settings.POINT_CASH_VALUE).quantize(Decimal("0.01"))


async def adjust(
    db: AsyncSession,
    user_id: uuid.UUID,
    delta: int,
    description: str,
) -> PointsHistory:
    """Administrative adjustment. A debit larger than the balance is refused."""
    balance = await get_balance(db, user_id, for_update=True)
    if delta < 0 and -delta > balance:
        raise InsufficientPointsError(requested=-delta, available=balance)
    return await post_entry(db, user_id, delta, PointsType.ADMIN_ADJUSTMENT, description)


async def list_history(
    db: AsyncSession, user_id: uuid.UUID, page: int = 1, page_size: int = 20
) -> List[PointsHistory]:
    result = await db.execute(
        select(PointsHistory)
        .where(PointsHistory.user_id == user_id)
        .order_by(PointsHistory.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all())


async def expire_inactive_points(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Zero out balances with no ledger activity for POINTS_EXPIRY_DAYS.
    Returns the number of users whose points expired.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=settings.POINTS_EXPIRY_DAYS)

    result = await db.execute(
        select(PointsHistory.user_id)
        .group_by(PointsHistory.user_id)
        .having(func.sum(PointsHistory.points) > 0)
        .having(func.max(PointsHistory.created_at) < cutoff)
    )
    user_ids = list(result.scalars().all())

    expired = 0
    for user_id in user_ids:
        balance = await get_balance(db, user_id, for_update=True)
        if balance <= 0:
            continue
        await post_entry(
            db,
            user_id,
            -balance,
            PointsType.EXPIRED,
            f"Expired after {settings.POINTS_EXPIRY_DAYS} days of inactivity",
        )
        expired += 1

    logger.info("Expired points for %d users", expired)
    return expired
