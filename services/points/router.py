"""
services/points/router.py
Loyalty points balance and history for the signed-in customer.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.points import service as ledger
from shared.middleware.auth import get_current_user
from shared.models.models import User
from shared.schemas.schemas import PointsBalanceResponse, PointsHistoryResponse

router = APIRouter(prefix="/points", tags=["Points"])


@router.get("/me", response_model=PointsBalanceResponse)
async def get_my_points(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    balance = await ledger.get_balance(db, current_user.id)
    rule = await ledger.get_earn_rule(db)
    return PointsBalanceResponse(
        balance=balance,
        cash_value=ledger.points_to_cash(balance),
        earn_rate_percent=rule.rate_percent,
        point_cash_value=settings.POINT_CASH_VALUE,
    )


@router.get("/me/history", response_model=list[PointsHistoryResponse])
async def get_my_points_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Ledger entries, newest first."""
    entries = await ledger.list_history(db, current_user.id, page, page_size)
    return [PointsHistoryResponse.model_validate(e) for e in entries]
