"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from shared.models.models import OrderStatus

CANADIAN_PROVINCES = {
    "AB", "BC", "MB", "NB", "NL", "NS", "NT", "NU", "ON", "PE", "QC", "SK", "YT",
}


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Auth ──────────────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    full_name: str = Field(..., min_length=2, max_length=255)
    phone: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{9,14}$")


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str


class RefreshRequest(BaseSchema):
    refresh_token: str


class LogoutRequest(BaseSchema):
    refresh_token: Optional[str] = None


class TokenResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class AuthResponse(TokenResponse):
    persisted: Literal[True] = True
    user: "UserResponse"


class PendingRegistrationResponse(BaseSchema):
    """Account accepted but not yet durable; no tokens are issued until it is."""
    persisted: Literal[False] = False
    email: EmailStr
    full_name: str
    message: str


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: str
    full_name: str
    phone: Optional[str]
    role: str
    created_at: datetime


class UserUpdateRequest(BaseSchema):
    full_name: Optional[str] = Field(None, min_length=2, max_length=255)
    phone: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{9,14}$")


class AddressCreate(BaseSchema):
    label: str = Field(..., max_length=50)
    street: str = Field(..., max_length=255)
    unit: Optional[str] = Field(None, max_length=50)
    city: str = Field(..., max_length=100)
    province: str
    postal_code: str = Field(..., pattern=r"^[A-Za-z]\d[A-Za-z][ -]?\d[A-Za-z]\d$")
    phone: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{9,14}$")
    is_default: bool = False

    @field_validator("province")
    @classmethod
    def validate_province(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in CANADIAN_PROVINCES:
            raise ValueError("Unknown province code")
        return v

    @field_validator("postal_code")
    @classmethod
    def normalize_postal_code(cls, v: str) -> str:
        compact = v.replace(" ", "").replace("-", "").upper()
        return f"{compact[:3]} {compact[3:]}"


class AddressResponse(AddressCreate):
    id: uuid.UUID


# ── Cart ──────────────────────────────────────────────────────

class CartItemCreate(BaseSchema):
    product_id: uuid.UUID
    quantity: int = Field(..., ge=1, le=99)
    option_ids: List[uuid.UUID] = Field(default_factory=list)
    special_instructions: Optional[str] = Field(None, max_length=500)


class CartItemUpdate(BaseSchema):
    quantity: int = Field(..., ge=1, le=99)


class CartLineResponse(BaseSchema):
    id: uuid.UUID
    product_id: uuid.UUID
    product_name: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    option_ids: List[uuid.UUID]
    special_instructions: Optional[str]


class CartResponse(BaseSchema):
    id: uuid.UUID
    items: List[CartLineResponse]
    subtotal: Decimal


# ── Checkout & Orders ─────────────────────────────────────────

class CheckoutRequest(BaseSchema):
    address_id: uuid.UUID
    points_to_use: int = Field(default=0, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    notes: Optional[str] = Field(None, max_length=1000)


class CheckoutResponse(BaseSchema):
    payment_id: uuid.UUID
    intent_id: str
    client_secret: str
    subtotal_amount: Decimal
    points_to_use: int
    points_discount: Decimal
    total_amount: Decimal
    points_to_earn: int
    currency: str


class CheckoutConfirmRequest(BaseSchema):
    intent_id: str


class OrderItemResponse(BaseSchema):
    id: uuid.UUID
    product_id: uuid.UUID
    product_name: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    customizations: List[Dict[str, Any]]
    special_instructions: Optional[str]


class OrderResponse(BaseSchema):
    id: uuid.UUID
    order_number: str
    user_id: uuid.UUID
    status: str
    subtotal_amount: Decimal
    total_amount: Decimal
    currency: str
    delivery_address: Dict[str, Any]
    notes: Optional[str]
    points_used: int
    points_earned: int
    confirmed_at: Optional[datetime]
    delivered_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime
    items: List[OrderItemResponse]


class OrderStatusUpdateRequest(BaseSchema):
    status: OrderStatus


class TodayStatsResponse(BaseSchema):
    total_orders: int
    completed: int
    active: int
    cancelled: int
    revenue: Dict[str, Decimal]   # currency -> settled revenue
    success_rate: float


# ── Payment ───────────────────────────────────────────────────

class PaymentResponse(BaseSchema):
    id: uuid.UUID
    order_id: Optional[uuid.UUID]
    processor_intent_id: str
    amount: Decimal
    currency: str
    status: str
    card_brand: Optional[str]
    card_last4: Optional[str]
    paid_at: Optional[datetime]
    settlement_attempts: int
    last_settlement_error: Optional[str]
    created_at: datetime


class RefundRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


# ── Points ────────────────────────────────────────────────────

class PointsBalanceResponse(BaseSchema):
    balance: int
    cash_value: Decimal
    earn_rate_percent: Decimal
    point_cash_value: Decimal


class PointsHistoryResponse(BaseSchema):
    id: uuid.UUID
    points: int
    type: str
    description: Optional[str]
    order_id: Optional[uuid.UUID]
    created_at: datetime


class PointsAdjustRequest(BaseSchema):
    user_id: uuid.UUID
    delta: int
    description: str = Field(..., min_length=3, max_length=255)

    @field_validator("delta")
    @classmethod
    def validate_delta(cls, v: int) -> int:
        if v == 0:
            raise ValueError("Adjustment must be non-zero")
        return v


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    order_id: uuid.UUID
    product_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5, strict=True)
    comment: Optional[str] = Field(None, max_length=2000)
    images: List[str] = Field(default_factory=list, max_length=5)


class RestaurantReviewCreateRequest(BaseSchema):
    rating: int = Field(..., ge=1, le=5, strict=True)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewRejectRequest(BaseSchema):
    # Blank reasons are rejected by the moderation workflow itself
    reason: Optional[str] = Field(None, max_length=1000)


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    order_id: Optional[uuid.UUID]
    user_id: uuid.UUID
    product_id: Optional[uuid.UUID]
    rating: int
    comment: Optional[str]
    images: List[str]
    is_approved: bool
    is_rejected: bool
    rejection_reason: Optional[str]
    moderated_at: Optional[datetime]
    created_at: datetime


class ReviewableResponse(BaseSchema):
    order_id: uuid.UUID
    product_ids: List[uuid.UUID]


class ProductRatingResponse(BaseSchema):
    product_id: uuid.UUID
    average_rating: Optional[float]
    review_count: int


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    body: str
    data: Optional[Dict[str, Any]]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime
    order_id: Optional[uuid.UUID]


class UnreadCountResponse(BaseSchema):
    unread: int


class PushTokenRegisterRequest(BaseSchema):
    token: str = Field(..., min_length=10, max_length=255)
    device_type: str = Field(..., pattern="^(ios|android|web)$")


class PushTokenResponse(BaseSchema):
    id: uuid.UUID
    token: str
    device_type: str
    is_active: bool


class BroadcastRequest(BaseSchema):
    title: str = Field(..., min_length=1, max_length=255)
    body: str = Field(..., min_length=1, max_length=2000)
    data: Optional[Dict[str, str]] = None


# ── Admin ─────────────────────────────────────────────────────

class UserSuspendRequest(BaseSchema):
    reason: str = Field(..., min_length=3, max_length=500)


class SettingResponse(BaseSchema):
    key: str
    value: Decimal
    description: str
    is_default: bool
    updated_at: Optional[datetime] = None


class SettingUpdateRequest(BaseSchema):
    value: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)


class AuditLogResponse(BaseSchema):
    id: uuid.UUID
    admin_id: uuid.UUID
    action: str
    entity_type: str
    entity_id: Optional[str]
    payload: Optional[Dict[str, Any]]
    created_at: datetime


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
    request_id: Optional[str] = None


AuthResponse.model_rebuild()
