"""
shared/exceptions.py
Domain error taxonomy. Every error carries the HTTP status and a machine code
rendered by the handler registered in main.py.
"""

from typing import Any, Optional


class StorefrontError(Exception):
    status_code: int = 400
    code: str = "storefront_error"

    def __init__(self, detail: str, **context: Any):
        super().__init__(detail)
        self.detail = detail
        self.context = context


class NotFoundError(StorefrontError):
    status_code = 404
    code = "not_found"


# ── Payments ──────────────────────────────────────────────────

class PaymentInitError(StorefrontError):
    """Processor unreachable or rejected the intent parameters."""
    status_code = 502
    code = "payment_init_failed"


class UnsupportedCurrencyError(PaymentInitError):
    status_code = 400
    code = "unsupported_currency"


class PaymentConfirmError(StorefrontError):
    """The processor does not report the intent as succeeded."""
    status_code = 402
    code = "payment_not_confirmed"

    def __init__(self, detail: str, processor_status: Optional[str] = None, **context: Any):
        super().__init__(detail, **context)
        self.processor_status = processor_status


# ── Settlement & Ledger ───────────────────────────────────────

class EmptyCartError(StorefrontError):
    code = "empty_cart"


class InsufficientPointsError(StorefrontError):
    status_code = 409
    code = "insufficient_points"

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Requested {requested} points but only {available} are available",
            requested=requested,
            available=available,
        )
        self.requested = requested
        self.available = available


class SettlementError(StorefrontError):
    """Checkout context cannot be settled (amount mismatch, unusable address or products)."""
    status_code = 409
    code = "settlement_failed"


class DuplicateOrderSettlementError(StorefrontError):
    """Intent already linked to an order. Never reaches a client; the order is returned."""
    status_code = 200
    code = "already_settled"

    def __init__(self, order):
        super().__init__(f"Payment already settled as order {order.order_number}")
        self.order = order


# ── Orders ────────────────────────────────────────────────────

class InvalidTransitionError(StorefrontError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot move order from '{current}' to '{requested}'",
            current=current,
            requested=requested,
        )
        self.current = current
        self.requested = requested


# ── Reviews ───────────────────────────────────────────────────

class ReviewNotAllowedError(StorefrontError):
    code = "review_not_allowed"


class DuplicateReviewError(StorefrontError):
    status_code = 409
    code = "duplicate_review"


class RejectionReasonRequiredError(StorefrontError):
    status_code = 422
    code = "rejection_reason_required"

    def __init__(self, detail: str = "A reason is required to reject a review"):
        super().__init__(detail)


# ── Settings ──────────────────────────────────────────────────

class InvalidSettingError(StorefrontError):
    status_code = 422
    code = "invalid_setting"
