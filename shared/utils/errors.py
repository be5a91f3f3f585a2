"""
shared/utils/errors.py
Domain exceptions. Raised from services and rendered by the handlers
registered in main.py as {"error": ..., "detail"?: ..., "code"?: ...}.
"""

from typing import Any, Optional


class AppError(Exception):
    status_code: int = 500
    default_error: str = "Internal server error"

    def __init__(
        self,
        error: Optional[str] = None,
        *,
        detail: Any = None,
        code: Optional[str] = None,
    ):
        self.error = error or self.default_error
        self.detail = detail
        self.code = code
        super().__init__(self.error)

    def to_dict(self) -> dict:
        body: dict = {"error": self.error}
        if self.detail is not None:
            body["detail"] = self.detail
        if self.code is not None:
            body["code"] = self.code
        return body


class ValidationError(AppError):
    status_code = 400
    default_error = "Invalid request"


class PermissionDenied(AppError):
    status_code = 403
    default_error = "Forbidden"


class NotFoundError(AppError):
    status_code = 404
    default_error = "Not found"


class ConflictError(AppError):
    status_code = 409
    default_error = "Conflict"


class UpstreamNotConfigured(AppError):
    status_code = 501
    default_error = "Not configured"


class PaymentError(AppError):
    """Gateway call failed. Message and detail are safe to show to users."""
    status_code = 502
    default_error = "Payment provider error"

    def __init__(self, error: Optional[str] = None, *, detail: Any = None,
                 code: Optional[str] = None, gateway_code: Optional[str] = None):
        super().__init__(error, detail=detail, code=code)
        self.gateway_code = gateway_code


# ── Error codes ───────────────────────────────────────────────
PENDING_REQUEST = "PENDING_REQUEST"
SLOT_ALREADY_BOOKED = "SLOT_ALREADY_BOOKED"
ALREADY_REVIEWED = "ALREADY_REVIEWED"
PAYMENT_METHOD_REQUIRED = "PAYMENT_METHOD_REQUIRED"
PAYMENT_NOT_CAPTURABLE = "PAYMENT_NOT_CAPTURABLE"
INVALID_TRANSITION = "INVALID_TRANSITION"
PAYMENT_ALREADY_CAPTURED = "PAYMENT_ALREADY_CAPTURED"
