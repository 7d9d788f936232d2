"""
Checkout Exception Hierarchy

Typed errors for checkout, gateway and reconciliation failures.
Every error carries a stable error code and the HTTP status it maps to.
"""
from typing import Optional, Dict, Any


class StoreError(Exception):
    """
    Base exception for all store errors.

    Rendered by the FastAPI exception handler in main.py using to_dict().
    """

    status_code: int = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "success": False,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


# ============================================================================
# Checkout
# ============================================================================

class CheckoutValidationError(StoreError):
    """
    Checkout input failed validation before any store access.

    Examples:
    - Empty cart
    - Phone number not in 2547XXXXXXXX / 2541XXXXXXXX format
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("validation_error", message, details)


class ProductNotFoundError(StoreError):
    """Cart references a product that does not exist."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("checkout:product_not_found", message, details)


class InsufficientStockError(StoreError):
    """
    Requested quantity exceeds available stock.

    Raised both by the up-front validation read and by the conditional
    decrement, whichever observes the shortfall first.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("checkout:insufficient_stock", message, details)


class ReservationExpiredError(StoreError):
    """The reservation was released by the sweep before the gateway answered."""

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("checkout:reservation_expired", message, details)


# ============================================================================
# Gateway
# ============================================================================

class GatewayAuthError(StoreError):
    """M-Pesa OAuth credential exchange failed (non-2xx or no token)."""

    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("gateway:auth_failed", message, details)


class GatewayUnreachableError(StoreError):
    """Transport-level failure talking to M-Pesa."""

    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("gateway:unreachable", message, details)


class GatewayRejectedError(StoreError):
    """
    M-Pesa answered but refused to start the STK push.

    The message is the gateway's own description.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("gateway:rejected", message, details)


# ============================================================================
# Reconciliation
# ============================================================================

class MalformedCallbackError(StoreError):
    """Callback body does not match the stkCallback envelope."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("callback:malformed", message, details)


class UnknownPaymentError(StoreError):
    """No payment carries the callback's CheckoutRequestID."""

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("callback:unknown_payment", message, details)


class PaymentNotFoundError(StoreError):
    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:not_found", message, details)


class OrderStateError(StoreError):
    """Order and payment disagree about the lifecycle state."""

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("order:invalid_state", message, details)


class PollTimeoutError(StoreError):
    """
    Status polling gave up without seeing a terminal state.

    Advisory only: the payment may still complete via the callback.
    """

    status_code = 504

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("poll:timeout", message, details)


# ============================================================================
# Auth
# ============================================================================

class AuthenticationError(StoreError):
    status_code = 401

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("auth:unauthenticated", message, details)


class PermissionDeniedError(StoreError):
    status_code = 403

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("auth:forbidden", message, details)
