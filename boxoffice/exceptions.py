"""
Exception hierarchy for checkout reconciliation and counter operations.

Every error carries:
- A stable error code (for client handling)
- The HTTP status the API answers with
- Whether the caller may safely retry

Idempotent duplicates are not errors: a repeated finalization returns the
existing order instead of raising.
"""
from typing import Any, Dict


class BoxOfficeError(Exception):
    """Base exception for all box office errors."""

    error_code = "internal_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
                "retryable": self.retryable,
            }
        }


class CheckoutValidationError(BoxOfficeError):
    """Raised when a checkout request is incomplete or inconsistent."""

    error_code = "invalid_checkout"
    http_status = 400


class UnsupportedGatewayError(BoxOfficeError):
    """Raised when no driver is registered for a gateway name."""

    error_code = "unsupported_gateway"
    http_status = 400


class GatewayError(BoxOfficeError):
    """Raised when a payment gateway call fails."""

    error_code = "gateway_error"
    http_status = 502


class PaymentInitiationError(GatewayError):
    """Raised when a gateway refuses or fails to start a payment."""

    error_code = "payment_initiation_failed"


class GatewayVerificationError(GatewayError):
    """Raised when a gateway verification call fails. Safe to retry."""

    error_code = "gateway_verification_failed"
    http_status = 503
    retryable = True


class GatewayTimeoutError(GatewayVerificationError):
    """Raised when a gateway verification call exceeds its time budget."""

    error_code = "gateway_timeout"
    http_status = 504


class SessionNotFoundError(BoxOfficeError):
    """Raised when neither an order nor a draft exists for a checkout session."""

    error_code = "session_not_found"
    http_status = 404


class CashSessionError(BoxOfficeError):
    """Base class for cash drawer session errors."""

    error_code = "cash_session_error"
    http_status = 400


class CashSessionConflictError(CashSessionError):
    """Raised when the cashier or the counter already has an open session."""

    error_code = "cash_session_conflict"
    http_status = 409


class CashSessionNotFoundError(CashSessionError):
    """Raised when no open session matches the request."""

    error_code = "cash_session_not_found"
    http_status = 404


class JobNotFoundError(BoxOfficeError):
    """Raised when a scheduler job name is not registered."""

    error_code = "job_not_found"
    http_status = 404
