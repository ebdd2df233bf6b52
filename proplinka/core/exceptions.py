"""
Domain exception classes.

Every exception carries an error code and the HTTP status the API layer
translates it to.
"""
from typing import Any, Dict, Optional


class ProplinkaError(Exception):
    """Base exception for all marketplace errors."""

    error_code = "error"
    http_status = 500

    def __init__(self, message: str, error_code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class ValidationError(ProplinkaError):
    """Raised when a request breaks a business rule."""

    error_code = "validation_error"
    http_status = 400


class NotFoundError(ProplinkaError):
    """Raised when a resource does not exist or is not visible to the caller."""

    error_code = "not_found"
    http_status = 404


class PermissionDeniedError(ProplinkaError):
    """Raised when the caller may not perform an action."""

    error_code = "permission_denied"
    http_status = 403


class ConflictError(ProplinkaError):
    """Raised when a resource is in a state that forbids the action."""

    error_code = "conflict"
    http_status = 409


class FeatureDisabledError(ProplinkaError):
    """Raised when a platform feature flag is switched off."""

    error_code = "feature_disabled"
    http_status = 403


class RateLimitExceededError(ProplinkaError):
    """Raised when a caller exceeds a rate limit."""

    error_code = "rate_limited"
    http_status = 429

    def __init__(self, message: str, retry_after: int, **context: Any):
        super().__init__(message, **context)
        self.retry_after = retry_after


class PaymentError(ProplinkaError):
    """Raised when the payment provider rejects or fails an operation."""

    error_code = "payment_error"
    http_status = 502
