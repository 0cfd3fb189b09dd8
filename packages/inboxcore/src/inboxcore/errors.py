"""
Application errors.

Services raise these; the API renders them as
{"error": {"code": ..., "message": ..., "details": ...}} with the error's status code.
"""

from typing import Any


class AppError(Exception):
    """Base class for errors that map to an HTTP response."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class NotFoundError(AppError):
    status_code = 404
    default_code = "NOT_FOUND"


class PermissionDeniedError(AppError):
    status_code = 403
    default_code = "PERMISSION_DENIED"


class ValidationError(AppError):
    status_code = 422
    default_code = "VALIDATION_ERROR"


class ConflictError(AppError):
    status_code = 409
    default_code = "CONFLICT"


class RateLimitError(AppError):
    status_code = 429
    default_code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ExternalServiceError(AppError):
    """A vendor API (Stripe, WhatsApp) failed."""

    status_code = 502
    default_code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, message: str, retryable: bool = False, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retryable = retryable
