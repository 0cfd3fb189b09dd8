from inboxcore.errors import (
    AppError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ValidationError,
)


class TestAppErrors:
    def test_status_codes(self):
        assert NotFoundError("x").status_code == 404
        assert PermissionDeniedError("x").status_code == 403
        assert ValidationError("x").status_code == 422
        assert ConflictError("x").status_code == 409
        assert RateLimitError("x").status_code == 429
        assert ExternalServiceError("x").status_code == 502
        assert AppError("x").status_code == 500

    def test_to_dict_uses_default_code(self):
        body = NotFoundError("Contact not found").to_dict()
        assert body == {"error": {"code": "NOT_FOUND", "message": "Contact not found", "details": {}}}

    def test_custom_code_and_details(self):
        error = ValidationError("Bad phone", code="INVALID_PHONE", details={"phone": "abc"})
        assert error.to_dict()["error"]["code"] == "INVALID_PHONE"
        assert error.to_dict()["error"]["details"] == {"phone": "abc"}

    def test_rate_limit_retry_after(self):
        assert RateLimitError("Slow down", retry_after=30).retry_after == 30

    def test_external_service_retryable(self):
        error = ExternalServiceError("Stripe down", retryable=True, code="STRIPE_ERROR")
        assert error.retryable is True
        assert error.code == "STRIPE_ERROR"
