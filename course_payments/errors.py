"""
Error taxonomy for the payment service.

Validation, not-found and signature errors are client-side and never retried.
Persistence and access-grant errors are server-side and safe to retry, because
checkout creates fresh rows and notification handling is idempotent.
"""
from typing import Any, Dict, Optional


class PaymentServiceError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PaymentServiceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(PaymentServiceError):
    code = "NOT_FOUND"
    status_code = 404

    @classmethod
    def for_resource(cls, resource_type: str, **details: Any) -> "NotFoundError":
        return cls(f"{resource_type} not found", {"resource_type": resource_type, **details})


class PaymentError(PaymentServiceError):
    code = "PAYMENT_ERROR"
    status_code = 400


class SignatureError(PaymentServiceError):
    code = "SIGNATURE_INVALID"
    status_code = 400


class PersistenceError(PaymentServiceError):
    code = "PERSISTENCE_ERROR"
    status_code = 503
    retryable = True


class AccessGrantError(PaymentServiceError):
    code = "ACCESS_GRANT_ERROR"
    status_code = 500
    retryable = True


class ConfigurationError(PaymentServiceError):
    code = "CONFIGURATION_ERROR"
    status_code = 500
