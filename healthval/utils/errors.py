"""
Custom Exceptions
Hard failures of the validation execution subsystem.

Soft findings about a record are reported as ValidationIssue values and never
raised. Everything below signals that a validation could not be carried out.
Each error carries an HTTP status code so an outer API layer can map it
without knowing the taxonomy.
"""

from http import HTTPStatus
from typing import Any, Optional


class ValidationSystemError(Exception):
    """Base class for hard validation failures"""

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, detail: str, context: Optional[dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "detail": self.detail,
            "status_code": int(self.status_code),
            "context": self.context,
        }


class AdmissionLimitExceeded(ValidationSystemError):
    """Raised when the engine is already running its maximum of validations"""

    status_code = HTTPStatus.SERVICE_UNAVAILABLE

    def __init__(self, limit: int, active: int):
        super().__init__(
            f"Maximum concurrent validations reached ({active}/{limit})",
            {"limit": limit, "active": active},
        )
        self.limit = limit
        self.active = active


class PipelineTimeout(ValidationSystemError):
    """Raised when a record does not finish within its time budget"""

    status_code = HTTPStatus.GATEWAY_TIMEOUT

    def __init__(self, timeout_ms: int, resource_id: Optional[str] = None):
        super().__init__(
            f"Validation timed out after {timeout_ms}ms",
            {"timeout_ms": timeout_ms, "resource_id": resource_id},
        )
        self.timeout_ms = timeout_ms


class CircuitBreakerOpen(ValidationSystemError):
    """Raised when a call is rejected by an open circuit"""

    status_code = HTTPStatus.SERVICE_UNAVAILABLE

    def __init__(self, service: str, retry_after_seconds: float = 0.0):
        super().__init__(
            f"Circuit breaker open for service '{service}'",
            {"service": service, "retry_after_seconds": round(retry_after_seconds, 3)},
        )
        self.service = service
        self.retry_after_seconds = retry_after_seconds


class RetryExhausted(ValidationSystemError):
    """Raised when every retry attempt of an operation failed"""

    def __init__(
        self,
        attempts: int,
        last_error: Optional[BaseException] = None,
        attempt_log: Optional[list[Any]] = None,
    ):
        message = f"Operation failed after {attempts} attempts"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message, {"attempts": attempts})
        self.attempts = attempts
        self.last_error = last_error
        self.attempt_log = attempt_log or []


class ValidationPipelineError(ValidationSystemError):
    """Raised when a validation fails for an unexpected internal reason"""

    def __init__(self, detail: str, original_error: Optional[BaseException] = None):
        super().__init__(detail)
        self.original_error = original_error


class SettingsUnavailableError(ValidationSystemError):
    """Raised by settings providers that cannot produce active settings"""

    status_code = HTTPStatus.SERVICE_UNAVAILABLE


class RetryHandlerMissing(ValidationSystemError):
    """Raised when no retry action is registered for an operation type"""

    def __init__(self, retry_type: str):
        super().__init__(
            f"No retry handler registered for '{retry_type}' operations",
            {"retry_type": retry_type},
        )
        self.retry_type = retry_type
