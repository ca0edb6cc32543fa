"""Service error taxonomy and explicit result values.

Ledger operations return a Result carrying either a value or a typed
ServiceError. Callers inspect ``result.ok`` before proceeding; the HTTP layer
calls ``unwrap()`` so the error reaches the exception handler registered in
``clinic_saas.main``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar

from fastapi import Request, status
from fastapi.responses import JSONResponse

from clinic_saas.core.tracing import record_exception

T = TypeVar("T")


class ServiceError(Exception):
    """Base class for errors that are safe to surface to API callers."""

    kind: str = "service_error"
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for an API response body."""
        return {
            "error": self.kind,
            "message": self.message,
            "details": self.details,
        }

    def headers(self) -> dict[str, str]:
        return {}


class ValidationError(ServiceError):
    """Raised for malformed or missing input."""

    kind = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(ServiceError):
    """Raised when a plan, subscription, invoice or payment does not exist."""

    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class TenantContextRequired(ServiceError):
    """Raised when a protected operation has no tenant context."""

    kind = "tenant_context_required"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "Tenant context required", details: Optional[dict] = None):
        super().__init__(message, details)


class TenantNotFound(ServiceError):
    """Raised when the tenant hint matches no active tenant."""

    kind = "tenant_not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str = "Tenant not found or inactive", details: Optional[dict] = None):
        super().__init__(message, details)


class AccessDenied(ServiceError):
    """Raised when the caller lacks a role or plan feature."""

    kind = "access_denied"
    status_code = status.HTTP_403_FORBIDDEN


class RateLimited(ServiceError):
    """Raised when a tenant exceeds its request budget.

    Carries the machine-readable reset time and the Retry-After value.
    """

    kind = "rate_limited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, limit: int, retry_after: int, reset_at: int):
        super().__init__(
            "Rate limit exceeded",
            {
                "limit": limit,
                "retry_after_seconds": retry_after,
                "reset_at": datetime.fromtimestamp(reset_at, tz=timezone.utc).isoformat(),
            },
        )
        self.limit = limit
        self.retry_after = retry_after
        # Unix epoch seconds at which the current window closes
        self.reset_at = reset_at

    def headers(self) -> dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_at),
        }


class InvoiceClosed(ServiceError):
    """Raised when mutating an invoice that is paid, void or written off."""

    kind = "invoice_closed"
    status_code = status.HTTP_409_CONFLICT


class PaymentExceedsBalance(ServiceError):
    """Raised when a payment application would push paid above total."""

    kind = "payment_exceeds_balance"
    status_code = status.HTTP_409_CONFLICT


class RefundExceedsPayment(ServiceError):
    """Raised when a refund is larger than the refundable amount."""

    kind = "refund_exceeds_payment"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidStateTransition(ServiceError):
    """Raised when a lifecycle transition is not allowed."""

    kind = "invalid_state_transition"
    status_code = status.HTTP_409_CONFLICT


class ConflictError(ServiceError):
    """Raised on uniqueness conflicts (duplicate slug, existing subscription)."""

    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT


class InternalError(ServiceError):
    """Raised when the store fails unexpectedly during a mutation."""

    kind = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a ledger operation: a value or a typed error."""

    value: Optional[T] = None
    error: Optional[ServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ServiceError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render a ServiceError as a JSON response."""
    if exc.status_code >= 500:
        record_exception(exc, {"error.kind": exc.kind})
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=exc.headers() or None,
    )
