"""
Base exception classes for application-wide error handling.

Every domain error carries a human message, a machine-readable code and an
optional details dict, so views can return a consistent JSON body and
clients (and support staff handling payment disputes) get a specific reason
rather than a generic failure.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Input or business-rule validation failures
    ├── NotFoundError - Resource not found
    ├── PermissionDeniedError - Authorization failures
    ├── ConflictError - State conflicts (illegal transitions, stale versions)
    └── ExternalServiceError - Third-party service failures

Usage:
    from core.exceptions import NotFoundError

    raise NotFoundError(
        f"Booking {booking_id} not found",
        error_code="BOOKING_NOT_FOUND",
        details={"booking_id": str(booking_id)},
    )

    try:
        ...
    except BaseApplicationError as e:
        return Response(e.to_dict(), status=400)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional context (field errors, ids, applied policy tier)
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to a dictionary for an API response.

        Example:
            {
                "error": "Payment is on hold",
                "error_code": "ESCROW_ON_HOLD",
                "details": {"hold_reason": "charge disputed"}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when input validation or a business rule fails.

    For DRF request validation use serializers; use this in the service and
    model layers.
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """Raised when a single resource that is expected to exist is missing."""

    default_error_code: str = "NOT_FOUND"


class PermissionDeniedError(BaseApplicationError):
    """Raised when the caller may not perform an operation on a resource."""

    default_error_code: str = "PERMISSION_DENIED"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with the current resource state.

    Use for:
    - Invalid state transitions
    - Optimistic locking failures
    - Contended locks

    HTTP 409 Conflict is the matching status.
    """

    default_error_code: str = "CONFLICT"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when a third-party service call fails.

    Log the original error; do not expose provider internals to clients.
    HTTP 502 Bad Gateway is the matching status.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
