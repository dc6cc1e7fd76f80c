"""Custom exceptions for subplans.

Every error raised by the subscription core derives from ``SubPlansError``
and carries:
- A machine-readable error code
- An HTTP status code for callers that expose the core over an API
- Contextual details for debugging
"""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    # General errors (1xxx)
    UNKNOWN_ERROR = "SP1001"

    # Validation errors (4xxx)
    VALIDATION_ERROR = "SP4000"
    INVALID_INTERVAL = "SP4001"
    INVALID_COUNT = "SP4002"
    INVALID_FEATURE_VALUE = "SP4003"

    # Resource errors (5xxx)
    RESOURCE_NOT_FOUND = "SP5000"
    PLAN_NOT_FOUND = "SP5001"
    FEATURE_NOT_FOUND = "SP5002"
    SUBSCRIPTION_NOT_FOUND = "SP5003"
    SUBSCRIBER_NOT_FOUND = "SP5004"

    # Conflict and state errors (6xxx)
    CONFLICT = "SP6000"
    DUPLICATE_FEATURE_SLUG = "SP6001"
    INVALID_STATE = "SP6002"


class SubPlansError(Exception):
    """Base exception for all subplans errors.

    Attributes:
        message: Human-readable error message.
        error_code: Machine-readable error code.
        http_status: HTTP status code for API responses.
        details: Additional context for debugging.
    """

    message: str = "An unexpected error occurred"
    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    http_status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: ErrorCode | None = None,
        http_status: HTTPStatus | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Human-readable error message.
            error_code: Machine-readable error code.
            http_status: HTTP status code for API responses.
            details: Additional context for debugging.
        """
        self.message = message or self.__class__.message
        self.error_code = error_code or self.__class__.error_code
        self.http_status = http_status or self.__class__.http_status
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details if self.details else None,
            }
        }

    def __str__(self) -> str:
        """String representation including error code."""
        return f"[{self.error_code.value}] {self.message}"

    def __repr__(self) -> str:
        """Detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value}, "
            f"http_status={self.http_status.value}, "
            f"details={self.details!r}"
            f")"
        )


# ============================================================================
# Validation Exceptions
# ============================================================================


class ValidationError(SubPlansError):
    """Validation-related errors."""

    message = "Validation error"
    error_code = ErrorCode.VALIDATION_ERROR
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Name of the field that failed validation.
            value: The invalid value.
            constraint: Description of the constraint that was violated.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        if constraint:
            details["constraint"] = constraint

        super().__init__(message, details=details, **kwargs)


class InvalidIntervalError(ValidationError):
    """Interval unit is not one of day, week, month or year."""

    message = "Invalid interval"
    error_code = ErrorCode.INVALID_INTERVAL


class InvalidCountError(ValidationError):
    """Interval count is negative."""

    message = "Count must be a positive integer"
    error_code = ErrorCode.INVALID_COUNT


class InvalidFeatureValueError(ValidationError):
    """Feature quota value is outside the accepted range."""

    message = "Invalid feature value"
    error_code = ErrorCode.INVALID_FEATURE_VALUE


# ============================================================================
# Resource Exceptions
# ============================================================================


class NotFoundError(SubPlansError):
    """Resource not found errors."""

    message = "Resource not found"
    error_code = ErrorCode.RESOURCE_NOT_FOUND
    http_status = HTTPStatus.NOT_FOUND

    def __init__(
        self,
        message: str | None = None,
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize not found error.

        Args:
            message: Error message.
            resource_type: Type of resource not found.
            resource_id: ID of the resource.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        if not message and resource_type:
            message = f"{resource_type} not found"

        super().__init__(message, details=details, **kwargs)


class PlanNotFoundError(NotFoundError):
    """Plan not found."""

    message = "Plan not found"
    error_code = ErrorCode.PLAN_NOT_FOUND


class FeatureNotFoundError(NotFoundError):
    """Feature slug is not defined on the plan."""

    message = "Feature not found"
    error_code = ErrorCode.FEATURE_NOT_FOUND


class SubscriptionNotFoundError(NotFoundError):
    """Subscription not found."""

    message = "Subscription not found"
    error_code = ErrorCode.SUBSCRIPTION_NOT_FOUND


class SubscriberNotFoundError(NotFoundError):
    """Subscriber reference cannot be resolved."""

    message = "Subscriber not found"
    error_code = ErrorCode.SUBSCRIBER_NOT_FOUND


# ============================================================================
# Conflict and State Exceptions
# ============================================================================


class ConflictError(SubPlansError):
    """Write conflicts with existing data."""

    message = "Conflict with existing data"
    error_code = ErrorCode.CONFLICT
    http_status = HTTPStatus.CONFLICT


class DuplicateFeatureSlugError(ConflictError):
    """A plan already has a feature with the same slug."""

    message = "Each plan should only have one feature with the same slug"
    error_code = ErrorCode.DUPLICATE_FEATURE_SLUG


class InvalidStateError(SubPlansError):
    """Operation is not allowed in the subscription's current state."""

    message = "Operation not allowed in the current state"
    error_code = ErrorCode.INVALID_STATE
    http_status = HTTPStatus.CONFLICT
