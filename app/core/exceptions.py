"""Exception hierarchy for the subscription billing service.

Every error raised by the lifecycle layer derives from BillingException so the
API layer, the reconciler, and Celery tasks can catch a single base type and
still tell the categories apart via ``retryable`` and ``code``.

Error codes follow pattern: [CATEGORY][NUMBER]
- SUB: Validation / business rule errors (001-099)
- CON: Concurrency conflicts (100-199)
- PRC: Payment processor errors (200-299)
- SYS: System errors (400-499)
"""

from __future__ import annotations

from typing import Any

GENERIC_RETRY_MESSAGE = "Payment service is temporarily unavailable. Please try again."


class BillingException(Exception):
    """Base exception for all billing application errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        """Initialize exception with a user-facing message and metadata.

        Args:
            message: User-facing error message
            code: Unique error code (e.g., "SUB001")
            status_code: HTTP status code (default: 400 Bad Request)
            details: Optional additional context
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "retryable": self.retryable,
                "details": self.details,
            }
        }


# ============================================================================
# VALIDATION ERRORS (SUB001-099)
# ============================================================================

class SubscriptionValidationError(BillingException):
    """Requested transition violates a business rule. Never retried."""

    def __init__(self, message: str, code: str = "SUB001", details: dict[str, Any] | None = None):
        super().__init__(message=message, code=code, status_code=400, details=details)


class PlanNotAvailableError(SubscriptionValidationError):
    def __init__(self, plan: str):
        super().__init__(
            message=f"The {plan} plan is not available for purchase.",
            code="SUB002",
            details={"plan": plan},
        )


class DowngradeNotAllowedError(SubscriptionValidationError):
    """Yearly to monthly is blocked outright, immediate or scheduled."""

    def __init__(self, current_plan: str, requested_plan: str):
        super().__init__(
            message=(
                "Switching from a yearly to a monthly plan is not supported. "
                "Cancel your yearly plan and subscribe to monthly once it ends."
            ),
            code="SUB003",
            details={"current_plan": current_plan, "requested_plan": requested_plan},
        )


class ScheduledChangeExistsError(SubscriptionValidationError):
    def __init__(self, next_plan: str):
        super().__init__(
            message=f"A change to the {next_plan} plan is already scheduled. Cancel it first.",
            code="SUB004",
            details={"next_plan": next_plan},
        )


class RenewalTooCloseError(SubscriptionValidationError):
    def __init__(self, guard_hours: int, hours_remaining: float):
        super().__init__(
            message=f"Cannot change plan within {guard_hours} hours of renewal.",
            code="SUB005",
            details={"guard_hours": guard_hours, "hours_remaining": round(hours_remaining, 2)},
        )


class InvalidTransitionError(SubscriptionValidationError):
    def __init__(self, action: str, status: str, message: str | None = None):
        super().__init__(
            message=message or f"Cannot {action.replace('_', ' ')} a subscription that is {status}.",
            code="SUB006",
            details={"action": action, "status": status},
        )


class DiscountCodeError(SubscriptionValidationError):
    def __init__(self, message: str, code_value: str | None = None):
        super().__init__(
            message=message,
            code="SUB007",
            details={"discount_code": code_value} if code_value else {},
        )


class PaymentNotConfirmedError(SubscriptionValidationError):
    """Processor has not activated the subscription yet; confirming again later may succeed."""

    retryable = True

    def __init__(self, remote_status: str):
        super().__init__(
            message="Your payment has not been confirmed yet. Please complete the approval and try again.",
            code="SUB008",
            details={"remote_status": remote_status},
        )


class SubscriptionNotFoundError(BillingException):
    def __init__(self, user_id: int | None = None):
        super().__init__(
            message="No subscription found",
            code="SUB010",
            status_code=404,
            details={"user_id": user_id} if user_id is not None else {},
        )


# ============================================================================
# CONCURRENCY ERRORS (CON100-199)
# ============================================================================

class ConflictError(BillingException):
    """Optimistic-concurrency check failed; caller should reload and may retry once."""

    def __init__(self, user_id: int, expected_version: int | None = None, expected_status: str | None = None):
        super().__init__(
            message="Your subscription was updated by another request. Refresh and try again.",
            code="CON100",
            status_code=409,
            details={
                "user_id": user_id,
                "expected_version": expected_version,
                "expected_status": expected_status,
            },
        )


# ============================================================================
# PROCESSOR ERRORS (PRC200-299)
# ============================================================================

class ProcessorError(BillingException):
    """Base class for payment processor failures."""


class ProcessorTransientError(ProcessorError):
    """Network, timeout, rate limit or 5xx after the client's retry budget is spent."""

    retryable = True

    def __init__(self, operation: str, reason: str, attempts: int = 1):
        super().__init__(
            message=GENERIC_RETRY_MESSAGE,
            code="PRC200",
            status_code=503,
            details={"operation": operation, "reason": reason, "attempts": attempts},
        )


class ProcessorFatalError(ProcessorError):
    """Processor rejected the request for a reason that will not change on retry."""

    def __init__(
        self,
        operation: str,
        message: str,
        http_status: int | None = None,
        issue: str | None = None,
        code: str = "PRC210",
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=502,
            details={"operation": operation, "http_status": http_status, "issue": issue},
        )
        self.operation = operation
        self.http_status = http_status
        self.issue = issue


class ProcessorAuthError(ProcessorFatalError):
    def __init__(self, operation: str, http_status: int | None = None):
        super().__init__(
            operation=operation,
            message="Payment service authentication failed. Please contact support.",
            http_status=http_status,
            issue="AUTHENTICATION_FAILURE",
            code="PRC211",
        )


class RemoteResourceGoneError(ProcessorFatalError):
    """The remote subscription no longer exists at the processor."""

    def __init__(self, operation: str, remote_id: str):
        super().__init__(
            operation=operation,
            message="The subscription no longer exists at the payment processor.",
            http_status=404,
            issue="RESOURCE_NOT_FOUND",
            code="PRC212",
        )
        self.remote_id = remote_id


# ============================================================================
# SYSTEM ERRORS (SYS400-499)
# ============================================================================

class ConfigurationError(BillingException):
    def __init__(self, setting: str):
        super().__init__(
            message="Payment service is not configured.",
            code="SYS400",
            status_code=500,
            details={"setting": setting},
        )
