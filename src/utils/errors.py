"""
Error codes and exception taxonomy for the prior-art pipeline.

Every failure surfaced to a caller carries a short code, a message and an
HTTP-style status. Internal details stay in the logs (correlated by
``error_id``); callers never see stack traces.

Error codes follow the pattern:
- *_ERROR / INVALID_*: input or processing errors
- NOT_FOUND: resource missing or not owned by the caller
- INSUFFICIENT_CREDIT: admission refused
- INVALID_STATE / REPORT_NOT_AVAILABLE: operation not allowed in current state
"""

import uuid
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Error codes with their recommended caller action."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Bundle is structurally invalid.
    Action: Fix the itemized errors and resubmit. Never retried automatically."""

    INVALID_PARAMS = "INVALID_PARAMS"
    """Request parameters are invalid or malformed.
    Action: Re-call with corrected values."""

    NOT_FOUND = "NOT_FOUND"
    """Run, bundle or assessment does not exist or is not owned by the caller.
    Action: Verify the identifier."""

    INSUFFICIENT_CREDIT = "INSUFFICIENT_CREDIT"
    """User has no remaining search credit. No run was started.
    Action: Top up credit through the account owner."""

    INVALID_STATE = "INVALID_STATE"
    """Operation requested against a run or assessment in the wrong state.
    Action: Wait for the run to complete; do not retry blindly."""

    REPORT_NOT_AVAILABLE = "REPORT_NOT_AVAILABLE"
    """Assessment has not reached a reportable determination.
    Action: Poll the assessment status."""

    PROVIDER_ERROR = "PROVIDER_ERROR"
    """External search provider failed."""

    LLM_ERROR = "LLM_ERROR"
    """All LLM providers failed or returned unusable output."""

    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    """Storage failure. Completed steps are preserved, the current step is aborted."""

    TIMEOUT = "TIMEOUT"
    """Operation exceeded its time budget."""

    INTERNAL_ERROR = "INTERNAL_ERROR"
    """Unexpected internal error.
    Action: Check error_id in logs."""


STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_PARAMS: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_CREDIT: 402,
    ErrorCode.INVALID_STATE: 400,
    ErrorCode.REPORT_NOT_AVAILABLE: 410,
    ErrorCode.PROVIDER_ERROR: 502,
    ErrorCode.LLM_ERROR: 502,
    ErrorCode.PERSISTENCE_ERROR: 500,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.INTERNAL_ERROR: 500,
}


class PriorArtError(Exception):
    """Base exception for user-visible failures."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        error_id: str | None = None,
    ):
        """
        Args:
            code: Error code from ErrorCode enum.
            message: Human-readable error message.
            details: Optional additional error details.
            error_id: Optional unique error ID for log correlation.
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}
        self.error_id = error_id

    @property
    def status_code(self) -> int:
        """HTTP-style status for the upper layer."""
        return STATUS_BY_CODE[self.code]

    def to_dict(self) -> dict[str, Any]:
        """Convert error to response format."""
        result: dict[str, Any] = {
            "ok": False,
            "error_code": self.code.value,
            "error": self.message,
        }

        if self.error_id:
            result["error_id"] = self.error_id

        if self.details:
            result["details"] = self.details

        return result


class BundleValidationError(PriorArtError):
    """Raised when a bundle fails structural validation."""

    def __init__(self, errors: list[str], *, bundle_id: str | None = None):
        details: dict[str, Any] = {"errors": errors}
        if bundle_id:
            details["bundle_id"] = bundle_id
        super().__init__(
            ErrorCode.VALIDATION_ERROR,
            f"Bundle validation failed with {len(errors)} error(s)",
            details=details,
        )
        self.errors = errors


class InvalidParamsError(PriorArtError):
    """Raised when input parameters are invalid."""

    def __init__(self, message: str, *, param_name: str | None = None):
        super().__init__(
            ErrorCode.INVALID_PARAMS,
            message,
            details={"param_name": param_name} if param_name else None,
        )


class NotFoundError(PriorArtError):
    """Raised when a resource is missing or not visible to the caller."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            ErrorCode.NOT_FOUND,
            f"{resource.capitalize()} not found: {resource_id}",
            details={"resource": resource, "id": resource_id},
        )


class InsufficientCreditError(PriorArtError):
    """Raised when the credit gate refuses a run start."""

    def __init__(self, user_id: str, *, total: int, used: int, run_id: str | None = None):
        details: dict[str, Any] = {
            "user_id": user_id,
            "total": total,
            "used": used,
            "remaining": max(0, total - used),
        }
        if run_id:
            details["run_id"] = run_id
        super().__init__(
            ErrorCode.INSUFFICIENT_CREDIT,
            "Insufficient credits",
            details=details,
        )


class InvalidStateError(PriorArtError):
    """Raised when an operation is not permitted in the current state."""

    def __init__(self, message: str, *, current_state: str | None = None):
        super().__init__(
            ErrorCode.INVALID_STATE,
            message,
            details={"current_state": current_state} if current_state else None,
        )


class ReportNotAvailableError(PriorArtError):
    """Raised when a report is requested for a non-terminal assessment."""

    def __init__(self, assessment_id: str, status: str):
        super().__init__(
            ErrorCode.REPORT_NOT_AVAILABLE,
            f"Report not available for assessment {assessment_id} in status {status}",
            details={"assessment_id": assessment_id, "status": status},
        )


class ProviderError(PriorArtError):
    """Raised when the external search provider fails.

    ``retryable`` tells the retry policy whether the same call may succeed later.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status: int | None = None,
        retryable: bool = True,
    ):
        details: dict[str, Any] = {"provider": provider}
        if status is not None:
            details["status"] = status
        super().__init__(ErrorCode.PROVIDER_ERROR, message, details=details)
        self.provider = provider
        self.status = status
        self.retryable = retryable


class LLMError(PriorArtError):
    """Raised when no LLM provider produced a usable response."""

    def __init__(self, message: str, *, stage: str | None = None, retryable: bool = False):
        super().__init__(
            ErrorCode.LLM_ERROR,
            message,
            details={"stage": stage} if stage else None,
        )
        self.retryable = retryable


class PersistenceError(PriorArtError):
    """Raised when a storage operation fails."""

    def __init__(self, message: str, *, operation: str | None = None, error_id: str | None = None):
        super().__init__(
            ErrorCode.PERSISTENCE_ERROR,
            message,
            details={"operation": operation} if operation else None,
            error_id=error_id,
        )


class InternalError(PriorArtError):
    """Raised for unexpected internal errors."""

    def __init__(self, message: str = "An unexpected internal error occurred", *, error_id: str | None = None):
        super().__init__(ErrorCode.INTERNAL_ERROR, message, error_id=error_id)


def generate_error_id() -> str:
    """Generate unique error ID for log correlation."""
    return f"err_{uuid.uuid4().hex[:12]}"
