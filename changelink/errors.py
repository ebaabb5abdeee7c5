"""
Error taxonomy for the ChangeLink orchestration core.

Every failure raised by the core carries an ErrorType so the RetryManager can
decide whether retrying is worthwhile without string matching.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    """Classification of failures."""
    NETWORK_ERROR = "network_error"
    BROWSER_ERROR = "browser_error"
    CONNECTION_ERROR = "connection_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    AUTH_ERROR = "auth_error"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    VALIDATION_ERROR = "validation_error"
    TIMEOUT_ERROR = "timeout_error"
    UNKNOWN_ERROR = "unknown_error"


# Never retried: retrying cannot change the outcome.
NON_RETRYABLE_ERRORS = frozenset({
    ErrorType.AUTH_ERROR,
    ErrorType.CLIENT_ERROR,
    ErrorType.VALIDATION_ERROR,
})


class ChangeLinkError(Exception):
    """Base exception for the orchestration core."""

    error_type: ErrorType = ErrorType.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        error_type: Optional[ErrorType] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        if error_type is not None:
            self.error_type = error_type
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "error_type": self.error_type.value,
            "details": self.details,
        }


class AutomationApiError(ChangeLinkError):
    """Browser automation API failure (HTTP status or application code)."""

    error_type = ErrorType.NETWORK_ERROR

    def __init__(
        self,
        message: str,
        error_type: Optional[ErrorType] = None,
        status: Optional[int] = None,
        code: Optional[int] = None,
        endpoint: str = ""
    ):
        super().__init__(message, error_type, {"status": status, "code": code, "endpoint": endpoint})
        self.status = status
        self.code = code
        self.endpoint = endpoint


class AdsApiError(ChangeLinkError):
    """Advertising API failure."""

    error_type = ErrorType.SERVER_ERROR


class ValidationError(ChangeLinkError):
    """Local precondition failure. Never retried, never sent over the wire."""

    error_type = ErrorType.VALIDATION_ERROR

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message, ErrorType.VALIDATION_ERROR, {"errors": errors or [message]})
        self.errors = errors or [message]


class CircuitOpenError(ChangeLinkError):
    """Raised without invoking the operation while its circuit is open."""

    error_type = ErrorType.CONNECTION_ERROR

    def __init__(self, operation_name: str, retry_after: float = 0.0):
        super().__init__(
            f"Circuit breaker is OPEN for '{operation_name}' - operation blocked",
            details={"operation": operation_name, "retry_after": retry_after}
        )
        self.operation_name = operation_name
        self.retry_after = retry_after


class OperationTimeoutError(ChangeLinkError):
    error_type = ErrorType.TIMEOUT_ERROR


class ExecutionCancelledError(ChangeLinkError):
    """Raised between workflow phases once an execution was cancelled."""

    error_type = ErrorType.VALIDATION_ERROR


class BatchAbortedError(ChangeLinkError):
    """A fail-fast batch stopped at its first failing operation."""

    def __init__(self, operation_name: str, index: int, cause: BaseException):
        super().__init__(
            f"Batch aborted at operation '{operation_name}' (#{index + 1}): {cause}",
            error_type=getattr(cause, "error_type", ErrorType.UNKNOWN_ERROR),
            details={"operation": operation_name, "index": index}
        )
        self.operation_name = operation_name
        self.index = index
        self.cause = cause
