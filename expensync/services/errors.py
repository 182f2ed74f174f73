"""
Expensync Error Handling

Specific error types with user-friendly messages and debugging context.
Every error carries an `ErrorCode`; the HTTP layer maps codes to statuses.
"""
from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors (400s)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_STATE = "INVALID_STATE"

    # Auth errors (403)
    FORBIDDEN = "FORBIDDEN"

    NOT_FOUND = "NOT_FOUND"

    # External service errors
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    NOT_CONNECTED = "NOT_CONNECTED"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"


STATUS_MAP: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_STATE: 400,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
    ErrorCode.NOT_CONNECTED: 503,
    ErrorCode.EXTERNAL_API_ERROR: 500,
}


class ExpensyncError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class ValidationError(ExpensyncError):
    """Malformed or missing input."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            context={"field": field} if field else None,
        )


class InvalidStateError(ExpensyncError):
    """Action not valid for the request's current status."""

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(
            code=ErrorCode.INVALID_STATE,
            message=message,
            context={"status": status} if status else None,
        )


class InvalidStateTransition(InvalidStateError):
    """Raised when a lifecycle transition is not allowed."""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Invalid transition: {from_status} -> {to_status}", status=from_status)
        self.from_status = from_status
        self.to_status = to_status


class ForbiddenError(ExpensyncError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(code=ErrorCode.FORBIDDEN, message=message)


class NotFoundError(ExpensyncError):
    """Entity does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{entity} not found",
            context={"id": str(entity_id)},
        )


class ServiceUnavailableError(ExpensyncError):
    """External system not configured or not reachable."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.SERVICE_UNAVAILABLE):
        super().__init__(code=code, message=message)


class NotConnectedError(ServiceUnavailableError):
    """No usable freee credentials are stored."""

    def __init__(self, message: str = "freee is not connected"):
        super().__init__(message, code=ErrorCode.NOT_CONNECTED)


class ExternalAPIError(ExpensyncError):
    """Non-2xx response from freee (after the 401 retry, if any)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        context: Dict[str, Any] = {"service": "freee"}
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(
            code=ErrorCode.EXTERNAL_API_ERROR,
            message=message,
            context=context,
        )
        self.status_code = status_code
        self.body = body


def status_for(error: ExpensyncError) -> int:
    """HTTP status code for an ExpensyncError."""
    return STATUS_MAP.get(error.code, 500)
