"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.

Status callback failures split in two groups:
- surfaced to the provider: WebhookAuthenticationError (403), MalformedCallbackError (400)
- absorbed at the boundary (acknowledged 200, logged): OrphanCallbackError,
  UnmappedStatusError, DuplicateEventError, StorageFailureError
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Status callback errors (2xxx)
    WEBHOOK_AUTHENTICATION_FAILED = "ERR_2001"
    WEBHOOK_MALFORMED = "ERR_2002"
    WEBHOOK_ORPHAN_CALLBACK = "ERR_2003"
    WEBHOOK_UNMAPPED_STATUS = "ERR_2004"
    WEBHOOK_DUPLICATE_EVENT = "ERR_2005"

    # Tracking errors (3xxx)
    RECIPIENT_NOT_FOUND = "ERR_3001"
    INVALID_EVENT_METADATA = "ERR_3002"

    # Storage / external errors (5xxx)
    STORAGE_FAILURE = "ERR_5001"
    CACHE_UNAVAILABLE = "ERR_5002"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class StatusCallbackException(AppException):
    """Base exception for provider status callback processing"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 200,
        message_sid: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        self.message_sid = message_sid
        if message_sid:
            self.details["message_sid"] = message_sid


class WebhookAuthenticationError(StatusCallbackException):
    """Raised when the callback signature is missing, malformed or wrong"""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Webhook signature rejected: {reason}",
            error_code=ErrorCode.WEBHOOK_AUTHENTICATION_FAILED,
            status_code=403,
            details={"reason": reason}
        )


class MalformedCallbackError(StatusCallbackException):
    """Raised when a required callback field is missing or ambiguous"""

    def __init__(self, field: str, reason: str = "missing"):
        super().__init__(
            message=f"Status callback field '{field}' is {reason}",
            error_code=ErrorCode.WEBHOOK_MALFORMED,
            status_code=400,
            details={"field": field, "reason": reason}
        )


class OrphanCallbackError(StatusCallbackException):
    """Raised when no send event carries the callback's correlation id"""

    def __init__(self, message_sid: str):
        super().__init__(
            message=f"No send event found for message {message_sid}",
            error_code=ErrorCode.WEBHOOK_ORPHAN_CALLBACK,
            message_sid=message_sid
        )


class UnmappedStatusError(StatusCallbackException):
    """Raised when the provider status has no tracked counterpart"""

    def __init__(self, provider_status: str, message_sid: str | None = None):
        super().__init__(
            message=f"Provider status '{provider_status}' is not tracked",
            error_code=ErrorCode.WEBHOOK_UNMAPPED_STATUS,
            message_sid=message_sid,
            details={"provider_status": provider_status}
        )


class DuplicateEventError(StatusCallbackException):
    """Raised when the status event for this message already exists"""

    def __init__(self, message_sid: str, event_type: str):
        super().__init__(
            message=f"{event_type} already recorded for message {message_sid}",
            error_code=ErrorCode.WEBHOOK_DUPLICATE_EVENT,
            message_sid=message_sid,
            details={"event_type": event_type}
        )


class StorageFailureError(StatusCallbackException):
    """Raised when the event store could not be read or written in time"""

    def __init__(self, operation: str, message_sid: str | None = None, error: str | None = None):
        super().__init__(
            message=f"Event store failure during {operation}",
            error_code=ErrorCode.STORAGE_FAILURE,
            message_sid=message_sid,
            details={"operation": operation, "error": error}
        )


class RecipientNotFoundError(NotFoundException):
    """Raised when a recipient does not exist in the tenant"""

    def __init__(self, tenant_id: str, recipient_id: str):
        super().__init__(
            resource="Recipient",
            identifier=recipient_id,
            error_code=ErrorCode.RECIPIENT_NOT_FOUND
        )
        self.details["tenant_id"] = tenant_id


class InvalidEventMetadataError(AppException):
    """Raised when event metadata does not match its event type"""

    def __init__(self, event_type: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(
            message=f"Invalid metadata for event type {event_type}",
            error_code=ErrorCode.INVALID_EVENT_METADATA,
            status_code=422,
            details={"event_type": event_type, "errors": errors or []}
        )
