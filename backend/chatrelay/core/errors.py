"""
Structured error handling with stable error codes.

No stack traces are exposed to clients. All errors are mapped to
stable, documented error codes for reliable client handling.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes for API responses and client stream messages."""

    # General errors (1xxx)
    INTERNAL_ERROR = "E1000"
    VALIDATION_ERROR = "E1001"
    NOT_FOUND = "E1002"

    # Provider errors (4xxx)
    PROVIDER_UNAVAILABLE = "E4000"
    PROVIDER_ERROR = "E4001"
    MODEL_NOT_FOUND = "E4002"
    STREAMING_ERROR = "E4003"
    NO_AVAILABLE_KEY = "E4006"
    MALFORMED_CREDENTIAL = "E4007"
    HANDSHAKE_FAILED = "E4008"

    # Resource errors (5xxx)
    CONVERSATION_NOT_FOUND = "E5000"
    PERSISTENCE_FAILED = "E5003"
    CONVERSATION_BUSY = "E5004"


@dataclass(frozen=True)
class ErrorResponse:
    """Structured error response for API.

    Format: {error: {code, message, request_id, details?}}
    """

    code: ErrorCode
    message: str
    request_id: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        error: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
        }
        if self.request_id:
            error["request_id"] = self.request_id
        if self.details:
            error["details"] = self.details
        return {"error": error}


class AppError(Exception):
    """Base application error with structured error detail."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_response(self, request_id: str | None = None) -> ErrorResponse:
        """Create error response with request ID."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            request_id=request_id,
            details=self.details,
        )


class TurnCancelled(Exception):
    """Raised inside a relay turn when its cancellation token fires.

    Not an AppError: a cancelled turn terminates cleanly.
    """

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)


# Convenience error classes
class ValidationError(AppError):
    """Validation error (400)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.VALIDATION_ERROR, message, 400, details)


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(ErrorCode.NOT_FOUND, message, 404)


class NoAvailableKeyError(AppError):
    """No enabled credential matches the requested platform and purpose (503)."""

    def __init__(
        self,
        message: str = "No API key is available for this model, please contact the administrator",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(ErrorCode.NO_AVAILABLE_KEY, message, 503, details)


class MalformedCredentialError(AppError):
    """A stored credential does not have the shape its provider expects (500)."""

    def __init__(
        self, message: str = "Malformed API key", details: dict[str, Any] | None = None
    ):
        super().__init__(ErrorCode.MALFORMED_CREDENTIAL, message, 500, details)


class HandshakeFailedError(AppError):
    """Provider connection or handshake was rejected (502)."""

    def __init__(
        self,
        message: str = "Provider handshake failed",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(ErrorCode.HANDSHAKE_FAILED, message, 502, details)


class ProtocolError(AppError):
    """Provider sent a frame that could not be parsed (502)."""

    def __init__(
        self,
        message: str = "Provider returned an unreadable frame",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(ErrorCode.STREAMING_ERROR, message, 502, details)


class ProviderError(AppError):
    """Provider returned an explicit error (502)."""

    def __init__(
        self, message: str = "Provider error", details: dict[str, Any] | None = None
    ):
        super().__init__(ErrorCode.PROVIDER_ERROR, message, 502, details)


class ModelNotFoundError(AppError):
    """Requested model is not configured (404)."""

    def __init__(self, message: str = "Model not found", details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.MODEL_NOT_FOUND, message, 404, details)


class PersistenceError(AppError):
    """Chat history could not be written (500)."""

    def __init__(
        self,
        message: str = "Failed to save chat history",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(ErrorCode.PERSISTENCE_FAILED, message, 500, details)


class ConversationBusyError(AppError):
    """Another turn is already running for the conversation (409)."""

    def __init__(self, message: str = "A reply is already being generated for this conversation"):
        super().__init__(ErrorCode.CONVERSATION_BUSY, message, 409)
