"""Core module with errors, logging, metrics, and middleware."""

from chatrelay.core.errors import (
    AppError,
    ConversationBusyError,
    ErrorCode,
    ErrorResponse,
    HandshakeFailedError,
    MalformedCredentialError,
    ModelNotFoundError,
    NoAvailableKeyError,
    NotFoundError,
    PersistenceError,
    ProtocolError,
    ProviderError,
    TurnCancelled,
    ValidationError,
)
from chatrelay.core.logging import (
    conversation_id_ctx,
    get_logger,
    request_id_ctx,
    setup_logging,
    turn_id_ctx,
)

__all__ = [
    # Errors
    "AppError",
    "ConversationBusyError",
    "ErrorCode",
    "ErrorResponse",
    "HandshakeFailedError",
    "MalformedCredentialError",
    "ModelNotFoundError",
    "NoAvailableKeyError",
    "NotFoundError",
    "PersistenceError",
    "ProtocolError",
    "ProviderError",
    "TurnCancelled",
    "ValidationError",
    # Logging
    "conversation_id_ctx",
    "get_logger",
    "request_id_ctx",
    "setup_logging",
    "turn_id_ctx",
]
