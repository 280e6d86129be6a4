"""Relay services: key rotation, turn orchestration, sessions and history."""

from chatrelay.services.cancellation import CancelToken
from chatrelay.services.channel import ChannelClosedError, ClientChannel, WebSocketChannel
from chatrelay.services.chat_sessions import ChatSession, ChatSessionStore
from chatrelay.services.history import HistoryWriter
from chatrelay.services.key_pool import KeyPool
from chatrelay.services.relay import RelayService, RelaySession
from chatrelay.services.types import ModelConfig, TurnRequest, TurnResult, TurnStatus

__all__ = [
    "CancelToken",
    "ChannelClosedError",
    "ChatSession",
    "ChatSessionStore",
    "ClientChannel",
    "HistoryWriter",
    "KeyPool",
    "ModelConfig",
    "RelayService",
    "RelaySession",
    "TurnRequest",
    "TurnResult",
    "TurnStatus",
    "WebSocketChannel",
]
