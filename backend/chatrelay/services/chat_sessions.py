"""In-memory chat sessions: context windows and the per-conversation turn lock."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from sqlalchemy.orm import Session, sessionmaker

from chatrelay.core import ConversationBusyError, get_logger
from chatrelay.db.repositories import get_history_records
from chatrelay.providers.base import ChatMessage
from chatrelay.services.cancellation import CancelToken
from chatrelay.services.types import ModelConfig

logger = get_logger(__name__)


@dataclass
class ChatSession:
    """Live state for one conversation."""

    conversation_id: str
    model: ModelConfig | None = None
    context: list[ChatMessage] = field(default_factory=list)
    token: CancelToken | None = None
    loaded: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def busy(self) -> bool:
        return self.lock.locked()

    def append_turn(
        self, messages: list[ChatMessage], reply: str, max_messages: int
    ) -> None:
        """Add a finished turn and trim the window from the oldest end."""
        self.context.extend(messages)
        self.context.append(ChatMessage(role="assistant", content=reply))
        if max_messages <= 0:
            self.context.clear()
        elif len(self.context) > max_messages:
            del self.context[: len(self.context) - max_messages]


class ChatSessionStore:
    """
    Conversation id -> ChatSession.

    Each entry carries its own lock so turns on different conversations run
    concurrently while a second turn on the same conversation is refused.
    """

    def __init__(self, session_factory: sessionmaker[Session], max_messages: int):
        self._session_factory = session_factory
        self.max_messages = max_messages
        self._sessions: dict[str, ChatSession] = {}

    def get(self, conversation_id: str) -> ChatSession | None:
        return self._sessions.get(conversation_id)

    def _entry(self, conversation_id: str) -> ChatSession:
        session = self._sessions.get(conversation_id)
        if session is None:
            session = ChatSession(conversation_id=conversation_id)
            self._sessions[conversation_id] = session
        return session

    @asynccontextmanager
    async def claim(self, conversation_id: str) -> AsyncIterator[ChatSession]:
        """Hold the conversation's turn lock for the duration of a turn.

        Raises:
            ConversationBusyError: If a turn is already running
        """
        session = self._entry(conversation_id)
        if session.busy:
            raise ConversationBusyError()
        async with session.lock:
            if not session.loaded:
                self._rehydrate(session)
            try:
                yield session
            finally:
                session.token = None

    def _rehydrate(self, session: ChatSession) -> None:
        """Rebuild the context window from persisted history."""
        if self.max_messages > 0:
            # Each record contributes a user and an assistant message
            limit = (self.max_messages + 1) // 2
            with self._session_factory() as db:
                records = get_history_records(db, session.conversation_id, limit=limit)
            context: list[ChatMessage] = []
            for record in records:
                context.append(ChatMessage(role="user", content=record.prompt))
                context.append(ChatMessage(role="assistant", content=record.content))
            session.context = context[-self.max_messages:]
        session.loaded = True
        logger.debug(
            "Chat context loaded",
            data={"conversation_id": session.conversation_id, "messages": len(session.context)},
        )

    def cancel(self, conversation_id: str, reason: str = "Cancelled by user") -> bool:
        """Cancel the running turn, if any."""
        session = self._sessions.get(conversation_id)
        if session is None or session.token is None:
            return False
        return session.token.cancel(reason)

    def clear(self, conversation_id: str) -> bool:
        """
        Cancel any running turn and empty the conversation's context.

        The entry is replaced by an already-loaded empty session, so the
        cleared window is not rebuilt from history. Returns True if there
        was context to drop.
        """
        self.cancel(conversation_id, "Conversation context cleared")
        previous = self._sessions.get(conversation_id)
        self._sessions[conversation_id] = ChatSession(
            conversation_id=conversation_id, loaded=True
        )
        return previous is not None and bool(previous.context)

    def drop(self, conversation_id: str) -> bool:
        """Cancel any running turn and forget the conversation entirely."""
        self.cancel(conversation_id, "Conversation deleted")
        return self._sessions.pop(conversation_id, None) is not None
