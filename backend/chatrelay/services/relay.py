"""Turn orchestration: key -> signature -> provider link -> client -> history."""

from __future__ import annotations

import time
import uuid
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from chatrelay.config import Settings
from chatrelay.core import (
    AppError,
    ErrorCode,
    MalformedCredentialError,
    ModelNotFoundError,
    PersistenceError,
    ProviderError,
    TurnCancelled,
    conversation_id_ctx,
    get_logger,
    turn_id_ctx,
)
from chatrelay.core.metrics import metrics
from chatrelay.db.base import utcnow
from chatrelay.db.repositories import (
    delete_conversation,
    get_chat_model_by_value,
    get_or_create_conversation,
)
from chatrelay.providers.base import (
    ChunkKind,
    LinkOutcome,
    ProviderLink,
    ProviderRequest,
    Usage,
)
from chatrelay.providers.registry import ProviderRegistry, resolve_kind
from chatrelay.services.cancellation import CancelToken
from chatrelay.services.channel import (
    ChannelClosedError,
    ClientChannel,
    cancelled_message,
    delta_message,
    end_message,
    error_message,
    start_message,
)
from chatrelay.services.chat_sessions import ChatSession, ChatSessionStore
from chatrelay.services.history import HistoryWriter
from chatrelay.services.key_pool import KeyPool
from chatrelay.services.types import ModelConfig, TurnRequest, TurnResult, TurnStatus

logger = get_logger(__name__)

TITLE_MAX_LENGTH = 50


class RelaySession:
    """Runs a single turn for an already-claimed chat session."""

    def __init__(
        self,
        *,
        key_pool: KeyPool,
        registry: ProviderRegistry,
        history: HistoryWriter,
        settings: Settings,
    ):
        self.key_pool = key_pool
        self.registry = registry
        self.history = history
        self.settings = settings

    def build_request(self, chat_session: ChatSession, request: TurnRequest) -> ProviderRequest:
        """Context window followed by the new messages, with model defaults applied."""
        model = chat_session.model
        temperature = request.temperature
        if temperature is None:
            temperature = model.temperature
        if temperature is None:
            temperature = self.settings.chat_default_temperature
        max_tokens = request.max_tokens or model.max_tokens or self.settings.chat_default_max_tokens
        return ProviderRequest(
            model=model.value,
            messages=[*chat_session.context, *request.messages],
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def run(
        self,
        token: CancelToken,
        chat_session: ChatSession,
        request: TurnRequest,
        channel: ClientChannel,
    ) -> TurnResult:
        """
        Stream one reply to ``channel`` and persist it.

        Never raises for turn failures: provider, credential and protocol
        errors are reported to the client and reflected in the result.
        """
        model = chat_session.model
        started = time.monotonic()
        metrics.increment("turns_started")
        metrics.adjust_gauge("active_turns", 1)

        link: ProviderLink | None = None
        outcome = LinkOutcome.ERROR
        status = TurnStatus.FAILED
        error: AppError | None = None
        parts: list[str] = []
        received = 0
        usage: Usage | None = None
        prompt_at: datetime = utcnow()
        reply_at: datetime | None = None
        start_sent = False

        try:
            try:
                kind = resolve_kind(model.platform)
                key = await token.guard(
                    self.key_pool.acquire(
                        model.platform, self.settings.chat_key_purpose, model.key_id
                    )
                )
                link = self.registry.create_link(kind)
                target = self.registry.get_signer(kind).sign(
                    key.api_url,
                    key.value,
                    link.target_params(model.value),
                    proxy=key.proxy_url,
                )
                # Nothing is dialed once a cancel has been observed
                token.raise_if_cancelled()
                await token.guard(link.open(target))

                prompt_at = utcnow()
                await token.guard(link.send(self.build_request(chat_session, request)))

                while True:
                    token.raise_if_cancelled()
                    chunk = await token.guard(link.recv())

                    if chunk.kind is ChunkKind.ERROR:
                        error = ProviderError(chunk.text or "Provider error")
                        logger.warning(
                            "Provider reported an error",
                            data={"provider": kind.value, "message": chunk.text},
                        )
                        await channel.send(error_message(error.message, error.code.value))
                        break

                    received += 1
                    if reply_at is None:
                        reply_at = utcnow()

                    if chunk.kind is ChunkKind.START:
                        if not start_sent:
                            start_sent = True
                            await channel.send(start_message())
                    elif chunk.kind is ChunkKind.DELTA:
                        if not start_sent:
                            start_sent = True
                            await channel.send(start_message())
                        parts.append(chunk.text)
                        await channel.send(delta_message(chunk.text))
                    elif chunk.kind is ChunkKind.END:
                        usage = chunk.usage
                        await channel.send(end_message())
                        status = TurnStatus.COMPLETED
                        outcome = LinkOutcome.SUCCESS
                        break
            except TurnCancelled as exc:
                status = TurnStatus.CANCELLED
                outcome = LinkOutcome.CANCELLED
                logger.info("Chat turn cancelled", data={"reason": exc.reason})
                await self._notify(channel, cancelled_message(exc.reason))
            except ChannelClosedError:
                status = TurnStatus.CANCELLED
                outcome = LinkOutcome.CANCELLED
                token.cancel("Client disconnected")
                logger.info("Client went away during the turn")
            except AppError as exc:
                error = exc
                if isinstance(exc, MalformedCredentialError):
                    logger.error(
                        "Malformed API key configured",
                        data={"platform": model.platform, "message": exc.message},
                    )
                else:
                    logger.warning(
                        "Chat turn failed",
                        data={"code": exc.code.value, "message": exc.message, "details": exc.details},
                    )
                await self._notify(channel, error_message(exc.message, exc.code.value))
            except Exception as exc:
                logger.exception("Unexpected error during chat turn", exc_info=exc)
                error = AppError(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")
                await self._notify(channel, error_message(error.message, error.code.value))
        finally:
            if link is not None:
                await self._close_link(link, outcome)
            metrics.adjust_gauge("active_turns", -1)

        content = "".join(parts)
        record_id: int | None = None
        if received > 0:
            record_id = self._persist(
                chat_session, request, content, usage, prompt_at, reply_at, status
            )

        elapsed = time.monotonic() - started
        metrics.observe("turn_duration_seconds", elapsed)
        metrics.increment(
            {
                TurnStatus.COMPLETED: "turns_completed",
                TurnStatus.CANCELLED: "turns_cancelled",
                TurnStatus.FAILED: "turns_failed",
            }[status]
        )
        logger.info(
            "Chat turn finished",
            data={
                "status": status.value,
                "chunks": received,
                "chars": len(content),
                "duration_ms": round(elapsed * 1000, 2),
            },
        )
        return TurnResult(
            status=status,
            content=content,
            usage=usage,
            record_id=record_id,
            error=error,
            chunks_received=received,
        )

    def _persist(
        self,
        chat_session: ChatSession,
        request: TurnRequest,
        content: str,
        usage: Usage | None,
        prompt_at: datetime,
        reply_at: datetime | None,
        status: TurnStatus,
    ) -> int | None:
        try:
            record = self.history.save(
                chat_session.conversation_id,
                request.prompt,
                content,
                usage,
                prompt_at,
                reply_at,
                model=chat_session.model.value,
                status=status,
            )
        except PersistenceError as exc:
            metrics.increment("history_write_failures")
            logger.error(
                "Failed to save chat history",
                data={"message": exc.message, "details": exc.details},
            )
            return None
        chat_session.append_turn(
            request.messages, content, self.settings.chat_context_max_messages
        )
        return record.id

    @staticmethod
    async def _notify(channel: ClientChannel, message: dict) -> None:
        """Send a terminal message; a client that is already gone is not an error."""
        try:
            await channel.send(message)
        except ChannelClosedError:
            logger.debug("Client gone before terminal message", data={"type": message["type"]})

    @staticmethod
    async def _close_link(link: ProviderLink, outcome: LinkOutcome) -> None:
        try:
            await link.close(outcome)
        except Exception as exc:
            logger.warning(
                "Error closing provider link",
                data={"provider": link.kind.value, "error": str(exc)},
            )


class RelayService:
    """Entry point for turns: resolves the model, claims the session, runs the relay."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        registry: ProviderRegistry,
        *,
        key_pool: KeyPool | None = None,
        history: HistoryWriter | None = None,
        sessions: ChatSessionStore | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.registry = registry
        self.key_pool = key_pool or KeyPool(session_factory)
        self.history = history or HistoryWriter(session_factory)
        self.sessions = sessions or ChatSessionStore(
            session_factory, settings.chat_context_max_messages
        )
        self.relay = RelaySession(
            key_pool=self.key_pool,
            registry=registry,
            history=self.history,
            settings=settings,
        )

    def resolve_model(self, value: str) -> ModelConfig:
        """Look up an enabled model by value.

        Raises:
            ModelNotFoundError: If no enabled model has that value
        """
        with self.session_factory() as db:
            record = get_chat_model_by_value(db, value)
            if record is None:
                raise ModelNotFoundError(
                    f"Model '{value}' is not available", details={"model": value}
                )
            return ModelConfig.from_record(record)

    def ensure_conversation(self, conversation_id: str, request: TurnRequest, model: ModelConfig) -> None:
        """Create the conversation on its first turn, titled after the prompt."""
        with self.session_factory() as db:
            try:
                get_or_create_conversation(
                    db,
                    conversation_id,
                    title=request.prompt.strip()[:TITLE_MAX_LENGTH],
                    model=model.value,
                )
            except SQLAlchemyError as exc:
                db.rollback()
                raise PersistenceError(
                    "Failed to create conversation", details={"reason": str(exc)}
                ) from exc

    async def run_turn(
        self, conversation_id: str, request: TurnRequest, channel: ClientChannel
    ) -> TurnResult:
        """
        Run one turn for a conversation.

        Raises:
            ValidationError: If the request is malformed
            ModelNotFoundError: If the model is unknown or disabled
            ConversationBusyError: If a turn is already running for the conversation
        """
        request.validate()
        model = self.resolve_model(request.model)

        conversation_token = conversation_id_ctx.set(conversation_id)
        turn_token = turn_id_ctx.set(str(uuid.uuid4()))
        try:
            async with self.sessions.claim(conversation_id) as chat_session:
                self.ensure_conversation(conversation_id, request, model)
                chat_session.model = model
                token = CancelToken()
                chat_session.token = token
                return await self.relay.run(token, chat_session, request, channel)
        finally:
            turn_id_ctx.reset(turn_token)
            conversation_id_ctx.reset(conversation_token)

    def cancel_turn(self, conversation_id: str) -> bool:
        """Cancel the conversation's running turn. Returns False if none is running."""
        cancelled = self.sessions.cancel(conversation_id)
        if cancelled:
            logger.info("Chat turn cancel requested", data={"conversation_id": conversation_id})
        return cancelled

    def forget(self, conversation_id: str) -> bool:
        """Cancel any running turn and drop the in-memory context."""
        return self.sessions.clear(conversation_id)

    def delete_conversation(self, conversation_id: str) -> bool:
        """
        Cancel any running turn, then delete the conversation and its history.

        Returns False if the conversation did not exist.

        Raises:
            PersistenceError: If the store rejects the delete
        """
        self.sessions.drop(conversation_id)
        with self.session_factory() as db:
            try:
                deleted = delete_conversation(db, conversation_id)
            except SQLAlchemyError as exc:
                db.rollback()
                raise PersistenceError(
                    "Failed to delete conversation", details={"reason": str(exc)}
                ) from exc
        if deleted:
            logger.info("Conversation deleted", data={"conversation_id": conversation_id})
        return deleted
