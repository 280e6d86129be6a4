"""Transactional persistence of finished turns."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from chatrelay.core import PersistenceError, get_logger
from chatrelay.db.base import utcnow
from chatrelay.db.models import HistoryRecord
from chatrelay.db.repositories import add_history_record, get_conversation_for_update
from chatrelay.providers.base import Usage
from chatrelay.services.types import TurnStatus

logger = get_logger(__name__)


class HistoryWriter:
    """Writes one history record per turn and bumps the conversation."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def save(
        self,
        conversation_id: str,
        prompt: str,
        content: str,
        usage: Usage | None,
        prompt_at: datetime,
        reply_at: datetime | None,
        *,
        model: str | None = None,
        status: TurnStatus = TurnStatus.COMPLETED,
    ) -> HistoryRecord:
        """
        Persist the turn in a single transaction.

        Raises:
            PersistenceError: If the conversation no longer exists or the
                store rejects the write
        """
        with self._session_factory() as db:
            try:
                conversation = get_conversation_for_update(db, conversation_id)
                if conversation is None:
                    db.rollback()
                    raise PersistenceError(
                        "Conversation no longer exists",
                        details={"conversation_id": conversation_id},
                    )
                record = add_history_record(
                    db,
                    conversation_id,
                    prompt=prompt,
                    content=content,
                    prompt_at=prompt_at,
                    reply_at=reply_at,
                    model=model,
                    status=TurnStatus(status).value,
                    prompt_tokens=usage.prompt_tokens if usage else None,
                    completion_tokens=usage.completion_tokens if usage else None,
                    total_tokens=usage.total_tokens if usage else None,
                )
                conversation.last_activity_at = utcnow()
                if model:
                    conversation.model = model
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise PersistenceError(details={"reason": str(exc)}) from exc

        logger.info(
            "Chat history saved",
            data={"record_id": record.id, "status": record.status, "chars": len(content)},
        )
        return record
