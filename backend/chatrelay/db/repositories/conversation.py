"""Repository helpers for conversations and their chat history."""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatrelay.db.models import Conversation, HistoryRecord


def create_conversation(
    db: Session,
    *,
    conversation_id: str | None = None,
    user_id: str | None = None,
    title: str | None = None,
    model: str | None = None,
) -> Conversation:
    """Create a new conversation."""
    conversation = Conversation(
        user_id=user_id,
        title=title.strip() if title and title.strip() else "New Chat",
        model=model,
    )
    if conversation_id:
        conversation.id = conversation_id
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def get_conversation(db: Session, conversation_id: str) -> Conversation | None:
    """Fetch a conversation by id."""
    return db.get(Conversation, conversation_id)


def get_conversation_for_update(db: Session, conversation_id: str) -> Conversation | None:
    """Fetch a conversation and lock its row for the current transaction."""
    stmt = (
        select(Conversation)
        .where(Conversation.id == conversation_id)
        .with_for_update()
    )
    return db.execute(stmt).scalar_one_or_none()


def get_or_create_conversation(
    db: Session,
    conversation_id: str,
    *,
    title: str | None = None,
    model: str | None = None,
) -> Conversation:
    """Return the conversation, creating it on the first turn."""
    conversation = get_conversation(db, conversation_id)
    if conversation:
        return conversation
    return create_conversation(
        db, conversation_id=conversation_id, title=title, model=model
    )


def delete_conversation(db: Session, conversation_id: str) -> bool:
    """Delete a conversation and cascade its history."""
    conversation = get_conversation(db, conversation_id)
    if not conversation:
        return False
    db.delete(conversation)
    db.commit()
    return True


def add_history_record(
    db: Session,
    conversation_id: str,
    *,
    prompt: str,
    content: str,
    prompt_at: datetime,
    reply_at: datetime | None,
    model: str | None = None,
    status: str = "completed",
    prompt_tokens: int | None = None,
    completion_tokens: int | None = None,
    total_tokens: int | None = None,
) -> HistoryRecord:
    """Stage a history record in the caller's transaction."""
    record = HistoryRecord(
        conversation_id=conversation_id,
        model=model,
        prompt=prompt,
        content=content,
        status=status,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
        prompt_at=prompt_at,
        reply_at=reply_at,
    )
    db.add(record)
    db.flush()
    return record


def get_history_records(
    db: Session, conversation_id: str, limit: int | None = None
) -> list[HistoryRecord]:
    """Get history for a conversation ordered by id.

    With ``limit`` only the most recent records are returned, still oldest first.
    """
    stmt = select(HistoryRecord).where(HistoryRecord.conversation_id == conversation_id)
    if limit is None:
        return list(db.execute(stmt.order_by(HistoryRecord.id.asc())).scalars().all())
    recent = db.execute(stmt.order_by(HistoryRecord.id.desc()).limit(limit)).scalars().all()
    return list(reversed(recent))
