"""Repository helpers for configured chat models."""

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatrelay.db.models import ChatModel


def create_chat_model(
    db: Session,
    platform: str,
    value: str,
    *,
    name: str | None = None,
    key_id: int | None = None,
    enabled: bool = True,
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> ChatModel:
    """Register a model that clients may request."""
    model = ChatModel(
        platform=platform,
        value=value,
        name=name or value,
        key_id=key_id,
        enabled=enabled,
        temperature=temperature,
        max_tokens=max_tokens,
    )
    db.add(model)
    db.commit()
    db.refresh(model)
    return model


def get_chat_model_by_value(db: Session, value: str) -> ChatModel | None:
    """Look up an enabled model by its wire value (e.g. ``generalv2``)."""
    stmt = select(ChatModel).where(ChatModel.value == value, ChatModel.enabled.is_(True))
    return db.execute(stmt).scalar_one_or_none()
