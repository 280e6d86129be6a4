"""Value types shared by the relay services."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from chatrelay.core import AppError, ValidationError
from chatrelay.db.models import ChatModel
from chatrelay.providers.base import ChatMessage, Usage

VALID_ROLES = {"system", "user", "assistant"}


@dataclass(frozen=True)
class ModelConfig:
    """Snapshot of a configured model; fixed for the duration of a turn."""

    id: int
    value: str
    platform: str
    name: str = ""
    key_id: int | None = None
    temperature: float | None = None
    max_tokens: int | None = None

    @classmethod
    def from_record(cls, record: ChatModel) -> "ModelConfig":
        return cls(
            id=record.id,
            value=record.value,
            platform=record.platform,
            name=record.name,
            key_id=record.key_id,
            temperature=record.temperature,
            max_tokens=record.max_tokens,
        )


@dataclass
class TurnRequest:
    """One inbound turn from the client."""

    model: str
    messages: list[ChatMessage]
    temperature: float | None = None
    max_tokens: int | None = None

    @property
    def prompt(self) -> str:
        """The last user message of the request."""
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return ""

    def validate(self) -> None:
        """Raise ValidationError unless the request can start a turn."""
        if not self.model or not self.model.strip():
            raise ValidationError("Model is required")
        if not self.messages:
            raise ValidationError("At least one message is required")
        for message in self.messages:
            if message.role not in VALID_ROLES:
                raise ValidationError(
                    f"Unsupported message role '{message.role}'",
                    details={"allowed": sorted(VALID_ROLES)},
                )
        if not self.prompt.strip():
            raise ValidationError("The request has no user prompt")


class TurnStatus(str, Enum):
    """Terminal status of a turn (also stored on the history record)."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TurnResult:
    """Outcome of one turn as seen by the caller."""

    status: TurnStatus
    content: str = ""
    usage: Usage | None = None
    record_id: int | None = None
    error: AppError | None = None
    chunks_received: int = 0
