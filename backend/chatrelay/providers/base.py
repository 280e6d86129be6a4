"""
Base provider link interface.

Defines the contract every provider connection implements: open a
connection to a signed target, send one request, then hand back a
normalized chunk sequence until the provider finishes.
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ProviderKind(str, Enum):
    """Supported provider platforms (matches ``api_keys.platform``)."""

    XUNFEI = "XunFei"
    OPENAI = "OpenAI"
    AZURE = "Azure"
    OLLAMA = "Ollama"

    @classmethod
    def _missing_(cls, value: object) -> "ProviderKind | None":
        if isinstance(value, str):
            lowered = value.lower()
            for member in cls:
                if member.value.lower() == lowered:
                    return member
        return None


class ChunkKind(str, Enum):
    """Normalized chunk kinds."""

    START = "start"
    DELTA = "delta"
    END = "end"
    ERROR = "error"


class LinkState(str, Enum):
    """Lifecycle of a provider link within one turn."""

    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSED = "closed"


class LinkOutcome(str, Enum):
    """How a closed link ended."""

    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class Usage:
    """Token counters reported by the provider."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


@dataclass(frozen=True)
class Chunk:
    """A single normalized unit of provider output."""

    kind: ChunkKind
    text: str = ""
    usage: Usage | None = None

    @classmethod
    def start(cls) -> "Chunk":
        return cls(ChunkKind.START)

    @classmethod
    def delta(cls, text: str) -> "Chunk":
        return cls(ChunkKind.DELTA, text)

    @classmethod
    def end(cls, usage: Usage | None = None) -> "Chunk":
        return cls(ChunkKind.END, usage=usage)

    @classmethod
    def error(cls, message: str) -> "Chunk":
        return cls(ChunkKind.ERROR, message)


@dataclass
class ChatMessage:
    """A single chat message."""

    role: str  # "system", "user", "assistant"
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ProviderRequest:
    """Structured request handed to a link after it connects."""

    model: str
    messages: list[ChatMessage]
    temperature: float = 0.5
    max_tokens: int = 1024


@dataclass(frozen=True)
class ConnectionTarget:
    """Signed connection parameters produced by a RequestSigner."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)
    # Values split out of a composite secret that belong in the request body
    credentials: dict[str, Any] = field(default_factory=dict)
    proxy: str | None = None


class EndOfStream(EOFError):
    """Raised by ``recv`` once the terminal chunk has been delivered."""


class ProviderLink(ABC):
    """
    One streaming connection to one provider for one turn.

    Subclasses implement the transport hooks; this base class owns the
    state machine, frame-to-chunk queueing and empty-delta normalization
    so the relay stays provider-agnostic.
    """

    kind: ProviderKind

    def __init__(self) -> None:
        self.state = LinkState.IDLE
        self.outcome: LinkOutcome | None = None
        self._pending: deque[Chunk] = deque()
        self._finished = False

    def target_params(self, model: str) -> dict[str, str]:
        """Values substituted into the key's raw target URL."""
        return {"model": model}

    async def open(self, target: ConnectionTarget) -> None:
        """Establish the connection.

        Raises:
            HandshakeFailedError: If the provider refuses or does not answer in time
        """
        if self.state is not LinkState.IDLE:
            raise RuntimeError(f"Cannot open a link that is {self.state.value}")
        self.state = LinkState.CONNECTING
        await self._connect(target)
        self.state = LinkState.STREAMING

    async def send(self, request: ProviderRequest) -> None:
        """Serialize and transmit the request as the provider's native envelope."""
        if self.state is not LinkState.STREAMING:
            raise RuntimeError(f"Cannot send on a link that is {self.state.value}")
        await self._send(request)

    async def recv(self) -> Chunk:
        """
        Return the next normalized chunk.

        Raises:
            EndOfStream: After the terminal end/error chunk was returned
            ProtocolError: If the provider sent an unreadable frame
        """
        if self._finished:
            raise EndOfStream()
        while not self._pending:
            self._pending.extend(await self._read_frame())
        chunk = self._pending.popleft()
        if chunk.kind is ChunkKind.DELTA and not chunk.text:
            # Empty deltas mark line breaks (mostly inside code blocks).
            # A genuinely empty token is indistinguishable and also becomes "\n".
            chunk = Chunk.delta("\n")
        if chunk.kind in (ChunkKind.END, ChunkKind.ERROR):
            self._finished = True
            self._pending.clear()
        return chunk

    async def close(self, outcome: LinkOutcome = LinkOutcome.SUCCESS) -> None:
        """Release the connection. Safe to call more than once."""
        if self.state is LinkState.CLOSED:
            return
        self.state = LinkState.CLOSED
        self.outcome = outcome
        await self._disconnect()

    @abstractmethod
    async def _connect(self, target: ConnectionTarget) -> None:
        ...

    @abstractmethod
    async def _send(self, request: ProviderRequest) -> None:
        ...

    @abstractmethod
    async def _read_frame(self) -> list[Chunk]:
        """Read one native frame and translate it into zero or more chunks."""
        ...

    @abstractmethod
    async def _disconnect(self) -> None:
        ...
