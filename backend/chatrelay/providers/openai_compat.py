"""OpenAI-compatible streaming link (OpenAI and Azure OpenAI)."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from chatrelay.core import ProtocolError, get_logger
from chatrelay.providers.base import (
    Chunk,
    ConnectionTarget,
    ProviderKind,
    ProviderLink,
    ProviderRequest,
    Usage,
)
from chatrelay.providers.http_client import create_http_client, open_stream

logger = get_logger(__name__)


class OpenAICompatLink(ProviderLink):
    """
    Server-sent events from ``/chat/completions``.

    The HTTP request is only made in ``send`` because the request body is
    the handshake; ``open`` just prepares the client.
    """

    def __init__(
        self,
        *,
        kind: ProviderKind = ProviderKind.OPENAI,
        handshake_timeout: float = 5.0,
        read_timeout: float = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__()
        self.kind = kind
        self.handshake_timeout = handshake_timeout
        self.read_timeout = read_timeout
        self._transport = transport
        self._target: ConnectionTarget | None = None
        self._client: httpx.AsyncClient | None = None
        self._response: httpx.Response | None = None
        self._lines: AsyncIterator[str] | None = None
        self._started = False
        self._usage: Usage | None = None

    async def _connect(self, target: ConnectionTarget) -> None:
        self._target = target
        self._client = create_http_client(
            timeout_seconds=self.read_timeout,
            connect_timeout=self.handshake_timeout,
            proxy=target.proxy,
            transport=self._transport,
        )

    def build_payload(self, request: ProviderRequest) -> dict[str, Any]:
        return {
            "model": request.model,
            "messages": [message.to_dict() for message in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": True,
        }

    async def _send(self, request: ProviderRequest) -> None:
        self._response = await open_stream(
            self._client,
            "POST",
            self._target.url,
            handshake_timeout=self.handshake_timeout,
            headers=self._target.headers,
            json=self.build_payload(request),
        )
        self._lines = self._response.aiter_lines()

    async def _read_frame(self) -> list[Chunk]:
        try:
            line = await anext(self._lines)
        except StopAsyncIteration as exc:
            raise ProtocolError("Provider closed the stream before the reply finished") from exc
        except httpx.HTTPError as exc:
            raise ProtocolError(
                "Lost connection to the provider", details={"reason": str(exc)}
            ) from exc
        return self.parse_line(line)

    def parse_line(self, line: str) -> list[Chunk]:
        """Translate one SSE line into chunks; comments and blanks yield nothing."""
        line = line.strip()
        if not line.startswith("data:"):
            return []
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return [Chunk.end(self._usage)]

        try:
            event = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ProtocolError(
                "Provider returned invalid JSON", details={"body": data[:300]}
            ) from exc

        error = event.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            logger.warning("Provider returned an error event", data={"provider": self.kind.value})
            return [Chunk.error(message or "Provider error")]

        usage = event.get("usage")
        if usage:
            self._usage = Usage(
                prompt_tokens=usage.get("prompt_tokens"),
                completion_tokens=usage.get("completion_tokens"),
                total_tokens=usage.get("total_tokens"),
            )

        chunks: list[Chunk] = []
        if not self._started:
            self._started = True
            chunks.append(Chunk.start())
        choices = event.get("choices") or []
        if choices:
            choice = choices[0]
            content = (choice.get("delta") or {}).get("content")
            # Role-only and filter frames carry no text
            if content:
                chunks.append(Chunk.delta(content))
            if choice.get("finish_reason"):
                chunks.append(Chunk.end(self._usage))
        return chunks

    async def _disconnect(self) -> None:
        if self._response is not None:
            await self._response.aclose()
        if self._client is not None:
            await self._client.aclose()
