"""Ollama native streaming link."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from chatrelay.core import ProtocolError
from chatrelay.providers.base import (
    Chunk,
    ConnectionTarget,
    ProviderKind,
    ProviderLink,
    ProviderRequest,
    Usage,
)
from chatrelay.providers.http_client import create_http_client, open_stream


class OllamaLink(ProviderLink):
    """Streams JSON lines from Ollama's ``/api/chat``."""

    kind = ProviderKind.OLLAMA

    def __init__(
        self,
        *,
        handshake_timeout: float = 5.0,
        read_timeout: float = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__()
        self.handshake_timeout = handshake_timeout
        self.read_timeout = read_timeout
        self._transport = transport
        self._target: ConnectionTarget | None = None
        self._client: httpx.AsyncClient | None = None
        self._response: httpx.Response | None = None
        self._lines: AsyncIterator[str] | None = None
        self._started = False

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
            "stream": True,
            "options": {
                "temperature": request.temperature,
                "num_predict": request.max_tokens,
            },
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
        if not line.strip():
            return []
        try:
            event = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ProtocolError(
                "Provider returned invalid JSON", details={"body": line[:300]}
            ) from exc

        if event.get("error"):
            return [Chunk.error(str(event["error"]))]

        chunks: list[Chunk] = []
        if not self._started:
            self._started = True
            chunks.append(Chunk.start())
        content = (event.get("message") or {}).get("content")
        if content:
            chunks.append(Chunk.delta(content))
        if event.get("done"):
            prompt_tokens = event.get("prompt_eval_count")
            completion_tokens = event.get("eval_count")
            total = None
            if prompt_tokens is not None and completion_tokens is not None:
                total = prompt_tokens + completion_tokens
            chunks.append(
                Chunk.end(
                    Usage(
                        prompt_tokens=prompt_tokens,
                        completion_tokens=completion_tokens,
                        total_tokens=total,
                    )
                )
            )
        return chunks

    async def _disconnect(self) -> None:
        if self._response is not None:
            await self._response.aclose()
        if self._client is not None:
            await self._client.aclose()
