"""XunFei Spark websocket link."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager, AsyncExitStack
from typing import Any

import httpx
from httpx_ws import (
    AsyncWebSocketSession,
    WebSocketDisconnect,
    WebSocketInvalidTypeReceived,
    WebSocketNetworkError,
    WebSocketUpgradeError,
    aconnect_ws,
)

from chatrelay.core import HandshakeFailedError, ModelNotFoundError, ProtocolError, get_logger
from chatrelay.providers.base import (
    Chunk,
    ConnectionTarget,
    ProviderKind,
    ProviderLink,
    ProviderRequest,
    Usage,
)
from chatrelay.providers.http_client import create_http_client

logger = get_logger(__name__)

# Spark model ("domain") -> API version segment of the endpoint URL
MODEL_VERSIONS: dict[str, str] = {
    "general": "v1.1",
    "generalv2": "v2.1",
    "generalv3": "v3.1",
    "generalv3.5": "v3.5",
}

# payload.choices.status
STATUS_FIRST = 0
STATUS_CONTINUE = 1
STATUS_LAST = 2

WebSocketConnect = Callable[[str, httpx.AsyncClient], AbstractAsyncContextManager[Any]]


def to_http_url(url: str) -> str:
    """httpx dials websocket endpoints through their http(s) form."""
    if url.startswith("wss://"):
        return "https://" + url[len("wss://"):]
    if url.startswith("ws://"):
        return "http://" + url[len("ws://"):]
    return url


class SparkLink(ProviderLink):
    """Streams replies from XunFei Spark over a signed websocket."""

    kind = ProviderKind.XUNFEI

    def __init__(
        self,
        *,
        handshake_timeout: float = 5.0,
        read_timeout: float = 120.0,
        top_k: int = 6,
        auditing: str = "default",
        connect: WebSocketConnect = aconnect_ws,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__()
        self.handshake_timeout = handshake_timeout
        self.read_timeout = read_timeout
        self.top_k = top_k
        self.auditing = auditing
        self._connect_ws = connect
        self._transport = transport
        self._stack = AsyncExitStack()
        self._ws: AsyncWebSocketSession | None = None
        self._app_id = ""

    def target_params(self, model: str) -> dict[str, str]:
        version = MODEL_VERSIONS.get(model)
        if version is None:
            raise ModelNotFoundError(
                f"Unknown Spark model '{model}'", details={"known": sorted(MODEL_VERSIONS)}
            )
        return {"model": model, "version": version}

    async def _connect(self, target: ConnectionTarget) -> None:
        self._app_id = str(target.credentials.get("app_id", ""))
        client = create_http_client(
            timeout_seconds=self.handshake_timeout,
            connect_timeout=self.handshake_timeout,
            proxy=target.proxy,
            transport=self._transport,
        )
        await self._stack.enter_async_context(client)
        try:
            self._ws = await asyncio.wait_for(
                self._stack.enter_async_context(
                    self._connect_ws(to_http_url(target.url), client)
                ),
                timeout=self.handshake_timeout,
            )
        except TimeoutError as exc:
            raise HandshakeFailedError(
                "Timed out connecting to the provider",
                details={"timeout": self.handshake_timeout},
            ) from exc
        except WebSocketUpgradeError as exc:
            raise HandshakeFailedError(
                "Provider rejected the websocket upgrade",
                details={"status": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            raise HandshakeFailedError(
                "Could not connect to the provider", details={"reason": str(exc)}
            ) from exc

    def build_envelope(self, request: ProviderRequest) -> dict[str, Any]:
        """Spark's native request frame."""
        return {
            "header": {"app_id": self._app_id},
            "parameter": {
                "chat": {
                    "domain": request.model,
                    "temperature": request.temperature,
                    "top_k": self.top_k,
                    "max_tokens": request.max_tokens,
                    "auditing": self.auditing,
                }
            },
            "payload": {
                "message": {"text": [message.to_dict() for message in request.messages]}
            },
        }

    async def _send(self, request: ProviderRequest) -> None:
        try:
            await self._ws.send_json(self.build_envelope(request))
        except (WebSocketDisconnect, WebSocketNetworkError) as exc:
            raise ProtocolError(
                "Failed to send the request to the provider", details={"reason": str(exc)}
            ) from exc

    async def _read_frame(self) -> list[Chunk]:
        try:
            message = await asyncio.wait_for(self._ws.receive_text(), timeout=self.read_timeout)
        except TimeoutError as exc:
            raise ProtocolError(
                "Provider stopped sending before the reply finished",
                details={"timeout": self.read_timeout},
            ) from exc
        except WebSocketDisconnect as exc:
            raise ProtocolError(
                "Provider closed the connection before the reply finished",
                details={"code": exc.code, "reason": exc.reason},
            ) from exc
        except WebSocketNetworkError as exc:
            raise ProtocolError(
                "Lost connection to the provider", details={"reason": str(exc)}
            ) from exc
        except WebSocketInvalidTypeReceived as exc:
            raise ProtocolError("Provider sent a binary frame") from exc
        return self.parse_frame(message)

    def parse_frame(self, message: str) -> list[Chunk]:
        """Translate one Spark response frame into chunks."""
        try:
            frame = json.loads(message)
        except json.JSONDecodeError as exc:
            raise ProtocolError(
                "Provider returned invalid JSON", details={"body": message[:300]}
            ) from exc
        if not isinstance(frame, dict):
            raise ProtocolError("Provider frame is not an object", details={"body": message[:300]})

        header = frame.get("header") or {}
        code = header.get("code", 0)
        if code != 0:
            logger.warning(
                "Provider returned an error frame",
                data={"code": code, "sid": header.get("sid")},
            )
            return [Chunk.error(header.get("message") or f"Provider error {code}")]

        payload = frame.get("payload") or {}
        choices = payload.get("choices") or {}
        texts = choices.get("text") or []
        status = choices.get("status")
        if not texts or status not in (STATUS_FIRST, STATUS_CONTINUE, STATUS_LAST):
            raise ProtocolError("Provider frame has no choices", details={"body": message[:300]})

        chunks: list[Chunk] = []
        if status == STATUS_FIRST:
            chunks.append(Chunk.start())
        chunks.append(Chunk.delta(texts[0].get("content") or ""))
        if status == STATUS_LAST:
            chunks.append(Chunk.end(_parse_usage(payload)))
        return chunks

    async def _disconnect(self) -> None:
        self._ws = None
        await self._stack.aclose()


def _parse_usage(payload: dict[str, Any]) -> Usage | None:
    text = (payload.get("usage") or {}).get("text")
    if not text:
        return None
    return Usage(
        prompt_tokens=text.get("prompt_tokens"),
        completion_tokens=text.get("completion_tokens"),
        total_tokens=text.get("total_tokens"),
    )
