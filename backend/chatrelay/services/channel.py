"""Client-facing channel and the messages a turn sends over it."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect


class ChannelClosedError(Exception):
    """The client went away while a turn was streaming to it."""


class ClientChannel(ABC):
    """Where a turn forwards its output."""

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Deliver one message; raise ChannelClosedError if the client is gone."""
        ...


class WebSocketChannel(ClientChannel):
    """JSON messages over an accepted FastAPI websocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, message: dict[str, Any]) -> None:
        try:
            await self.websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            raise ChannelClosedError(str(exc)) from exc


def start_message() -> dict[str, Any]:
    return {"type": "start"}


def delta_message(content: str) -> dict[str, Any]:
    return {"type": "delta", "content": content}


def end_message() -> dict[str, Any]:
    return {"type": "end"}


def error_message(content: str, code: str) -> dict[str, Any]:
    return {"type": "error", "content": content, "code": code}


def cancelled_message(content: str) -> dict[str, Any]:
    return {"type": "cancelled", "content": content}
