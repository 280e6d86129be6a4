"""Chat turn endpoints: the streaming websocket plus stop and context controls."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Literal

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from chatrelay.core import AppError, ErrorCode, NotFoundError, get_logger
from chatrelay.providers.base import ChatMessage
from chatrelay.services.channel import (
    ChannelClosedError,
    ClientChannel,
    WebSocketChannel,
    error_message,
)
from chatrelay.services.relay import RelayService
from chatrelay.services.types import TurnRequest

logger = get_logger(__name__)

router = APIRouter(tags=["chat"])


class ChatMessageIn(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatTurnIn(BaseModel):
    model: str = Field(..., min_length=1)
    messages: list[ChatMessageIn] = Field(..., min_length=1)
    temperature: float | None = Field(None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(None, gt=0)

    def to_turn_request(self) -> TurnRequest:
        return TurnRequest(
            model=self.model,
            messages=[ChatMessage(role=m.role, content=m.content) for m in self.messages],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )


def get_relay_service(request: Request) -> RelayService:
    return request.app.state.relay_service


async def _send_error(channel: ClientChannel, message: str, code: ErrorCode) -> None:
    try:
        await channel.send(error_message(message, code.value))
    except ChannelClosedError:
        logger.debug("Client gone before error could be delivered", data={"code": code.value})


async def _run_turn(
    service: RelayService,
    conversation_id: str,
    request: TurnRequest,
    channel: ClientChannel,
) -> None:
    """Run a turn as a background task; rejections are reported to the client."""
    try:
        await service.run_turn(conversation_id, request, channel)
    except AppError as exc:
        logger.info(
            "Chat turn rejected",
            data={"conversation_id": conversation_id, "code": exc.code.value},
        )
        await _send_error(channel, exc.message, exc.code)
    except Exception as exc:
        logger.exception("Unexpected error starting chat turn", exc_info=exc)
        await _send_error(channel, "An unexpected error occurred", ErrorCode.INTERNAL_ERROR)


def _parse_frame(raw: str) -> dict[str, Any] | None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


@router.websocket("/chat/ws/{conversation_id}")
async def chat_socket(websocket: WebSocket, conversation_id: str) -> None:
    """
    One socket per conversation view.

    Inbound frames are turn requests or ``{"type": "stop"}``. Each turn runs
    on its own task so stop requests keep being read while it streams.
    """
    service: RelayService = websocket.app.state.relay_service
    await websocket.accept()
    channel = WebSocketChannel(websocket)
    turn_task: asyncio.Task | None = None

    try:
        while True:
            data = _parse_frame(await websocket.receive_text())
            if data is None:
                await _send_error(channel, "Message must be a JSON object", ErrorCode.VALIDATION_ERROR)
                continue

            if data.get("type") == "stop":
                service.cancel_turn(conversation_id)
                continue

            if turn_task is not None and not turn_task.done():
                await _send_error(
                    channel,
                    "A reply is already being generated for this conversation",
                    ErrorCode.CONVERSATION_BUSY,
                )
                continue

            try:
                payload = ChatTurnIn.model_validate(data)
            except PydanticValidationError as exc:
                await _send_error(
                    channel,
                    exc.errors()[0].get("msg", "Invalid request"),
                    ErrorCode.VALIDATION_ERROR,
                )
                continue

            turn_task = asyncio.create_task(
                _run_turn(service, conversation_id, payload.to_turn_request(), channel)
            )
    except WebSocketDisconnect:
        logger.info("Chat socket closed", data={"conversation_id": conversation_id})
    finally:
        if turn_task is not None and not turn_task.done():
            service.cancel_turn(conversation_id)
            await turn_task


@router.post("/chat/{conversation_id}/stop")
async def stop_turn_route(
    conversation_id: str,
    service: RelayService = Depends(get_relay_service),
) -> dict[str, Any]:
    if not service.cancel_turn(conversation_id):
        raise NotFoundError("No reply is being generated for this conversation")
    return {"status": "cancelling", "conversation_id": conversation_id}


@router.delete("/chat/{conversation_id}/context")
async def clear_context_route(
    conversation_id: str,
    service: RelayService = Depends(get_relay_service),
) -> dict[str, Any]:
    had_context = service.forget(conversation_id)
    return {"status": "cleared", "conversation_id": conversation_id, "had_context": had_context}


@router.delete("/chat/{conversation_id}")
async def delete_conversation_route(
    conversation_id: str,
    service: RelayService = Depends(get_relay_service),
) -> dict[str, Any]:
    if not service.delete_conversation(conversation_id):
        raise NotFoundError("Conversation not found")
    return {"status": "deleted", "conversation_id": conversation_id}
