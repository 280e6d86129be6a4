"""
Tests for turn orchestration (streaming, cancellation, persistence and concurrency).
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from urllib.parse import parse_qs, urlsplit

import pytest

from chatrelay.core import ConversationBusyError, ErrorCode, HandshakeFailedError, ModelNotFoundError
from chatrelay.core import PersistenceError, ValidationError
from chatrelay.core.metrics import metrics
from chatrelay.db.repositories import get_conversation, get_history_records
from chatrelay.providers import ChatMessage, Chunk, LinkOutcome, LinkState, SparkLink, Usage
from chatrelay.services import (
    CancelToken,
    ChatSession,
    KeyPool,
    HistoryWriter,
    ModelConfig,
    RelaySession,
    TurnRequest,
    TurnStatus,
)

from conftest import HANG, FakeRegistry, RecordingChannel, ScriptedLink, seed_spark, user_turn


def _records(session_factory, conversation_id: str):
    with session_factory() as db:
        return get_history_records(db, conversation_id)


@pytest.mark.asyncio
async def test_empty_delta_is_forwarded_as_newline(session_factory, make_service) -> None:
    seed_spark(session_factory)
    link = ScriptedLink(
        [Chunk.start(), Chunk.delta("a"), Chunk.delta(""), Chunk.delta("b"), Chunk.end()]
    )
    service = make_service(FakeRegistry(link))
    channel = RecordingChannel()

    result = await service.run_turn("conv-1", user_turn(), channel)

    assert channel.messages == [
        {"type": "start"},
        {"type": "delta", "content": "a"},
        {"type": "delta", "content": "\n"},
        {"type": "delta", "content": "b"},
        {"type": "end"},
    ]
    assert result.status is TurnStatus.COMPLETED
    assert result.content == "a\nb"
    assert link.state is LinkState.CLOSED
    assert link.outcome is LinkOutcome.SUCCESS
    assert link.disconnects == 1


@pytest.mark.asyncio
async def test_cancel_mid_stream_keeps_partial_reply(session_factory, make_service) -> None:
    seed_spark(session_factory)
    link = ScriptedLink([Chunk.start(), Chunk.delta("partial"), HANG])
    service = make_service(FakeRegistry(link))
    channel = RecordingChannel()

    task = asyncio.create_task(service.run_turn("conv-1", user_turn(), channel))
    await channel.wait_for("delta")
    assert service.cancel_turn("conv-1") is True
    result = await asyncio.wait_for(task, timeout=2)

    assert channel.types == ["start", "delta", "cancelled"]
    assert result.status is TurnStatus.CANCELLED
    assert link.state is LinkState.CLOSED
    assert link.outcome is LinkOutcome.CANCELLED
    assert link.disconnects == 1

    records = _records(session_factory, "conv-1")
    assert len(records) == 1
    assert records[0].content == "partial"
    assert records[0].status == "cancelled"
    assert result.record_id == records[0].id


@pytest.mark.asyncio
async def test_handshake_failure_writes_no_history(session_factory, make_service) -> None:
    seed_spark(session_factory)
    link = ScriptedLink([], open_error=HandshakeFailedError("Provider rejected the request"))
    service = make_service(FakeRegistry(link))
    channel = RecordingChannel()

    result = await service.run_turn("conv-1", user_turn(), channel)

    assert channel.messages == [
        {
            "type": "error",
            "content": "Provider rejected the request",
            "code": ErrorCode.HANDSHAKE_FAILED.value,
        }
    ]
    assert result.status is TurnStatus.FAILED
    assert result.chunks_received == 0
    assert link.outcome is LinkOutcome.ERROR
    assert link.disconnects == 1
    assert _records(session_factory, "conv-1") == []


@pytest.mark.asyncio
async def test_missing_key_is_reported_without_dialing(session_factory, make_service) -> None:
    seed_spark(session_factory, keys=0)
    registry = FakeRegistry(ScriptedLink([Chunk.end()]))
    service = make_service(registry)
    channel = RecordingChannel()

    result = await service.run_turn("conv-1", user_turn(), channel)

    assert channel.types == ["error"]
    assert channel.messages[0]["code"] == ErrorCode.NO_AVAILABLE_KEY.value
    assert registry.created == []
    assert isinstance(result.error, Exception)
    assert _records(session_factory, "conv-1") == []


@pytest.mark.asyncio
async def test_error_chunk_after_output_is_persisted_as_failed(
    session_factory, make_service
) -> None:
    seed_spark(session_factory)
    link = ScriptedLink([Chunk.start(), Chunk.delta("half"), Chunk.error("quota exceeded")])
    service = make_service(FakeRegistry(link))
    channel = RecordingChannel()

    result = await service.run_turn("conv-1", user_turn(), channel)

    assert channel.messages[-1] == {
        "type": "error",
        "content": "quota exceeded",
        "code": ErrorCode.PROVIDER_ERROR.value,
    }
    assert result.status is TurnStatus.FAILED
    assert link.outcome is LinkOutcome.ERROR
    records = _records(session_factory, "conv-1")
    assert [(r.content, r.status) for r in records] == [("half", "failed")]


@pytest.mark.asyncio
async def test_error_chunk_alone_writes_no_history(session_factory, make_service) -> None:
    seed_spark(session_factory)
    service = make_service(FakeRegistry(ScriptedLink([Chunk.error("sensitive input")])))
    channel = RecordingChannel()

    await service.run_turn("conv-1", user_turn(), channel)

    assert channel.types == ["error"]
    assert _records(session_factory, "conv-1") == []


@pytest.mark.asyncio
async def test_turns_on_different_conversations_interleave(session_factory, make_service) -> None:
    seed_spark(session_factory, keys=2)
    links = [ScriptedLink([Chunk.start(), Chunk.delta("x"), HANG]) for _ in range(2)]
    service = make_service(FakeRegistry(*links))
    first, second = RecordingChannel(), RecordingChannel()

    tasks = [
        asyncio.create_task(service.run_turn("conv-a", user_turn(), first)),
        asyncio.create_task(service.run_turn("conv-b", user_turn(), second)),
    ]
    await first.wait_for("delta")
    await second.wait_for("delta")

    assert service.cancel_turn("conv-a")
    assert service.cancel_turn("conv-b")
    results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=2)

    assert [r.status for r in results] == [TurnStatus.CANCELLED, TurnStatus.CANCELLED]
    assert all(link.state is LinkState.CLOSED for link in links)


@pytest.mark.asyncio
async def test_second_turn_on_same_conversation_is_rejected(session_factory, make_service) -> None:
    seed_spark(session_factory)
    link = ScriptedLink([Chunk.start(), Chunk.delta("x"), HANG])
    service = make_service(FakeRegistry(link))
    channel = RecordingChannel()

    task = asyncio.create_task(service.run_turn("conv-1", user_turn(), channel))
    await channel.wait_for("delta")

    with pytest.raises(ConversationBusyError) as exc_info:
        await service.run_turn("conv-1", user_turn(), RecordingChannel())
    assert exc_info.value.code == ErrorCode.CONVERSATION_BUSY

    service.cancel_turn("conv-1")
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_spark_end_to_end(session_factory, make_service) -> None:
    seed_spark(session_factory)
    frames = [
        json.dumps({
            "header": {"code": 0, "message": "Success", "sid": "s1", "status": status},
            "payload": {
                "choices": {"status": status, "seq": seq, "text": [{"content": text, "role": "assistant", "index": 0}]},
                **({"usage": {"text": {"prompt_tokens": 1, "completion_tokens": 3, "total_tokens": 4}}} if status == 2 else {}),
            },
        })
        for seq, (status, text) in enumerate([(0, "Hello"), (1, ", "), (2, "friend")])
    ]

    class Socket:
        def __init__(self) -> None:
            self.sent: list[dict] = []

        async def send_json(self, data: dict) -> None:
            self.sent.append(data)

        async def receive_text(self) -> str:
            return frames.pop(0)

    socket = Socket()
    dialed: list[str] = []

    @asynccontextmanager
    async def connect(url, client):
        dialed.append(url)
        yield socket

    link = SparkLink(handshake_timeout=1.0, connect=connect)
    service = make_service(FakeRegistry(link))
    channel = RecordingChannel()

    result = await service.run_turn(
        "conv-e2e",
        TurnRequest(model="generalv2", messages=[ChatMessage(role="user", content="hi")]),
        channel,
    )

    assert channel.types == ["start", "delta", "delta", "delta", "end"]
    assert result.status is TurnStatus.COMPLETED
    assert result.usage == Usage(prompt_tokens=1, completion_tokens=3, total_tokens=4)

    url = urlsplit(dialed[0])
    assert url.scheme == "https"
    assert url.netloc == "spark-api.xf-yun.com"
    assert url.path == "/v2.1/chat"
    assert set(parse_qs(url.query)) == {"host", "date", "authorization"}
    assert socket.sent[0]["header"] == {"app_id": "app-123"}
    assert socket.sent[0]["parameter"]["chat"]["domain"] == "generalv2"
    assert socket.sent[0]["parameter"]["chat"]["top_k"] == link.top_k

    records = _records(session_factory, "conv-e2e")
    assert len(records) == 1
    assert records[0].prompt == "hi"
    assert records[0].content == "Hello, friend"
    assert records[0].total_tokens == 4
    assert records[0].model == "generalv2"
    assert records[0].reply_at is not None

    with session_factory() as db:
        conversation = get_conversation(db, "conv-e2e")
        assert conversation.title == "hi"
        assert conversation.last_activity_at is not None


@pytest.mark.asyncio
async def test_context_window_is_sent_with_next_turn(session_factory, make_service) -> None:
    seed_spark(session_factory)
    first = ScriptedLink([Chunk.start(), Chunk.delta("4"), Chunk.end()])
    second = ScriptedLink([Chunk.start(), Chunk.delta("8"), Chunk.end()])
    service = make_service(FakeRegistry(first, second))

    await service.run_turn("conv-1", user_turn("2+2?"), RecordingChannel())
    await service.run_turn("conv-1", user_turn("4+4?"), RecordingChannel())

    sent = second.sent[0].messages
    assert [(m.role, m.content) for m in sent] == [
        ("user", "2+2?"),
        ("assistant", "4"),
        ("user", "4+4?"),
    ]


@pytest.mark.asyncio
async def test_client_disconnect_counts_as_cancellation(session_factory, make_service) -> None:
    seed_spark(session_factory)
    link = ScriptedLink([Chunk.start(), Chunk.delta("a"), Chunk.delta("b"), Chunk.end()])
    service = make_service(FakeRegistry(link))
    channel = RecordingChannel(fail_after=2)

    result = await service.run_turn("conv-1", user_turn(), channel)

    assert channel.types == ["start", "delta"]
    assert result.status is TurnStatus.CANCELLED
    assert link.outcome is LinkOutcome.CANCELLED
    records = _records(session_factory, "conv-1")
    assert [(r.content, r.status) for r in records] == [("ab", "cancelled")]


@pytest.mark.asyncio
async def test_history_failure_does_not_fail_the_turn(session_factory, make_service) -> None:
    class BrokenHistory(HistoryWriter):
        def save(self, *args, **kwargs):
            raise PersistenceError(details={"reason": "disk full"})

    seed_spark(session_factory)
    service = make_service(
        FakeRegistry(ScriptedLink([Chunk.start(), Chunk.delta("ok"), Chunk.end()])),
        history=BrokenHistory(session_factory),
    )
    channel = RecordingChannel()
    failures_before = metrics.snapshot()["counters"]["history_write_failures"]

    result = await service.run_turn("conv-1", user_turn(), channel)

    assert channel.types == ["start", "delta", "end"]
    assert result.status is TurnStatus.COMPLETED
    assert result.record_id is None
    assert metrics.snapshot()["counters"]["history_write_failures"] == failures_before + 1


@pytest.mark.asyncio
async def test_cancelled_token_never_opens_a_link(session_factory, settings) -> None:
    seed_spark(session_factory)
    registry = FakeRegistry(ScriptedLink([Chunk.end()]))
    relay = RelaySession(
        key_pool=KeyPool(session_factory),
        registry=registry,
        history=HistoryWriter(session_factory),
        settings=settings,
    )
    chat_session = ChatSession(
        conversation_id="conv-1",
        model=ModelConfig(id=1, value="generalv2", platform="XunFei"),
        loaded=True,
    )
    token = CancelToken()
    token.cancel("stopped early")
    channel = RecordingChannel()

    result = await relay.run(token, chat_session, user_turn(), channel)

    assert result.status is TurnStatus.CANCELLED
    assert registry.created == []
    assert channel.messages == [{"type": "cancelled", "content": "stopped early"}]


@pytest.mark.asyncio
async def test_unknown_model_is_rejected(session_factory, make_service) -> None:
    seed_spark(session_factory)
    service = make_service(FakeRegistry())

    with pytest.raises(ModelNotFoundError):
        await service.run_turn("conv-1", user_turn(model="generalv9"), RecordingChannel())


@pytest.mark.asyncio
async def test_request_without_user_prompt_is_rejected(session_factory, make_service) -> None:
    seed_spark(session_factory)
    service = make_service(FakeRegistry())
    request = TurnRequest(
        model="generalv2", messages=[ChatMessage(role="system", content="be brief")]
    )

    with pytest.raises(ValidationError):
        await service.run_turn("conv-1", request, RecordingChannel())


@pytest.mark.asyncio
async def test_forget_cancels_turn_and_drops_context(session_factory, make_service) -> None:
    seed_spark(session_factory)
    done = ScriptedLink([Chunk.start(), Chunk.delta("first"), Chunk.end()])
    hanging = ScriptedLink([Chunk.start(), Chunk.delta("x"), HANG])
    fresh = ScriptedLink([Chunk.start(), Chunk.delta("y"), Chunk.end()])
    service = make_service(FakeRegistry(done, hanging, fresh))

    await service.run_turn("conv-1", user_turn("one"), RecordingChannel())
    channel = RecordingChannel()
    task = asyncio.create_task(service.run_turn("conv-1", user_turn("two"), channel))
    await channel.wait_for("delta")

    assert service.forget("conv-1") is True
    result = await asyncio.wait_for(task, timeout=2)
    assert result.status is TurnStatus.CANCELLED
    assert channel.types[-1] == "cancelled"

    await service.run_turn("conv-1", user_turn("three"), RecordingChannel())
    assert [m.content for m in fresh.sent[0].messages] == ["three"]


@pytest.mark.asyncio
async def test_deleting_conversation_cancels_running_turn(session_factory, make_service) -> None:
    seed_spark(session_factory)
    link = ScriptedLink([Chunk.start(), Chunk.delta("partial"), HANG])
    service = make_service(FakeRegistry(link))
    channel = RecordingChannel()

    task = asyncio.create_task(service.run_turn("conv-1", user_turn(), channel))
    await channel.wait_for("delta")

    assert service.delete_conversation("conv-1") is True
    result = await asyncio.wait_for(task, timeout=2)

    assert channel.messages[-1] == {"type": "cancelled", "content": "Conversation deleted"}
    assert result.status is TurnStatus.CANCELLED
    assert result.record_id is None
    assert link.state is LinkState.CLOSED
    assert link.outcome is LinkOutcome.CANCELLED
    assert link.disconnects == 1
    with session_factory() as db:
        assert get_conversation(db, "conv-1") is None
    assert _records(session_factory, "conv-1") == []


@pytest.mark.asyncio
async def test_deleting_unknown_conversation_reports_false(session_factory, make_service) -> None:
    service = make_service(FakeRegistry())

    assert service.delete_conversation("missing") is False
