"""Tests for in-memory chat sessions and context windows."""

from datetime import datetime

import pytest

from chatrelay.core import ConversationBusyError
from chatrelay.db.repositories import add_history_record, create_conversation
from chatrelay.providers import ChatMessage
from chatrelay.services import CancelToken, ChatSession, ChatSessionStore


def _seed_history(db, conversation_id: str, turns: int) -> None:
    create_conversation(db, conversation_id=conversation_id)
    for index in range(turns):
        add_history_record(
            db,
            conversation_id,
            prompt=f"q{index}",
            content=f"a{index}",
            prompt_at=datetime(2024, 5, 6),
            reply_at=None,
        )
    db.commit()


def test_append_turn_trims_oldest_messages() -> None:
    session = ChatSession(conversation_id="conv-1")
    for index in range(3):
        session.append_turn([ChatMessage(role="user", content=f"q{index}")], f"a{index}", 4)

    assert [m.content for m in session.context] == ["q1", "a1", "q2", "a2"]


def test_append_turn_with_zero_window_keeps_nothing() -> None:
    session = ChatSession(conversation_id="conv-1")
    session.append_turn([ChatMessage(role="user", content="q")], "a", 0)

    assert session.context == []


@pytest.mark.asyncio
async def test_claim_rehydrates_recent_history(session_factory, db_session) -> None:
    _seed_history(db_session, "conv-1", turns=5)
    store = ChatSessionStore(session_factory, max_messages=4)

    async with store.claim("conv-1") as session:
        assert [(m.role, m.content) for m in session.context] == [
            ("user", "q3"),
            ("assistant", "a3"),
            ("user", "q4"),
            ("assistant", "a4"),
        ]
        assert session.loaded


@pytest.mark.asyncio
async def test_odd_window_keeps_latest_messages(session_factory, db_session) -> None:
    _seed_history(db_session, "conv-1", turns=3)
    store = ChatSessionStore(session_factory, max_messages=3)

    async with store.claim("conv-1") as session:
        assert [m.content for m in session.context] == ["a1", "q2", "a2"]


@pytest.mark.asyncio
async def test_claim_on_busy_conversation_is_refused(session_factory) -> None:
    store = ChatSessionStore(session_factory, max_messages=4)

    async with store.claim("conv-1") as session:
        assert session.busy
        with pytest.raises(ConversationBusyError):
            async with store.claim("conv-1"):
                pass

    async with store.claim("conv-1") as session:
        assert session.busy


@pytest.mark.asyncio
async def test_cancel_reaches_running_turn(session_factory) -> None:
    store = ChatSessionStore(session_factory, max_messages=4)
    assert store.cancel("conv-1") is False

    async with store.claim("conv-1") as session:
        session.token = CancelToken()
        assert store.cancel("conv-1", "stop") is True
        assert session.token.reason == "stop"
        assert store.cancel("conv-1") is False

    assert store.get("conv-1").token is None


@pytest.mark.asyncio
async def test_clear_drops_context_without_reloading(session_factory, db_session) -> None:
    _seed_history(db_session, "conv-1", turns=2)
    store = ChatSessionStore(session_factory, max_messages=4)

    async with store.claim("conv-1") as session:
        assert len(session.context) == 4

    assert store.clear("conv-1") is True
    assert store.get("conv-1").context == []
    assert store.clear("conv-1") is False

    async with store.claim("conv-1") as session:
        assert session.context == []


@pytest.mark.asyncio
async def test_clear_and_drop_keep_one_entry_per_conversation(session_factory) -> None:
    store = ChatSessionStore(session_factory, max_messages=4)

    for _ in range(3):
        store.clear("conv-1")
    assert list(store._sessions) == ["conv-1"]

    assert store.drop("conv-1") is True
    assert store._sessions == {}
    assert store.drop("conv-1") is False


@pytest.mark.asyncio
async def test_drop_cancels_running_turn(session_factory) -> None:
    store = ChatSessionStore(session_factory, max_messages=4)

    async with store.claim("conv-1") as session:
        session.token = CancelToken()
        assert store.drop("conv-1") is True
        assert session.token.cancelled
        assert session.token.reason == "Conversation deleted"

    assert store.get("conv-1") is None
