import asyncio
import gc
from pathlib import Path
from typing import Any

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from chatrelay.config import Settings
from chatrelay.db import enable_sqlite_foreign_keys
from chatrelay.db.repositories import create_api_key, create_chat_model
from chatrelay.providers import (
    ChatMessage,
    Chunk,
    ConnectionTarget,
    ProviderKind,
    ProviderLink,
    ProviderRequest,
    get_signer,
)
from chatrelay.services import ClientChannel, RelayService, TurnRequest
from chatrelay.services.channel import ChannelClosedError

BACKEND_DIR = Path(__file__).resolve().parent.parent

SPARK_URL = "wss://spark-api.xf-yun.com/{version}/chat"
SPARK_SECRET = "app-123|key-456|secret-789"

# Sentinel frame: the link blocks until the turn is cancelled
HANG = object()


@pytest.fixture
def tmp_db_path(tmp_path):
    return tmp_path / "test.db"


def apply_migrations(db_url: str) -> None:
    cfg = Config(str(BACKEND_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(BACKEND_DIR / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


@pytest.fixture
def engine(tmp_db_path):
    db_url = f"sqlite:///{tmp_db_path}"
    apply_migrations(db_url)
    engine = create_engine(
        db_url,
        poolclass=NullPool,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    enable_sqlite_foreign_keys(engine)
    yield engine
    engine.dispose()
    gc.collect()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings(tmp_db_path):
    return Settings(
        database_url=f"sqlite:///{tmp_db_path}",
        chat_context_max_messages=20,
        provider_handshake_timeout_seconds=1.0,
    )


def seed_spark(session_factory, *, keys: int = 1, model: str = "generalv2", **key_kwargs: Any):
    """Insert ``keys`` Spark keys and one model bound to the platform."""
    with session_factory() as db:
        created = [
            create_api_key(
                db,
                "XunFei",
                SPARK_SECRET,
                SPARK_URL,
                name=f"spark-{index}",
                **key_kwargs,
            )
            for index in range(keys)
        ]
        create_chat_model(db, "XunFei", model, name="Spark v2")
    return created


def user_turn(prompt: str = "hi", model: str = "generalv2") -> TurnRequest:
    return TurnRequest(model=model, messages=[ChatMessage(role="user", content=prompt)])


class ScriptedLink(ProviderLink):
    """Link that replays a fixed list of chunks (or raises scripted errors)."""

    kind = ProviderKind.XUNFEI

    def __init__(self, frames: list[Any], *, open_error: Exception | None = None):
        super().__init__()
        self.frames = list(frames)
        self.open_error = open_error
        self.target: ConnectionTarget | None = None
        self.sent: list[ProviderRequest] = []
        self.disconnects = 0

    async def _connect(self, target: ConnectionTarget) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.target = target

    async def _send(self, request: ProviderRequest) -> None:
        self.sent.append(request)

    async def _read_frame(self) -> list[Chunk]:
        await asyncio.sleep(0)
        step = self.frames.pop(0) if self.frames else HANG
        if step is HANG:
            await asyncio.Event().wait()
        if isinstance(step, Exception):
            raise step
        return [step]

    async def _disconnect(self) -> None:
        self.disconnects += 1


class FakeRegistry:
    """Hands out prepared links in order; signers are the real ones."""

    def __init__(self, *links: ProviderLink):
        self.links = list(links)
        self.created: list[ProviderLink] = []

    def create_link(self, kind: ProviderKind) -> ProviderLink:
        link = self.links.pop(0)
        self.created.append(link)
        return link

    def get_signer(self, kind: ProviderKind):
        return get_signer(kind)


class RecordingChannel(ClientChannel):
    """Collects client messages; optionally goes away after ``fail_after`` sends."""

    def __init__(self, fail_after: int | None = None):
        self.messages: list[dict[str, Any]] = []
        self.fail_after = fail_after

    async def send(self, message: dict[str, Any]) -> None:
        if self.fail_after is not None and len(self.messages) >= self.fail_after:
            raise ChannelClosedError("client went away")
        self.messages.append(message)

    @property
    def types(self) -> list[str]:
        return [message["type"] for message in self.messages]

    async def wait_for(self, message_type: str, timeout: float = 2.0) -> None:
        async def _poll() -> None:
            while message_type not in self.types:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def make_service(settings, session_factory):
    def _make(registry, **kwargs: Any) -> RelayService:
        return RelayService(settings, session_factory, registry, **kwargs)

    return _make
