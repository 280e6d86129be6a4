"""
Database engine for the relay's record store.

SQLite (the default) and PostgreSQL are supported. Schema changes are
applied with Alembic, never at startup.
"""

from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine

from chatrelay.config import Settings, get_settings
from chatrelay.core import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None


def enable_sqlite_foreign_keys(engine: Engine) -> None:
    """Turn on FK enforcement for every new SQLite connection.

    History rows rely on ON DELETE CASCADE so they never outlive their
    conversation; SQLite ignores foreign keys unless asked.
    """

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _ensure_sqlite_dir(database_url: str) -> None:
    db_dir = Path(database_url.removeprefix("sqlite:///")).parent
    if not db_dir.exists():
        db_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Created database directory", data={"path": str(db_dir)})


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.debug, "pool_pre_ping": True}
    if settings.is_sqlite:
        # Sessions are opened from the event loop and from worker threads
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(pool_size=5, max_overflow=10)
    return options


def get_engine() -> Engine:
    """Return the cached engine, creating it from settings on first use."""
    global _engine

    if _engine is None:
        settings = get_settings()
        if settings.is_sqlite:
            _ensure_sqlite_dir(settings.database_url)
        _engine = create_engine(settings.database_url, **_engine_options(settings))
        if settings.is_sqlite:
            enable_sqlite_foreign_keys(_engine)
        logger.info(
            "Database engine created",
            data={"dialect": _engine.dialect.name, "debug": settings.debug},
        )
    return _engine


def verify_database_connection() -> bool:
    """Run ``SELECT 1``; False if the store is unreachable."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Database connection failed", data={"error": str(exc)})
        return False
    return True


def dispose_engine() -> None:
    """Dispose of the engine and release all connections."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
        logger.info("Database engine disposed")
