"""
Session factory shared by the key pool, history writer and relay service.

Services take the factory rather than a session: each unit of work opens
its own short-lived session so a long streaming turn never pins a
connection.
"""

from sqlalchemy.orm import Session, sessionmaker

from chatrelay.db.engine import get_engine

_session_factory: sessionmaker[Session] | None = None


def get_session_factory() -> sessionmaker[Session]:
    """Return the process-wide factory, bound to the cached engine."""
    global _session_factory

    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(),
            autoflush=False,
            # Records handed back to async code must stay readable after commit
            expire_on_commit=False,
        )
    return _session_factory


def reset_session_factory() -> None:
    """Forget the cached factory; call after ``dispose_engine``."""
    global _session_factory
    _session_factory = None
