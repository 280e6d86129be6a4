"""API key selection and least-recently-used rotation."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from chatrelay.core import NoAvailableKeyError, get_logger
from chatrelay.core.metrics import metrics
from chatrelay.db.models import ApiKey
from chatrelay.db.repositories import (
    find_least_recently_used_key,
    get_enabled_api_key,
    touch_api_key,
)

logger = get_logger(__name__)


class KeyPool:
    """Hands out provider credentials, rotating through keys of a platform."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._lock = asyncio.Lock()

    async def acquire(
        self,
        platform: str,
        purpose: str = "chat",
        preferred_key_id: int | None = None,
    ) -> ApiKey:
        """
        Pick a key and stamp it as used.

        A model bound to a specific key gets that key while it is enabled
        and matches platform and purpose.
        Otherwise the enabled key with the oldest ``last_used_at`` wins.

        Raises:
            NoAvailableKeyError: If no enabled key matches platform and purpose
        """
        async with self._lock:
            with self._session_factory() as db:
                key: ApiKey | None = None
                if preferred_key_id:
                    key = get_enabled_api_key(db, preferred_key_id, platform, purpose)
                    if key is None:
                        logger.info(
                            "Bound API key unavailable, falling back to rotation",
                            data={"key_id": preferred_key_id},
                        )
                if key is None:
                    key = find_least_recently_used_key(db, platform, purpose, for_update=True)
                if key is None:
                    db.rollback()
                    logger.warning(
                        "No API key available",
                        data={"platform": platform, "purpose": purpose},
                    )
                    raise NoAvailableKeyError(details={"platform": platform, "purpose": purpose})

                used_at = self._clock()
                touched = True
                try:
                    touch_api_key(db, key.id, used_at)
                    db.commit()
                except SQLAlchemyError as exc:
                    db.rollback()
                    touched = False
                    logger.warning(
                        "Failed to record API key usage",
                        data={"key_id": key.id, "error": str(exc)},
                    )

        if touched:
            key.last_used_at = used_at
        metrics.increment("keys_acquired")
        logger.debug("API key acquired", data={"key_id": key.id, "platform": platform})
        return key
