"""Repository helpers for provider API keys."""

from sqlalchemy import Select, select, update
from sqlalchemy.orm import Session

from chatrelay.db.models import ApiKey


def create_api_key(
    db: Session,
    platform: str,
    value: str,
    api_url: str,
    *,
    purpose: str = "chat",
    name: str = "",
    proxy_url: str | None = None,
    enabled: bool = True,
    last_used_at: float = 0.0,
) -> ApiKey:
    """Insert a provider credential."""
    api_key = ApiKey(
        platform=platform,
        purpose=purpose,
        name=name,
        value=value,
        api_url=api_url,
        proxy_url=proxy_url,
        enabled=enabled,
        last_used_at=last_used_at,
    )
    db.add(api_key)
    db.commit()
    db.refresh(api_key)
    return api_key


def get_api_key(db: Session, key_id: int) -> ApiKey | None:
    """Fetch a key by id regardless of state."""
    return db.get(ApiKey, key_id)


def get_enabled_api_key(
    db: Session, key_id: int, platform: str, purpose: str
) -> ApiKey | None:
    """Fetch a key by id only if it is enabled for platform+purpose."""
    stmt = select(ApiKey).where(
        ApiKey.id == key_id,
        ApiKey.platform == platform,
        ApiKey.purpose == purpose,
        ApiKey.enabled.is_(True),
    )
    return db.execute(stmt).scalar_one_or_none()


def least_recently_used_key_stmt(
    platform: str, purpose: str, *, for_update: bool = False
) -> Select[tuple[ApiKey]]:
    """Select the enabled key for platform+purpose that was used longest ago.

    Ties (e.g. several never-used keys) go to the lowest id. With
    ``for_update`` concurrent workers wait on the row lock, never skip it.
    """
    stmt = (
        select(ApiKey)
        .where(
            ApiKey.platform == platform,
            ApiKey.purpose == purpose,
            ApiKey.enabled.is_(True),
        )
        .order_by(ApiKey.last_used_at.asc(), ApiKey.id.asc())
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update()
    return stmt


def find_least_recently_used_key(
    db: Session, platform: str, purpose: str, *, for_update: bool = False
) -> ApiKey | None:
    """Return the least recently used enabled key for platform+purpose."""
    stmt = least_recently_used_key_stmt(platform, purpose, for_update=for_update)
    return db.execute(stmt).scalars().first()


def touch_api_key(db: Session, key_id: int, used_at: float) -> None:
    """Stamp ``last_used_at`` with a single UPDATE (caller commits)."""
    db.execute(
        update(ApiKey)
        .where(ApiKey.id == key_id)
        .values(last_used_at=used_at)
        .execution_options(synchronize_session=False)
    )
