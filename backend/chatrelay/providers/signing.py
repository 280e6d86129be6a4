"""
Request signing for provider connections.

Turns a key's raw target URL and stored secret into the concrete
connection parameters a link needs. Signers are pure: the only input
besides their arguments is the clock, which callers may pin via ``now``.
"""

import base64
import hashlib
import hmac
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from email.utils import format_datetime
from urllib.parse import urlencode, urlsplit

from chatrelay.core import MalformedCredentialError
from chatrelay.providers.base import ConnectionTarget, ProviderKind


def expand_target(raw_target: str, params: dict[str, str] | None = None) -> str:
    """Substitute ``{name}`` placeholders in a raw target URL."""
    url = raw_target
    for name, value in (params or {}).items():
        url = url.replace("{" + name + "}", str(value))
    return url


class RequestSigner(ABC):
    """Produces a ConnectionTarget from a raw target and a secret."""

    @abstractmethod
    def sign(
        self,
        raw_target: str,
        secret: str,
        params: dict[str, str] | None = None,
        *,
        proxy: str | None = None,
        now: datetime | None = None,
    ) -> ConnectionTarget:
        ...


class NoAuthSigner(RequestSigner):
    """Local providers that need no credentials."""

    def sign(self, raw_target, secret, params=None, *, proxy=None, now=None):
        return ConnectionTarget(url=expand_target(raw_target, params), proxy=proxy or None)


class BearerSigner(RequestSigner):
    """``Authorization: Bearer <secret>`` header."""

    def sign(self, raw_target, secret, params=None, *, proxy=None, now=None):
        if not secret or not secret.strip():
            raise MalformedCredentialError("API key is empty")
        return ConnectionTarget(
            url=expand_target(raw_target, params),
            headers={"Authorization": f"Bearer {secret.strip()}"},
            proxy=proxy or None,
        )


class ApiKeyHeaderSigner(RequestSigner):
    """Secret sent in a dedicated header (Azure uses ``api-key``)."""

    def __init__(self, header_name: str = "api-key"):
        self.header_name = header_name

    def sign(self, raw_target, secret, params=None, *, proxy=None, now=None):
        if not secret or not secret.strip():
            raise MalformedCredentialError("API key is empty")
        return ConnectionTarget(
            url=expand_target(raw_target, params),
            headers={self.header_name: secret.strip()},
            proxy=proxy or None,
        )


class HmacUrlSigner(RequestSigner):
    """
    HMAC-SHA256 signature carried in the URL query (XunFei Spark).

    The stored secret is ``app_id|api_key|api_secret``; ``:`` is accepted
    as the delimiter when no ``|`` is present. The request line is always
    ``GET <path> HTTP/1.1`` since the connection is a websocket upgrade.
    """

    part_count = 3

    def split_secret(self, secret: str) -> tuple[str, str, str]:
        delimiter = "|" if "|" in secret else ":"
        parts = [part.strip() for part in secret.split(delimiter)]
        if len(parts) != self.part_count:
            raise MalformedCredentialError(
                "API key must have the form app_id|api_key|api_secret",
                details={"parts": len(parts)},
            )
        app_id, api_key, api_secret = parts
        return app_id, api_key, api_secret

    def sign(self, raw_target, secret, params=None, *, proxy=None, now=None):
        app_id, api_key, api_secret = self.split_secret(secret or "")

        url = expand_target(raw_target, params)
        parsed = urlsplit(url)
        host = parsed.netloc
        path = parsed.path or "/"

        moment = now or datetime.now(UTC)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        date = format_datetime(moment.astimezone(UTC), usegmt=True)

        canonical = f"host: {host}\ndate: {date}\nGET {path} HTTP/1.1"
        digest = hmac.new(
            api_secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256
        ).digest()
        signature = base64.b64encode(digest).decode("ascii")

        authorization_origin = (
            f'hmac username="{api_key}", algorithm="hmac-sha256", '
            f'headers="host date request-line", signature="{signature}"'
        )
        authorization = base64.b64encode(authorization_origin.encode("utf-8")).decode("ascii")

        query = urlencode({"host": host, "date": date, "authorization": authorization})
        separator = "&" if parsed.query else "?"
        return ConnectionTarget(
            url=f"{url}{separator}{query}",
            credentials={"app_id": app_id},
            proxy=proxy or None,
        )


_SIGNERS: dict[ProviderKind, RequestSigner] = {
    ProviderKind.XUNFEI: HmacUrlSigner(),
    ProviderKind.OPENAI: BearerSigner(),
    ProviderKind.AZURE: ApiKeyHeaderSigner(),
    ProviderKind.OLLAMA: NoAuthSigner(),
}


def get_signer(kind: ProviderKind) -> RequestSigner:
    """Return the signer for a provider kind."""
    return _SIGNERS[ProviderKind(kind)]
