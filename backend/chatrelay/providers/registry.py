"""Provider registry: builds links and signers per provider kind."""

from __future__ import annotations

import httpx

from chatrelay.config import Settings
from chatrelay.core import ValidationError
from chatrelay.providers.base import ProviderKind, ProviderLink
from chatrelay.providers.ollama import OllamaLink
from chatrelay.providers.openai_compat import OpenAICompatLink
from chatrelay.providers.signing import RequestSigner, get_signer
from chatrelay.providers.spark import SparkLink


def resolve_kind(platform: str) -> ProviderKind:
    """Map a stored platform name to a ProviderKind."""
    try:
        return ProviderKind(platform)
    except ValueError as exc:
        raise ValidationError(
            f"Unsupported provider platform '{platform}'",
            details={"supported": [kind.value for kind in ProviderKind]},
        ) from exc


def create_link(
    kind: ProviderKind,
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderLink:
    """Build a fresh, unopened link for one turn."""
    if kind is ProviderKind.XUNFEI:
        return SparkLink(
            handshake_timeout=settings.provider_handshake_timeout_seconds,
            read_timeout=settings.provider_timeout_seconds,
            top_k=settings.spark_top_k,
            auditing=settings.spark_auditing,
            transport=transport,
        )
    if kind in (ProviderKind.OPENAI, ProviderKind.AZURE):
        return OpenAICompatLink(
            kind=kind,
            handshake_timeout=settings.provider_handshake_timeout_seconds,
            read_timeout=settings.provider_timeout_seconds,
            transport=transport,
        )
    if kind is ProviderKind.OLLAMA:
        return OllamaLink(
            handshake_timeout=settings.provider_handshake_timeout_seconds,
            read_timeout=settings.provider_timeout_seconds,
            transport=transport,
        )
    raise ValidationError(f"Unsupported provider '{kind}'")


class ProviderRegistry:
    """Hands out links and signers, with optional per-kind test transports."""

    def __init__(
        self,
        settings: Settings,
        transport_overrides: dict[ProviderKind, httpx.AsyncBaseTransport] | None = None,
    ):
        self.settings = settings
        self._transport_overrides = transport_overrides or {}

    def create_link(self, kind: ProviderKind) -> ProviderLink:
        return create_link(kind, self.settings, transport=self._transport_overrides.get(kind))

    def get_signer(self, kind: ProviderKind) -> RequestSigner:
        return get_signer(kind)
