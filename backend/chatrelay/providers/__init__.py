"""Provider links, signers and the registry that builds them."""

from chatrelay.providers.base import (
    ChatMessage,
    Chunk,
    ChunkKind,
    ConnectionTarget,
    EndOfStream,
    LinkOutcome,
    LinkState,
    ProviderKind,
    ProviderLink,
    ProviderRequest,
    Usage,
)
from chatrelay.providers.ollama import OllamaLink
from chatrelay.providers.openai_compat import OpenAICompatLink
from chatrelay.providers.registry import ProviderRegistry, create_link, resolve_kind
from chatrelay.providers.signing import (
    ApiKeyHeaderSigner,
    BearerSigner,
    HmacUrlSigner,
    NoAuthSigner,
    RequestSigner,
    get_signer,
)
from chatrelay.providers.spark import SparkLink

__all__ = [
    "ChatMessage",
    "Chunk",
    "ChunkKind",
    "ConnectionTarget",
    "EndOfStream",
    "LinkOutcome",
    "LinkState",
    "ProviderKind",
    "ProviderLink",
    "ProviderRequest",
    "Usage",
    "OllamaLink",
    "OpenAICompatLink",
    "SparkLink",
    "ProviderRegistry",
    "create_link",
    "resolve_kind",
    "ApiKeyHeaderSigner",
    "BearerSigner",
    "HmacUrlSigner",
    "NoAuthSigner",
    "RequestSigner",
    "get_signer",
]
