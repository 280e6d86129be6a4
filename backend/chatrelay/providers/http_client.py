"""
Shared HTTP client helpers for provider links.

Provides consistent timeouts and error mapping so links raise stable
AppError instances without leaking stack traces.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from chatrelay.core import HandshakeFailedError, request_id_ctx


def create_http_client(
    timeout_seconds: float,
    connect_timeout: float,
    proxy: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """
    Build an AsyncClient for a single provider connection.

    Args:
        timeout_seconds: Read/write timeout while streaming.
        connect_timeout: Timeout for establishing the connection.
        proxy: Optional outbound proxy URL from the API key.
        transport: Optional transport (used by tests with MockTransport).
    """
    timeout = httpx.Timeout(timeout_seconds, connect=connect_timeout)
    headers: dict[str, str] = {}
    request_id = request_id_ctx.get()
    if request_id:
        headers["X-Request-ID"] = request_id
    return httpx.AsyncClient(
        timeout=timeout,
        headers=headers,
        proxy=proxy,
        transport=transport,
    )


async def open_stream(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    handshake_timeout: float,
    **kwargs: Any,
) -> httpx.Response:
    """
    Send a request and return the response with its body still streaming.

    The wait for response headers is bounded by ``handshake_timeout``; a
    non-2xx status is reported as a handshake failure.
    """
    request = client.build_request(method, url, **kwargs)
    try:
        response = await asyncio.wait_for(
            client.send(request, stream=True), timeout=handshake_timeout
        )
    except TimeoutError as exc:
        raise HandshakeFailedError(
            "Timed out waiting for the provider to respond",
            details={"timeout": handshake_timeout},
        ) from exc
    except httpx.HTTPError as exc:
        raise HandshakeFailedError(
            "Could not connect to the provider", details={"reason": str(exc)}
        ) from exc

    if response.status_code >= 400:
        try:
            await response.aread()
            details = _safe_error_details(response)
        finally:
            await response.aclose()
        raise HandshakeFailedError("Provider rejected the request", details=details)
    return response


def _safe_error_details(response: httpx.Response) -> dict[str, Any]:
    """Return a small, non-sensitive error payload for debugging."""
    return {
        "status": response.status_code,
        "body": response.text[:300] if response.text else "",
    }
