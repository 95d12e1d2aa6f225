"""Shared httpx helpers for provider clients.

Translates transport failures and HTTP error responses into the error
taxonomy: network errors, 429 and 5xx are transient; other 4xx responses
are permanent rejections carrying the provider's message verbatim.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from avatarpipe.errors import ProviderRejection, TransientNetworkError

logger = logging.getLogger(__name__)


def error_message(response: httpx.Response) -> str:
    """Extract the provider's error message from a failed response."""
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.reason_phrase}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            message = error.get("message") or error.get("code")
            if message:
                return str(message)
        for key in ("message", "msg", "error"):
            if data.get(key):
                return str(data[key])
    return f"HTTP {response.status_code}: {response.reason_phrase}"


def check_response(response: httpx.Response, provider: str) -> dict[str, Any]:
    """Raise on an error status, otherwise return the decoded JSON body.

    Raises:
        TransientNetworkError: 429, 5xx or a body that is not JSON
        ProviderRejection: any other 4xx
    """
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientNetworkError(
            f"{provider} returned HTTP {response.status_code}: {error_message(response)}",
            provider=provider,
        )
    if response.status_code >= 400:
        raise ProviderRejection(
            error_message(response), provider=provider, status_code=response.status_code
        )
    try:
        data = response.json()
    except ValueError as e:
        raise TransientNetworkError(f"{provider} returned malformed JSON: {e}", provider=provider)
    if not isinstance(data, dict):
        raise TransientNetworkError(f"{provider} returned unexpected payload", provider=provider)
    return data


@asynccontextmanager
async def transport_errors(provider: str) -> AsyncIterator[None]:
    """Re-raise httpx transport failures as TransientNetworkError."""
    try:
        yield
    except httpx.TransportError as e:
        logger.warning(f"{provider} transport error: {e}")
        raise TransientNetworkError(f"{provider} request failed: {e}", provider=provider) from e
