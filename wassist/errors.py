"""Exceptions and user-facing error classification."""

import asyncio
from typing import Optional

import asyncpg
import httpx

from .llm.provider import LLMAuthError, LLMBadRequestError, LLMEmptyResponseError, LLMRateLimitError


class WassistError(Exception):
    """Base class for wassist errors."""


class TenantNotConnectedError(WassistError):
    """A send or download was attempted for a tenant with no live transport.

    Terminal for that attempt: callers must not retry without an explicit
    reconnect.
    """

    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant {tenant_id} not connected")
        self.tenant_id = tenant_id


class TransportError(WassistError):
    """The transport rejected a request or broke its protocol."""


class TransportClosedError(TransportError):
    """Request made on a transport that has been closed."""


_DEFAULT_FALLBACK = "Sorry, something went wrong. Please try again."


def classify_error(e: Exception, fallback: Optional[str] = None) -> str:
    """Classify any exception into a short message suitable for the chat.

    Unknown errors map to ``fallback`` (the configured, localized failure
    message) so the user never sees internals.
    """
    fallback = fallback or _DEFAULT_FALLBACK

    # Typed LLM exceptions
    if isinstance(e, LLMRateLimitError):
        return "Rate limited. Please wait a moment and try again."
    if isinstance(e, LLMAuthError):
        return "Authentication error. Owner may need to refresh credentials."
    if isinstance(e, LLMBadRequestError):
        return "The AI rejected the request. Try /clear and ask again."
    if isinstance(e, LLMEmptyResponseError):
        return "The AI returned an empty response. Please try again."

    # httpx HTTP status errors
    if isinstance(e, httpx.HTTPStatusError):
        code = e.response.status_code
        if code == 429:
            return "Rate limited. Please wait a moment and try again."
        if code in (401, 403):
            return "Authentication error. Owner may need to refresh credentials."
        if code == 400:
            return "The AI rejected the request. Try /clear and ask again."
        if 500 <= code < 600:
            return "The AI provider is having server issues. Please try again later."
        return fallback

    # Transport
    if isinstance(e, TenantNotConnectedError):
        return "WhatsApp is not connected right now. Please try again later."

    # Network / timeout errors
    if isinstance(e, httpx.ConnectError):
        return "Cannot reach the AI provider. Please try again later."
    if isinstance(e, (httpx.ReadTimeout, httpx.WriteTimeout, httpx.PoolTimeout, httpx.ConnectTimeout)):
        return "Request timed out. Please try again."
    if isinstance(e, asyncio.TimeoutError):
        return "Request timed out. Please try again."

    # Database errors
    if isinstance(e, asyncpg.InterfaceError):
        return "Database is busy. Please try again in a moment."
    if isinstance(e, asyncpg.PostgresError):
        return "Database error. Please try again later."

    return fallback
