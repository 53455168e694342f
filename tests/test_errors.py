"""Tests for classify_error()."""

import asyncio

import asyncpg
import httpx

from wassist.errors import TenantNotConnectedError, classify_error
from wassist.llm.provider import (
    LLMAuthError,
    LLMBadRequestError,
    LLMEmptyResponseError,
    LLMRateLimitError,
)

FALLBACK = "Maaf, terjadi kesalahan."


# ── Typed LLM exceptions ────────────────────────────────────

class TestLLMExceptions:
    def test_rate_limit(self):
        assert "Rate limited" in classify_error(LLMRateLimitError("429"))

    def test_auth_error(self):
        assert "Authentication" in classify_error(LLMAuthError("invalid key"))

    def test_bad_request(self):
        assert "/clear" in classify_error(LLMBadRequestError("context too long"))

    def test_empty_response(self):
        assert "empty response" in classify_error(LLMEmptyResponseError())


# ── httpx.HTTPStatusError ────────────────────────────────────

def _make_http_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://generativelanguage.googleapis.com/v1beta/models/x:generateContent")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"{status_code} error", request=request, response=response)


class TestHTTPStatusError:
    def test_429(self):
        assert "Rate limited" in classify_error(_make_http_error(429))

    def test_401_403(self):
        assert "Authentication" in classify_error(_make_http_error(401))
        assert "Authentication" in classify_error(_make_http_error(403))

    def test_400(self):
        assert "/clear" in classify_error(_make_http_error(400))

    def test_5xx(self):
        assert "server issues" in classify_error(_make_http_error(500))
        assert "server issues" in classify_error(_make_http_error(503))

    def test_other_status_uses_fallback(self):
        assert classify_error(_make_http_error(404), FALLBACK) == FALLBACK


# ── Network, transport, database ─────────────────────────────

class TestOtherErrors:
    def test_connect_error(self):
        assert "Cannot reach" in classify_error(httpx.ConnectError("refused"))

    def test_timeouts(self):
        assert "timed out" in classify_error(httpx.ReadTimeout("slow"))
        assert "timed out" in classify_error(asyncio.TimeoutError())

    def test_tenant_not_connected(self):
        msg = classify_error(TenantNotConnectedError("t1"))
        assert "not connected" in msg

    def test_database_errors(self):
        assert "busy" in classify_error(asyncpg.InterfaceError("pool closed"))
        assert "Database error" in classify_error(asyncpg.PostgresError("boom"))


# ── Fallback ─────────────────────────────────────────────────

class TestFallback:
    def test_unknown_uses_configured_message(self):
        assert classify_error(RuntimeError("secret internals"), FALLBACK) == FALLBACK

    def test_unknown_without_fallback(self):
        msg = classify_error(KeyError("x"))
        assert "something went wrong" in msg
