"""Tests for provider connection handles."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from fastmcp.exceptions import ToolError

from genewa.calendar.connection import (
    GoogleApiConnection,
    McpToolConnection,
    ProviderConnection,
    classify_tool_error,
    quote_path,
)
from genewa.calendar.errors import (
    CalendarCredentialError,
    CalendarRequestError,
    CalendarTokenRefreshError,
    ErrorKind,
    NotFoundError,
    ProtectedResourceError,
    ProviderTransportError,
    ServiceUnavailableError,
    UpstreamError,
)
from genewa.core.metrics import CalendarMetrics
from tests._calendar_fakes import FakeConnection

pytestmark = pytest.mark.unit

FAKE_CREDS = json.dumps(
    {
        "client_id": "test-client-id",
        "client_secret": "test-client-secret",
        "refresh_token": "test-refresh-token",
    }
)


# ---------------------------------------------------------------------------
# ProviderConnection lifecycle
# ---------------------------------------------------------------------------


class SlowConnection(ProviderConnection):
    def __init__(self, delay: float = 0.01, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay
        self.open_calls = 0

    @property
    def provider(self) -> str:
        return "slow"

    async def _open(self) -> None:
        self.open_calls += 1
        await asyncio.sleep(self.delay)

    async def _close(self) -> None:
        return None


class TestProviderConnection:
    async def test_connect_is_lazy_and_idempotent(self, fake_connection):
        assert not fake_connection.is_ready
        await fake_connection.connect()
        await fake_connection.connect()
        assert fake_connection.is_ready
        assert fake_connection.open_calls == 1

    async def test_concurrent_connects_share_one_attempt(self):
        connection = SlowConnection(metrics=CalendarMetrics("slow"))
        await asyncio.gather(*(connection.connect() for _ in range(5)))
        assert connection.open_calls == 1
        assert connection.connect_attempts == 1
        assert connection.is_ready

    async def test_failure_raises_service_unavailable(self):
        connection = FakeConnection(fail_opens=1, metrics=CalendarMetrics("fake"))
        with pytest.raises(ServiceUnavailableError, match="provider offline"):
            await connection.connect()
        assert not connection.is_ready
        assert connection.last_error == "provider offline"

        await connection.connect()
        assert connection.is_ready
        assert connection.last_error is None

    async def test_connect_timeout(self):
        connection = SlowConnection(
            delay=1.0, connect_timeout=0.01, metrics=CalendarMetrics("slow")
        )
        with pytest.raises(ServiceUnavailableError, match="timed out after 0.01s"):
            await connection.connect()

    async def test_non_retryable_error_passes_through(self):
        connection = FakeConnection(
            fail_opens=1,
            open_error=CalendarCredentialError("bad credentials"),
            metrics=CalendarMetrics("fake"),
        )
        with pytest.raises(CalendarCredentialError):
            await connection.connect()

    async def test_mark_unavailable_forces_reconnect(self, fake_connection):
        await fake_connection.connect()
        fake_connection.mark_unavailable("socket closed")
        assert not fake_connection.is_ready
        await fake_connection.ensure_ready()
        assert fake_connection.open_calls == 2

    async def test_disconnect_and_status(self, fake_connection):
        await fake_connection.connect()
        assert fake_connection.status() == {
            "provider": "fake",
            "ready": True,
            "connectAttempts": 1,
            "lastError": None,
        }
        await fake_connection.disconnect()
        assert not fake_connection.is_ready
        assert fake_connection.close_calls == 1


# ---------------------------------------------------------------------------
# Google REST connection
# ---------------------------------------------------------------------------


def _google_transport(handler):
    """Wrap *handler* with a token endpoint; returns (transport, seen_requests)."""
    seen: list[httpx.Request] = []
    tokens = iter(f"token-{n}" for n in range(1, 100))

    def route(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": next(tokens), "expires_in": 3600})
        return handler(request)

    return httpx.MockTransport(route), seen


def _google_connection(handler, **kwargs):
    transport, seen = _google_transport(handler)
    client = httpx.AsyncClient(transport=transport)
    connection = GoogleApiConnection(
        credentials_json=FAKE_CREDS,
        http_client=client,
        metrics=CalendarMetrics("google"),
        **kwargs,
    )
    return connection, seen


class TestGoogleApiConnection:
    async def test_request_sends_bearer_token(self):
        connection, seen = _google_connection(lambda r: httpx.Response(200, json={"items": []}))

        payload = await connection.request("GET", "/users/me/calendarList")

        assert payload == {"items": []}
        api_request = seen[-1]
        assert api_request.url.path == "/calendar/v3/users/me/calendarList"
        assert api_request.headers["Authorization"] == "Bearer token-1"

    async def test_unauthorized_retries_with_fresh_token(self):
        responses = iter([httpx.Response(401, json={"error": {"message": "expired"}})])

        def handler(request):
            return next(responses, httpx.Response(200, json={"ok": True}))

        connection, seen = _google_connection(handler)
        payload = await connection.request("GET", "/colors")

        assert payload == {"ok": True}
        assert seen[-1].headers["Authorization"] == "Bearer token-2"

    async def test_not_found_is_classified(self):
        connection, _ = _google_connection(
            lambda r: httpx.Response(404, json={"error": {"message": "Not Found"}})
        )
        with pytest.raises(NotFoundError, match="Resource not found: Not Found"):
            await connection.request("GET", "/calendars/x/events/y")

    async def test_server_error_is_retryable_request_error(self):
        connection, _ = _google_connection(
            lambda r: httpx.Response(503, json={"error": {"message": "Backend Error"}})
        )
        with pytest.raises(CalendarRequestError) as exc_info:
            await connection.request("GET", "/colors")
        assert exc_info.value.retryable
        assert exc_info.value.status_code == 503

    async def test_empty_body_returns_empty_dict(self):
        connection, _ = _google_connection(lambda r: httpx.Response(204))
        assert await connection.request("DELETE", "/calendars/x") == {}

    async def test_transport_failure_marks_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection reset", request=request)

        connection, _ = _google_connection(handler)
        with pytest.raises(ProviderTransportError, match="connection reset"):
            await connection.request("GET", "/colors")
        assert not connection.is_ready

    async def test_missing_credentials_is_credential_error(self):
        connection = GoogleApiConnection(metrics=CalendarMetrics("google"))
        with pytest.raises(CalendarCredentialError, match="not configured"):
            await connection.connect()

    async def test_token_refresh_rejected_is_not_retryable(self):
        def route(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(route))
        connection = GoogleApiConnection(
            credentials_json=FAKE_CREDS, http_client=client, metrics=CalendarMetrics("google")
        )
        with pytest.raises(CalendarTokenRefreshError) as exc_info:
            await connection.connect()
        assert not exc_info.value.retryable
        assert exc_info.value.kind is ErrorKind.SERVICE_UNAVAILABLE
        assert "invalid_grant" in exc_info.value.message

    def test_quote_path(self):
        assert quote_path("team@group.calendar.google.com") == "team%40group.calendar.google.com"


# ---------------------------------------------------------------------------
# MCP tool connection
# ---------------------------------------------------------------------------


def _mock_mcp_client(call_tool: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=None)
    client.is_connected = MagicMock(return_value=True)
    client.call_tool = call_tool
    return client


class TestMcpToolConnection:
    def test_requires_url_or_command(self):
        with pytest.raises(ValueError, match="endpoint_url or command"):
            McpToolConnection()

    def test_target_for_stdio(self):
        connection = McpToolConnection(command="npx", args=["calendar-mcp"])
        assert connection.target == "npx calendar-mcp"

    async def test_call_tool_returns_raw_result(self):
        result = SimpleNamespace(is_error=False, content=[])
        client = _mock_mcp_client(AsyncMock(return_value=result))
        with patch("genewa.calendar.connection.MCPClient", return_value=client) as factory:
            connection = McpToolConnection("http://localhost:9000/sse")
            assert await connection.call_tool("list-calendars", {}) is result

        factory.assert_called_once_with("http://localhost:9000/sse", name="genewa-backend")
        client.call_tool.assert_awaited_once_with("list-calendars", {})

    async def test_tool_error_is_classified(self):
        client = _mock_mcp_client(AsyncMock(side_effect=ToolError("Event not found: abc")))
        with patch("genewa.calendar.connection.MCPClient", return_value=client):
            connection = McpToolConnection("http://localhost:9000/sse")
            with pytest.raises(NotFoundError):
                await connection.call_tool("get-event", {"eventId": "abc"})
        assert connection.is_ready

    async def test_error_result_is_classified(self):
        result = SimpleNamespace(
            is_error=True, content=[SimpleNamespace(text="Cannot delete the primary calendar")]
        )
        client = _mock_mcp_client(AsyncMock(return_value=result))
        with patch("genewa.calendar.connection.MCPClient", return_value=client):
            connection = McpToolConnection("http://localhost:9000/sse")
            with pytest.raises(ProtectedResourceError):
                await connection.call_tool("delete-calendar", {"calendarId": "primary"})

    async def test_transport_failure_marks_unavailable(self):
        client = _mock_mcp_client(AsyncMock(side_effect=RuntimeError("stream closed")))
        with patch("genewa.calendar.connection.MCPClient", return_value=client):
            connection = McpToolConnection("http://localhost:9000/sse")
            with pytest.raises(ProviderTransportError, match="stream closed"):
                await connection.call_tool("list-events", {})
        assert not connection.is_ready

    async def test_connect_failure_is_service_unavailable(self):
        client = MagicMock()
        client.__aenter__ = AsyncMock(side_effect=OSError("connection refused"))
        with patch("genewa.calendar.connection.MCPClient", return_value=client):
            connection = McpToolConnection("http://localhost:9000/sse")
            with pytest.raises(ServiceUnavailableError, match="connection refused"):
                await connection.connect()


class TestClassifyToolError:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Event not found", NotFoundError),
            ("Request failed with status 404", NotFoundError),
            ("HTTP error (404) from calendar API", NotFoundError),
            ("Invalid event evt-14042", UpstreamError),
            ("Event evt-404 has an invalid recurrence", UpstreamError),
            ("Cannot delete the primary calendar", ProtectedResourceError),
            ("Rate limit exceeded", UpstreamError),
        ],
    )
    def test_classification(self, message, expected):
        assert type(classify_tool_error(message)) is expected
