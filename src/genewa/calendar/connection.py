"""Provider connection handles.

A :class:`ProviderConnection` is the only long-lived state in the engine.  It is
constructed explicitly (and injected into gateways and the retry executor), is
established lazily, and guards initialization with a single in-flight task so
that concurrent callers share one connect attempt.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx
from fastmcp import Client as MCPClient
from fastmcp.client.transports import StdioTransport
from fastmcp.exceptions import ToolError

from genewa.calendar.errors import (
    CalendarCredentialError,
    CalendarError,
    NotFoundError,
    ProtectedResourceError,
    ProviderTransportError,
    ServiceUnavailableError,
    UpstreamError,
    classify_request_error,
)
from genewa.calendar.google_auth import (
    GoogleOAuthClient,
    GoogleOAuthCredentials,
    google_error_message,
)
from genewa.core.metrics import CalendarMetrics

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0


class ProviderConnection(abc.ABC):
    """Lazily established, idempotent connection to a calendar provider."""

    def __init__(
        self,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        metrics: CalendarMetrics | None = None,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._metrics = metrics or CalendarMetrics(self.provider)
        self._ready = False
        self._connect_task: asyncio.Task[None] | None = None
        self.connect_attempts = 0
        self.last_error: str | None = None

    @property
    @abc.abstractmethod
    def provider(self) -> str:
        """Provider identifier (``google`` or ``mcp``)."""
        ...

    @abc.abstractmethod
    async def _open(self) -> None:
        """Establish the underlying session; raise on failure."""
        ...

    @abc.abstractmethod
    async def _close(self) -> None:
        """Release the underlying session."""
        ...

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def connect(self) -> None:
        """Establish the connection unless it is already ready.

        Concurrent callers await the same in-flight attempt.  Raises
        ``ServiceUnavailableError`` (or a non-retryable ``CalendarError`` such
        as a credential problem) when the attempt fails.
        """
        if self.is_ready:
            return
        task = self._connect_task
        if task is None or task.done():
            task = asyncio.create_task(self._establish())
            self._connect_task = task
        await asyncio.shield(task)

    async def ensure_ready(self) -> None:
        await self.connect()

    async def _establish(self) -> None:
        self.connect_attempts += 1
        logger.debug(
            "Connecting to %s calendar provider (attempt %d)", self.provider, self.connect_attempts
        )
        try:
            await asyncio.wait_for(self._open(), timeout=self._connect_timeout)
        except TimeoutError as exc:
            self._connect_failed(f"timed out after {self._connect_timeout:g}s")
            raise ServiceUnavailableError(
                f"Connection to {self.provider} calendar provider timed out "
                f"after {self._connect_timeout:g}s"
            ) from exc
        except CalendarError as exc:
            self._connect_failed(exc.message)
            if not exc.retryable:
                raise
            raise ServiceUnavailableError(
                f"Failed to connect to {self.provider} calendar provider: {exc.message}"
            ) from exc
        except Exception as exc:
            self._connect_failed(str(exc))
            raise ServiceUnavailableError(
                f"Failed to connect to {self.provider} calendar provider: {exc}"
            ) from exc

        self._ready = True
        self.last_error = None
        self._metrics.record_connect(True)
        logger.info("Connected to %s calendar provider", self.provider)

    def _connect_failed(self, reason: str) -> None:
        self._ready = False
        self.last_error = reason
        self._metrics.record_connect(False)
        logger.warning("Connection to %s calendar provider failed: %s", self.provider, reason)

    def mark_unavailable(self, reason: str) -> None:
        """Flag the connection as lost so the next attempt reconnects."""
        if self._ready:
            logger.warning("Lost connection to %s calendar provider: %s", self.provider, reason)
        self._ready = False
        self.last_error = reason

    async def disconnect(self) -> None:
        task = self._connect_task
        self._connect_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._ready = False
        await self._close()

    def status(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "ready": self.is_ready,
            "connectAttempts": self.connect_attempts,
            "lastError": self.last_error,
        }


# ---------------------------------------------------------------------------
# Google Calendar REST
# ---------------------------------------------------------------------------


class GoogleApiConnection(ProviderConnection):
    """Authenticated Google Calendar API v3 session over ``httpx``."""

    def __init__(
        self,
        *,
        credentials_json: str | None = None,
        credentials_file: Path | str | None = None,
        http_client: httpx.AsyncClient | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        metrics: CalendarMetrics | None = None,
    ) -> None:
        super().__init__(connect_timeout=connect_timeout, metrics=metrics)
        self._credentials_json = credentials_json
        self._credentials_file = Path(credentials_file) if credentials_file else None
        self._injected_http_client = http_client
        self._request_timeout = request_timeout
        self._api_base_url = api_base_url.rstrip("/")
        self._http_client: httpx.AsyncClient | None = None
        self._oauth: GoogleOAuthClient | None = None

    @property
    def provider(self) -> str:
        return "google"

    def _load_credentials(self) -> GoogleOAuthCredentials:
        if self._credentials_json:
            return GoogleOAuthCredentials.from_json(self._credentials_json)
        if self._credentials_file is not None:
            return GoogleOAuthCredentials.from_file(self._credentials_file)
        raise CalendarCredentialError(
            "Google credentials are not configured (set credentials_json or credentials_file)"
        )

    async def _open(self) -> None:
        credentials = self._load_credentials()
        if self._http_client is None:
            self._http_client = self._injected_http_client or httpx.AsyncClient(
                timeout=self._request_timeout
            )
        self._oauth = GoogleOAuthClient(credentials, self._http_client)
        await self._oauth.get_access_token(force_refresh=True)

    async def _close(self) -> None:
        client = self._http_client
        self._http_client = None
        self._oauth = None
        if client is not None and client is not self._injected_http_client:
            await client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Mapping[str, Any] | None = None,
        extra_headers: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        """Issue an authenticated request and decode the JSON object response.

        Non-2xx statuses raise via ``classify_request_error``; transport
        failures mark the connection unavailable and raise
        ``ProviderTransportError``.
        """
        await self.ensure_ready()
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self._api_base_url}{normalized_path}"

        response = await self._request_once(
            method, url, params=params, json_body=json_body, extra_headers=extra_headers
        )
        if response.status_code == 401:
            response = await self._request_once(
                method,
                url,
                params=params,
                json_body=json_body,
                extra_headers=extra_headers,
                force_refresh=True,
            )

        if response.status_code < 200 or response.status_code >= 300:
            raise classify_request_error(
                status_code=response.status_code,
                message=google_error_message(response),
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise UpstreamError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None,
        json_body: Mapping[str, Any] | None,
        extra_headers: Mapping[str, str] | None,
        force_refresh: bool = False,
    ) -> httpx.Response:
        if self._oauth is None or self._http_client is None:
            raise ServiceUnavailableError("Google Calendar connection is not established")
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        headers: dict[str, str] = {"Authorization": f"Bearer {access_token}"}
        if extra_headers:
            headers.update(extra_headers)
        try:
            return await self._http_client.request(
                method,
                url,
                params=dict(params) if params is not None else None,
                json=dict(json_body) if json_body is not None else None,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            self.mark_unavailable(str(exc))
            raise ProviderTransportError(f"Google Calendar request failed: {exc}") from exc


def quote_path(value: str) -> str:
    """Percent-encode one path segment (calendar or event id)."""
    return quote(value, safe="")


# ---------------------------------------------------------------------------
# MCP tool server
# ---------------------------------------------------------------------------


_NOT_FOUND_STATUS = re.compile(r"(?:\b(?:status|code|http|error)\b\W*|\()404\b")


def classify_tool_error(message: str) -> CalendarError:
    """Map an MCP tool error message onto the error taxonomy."""
    lowered = message.lower()
    if "not found" in lowered or _NOT_FOUND_STATUS.search(lowered):
        return NotFoundError(message)
    if "cannot delete the primary" in lowered:
        return ProtectedResourceError(message)
    return UpstreamError(message)


class McpToolConnection(ProviderConnection):
    """Cached MCP client session to a calendar tool server.

    Either ``endpoint_url`` (SSE/HTTP server) or ``command`` (stdio server
    spawned as a subprocess) must be given.
    """

    def __init__(
        self,
        endpoint_url: str | None = None,
        *,
        command: str | None = None,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        client_name: str = "genewa-backend",
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        metrics: CalendarMetrics | None = None,
    ) -> None:
        if not endpoint_url and not command:
            raise ValueError("McpToolConnection requires endpoint_url or command")
        super().__init__(connect_timeout=connect_timeout, metrics=metrics)
        self._endpoint_url = endpoint_url
        self._command = command
        self._args = list(args)
        self._env = dict(env) if env is not None else None
        self._client_name = client_name
        self._client_ctx: MCPClient | None = None
        self._client: Any = None

    @property
    def provider(self) -> str:
        return "mcp"

    @property
    def target(self) -> str:
        return self._endpoint_url or " ".join([self._command or "", *self._args]).strip()

    @property
    def is_ready(self) -> bool:
        return self._ready and self._client is not None and self._client_alive()

    def _client_alive(self) -> bool:
        handle = self._client_ctx if hasattr(self._client_ctx, "is_connected") else self._client
        checker = getattr(handle, "is_connected", None)
        if callable(checker):
            try:
                return bool(checker())
            except Exception:
                return False
        return True

    def _transport(self) -> Any:
        if self._endpoint_url:
            return self._endpoint_url
        assert self._command is not None
        return StdioTransport(command=self._command, args=self._args, env=self._env)

    async def _open(self) -> None:
        await self._close()
        client_ctx = MCPClient(self._transport(), name=self._client_name)
        entered = await client_ctx.__aenter__()
        self._client_ctx = client_ctx
        self._client = entered if entered is not None else client_ctx

    async def _close(self) -> None:
        if self._client_ctx is None:
            return
        try:
            await self._client_ctx.__aexit__(None, None, None)
        except Exception:
            logger.debug("Error closing MCP client for %s", self.target, exc_info=True)
        finally:
            self._client_ctx = None
            self._client = None

    async def call_tool(self, tool_name: str, arguments: Mapping[str, Any]) -> Any:
        """Invoke *tool_name* and return the raw ``CallToolResult``.

        Tool-level errors raise a classified ``CalendarError``; any other
        failure marks the connection unavailable and raises
        ``ProviderTransportError``.
        """
        await self.ensure_ready()
        try:
            result = await self._client.call_tool(tool_name, dict(arguments))
        except ToolError as exc:
            raise classify_tool_error(str(exc) or f"Tool '{tool_name}' returned an error.") from exc
        except CalendarError:
            raise
        except Exception as exc:
            self.mark_unavailable(str(exc))
            raise ProviderTransportError(
                f"Failed to call {tool_name} on {self.target}: {exc}"
            ) from exc

        if getattr(result, "is_error", False):
            message = _first_text(result) or f"Tool '{tool_name}' returned an error."
            raise classify_tool_error(message)
        return result


def _first_text(result: Any) -> str:
    content = getattr(result, "content", None) or []
    if not content:
        return ""
    first = content[0]
    return str(getattr(first, "text", "") or first)
