"""Google OAuth refresh-token exchange for the REST binding.

The credential JSON is consumed opaquely. Either the flat
``{client_id, client_secret, refresh_token}`` shape is accepted, or the same
keys nested under ``installed``/``web`` as exported from the Google console.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from genewa.calendar.errors import (
    RETRYABLE_STATUS_CODES,
    CalendarCredentialError,
    CalendarTokenRefreshError,
)
from genewa.calendar.timeutil import utc_now

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

_CREDENTIAL_KEYS = ("client_id", "client_secret", "refresh_token")
_CONSOLE_SECTIONS = ("installed", "web")
_DEFAULT_TOKEN_TTL = timedelta(hours=1)
_EARLY_REFRESH = timedelta(minutes=1)
_MIN_TOKEN_TTL = timedelta(seconds=30)
_MAX_ERROR_LENGTH = 200


class GoogleOAuthCredentials(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, str_strip_whitespace=True)

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @classmethod
    def from_file(cls, path: Path) -> GoogleOAuthCredentials:
        try:
            raw = path.read_text()
        except OSError as exc:
            raise CalendarCredentialError(f"Cannot read credential file {path}: {exc}") from exc
        return cls.from_json(raw)

    @classmethod
    def from_json(cls, raw: str) -> GoogleOAuthCredentials:
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CalendarCredentialError(f"Credential JSON must be valid JSON: {exc.msg}") from exc
        if not isinstance(document, dict):
            raise CalendarCredentialError("Credential JSON must decode to a JSON object")

        values = {key: _lookup(document, key) for key in _CREDENTIAL_KEYS}
        missing = [key for key in _CREDENTIAL_KEYS if values[key] is None]
        if missing:
            raise CalendarCredentialError(
                f"Credential JSON is missing required field(s): {', '.join(missing)}"
            )
        blank = [
            key
            for key in _CREDENTIAL_KEYS
            if not isinstance(values[key], str) or not values[key].strip()
        ]
        if blank:
            raise CalendarCredentialError(
                f"Credential JSON must contain non-empty string field(s): {', '.join(blank)}"
            )
        return cls(**values)

    def refresh_form(self) -> dict[str, str]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
            "grant_type": "refresh_token",
        }


def _lookup(document: dict[str, Any], key: str) -> Any:
    """Find *key* at the top level or inside a console-exported section."""
    sections = [document, *(document.get(name) for name in _CONSOLE_SECTIONS)]
    for section in sections:
        if isinstance(section, dict) and key in section:
            return section[key]
    return None


def _token_ttl(expires_in: Any) -> timedelta:
    if isinstance(expires_in, bool) or not isinstance(expires_in, int | float):
        return _DEFAULT_TOKEN_TTL
    if expires_in <= 0:
        return _DEFAULT_TOKEN_TTL
    return timedelta(seconds=int(expires_in))


def _one_line(text: str) -> str:
    return " ".join(text.split())[:_MAX_ERROR_LENGTH]


def google_error_message(response: httpx.Response) -> str:
    """Short single-line message from a Google API or OAuth error response.

    API errors carry ``{"error": {"message": ...}}``; the token endpoint uses
    ``{"error": "invalid_grant", "error_description": ...}``.
    """
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            if error["message"].strip():
                return _one_line(error["message"])
        if isinstance(error, str) and error.strip():
            description = body.get("error_description")
            if isinstance(description, str) and description.strip():
                return _one_line(f"{error}: {description}")
            return _one_line(error)

    text = response.text.strip()
    return _one_line(text) if text else "Request failed without an error payload"


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at


class GoogleOAuthClient:
    """Exchanges the refresh token for access tokens and caches the result.

    Concurrent callers share one in-flight refresh.  Tokens are renewed a
    minute before Google's stated expiry.
    """

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
        *,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._token_url = token_url
        self._clock = clock
        self._token: AccessToken | None = None
        self._lock = asyncio.Lock()

    @property
    def token(self) -> AccessToken | None:
        return self._token

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        cached = self._token
        if not force_refresh and cached is not None and cached.is_fresh(self._clock()):
            return cached.value

        async with self._lock:
            # Another caller may have refreshed while this one waited.
            if self._token is not cached and self._token is not None:
                return self._token.value
            self._token = await self._exchange()
            return self._token.value

    async def _exchange(self) -> AccessToken:
        try:
            response = await self._http_client.post(
                self._token_url,
                data=self._credentials.refresh_form(),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(
                f"Google OAuth token refresh request failed: {exc}", retryable=True
            ) from exc

        status = response.status_code
        if not 200 <= status < 300:
            raise CalendarTokenRefreshError(
                f"Google OAuth token refresh failed ({status}): {google_error_message(response)}",
                retryable=status in RETRYABLE_STATUS_CODES and status != 401,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc
        if not isinstance(body, dict):
            raise CalendarTokenRefreshError("Google OAuth token response must be a JSON object")

        value = body.get("access_token")
        if not isinstance(value, str) or not value.strip():
            raise CalendarTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        lifetime = max(_token_ttl(body.get("expires_in")) - _EARLY_REFRESH, _MIN_TOKEN_TTL)
        return AccessToken(value=value.strip(), expires_at=self._clock() + lifetime)
