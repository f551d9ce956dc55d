"""Configuration loading and validation.

Reads ``genewa.toml``, resolves ``${VAR}`` environment references, and returns
a validated :class:`AppConfig`.

Example::

    [genewa]
    service_name = "genewa"

    [logging]
    level = "INFO"
    format = "json"

    [calendar]
    provider = "google"
    timezone = "Europe/Berlin"

    [calendar.retry]
    max_attempts = 3
    base_delay_seconds = 1.0

    [calendar.google]
    credentials_json = "${GOOGLE_CALENDAR_CREDENTIALS}"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

DEFAULT_CONFIG_FILENAME = "genewa.toml"

# Pattern matching ${VAR_NAME}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


class RetrySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)


class ConnectionSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    connect_timeout_seconds: float = Field(default=10.0, gt=0)


class GoogleSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    credentials_json: str | None = None
    credentials_file: str | None = None
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    api_base_url: str = "https://www.googleapis.com/calendar/v3"


class McpSettings(BaseModel):
    """Where the calendar MCP tool server lives (SSE/HTTP url or stdio command)."""

    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    client_name: str = "genewa-backend"

    @model_validator(mode="after")
    def _require_target(self) -> McpSettings:
        if not self.url and not self.command:
            raise ValueError("calendar.mcp requires either url or command")
        return self


class CalendarConfig(BaseModel):
    """Validated [calendar] section."""

    model_config = ConfigDict(extra="forbid")

    provider: Literal["google", "mcp"] = "google"
    default_calendar_id: str = "primary"
    timezone: str = "UTC"
    retry: RetrySettings = Field(default_factory=RetrySettings)
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    google: GoogleSettings = Field(default_factory=GoogleSettings)
    mcp: McpSettings | None = None

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return normalized

    @field_validator("default_calendar_id")
    @classmethod
    def _normalize_calendar_id(cls, value: str) -> str:
        return value.strip() or "primary"

    @model_validator(mode="after")
    def _require_provider_section(self) -> CalendarConfig:
        if self.provider == "mcp" and self.mcp is None:
            raise ValueError("provider 'mcp' requires a [calendar.mcp] section")
        return self


@dataclass
class AppConfig:
    """Top-level configuration."""

    service_name: str = "genewa"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaves are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    logging_section = data.get("logging", {})
    if not isinstance(logging_section, dict):
        raise ConfigError("[logging] must be a table")
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=logging_section.get("log_root"),
    )


def parse_config(data: dict[str, Any]) -> AppConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    app_section = data.get("genewa", {})
    if not isinstance(app_section, dict):
        raise ConfigError("[genewa] must be a table")
    service_name = str(app_section.get("service_name", "genewa")).strip() or "genewa"

    calendar_section = data.get("calendar", {})
    if not isinstance(calendar_section, dict):
        raise ConfigError("[calendar] must be a table")
    try:
        calendar = CalendarConfig.model_validate(calendar_section)
    except ValidationError as exc:
        raise ConfigError(f"Invalid [calendar] section: {exc}") from exc

    return AppConfig(service_name=service_name, logging=_parse_logging(data), calendar=calendar)


def load_config(path: Path) -> AppConfig:
    """Load and validate ``genewa.toml``.

    *path* may point at the file itself or at the directory containing it.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
