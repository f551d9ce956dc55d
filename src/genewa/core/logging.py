"""Structured logging for the calendar engine.

structlog's ProcessorFormatter sits on the root logger, so plain
``logging.getLogger(__name__)`` call sites come out structured with no
changes.  Console output is ``text`` (colored, for development) or ``json``
(one object per line).

Every record carries the calendar operation in flight (set by the retry
executor through :func:`operation_context`) and the current OTel trace ids.
Credential-looking values are redacted before rendering.

With ``log_root`` set, JSON copies are also written to::

    {log_root}/genewa/{service}.log      application records
    {log_root}/transport/{service}.log   httpx / httpcore / MCP client records
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

from genewa.core.redaction import redact_credential_values

_operation_context: ContextVar[str | None] = ContextVar("calendar_operation", default=None)


def get_operation_context() -> str | None:
    return _operation_context.get()


@contextmanager
def operation_context(name: str) -> Iterator[None]:
    """Tag every record emitted inside the block with ``operation=name``."""
    token = _operation_context.set(name)
    try:
        yield
    finally:
        _operation_context.reset(token)


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def add_operation_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    operation = _operation_context.get()
    if operation is not None:
        event_dict["operation"] = operation
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Attach ``trace_id``/``span_id``; all zeroes outside a recording span."""
    ctx = trace.get_current_span().get_span_context()
    has_trace = bool(ctx and ctx.trace_id)
    event_dict["trace_id"] = format(ctx.trace_id, "032x") if has_trace else "0" * 32
    event_dict["span_id"] = format(ctx.span_id, "016x") if has_trace else "0" * 16
    return event_dict


def redact_credentials(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Scrub tokens and client secrets from the rendered message."""
    event = event_dict.get("event")
    if isinstance(event, str):
        event_dict["event"] = redact_credential_values(event)
    return event_dict


_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
    "mcp.client",
    "fastmcp",
)

_APP_DIR = "genewa"
_TRANSPORT_DIR = "transport"


def _pre_chain(time_fmt: str) -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_operation_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
        redact_credentials,
    ]


def _formatter(renderer: Any, pre_chain: list[Any]) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    handler.setLevel(logging.DEBUG)
    return handler


def _attach_file_logs(root: logging.Logger, log_root: Path, service_name: str) -> None:
    root.addHandler(_json_file_handler(log_root / _APP_DIR / f"{service_name}.log"))
    transport = _json_file_handler(log_root / _TRANSPORT_DIR / f"{service_name}.log")
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).addHandler(transport)


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    service_name: str = "genewa",
) -> None:
    """Install structured logging on the root logger.

    Parameters
    ----------
    level:
        Root log level name, e.g. ``"DEBUG"``.
    fmt:
        ``"text"`` for colored console output or ``"json"`` for JSON lines.
    log_root:
        Directory for JSON log files; ``None`` logs to stderr only.
    service_name:
        File name stem for the log files.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    # Reconfiguration replaces handlers rather than stacking them.
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        _attach_file_logs(root, Path(log_root), service_name)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
