"""Tests for structured logging module."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from genewa.core.logging import (
    _NOISE_LOGGERS,
    _operation_context,
    add_operation_context,
    add_otel_context,
    configure_logging,
    get_operation_context,
    operation_context,
    redact_credentials,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and operation context between tests."""
    token = _operation_context.set(None)
    yield
    _operation_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()
    structlog.reset_defaults()


# ---------------------------------------------------------------------------
# operation_context
# ---------------------------------------------------------------------------


class TestOperationContext:
    def test_scoped_to_block(self):
        with operation_context("listEvents"):
            assert get_operation_context() == "listEvents"
        assert get_operation_context() is None

    def test_nested_blocks_restore_outer(self):
        with operation_context("searchAndDeleteEvent"):
            with operation_context("deleteEvent"):
                assert get_operation_context() == "deleteEvent"
            assert get_operation_context() == "searchAndDeleteEvent"


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


class TestProcessors:
    def test_operation_injected(self):
        with operation_context("createEvent"):
            result = add_operation_context(None, "info", {"event": "x"})
        assert result["operation"] == "createEvent"

    def test_operation_absent_outside_context(self):
        assert "operation" not in add_operation_context(None, "info", {"event": "x"})

    def test_otel_context_zeroes_without_span(self):
        result = add_otel_context(None, "info", {"event": "x"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_credentials_redacted(self):
        result = redact_credentials(None, "info", {"event": "refresh failed refresh_token=abc123"})
        assert result["event"] == "refresh failed refresh_token=[REDACTED]"

    def test_non_string_event_untouched(self):
        assert redact_credentials(None, "info", {"event": 42}) == {"event": 42}


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_sets_level_and_single_console_handler(self):
        configure_logging(level="DEBUG")
        configure_logging(level="DEBUG")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1

    def test_noise_loggers_suppressed(self):
        configure_logging()
        for name in _NOISE_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_json_console_output(self, capsys):
        configure_logging(level="INFO", fmt="json")

        with operation_context("listCalendars"):
            logging.getLogger("genewa.test").info("hello %s", "world")

        line = capsys.readouterr().err.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "hello world"
        assert record["operation"] == "listCalendars"
        assert record["level"] == "info"
        assert record["logger"] == "genewa.test"

    def test_file_handlers_created(self, tmp_path):
        configure_logging(level="INFO", log_root=tmp_path, service_name="worker")

        logging.getLogger("genewa.test").warning("written to file")
        logging.getLogger("httpx").warning("transport noise")
        for handler in logging.getLogger().handlers:
            handler.flush()
        for handler in logging.getLogger("httpx").handlers:
            handler.flush()

        app_log = tmp_path / "genewa" / "worker.log"
        transport_log = tmp_path / "transport" / "worker.log"
        assert app_log.exists()
        assert transport_log.exists()
        app_events = [json.loads(line)["event"] for line in app_log.read_text().splitlines()]
        assert "written to file" in app_events
        assert "transport noise" in transport_log.read_text()
