"""Tests for the CLI commands."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from genewa.calendar.service import CalendarService
from genewa.cli import cli
from tests._calendar_fakes import FIXED_NOW, FakeGateway, SleepRecorder, structured

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "genewa.toml"
    path.write_text(
        '[genewa]\nservice_name = "genewa-test"\n\n'
        '[logging]\nlevel = "DEBUG"\nformat = "json"\n\n'
        '[calendar]\ntimezone = "UTC"\n\n'
        '[calendar.google]\ncredentials_json = "{}"\n'
    )
    return path


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def invoke(runner, config_file, gateway):
    """Run the CLI against *gateway* with logging and metrics setup stubbed out."""
    service = CalendarService(gateway, sleep=SleepRecorder(), clock=lambda: FIXED_NOW)

    def _invoke(*args: str):
        with (
            patch("genewa.cli.CalendarService.from_config", return_value=service) as factory,
            patch("genewa.cli.configure_logging") as configure,
            patch("genewa.cli.init_metrics") as init,
        ):
            result = runner.invoke(cli, ["--config", str(config_file), *args])
        _invoke.factory, _invoke.configure, _invoke.init = factory, configure, init
        return result

    return _invoke


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestConfigLoading:
    def test_missing_config_exits_nonzero(self, runner, tmp_path):
        result = runner.invoke(cli, ["--config", str(tmp_path / "absent.toml"), "now"])
        assert result.exit_code == 1
        assert "Configuration error: Config file not found" in result.output

    def test_logging_and_metrics_configured_from_file(self, invoke):
        result = invoke("now")

        assert result.exit_code == 0
        invoke.configure.assert_called_once_with(
            level="DEBUG", fmt="json", log_root=None, service_name="genewa-test"
        )
        invoke.init.assert_called_once_with("genewa-test")
        assert invoke.factory.call_args.args[0].timezone == "UTC"


class TestCommands:
    def test_now(self, invoke, gateway):
        result = invoke("now", "--tz", "Asia/Kolkata")

        assert result.exit_code == 0
        body = json.loads(result.output)
        assert body["success"] is True
        assert body["data"]["local"] == "2024-01-03T15:00:00+05:30"
        assert gateway.calls == []

    def test_events_passes_window(self, invoke, gateway):
        gateway.script("list_events", structured(items=[]))

        result = invoke(
            "events", "--calendar", "work", "--from", "2024-01-01", "--to", "2024-01-02"
        )

        assert result.exit_code == 0
        call = gateway.calls_to("list_events")[0]
        assert call["calendar_id"] == "work"
        assert call["time_range"].duration_minutes == 24 * 60

    def test_failure_exits_nonzero_with_error_kind(self, invoke, gateway):
        result = invoke("events", "--from", "2024-01-02", "--to", "2024-01-01")

        assert result.exit_code == 1
        body = json.loads(result.output)
        assert body == {
            "success": False,
            "error": "InvalidTimeRange",
            "message": "End time must be after start time",
        }

    def test_slots_across_calendars(self, invoke, gateway):
        meeting = {"start": "2024-01-03T10:00:00Z", "end": "2024-01-03T11:00:00Z"}
        gateway.script(
            "query_free_busy",
            structured(calendars={"a": {"busy": [meeting]}, "b": {"busy": []}}),
        )

        result = invoke(
            "slots",
            "--calendar", "a",
            "--calendar", "b",
            "--duration", "30",
            "--from", "2024-01-03T09:00:00Z",
            "--to", "2024-01-03T12:00:00Z",
        )

        assert result.exit_code == 0
        body = json.loads(result.output)
        starts = [slot["start"] for slot in body["data"]["availableSlots"]]
        assert starts == ["2024-01-03T09:00:00Z", "2024-01-03T11:00:00Z"]
        assert gateway.calls_to("query_free_busy")[0]["calendar_ids"] == ["a", "b"]

    def test_slots_requires_window(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "slots"])
        assert result.exit_code == 2
        assert "Missing option '--from'" in result.output

    def test_status_reports_health(self, invoke):
        result = invoke("status")

        assert result.exit_code == 0
        body = json.loads(result.output)
        assert body["message"] == "Calendar provider healthy"
        assert body["data"]["provider"] == "fake"

    def test_search(self, invoke, gateway):
        gateway.script("search_events", structured(items=[]))

        result = invoke("search", "retro")

        assert result.exit_code == 0
        assert json.loads(result.output)["message"] == 'Found 0 event(s) matching "retro"'
