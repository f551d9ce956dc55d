"""Shared fixtures for the genewa test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import pytest

from genewa.core.metrics import CalendarMetrics
from tests._calendar_fakes import FIXED_NOW, FakeConnection, FakeGateway, SleepRecorder


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection(metrics=CalendarMetrics("fake"))


@pytest.fixture
def fake_gateway(fake_connection: FakeConnection) -> FakeGateway:
    return FakeGateway(fake_connection)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW
