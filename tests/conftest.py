"""
Global pytest configuration and fixtures for controller tests.

Provides a controllable clock, temporary snapshot locations and freshly
constructed controller components for each test.
"""

import tempfile
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from bluegreen.audit import LogSink
from bluegreen.config import BlueGreenSettings
from bluegreen.persistence import PersistenceManager
from bluegreen.registry import DeploymentRegistry
from bluegreen.traffic import TrafficController


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def data_file(temp_dir: Path) -> Path:
    return temp_dir / "storage-data.json"


@pytest.fixture
def log_sink(clock: FakeClock) -> LogSink:
    return LogSink(capacity=100, clock=clock)


@pytest.fixture
def traffic(log_sink: LogSink) -> TrafficController:
    return TrafficController(log_sink)


@pytest.fixture
def persistence(data_file: Path, log_sink: LogSink, clock: FakeClock) -> PersistenceManager:
    return PersistenceManager(data_file, log_sink=log_sink, clock=clock)


@pytest.fixture
def registry(traffic: TrafficController, log_sink: LogSink, clock: FakeClock) -> DeploymentRegistry:
    """Registry without persistence, for pure state-machine tests."""
    return DeploymentRegistry(traffic, log_sink, persistence=None, clock=clock)


@pytest.fixture
def settings(data_file: Path) -> BlueGreenSettings:
    return BlueGreenSettings(data_file=data_file, log_format="text")
