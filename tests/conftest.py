"""Shared test fixtures for idlekeeper."""

from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path

import pytest

from idlekeeper.config import Config


class FakeProcess:
    """Stands in for BackendProcess without spawning anything."""

    def __init__(self) -> None:
        self.start_ok = True
        self.starts = 0
        self.stops = 0
        self.running = False
        self.started_at: datetime | None = None
        self.pid: int | None = None
        # When set, stop() blocks until the gate opens, like a slow SIGTERM
        self.stop_gate: threading.Event | None = None
        self.stopping = threading.Event()

    def start(self) -> bool:
        self.starts += 1
        self.running = self.start_ok
        self.started_at = datetime.now() if self.start_ok else None
        return self.start_ok

    def stop(self, timeout: int = 10) -> bool:
        self.stopping.set()
        if self.stop_gate is not None:
            self.stop_gate.wait(5)
        self.stops += 1
        self.running = False
        self.started_at = None
        return True

    def is_running(self) -> bool:
        return self.running


@pytest.fixture
def fake_process() -> FakeProcess:
    """A backend process double that is not running yet."""
    return FakeProcess()


@pytest.fixture
def make_config(tmp_path: Path):
    """Build a Config rooted in a temporary data directory."""

    def _make(**overrides) -> Config:
        return Config(data_dir=tmp_path, **overrides)

    return _make
