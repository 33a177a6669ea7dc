from __future__ import annotations

import tempfile
import threading
import time
from pathlib import Path
from typing import Generator, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest

from editor_heartbeat.models import EditorInfo, HeartbeatRecord
from editor_heartbeat.senders import MockSender, SendError


class FakeClock:
    """Manually advanced clock, usable as both monotonic and wall clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def set(self, value: float) -> None:
        self.now = value


class TracingSender:
    """Sender that records call order and detects overlapping sends."""

    def __init__(self, delay: float = 0.0, fail_files: Optional[set] = None) -> None:
        self.delay = delay
        self.fail_files = fail_files or set()
        self.calls: List[HeartbeatRecord] = []
        self.intervals: List[Tuple[float, float]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def check(self) -> None:
        pass

    def send(self, record: HeartbeatRecord) -> None:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls.append(record)
        start = time.monotonic()
        try:
            if self.delay:
                time.sleep(self.delay)
            if record.file in self.fail_files:
                raise SendError(f"boom: {record.file}", returncode=1, stderr="api error")
        finally:
            with self._lock:
                self.active -= 1
                self.intervals.append((start, time.monotonic()))

    def close(self) -> None:
        pass


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock(1000.0)


@pytest.fixture
def fake_wallclock() -> FakeClock:
    return FakeClock(1_700_000_000.0)


@pytest.fixture
def editor_info() -> EditorInfo:
    return EditorInfo(name="vim", version="9.0", plugin_name="editor-heartbeat", plugin_version="0.1.0")


@pytest.fixture
def mock_sender() -> MockSender:
    return MockSender()


@pytest.fixture
def tracing_sender() -> TracingSender:
    return TracingSender()


@pytest.fixture
def make_record():
    """Factory for HeartbeatRecord instances."""
    def _make(file: str = "a.py", is_write: bool = False, project: Optional[str] = "proj",
              timestamp: float = 1_700_000_000.0) -> HeartbeatRecord:
        return HeartbeatRecord(
            file=file, is_write=is_write, plugin="vim/9.0 editor-heartbeat/0.1.0",
            project=project, timestamp=timestamp,
        )
    return _make


@pytest.fixture
def mock_aw_client() -> MagicMock:
    client = MagicMock()
    client.client_hostname = "test-host"
    return client
