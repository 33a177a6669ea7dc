"""Tests for the activity debouncing policy."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, List

import pytest

from editor_heartbeat.debouncer import ActivityDebouncer, project_name_from_path
from editor_heartbeat.models import (
    SUPPRESS_DEBOUNCED,
    SUPPRESS_EMPTY_FILE,
    ActivityState,
    EditorInfo,
    Emit,
    HeartbeatRecord,
    Suppress,
)

if TYPE_CHECKING:
    from pytest import LogCaptureFixture


@pytest.fixture
def debouncer(editor_info: EditorInfo, fake_clock, fake_wallclock) -> ActivityDebouncer:
    return ActivityDebouncer(editor_info, clock=fake_clock, wallclock=fake_wallclock)


def test_first_activity_is_emitted(debouncer: ActivityDebouncer) -> None:
    decision = debouncer.record_activity("/repo/a.py", False)

    assert isinstance(decision, Emit)
    record = decision.record
    assert record.file == "/repo/a.py"
    assert record.is_write is False
    assert record.plugin == "vim/9.0 editor-heartbeat/0.1.0"
    assert record.project is None
    assert record.timestamp == 1_700_000_000.0


def test_emit_updates_state(debouncer: ActivityDebouncer, fake_clock) -> None:
    debouncer.record_activity("/repo/a.py", False)

    assert debouncer.state.last_file == "/repo/a.py"
    assert debouncer.state.last_heartbeat_time == fake_clock.now


def test_repeated_focus_within_window_is_suppressed(debouncer: ActivityDebouncer, fake_clock) -> None:
    assert isinstance(debouncer.record_activity("a.txt", False), Emit)

    for _ in range(5):
        fake_clock.advance(10)
        assert debouncer.record_activity("a.txt", False) == Suppress(SUPPRESS_DEBOUNCED)

    assert debouncer.suppressed_debounced == 5


def test_suppressed_event_does_not_refresh_window(debouncer: ActivityDebouncer, fake_clock) -> None:
    debouncer.record_activity("a.txt", False)
    fake_clock.advance(59)
    assert isinstance(debouncer.record_activity("a.txt", False), Suppress)
    fake_clock.advance(1)
    # 60s after the accepted heartbeat, not after the suppressed one
    assert isinstance(debouncer.record_activity("a.txt", False), Emit)


def test_activity_after_window_is_emitted(debouncer: ActivityDebouncer, fake_clock) -> None:
    debouncer.record_activity("a.txt", False)
    fake_clock.advance(60.5)
    assert isinstance(debouncer.record_activity("a.txt", False), Emit)


def test_different_file_is_emitted_immediately(debouncer: ActivityDebouncer, fake_clock) -> None:
    debouncer.record_activity("a.txt", False)
    fake_clock.advance(1)
    decision = debouncer.record_activity("b.txt", False)
    assert isinstance(decision, Emit)
    assert debouncer.state.last_file == "b.txt"


def test_switching_back_is_emitted(debouncer: ActivityDebouncer, fake_clock) -> None:
    debouncer.record_activity("a.txt", False)
    fake_clock.advance(1)
    debouncer.record_activity("b.txt", False)
    fake_clock.advance(1)
    assert isinstance(debouncer.record_activity("a.txt", False), Emit)


def test_saves_are_never_suppressed(debouncer: ActivityDebouncer, fake_clock) -> None:
    for _ in range(10):
        assert isinstance(debouncer.record_activity("a.txt", True), Emit)
        fake_clock.advance(0.1)
    assert debouncer.emitted == 10
    assert debouncer.suppressed_debounced == 0


@pytest.mark.parametrize("bad_file", [None, "", "   ", 42, b"a.txt"])
def test_empty_or_malformed_file_is_suppressed(debouncer: ActivityDebouncer, bad_file) -> None:
    assert debouncer.record_activity(bad_file, False) == Suppress(SUPPRESS_EMPTY_FILE)
    assert debouncer.record_activity(bad_file, True) == Suppress(SUPPRESS_EMPTY_FILE)
    assert debouncer.state.last_file is None
    assert debouncer.state.last_heartbeat_time is None


def test_documented_scenario(debouncer: ActivityDebouncer, fake_clock) -> None:
    """open@0, open@10, save@15, open@20 -> only t=0 and the save are emitted."""
    start = fake_clock.now
    events = [(0, False), (10, False), (15, True), (20, False)]
    emitted: List[HeartbeatRecord] = []
    emitted_at: List[float] = []

    for offset, is_write in events:
        fake_clock.set(start + offset)
        decision = debouncer.record_activity("a.txt", is_write)
        if isinstance(decision, Emit):
            emitted.append(decision.record)
            emitted_at.append(offset)

    assert emitted_at == [0, 15]
    assert [r.is_write for r in emitted] == [False, True]


def test_save_refreshes_window(debouncer: ActivityDebouncer, fake_clock) -> None:
    debouncer.record_activity("a.txt", False)
    fake_clock.advance(50)
    debouncer.record_activity("a.txt", True)
    fake_clock.advance(50)
    # 100s after the first open but only 50s after the save
    assert isinstance(debouncer.record_activity("a.txt", False), Suppress)


def test_clock_going_backwards_is_clamped(debouncer: ActivityDebouncer, fake_clock) -> None:
    debouncer.record_activity("a.txt", False)
    recorded = debouncer.state.last_heartbeat_time
    fake_clock.advance(-3600)

    assert isinstance(debouncer.record_activity("a.txt", False), Suppress)
    assert isinstance(debouncer.record_activity("b.txt", False), Emit)
    assert debouncer.state.last_heartbeat_time == recorded


def test_custom_window(editor_info: EditorInfo, fake_clock) -> None:
    debouncer = ActivityDebouncer(editor_info, debounce_seconds=5, clock=fake_clock)
    debouncer.record_activity("a.txt", False)
    fake_clock.advance(5)
    assert isinstance(debouncer.record_activity("a.txt", False), Emit)


def test_zero_window_never_debounces(editor_info: EditorInfo, fake_clock) -> None:
    debouncer = ActivityDebouncer(editor_info, debounce_seconds=0, clock=fake_clock)
    assert isinstance(debouncer.record_activity("a.txt", False), Emit)
    assert isinstance(debouncer.record_activity("a.txt", False), Emit)


def test_negative_window_rejected(editor_info: EditorInfo) -> None:
    with pytest.raises(ValueError, match="debounce_seconds"):
        ActivityDebouncer(editor_info, debounce_seconds=-1)


def test_injected_state_is_used(editor_info: EditorInfo, fake_clock) -> None:
    state = ActivityState(last_file="a.txt", last_heartbeat_time=fake_clock.now - 10, current_project="p")
    debouncer = ActivityDebouncer(editor_info, clock=fake_clock, state=state)

    assert debouncer.state is state
    assert isinstance(debouncer.record_activity("a.txt", False), Suppress)
    decision = debouncer.record_activity("b.txt", False)
    assert isinstance(decision, Emit)
    assert decision.record.project == "p"


def test_records_are_frozen(debouncer: ActivityDebouncer) -> None:
    decision = debouncer.record_activity("a.txt", True)
    assert isinstance(decision, Emit)
    with pytest.raises(AttributeError):
        decision.record.file = "other"  # type: ignore[misc]


def test_record_snapshots_project(debouncer: ActivityDebouncer) -> None:
    debouncer.on_workspace_opened("/repo/First.sln")
    first = debouncer.record_activity("a.txt", True)
    debouncer.on_workspace_opened("/repo/Second.sln")
    second = debouncer.record_activity("a.txt", True)

    assert isinstance(first, Emit) and isinstance(second, Emit)
    assert first.record.project == "First"
    assert second.record.project == "Second"


def test_workspace_opened_sets_project(debouncer: ActivityDebouncer) -> None:
    debouncer.on_workspace_opened("/repo/MyProj.sln")
    assert debouncer.get_project_name() == "MyProj"


def test_workspace_opened_accepts_pathlike(debouncer: ActivityDebouncer) -> None:
    debouncer.on_workspace_opened(Path("/repo/MyProj.sln"))
    assert debouncer.get_project_name() == "MyProj"


@pytest.mark.parametrize("empty", ["", "   ", None, "/", "\\", "C:\\", "//"])
def test_empty_workspace_keeps_previous_project(debouncer: ActivityDebouncer, empty) -> None:
    debouncer.on_workspace_opened("/repo/MyProj.sln")
    debouncer.on_workspace_opened(empty)
    assert debouncer.get_project_name() == "MyProj"
    assert debouncer.state.last_workspace_path == "/repo/MyProj.sln"


def test_project_unknown_without_workspace(debouncer: ActivityDebouncer) -> None:
    assert debouncer.get_project_name() is None


def test_project_rederived_from_workspace_path(debouncer: ActivityDebouncer) -> None:
    debouncer.state.last_workspace_path = "/repo/Cached.sln"
    debouncer.state.current_project = None

    assert debouncer.get_project_name() == "Cached"
    assert debouncer.state.current_project == "Cached"


def test_missing_project_logged_at_debug(debouncer: ActivityDebouncer, caplog: LogCaptureFixture) -> None:
    with caplog.at_level(logging.DEBUG, logger="editor_heartbeat.debouncer"):
        decision = debouncer.record_activity("a.txt", False)
    assert isinstance(decision, Emit)
    assert "No project known" in caplog.text


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/repo/MyProj.sln", "MyProj"),
        ("/home/me/code/website", "website"),
        ("/home/me/code/website/", "website"),
        ("archive.tar.gz", "archive.tar"),
        ("", None),
        (None, None),
        ("/", None),
        ("C:\\", None),
    ],
)
def test_project_name_from_path(path, expected) -> None:
    assert project_name_from_path(path) == expected


def test_statistics(debouncer: ActivityDebouncer) -> None:
    debouncer.record_activity("a.txt", False)
    debouncer.record_activity("a.txt", False)
    debouncer.record_activity("", False)

    stats = debouncer.get_statistics()
    assert stats["events_seen"] == 3
    assert stats["emitted"] == 1
    assert stats["suppressed_debounced"] == 1
    assert stats["suppressed_empty"] == 1
    assert stats["last_file"] == "a.txt"
