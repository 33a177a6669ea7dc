"""Tests for the EditorSession facade."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest

from editor_heartbeat.models import EditorInfo
from editor_heartbeat.senders import MockSender, SendError
from editor_heartbeat.session import EditorSession

if TYPE_CHECKING:
    from pytest import LogCaptureFixture


@pytest.fixture
def session(editor_info: EditorInfo, mock_sender: MockSender, fake_clock, fake_wallclock):
    s = EditorSession(editor_info, mock_sender, clock=fake_clock, wallclock=fake_wallclock)
    s.start()
    yield s
    s.close()


def test_start_is_idempotent(session: EditorSession, caplog: LogCaptureFixture) -> None:
    # start() already ran in the fixture
    session.start()
    assert "Initializing editor-heartbeat v0.1.0" not in caplog.text


def test_start_logs_success(editor_info: EditorInfo, mock_sender: MockSender, caplog: LogCaptureFixture) -> None:
    with caplog.at_level("INFO"):
        with EditorSession(editor_info, mock_sender):
            pass
    assert "Initializing editor-heartbeat v0.1.0" in caplog.text
    assert "Finished initializing editor-heartbeat v0.1.0" in caplog.text


def test_start_logs_sender_unavailable(editor_info: EditorInfo, caplog: LogCaptureFixture) -> None:
    sender = MagicMock()
    sender.check.side_effect = SendError("wakatime-cli not found: wakatime-cli")
    session = EditorSession(editor_info, sender)
    with caplog.at_level("INFO"):
        try:
            session.start()
            session.start()
        finally:
            session.close()

    assert "Initializing editor-heartbeat v0.1.0" in caplog.text
    assert caplog.text.count("Heartbeat sender unavailable") == 1
    assert "Finished initializing" not in caplog.text


def test_start_logs_unexpected_check_error(editor_info: EditorInfo, caplog: LogCaptureFixture) -> None:
    sender = MagicMock()
    sender.check.side_effect = RuntimeError("boom")
    with EditorSession(editor_info, sender):
        pass
    assert "Error initializing heartbeat sender" in caplog.text


def test_events_flow_to_sender(session: EditorSession, mock_sender: MockSender, fake_clock) -> None:
    session.on_workspace_opened("/repo/MyProj.sln")
    session.on_document_opened("/repo/a.txt")
    fake_clock.advance(10)
    session.on_document_changed("/repo/a.txt")
    fake_clock.advance(5)
    session.on_document_saved("/repo/a.txt")
    fake_clock.advance(5)
    session.on_document_opened("/repo/a.txt")
    assert session.dispatcher.flush(timeout=5.0)

    assert [(r.file, r.is_write) for r in mock_sender.sent] == [
        ("/repo/a.txt", False),
        ("/repo/a.txt", True),
    ]
    assert all(r.project == "MyProj" for r in mock_sender.sent)


def test_unknown_project_sends_without_project(session: EditorSession, mock_sender: MockSender) -> None:
    session.on_document_saved("/tmp/scratch.txt")
    assert session.dispatcher.flush(timeout=5.0)
    assert mock_sender.sent[0].project is None


def test_exclude_unknown_project(editor_info: EditorInfo, mock_sender: MockSender) -> None:
    with EditorSession(editor_info, mock_sender, exclude_unknown_project=True) as session:
        session.on_document_saved("/tmp/scratch.txt")
        session.on_workspace_opened("/repo/Known.sln")
        session.on_document_saved("/repo/main.py")
        assert session.dispatcher.flush(timeout=5.0)

    assert [r.file for r in mock_sender.sent] == ["/repo/main.py"]


def test_handlers_never_raise(session: EditorSession, caplog: LogCaptureFixture) -> None:
    with patch.object(session.debouncer, "record_activity", side_effect=RuntimeError("broken")):
        session.on_document_opened("a.txt")
        session.on_document_changed("a.txt")
        session.on_document_saved("a.txt")
    with patch.object(session.debouncer, "on_workspace_opened", side_effect=RuntimeError("broken")):
        session.on_workspace_opened("/repo/X.sln")

    for handler in ("on_document_opened", "on_document_changed", "on_document_saved", "on_workspace_opened"):
        assert f"{handler}: broken" in caplog.text


def test_send_failure_invisible_to_caller(editor_info: EditorInfo, caplog: LogCaptureFixture) -> None:
    sender = MockSender(fail_times=1)
    with EditorSession(editor_info, sender) as session:
        session.on_document_saved("a.txt")
        session.on_document_saved("a.txt")
        assert session.dispatcher.flush(timeout=5.0)

    assert len(sender.sent) == 1
    assert "Failed to send heartbeat for a.txt" in caplog.text


def test_malformed_file_is_ignored(session: EditorSession, mock_sender: MockSender) -> None:
    session.on_document_opened(None)
    session.on_document_saved("")
    assert session.dispatcher.flush(timeout=5.0)
    assert mock_sender.sent == []


def test_empty_workspace_keeps_project(session: EditorSession) -> None:
    session.on_workspace_opened("/repo/MyProj.sln")
    session.on_workspace_opened("")
    assert session.get_project_name() == "MyProj"


def test_close_closes_sender_and_ignores_later_events(
    editor_info: EditorInfo, mock_sender: MockSender
) -> None:
    session = EditorSession(editor_info, mock_sender)
    session.on_document_saved("a.txt")
    session.close()
    session.on_document_saved("b.txt")
    session.close()

    assert mock_sender.closed
    assert [r.file for r in mock_sender.sent] == ["a.txt"]


def test_concurrent_activity_is_serialized(editor_info: EditorInfo, tracing_sender) -> None:
    session = EditorSession(editor_info, tracing_sender)

    def produce(prefix: str) -> None:
        for i in range(25):
            session.on_document_saved(f"{prefix}{i}")

    threads = [threading.Thread(target=produce, args=(p,)) for p in "xyz"]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert session.dispatcher.flush(timeout=10.0)
    session.close()

    assert len(tracing_sender.calls) == 75
    assert tracing_sender.max_active == 1
    assert session.debouncer.emitted == 75


def test_statistics(session: EditorSession) -> None:
    session.on_document_opened("a.txt")
    session.on_document_opened("a.txt")
    assert session.dispatcher.flush(timeout=5.0)

    stats = session.get_statistics()
    assert stats["events_seen"] == 2
    assert stats["emitted"] == 1
    assert stats["suppressed_debounced"] == 1
    assert stats["delivered"] == 1
