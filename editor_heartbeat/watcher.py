"""
Filesystem event source using watchdog.

Responsibility:
    Stand in for an editor when none is wired up: every file written under a
    workspace directory is reported to an :class:`EditorSession` as a save,
    and the workspace itself is reported as the opened project.

Design:
    - **Event-Driven**: Uses a recursive ``watchdog`` observer; no polling.
    - **Settling**: A single save often produces a burst of events
      (create temp file, write, rename over target). A :class:`DebounceTimer`
      collects the paths touched during a burst and reports each one once,
      after ``settle_seconds`` of quiet.
    - **Filtering**: Directory events and paths matching ``exclude`` patterns
      (``fnmatch``, checked against the workspace-relative path and the
      basename) are ignored.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, TYPE_CHECKING, Union

from watchdog.events import FileMovedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

if TYPE_CHECKING:
    from editor_heartbeat.session import EditorSession

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_EXCLUDE = (".git/*", "*.swp", "*~", "__pycache__/*")
MAX_PENDING_PATHS = 1000


class DebounceTimer:
    """Run ``callback`` once a stream of :meth:`schedule` calls has gone quiet.

    One daemon thread is started lazily on the first call and then reused for
    every burst; it sleeps on a condition while no deadline is set.

    Attributes:
        interval (float): Quiet time in seconds before the callback runs.
        callback (Callable[[], None]): Called on the timer thread, never concurrently.
    """

    __slots__ = ('interval', 'callback', '_condition', '_deadline', '_stopped', '_thread')

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self._condition = threading.Condition()
        self._deadline: Optional[float] = None
        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    @property
    def pending(self) -> bool:
        with self._condition:
            return self._deadline is not None

    def schedule(self) -> None:
        """Arm the timer, pushing an armed deadline back by ``interval``."""
        self._arm(time.monotonic() + self.interval)

    def trigger_now(self) -> None:
        """Run the callback as soon as the timer thread wakes up."""
        self._arm(0.0)

    def _arm(self, deadline: float) -> None:
        with self._condition:
            if self._stopped:
                return
            self._deadline = deadline
            if self._thread is None:
                thread = threading.Thread(target=self._run, name="DebounceTimer", daemon=True)
                try:
                    thread.start()
                except RuntimeError:
                    self._deadline = None
                    logger.error("Failed to start DebounceTimer thread", exc_info=True)
                    return
                self._thread = thread
            self._condition.notify()

    def stop(self, timeout: float = 2.0) -> None:
        """Disarm the timer and end its thread. A pending callback is dropped."""
        with self._condition:
            self._stopped = True
            self._deadline = None
            thread = self._thread
            self._condition.notify_all()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _run(self) -> None:
        with self._condition:
            while not self._stopped:
                if self._deadline is None:
                    self._condition.wait()
                    continue
                remaining = self._deadline - time.monotonic()
                if remaining > 0:
                    self._condition.wait(remaining)
                    continue
                self._deadline = None
                self._condition.release()
                try:
                    self.callback()
                except Exception:
                    logger.error("Error in debounce callback", exc_info=True)
                finally:
                    self._condition.acquire()
            self._thread = None

    def __repr__(self) -> str:
        return f"<DebounceTimer interval={self.interval} pending={self._deadline is not None}>"


class WorkspaceEventHandler(FileSystemEventHandler):
    """Translate watchdog events into session saves.

    Attributes:
        root (Path): Absolute workspace directory.
        session (EditorSession): Receiver of ``on_document_saved`` calls.
        exclude (List[str]): fnmatch patterns of ignored paths.
    """

    def __init__(
        self,
        root: Path,
        session: EditorSession,
        settle_seconds: float = 1.0,
        exclude: Optional[Iterable[str]] = None,
    ) -> None:
        self.root = root.absolute()
        self.session = session
        self.exclude: List[str] = list(DEFAULT_EXCLUDE if exclude is None else exclude)
        self._lock = threading.Lock()
        self._pending: List[str] = []
        self._pending_set: Set[str] = set()
        self._stopped = False
        self._timer = DebounceTimer(settle_seconds, self._on_settled)

        self.events_detected = 0
        self.events_ignored = 0
        self.saves_reported = 0

    def is_excluded(self, file_path: str) -> bool:
        """Return True if ``file_path`` matches one of the exclude patterns."""
        try:
            rel = os.path.relpath(file_path, str(self.root))
        except ValueError:
            # Different drive on Windows
            rel = file_path
        rel = rel.replace(os.sep, "/")
        name = os.path.basename(file_path)
        for pattern in self.exclude:
            if fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(name, pattern):
                return True
            # "dir/*" also excludes anything nested under dir
            if pattern.endswith("/*") and "/" + pattern[:-2] + "/" in "/" + rel:
                return True
        return False

    def _process_event(self, event: FileSystemEvent) -> None:
        if self._stopped or event.is_directory:
            return

        file_path = event.src_path
        if isinstance(event, FileMovedEvent):
            file_path = event.dest_path
        if isinstance(file_path, bytes):
            file_path = os.fsdecode(file_path)

        self.events_detected += 1
        if self.is_excluded(file_path):
            self.events_ignored += 1
            return

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Processing event: %s on %s", event.event_type, file_path)

        with self._lock:
            if file_path not in self._pending_set:
                self._pending.append(file_path)
                self._pending_set.add(file_path)
            if len(self._pending) >= MAX_PENDING_PATHS:
                self._timer.trigger_now()
            else:
                self._timer.schedule()

    def _on_settled(self) -> None:
        """Report every path touched during the last burst, in first-touch order."""
        with self._lock:
            paths = self._pending
            self._pending = []
            self._pending_set = set()
        if self._stopped:
            return
        for path in paths:
            self.saves_reported += 1
            self.session.on_document_saved(path)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_created(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Only the destination matters: atomic saves rename a temp file over the target
        self._process_event(event)

    def stop(self) -> None:
        self._stopped = True
        self._timer.stop()

    def __repr__(self) -> str:
        return f"<WorkspaceEventHandler root={self.root}>"


class WorkspaceWatcher:
    """Orchestrate the watchdog observer for one workspace directory.

    Example:
        >>> watcher = WorkspaceWatcher("~/code/website", session)
        >>> watcher.start()
        >>> # ...
        >>> watcher.stop()
    """

    def __init__(
        self,
        path: Union[str, Path],
        session: EditorSession,
        settle_seconds: float = 1.0,
        exclude: Optional[Iterable[str]] = None,
    ) -> None:
        self.path = Path(path).expanduser().absolute()
        self.session = session
        self.handler = WorkspaceEventHandler(
            self.path, session, settle_seconds=settle_seconds, exclude=exclude
        )
        self._observer: Optional[Observer] = None

    def start(self) -> None:
        """Report the workspace and start the observer.

        Raises:
            FileNotFoundError: If the workspace directory does not exist.
            RuntimeError: If the observer fails to start.
        """
        logger.info("Starting watcher on path: %s", self.path)
        if not self.path.is_dir():
            raise FileNotFoundError(f"Workspace directory not found: {self.path}")

        self.session.on_workspace_opened(str(self.path))

        observer = Observer()
        try:
            observer.schedule(self.handler, str(self.path), recursive=True)
            observer.start()
        except OSError as e:
            raise RuntimeError(f"Failed to start observer (check inotify limits?): {e}") from e
        self._observer = observer
        logger.info("Observer started (%s)", type(observer).__name__)

    def stop(self) -> None:
        """Stop the observer and drop any unsettled events."""
        self.handler.stop()
        if self._observer is not None:
            try:
                if self._observer.is_alive():
                    self._observer.stop()
                    self._observer.join(timeout=5.0)
                    if self._observer.is_alive():
                        logger.warning("Observer thread did not terminate within timeout.")
            except Exception as e:
                logger.error("Error stopping observer: %s", e)
            self._observer = None
        logger.info("Watcher stopped.")

    def is_alive(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def __repr__(self) -> str:
        return f"<WorkspaceWatcher path={self.path} alive={self.is_alive()}>"
