"""Activity debouncing policy.

Responsibility:
    Decide, for every raw editor notification, whether it becomes a heartbeat.
    The debouncer never performs I/O and never blocks, so it is safe to call
    from an editor's UI thread. Delivery is the dispatcher's job.

Policy (first match wins):
    1. An empty or non-string file is suppressed.
    2. A non-write event for the same file as the last accepted heartbeat,
       within ``debounce_seconds`` of it, is suppressed.
    3. Anything else is emitted, and the state is updated immediately, before
       delivery happens.

Explicit saves (``is_write=True``) are never debounced.

Key Invariants:
    - ``state.last_heartbeat_time`` is non-decreasing. A clock that jumps
      backwards is clamped to the previous reading.
    - ``state.last_file`` only ever holds files of accepted events.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from editor_heartbeat.models import (
    SUPPRESS_DEBOUNCED,
    SUPPRESS_EMPTY_FILE,
    ActivityState,
    Decision,
    EditorInfo,
    Emit,
    HeartbeatRecord,
    Suppress,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["ActivityDebouncer", "DEFAULT_DEBOUNCE_SECONDS", "project_name_from_path"]

DEFAULT_DEBOUNCE_SECONDS = 60.0


def project_name_from_path(path: Optional[str]) -> Optional[str]:
    """Derive a project name from a workspace/solution path.

    Returns the file name without its extension, or None for an empty path.

    Example:
        >>> project_name_from_path("/repo/MyProj.sln")
        'MyProj'
        >>> project_name_from_path("/home/me/code/website")
        'website'
    """
    if not path or not str(path).strip():
        return None
    # Trailing separators would otherwise yield an empty stem
    trimmed = str(path).strip().rstrip("/\\")
    if trimmed.endswith(":"):
        # Bare drive root such as "C:\"
        return None
    stem = Path(trimmed).stem
    return stem or None


class ActivityDebouncer:
    """Coalesce raw editor activity into heartbeat records.

    Attributes:
        editor_info (EditorInfo): Identity attached to every record.
        debounce_seconds (float): Window during which repeated non-write activity
            on the same file is suppressed.
        state (ActivityState): The owned debounce state.

    Example:
        >>> info = EditorInfo("vim", "9.0", "editor-heartbeat", "0.1.0")
        >>> debouncer = ActivityDebouncer(info)
        >>> isinstance(debouncer.record_activity("a.py", False), Emit)
        True
        >>> debouncer.record_activity("a.py", False)
        Suppress(reason='debounced')
    """

    def __init__(
        self,
        editor_info: EditorInfo,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        wallclock: Callable[[], float] = time.time,
        state: Optional[ActivityState] = None,
    ) -> None:
        """Initialize the debouncer.

        Args:
            editor_info (EditorInfo): Editor and plugin identity.
            debounce_seconds (float): Debounce window in seconds. Must be non-negative.
            clock (Callable[[], float]): Monotonic clock used for the debounce window.
            wallclock (Callable[[], float]): Wall clock used for record timestamps.
            state (Optional[ActivityState]): Pre-existing state, e.g. one shared with a test.

        Raises:
            ValueError: If ``debounce_seconds`` is negative.
        """
        if debounce_seconds < 0:
            raise ValueError(f"debounce_seconds must be non-negative, got {debounce_seconds}")
        self.editor_info = editor_info
        self.debounce_seconds = float(debounce_seconds)
        self.state = state if state is not None else ActivityState()
        self._clock = clock
        self._wallclock = wallclock
        self._plugin = editor_info.user_agent

        self.events_seen = 0
        self.emitted = 0
        self.suppressed_debounced = 0
        self.suppressed_empty = 0

    def record_activity(self, file: Any, is_write: bool) -> Decision:
        """Apply the coalescing policy to one activity notification.

        Never raises for malformed input; an unusable ``file`` is suppressed.

        Args:
            file: The file identifier (path or URI string).
            is_write (bool): True for an explicit save.

        Returns:
            Decision: ``Emit(record)`` when a heartbeat should be dispatched,
            otherwise ``Suppress(reason)``.
        """
        self.events_seen += 1

        if not isinstance(file, str) or not file.strip():
            self.suppressed_empty += 1
            logger.debug("Ignoring activity without a file: %r", file)
            return Suppress(SUPPRESS_EMPTY_FILE)

        is_write = bool(is_write)
        state = self.state
        now = self._clock()
        if state.last_heartbeat_time is not None and now < state.last_heartbeat_time:
            logger.debug(
                "Clock went backwards (%.3f < %.3f), clamping.", now, state.last_heartbeat_time
            )
            now = state.last_heartbeat_time

        if (
            not is_write
            and state.last_file is not None
            and file == state.last_file
            and not self._enough_time_passed(now)
        ):
            self.suppressed_debounced += 1
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("Debounced activity on %s", file)
            return Suppress(SUPPRESS_DEBOUNCED)

        project = self.get_project_name()
        if project is None:
            logger.debug("No project known for %s, sending without project.", file)

        record = HeartbeatRecord(
            file=file,
            is_write=is_write,
            plugin=self._plugin,
            project=project,
            timestamp=self._wallclock(),
        )

        state.last_file = file
        state.last_heartbeat_time = now
        self.emitted += 1
        return Emit(record)

    def _enough_time_passed(self, now: float) -> bool:
        last = self.state.last_heartbeat_time
        if last is None:
            return True
        return now - last >= self.debounce_seconds

    def on_workspace_opened(self, path: Optional[Any]) -> None:
        """Update the project context from a workspace/solution path.

        An empty or missing path, or one without a usable name (such as a
        filesystem root), leaves the previously known project untouched.

        Args:
            path: The workspace path (str or PathLike), or None.
        """
        if path is None:
            return
        raw = str(path)
        if not raw.strip():
            return
        name = project_name_from_path(raw)
        if name is None:
            logger.debug("No project name in workspace path %r, keeping %r", raw, self.state.current_project)
            return
        self.state.last_workspace_path = raw
        self.state.current_project = name
        logger.info("Workspace opened: %s (project: %s)", raw, name)

    def get_project_name(self) -> Optional[str]:
        """Return the current project name.

        Falls back to re-deriving it from the last reported workspace path,
        and returns None if no workspace has ever been reported.
        """
        if self.state.current_project:
            return self.state.current_project
        name = project_name_from_path(self.state.last_workspace_path)
        if name:
            self.state.current_project = name
        return name

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "events_seen": self.events_seen,
            "emitted": self.emitted,
            "suppressed_debounced": self.suppressed_debounced,
            "suppressed_empty": self.suppressed_empty,
            "last_file": self.state.last_file,
            "project": self.state.current_project,
        }

    def __repr__(self) -> str:
        return (
            f"<ActivityDebouncer window={self.debounce_seconds}s "
            f"last_file={self.state.last_file!r} project={self.state.current_project!r}>"
        )
