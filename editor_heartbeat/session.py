"""Editor session: the boundary between editor callbacks and the heartbeat core.

An :class:`EditorSession` owns one debouncer and one dispatcher for the
lifetime of an editor session. Its ``on_*`` handlers are meant to be bound
directly to editor (or filesystem) events: they never raise, so a failure in
telemetry can never destabilize the host's event loop.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from editor_heartbeat.debouncer import DEFAULT_DEBOUNCE_SECONDS, ActivityDebouncer
from editor_heartbeat.dispatcher import DEFAULT_QUEUE_SIZE, HeartbeatDispatcher
from editor_heartbeat.models import ActivityState, EditorInfo, Emit
from editor_heartbeat.senders import HeartbeatSender, SendError

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["EditorSession"]


class EditorSession:
    """Bind editor notifications to the debounce and dispatch pipeline.

    Attributes:
        editor_info (EditorInfo): Editor and plugin identity.
        sender (HeartbeatSender): Delivery backend.
        debouncer (ActivityDebouncer): The coalescing policy.
        dispatcher (HeartbeatDispatcher): The delivery worker.
        exclude_unknown_project (bool): Ignore activity while no project is known.

    Example:
        >>> session = EditorSession(EditorInfo("vim", "9.0", "editor-heartbeat", "0.1.0"), MockSender())
        >>> session.start()
        >>> session.on_workspace_opened("/repo/MyProj.sln")
        >>> session.on_document_saved("/repo/main.py")
        >>> session.close()
    """

    def __init__(
        self,
        editor_info: EditorInfo,
        sender: HeartbeatSender,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        clock: Callable[[], float] = time.monotonic,
        wallclock: Callable[[], float] = time.time,
        state: Optional[ActivityState] = None,
        exclude_unknown_project: bool = False,
    ) -> None:
        self.editor_info = editor_info
        self.sender = sender
        self.exclude_unknown_project = exclude_unknown_project
        self.debouncer = ActivityDebouncer(
            editor_info,
            debounce_seconds=debounce_seconds,
            clock=clock,
            wallclock=wallclock,
            state=state,
        )
        self.dispatcher = HeartbeatDispatcher(sender, queue_size=queue_size)
        # Observer threads and the main thread may both report activity
        self._lock = threading.Lock()
        self._started = False
        self._closed = False

    def start(self) -> None:
        """Log startup and verify the sender once.

        A sender that fails its check is reported at ERROR level; the session
        keeps running, and individual sends will fail and be dropped.
        """
        if self._started:
            return
        self._started = True
        logger.info("Initializing %s v%s", self.editor_info.plugin_name, self.editor_info.plugin_version)
        try:
            self.sender.check()
        except SendError as e:
            logger.error("Heartbeat sender unavailable: %s", e)
        except Exception as e:
            logger.error("Error initializing heartbeat sender: %s", e, exc_info=True)
        else:
            logger.info(
                "Finished initializing %s v%s (sender: %r)",
                self.editor_info.plugin_name, self.editor_info.plugin_version, self.sender,
            )

    def on_document_opened(self, file: Any) -> None:
        try:
            self._handle_activity(file, False)
        except Exception as e:
            logger.error("on_document_opened: %s", e, exc_info=True)

    def on_document_changed(self, file: Any) -> None:
        try:
            self._handle_activity(file, False)
        except Exception as e:
            logger.error("on_document_changed: %s", e, exc_info=True)

    def on_document_saved(self, file: Any) -> None:
        try:
            self._handle_activity(file, True)
        except Exception as e:
            logger.error("on_document_saved: %s", e, exc_info=True)

    def on_workspace_opened(self, path: Any) -> None:
        try:
            with self._lock:
                self.debouncer.on_workspace_opened(path)
        except Exception as e:
            logger.error("on_workspace_opened: %s", e, exc_info=True)

    def get_project_name(self) -> Optional[str]:
        with self._lock:
            return self.debouncer.get_project_name()

    def _handle_activity(self, file: Any, is_write: bool) -> None:
        if self._closed:
            return
        with self._lock:
            if self.exclude_unknown_project and self.debouncer.get_project_name() is None:
                logger.debug("No project known, ignoring activity on %s", file)
                return
            decision = self.debouncer.record_activity(file, is_write)
            # Enqueue under the lock so queue order matches acceptance order
            if isinstance(decision, Emit):
                self.dispatcher.dispatch(decision.record)

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            stats = self.debouncer.get_statistics()
        stats.update(self.dispatcher.get_statistics())
        return stats

    def close(self, drain: bool = True, timeout: float = 5.0) -> None:
        """End the session: stop the dispatcher and release the sender."""
        if self._closed:
            return
        self._closed = True
        try:
            self.dispatcher.close(drain=drain, timeout=timeout)
        except Exception as e:
            logger.error("Error closing dispatcher: %s", e)
        try:
            self.sender.close()
        except Exception as e:
            logger.error("Error closing sender: %s", e)
        logger.info("Session closed.")

    def __enter__(self) -> EditorSession:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_value: Any, traceback: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<EditorSession editor={self.editor_info.user_agent!r} project={self.debouncer.state.current_project!r}>"
