"""Value types shared by the debouncer, the dispatcher and the senders."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

__all__ = [
    "ActivityState",
    "Decision",
    "EditorInfo",
    "Emit",
    "HeartbeatRecord",
    "Suppress",
    "SUPPRESS_DEBOUNCED",
    "SUPPRESS_EMPTY_FILE",
]

SUPPRESS_EMPTY_FILE = "empty-file"
SUPPRESS_DEBOUNCED = "debounced"


@dataclass(frozen=True)
class EditorInfo:
    """Identity of the host editor and the plugin running inside it.

    Attributes:
        name (str): Editor name (e.g. "VisualStudio").
        version (str): Editor version.
        plugin_name (str): Plugin name reported to the backend.
        plugin_version (str): Plugin version.
    """

    name: str
    version: str
    plugin_name: str
    plugin_version: str

    @property
    def user_agent(self) -> str:
        """Return the identity string attached to every heartbeat.

        Example:
            >>> EditorInfo("vim", "9.0", "editor-heartbeat", "0.1.0").user_agent
            'vim/9.0 editor-heartbeat/0.1.0'
        """
        return f"{self.name}/{self.version} {self.plugin_name}/{self.plugin_version}"


@dataclass(frozen=True)
class HeartbeatRecord:
    """A single accepted activity event, frozen at the moment of acceptance.

    Attributes:
        file (str): The file being reported.
        is_write (bool): True when triggered by an explicit save.
        plugin (str): Editor and plugin identity (see :attr:`EditorInfo.user_agent`).
        project (Optional[str]): Project name, or None when no workspace is known.
        timestamp (float): Unix epoch seconds at which the event was accepted.
    """

    file: str
    is_write: bool
    plugin: str
    project: Optional[str]
    timestamp: float


@dataclass
class ActivityState:
    """Mutable debounce state owned by a single :class:`ActivityDebouncer`.

    ``last_heartbeat_time`` is a reading of the debouncer's monotonic clock,
    not a wall-clock value.
    """

    last_file: Optional[str] = None
    last_heartbeat_time: Optional[float] = None
    current_project: Optional[str] = None
    last_workspace_path: Optional[str] = None


@dataclass(frozen=True)
class Emit:
    record: HeartbeatRecord


@dataclass(frozen=True)
class Suppress:
    reason: str


Decision = Union[Emit, Suppress]
