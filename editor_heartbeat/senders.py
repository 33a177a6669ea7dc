"""Heartbeat senders.

A sender delivers one :class:`~editor_heartbeat.models.HeartbeatRecord` to a
telemetry backend and reports failure by raising :class:`SendError`. Senders
are only ever called from the dispatcher's worker thread, one call at a time.

Available senders:
    * :class:`WakaTimeCliSender`: spawns ``wakatime-cli`` once per heartbeat.
    * :class:`ActivityWatchSender`: queues heartbeats on a local ActivityWatch
      server through ``aw-client``.
    * :class:`MockSender`: keeps records in memory (testing mode).
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import socket
import subprocess
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

from aw_client import ActivityWatchClient
from aw_core.models import Event

from editor_heartbeat.models import HeartbeatRecord

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "ActivityWatchSender",
    "HeartbeatSender",
    "MockSender",
    "SendError",
    "WakaTimeCliSender",
    "SENDER_NAMES",
]

SENDER_NAMES = ("wakatime-cli", "activitywatch", "mock")
BUCKET_EVENT_TYPE = "app.editor.activity"
DEFAULT_PULSETIME = 120.0
MAX_STDERR_CHARS = 1024

# Extension -> language, for backends that do not detect it themselves
LANGUAGES: Dict[str, str] = {
    ".c": "C",
    ".cpp": "C++",
    ".cs": "C#",
    ".css": "CSS",
    ".go": "Go",
    ".h": "C",
    ".html": "HTML",
    ".java": "Java",
    ".js": "JavaScript",
    ".json": "JSON",
    ".kt": "Kotlin",
    ".md": "Markdown",
    ".php": "PHP",
    ".py": "Python",
    ".rb": "Ruby",
    ".rs": "Rust",
    ".sh": "Bash",
    ".sql": "SQL",
    ".toml": "TOML",
    ".ts": "TypeScript",
    ".xml": "XML",
    ".yaml": "YAML",
    ".yml": "YAML",
}


class SendError(Exception):
    """Raised when a heartbeat could not be delivered.

    Attributes:
        returncode (Optional[int]): Exit status of the sender process, if any.
        stderr (Optional[str]): Captured error output, truncated.
    """

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: Optional[str] = None) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class HeartbeatSender(Protocol):
    def check(self) -> None:
        ...

    def send(self, record: HeartbeatRecord) -> None:
        ...

    def close(self) -> None:
        ...


def guess_language(file: str) -> Optional[str]:
    _, ext = os.path.splitext(file)
    return LANGUAGES.get(ext.lower())


class WakaTimeCliSender:
    """Send heartbeats by spawning the ``wakatime-cli`` executable.

    One process is spawned per heartbeat. The CLI takes care of API keys from
    ``~/.wakatime.cfg``, offline queueing and the wire format. This sender only
    builds the argument list and interprets the exit status.

    Attributes:
        cli_path (str): Executable name or path of wakatime-cli.
        api_key (Optional[str]): Overrides the key from the CLI's own config file.
        proxy (Optional[str]): Proxy URL passed through to the CLI.
        timeout (float): Seconds before a hanging CLI process is killed.
    """

    def __init__(
        self,
        cli_path: str = "wakatime-cli",
        api_key: Optional[str] = None,
        proxy: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.cli_path = cli_path
        self.api_key = api_key or None
        self.proxy = proxy or None
        self.timeout = timeout

    def build_args(self, record: HeartbeatRecord) -> List[str]:
        """Build the command line for one heartbeat.

        Example:
            >>> sender = WakaTimeCliSender("wakatime-cli")
            >>> rec = HeartbeatRecord("a.py", True, "vim/9 p/1", "proj", 1700000000.0)
            >>> sender.build_args(rec)  # doctest: +NORMALIZE_WHITESPACE
            ['wakatime-cli', '--entity', 'a.py', '--plugin', 'vim/9 p/1',
             '--time', '1700000000.000000', '--write', '--project', 'proj']
        """
        args = [
            self.cli_path,
            "--entity", record.file,
            "--plugin", record.plugin,
            "--time", f"{record.timestamp:.6f}",
        ]
        if record.is_write:
            args.append("--write")
        if record.project:
            args.extend(["--project", record.project])
        if self.api_key:
            args.extend(["--key", self.api_key])
        if self.proxy:
            args.extend(["--proxy", self.proxy])
        return args

    def check(self) -> None:
        """Verify the CLI executable can be found.

        Raises:
            SendError: If ``cli_path`` is neither on PATH nor an existing file.
        """
        if shutil.which(self.cli_path) is None and not os.path.isfile(self.cli_path):
            raise SendError(f"wakatime-cli not found: {self.cli_path}")

    def send(self, record: HeartbeatRecord) -> None:
        args = self.build_args(record)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Running: %s", _redact(args))
        try:
            result = subprocess.run(
                args,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise SendError(f"wakatime-cli timed out after {self.timeout}s") from e
        except OSError as e:
            raise SendError(f"Failed to run wakatime-cli: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()[:MAX_STDERR_CHARS]
            raise SendError(
                f"wakatime-cli exited with status {result.returncode}",
                returncode=result.returncode,
                stderr=stderr,
            )

    def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"<WakaTimeCliSender cli={self.cli_path}>"


def _redact(args: Sequence[str]) -> List[str]:
    redacted = list(args)
    for i, arg in enumerate(redacted[:-1]):
        if arg == "--key":
            redacted[i + 1] = "********"
    return redacted


class ActivityWatchSender:
    """Send heartbeats to a local ActivityWatch server.

    Heartbeats are queued by aw-client (``queued=True``), so an offline server
    does not cause failures; events are flushed on reconnection.

    Attributes:
        hostname (str): Sanitized local hostname.
        bucket_id (str): Bucket receiving the events.
        pulsetime (float): Merge window for consecutive identical heartbeats.
        client (Any): The underlying ActivityWatchClient (or a test double).
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        port: Optional[int] = None,
        testing: bool = False,
        pulsetime: float = DEFAULT_PULSETIME,
    ) -> None:
        self.pulsetime = pulsetime
        try:
            self.hostname = socket.gethostname()
            if not self.hostname:
                raise ValueError("Empty hostname")
        except Exception as e:
            logger.warning("Failed to get hostname: %s. Using 'unknown-host'.", e)
            self.hostname = "unknown-host"

        # Keep alphanumeric, hyphens, underscores, dots
        self.hostname = re.sub(r"[^a-zA-Z0-9\-_.]", "_", self.hostname)
        if not self.hostname or set(self.hostname) == {"_"}:
            self.hostname = "unknown-host"

        self.bucket_id = f"editor-heartbeat_{self.hostname}"
        self._bucket_created = False
        self._connected = False

        if client is not None:
            self.client = client
        else:
            self.client = ActivityWatchClient("editor-heartbeat", port=port, testing=testing)

    def check(self) -> None:
        """Start the client's request queue and create the bucket.

        Both are queued, so this also succeeds while the server is offline.
        """
        if not self._connected:
            try:
                # Queued requests are only flushed by the thread connect() starts
                self.client.connect()
            except Exception as e:
                raise SendError(f"Failed to connect to ActivityWatch: {e}") from e
            self._connected = True
        try:
            self.client.create_bucket(self.bucket_id, event_type=BUCKET_EVENT_TYPE, queued=True)
            self._bucket_created = True
            logger.info("Bucket '%s' ensured (queued).", self.bucket_id)
        except Exception as e:
            raise SendError(f"Failed to create bucket {self.bucket_id}: {e}") from e

    def send(self, record: HeartbeatRecord) -> None:
        if not self._bucket_created:
            self.check()

        data: Dict[str, Any] = {
            "file": record.file,
            "project": record.project or "unknown",
            "language": guess_language(record.file) or "unknown",
            "is_write": record.is_write,
            "plugin": record.plugin,
        }
        event = Event(timestamp=datetime.fromtimestamp(record.timestamp, tz=timezone.utc), data=data)
        try:
            self.client.heartbeat(self.bucket_id, event, pulsetime=self.pulsetime, queued=True)
        except Exception as e:
            raise SendError(f"Failed to queue heartbeat: {e}") from e

    def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        try:
            self.client.disconnect()
        except Exception as e:
            logger.error("Error closing ActivityWatch client: %s", e)

    def __repr__(self) -> str:
        return f"<ActivityWatchSender bucket={self.bucket_id}>"


class MockSender:
    """In-memory sender for testing mode.

    Attributes:
        sent (List[HeartbeatRecord]): Delivered records, in delivery order.
        fail_times (int): Number of upcoming ``send`` calls that raise SendError.
    """

    def __init__(self, fail_times: int = 0) -> None:
        self.sent: List[HeartbeatRecord] = []
        self.fail_times = fail_times
        self.closed = False

    def check(self) -> None:
        pass

    def send(self, record: HeartbeatRecord) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise SendError("Mock send failure")
        self.sent.append(record)
        logger.info(
            "[MOCK] heartbeat: %s (write=%s, project=%s)", record.file, record.is_write, record.project
        )

    def close(self) -> None:
        self.closed = True


def create_sender(
    name: str,
    cli_path: str = "wakatime-cli",
    api_key: Optional[str] = None,
    proxy: Optional[str] = None,
    timeout: float = 30.0,
    port: Optional[int] = None,
    testing: bool = False,
    pulsetime: float = DEFAULT_PULSETIME,
) -> HeartbeatSender:
    """Build the sender named ``name``.

    Raises:
        ValueError: If ``name`` is not one of :data:`SENDER_NAMES`.
    """
    if name == "wakatime-cli":
        return WakaTimeCliSender(cli_path, api_key=api_key, proxy=proxy, timeout=timeout)
    if name == "activitywatch":
        return ActivityWatchSender(port=port, testing=testing, pulsetime=pulsetime)
    if name == "mock":
        return MockSender()
    raise ValueError(f"Unknown sender '{name}', expected one of {', '.join(SENDER_NAMES)}")
