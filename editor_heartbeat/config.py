"""Configuration management for editor-heartbeat.

This module handles loading configuration from defaults, config files, environment variables,
and CLI arguments. It enforces a strict priority order and validates every value before it
reaches the rest of the application.

The configuration is aggregated into a :class:`Config` dataclass, which serves as the
single source of truth for application settings.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Config Files:
    The first existing file among ``config.toml``, ``config.ini`` (current directory) and
    ``<config dir>/editor-heartbeat/config.{toml,ini}`` is used. Settings live in the
    ``[editor-heartbeat]`` table (TOML, parsed with ``tomli``) or section (INI).
    The config dir is ``$XDG_CONFIG_HOME``, ``%APPDATA%`` on Windows, or ``~/.config``.

Supported Environment Variables:
    * ``EDITOR_HEARTBEAT_<FIELD>``: Any :class:`Config` field, upper-cased
      (e.g. ``EDITOR_HEARTBEAT_DEBOUNCE_SECONDS``).
    * ``WAKATIME_API_KEY``: Alias for ``EDITOR_HEARTBEAT_API_KEY``.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli

from editor_heartbeat.senders import SENDER_NAMES
from editor_heartbeat.watcher import DEFAULT_EXCLUDE

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "load_config"]

CONFIG_SECTION = "editor-heartbeat"
ENV_PREFIX = "EDITOR_HEARTBEAT_"


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        watch_path (str): Absolute path of the workspace directory to watch.
            Defaults to the git root of the current directory, or the current directory.
        sender (str): Heartbeat backend: "wakatime-cli", "activitywatch" or "mock".
        cli_path (str): wakatime-cli executable. Defaults to "wakatime-cli".
        api_key (Optional[str]): WakaTime API key passed to the CLI. Defaults to None.
        proxy (Optional[str]): Proxy URL passed to the CLI. Defaults to None.
        port (Optional[int]): Port for the ActivityWatch server. Defaults to 5600.
        testing (bool): Run in testing mode (forces the mock sender). Defaults to False.
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "INFO".
        debounce_seconds (float): Window during which repeated non-write activity on
            the same file is suppressed. Defaults to 60.0.
        settle_seconds (float): Quiet time before a burst of filesystem events is
            reported. Defaults to 1.0.
        pulsetime (float): ActivityWatch heartbeat merge window. Defaults to 120.0.
        send_timeout (float): Seconds before a wakatime-cli process is killed. Defaults to 30.0.
        queue_size (int): Max heartbeats waiting for delivery. Defaults to 1000.
        exclude (List[str]): fnmatch patterns of ignored paths.
        exclude_unknown_project (bool): Ignore activity while no project is known.
    """

    watch_path: str
    sender: str = "wakatime-cli"
    cli_path: str = "wakatime-cli"
    api_key: Optional[str] = None
    proxy: Optional[str] = None
    port: Optional[int] = 5600
    testing: bool = False
    log_file: Optional[str] = None
    log_level: str = "INFO"
    debounce_seconds: float = 60.0
    settle_seconds: float = 1.0
    pulsetime: float = 120.0
    send_timeout: float = 30.0
    queue_size: int = 1000
    exclude: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE))
    exclude_unknown_project: bool = False

    def __repr__(self) -> str:
        # Keep the API key out of debug logs
        values = ", ".join(
            f"{f.name}={'********' if f.name == 'api_key' and self.api_key else repr(getattr(self, f.name))}"
            for f in fields(self)
        )
        return f"Config({values})"


def _find_project_root(start_path: Path) -> Optional[Path]:
    """Find the project root by looking for the .git directory upwards.

    Args:
        start_path (Path): The starting path for the search.

    Returns:
        Optional[Path]: The path to the project root if found, else None.
    """
    try:
        path = start_path.resolve()
        if path.is_file():
            path = path.parent

        for parent in [path] + list(path.parents):
            if (parent / ".git").exists():
                return parent
    except OSError:
        pass
    return None


def _get_config_dir() -> str:
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return os.path.join(os.path.expanduser(xdg_config_home), CONFIG_SECTION)
    if os.name == "nt" and os.environ.get("APPDATA"):
        return os.path.join(os.path.expanduser(os.environ["APPDATA"]), CONFIG_SECTION)
    # Fallback for POSIX (macOS/Linux) and Windows without APPDATA
    return os.path.join(os.path.expanduser("~"), ".config", CONFIG_SECTION)


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Local files (current working directory) come first, TOML before INI.
    """
    config_dir = _get_config_dir()
    return [
        "config.toml",
        "config.ini",
        os.path.join(config_dir, "config.toml"),
        os.path.join(config_dir, "config.ini"),
    ]


def _read_config_file(path: str) -> Dict[str, Any]:
    """Read the ``[editor-heartbeat]`` settings from a TOML or INI file.

    Parse errors are logged and yield an empty dict so that a broken file never
    prevents startup.
    """
    values: Dict[str, Any] = {}
    if path.endswith(".toml"):
        try:
            with open(path, "rb") as f:
                document = tomli.load(f)
        except (tomli.TOMLDecodeError, UnicodeDecodeError, OSError) as e:
            logger.error(f"Failed to parse config file {path}: {e}")
            return values
        table = document.get(CONFIG_SECTION, {})
        if not isinstance(table, dict):
            logger.error(f"Config file {path}: [{CONFIG_SECTION}] is not a table")
            return values
        for key, value in table.items():
            if value is not None and value != "":
                values[key.replace("-", "_")] = value
        return values

    parser = ConfigParser(interpolation=None)
    try:
        parser.read(path, encoding="utf-8-sig")
        if CONFIG_SECTION in parser:
            for key, value in parser[CONFIG_SECTION].items():
                if value is not None and value != "":
                    values[key.replace("-", "_")] = value
    except (ConfigParserError, UnicodeDecodeError, OSError) as e:
        logger.error(f"Failed to parse config file {path}: {e}")
    return values


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def _to_number(values: Dict[str, Any], key: str, cast: Any, minimum: float, maximum: Optional[float] = None,
               exclusive_min: bool = False) -> None:
    raw = values[key]
    if raw is None:
        return
    try:
        number = cast(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid {cast.__name__} for {key}: {raw}") from e
    if exclusive_min and number <= minimum:
        raise ValueError(f"{key} must be greater than {minimum}, got {number}")
    if not exclusive_min and number < minimum:
        raise ValueError(f"{key} must be at least {minimum}, got {number}")
    if maximum is not None and number > maximum:
        raise ValueError(f"{key} must be at most {maximum}, got {number}")
    values[key] = number


def _validate_watch_path(path_str: str) -> str:
    """Resolve the workspace directory, expanding the user tilde.

    Raises:
        ValueError: If the path does not exist or is not a directory.
    """
    path = Path(os.path.expanduser(path_str))
    try:
        resolved = path.resolve(strict=True)
    except FileNotFoundError as e:
        raise ValueError(f"Watch path not found: {path}") from e
    except (RuntimeError, OSError) as e:
        raise ValueError(f"Error resolving path {path}: {e}") from e
    if not resolved.is_dir():
        raise ValueError(f"Watch path is not a directory: {resolved}")
    return str(resolved)


def _validate_log_file(path_str: str) -> str:
    """Resolve the log file path and make sure it can be written.

    Missing parent directories are created.

    Raises:
        ValueError: If the path is a directory or cannot be written.
    """
    path = Path(os.path.expanduser(path_str)).absolute()
    if path.exists() and not path.is_file():
        raise ValueError(f"Invalid path: Log file is not a regular file: {path}")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a"):
            pass
    except PermissionError as e:
        raise ValueError(f"Write permission denied for log file: {path}") from e
    except OSError as e:
        raise ValueError(f"Cannot create log file: {e}") from e
    return str(path)


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments from argparse.
            Keys should match Config attributes (e.g., 'watch_path', 'sender').
            Values of None are ignored so that lower-priority sources take effect.
            Typically obtained via ``vars(parser.parse_args())``.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ValueError: If any value is invalid (unknown sender, negative window,
            missing watch directory, unwritable log file, ...).

    Examples:
        >>> from editor_heartbeat.config import load_config
        >>> config = load_config({"watch_path": ".", "sender": "mock"})
        >>> config.sender
        'mock'
        >>> config.debounce_seconds
        60.0
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "watch_path": None,
        "sender": "wakatime-cli",
        "cli_path": "wakatime-cli",
        "api_key": None,
        "proxy": None,
        "port": 5600,
        "testing": False,
        "log_file": None,
        "log_level": "INFO",
        "debounce_seconds": 60.0,
        "settle_seconds": 1.0,
        "pulsetime": 120.0,
        "send_timeout": 30.0,
        "queue_size": 1000,
        "exclude": list(DEFAULT_EXCLUDE),
        "exclude_unknown_project": False,
    }
    config_fields = {f.name for f in fields(Config)}

    # 2. Config File
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            for key, value in _read_config_file(path).items():
                if key in config_fields:
                    config_values[key] = value
                else:
                    logger.warning(f"Ignoring unknown config key '{key}' in {path}")
            break

    # 3. Environment Variables
    api_key_alias = os.getenv("WAKATIME_API_KEY")
    if api_key_alias:
        config_values["api_key"] = api_key_alias
    for config_key in config_fields:
        val = os.getenv(ENV_PREFIX + config_key.upper())
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    # Type casting
    if config_values["port"] is not None:
        _to_number(config_values, "port", int, 1, 65535)
    _to_number(config_values, "debounce_seconds", float, 0.0)
    _to_number(config_values, "settle_seconds", float, 0.0)
    _to_number(config_values, "pulsetime", float, 0.0, exclusive_min=True)
    _to_number(config_values, "send_timeout", float, 0.0, exclusive_min=True)
    _to_number(config_values, "queue_size", int, 1, 100000)

    config_values["testing"] = _to_bool(config_values["testing"])
    config_values["exclude_unknown_project"] = _to_bool(config_values["exclude_unknown_project"])

    sender = str(config_values["sender"]).strip().lower()
    if sender not in SENDER_NAMES:
        raise ValueError(f"Invalid sender '{sender}', expected one of {', '.join(SENDER_NAMES)}")
    if config_values["testing"]:
        sender = "mock"
    config_values["sender"] = sender

    exclude = config_values["exclude"]
    if isinstance(exclude, str):
        exclude = exclude.split(",")
    config_values["exclude"] = [str(p).strip() for p in exclude if str(p).strip()]

    # Watch path: explicit value, else git root, else "."
    if config_values["watch_path"]:
        config_values["watch_path"] = _validate_watch_path(str(config_values["watch_path"]))
    else:
        try:
            root = _find_project_root(Path.cwd())
        except OSError:
            logger.debug("Could not determine CWD, defaulting watch_path to '.'")
            root = None
        config_values["watch_path"] = _validate_watch_path(str(root) if root else ".")

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_file(str(config_values["log_file"]))

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ValueError(f"Invalid log level: {config_values['log_level']}")

    # Drop keys that are not Config fields (e.g. 'debug' from CLI)
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}
    return Config(**filtered_values)
