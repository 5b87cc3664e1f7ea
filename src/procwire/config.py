"""procwire environment configuration.

Environment variables:
    PROCWIRE_STOP_TIMEOUT: ceiling for the graceful-termination protocol
        - seconds, default 10.0
        - clamped to 0.1-600

    PROCWIRE_STOP_POLL_INTERVAL: how often stop() checks for exit
        - seconds, default 1.0
        - clamped to 0.01-60
        - the first tick without an exit escalates to SIGKILL

    PROCWIRE_NEW_SESSION: isolate children in their own session/process group
        - true/1/yes = isolate (default)
        - false/0/no = share the caller's process group

    PROCWIRE_LOG_DEBUG: debug logging
        - true/1/yes = DEBUG level, written to a temp file
        - false/0/no = INFO level on stderr (default)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_STOP_TIMEOUT = 10.0
DEFAULT_STOP_POLL_INTERVAL = 1.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_seconds(
    value: str | None,
    default: float,
    minimum: float,
    maximum: float,
) -> float:
    """Parse a duration environment variable, clamped to [minimum, maximum].

    Invalid values fall back to the default.
    """
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    return max(minimum, min(seconds, maximum))


@dataclass
class Config:
    """procwire configuration.

    Attributes:
        stop_timeout: Ceiling for stop() before StopTimeoutError (seconds)
        stop_poll_interval: Poll tick for stop() and kill() (seconds)
        new_session: Start children in a new session/process group
        log_debug: Debug logging to a temp file
        log_file: Log file path (set when log_debug=True)
    """

    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    stop_poll_interval: float = DEFAULT_STOP_POLL_INTERVAL
    new_session: bool = True
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(stop_timeout={self.stop_timeout}, "
            f"stop_poll_interval={self.stop_poll_interval}, "
            f"new_session={self.new_session}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """Return a timestamped log file path under the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "procwire"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"procwire_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load configuration from the environment."""
    log_debug = _parse_bool(os.environ.get("PROCWIRE_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        stop_timeout=_parse_seconds(
            os.environ.get("PROCWIRE_STOP_TIMEOUT"),
            DEFAULT_STOP_TIMEOUT,
            0.1,
            600.0,
        ),
        stop_poll_interval=_parse_seconds(
            os.environ.get("PROCWIRE_STOP_POLL_INTERVAL"),
            DEFAULT_STOP_POLL_INTERVAL,
            0.01,
            60.0,
        ),
        new_session=_parse_bool(os.environ.get("PROCWIRE_NEW_SESSION"), default=True),
        log_debug=log_debug,
        log_file=log_file,
    )


# Global instance, loaded lazily
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload configuration from the environment (used by tests)."""
    global _config
    _config = load_config()
    return _config
