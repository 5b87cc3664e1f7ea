"""Logging setup for applications embedding procwire."""

from __future__ import annotations

import logging
import sys

from .config import Config, get_config

__all__ = ["configure_logging", "LOG_FORMAT"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(config: Config | None = None) -> logging.Handler:
    """Install a handler for the procwire namespace.

    With PROCWIRE_LOG_DEBUG the log goes to a temp file at DEBUG level,
    otherwise to stderr at INFO. The root logger stays at WARNING so
    third-party libraries stay quiet.

    Args:
        config: Configuration to use (defaults to the global one)

    Returns:
        The installed handler
    """
    config = config or get_config()

    handler: logging.Handler
    if config.log_debug and config.log_file:
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
        log_level = logging.DEBUG
    else:
        handler = logging.StreamHandler(sys.stderr)
        log_level = logging.INFO
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(
        level=logging.WARNING,
        handlers=[handler],
    )
    logging.getLogger("procwire").setLevel(log_level)

    return handler
