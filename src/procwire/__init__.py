"""procwire - lifecycle control for a single external process.

Run a program to completion, or start it and talk to it over its standard
streams, then stop it with a graceful-then-forced termination protocol.

Environment variables:
    PROCWIRE_STOP_TIMEOUT: stop() ceiling in seconds (default 10)
    PROCWIRE_STOP_POLL_INTERVAL: stop() poll tick in seconds (default 1)
    PROCWIRE_NEW_SESSION: isolate children in their own session (default true)
    PROCWIRE_LOG_DEBUG: debug log to a temp file (default false)
"""

__version__ = "0.1.0"

from .errors import (
    ConfigurationError,
    ModifierError,
    NotRunningError,
    NotStartedError,
    ProcessControlError,
    ProcessExitError,
    SpawnError,
    StopTimeoutError,
    StreamAttachError,
)
from .log import configure_logging
from .result import Result, capture
from .runtime import (
    CancelToken,
    Capture,
    CaptureRecord,
    Interaction,
    KillOutcome,
    LaunchRequest,
    LifecycleState,
    Output,
    WiredIO,
    interactive_io,
    wire_io,
    with_dir,
    with_env,
    with_io,
    with_modifier,
)

__all__ = [
    "__version__",
    "CancelToken",
    "Capture",
    "CaptureRecord",
    "ConfigurationError",
    "Interaction",
    "KillOutcome",
    "LaunchRequest",
    "LifecycleState",
    "ModifierError",
    "NotRunningError",
    "NotStartedError",
    "Output",
    "ProcessControlError",
    "ProcessExitError",
    "Result",
    "SpawnError",
    "StopTimeoutError",
    "StreamAttachError",
    "WiredIO",
    "capture",
    "configure_logging",
    "interactive_io",
    "wire_io",
    "with_dir",
    "with_env",
    "with_io",
    "with_modifier",
]
