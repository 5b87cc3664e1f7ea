"""Runtime module for process lifecycle control.

This module provides launching, stream wiring and graceful termination of
a single external process.
"""

from __future__ import annotations

from .cancellation import CancelToken
from .controller import Capture, KillOutcome, LifecycleState, Output, ProcessHandle
from .spec import (
    CaptureRecord,
    LaunchRequest,
    Option,
    with_dir,
    with_env,
    with_io,
    with_modifier,
)
from .streams import Interaction, StreamTriple, attach
from .wiring import WiredIO, interactive_io, wire_io

__all__ = [
    "CancelToken",
    "Capture",
    "CaptureRecord",
    "Interaction",
    "KillOutcome",
    "LaunchRequest",
    "LifecycleState",
    "Option",
    "Output",
    "ProcessHandle",
    "StreamTriple",
    "WiredIO",
    "attach",
    "interactive_io",
    "wire_io",
    "with_dir",
    "with_env",
    "with_io",
    "with_modifier",
]
