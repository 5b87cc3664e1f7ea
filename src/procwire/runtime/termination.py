"""Signal delivery for spawned processes.

Children are normally started in their own session (POSIX) or process
group (Windows), so both signals target the whole group and grandchildren
do not outlive the process we started:

- terminate(): SIGTERM to the group (CTRL_BREAK_EVENT on Windows)
- force_kill(): SIGKILL to the group (TerminateProcess on Windows)

Both are no-ops for a process that has already been reaped.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from typing import Any

__all__ = [
    "IS_WINDOWS",
    "isolation_kwargs",
    "terminate",
    "force_kill",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"


def isolation_kwargs(new_session: bool) -> dict[str, Any]:
    """Platform-specific subprocess kwargs for process-group isolation."""
    if not new_session:
        return {}
    if IS_WINDOWS:
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    # POSIX: start_new_session (equivalent to setsid)
    return {"start_new_session": True}


def terminate(process: asyncio.subprocess.Process, group: bool = True) -> None:
    """Ask the process to exit."""
    if process.returncode is not None:
        return
    if IS_WINDOWS:
        _windows_terminate(process, group)
    else:
        _posix_signal(process, signal.SIGTERM, group)


def force_kill(process: asyncio.subprocess.Process, group: bool = True) -> None:
    """Kill the process without giving it a chance to clean up."""
    if process.returncode is not None:
        return
    if IS_WINDOWS:
        try:
            process.kill()
            logger.debug(f"Called kill() on pid={process.pid}")
        except ProcessLookupError:
            pass
    else:
        _posix_signal(process, signal.SIGKILL, group)


def _posix_signal(
    process: asyncio.subprocess.Process,
    sig: signal.Signals,
    group: bool,
) -> None:
    if group:
        try:
            # Process group ID equals pid due to start_new_session
            pgid = os.getpgid(process.pid)
            if pgid == os.getpgid(0):
                # Never signal our own group
                raise OSError("child shares the caller's process group")
            os.killpg(pgid, sig)
            logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
            return
        except ProcessLookupError:
            return
        except OSError as e:
            logger.debug(f"killpg failed, falling back to pid={process.pid}: {e}")

    try:
        process.send_signal(sig)
        logger.debug(f"Sent {sig.name} to pid={process.pid}")
    except ProcessLookupError:
        pass


def _windows_terminate(process: asyncio.subprocess.Process, group: bool) -> None:
    if group:
        try:
            # Works because of CREATE_NEW_PROCESS_GROUP
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
            return
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
    try:
        process.terminate()
    except ProcessLookupError:
        pass
