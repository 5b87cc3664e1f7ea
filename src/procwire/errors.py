"""Exception types for process lifecycle control."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .result import Result

__all__ = [
    "ProcessControlError",
    "ConfigurationError",
    "ModifierError",
    "SpawnError",
    "ProcessExitError",
    "NotStartedError",
    "NotRunningError",
    "StopTimeoutError",
    "StreamAttachError",
]


class ProcessControlError(Exception):
    """Base exception for procwire."""
    pass


class ConfigurationError(ProcessControlError):
    """The invocation cannot be launched as configured (e.g. empty name)."""
    pass


class ModifierError(ProcessControlError):
    """The pre-launch modifier hook failed; nothing was spawned."""
    pass


class SpawnError(ProcessControlError):
    """The OS refused to create the process.

    Attributes:
        name: Program that was being launched
        cause: Underlying OSError
    """

    def __init__(self, name: str, cause: OSError) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"failed to spawn {name!r}: {cause}")


class ProcessExitError(ProcessControlError):
    """The process ran but exited abnormally.

    The exit code is always populated; a negative value means the process
    was terminated by that signal number.

    Attributes:
        name: Program that ran
        exit_code: Exit status reported by the OS
        stdout: Captured standard output (if any was captured)
        stderr: Captured standard error (if any was captured)
        result: Result record, when raised by capture()
    """

    def __init__(
        self,
        name: str,
        exit_code: int,
        stdout: bytes = b"",
        stderr: bytes = b"",
        result: Result | None = None,
    ) -> None:
        self.name = name
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.result = result
        if exit_code < 0:
            message = f"{name!r} terminated by signal {-exit_code}"
        else:
            message = f"{name!r} exited with status {exit_code}"
        super().__init__(message)


class NotStartedError(ProcessControlError):
    """stop()/wait() called without a started process."""

    def __init__(self, message: str = "command was not started") -> None:
        super().__init__(message)


class NotRunningError(ProcessControlError):
    """kill() called with nothing to kill."""

    def __init__(self, message: str = "not running") -> None:
        super().__init__(message)


class StopTimeoutError(ProcessControlError):
    """The graceful-termination ceiling elapsed without an observed exit.

    The handle stays recorded, so stop() may be retried.

    Attributes:
        pid: Process that did not exit
        timeout: Ceiling that elapsed (seconds)
    """

    def __init__(self, pid: int | None, timeout: float) -> None:
        self.pid = pid
        self.timeout = timeout
        super().__init__(f"timeout reached: pid={pid} still running after {timeout}s")


class StreamAttachError(ProcessControlError):
    """One of the three standard streams could not be attached.

    Attributes:
        stream: Name of the conduit that failed ("stdin", "stdout", "stderr")
    """

    def __init__(self, stream: str, detail: Any = None) -> None:
        self.stream = stream
        message = f"failed to attach {stream}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
