"""Lifecycle controller for one external process.

A Capture describes what to run (name, args, dir, env, modifier) and drives
it through one of two modes:

- run()/combined_output(): launch and wait, output buffered
- start(): launch and return the live stream triple for interaction

and tears it down with stop() (graceful, escalating) or kill() (immediate),
optionally from a background timer.

Stop protocol:
1. Cancel the handle's token (SIGTERM to the process group)
2. Poll every stop_poll_interval for exit, up to stop_timeout
3. Still alive after the first tick: SIGKILL
4. Exit observed: record exit code, clear handle
5. Ceiling elapsed: StopTimeoutError, handle kept for a retry
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import anyio

from ..config import get_config
from ..errors import (
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
from .cancellation import CancelToken
from .spec import CaptureRecord, LaunchRequest, Modifier, Option, env_to_mapping
from .streams import Interaction, StreamTriple, attach
from .termination import force_kill, isolation_kwargs, terminate
from .wiring import WiredIO

__all__ = [
    "Capture",
    "KillOutcome",
    "LifecycleState",
    "Output",
    "ProcessHandle",
]

logger = logging.getLogger(__name__)

PIPE = asyncio.subprocess.PIPE
DEVNULL = asyncio.subprocess.DEVNULL
STDOUT = asyncio.subprocess.STDOUT


class LifecycleState(str, Enum):
    """Where a Capture is in the start/stop lifecycle."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class ProcessHandle:
    """A started process owned by a Capture.

    Attributes:
        process: The OS process
        request: Launch request that produced it
        scope: Token whose cancellation asks the process to exit
        streams: Live stream triple
    """

    process: asyncio.subprocess.Process
    request: LaunchRequest
    scope: CancelToken | None = None
    streams: StreamTriple | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exited(self) -> bool:
        return self.process.returncode is not None


@dataclass(frozen=True)
class Output:
    """Buffered output of a completed run.

    stderr is empty when it was merged into stdout or routed through a
    wired IO.
    """

    stdout: bytes
    stderr: bytes
    exit_code: int


@dataclass(frozen=True)
class KillOutcome:
    """What a kill timer observed when it fired."""

    exit_code: int | None = None
    error: ProcessControlError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Capture:
    """Runs, starts and stops one external program.

    Example:
        capture = Capture(with_env(["A=A", "B=B"]), with_dir("/tmp"))
        output = await capture.run("/bin/bash", "-c", "echo $A $B")
        assert output.stdout == b"A B\\n"

        interaction = await capture.start("cat")
        interaction.stdin.write(b"hello\\n")
        await interaction.close_input()
        print(await interaction.read_stdout())
        await capture.stop()

    Not safe for concurrent start/stop/kill on the same instance; callers
    serialize those calls.

    Attributes:
        name: Program to run (recorded by run/start)
        args: Arguments, excluding the program name
        dir: Working directory ("" = inherit)
        env: KEY=VALUE entries (None = inherit, [] = empty environment)
        exit_code: Last observed exit code (0 also when nothing ran)
        modifier: Pre-launch hook, see with_modifier()
        io: Wired IO used by run() instead of buffers
        last_request: The request that was last handed to the OS
    """

    def __init__(
        self,
        *options: Option,
        stop_timeout: float | None = None,
        stop_poll_interval: float | None = None,
        new_session: bool | None = None,
    ) -> None:
        config = get_config()
        self.name: str = ""
        self.args: list[str] = []
        self.dir: str = ""
        self.env: list[str] | None = None
        self.exit_code: int = 0
        self.modifier: Modifier | None = None
        self.io: WiredIO | None = None
        self.last_request: LaunchRequest | None = None

        self.stop_timeout = stop_timeout if stop_timeout is not None else config.stop_timeout
        self.stop_poll_interval = (
            stop_poll_interval if stop_poll_interval is not None else config.stop_poll_interval
        )
        self.new_session = new_session if new_session is not None else config.new_session

        self._handle: ProcessHandle | None = None
        self._state = LifecycleState.NOT_STARTED

        self.with_options(*options)

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def with_options(self, *options: Option) -> Capture:
        """Apply options after construction (e.g. a modifier after loading)."""
        for option in options:
            option(self)
        return self

    def to_record(self) -> CaptureRecord:
        return CaptureRecord(
            name=self.name,
            args=list(self.args),
            dir=self.dir,
            env=list(self.env) if self.env is not None else None,
            exit_code=self.exit_code,
        )

    @classmethod
    def from_record(
        cls,
        record: CaptureRecord | dict[str, Any] | str,
        *options: Option,
        **kwargs: Any,
    ) -> Capture:
        """Rebuild a Capture from a record, a dict, or its JSON form."""
        if isinstance(record, str):
            record = CaptureRecord.model_validate_json(record)
        elif isinstance(record, dict):
            record = CaptureRecord.model_validate(record)

        capture = cls(**kwargs)
        capture.name = record.name
        capture.args = list(record.args)
        capture.dir = record.dir
        capture.env = list(record.env) if record.env is not None else None
        capture.exit_code = record.exit_code
        return capture.with_options(*options)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._handle.pid if self._handle else None

    def _record(self, name: str, args: Sequence[str]) -> None:
        self.name = name
        self.args = list(args)

    def _require_handle(self) -> ProcessHandle:
        if self._handle is None:
            raise NotStartedError()
        return self._handle

    def make_request(self) -> LaunchRequest:
        """Build the concrete launch request, running the modifier hook.

        Raises:
            ConfigurationError: If the program name is empty
            ModifierError: If the modifier raised or returned something
                other than a LaunchRequest
        """
        if not self.name:
            raise ConfigurationError("program name must not be empty")

        request = LaunchRequest(
            name=self.name,
            args=tuple(self.args),
            dir=self.dir,
            env=tuple(self.env) if self.env is not None else None,
            extra=isolation_kwargs(self.new_session),
        )

        if self.modifier is not None:
            try:
                modified = self.modifier(request)
            except Exception as e:
                raise ModifierError(f"modifier aborted launch of {self.name!r}: {e}") from e
            if modified is not None:
                if not isinstance(modified, LaunchRequest):
                    raise ModifierError(
                        f"modifier returned {type(modified).__name__}, expected LaunchRequest"
                    )
                if not modified.name:
                    raise ConfigurationError("modifier cleared the program name")
                if modified != request:
                    logger.debug(f"Modifier changed launch request: {request} -> {modified}")
                request = modified

        self.last_request = request
        return request

    async def _spawn(
        self,
        request: LaunchRequest,
        stdio: dict[str, Any],
    ) -> asyncio.subprocess.Process:
        kwargs = dict(request.extra)
        kwargs.update(stdio)

        logger.debug(
            f"[SUBPROCESS] Launching: argv={request.argv} "
            f"cwd={request.cwd} env={'inherit' if request.env is None else len(request.env)}"
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *request.argv,
                cwd=request.cwd,
                env=env_to_mapping(request.env),
                **kwargs,
            )
        except OSError as e:
            self.exit_code = 0
            logger.debug(f"[SUBPROCESS] Spawn failed for {request.name!r}: {e}")
            raise SpawnError(request.name, e) from e

        logger.debug(f"[SUBPROCESS] Started pid={process.pid} argv={request.argv[0]}")
        return process

    # -------------------------------------------------------------------------
    # Run to completion
    # -------------------------------------------------------------------------

    async def run(
        self,
        name: str,
        *args: str,
        cancel: CancelToken | None = None,
    ) -> Output:
        """Run name with args to completion.

        stdout and stderr are buffered separately, unless a wired IO was set
        with with_io(), in which case they flow to its sinks.

        Raises:
            ConfigurationError: Empty name, or a wired IO that was already used
            ModifierError: The modifier aborted the launch
            SpawnError: The OS could not start the program
            ProcessExitError: Non-zero exit; carries exit code and output
        """
        self._record(name, args)
        request = self.make_request()
        return await self._run(request, cancel, merge_stderr=False)

    async def combined_output(
        self,
        name: str,
        *args: str,
        cancel: CancelToken | None = None,
    ) -> bytes:
        """Run to completion and return stdout and stderr interleaved."""
        self._record(name, args)
        request = self.make_request()
        output = await self._run(request, cancel, merge_stderr=True)
        return output.stdout

    async def rerun(self, cancel: CancelToken | None = None) -> Output:
        """Run again with the recorded name and args."""
        return await self.run(self.name, *self.args, cancel=cancel)

    async def _run(
        self,
        request: LaunchRequest,
        cancel: CancelToken | None,
        merge_stderr: bool,
    ) -> Output:
        io = self.io
        if io is not None:
            if io.used:
                raise ConfigurationError("wired IO was already used by a previous launch")
            stdio = io.stdio_kwargs()
        else:
            stdio = {
                "stdin": DEVNULL,
                "stdout": PIPE,
                "stderr": STDOUT if merge_stderr else PIPE,
            }

        try:
            process = await self._spawn(request, stdio)
        finally:
            if io is not None:
                io.mark_used()
                io.release_child_ends()

        scope = cancel.child() if cancel is not None else None
        if scope is not None:
            scope.add_callback(lambda: terminate(process, group=self.new_session))

        try:
            stdout, stderr = await process.communicate()
            if io is not None:
                await io.wait_output()
        except asyncio.CancelledError:
            logger.debug(f"run() cancelled, reaping pid={process.pid}")
            await asyncio.shield(self._reap(process))
            raise
        finally:
            if scope is not None:
                scope.detach()

        exit_code = process.returncode if process.returncode is not None else 0
        self.exit_code = exit_code
        output = Output(stdout=stdout or b"", stderr=stderr or b"", exit_code=exit_code)

        logger.debug(f"[SUBPROCESS] Completed pid={process.pid} returncode={exit_code}")

        if exit_code != 0:
            raise ProcessExitError(request.name, exit_code, output.stdout, output.stderr)
        return output

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        """Terminate, escalate after one poll interval, and wait."""
        if process.returncode is not None:
            return
        terminate(process, group=self.new_session)
        with anyio.move_on_after(self.stop_poll_interval):
            await process.wait()
        if process.returncode is None:
            logger.warning(f"pid={process.pid} ignored SIGTERM, sending SIGKILL")
            force_kill(process, group=self.new_session)
        await process.wait()

    # -------------------------------------------------------------------------
    # Interactive
    # -------------------------------------------------------------------------

    async def start(
        self,
        name: str,
        *args: str,
        cancel: CancelToken | None = None,
    ) -> Interaction:
        """Start name with args and return its live stream triple.

        The process is bound to a child of cancel: cancelling cancel asks
        the process to exit, while stop() on this Capture never cancels
        cancel itself.

        Raises:
            ConfigurationError: Empty name
            ModifierError: The modifier aborted the launch
            SpawnError: The OS could not start the program
            StreamAttachError: A standard stream could not be attached; the
                process has been terminated and nothing is recorded
        """
        self._record(name, args)
        request = self.make_request()

        scope = cancel.child() if cancel is not None else CancelToken()
        try:
            process = await self._spawn(request, {"stdin": PIPE, "stdout": PIPE, "stderr": PIPE})
        except ProcessControlError:
            scope.detach()
            raise

        try:
            streams = attach(process)
        except StreamAttachError:
            scope.detach()
            await self._reap(process)
            raise

        previous = self._handle
        if previous is not None:
            if not previous.exited:
                logger.debug(f"start() supersedes still-running pid={previous.pid}")
            # The superseded process no longer follows the caller's token
            if previous.scope is not None:
                previous.scope.detach()

        self._handle = ProcessHandle(
            process=process,
            request=request,
            scope=scope,
            streams=streams,
        )
        self._state = LifecycleState.RUNNING

        # Registered last: an already-cancelled outer token fires right away
        scope.add_callback(lambda: terminate(process, group=self.new_session))

        return Interaction(streams, self)

    async def restart(self, cancel: CancelToken | None = None) -> Interaction:
        """Start again with the recorded name and args."""
        return await self.start(self.name, *self.args, cancel=cancel)

    async def wait(self) -> int:
        """Wait for the started process to exit.

        Read stdout/stderr concurrently if the process writes a lot: an
        unread pipe that fills up blocks the child.

        Raises:
            NotStartedError: Nothing was started
            ProcessExitError: Non-zero exit
        """
        handle = self._require_handle()
        exit_code = await handle.process.wait()
        self.exit_code = exit_code
        if exit_code != 0:
            raise ProcessExitError(handle.request.name, exit_code)
        return exit_code

    # -------------------------------------------------------------------------
    # Termination
    # -------------------------------------------------------------------------

    async def stop(self) -> int:
        """Stop the started process: cancel, poll, escalate to SIGKILL.

        Returns:
            The exit code (negative when ended by a signal)

        Raises:
            NotStartedError: Nothing was started
            StopTimeoutError: No exit within stop_timeout; the handle stays
                recorded and stop() may be retried
        """
        if self._handle is None:
            raise NotStartedError()
        handle = self._handle
        process = handle.process
        self._state = LifecycleState.STOPPING

        logger.debug(f"Stopping pid={process.pid}")

        if handle.scope is not None:
            handle.scope.cancel()
        else:
            terminate(process, group=self.new_session)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.stop_timeout
        escalated = False

        while process.returncode is None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    f"pid={process.pid} still running after {self.stop_timeout}s"
                )
                raise StopTimeoutError(process.pid, self.stop_timeout)

            with anyio.move_on_after(min(self.stop_poll_interval, remaining)):
                await process.wait()

            if process.returncode is None and not escalated:
                logger.warning(
                    f"pid={process.pid} still running after "
                    f"{self.stop_poll_interval}s, sending SIGKILL"
                )
                force_kill(process, group=self.new_session)
                escalated = True

        return self._finish(handle)

    async def kill(self) -> int:
        """Terminate the started process now and wait for it.

        With a cancellation scope the scope is cancelled first and the
        process gets one poll interval before SIGKILL; without one it gets
        SIGKILL directly.

        Raises:
            NotRunningError: Nothing to kill
        """
        handle = self._handle
        if handle is None:
            raise NotRunningError()
        process = handle.process

        if handle.scope is not None:
            handle.scope.cancel()
            with anyio.move_on_after(self.stop_poll_interval):
                await process.wait()
            if process.returncode is None:
                force_kill(process, group=self.new_session)
        else:
            force_kill(process, group=self.new_session)

        await process.wait()
        return self._finish(handle)

    def _finish(self, handle: ProcessHandle) -> int:
        exit_code = handle.process.returncode
        if exit_code is None:
            exit_code = 0
        self.exit_code = exit_code

        if self._handle is handle:
            if handle.scope is not None:
                handle.scope.detach()
            self._handle = None
            self._state = LifecycleState.STOPPED

        logger.debug(f"Stopped pid={handle.pid} returncode={exit_code}")
        return exit_code

    def kill_timer(
        self,
        delay: float,
        results: asyncio.Queue[KillOutcome] | None = None,
    ) -> asyncio.Task[KillOutcome]:
        """Kill after delay seconds, in the background.

        The returned task resolves to the KillOutcome; the same outcome is
        put on results when given. Errors (e.g. NotRunningError when the
        process was already stopped) are reported in the outcome, never
        raised from the task.
        """
        return asyncio.create_task(self._kill_later(delay, results))

    def kill_after(
        self,
        deadline: datetime,
        results: asyncio.Queue[KillOutcome] | None = None,
    ) -> asyncio.Task[KillOutcome]:
        """Kill at deadline, in the background. See kill_timer()."""
        now = datetime.now(tz=deadline.tzinfo)
        delay = max(0.0, (deadline - now).total_seconds())
        return self.kill_timer(delay, results)

    async def _kill_later(
        self,
        delay: float,
        results: asyncio.Queue[KillOutcome] | None,
    ) -> KillOutcome:
        await anyio.sleep(delay)
        try:
            outcome = KillOutcome(exit_code=await self.kill())
        except ProcessControlError as e:
            logger.debug(f"Kill timer fired with error: {e}")
            outcome = KillOutcome(error=e)
        if results is not None:
            results.put_nowait(outcome)
        return outcome

    def __repr__(self) -> str:
        return (
            f"Capture(name={self.name!r}, args={self.args!r}, dir={self.dir!r}, "
            f"exit_code={self.exit_code}, state={self._state.value}, pid={self.pid})"
        )
