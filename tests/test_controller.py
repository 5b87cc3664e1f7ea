"""Capture lifecycle tests.

Test coverage:
- Run to completion (exit codes, env, dir, modifier, spawn failures)
- Rerun and combined output
- Start/stop with live streams
- Graceful termination with escalation to SIGKILL
- Stop timeout and retry
- Kill and kill timers
- Cancellation token propagation
- Record serialization
"""

from __future__ import annotations

import asyncio
import os
import signal
from datetime import datetime, timedelta
from pathlib import Path
from unittest import mock

import pytest

from procwire import (
    CancelToken,
    Capture,
    CaptureRecord,
    ConfigurationError,
    KillOutcome,
    LaunchRequest,
    LifecycleState,
    ModifierError,
    NotRunningError,
    NotStartedError,
    ProcessExitError,
    SpawnError,
    StopTimeoutError,
    StreamAttachError,
    with_dir,
    with_env,
    with_modifier,
)
from procwire.runtime import termination
from procwire.runtime.termination import IS_WINDOWS

pytestmark = pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def capture() -> Capture:
    """Create a Capture with short timeouts for testing."""
    return Capture(stop_timeout=5.0, stop_poll_interval=0.2)


async def _read_ready(interaction) -> None:
    line = await asyncio.wait_for(interaction.stdout.readline(), timeout=10)
    assert line.strip() == b"ready"


# =============================================================================
# Run Tests
# =============================================================================


class TestRun:
    """Test running to completion."""

    @pytest.mark.asyncio
    async def test_exit_zero(self, capture: Capture):
        """Test a successful run records exit code 0."""
        output = await capture.run("/bin/bash", "-c", "exit 0")

        assert output.exit_code == 0
        assert capture.exit_code == 0
        assert capture.name == "/bin/bash"
        assert capture.args == ["-c", "exit 0"]

    @pytest.mark.asyncio
    async def test_exit_nonzero(self, capture: Capture):
        """Test a failing run raises with the exit code populated."""
        with pytest.raises(ProcessExitError) as exc_info:
            await capture.run("/bin/bash", "-c", "exit 1")

        assert exc_info.value.exit_code == 1
        assert capture.exit_code == 1

    @pytest.mark.asyncio
    async def test_failure_carries_output(self, capture: Capture):
        """Test the exit error carries what the process printed."""
        with pytest.raises(ProcessExitError) as exc_info:
            await capture.run("/bin/bash", "-c", "echo out; echo err >&2; exit 3")

        assert exc_info.value.stdout == b"out\n"
        assert exc_info.value.stderr == b"err\n"

    @pytest.mark.asyncio
    async def test_env(self):
        """Test the environment entries reach the child."""
        capture = Capture(with_env(["A=A", "B=B"]))
        output = await capture.run("/bin/bash", "-c", "echo $A $B")

        assert output.stdout == b"A B\n"

    @pytest.mark.asyncio
    async def test_empty_env(self):
        """Test an empty env list clears the environment."""
        capture = Capture(with_env([]))
        output = await capture.run("/bin/bash", "-c", 'echo "[${HOME:-unset}]"')

        assert output.stdout == b"[unset]\n"

    @pytest.mark.asyncio
    async def test_dir(self, temp_workspace: Path):
        """Test the child starts in the configured directory."""
        capture = Capture(with_dir(str(temp_workspace)))
        output = await capture.run("/bin/pwd")

        assert os.path.realpath(output.stdout.decode().strip()) == os.path.realpath(temp_workspace)

    @pytest.mark.asyncio
    async def test_spawn_error(self, capture: Capture):
        """Test a missing program raises SpawnError and keeps the name."""
        with pytest.raises(SpawnError) as exc_info:
            await capture.run("asdfasdf")

        assert exc_info.value.name == "asdfasdf"
        assert capture.name == "asdfasdf"
        assert capture.exit_code == 0

    @pytest.mark.asyncio
    async def test_empty_name(self, capture: Capture):
        """Test an empty program name is rejected before spawning."""
        with pytest.raises(ConfigurationError):
            await capture.run("")

    @pytest.mark.asyncio
    async def test_combined_output(self, capture: Capture):
        """Test stdout and stderr are merged."""
        output = await capture.combined_output("/bin/bash", "-c", "echo out; echo err >&2")

        assert b"out\n" in output
        assert b"err\n" in output

    @pytest.mark.asyncio
    async def test_cancel_token_terminates_run(self, capture: Capture):
        """Test cancelling the token ends a running process with SIGTERM."""
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.2, token.cancel)

        with pytest.raises(ProcessExitError) as exc_info:
            await asyncio.wait_for(capture.run("sleep", "30", cancel=token), timeout=10)

        assert exc_info.value.exit_code == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_task_cancellation_reaps(self, capture: Capture):
        """Test cancelling the awaiting task terminates the process."""
        with mock.patch(
            "procwire.runtime.controller.terminate", wraps=termination.terminate
        ) as spy:
            task = asyncio.create_task(capture.run("sleep", "30"))
            await asyncio.sleep(0.3)
            task.cancel()

            with pytest.raises(asyncio.CancelledError):
                await asyncio.wait_for(task, timeout=10)

        assert spy.called


class TestRerun:
    """Test repeating a run."""

    @pytest.mark.asyncio
    async def test_rerun_same_output(self):
        """Test rerun launches the recorded invocation again."""
        capture = Capture(with_env(["A=A", "B=B"]))
        first = await capture.run("/bin/bash", "-c", "echo $A $B")
        second = await capture.rerun()

        assert first == second
        assert capture.exit_code == 0

    @pytest.mark.asyncio
    async def test_rerun_failure(self, capture: Capture):
        """Test rerun reports failures like run."""
        with pytest.raises(ProcessExitError):
            await capture.run("/bin/bash", "-c", "exit 4")

        with pytest.raises(ProcessExitError) as exc_info:
            await capture.rerun()
        assert exc_info.value.exit_code == 4


# =============================================================================
# Modifier Tests
# =============================================================================


class TestModifier:
    """Test the pre-launch modifier hook."""

    @pytest.mark.asyncio
    async def test_modifier_replaces_request(self):
        """Test a modifier can rewrite the launch request."""

        def rewrite(request: LaunchRequest) -> LaunchRequest:
            return request.replace(args=("-c", "echo modified"))

        capture = Capture(with_modifier(rewrite))
        output = await capture.run("/bin/bash", "-c", "echo original")

        assert output.stdout == b"modified\n"
        assert capture.last_request is not None
        assert capture.last_request.args == ("-c", "echo modified")
        # The recorded invocation is what the caller asked for
        assert capture.args == ["-c", "echo original"]

    @pytest.mark.asyncio
    async def test_modifier_returning_none_keeps_request(self):
        """Test None from the modifier launches the request unchanged."""
        seen: list[LaunchRequest] = []

        def observe(request: LaunchRequest) -> None:
            seen.append(request)

        capture = Capture(with_modifier(observe))
        output = await capture.run("/bin/bash", "-c", "echo same")

        assert output.stdout == b"same\n"
        assert len(seen) == 1
        assert seen[0].argv == ["/bin/bash", "-c", "echo same"]

    @pytest.mark.asyncio
    async def test_modifier_error_aborts_launch(self):
        """Test a raising modifier aborts before anything is spawned."""

        def refuse(request: LaunchRequest) -> None:
            raise RuntimeError("not allowed")

        capture = Capture(with_modifier(refuse))
        with mock.patch.object(asyncio, "create_subprocess_exec") as spawn:
            with pytest.raises(ModifierError):
                await capture.run("/bin/bash", "-c", "exit 0")

        spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_modifier_wrong_return_type(self):
        """Test a modifier returning something else is rejected."""
        capture = Capture(with_modifier(lambda request: ["not", "a", "request"]))

        with pytest.raises(ModifierError):
            await capture.run("/bin/bash", "-c", "exit 0")

    @pytest.mark.asyncio
    async def test_modifier_sees_isolation_kwargs(self):
        """Test the request carries process-group isolation by default."""
        seen: list[LaunchRequest] = []
        capture = Capture(with_modifier(seen.append), new_session=True)
        await capture.run("/bin/bash", "-c", "exit 0")

        assert seen[0].extra == {"start_new_session": True}


# =============================================================================
# Start/Stop Tests
# =============================================================================


class TestStartStop:
    """Test interactive start and graceful stop."""

    @pytest.mark.asyncio
    async def test_stop_before_start(self, capture: Capture):
        """Test stop without a started process."""
        with pytest.raises(NotStartedError, match="command was not started"):
            await capture.stop()
        assert capture.state == LifecycleState.NOT_STARTED

    @pytest.mark.asyncio
    async def test_wait_before_start(self, capture: Capture):
        """Test wait without a started process."""
        with pytest.raises(NotStartedError):
            await capture.wait()

    @pytest.mark.asyncio
    async def test_cat_roundtrip(self, capture: Capture):
        """Test writing to cat, closing input, and reading it back."""
        interaction = await capture.start("cat")
        assert capture.state == LifecycleState.RUNNING
        assert capture.pid is not None

        interaction.stdin.write(b"hello\n")
        await interaction.stdin.drain()
        await interaction.close_input()

        assert await interaction.read_stdout() == b"hello\n"
        assert await interaction.wait() == 0
        assert await capture.stop() == 0

        assert capture.state == LifecycleState.STOPPED
        assert capture.handle is None
        assert capture.pid is None

    @pytest.mark.asyncio
    async def test_echo_then_stop(self, capture: Capture):
        """Test stopping a process that already exited."""
        interaction = await capture.start("echo", "foo")

        assert await interaction.read_stdout() == b"foo\n"
        await interaction.wait()

        with mock.patch("procwire.runtime.controller.force_kill") as force:
            assert await capture.stop() == 0

        force.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_input_twice(self, capture: Capture):
        """Test closing input again is not an error."""
        interaction = await capture.start("cat")

        await interaction.close_input()
        await interaction.close_input()

        await capture.stop()

    @pytest.mark.asyncio
    async def test_stdout_lines(self, capture: Capture):
        """Test iterating stdout line by line."""
        interaction = await capture.start("/bin/bash", "-c", "echo a; echo b; echo c >&2")

        lines = [line async for line in interaction.stdout_lines()]
        errors = [line async for line in interaction.stderr_lines()]

        assert lines == ["a", "b"]
        assert errors == ["c"]
        await capture.stop()

    @pytest.mark.asyncio
    async def test_stop_running_process(self, capture: Capture):
        """Test stop ends a long-running process with SIGTERM."""
        await capture.start("sleep", "30")

        exit_code = await asyncio.wait_for(capture.stop(), timeout=10)

        assert exit_code == -signal.SIGTERM
        assert capture.exit_code == -signal.SIGTERM
        assert capture.handle is None

    @pytest.mark.asyncio
    async def test_stop_twice(self, capture: Capture):
        """Test a second stop has nothing left to stop."""
        await capture.start("sleep", "30")
        await capture.stop()

        with pytest.raises(NotStartedError):
            await capture.stop()

    @pytest.mark.asyncio
    async def test_wait_nonzero(self, capture: Capture):
        """Test wait raises on a non-zero exit and keeps the handle."""
        await capture.start("/bin/bash", "-c", "exit 3")

        with pytest.raises(ProcessExitError) as exc_info:
            await capture.wait()

        assert exc_info.value.exit_code == 3
        assert capture.exit_code == 3
        assert capture.handle is not None
        assert await capture.stop() == 3

    @pytest.mark.asyncio
    async def test_start_spawn_error(self, capture: Capture):
        """Test a failed start records nothing."""
        with pytest.raises(SpawnError):
            await capture.start("asdfasdf")

        assert capture.handle is None
        assert capture.state == LifecycleState.NOT_STARTED

    @pytest.mark.asyncio
    async def test_start_empty_name(self, capture: Capture):
        """Test an empty name is rejected by start."""
        with pytest.raises(ConfigurationError):
            await capture.start("")

    @pytest.mark.asyncio
    async def test_attach_failure_discards_process(self, capture: Capture):
        """Test a stream attach failure leaves no handle behind."""
        with mock.patch(
            "procwire.runtime.controller.attach",
            side_effect=StreamAttachError("stdout"),
        ):
            with pytest.raises(StreamAttachError):
                await capture.start("sleep", "30")

        assert capture.handle is None
        assert capture.state == LifecycleState.NOT_STARTED

    @pytest.mark.asyncio
    async def test_restart(self, capture: Capture):
        """Test restart relaunches with fresh streams."""
        first = await capture.start("echo", "foo")
        assert await first.read_stdout() == b"foo\n"
        await capture.stop()

        second = await capture.restart()

        assert second.streams is not first.streams
        assert await second.read_stdout() == b"foo\n"
        await capture.stop()
        assert capture.state == LifecycleState.STOPPED

    @pytest.mark.asyncio
    async def test_start_supersedes_previous(self, capture: Capture):
        """Test a second start replaces the handle without killing the first."""
        await capture.start("sleep", "30")
        first = capture.handle

        await capture.start("sleep", "30")
        try:
            assert capture.handle is not first
            assert first.process.returncode is None
        finally:
            first.process.kill()
            await first.process.wait()
            await capture.stop()

    @pytest.mark.asyncio
    async def test_superseded_scope_detached(self, capture: Capture):
        """Test a superseded process stops following the caller's token."""
        token = CancelToken()
        await capture.start("sleep", "30", cancel=token)
        first = capture.handle

        await capture.start("sleep", "30", cancel=token)
        try:
            token.cancel()

            assert capture.handle.scope.cancelled
            assert not first.scope.cancelled
            assert first.process.returncode is None
        finally:
            first.process.kill()
            await first.process.wait()
            await capture.stop()

    @pytest.mark.asyncio
    async def test_new_session_group(self, capture: Capture):
        """Test the child leads its own process group."""
        await capture.start("sleep", "30")
        try:
            assert os.getpgid(capture.pid) == capture.pid
        finally:
            await capture.stop()

    @pytest.mark.asyncio
    async def test_shared_group(self):
        """Test stop without session isolation signals the process only."""
        capture = Capture(stop_timeout=5.0, stop_poll_interval=0.2, new_session=False)
        await capture.start("sleep", "30")

        assert os.getpgid(capture.pid) == os.getpgid(0)
        assert await capture.stop() == -signal.SIGTERM


# =============================================================================
# Escalation Tests
# =============================================================================


class TestEscalation:
    """Test escalation from SIGTERM to SIGKILL."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_stop_escalates(self, capture: Capture, fake_child: list[str]):
        """Test a child ignoring SIGTERM is killed."""
        interaction = await capture.start(*fake_child, "--ignore-term", "--duration", "30")
        await _read_ready(interaction)

        exit_code = await capture.stop()

        assert exit_code == -signal.SIGKILL
        assert capture.handle is None

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_graceful_child_not_escalated(self, capture: Capture, fake_child: list[str]):
        """Test a cooperative child is never sent SIGKILL."""
        interaction = await capture.start(*fake_child, "--duration", "30")
        await _read_ready(interaction)

        with mock.patch("procwire.runtime.controller.force_kill") as force:
            exit_code = await capture.stop()

        assert exit_code == -signal.SIGTERM
        force.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_stop_timeout_keeps_handle(self, fake_child: list[str]):
        """Test the ceiling raises and a retry can still stop the process."""
        capture = Capture(stop_timeout=0.5, stop_poll_interval=0.1)
        interaction = await capture.start(*fake_child, "--ignore-term", "--duration", "30")
        await _read_ready(interaction)

        with mock.patch("procwire.runtime.controller.force_kill"):
            with pytest.raises(StopTimeoutError) as exc_info:
                await capture.stop()

        assert exc_info.value.pid == capture.pid
        assert capture.handle is not None
        assert capture.state == LifecycleState.STOPPING

        assert await capture.stop() == -signal.SIGKILL
        assert capture.handle is None
        assert capture.state == LifecycleState.STOPPED


# =============================================================================
# Kill Tests
# =============================================================================


class TestKill:
    """Test kill and kill timers."""

    @pytest.mark.asyncio
    async def test_kill_before_start(self, capture: Capture):
        """Test kill with nothing started."""
        with pytest.raises(NotRunningError, match="not running"):
            await capture.kill()

    @pytest.mark.asyncio
    async def test_kill_running(self, capture: Capture):
        """Test kill ends the process and clears the handle."""
        await capture.start("sleep", "30")

        exit_code = await asyncio.wait_for(capture.kill(), timeout=10)

        assert exit_code == -signal.SIGTERM
        assert capture.handle is None

        with pytest.raises(NotRunningError):
            await capture.kill()

    @pytest.mark.asyncio
    async def test_kill_quick_exit_not_forced(self):
        """Test a process exiting within the poll interval gets no SIGKILL."""
        capture = Capture(stop_poll_interval=1.0)
        await capture.start("true")

        with mock.patch("procwire.runtime.controller.force_kill") as force:
            exit_code = await capture.kill()

        assert exit_code in (0, -signal.SIGTERM)
        force.assert_not_called()

    @pytest.mark.asyncio
    async def test_kill_escalates(self, capture: Capture, fake_child: list[str]):
        """Test kill uses SIGKILL on a child ignoring SIGTERM."""
        interaction = await capture.start(*fake_child, "--ignore-term", "--duration", "30")
        await _read_ready(interaction)

        assert await capture.kill() == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_kill_after(self, capture: Capture):
        """Test kill_after fires at the deadline."""
        await capture.start("sleep", "30")
        task = capture.kill_after(datetime.now() + timedelta(milliseconds=100))

        outcome = await asyncio.wait_for(task, timeout=10)

        assert outcome.ok
        assert outcome.exit_code == -signal.SIGTERM
        assert capture.handle is None

    @pytest.mark.asyncio
    async def test_kill_timer_reports_on_queue(self, capture: Capture):
        """Test the outcome is also delivered on the results queue."""
        results: asyncio.Queue[KillOutcome] = asyncio.Queue()
        await capture.start("sleep", "30")

        task = capture.kill_timer(0.1, results)
        outcome = await asyncio.wait_for(results.get(), timeout=10)

        assert outcome.ok
        assert outcome is await task

    @pytest.mark.asyncio
    async def test_kill_timer_after_stop(self, capture: Capture):
        """Test a timer firing after stop reports NotRunningError."""
        await capture.start("sleep", "30")
        task = capture.kill_timer(0.3)
        await capture.stop()

        outcome = await asyncio.wait_for(task, timeout=10)

        assert not outcome.ok
        assert isinstance(outcome.error, NotRunningError)
        assert outcome.exit_code is None

    @pytest.mark.asyncio
    async def test_kill_after_past_deadline(self, capture: Capture):
        """Test a deadline in the past fires right away."""
        await capture.start("sleep", "30")

        task = capture.kill_after(datetime.now() - timedelta(seconds=5))
        outcome = await asyncio.wait_for(task, timeout=10)

        assert outcome.ok


# =============================================================================
# Cancellation Scope Tests
# =============================================================================


class TestCancellationScope:
    """Test how a caller's token relates to the started process."""

    @pytest.mark.asyncio
    async def test_outer_cancel_terminates(self, capture: Capture):
        """Test cancelling the caller's token asks the process to exit."""
        token = CancelToken()
        await capture.start("sleep", "30", cancel=token)

        token.cancel()

        with pytest.raises(ProcessExitError) as exc_info:
            await asyncio.wait_for(capture.wait(), timeout=10)
        assert exc_info.value.exit_code == -signal.SIGTERM

        assert await capture.stop() == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_stop_leaves_outer_token(self, capture: Capture):
        """Test stop never cancels the caller's token."""
        token = CancelToken()
        await capture.start("sleep", "30", cancel=token)

        await capture.stop()

        assert not token.cancelled

    @pytest.mark.asyncio
    async def test_already_cancelled_token(self, capture: Capture):
        """Test starting under a cancelled token terminates right away."""
        token = CancelToken()
        token.cancel()

        await capture.start("sleep", "30", cancel=token)

        with pytest.raises(ProcessExitError):
            await asyncio.wait_for(capture.wait(), timeout=10)
        await capture.stop()


# =============================================================================
# Record Tests
# =============================================================================


class TestRecord:
    """Test Capture serialization."""

    @pytest.mark.asyncio
    async def test_roundtrip(self, temp_workspace: Path):
        """Test a record restores the invocation."""
        capture = Capture(with_env(["A=A"]), with_dir(str(temp_workspace)))
        await capture.run("/bin/bash", "-c", "echo $A")

        restored = Capture.from_record(capture.to_record().dump_json())

        assert restored.name == "/bin/bash"
        assert restored.args == ["-c", "echo $A"]
        assert restored.env == ["A=A"]
        assert restored.dir == str(temp_workspace)
        assert (await restored.rerun()).stdout == b"A\n"

    def test_defaults_omitted(self):
        """Test fields at their default are dropped."""
        assert CaptureRecord(name="ls").dump() == {"name": "ls"}

    def test_empty_env_kept(self):
        """Test an empty environment is distinct from an inherited one."""
        record = CaptureRecord(name="ls", env=[])
        assert record.dump() == {"name": "ls", "env": []}

        restored = Capture.from_record(record.dump())
        assert restored.env == []

    def test_exit_code_kept(self):
        """Test a non-zero exit code is serialized."""
        record = CaptureRecord(name="ls", args=["-la"], exit_code=2)
        assert record.dump() == {"name": "ls", "args": ["-la"], "exit_code": 2}

    @pytest.mark.asyncio
    async def test_modifier_reapplied(self):
        """Test a modifier can be re-applied after loading a record."""
        record = {"name": "/bin/bash", "args": ["-c", "echo original"]}

        def rewrite(request: LaunchRequest) -> LaunchRequest:
            return request.replace(args=("-c", "echo loaded"))

        capture = Capture.from_record(record, with_modifier(rewrite))

        assert (await capture.rerun()).stdout == b"loaded\n"

    def test_repr(self, capture: Capture):
        """Test string representation."""
        repr_str = repr(capture)
        assert "state=not_started" in repr_str
        assert "pid=None" in repr_str
