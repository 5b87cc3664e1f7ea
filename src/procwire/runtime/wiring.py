"""IO pumps bridging caller-supplied streams to a child's standard streams.

wire_io() opens one anonymous pipe per supplied source/sink and starts a
background pump for it:

    source.read() -> pipe -> child stdin
    child stdout  -> pipe -> sink.write()
    child stderr  -> pipe -> sink.write()

Pumps run in worker threads (anyio.to_thread) since caller streams are
ordinary blocking file-like objects. They are fire-and-forget: errors other
than end-of-stream are logged, never raised to the caller.
"""

from __future__ import annotations

import asyncio
import codecs
import io
import logging
import os
import subprocess
import sys
from collections.abc import Callable
from typing import IO, Any, BinaryIO

import anyio
import anyio.to_thread

__all__ = [
    "WiredIO",
    "wire_io",
    "interactive_io",
    "CHUNK_SIZE",
]

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def _sink_writer(dst: Any) -> tuple[Callable[[bytes], None], Callable[[], None]]:
    """Return write/finish callables that accept bytes for any sink.

    Text sinks get their underlying binary buffer when they have one, and
    incrementally decoded UTF-8 otherwise, so a multibyte character split
    across chunks is not mangled.
    """
    target = dst
    decoder: codecs.IncrementalDecoder | None = None
    if isinstance(dst, io.TextIOBase):
        buffer = getattr(dst, "buffer", None)
        if buffer is not None:
            # Text already written to the wrapper must land first
            dst.flush()
            target = buffer
        else:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    flush = getattr(target, "flush", None)

    def write(chunk: bytes) -> None:
        target.write(decoder.decode(chunk) if decoder is not None else chunk)
        if flush is not None:
            flush()

    def finish() -> None:
        if decoder is not None:
            tail = decoder.decode(b"", final=True)
            if tail:
                target.write(tail)

    return write, finish


def _copy(src: Any, dst: Any) -> int:
    """Copy src to dst until end-of-stream, returning the byte count."""
    # read1 returns what is available instead of waiting for a full chunk
    read = getattr(src, "read1", None) or src.read
    write, finish = _sink_writer(dst)
    total = 0
    while True:
        chunk = read(CHUNK_SIZE)
        if not chunk:
            break
        if isinstance(chunk, str):
            chunk = chunk.encode()
        write(chunk)
        total += len(chunk)
    finish()
    return total


def _copy_and_close(src: Any, dst: Any, owned: Any) -> int:
    try:
        return _copy(src, dst)
    finally:
        owned.close()


class WiredIO:
    """Standard stream dispositions for a child, plus their pumps.

    Each of stdin/stdout/stderr is what the spawn call receives: a file
    descriptor, subprocess.DEVNULL (unset), or None (inherit the caller's).

    A WiredIO is consumed by one launch: release_child_ends() closes the
    parent's copies of the child-side pipe ends so the pumps see
    end-of-stream once the child exits.
    """

    def __init__(self) -> None:
        self.stdin: int | None = subprocess.DEVNULL
        self.stdout: int | None = subprocess.DEVNULL
        self.stderr: int | None = subprocess.DEVNULL
        self._child_fds: list[int] = []
        self._pumps: dict[str, asyncio.Task[None]] = {}
        self._used = False

    @property
    def used(self) -> bool:
        """Whether a process has already been launched with this IO."""
        return self._used

    @property
    def pumps(self) -> list[asyncio.Task[None]]:
        return list(self._pumps.values())

    def stdio_kwargs(self) -> dict[str, Any]:
        return {"stdin": self.stdin, "stdout": self.stdout, "stderr": self.stderr}

    def mark_used(self) -> None:
        self._used = True

    def release_child_ends(self) -> None:
        """Close the parent's copies of the pipe ends handed to the child."""
        fds, self._child_fds = self._child_fds, []
        for fd in fds:
            _close_fd(fd)

    def close_input(self) -> None:
        """Close the child-side input end held by the caller.

        Not having stdin wired is not an error. The stdin disposition falls
        back to the null device so no stale descriptor reaches a spawn.
        """
        fd = self.stdin
        if isinstance(fd, int) and fd in self._child_fds:
            self._child_fds.remove(fd)
            _close_fd(fd)
            self.stdin = subprocess.DEVNULL

    async def wait(self, timeout: float | None = None) -> None:
        """Wait until every pump has finished.

        Raises:
            TimeoutError: If the pumps are still running after timeout
        """
        await self._gather(list(self._pumps.values()), timeout)

    async def wait_output(self, timeout: float | None = None) -> None:
        """Wait for the stdout/stderr pumps only.

        The stdin pump may legitimately outlive the child when its source
        never reaches end-of-stream.
        """
        tasks = [task for label, task in self._pumps.items() if label != "stdin"]
        await self._gather(tasks, timeout)

    @staticmethod
    async def _gather(tasks: list[asyncio.Task[None]], timeout: float | None) -> None:
        if not tasks:
            return
        with anyio.fail_after(timeout):
            await asyncio.gather(*tasks)

    def _add_child_fd(self, fd: int) -> int:
        self._child_fds.append(fd)
        return fd

    def _start_pump(self, label: str, src: Any, dst: Any, owned: Any) -> None:
        self._pumps[label] = asyncio.create_task(_pump(label, src, dst, owned))

    def __repr__(self) -> str:
        return (
            f"WiredIO(stdin={self.stdin}, stdout={self.stdout}, "
            f"stderr={self.stderr}, pumps={len(self._pumps)}, used={self._used})"
        )


async def _pump(label: str, src: Any, dst: Any, owned: Any) -> None:
    try:
        count = await anyio.to_thread.run_sync(_copy_and_close, src, dst, owned)
        logger.debug(f"Pump {label} finished after {count} bytes")
    except Exception as e:
        # Stream bridging is best-effort once detached from the caller
        logger.warning(f"Pump {label} failed: {type(e).__name__}: {e}")


def _close_fd(fd: int) -> None:
    try:
        os.close(fd)
    except OSError:
        pass


def wire_io(
    stdin: IO[Any] | None = None,
    stdout: IO[Any] | None = None,
    stderr: IO[Any] | None = None,
) -> WiredIO:
    """Bridge caller streams to a child's standard streams.

    Must be called from a running event loop; returns immediately with the
    pumps already running. Streams left as None are connected to the null
    device.

    Args:
        stdin: Readable source copied into the child's stdin
        stdout: Writable sink receiving the child's stdout
        stderr: Writable sink receiving the child's stderr

    Returns:
        WiredIO to pass to with_io()
    """
    wired = WiredIO()

    try:
        if stdin is not None:
            read_fd, write_fd = os.pipe()
            wired.stdin = wired._add_child_fd(read_fd)
            writer: BinaryIO = os.fdopen(write_fd, "wb", buffering=0)
            wired._start_pump("stdin", stdin, writer, writer)

        if stdout is not None:
            read_fd, write_fd = os.pipe()
            wired.stdout = wired._add_child_fd(write_fd)
            reader: BinaryIO = os.fdopen(read_fd, "rb", buffering=0)
            wired._start_pump("stdout", reader, stdout, reader)

        if stderr is not None:
            read_fd, write_fd = os.pipe()
            wired.stderr = wired._add_child_fd(write_fd)
            reader = os.fdopen(read_fd, "rb", buffering=0)
            wired._start_pump("stderr", reader, stderr, reader)
    except OSError:
        # Without the child ends every started pump reaches end-of-stream
        wired.release_child_ends()
        raise

    logger.debug(f"Wired IO: {wired!r}")
    return wired


def _fileno(stream: Any) -> int | None:
    try:
        return stream.fileno()
    except (AttributeError, OSError, ValueError):
        return None


def interactive_io(
    stdin: IO[Any] | None = None,
    stdout: IO[Any] | None = None,
    stderr: IO[Any] | None = None,
) -> WiredIO:
    """Hand the caller's own streams straight to the child, without pumps.

    Defaults to this process's stdin/stdout/stderr. A stream without a real
    file descriptor is inherited instead.
    """
    wired = WiredIO()
    wired.stdin = _fileno(stdin if stdin is not None else sys.stdin)
    wired.stdout = _fileno(stdout if stdout is not None else sys.stdout)
    wired.stderr = _fileno(stderr if stderr is not None else sys.stderr)
    return wired
