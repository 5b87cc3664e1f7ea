"""The live standard-stream triple of a started process."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..errors import StreamAttachError

if TYPE_CHECKING:
    from .controller import Capture

__all__ = ["StreamTriple", "Interaction", "attach"]

logger = logging.getLogger(__name__)

STREAM_ORDER = ("stdin", "stdout", "stderr")


@dataclass
class StreamTriple:
    """stdin/stdout/stderr of one live process.

    Attributes:
        stdin: Writable end of the child's standard input
        stdout: Readable end of the child's standard output
        stderr: Readable end of the child's standard error
    """

    stdin: asyncio.StreamWriter | None
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    async def close_input(self) -> None:
        """Signal end-of-input to the child.

        Not having stdin attached is not an error, and neither is a child
        that already went away.
        """
        if self.stdin is None or self.stdin.is_closing():
            return
        self.stdin.close()
        try:
            await self.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass

    def discard(self) -> None:
        """Close everything without waiting; readers see end-of-stream."""
        _discard([self.stdin, self.stdout, self.stderr])


def _discard(conduits: list[asyncio.StreamWriter | asyncio.StreamReader | None]) -> None:
    for conduit in conduits:
        if isinstance(conduit, asyncio.StreamWriter):
            conduit.close()
        elif isinstance(conduit, asyncio.StreamReader):
            conduit.feed_eof()


def attach(process: asyncio.subprocess.Process) -> StreamTriple:
    """Collect the three conduits of a freshly spawned process.

    Conduits are taken in a fixed order (stdin, stdout, stderr). If any one
    is missing, every conduit already collected is closed before
    StreamAttachError is raised; the caller still owns the process and is
    expected to terminate it.
    """
    arena: list[asyncio.StreamWriter | asyncio.StreamReader | None] = []
    for name in STREAM_ORDER:
        conduit = getattr(process, name, None)
        if conduit is None:
            logger.debug(f"Missing {name} on pid={process.pid}, discarding {len(arena)} conduit(s)")
            _discard(arena)
            raise StreamAttachError(name, "no pipe on spawned process")
        arena.append(conduit)

    stdin, stdout, stderr = arena
    return StreamTriple(stdin=stdin, stdout=stdout, stderr=stderr)  # type: ignore[arg-type]


async def _lines(reader: asyncio.StreamReader | None) -> AsyncIterator[str]:
    if reader is None:
        return
    async for raw in reader:
        yield raw.decode(errors="replace").rstrip("\r\n")


class Interaction:
    """A started process: its stream triple plus lifecycle control.

    The triple is borrowed from the controller; after a restart, take the
    new Interaction instead of holding on to old streams.

    Example:
        interaction = await capture.start("cat")
        interaction.stdin.write(b"hello\\n")
        await interaction.close_input()
        async for line in interaction.stdout_lines():
            print(line)
        await interaction.stop()
    """

    def __init__(self, streams: StreamTriple, controller: Capture) -> None:
        self.streams = streams
        self.controller = controller

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self.streams.stdin

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.streams.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.streams.stderr

    async def close_input(self) -> None:
        await self.streams.close_input()

    def stdout_lines(self) -> AsyncIterator[str]:
        """Iterate stdout line by line, without line endings."""
        return _lines(self.streams.stdout)

    def stderr_lines(self) -> AsyncIterator[str]:
        """Iterate stderr line by line, without line endings."""
        return _lines(self.streams.stderr)

    async def read_stdout(self) -> bytes:
        """Read stdout to end-of-stream."""
        if self.streams.stdout is None:
            return b""
        return await self.streams.stdout.read()

    async def read_stderr(self) -> bytes:
        """Read stderr to end-of-stream."""
        if self.streams.stderr is None:
            return b""
        return await self.streams.stderr.read()

    async def stop(self) -> int:
        return await self.controller.stop()

    async def wait(self) -> int:
        return await self.controller.wait()

    async def kill(self) -> int:
        return await self.controller.kill()
