"""One-shot captured executions that can be repeated.

capture() runs a program to completion with stdout and stderr combined and
returns a Result holding everything needed to run it again:

    result = await capture(["A=1"], "/bin/bash", "-c", "echo $A")
    again = await result.recapture()
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict, Field

from .errors import ProcessExitError
from .runtime import CancelToken, Capture, with_env

__all__ = ["Result", "capture"]

logger = logging.getLogger(__name__)


class Result(BaseModel):
    """A single captured execution.

    Attributes:
        name: Program that ran
        args: Arguments, excluding the program name
        env: Environment passed in (None = inherited)
        output: Combined stdout/stderr, decoded as UTF-8
        exit_code: Exit code. 0 also when the program never ran, so check
            for an exception before trusting it.
    """

    model_config = ConfigDict(extra="ignore")

    name: str
    args: list[str] = Field(default_factory=list)
    env: list[str] | None = None
    output: str = ""
    exit_code: int = 0

    async def recapture(self, cancel: CancelToken | None = None) -> Result:
        """Run the same program again, recording a new Result."""
        return await capture(self.env, self.name, *self.args, cancel=cancel)


async def capture(
    env: Sequence[str] | None,
    name: str,
    *args: str,
    cancel: CancelToken | None = None,
) -> Result:
    """Run name with args and capture the combined output.

    env behaves as in with_env(): None inherits, an empty list gives the
    program an empty environment.

    Raises:
        ProcessExitError: Non-zero exit; its result attribute holds the Result
        SpawnError: The program could not be started
    """
    runner = Capture(with_env(env))
    try:
        output = await runner.combined_output(name, *args, cancel=cancel)
    except ProcessExitError as e:
        e.result = Result(
            name=name,
            args=list(args),
            env=runner.env,
            output=e.stdout.decode(errors="replace"),
            exit_code=e.exit_code,
        )
        raise

    return Result(
        name=name,
        args=list(args),
        env=runner.env,
        output=output.decode(errors="replace"),
        exit_code=runner.exit_code,
    )
