"""Invocation options and the concrete launch request.

Options are plain callables applied to a Capture, so they can be given at
construction or re-applied later with Capture.with_options() (the modifier
hook is not serializable and must be re-applied after loading a record).
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from .controller import Capture
    from .wiring import WiredIO

__all__ = [
    "CaptureRecord",
    "LaunchRequest",
    "Modifier",
    "Option",
    "env_to_mapping",
    "with_dir",
    "with_env",
    "with_io",
    "with_modifier",
]


@dataclass(frozen=True)
class LaunchRequest:
    """Concrete description of one process launch.

    Attributes:
        name: Program to execute
        args: Arguments, excluding the program name
        dir: Working directory ("" = inherit)
        env: KEY=VALUE entries (None = inherit, [] = empty environment)
        extra: Additional keyword arguments for the spawn call
    """

    name: str
    args: tuple[str, ...] = ()
    dir: str = ""
    env: tuple[str, ...] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def argv(self) -> list[str]:
        return [self.name, *self.args]

    @property
    def cwd(self) -> str | None:
        return self.dir or None

    def replace(self, **changes: Any) -> LaunchRequest:
        """Return a copy with the given fields changed."""
        return dataclasses.replace(self, **changes)


# A modifier returns a replacement request, or None to keep the one it got.
Modifier = Callable[[LaunchRequest], "LaunchRequest | None"]

Option = Callable[["Capture"], None]


def env_to_mapping(env: Sequence[str] | None) -> dict[str, str] | None:
    """Convert KEY=VALUE entries to a mapping.

    None stays None (inherit). Later duplicates win; entries without "="
    are ignored.
    """
    if env is None:
        return None
    mapping: dict[str, str] = {}
    for entry in env:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            continue
        mapping[key] = value
    return mapping


def with_env(env: Sequence[str] | None) -> Option:
    """Set the environment (None inherits, an empty list clears it)."""
    def apply(c: Capture) -> None:
        c.env = list(env) if env is not None else None
    return apply


def with_dir(dir: str) -> Option:
    """Set the working directory."""
    def apply(c: Capture) -> None:
        c.dir = str(dir)
    return apply


def with_modifier(fn: Modifier | None) -> Option:
    """Install a hook run on the launch request right before spawning.

    The hook may return a replacement LaunchRequest (build it with
    request.replace(...)) or None to launch the request unchanged. Any
    exception aborts the launch with ModifierError.
    """
    def apply(c: Capture) -> None:
        c.modifier = fn
    return apply


def with_io(io: WiredIO | None) -> Option:
    """Route run()'s standard streams through a wired IO instead of buffers."""
    def apply(c: Capture) -> None:
        c.io = io
    return apply


class CaptureRecord(BaseModel):
    """Serializable shape of a Capture.

    Fields at their default are dropped by dump()/dump_json(). env keeps the
    difference between None (inherit) and [] (empty environment). The
    modifier hook is not part of the record; re-apply it with
    Capture.with_options() after loading.
    """

    model_config = ConfigDict(extra="ignore")

    name: str
    args: list[str] = Field(default_factory=list)
    dir: str = ""
    env: list[str] | None = None
    exit_code: int = 0

    def dump(self) -> dict[str, Any]:
        return self.model_dump(exclude_defaults=True)

    def dump_json(self) -> str:
        return self.model_dump_json(exclude_defaults=True)
