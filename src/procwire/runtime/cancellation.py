"""Cancellation tokens for spawned processes.

A token is cancelled at most once. Callbacks registered on it run
synchronously inside cancel(), so whatever a callback does (e.g. sending a
termination signal) has happened by the time cancel() returns.

Tokens form a tree: a child derived with child() is cancelled when its
parent is, but cancelling the child never touches the parent. This is what
lets a controller stop its own process without cancelling the caller's
wider scope.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

__all__ = ["CancelToken"]

logger = logging.getLogger(__name__)


class CancelToken:
    """A cancellable scope with parent/child propagation.

    Example:
        outer = CancelToken()
        inner = outer.child()

        inner.add_callback(lambda: print("inner cancelled"))
        inner.cancel()            # outer is untouched
        assert not outer.cancelled
    """

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self._waiters: list[asyncio.Future[None]] = []
        self._parent = parent
        if parent is not None:
            parent.add_callback(self.cancel)

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called (directly or via a parent)."""
        return self._cancelled

    def child(self) -> CancelToken:
        """Derive a token cancelled together with this one."""
        return CancelToken(parent=self)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancellation, immediately if already cancelled."""
        if self._cancelled:
            self._invoke(callback)
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def detach(self) -> None:
        """Stop listening to the parent token."""
        if self._parent is not None:
            self._parent.remove_callback(self.cancel)
            self._parent = None

    def cancel(self) -> None:
        """Cancel this token and every token derived from it."""
        if self._cancelled:
            return
        self._cancelled = True

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._invoke(callback)

        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._cancelled:
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    @staticmethod
    def _invoke(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            logger.warning(f"Error in cancel callback {callback!r}: {e}")

    def __repr__(self) -> str:
        return f"CancelToken(cancelled={self._cancelled})"
