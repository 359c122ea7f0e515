"""
Cooperative cancellation for event stream connections.

A CancellationToken is a one-way, idempotent signal. Tokens can be linked to
any number of parent tokens and to a timeout, so a single composite token
fires as soon as any of its sources fires (client disconnect, process
shutdown, connection lifetime). Dependents only ever observe or cancel a
token; they never learn which source fired it.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised when a guarded operation is abandoned because its token fired."""


class CancellationToken:
    """
    One-way cancellation signal, optionally linked to parent tokens.

    Usage:
        shutdown = CancellationToken()
        with CancellationToken.any(shutdown, disconnected, timeout=30.0) as token:
            if await token.sleep(2.0):
                ...  # cancelled mid-wait
    """

    def __init__(self, *parents: "CancellationToken", timeout: Optional[float] = None):
        """
        Initialize the token.

        Args:
            parents: Tokens whose cancellation also cancels this token
            timeout: Optional delay in seconds after which the token cancels
                itself (requires a running event loop)
        """
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], Any]] = []
        self._unlinks: List[Callable[[], None]] = []
        self._timer: Optional[asyncio.TimerHandle] = None

        for parent in parents:
            self._unlinks.append(parent.register(self.cancel))
        if timeout is not None:
            self.cancel_after(timeout)

    @classmethod
    def any(cls, *sources: "CancellationToken", timeout: Optional[float] = None) -> "CancellationToken":
        """Create a composite token that fires when any source fires."""
        return cls(*sources, timeout=timeout)

    @property
    def cancelled(self) -> bool:
        """Whether the token has fired."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Fire the token. Calling it again has no effect."""
        if self._event.is_set():
            return

        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in cancellation callback: {e}")

    def cancel_after(self, delay: float) -> None:
        """Schedule the token to fire after `delay` seconds."""
        if self.cancelled:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(max(delay, 0.0), self.cancel)

    def register(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """
        Register a callback to run when the token fires.

        The callback runs immediately if the token has already fired.

        Returns:
            A function that unregisters the callback
        """
        if self.cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def unregister() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return unregister

    def close(self) -> None:
        """Detach from parent tokens and drop the pending timeout."""
        for unlink in self._unlinks:
            unlink()
        self._unlinks.clear()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def __enter__(self) -> "CancellationToken":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    async def wait(self) -> None:
        """Wait until the token fires."""
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """
        Wait for `delay` seconds unless the token fires first.

        Returns:
            True if the token fired before the delay elapsed
        """
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def guard(self, coro: Awaitable[T]) -> T:
        """
        Await `coro`, abandoning it as soon as the token fires.

        Raises:
            OperationCancelled: If the token fired before `coro` completed
        """
        if self.cancelled:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise OperationCancelled()

        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Guarded operation failed while cancelling: {task.exception()!r}")
        raise OperationCancelled()


__all__ = [
    "CancellationToken",
    "OperationCancelled",
]
