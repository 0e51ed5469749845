"""
Cooperative cancellation for long-running kernel operations.

A CancellationTokenSource is owned by whoever starts an operation (usually a
command handler); the token is passed down to every await that may take a
while. Cancellation surfaces as CancellationError, which is never reported to
the user as a failure.
"""
import asyncio
import logging
from typing import Any, Awaitable, Optional

from .events import EventChannel

_logger = logging.getLogger("kiln.cancellation")


class CancellationError(Exception):
    """Raised when an operation was cancelled through its CancellationToken."""

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)


class CancellationToken:
    def __init__(self):
        self._cancelled = False
        self.on_cancelled: EventChannel[None] = EventChannel("cancellation")

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError()

    async def wait(self) -> None:
        """Wait until the token is cancelled."""
        if self._cancelled:
            return
        future = asyncio.get_running_loop().create_future()

        def resolve(_):
            if not future.done():
                future.set_result(None)

        unsubscribe = self.on_cancelled.subscribe(resolve)
        try:
            await future
        finally:
            unsubscribe()

    def _cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.on_cancelled.fire(None)
        self.on_cancelled.dispose()


class CancellationTokenSource:
    def __init__(self):
        self.token = CancellationToken()

    def cancel(self) -> None:
        self.token._cancel()

    def dispose(self) -> None:
        self.token.on_cancelled.dispose()


async def wait_for_cancellable(
    aw: Awaitable[Any], token: Optional[CancellationToken] = None, timeout: Optional[float] = None
) -> Any:
    """
    Await aw, giving up when the token is cancelled or the timeout elapses.

    The inner awaitable is cancelled when we give up.

    Raises:
        CancellationError: The token was cancelled first.
        asyncio.TimeoutError: The timeout elapsed first.
    """
    if token is None:
        return await asyncio.wait_for(aw, timeout)

    task = asyncio.ensure_future(aw)
    if token.is_cancelled:
        task.cancel()
        raise CancellationError()

    cancel_waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, cancel_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    if cancel_waiter in done:
        raise CancellationError()
    raise asyncio.TimeoutError()


async def wait_or_default(aw: Awaitable[Any], timeout: float, default: Any = None) -> Any:
    """
    Wait at most timeout seconds for aw and return default if it is still pending.

    Unlike asyncio.wait_for, the inner awaitable keeps running after the timeout.
    Exceptions raised by it after we stopped waiting are logged, not propagated.
    """
    task = asyncio.ensure_future(aw)
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        if task.cancelled():
            return default
        return task.result()

    def consume(t):
        if not t.cancelled() and t.exception() is not None:
            _logger.debug(f"Background operation failed after timeout: {t.exception()}")

    task.add_done_callback(consume)
    return default
