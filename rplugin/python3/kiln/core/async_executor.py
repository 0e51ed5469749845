"""
AsyncExecutor - Standardized async execution patterns for the Kiln plugin.

Bridges synchronous pynvim command handlers and the asyncio event loop the
kernel layer runs on.
"""

import asyncio
import logging
from typing import Any, Awaitable, Optional

from .cancellation import CancellationError


class AsyncExecutor:
    """
    Centralized async execution management for the Kiln plugin.

    Handles event loop detection, proper task scheduling, and error handling
    for async operations within the synchronous pynvim command context.
    """

    def __init__(self, nvim, logger: Optional[logging.Logger] = None):
        """
        Initialize the AsyncExecutor.

        Args:
            nvim: The pynvim.Nvim instance for interacting with Neovim
            logger: Optional logger instance. If None, will create one.
        """
        self.nvim = nvim
        self._logger = logger or logging.getLogger("kiln.async_executor")

    def _notify_failure(self, error_context: str, error: BaseException):
        try:
            from ..utils.notifications import notify_user

            error_msg = str(error)
            self.nvim.async_call(lambda: notify_user(self.nvim, f"{error_context} failed: {error_msg}", level="error"))
        except Exception as notify_error:
            self._logger.error(f"Failed to notify user of {error_context} error: {notify_error}")

    async def execute_async(self, coro: Awaitable[Any], error_context: str = "operation") -> Any:
        """
        Execute an async coroutine with proper error handling.

        Cancellation is logged but never shown to the user.

        Args:
            coro: The coroutine to execute
            error_context: Context string for error messages

        Returns:
            The result of the coroutine execution
        """
        try:
            return await coro
        except CancellationError:
            self._logger.info(f"{error_context} cancelled")
            return None
        except Exception as e:
            self._logger.error(f"{error_context} failed: {e}")
            self._notify_failure(error_context, e)
            raise

    def execute_sync(self, coro: Awaitable[Any], error_context: str = "operation") -> Any:
        """
        Execute an async coroutine from a sync context with proper event loop handling.

        Args:
            coro: The coroutine to execute
            error_context: Context string for error messages

        Returns:
            The result of the coroutine execution, or None when it was scheduled
            on an already running loop.
        """
        # Command implementations return None early on validation failures
        if coro is None:
            return None

        try:
            loop = asyncio.get_event_loop()

            if loop.is_running():
                # pynvim sync commands cannot await; run in the background instead
                task = asyncio.ensure_future(self.execute_async(coro, error_context))

                def handle_task_exception(task):
                    if task.cancelled():
                        return
                    if task.exception():
                        # execute_async already notified the user
                        self._logger.error(f"Background task failed in {error_context}: {task.exception()}")

                task.add_done_callback(handle_task_exception)
                return None
            else:
                return loop.run_until_complete(self.execute_async(coro, error_context))

        except RuntimeError:
            # No event loop exists - create new one
            return asyncio.run(self.execute_async(coro, error_context))
