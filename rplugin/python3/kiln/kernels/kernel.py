"""
Kernel: the user facing handle for one kernel bound to one buffer identity.

A Kernel starts its KernelSession lazily, re-broadcasts the session's events
and tells apart a kernel that died (DEAD) from one the user disposed (DISPOSED).
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from ..core.cancellation import CancellationError, CancellationTokenSource
from ..core.events import EventChannel
from .dependencies import DependencyResponse
from .errors import SessionDisposedError
from .helpers import get_display_name_of_kernel_connection
from .session import KernelSession
from .types import DisplayOptions, KernelConnectionMetadata, KernelStatus

# Statuses that end a kernel's life without the user asking for it
_TERMINAL_STATUSES = (KernelStatus.DEAD, KernelStatus.DISPOSED)


class Kernel:
    def __init__(self, identity: str, metadata: KernelConnectionMetadata, notebook_provider,
                 resource: Optional[str] = None, error_handler=None, display: Optional[DisplayOptions] = None):
        self.identity = identity
        self.metadata = metadata
        self.resource = resource
        self.notebook_provider = notebook_provider
        self.error_handler = error_handler
        self.display = display or DisplayOptions()

        self.session: Optional[KernelSession] = None
        self.status = KernelStatus.UNKNOWN

        self.on_started: EventChannel["Kernel"] = EventChannel("kernel_started")
        self.on_restarted: EventChannel["Kernel"] = EventChannel("kernel_restarted")
        self.on_status_changed: EventChannel[KernelStatus] = EventChannel("kernel_status")
        self.on_iopub_message: EventChannel[Dict[str, Any]] = EventChannel("kernel_iopub")
        self.on_disposed: EventChannel["Kernel"] = EventChannel("kernel_disposed")

        self._start_task: Optional["asyncio.Task[KernelSession]"] = None
        self._dispose_task: Optional[asyncio.Task] = None
        self._cancel_source = CancellationTokenSource()
        self._session_subscriptions: List[Callable[[], None]] = []
        self._disposed = False
        self._logger = logging.getLogger(f"kiln.kernel.{metadata.id.split('.')[-1][:8]}")

    @property
    def id(self) -> str:
        return self.metadata.id

    @property
    def display_name(self) -> str:
        return get_display_name_of_kernel_connection(self.metadata)

    @property
    def kernel_id(self) -> Optional[str]:
        return self.session.kernel_id if self.session else None

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def is_started(self) -> bool:
        return self.session is not None and self.session.is_connected

    def _set_status(self, status: KernelStatus) -> None:
        if status == self.status:
            return
        self._logger.debug(f"Kernel status {self.status.value} -> {status.value}")
        self.status = status
        self.on_status_changed.fire(status)

    def _on_session_status(self, status: KernelStatus) -> None:
        if self._disposed:
            return
        # The session going away on its own means the kernel is gone
        if status in _TERMINAL_STATUSES:
            self._set_status(KernelStatus.DEAD)
            return
        self._set_status(status)

    def _attach(self, session: KernelSession) -> None:
        self.session = session
        self._session_subscriptions = [
            session.on_status_changed.subscribe(self._on_session_status),
            session.on_iopub_message.forward_to(self.on_iopub_message),
        ]

    def _detach(self) -> Optional[KernelSession]:
        for unsubscribe in self._session_subscriptions:
            unsubscribe()
        self._session_subscriptions = []
        session, self.session = self.session, None
        return session

    async def start(self) -> KernelSession:
        """
        Start the kernel, or wait for the start already in progress.

        Concurrent callers share one attempt. A failed start leaves the kernel
        DEAD; calling start again tries anew.
        """
        if self._disposed:
            raise SessionDisposedError("Kernel has been disposed")
        if self.session is not None and self.session.is_connected:
            return self.session
        if self._start_task is None:
            self._start_task = asyncio.ensure_future(self._start())
        return await asyncio.shield(self._start_task)

    async def _start(self) -> KernelSession:
        if self.session is not None:
            await self._detach().dispose()

        self._set_status(KernelStatus.STARTING)
        try:
            session = await self._create_session()
        except (Exception, asyncio.CancelledError):
            self._start_task = None
            if not self._disposed:
                self._set_status(KernelStatus.DEAD)
            raise

        self._start_task = None
        if self._disposed:
            await session.dispose()
            raise SessionDisposedError("Kernel was disposed while starting")

        self._attach(session)
        self._set_status(KernelStatus.IDLE if session.status == KernelStatus.UNKNOWN else session.status)
        self._logger.info(f"Kernel {session.kernel_id} started for {self.identity}")
        self.on_started.fire(self)
        return session

    async def _create_session(self) -> KernelSession:
        retried = False
        while True:
            try:
                return await self.notebook_provider.create_session(
                    self.metadata, self.resource, self.display, self._cancel_source.token
                )
            except CancellationError:
                raise
            except Exception as e:
                if self.error_handler is None or self._disposed:
                    raise
                response = await self.error_handler.handle_kernel_error(
                    e, "start", self.metadata, self.resource, self.display
                )
                if response == DependencyResponse.OK and not retried:
                    self._logger.info("Dependencies installed, starting the kernel again")
                    retried = True
                    continue
                if response in (DependencyResponse.CANCEL, DependencyResponse.SELECT_ANOTHER):
                    raise CancellationError(f"Kernel start cancelled: {e}") from e
                raise

    async def execute(self, code: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Run code, starting the kernel first if needed, and return the execute_reply content."""
        session = await self.start()
        return await session.execute(code, timeout=timeout)

    async def interrupt(self) -> None:
        if self._disposed:
            raise SessionDisposedError("Kernel has been disposed")
        if self.session is None:
            self._logger.info("Interrupt requested but the kernel is not running")
            return
        await self.session.interrupt(self._cancel_source.token)

    async def restart(self) -> None:
        """Restart the kernel; a kernel that is not running is started instead."""
        if self._disposed:
            raise SessionDisposedError("Kernel has been disposed")
        if self.session is None or self.session.is_disposed:
            await self.start()
            return

        session = self.session
        self._set_status(KernelStatus.RESTARTING)
        try:
            await session.restart(self._cancel_source.token)
        finally:
            # A failed restart leaves the session on its previous connection
            self._on_session_status(session.status)
        self._logger.info(f"Kernel restarted, now {session.kernel_id}")
        self.on_restarted.fire(self)

    def dispose(self) -> Optional[asyncio.Task]:
        """
        Dispose the kernel.

        The status change and the disposed event happen before this returns;
        shutting the kernel process down continues in the returned task.
        """
        if self._disposed:
            return self._dispose_task
        self._disposed = True
        self._logger.info(f"Disposing kernel for {self.identity}")

        self._cancel_source.cancel()
        session = self._detach()
        self.status = KernelStatus.DISPOSED
        self.on_status_changed.fire(KernelStatus.DISPOSED)
        self.on_disposed.fire(self)

        for channel in (self.on_started, self.on_restarted, self.on_status_changed,
                        self.on_iopub_message, self.on_disposed):
            channel.dispose()

        self._dispose_task = asyncio.ensure_future(self._teardown(session))
        return self._dispose_task

    async def _teardown(self, session: Optional[KernelSession]) -> None:
        if session is None:
            return
        try:
            await session.dispose()
        except Exception as e:
            self._logger.error(f"Error disposing kernel session: {e}")

    async def shutdown(self) -> None:
        task = self.dispose()
        if task is not None:
            await task
