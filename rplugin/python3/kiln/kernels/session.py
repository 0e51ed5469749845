"""
KernelSession: the protocol state machine around one kernel connection.

States: IDLE -> CONNECTING -> CONNECTED -> (RESTARTING -> CONNECTED | DISCONNECTING) -> DISPOSED

A session owns one active KernelConnection and, while restarting, one pending
replacement. connect() either reaches CONNECTED or leaves the session DISPOSED.
connect() and restart() are serialized by a lock.
"""
import asyncio
import enum
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from ..core.cancellation import CancellationError, CancellationToken, wait_for_cancellable
from ..core.events import EventChannel
from .errors import (
    KernelConnectionTimeoutError,
    KernelDiedError,
    KernelInterruptTimeoutError,
    KilnError,
    SessionDisposedError,
)
from .kernel_connection import KernelConnection
from .types import KernelConnectionMetadata, KernelStatus


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RESTARTING = "restarting"
    DISCONNECTING = "disconnecting"
    DISPOSED = "disposed"


class KernelSession:
    """
    Subclasses provide _create_connection() and may override _release_resources().

    Events:
        on_status_changed: KernelStatus of the active connection
        on_iopub_message: every IOPub message of the active connection
        on_restart_session_created: kernel id of a replacement that is not yet ready
        on_restart_session_used: kernel id of a replacement that took over
        on_disposed: fired once, when the session is disposed
    """

    def __init__(self, metadata: KernelConnectionMetadata, working_directory: str,
                 launch_timeout: float = 60.0, interrupt_timeout: float = 10.0,
                 resource: Optional[str] = None):
        self.session_id = uuid.uuid4().hex
        self.metadata = metadata
        self.working_directory = working_directory
        self.launch_timeout = launch_timeout
        self.interrupt_timeout = interrupt_timeout
        self.resource = resource

        self.state = SessionState.IDLE
        self.connection: Optional[KernelConnection] = None
        self.restart_connection: Optional[KernelConnection] = None

        self.on_status_changed: EventChannel[KernelStatus] = EventChannel("session_status")
        self.on_iopub_message: EventChannel[Dict[str, Any]] = EventChannel("session_iopub")
        self.on_restart_session_created: EventChannel[str] = EventChannel("restart_session_created")
        self.on_restart_session_used: EventChannel[str] = EventChannel("restart_session_used")
        self.on_disposed: EventChannel[None] = EventChannel("session_disposed")

        self._lock = asyncio.Lock()
        self._connection_subscriptions: List[Callable[[], None]] = []
        self._resources_released = False
        self._logger = logging.getLogger(f"kiln.session.{self.session_id[:8]}")

    @property
    def is_connected(self) -> bool:
        return (
            self.state in (SessionState.CONNECTED, SessionState.RESTARTING)
            and self.connection is not None
            and self.connection.is_alive
        )

    @property
    def is_disposed(self) -> bool:
        return self.state == SessionState.DISPOSED

    @property
    def kernel_id(self) -> Optional[str]:
        return self.connection.id if self.connection else None

    @property
    def status(self) -> KernelStatus:
        if self.state == SessionState.DISPOSED:
            return KernelStatus.DISPOSED
        if self.connection is None:
            return KernelStatus.UNKNOWN
        return self.connection.status

    def _ensure_not_disposed(self) -> None:
        if self.state == SessionState.DISPOSED:
            raise SessionDisposedError()

    def _create_connection(self) -> KernelConnection:
        raise NotImplementedError

    def _release_resources(self) -> None:
        """Drop references to server side managers. Called exactly once."""

    async def _start_connection(self, connection: KernelConnection,
                                on_started: Optional[Callable[[KernelConnection], None]] = None) -> None:
        await connection.start()
        if on_started is not None:
            on_started(connection)
        await connection.wait_for_ready(self.launch_timeout)

    async def _open(self, cancel_token: Optional[CancellationToken],
                    on_started: Optional[Callable[[KernelConnection], None]] = None) -> KernelConnection:
        """
        Create a connection and wait until it is ready, within the launch timeout.

        On any failure the connection is discarded and a typed error raised.
        """
        connection = self._create_connection()
        try:
            await wait_for_cancellable(self._start_connection(connection, on_started), cancel_token,
                                       self.launch_timeout)
        except asyncio.TimeoutError:
            error = await connection.timeout_error(self.launch_timeout)
            await self._discard(connection)
            raise error
        except (KilnError, CancellationError):
            await self._discard(connection)
            raise
        except asyncio.CancelledError:
            await self._discard(connection)
            raise
        except Exception as e:
            await self._discard(connection)
            raise KernelDiedError(f"Failed to start kernel: {e}", metadata=self.metadata) from e
        return connection

    def _attach(self, connection: KernelConnection) -> None:
        for unsubscribe in self._connection_subscriptions:
            unsubscribe()
        self._connection_subscriptions = [
            connection.on_status_changed.forward_to(self.on_status_changed),
            connection.on_iopub_message.forward_to(self.on_iopub_message),
        ]
        self.connection = connection

    async def _discard(self, connection: KernelConnection) -> None:
        """Shut down (when we own it) and dispose a connection, logging failures."""
        try:
            if connection.owns_kernel and connection.id is not None:
                await connection.shutdown()
        except Exception as e:
            self._logger.error(f"Error shutting down kernel {connection.id}: {e}")
        try:
            await connection.dispose()
        except Exception as e:
            self._logger.error(f"Error disposing kernel connection {connection.id}: {e}")

    async def connect(self, cancel_token: Optional[CancellationToken] = None) -> None:
        """
        Start or attach to the kernel and wait until it is ready.

        If this fails the session disposes itself and the error propagates.
        """
        self._ensure_not_disposed()
        async with self._lock:
            self._ensure_not_disposed()
            if self.state == SessionState.CONNECTED:
                return

            self.state = SessionState.CONNECTING
            self._logger.info(f"Connecting session for kernel {self.metadata.id}")
            try:
                connection = await self._open(cancel_token)
            except (Exception, asyncio.CancelledError) as e:
                self._logger.error(f"Failed to connect session: {e!r}")
                await self.dispose()
                raise

            if self.state == SessionState.DISPOSED:
                await self._discard(connection)
                raise SessionDisposedError("Session was disposed while connecting")

            self._attach(connection)
            self.state = SessionState.CONNECTED
            self._logger.info(f"Session connected to kernel {connection.id}")
            self.on_status_changed.fire(connection.status)

    async def restart(self, cancel_token: Optional[CancellationToken] = None) -> None:
        """
        Restart the kernel, keeping this session object.

        A replacement connection is started and announced with
        on_restart_session_created before it is ready; once ready it replaces the
        current connection, on_restart_session_used fires and the old kernel is
        shut down. Kernels that support it restart in place instead.
        """
        self._ensure_not_disposed()
        async with self._lock:
            self._ensure_not_disposed()
            if self.connection is None:
                raise SessionDisposedError("Session is not connected")

            old = self.connection
            self.state = SessionState.RESTARTING
            self.on_status_changed.fire(KernelStatus.RESTARTING)
            try:
                if old.supports_in_place_restart:
                    await self._restart_in_place(old, cancel_token)
                else:
                    await self._restart_with_new_connection(old, cancel_token)
            finally:
                if self.state == SessionState.RESTARTING:
                    self.state = SessionState.CONNECTED

    async def _restart_in_place(self, connection: KernelConnection,
                                cancel_token: Optional[CancellationToken]) -> None:
        self._logger.info(f"Restarting kernel {connection.id} in place")

        async def restart_and_wait():
            await connection.restart()
            await connection.wait_for_ready(self.launch_timeout)

        try:
            await wait_for_cancellable(restart_and_wait(), cancel_token, self.launch_timeout)
        except asyncio.TimeoutError:
            raise KernelConnectionTimeoutError(
                f"Kernel did not come back within {self.launch_timeout} seconds after restart",
                metadata=self.metadata,
            )
        self.on_status_changed.fire(connection.status)

    async def _restart_with_new_connection(self, old: KernelConnection,
                                           cancel_token: Optional[CancellationToken]) -> None:
        def announce(connection: KernelConnection) -> None:
            self.restart_connection = connection
            if connection.id != old.id:
                self.on_restart_session_created.fire(connection.id)

        try:
            replacement = await self._open(cancel_token, on_started=announce)
        finally:
            self.restart_connection = None

        if self.state == SessionState.DISPOSED:
            await self._discard(replacement)
            raise SessionDisposedError("Session was disposed while restarting")

        if replacement.id is not None and replacement.id == old.id:
            # Shutting this one down would take the current kernel with it
            await replacement.dispose()
            raise KernelDiedError(f"Restart returned the running kernel {old.id} instead of a new one",
                                  metadata=self.metadata)

        self._attach(replacement)
        self.state = SessionState.CONNECTED
        self._logger.info(f"Restart session {replacement.id} replaced kernel {old.id}")
        self.on_restart_session_used.fire(replacement.id)
        self.on_status_changed.fire(replacement.status)
        await self._discard(old)

    async def interrupt(self, cancel_token: Optional[CancellationToken] = None) -> None:
        """
        Interrupt the kernel and wait for it to become idle.

        Raises:
            KernelInterruptTimeoutError: The kernel did not go idle within the interrupt timeout.
        """
        self._ensure_not_disposed()
        connection = self.connection
        if connection is None:
            raise SessionDisposedError("Session is not connected")

        async def interrupt_and_wait():
            await connection.interrupt()
            await connection.wait_for_idle()

        try:
            await wait_for_cancellable(interrupt_and_wait(), cancel_token, self.interrupt_timeout)
        except asyncio.TimeoutError:
            raise KernelInterruptTimeoutError(
                f"Kernel did not respond to the interrupt within {self.interrupt_timeout} seconds",
                metadata=self.metadata,
            )

    async def request(self, msg_type: str, content: Optional[Dict[str, Any]] = None, channel: str = "shell",
                      timeout: Optional[float] = None) -> Dict[str, Any]:
        self._ensure_not_disposed()
        if self.connection is None:
            raise SessionDisposedError("Session is not connected")
        return await self.connection.request(msg_type, content, channel, timeout)

    async def execute(self, code: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        self._ensure_not_disposed()
        if self.connection is None:
            raise SessionDisposedError("Session is not connected")
        return await self.connection.execute(code, timeout=timeout)

    async def shutdown(self) -> None:
        """Shut the kernel down (if this session started it) and dispose the session."""
        self._ensure_not_disposed()
        self.state = SessionState.DISCONNECTING
        await self.dispose()

    async def dispose(self) -> None:
        if self.state == SessionState.DISPOSED:
            return
        self.state = SessionState.DISPOSED
        self._logger.info("Disposing session")

        for unsubscribe in self._connection_subscriptions:
            unsubscribe()
        self._connection_subscriptions = []

        connections = [c for c in (self.restart_connection, self.connection) if c is not None]
        self.connection = None
        self.restart_connection = None
        for connection in connections:
            await self._discard(connection)

        if not self._resources_released:
            self._resources_released = True
            try:
                self._release_resources()
            except Exception as e:
                self._logger.error(f"Error releasing session resources: {e}")

        self.on_status_changed.fire(KernelStatus.DISPOSED)
        self.on_disposed.fire(None)
        for channel in (self.on_status_changed, self.on_iopub_message, self.on_restart_session_created,
                        self.on_restart_session_used, self.on_disposed):
            channel.dispose()
