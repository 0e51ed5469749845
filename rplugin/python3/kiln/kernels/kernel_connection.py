"""
Base class for one open channel to a kernel, local (ZMQ) or remote (WebSocket).

Requests are matched to replies by the reply's parent_header.msg_id, so replies
may arrive in any order. IOPub traffic is re-broadcast to subscribers and
drives the connection's status.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

from jupyter_client.session import Session

from ..core.events import EventChannel
from .errors import KernelConnectionTimeoutError, KernelDiedError, KilnError, SessionDisposedError
from .types import KernelConnectionMetadata, KernelStatus


class KernelConnection:
    """
    Subclasses implement start, wait_for_ready, interrupt, shutdown, _send and _close.
    """

    # Whether restart() restarts the same kernel instead of needing a new connection
    supports_in_place_restart = False

    def __init__(self, metadata: KernelConnectionMetadata, owns_kernel: bool = True):
        self.metadata = metadata
        self.owns_kernel = owns_kernel
        self.id: Optional[str] = None
        self.client_id = uuid.uuid4().hex
        self.status = KernelStatus.UNKNOWN
        self.kernel_info: Optional[Dict[str, Any]] = None

        self.on_status_changed: EventChannel[KernelStatus] = EventChannel("connection_status")
        self.on_iopub_message: EventChannel[Dict[str, Any]] = EventChannel("connection_iopub")
        self.on_disposed: EventChannel[None] = EventChannel("connection_disposed")

        self._pending: Dict[str, asyncio.Future] = {}
        self._message_session = Session(session=self.client_id, username="kiln")
        self._disposed = False
        self._logger = logging.getLogger(f"kiln.connection.{self.client_id[:8]}")

    @property
    def name(self) -> str:
        spec = self.metadata.kernel_spec
        if spec is not None:
            return spec.name
        if self.metadata.kernel_model is not None:
            return self.metadata.kernel_model.name
        return ""

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def is_alive(self) -> bool:
        return not self._disposed and self.status not in (KernelStatus.DEAD, KernelStatus.DISPOSED)

    def _set_status(self, status: KernelStatus) -> None:
        if status == self.status:
            return
        self._logger.debug(f"Kernel status {self.status.value} -> {status.value}")
        self.status = status
        self.on_status_changed.fire(status)

    def _build_message(self, msg_type: str, content: Dict[str, Any]) -> Dict[str, Any]:
        return self._message_session.msg(msg_type, content=content)

    def _handle_message(self, channel: str, msg: Dict[str, Any]) -> None:
        """Route one incoming message; called by the subclass reader loops."""
        parent_id = (msg.get("parent_header") or {}).get("msg_id")

        if channel == "iopub":
            if msg.get("msg_type") == "status":
                state = (msg.get("content") or {}).get("execution_state")
                self._set_status(KernelStatus.from_execution_state(state))
            self.on_iopub_message.fire(msg)
            return

        future = self._pending.get(parent_id)
        if future is not None and not future.done():
            future.set_result(msg)
        else:
            self._logger.debug(f"Unmatched {channel} reply {msg.get('msg_type')} for {parent_id}")

    def _fail_pending(self, error: BaseException) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    def _mark_dead(self, reason: str) -> None:
        self._logger.warning(f"Kernel {self.id} died: {reason}")
        self._set_status(KernelStatus.DEAD)
        self._fail_pending(KernelDiedError(reason, metadata=self.metadata))

    async def request(self, msg_type: str, content: Optional[Dict[str, Any]] = None, channel: str = "shell",
                      timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Send a request and wait for its reply.

        Raises:
            SessionDisposedError: The connection was disposed.
            KernelDiedError: The kernel died before replying.
            asyncio.TimeoutError: No reply within timeout.
        """
        if self._disposed:
            raise SessionDisposedError()
        if self.status == KernelStatus.DEAD:
            raise KernelDiedError("Kernel is dead", metadata=self.metadata)

        msg = self._build_message(msg_type, content or {})
        msg_id = msg["header"]["msg_id"]
        future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            await self._send(channel, msg)
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(msg_id, None)

    async def execute(self, code: str, silent: bool = False, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Run code and return the execute_reply content. Outputs arrive on on_iopub_message."""
        reply = await self.request(
            "execute_request",
            {
                "code": code,
                "silent": silent,
                "store_history": not silent,
                "user_expressions": {},
                "allow_stdin": False,
                "stop_on_error": True,
            },
            timeout=timeout,
        )
        return reply.get("content", {})

    async def request_kernel_info(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        reply = await self.request("kernel_info_request", timeout=timeout)
        self.kernel_info = reply.get("content", {})
        return self.kernel_info

    async def wait_for_idle(self) -> None:
        if self.status == KernelStatus.IDLE:
            return
        if not self.is_alive:
            raise KernelDiedError("Kernel is not running", metadata=self.metadata)

        future = asyncio.get_running_loop().create_future()

        def on_status(status):
            if future.done():
                return
            if status == KernelStatus.IDLE:
                future.set_result(None)
            elif status in (KernelStatus.DEAD, KernelStatus.DISPOSED):
                future.set_exception(KernelDiedError("Kernel died while waiting for idle", metadata=self.metadata))

        unsubscribe = self.on_status_changed.subscribe(on_status)
        try:
            await future
        finally:
            unsubscribe()

    async def timeout_error(self, timeout: float) -> KilnError:
        """The error to raise when the kernel was not ready within timeout."""
        return KernelConnectionTimeoutError(
            f"Kernel did not become ready within {timeout} seconds", metadata=self.metadata
        )

    async def start(self) -> None:
        raise NotImplementedError

    async def wait_for_ready(self, timeout: float) -> None:
        raise NotImplementedError

    async def interrupt(self) -> None:
        raise NotImplementedError

    async def restart(self) -> None:
        raise NotImplementedError(f"{type(self).__name__} cannot restart in place")

    async def shutdown(self) -> None:
        raise NotImplementedError

    async def _send(self, channel: str, msg: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _close(self) -> None:
        """Release transport resources. Called once by dispose."""

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._fail_pending(SessionDisposedError("Kernel connection disposed"))
        try:
            await self._close()
        except Exception as e:
            self._logger.error(f"Error closing kernel connection {self.id}: {e}")
        if self.status != KernelStatus.DEAD:
            self._set_status(KernelStatus.DISPOSED)
        self.on_disposed.fire(None)
        for channel in (self.on_status_changed, self.on_iopub_message, self.on_disposed):
            channel.dispose()
