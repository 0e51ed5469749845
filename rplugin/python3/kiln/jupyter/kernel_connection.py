"""
Kernel connections to a Jupyter server over its REST API and kernel WebSocket.
"""
import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp
from jupyter_client.jsonutil import json_default

from ..kernels.errors import JupyterRequestError, KernelConnectionTimeoutError, KernelDiedError
from ..kernels.kernel_connection import KernelConnection
from ..kernels.types import KernelConnectionMetadata, KernelStatus
from .services import RemoteKernelManager, RemoteSessionManager, ServerConnection


class RemoteKernelConnection(KernelConnection):
    """
    A kernel on a Jupyter server.

    Without a kernel_id a new server session (and kernel) is created on start
    and deleted on shutdown. Each connection has its own session path; the
    server answers a known path with the session it already has.

    With a kernel_id we attach to a kernel someone else started; we never shut
    that one down, and restarts happen in place.
    """

    def __init__(self, metadata: KernelConnectionMetadata, server: ServerConnection,
                 kernel_manager: RemoteKernelManager, session_manager: RemoteSessionManager,
                 session_name: str = "kiln", kernel_id: Optional[str] = None):
        super().__init__(metadata, owns_kernel=kernel_id is None)
        self.server = server
        self.kernel_manager = kernel_manager
        self.session_manager = session_manager
        self.session_name = f"{session_name}-{self.client_id[:8]}"
        self.session_path = f"{self.session_name}.ipynb"
        self.id = kernel_id
        self.session_model: Optional[Dict[str, Any]] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None

    @property
    def supports_in_place_restart(self) -> bool:
        return not self.owns_kernel

    @property
    def interrupt_mode(self) -> str:
        spec = self.metadata.kernel_spec
        return (spec.interrupt_mode if spec else None) or "signal"

    async def start(self) -> None:
        self._set_status(KernelStatus.STARTING)
        if self.owns_kernel:
            self.session_model = await self.session_manager.create_session(
                self.session_path, self.session_name, self.name
            )
            self.id = self.session_model["kernel"]["id"]
            self._logger.info(f"Created server session {self.session_model.get('id')} with kernel {self.id}")
        else:
            try:
                await self.kernel_manager.get_kernel(self.id)
            except JupyterRequestError as e:
                if e.status == 404:
                    raise KernelDiedError(f"Kernel {self.id} is no longer running on the server",
                                          metadata=self.metadata) from e
                raise

        self._ws = await self.server.ws_connect(f"api/kernels/{self.id}/channels", session_id=self.client_id)
        self._reader_task = asyncio.ensure_future(self._read_loop())

    async def wait_for_ready(self, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise KernelConnectionTimeoutError(
                    f"Kernel {self.id} did not answer kernel_info within {timeout} seconds", metadata=self.metadata
                )
            try:
                await self.request_kernel_info(timeout=min(2.0, remaining))
                break
            except asyncio.TimeoutError:
                continue

        if self.status in (KernelStatus.UNKNOWN, KernelStatus.STARTING, KernelStatus.RESTARTING):
            self._set_status(KernelStatus.IDLE)

    async def _read_loop(self) -> None:
        try:
            async for ws_msg in self._ws:
                if ws_msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        msg = json.loads(ws_msg.data)
                    except ValueError as e:
                        self._logger.warning(f"Invalid message from kernel {self.id}: {e}")
                        continue
                    self._handle_message(msg.get("channel", "shell"), msg)
                elif ws_msg.type == aiohttp.WSMsgType.BINARY:
                    self._logger.debug(f"Ignoring binary message from kernel {self.id}")
                elif ws_msg.type == aiohttp.WSMsgType.ERROR:
                    self._logger.warning(f"WebSocket error for kernel {self.id}: {self._ws.exception()}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error(f"Kernel {self.id} reader failed: {e}")

        if not self._disposed:
            self._mark_dead("Connection to the kernel was lost")

    async def _send(self, channel: str, msg: Dict[str, Any]) -> None:
        if self._ws is None or self._ws.closed:
            raise KernelDiedError(f"Connection to kernel {self.id} is closed", metadata=self.metadata)
        payload = dict(msg, channel=channel)
        await self._ws.send_str(json.dumps(payload, default=json_default))

    async def interrupt(self) -> None:
        self._logger.info(f"Interrupting remote kernel {self.id} ({self.interrupt_mode})")
        if self.interrupt_mode == "message":
            await self._send("control", self._build_message("interrupt_request", {}))
        else:
            await self.kernel_manager.interrupt(self.id)

    async def restart(self) -> None:
        self._set_status(KernelStatus.RESTARTING)
        await self.kernel_manager.restart(self.id)

    async def shutdown(self) -> None:
        if self.session_model is not None:
            await self.session_manager.delete_session(self.session_model["id"])
        elif self.owns_kernel and self.id:
            await self.kernel_manager.shutdown(self.id)

    async def _close(self) -> None:
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await asyncio.wait_for(self._reader_task, timeout=1.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        self._reader_task = None
