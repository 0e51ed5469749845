"""
A connected Jupyter server as handed out by the ServerCache.
"""
import logging
from typing import Optional

from ..core.cancellation import CancellationToken
from ..core.events import EventChannel
from ..kernels.errors import SessionDisposedError
from ..kernels.types import DisplayOptions, JupyterConnection, KernelConnectionMetadata
from .session import JupyterSession
from .session_manager import JupyterSessionManager


class JupyterServer:
    def __init__(self, connection: JupyterConnection, session_manager: JupyterSessionManager):
        self.connection = connection
        self.session_manager = session_manager
        self.on_disposed: EventChannel[None] = EventChannel("server_disposed")
        self._disposed = False
        self._logger = logging.getLogger("kiln.server")

    @property
    def base_url(self) -> str:
        return self.connection.base_url

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    async def create_session(self, resource: Optional[str], metadata: KernelConnectionMetadata,
                             working_directory: str, display: Optional[DisplayOptions] = None,
                             cancel_token: Optional[CancellationToken] = None) -> JupyterSession:
        if self._disposed:
            raise SessionDisposedError(f"Server {self.base_url} has been disposed")
        return await self.session_manager.start_new(resource, metadata, working_directory, display, cancel_token)

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._logger.info(f"Disposing server {self.base_url}")
        try:
            await self.session_manager.dispose()
        except Exception as e:
            self._logger.error(f"Error disposing session manager for {self.base_url}: {e}")
        self.connection.dispose()
        self.on_disposed.fire(None)
        self.on_disposed.dispose()
