"""
Creates connected KernelSessions: local kernels as raw processes, remote
kernels through a cached Jupyter server.
"""
import logging
from typing import Optional

from ..core.cancellation import CancellationToken
from ..jupyter.server import JupyterServer
from .errors import JupyterConnectError
from .helpers import compute_working_directory, create_remote_connection_info
from .local_kernel import RawKernelSession
from .session import KernelSession
from .types import DisplayOptions, KernelConnectionMetadata, ServerOptions


class NotebookProvider:
    def __init__(self, settings, server_cache, session_manager_factory, interpreters=None):
        self.settings = settings
        self.server_cache = server_cache
        self.session_manager_factory = session_manager_factory
        self.interpreters = interpreters
        self._logger = logging.getLogger("kiln.notebook_provider")

    def server_options(self, uri: Optional[str] = None) -> Optional[ServerOptions]:
        uri = uri or self.settings.jupyter_server_uri
        if not uri:
            return None
        return ServerOptions(
            uri=uri,
            working_dir=self.settings.notebook_file_root,
            allow_unauthorized=bool(self.settings.allow_unauthorized_remote_connection),
        )

    async def get_or_create_server(self, uri: Optional[str] = None,
                                   cancel_token: Optional[CancellationToken] = None) -> Optional[JupyterServer]:
        """The server for uri (default: the configured one), or None when no server is configured."""
        options = self.server_options(uri)
        if options is None:
            return None
        return await self.server_cache.get_or_create(self._create_server, options, cancel_token)

    async def _create_server(self, options: ServerOptions) -> JupyterServer:
        try:
            connection = create_remote_connection_info(options.uri)
        except ValueError as e:
            raise JupyterConnectError(str(e)) from e
        manager = await self.session_manager_factory.create(connection)
        return JupyterServer(connection, manager)

    async def create_session(self, metadata: KernelConnectionMetadata, resource: Optional[str] = None,
                             display: Optional[DisplayOptions] = None,
                             cancel_token: Optional[CancellationToken] = None) -> KernelSession:
        """Create a session for metadata and wait until its kernel is ready."""
        working_directory = compute_working_directory(resource, self.settings.notebook_file_root)

        if metadata.is_remote:
            server = await self.get_or_create_server(cancel_token=cancel_token)
            if server is None:
                raise JupyterConnectError("No Jupyter server is configured (set g:kiln_nvim_jupyter_server_uri)")
            return await server.create_session(resource, metadata, working_directory, display, cancel_token)

        session = RawKernelSession(
            metadata,
            working_directory,
            interpreters=self.interpreters,
            launch_timeout=self.settings.launch_timeout,
            interrupt_timeout=self.settings.interrupt_timeout,
            resource=resource,
        )
        await session.connect(cancel_token)
        return session

    async def dispose(self) -> None:
        await self.server_cache.dispose()
