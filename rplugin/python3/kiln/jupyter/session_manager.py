"""
Session manager for one Jupyter server: negotiates the connection once and
hands out JupyterSessions, kernel specs and running kernel listings.
"""
import logging
from typing import Any, Dict, List, Optional

from ..core.cancellation import CancellationError, CancellationToken, wait_or_default
from ..core.events import EventChannel
from ..kernels.errors import JupyterConnectError, SessionDisposedError
from ..kernels.helpers import create_interpreter_kernel_spec
from ..kernels.types import (
    DisplayOptions,
    JupyterConnection,
    JupyterKernelSpec,
    KernelConnectionMetadata,
    LiveKernelModel,
)
from .services import (
    ContentsManager,
    KernelSpecsManager,
    RemoteKernelManager,
    RemoteSessionManager,
    ServerConnection,
)
from .session import JupyterSession

# Upper bound for the readiness check and the kernel spec refresh
SPECS_TIMEOUT = 10.0


class JupyterSessionManager:
    def __init__(self, negotiator, settings):
        self.negotiator = negotiator
        self.settings = settings
        self.connection: Optional[JupyterConnection] = None
        self.server: Optional[ServerConnection] = None
        self.specs_manager: Optional[KernelSpecsManager] = None
        self.kernel_manager: Optional[RemoteKernelManager] = None
        self.session_manager: Optional[RemoteSessionManager] = None
        self.contents_manager: Optional[ContentsManager] = None

        self.on_restart_session_created: EventChannel[str] = EventChannel("manager_restart_session_created")
        self.on_restart_session_used: EventChannel[str] = EventChannel("manager_restart_session_used")

        self._last_known_specs: Dict[str, Any] = {}
        self._disposed = False
        self._logger = logging.getLogger("kiln.session_manager")

    @property
    def is_initialized(self) -> bool:
        return self.session_manager is not None and not self._disposed

    async def initialize(self, connection: JupyterConnection, fail_on_password: Optional[bool] = None) -> None:
        """
        Negotiate connection settings and build the REST managers.

        Raises:
            JupyterConnectError: Negotiation failed; subclasses such as
                PasswordError and InsecureSessionDeniedError pass through unchanged.
        """
        self.connection = connection
        try:
            server_settings = await self.negotiator.get_server_connect_settings(connection, fail_on_password)
        except (JupyterConnectError, CancellationError):
            raise
        except Exception as e:
            raise JupyterConnectError(f"Failed to connect to {connection.base_url}: {e}") from e

        self.server = ServerConnection(server_settings)
        self.specs_manager = KernelSpecsManager(self.server)
        self.kernel_manager = RemoteKernelManager(self.server)
        self.session_manager = RemoteSessionManager(self.server)
        self.contents_manager = ContentsManager(self.server)
        self._logger.info(f"Session manager initialized for {server_settings.base_url}")

    async def start_new(self, resource: Optional[str], metadata: KernelConnectionMetadata, working_directory: str,
                        display: Optional[DisplayOptions] = None,
                        cancel_token: Optional[CancellationToken] = None) -> JupyterSession:
        """
        Create a session for metadata and connect it.

        The returned session is connected; on failure it has been disposed and
        the error propagates.
        """
        if not self.is_initialized or self.contents_manager is None:
            raise SessionDisposedError("Session manager is not initialized")

        session = JupyterSession(
            metadata,
            working_directory,
            self.server,
            self.specs_manager,
            self.kernel_manager,
            self.session_manager,
            self.contents_manager,
            resource=resource,
            launch_timeout=self.settings.launch_timeout,
            interrupt_timeout=self.settings.interrupt_timeout,
        )
        session.on_restart_session_created.forward_to(self.on_restart_session_created)
        session.on_restart_session_used.forward_to(self.on_restart_session_used)

        try:
            await session.connect(cancel_token)
        finally:
            if not session.is_connected:
                await session.dispose()
        return session

    async def get_kernel_specs(self) -> List[JupyterKernelSpec]:
        """
        Kernel specs offered by the server.

        Falls back to the last non-empty answer when the server is slow or
        returns nothing, and to a single default Python spec when it never
        answered. Errors are logged and give an empty list.
        """
        if not self.is_initialized:
            raise SessionDisposedError("Session manager is not initialized")

        try:
            await wait_or_default(self.session_manager.ready, SPECS_TIMEOUT)
            await wait_or_default(self.specs_manager.refresh_specs(), SPECS_TIMEOUT)

            kernelspecs = self.specs_manager.kernelspecs
            if kernelspecs:
                self._last_known_specs = dict(kernelspecs)
            elif self._last_known_specs:
                self._logger.warning("Server returned no kernel specs, using the last known list")
                kernelspecs = self._last_known_specs

            if kernelspecs:
                return [JupyterKernelSpec.from_model(model) for model in kernelspecs.values()]

            self._logger.error("Jupyter server returned no kernel specs, using the default Python spec")
            return [create_interpreter_kernel_spec()]
        except Exception as e:
            self._logger.error(f"Failed to get kernel specs: {e}")
            return []

    async def get_running_kernels(self) -> List[LiveKernelModel]:
        if not self.is_initialized:
            raise SessionDisposedError("Session manager is not initialized")

        try:
            running = await self.kernel_manager.list_running()
        except Exception as e:
            self._logger.error(f"Failed to list running kernels: {e}")
            return []

        seen = set()
        kernels = []
        for model in running:
            kernel_id = model.get("id")
            if not kernel_id or kernel_id in seen:
                continue
            seen.add(kernel_id)
            kernels.append(LiveKernelModel.from_models(model))
        return kernels

    async def get_running_sessions(self) -> List[Dict[str, Any]]:
        if not self.is_initialized:
            raise SessionDisposedError("Session manager is not initialized")

        try:
            running = await self.session_manager.list_running()
        except Exception as e:
            self._logger.error(f"Failed to list running sessions: {e}")
            return []

        seen = set()
        sessions = []
        for model in running:
            kernel_id = (model.get("kernel") or {}).get("id")
            if kernel_id in seen:
                continue
            if kernel_id:
                seen.add(kernel_id)
            sessions.append(model)
        return sessions

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._logger.info("Disposing session manager")

        try:
            if self.contents_manager is not None:
                self.contents_manager.dispose()
            if self.session_manager is not None and not self.session_manager.is_disposed:
                await wait_or_default(self.session_manager.ready, SPECS_TIMEOUT)
                self.session_manager.dispose()
        except Exception as e:
            self._logger.error(f"Error disposing session manager: {e}")
        finally:
            if self.server is not None:
                try:
                    await self.server.close()
                except Exception as e:
                    self._logger.error(f"Error closing server connection: {e}")
            self.contents_manager = None
            self.session_manager = None
            self.kernel_manager = None
            self.specs_manager = None
            self.server = None
            self.on_restart_session_created.dispose()
            self.on_restart_session_used.dispose()


class JupyterSessionManagerFactory:
    """
    Creates session managers and re-broadcasts their restart session events on
    channels that exist before any manager does.
    """

    def __init__(self, negotiator, settings):
        self.negotiator = negotiator
        self.settings = settings
        self.on_restart_session_created: EventChannel[str] = EventChannel("restart_session_created")
        self.on_restart_session_used: EventChannel[str] = EventChannel("restart_session_used")

    async def create(self, connection: JupyterConnection,
                     fail_on_password: Optional[bool] = None) -> JupyterSessionManager:
        manager = JupyterSessionManager(self.negotiator, self.settings)
        manager.on_restart_session_created.forward_to(self.on_restart_session_created)
        manager.on_restart_session_used.forward_to(self.on_restart_session_used)
        try:
            await manager.initialize(connection, fail_on_password)
        except BaseException:
            await manager.dispose()
            raise
        return manager
