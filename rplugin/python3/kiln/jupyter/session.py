"""
A KernelSession whose kernels live on a Jupyter server.
"""
import os
from typing import Optional

from ..kernels.errors import SessionDisposedError
from ..kernels.kernel_connection import KernelConnection
from ..kernels.session import KernelSession
from ..kernels.types import KernelConnectionKind, KernelConnectionMetadata
from .kernel_connection import RemoteKernelConnection


class JupyterSession(KernelSession):
    """
    Holds the server's specs, kernel, session and contents managers for as long
    as the session lives; they are released once, on dispose.
    """

    def __init__(self, metadata: KernelConnectionMetadata, working_directory: str, server,
                 specs_manager, kernel_manager, session_manager, contents_manager,
                 resource: Optional[str] = None, **kwargs):
        super().__init__(metadata, working_directory, resource=resource, **kwargs)
        self.server = server
        self.specs_manager = specs_manager
        self.kernel_manager = kernel_manager
        self.session_manager = session_manager
        self.contents_manager = contents_manager

    def _session_name(self) -> str:
        if self.resource:
            return os.path.splitext(os.path.basename(self.resource))[0]
        return "kiln"

    def _create_connection(self) -> KernelConnection:
        if self.session_manager is None:
            raise SessionDisposedError("Jupyter session resources have been released")

        kernel_id = None
        # Live kernels are attached to, never created
        if self.metadata.kind == KernelConnectionKind.CONNECT_TO_LIVE_REMOTE_KERNEL:
            kernel_id = self.metadata.kernel_model.id

        return RemoteKernelConnection(
            self.metadata,
            self.server,
            self.kernel_manager,
            self.session_manager,
            session_name=self._session_name(),
            kernel_id=kernel_id,
        )

    def _release_resources(self) -> None:
        self.specs_manager = None
        self.kernel_manager = None
        self.session_manager = None
        self.contents_manager = None
        self.server = None
