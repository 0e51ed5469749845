"""
Kernel discovery: what a buffer can be connected to, locally and on the
configured Jupyter server.
"""
import asyncio
import dataclasses
import logging
import os
from typing import Dict, Iterable, List, Optional, Set

from jupyter_client.kernelspec import KernelSpecManager

from ..core.cancellation import CancellationError, CancellationToken
from .helpers import create_interpreter_kernel_spec, is_local_host
from .types import JupyterKernelSpec, KernelConnectionMetadata, PythonEnvironment


def _dedupe(kernels: Iterable[KernelConnectionMetadata]) -> List[KernelConnectionMetadata]:
    """Drop entries whose id was already seen, keeping the first."""
    seen: Set[str] = set()
    result = []
    for kernel in kernels:
        if kernel.id in seen:
            continue
        seen.add(kernel.id)
        result.append(kernel)
    return result


def _spec_interpreter_path(spec: JupyterKernelSpec) -> Optional[str]:
    if spec.interpreter_path:
        return spec.interpreter_path
    if spec.language == "python" and spec.argv and os.path.isabs(spec.argv[0]):
        return spec.argv[0]
    return None


class LocalKernelFinder:
    def __init__(self, interpreters, kernel_spec_manager: Optional[KernelSpecManager] = None):
        self.interpreters = interpreters
        self.kernel_spec_manager = kernel_spec_manager or KernelSpecManager()
        self._logger = logging.getLogger("kiln.finder.local")

    def find_kernel_specs(self) -> List[JupyterKernelSpec]:
        """Kernel specs installed on this machine."""
        specs = []
        try:
            available = self.kernel_spec_manager.find_kernel_specs()
        except Exception as e:
            self._logger.error(f"Failed to discover kernels using jupyter_client: {e}")
            return specs

        for name, resource_dir in available.items():
            try:
                spec = self.kernel_spec_manager.get_kernel_spec(name)
            except Exception as e:
                self._logger.warning(f"Failed to get spec for kernel {name}: {e}")
                continue
            model = dict(spec.to_dict(), name=name, resource_dir=resource_dir)
            specs.append(JupyterKernelSpec.from_model(model, spec_file=os.path.join(resource_dir, "kernel.json")))

        if not specs:
            self._logger.warning("No Jupyter kernel specifications found. Make sure ipykernel is installed.")
        return specs

    async def list_kernels(self, resource: Optional[str] = None,
                           cancel_token: Optional[CancellationToken] = None) -> List[KernelConnectionMetadata]:
        try:
            results = []
            for spec in self.find_kernel_specs():
                interpreter = None
                path = _spec_interpreter_path(spec)
                if path and self.interpreters is not None:
                    interpreter = await self.interpreters.get_interpreter_details(path)
                results.append(KernelConnectionMetadata.local_kernel_spec(spec, interpreter))
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()

            if self.interpreters is not None:
                active = await self.interpreters.get_active_interpreter(resource)
                if active is not None:
                    results.append(
                        KernelConnectionMetadata.python_interpreter(create_interpreter_kernel_spec(active), active)
                    )

            results = _dedupe(results)
            self._logger.info(f"Discovered {len(results)} local kernel(s)")
            return results
        except CancellationError:
            self._logger.debug("Local kernel discovery cancelled")
            return []
        except Exception as e:
            self._logger.error(f"Local kernel discovery failed: {e}")
            return []


class RemoteKernelFinder:
    """
    Lists kernel specs and running kernels of the configured server.

    Kernels created for a restart that has not finished yet are hidden from the
    listing until the restart uses them.
    """

    def __init__(self, notebook_provider, session_manager_factory, interpreters=None):
        self.notebook_provider = notebook_provider
        self.interpreters = interpreters
        self._hidden_kernel_ids: Set[str] = set()
        self._logger = logging.getLogger("kiln.finder.remote")
        self._unsubscribers = [
            session_manager_factory.on_restart_session_created.subscribe(self._hide_kernel),
            session_manager_factory.on_restart_session_used.subscribe(self._unhide_kernel),
        ]

    def _hide_kernel(self, kernel_id: Optional[str]) -> None:
        if kernel_id:
            self._hidden_kernel_ids.add(kernel_id)

    def _unhide_kernel(self, kernel_id: Optional[str]) -> None:
        self._hidden_kernel_ids.discard(kernel_id)

    def is_kernel_hidden(self, kernel_id: str) -> bool:
        return kernel_id in self._hidden_kernel_ids

    async def list_kernels(self, resource: Optional[str] = None,
                           cancel_token: Optional[CancellationToken] = None) -> List[KernelConnectionMetadata]:
        try:
            server = await self.notebook_provider.get_or_create_server(cancel_token=cancel_token)
            if server is None:
                return []
            return await self._list_server_kernels(server)
        except CancellationError:
            self._logger.debug("Remote kernel discovery cancelled")
            return []
        except Exception as e:
            self._logger.error(f"Remote kernel discovery failed: {e}")
            return []

    async def _interpreter_for(self, spec: JupyterKernelSpec, local_server: bool) -> Optional[PythonEnvironment]:
        # Paths reported by a remote machine mean nothing here
        if not local_server or self.interpreters is None:
            return None
        path = _spec_interpreter_path(spec)
        if not path:
            return None
        return await self.interpreters.get_interpreter_details(path)

    async def _list_server_kernels(self, server) -> List[KernelConnectionMetadata]:
        manager = server.session_manager
        specs, sessions, running = await asyncio.gather(
            manager.get_kernel_specs(),
            manager.get_running_sessions(),
            manager.get_running_kernels(),
        )
        base_url = server.base_url
        local_server = is_local_host(server.connection.host_name)

        results = []
        for spec in specs:
            interpreter = await self._interpreter_for(spec, local_server)
            results.append(KernelConnectionMetadata.remote_kernel_spec(spec, base_url, interpreter))

        sessions_by_kernel: Dict[str, dict] = {}
        for session in sessions:
            kernel_id = (session.get("kernel") or {}).get("id")
            if kernel_id:
                sessions_by_kernel.setdefault(kernel_id, session)

        for kernel in running:
            if self.is_kernel_hidden(kernel.id):
                continue
            session = sessions_by_kernel.get(kernel.id)
            if session is not None:
                kernel = dataclasses.replace(
                    kernel,
                    session_id=session.get("id"),
                    session_name=session.get("name"),
                    session_path=session.get("path"),
                    session_type=session.get("type"),
                )
            results.append(KernelConnectionMetadata.live_remote_kernel(kernel, base_url))

        results = _dedupe(results)
        self._logger.info(f"Discovered {len(results)} kernel(s) on {base_url}")
        return results

    def dispose(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._hidden_kernel_ids.clear()


class KernelFinder:
    """Local kernels first, then those of the configured server."""

    def __init__(self, local_finder: LocalKernelFinder, remote_finder: RemoteKernelFinder, settings):
        self.local_finder = local_finder
        self.remote_finder = remote_finder
        self.settings = settings

    async def list_kernels(self, resource: Optional[str] = None,
                           cancel_token: Optional[CancellationToken] = None) -> List[KernelConnectionMetadata]:
        finders = [self.local_finder.list_kernels(resource, cancel_token)]
        if self.settings.jupyter_server_uri:
            finders.append(self.remote_finder.list_kernels(resource, cancel_token))
        listings = await asyncio.gather(*finders)
        return _dedupe(kernel for listing in listings for kernel in listing)

    def is_kernel_hidden(self, kernel_id: str) -> bool:
        return self.remote_finder.is_kernel_hidden(kernel_id)

