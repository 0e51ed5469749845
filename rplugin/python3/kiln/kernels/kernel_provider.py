"""
KernelProvider: one Kernel per buffer identity.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from ..core.events import EventChannel
from .kernel import Kernel
from .types import KernelOptions, KernelStatus


class KernelProvider:
    """
    Owns the identity -> Kernel table.

    get_or_create() and the table updates are synchronous so that two callers
    in the same loop can never both create a kernel for one identity.
    """

    def __init__(self, notebook_provider, error_handler=None):
        self.notebook_provider = notebook_provider
        self.error_handler = error_handler
        self._kernels: Dict[str, Kernel] = {}

        self.on_kernel_created: EventChannel[Kernel] = EventChannel("kernel_created")
        self.on_kernel_started: EventChannel[Kernel] = EventChannel("kernel_started")
        self.on_kernel_restarted: EventChannel[Kernel] = EventChannel("kernel_restarted")
        self.on_kernel_status_changed: EventChannel[Tuple[Kernel, KernelStatus]] = EventChannel("kernel_status")
        self.on_kernel_disposed: EventChannel[Kernel] = EventChannel("kernel_disposed")

        self._logger = logging.getLogger("kiln.kernel_provider")

    @property
    def kernels(self) -> List[Kernel]:
        return list(self._kernels.values())

    def get(self, identity: str) -> Optional[Kernel]:
        return self._kernels.get(identity)

    def get_or_create(self, identity: str, options: KernelOptions) -> Kernel:
        """
        The kernel for identity, replacing it when options select a different kernel.

        A replaced kernel is disposed (and its disposed event fired) before the
        new one is recorded.
        """
        existing = self._kernels.get(identity)
        if existing is not None and not existing.is_disposed and existing.id == options.metadata.id:
            return existing

        if existing is not None:
            self._logger.info(f"Replacing kernel {existing.id} for {identity} with {options.metadata.id}")
            del self._kernels[identity]
            existing.dispose()

        kernel = Kernel(
            identity,
            options.metadata,
            self.notebook_provider,
            resource=options.resource,
            error_handler=self.error_handler,
            display=options.display,
        )
        self._kernels[identity] = kernel
        self._wire(kernel)
        self._logger.info(f"Created kernel {kernel.id} for {identity}")
        self.on_kernel_created.fire(kernel)
        return kernel

    def _wire(self, kernel: Kernel) -> None:
        kernel.on_started.forward_to(self.on_kernel_started)
        kernel.on_restarted.forward_to(self.on_kernel_restarted)
        kernel.on_status_changed.subscribe(lambda status: self.on_kernel_status_changed.fire((kernel, status)))

        def on_disposed(disposed: Kernel) -> None:
            if self._kernels.get(disposed.identity) is disposed:
                del self._kernels[disposed.identity]
            self.on_kernel_disposed.fire(disposed)

        kernel.on_disposed.subscribe(on_disposed)

    async def dispose_all(self) -> None:
        kernels = list(self._kernels.values())
        self._kernels.clear()
        if not kernels:
            self._logger.info("No kernels to dispose")
            return

        self._logger.info(f"Disposing {len(kernels)} kernel(s)")
        tasks = [task for task in (kernel.dispose() for kernel in kernels) if task is not None]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self._logger.error(f"Error during kernel shutdown: {result}")
