"""
Kernels launched on this machine through jupyter_client.
"""
import asyncio
import os
import queue
import re
import tempfile
from typing import Any, Dict, Optional

from jupyter_client import AsyncKernelManager
from jupyter_client.kernelspec import KernelSpec, KernelSpecManager

from .errors import (
    KernelDependencyError,
    KernelDiedError,
    KernelPortNotUsedTimeoutError,
    KernelProcessExitedError,
    KilnError,
)
from .kernel_connection import KernelConnection
from .session import KernelSession
from .types import KernelConnectionMetadata, KernelStatus

_MISSING_KERNEL_MODULE = re.compile(r"No module named '?(ipykernel(?:_launcher)?)'?")


class _SingleSpecManager(KernelSpecManager):
    """Serves exactly one prepared spec, so specs need not be installed on disk."""

    def __init__(self, kernel_name: str, kernel_spec: KernelSpec, **kwargs):
        super().__init__(**kwargs)
        self._kernel_name = kernel_name
        self._kernel_spec = kernel_spec

    def find_kernel_specs(self) -> Dict[str, str]:
        return {self._kernel_name: self._kernel_spec.resource_dir}

    def get_kernel_spec(self, kernel_name: str, *args, **kwargs) -> KernelSpec:
        return self._kernel_spec


def build_launch_spec(metadata: KernelConnectionMetadata) -> KernelSpec:
    """Translate connection metadata into the kernel spec jupyter_client launches."""
    spec = metadata.kernel_spec
    argv = list(spec.argv)
    interpreter = metadata.interpreter
    if interpreter and argv and os.path.basename(argv[0]).startswith("python"):
        argv[0] = interpreter.path
    return KernelSpec(
        argv=argv,
        display_name=spec.display_name,
        language=spec.language or "python",
        env=dict(spec.env or {}),
        interrupt_mode=spec.interrupt_mode or "signal",
        metadata=dict(spec.metadata or {}),
        resource_dir=spec.resource_dir or "",
    )


class LocalKernelConnection(KernelConnection):
    """A kernel subprocess managed by jupyter_client's AsyncKernelManager."""

    def __init__(self, metadata: KernelConnectionMetadata, working_directory: str,
                 extra_env: Optional[Dict[str, str]] = None):
        super().__init__(metadata, owns_kernel=True)
        self.working_directory = working_directory
        self.extra_env = extra_env or {}
        self.km: Optional[AsyncKernelManager] = None
        self.client = None
        self._stderr = None
        self._reader_tasks = []
        self.monitor_task: Optional[asyncio.Task] = None

    def _build_message(self, msg_type: str, content: Dict[str, Any]) -> Dict[str, Any]:
        if self.client is not None:
            return self.client.session.msg(msg_type, content=content)
        return super()._build_message(msg_type, content)

    async def start(self) -> None:
        spec = build_launch_spec(self.metadata)
        self.km = AsyncKernelManager(
            kernel_name=self.name,
            kernel_spec_manager=_SingleSpecManager(self.name, spec),
        )

        env = dict(os.environ)
        env.update(self.extra_env)
        self._stderr = tempfile.TemporaryFile()
        self._set_status(KernelStatus.STARTING)

        try:
            await self.km.start_kernel(cwd=self.working_directory, env=env, stderr=self._stderr)
        except OSError as e:
            raise KernelDiedError(f"Failed to launch kernel process {spec.argv[0]}: {e}",
                                  metadata=self.metadata) from e

        self.id = self.km.kernel_id
        self.client = self.km.client()
        self.client.start_channels()
        self._logger.info(f"Launched local kernel {self.id} ({self.name}) in {self.working_directory}")

    def _read_stderr(self) -> str:
        if self._stderr is None:
            return ""
        try:
            self._stderr.seek(0)
            return self._stderr.read().decode(errors="replace")
        except (OSError, ValueError):
            return ""

    async def _exit_code(self) -> Optional[int]:
        provisioner = getattr(self.km, "provisioner", None)
        if provisioner is None:
            return None
        try:
            return await provisioner.poll()
        except Exception as e:
            self._logger.debug(f"Could not read kernel exit code: {e}")
            return None

    async def _launch_failure(self) -> Exception:
        """The typed error for a kernel that died during startup."""
        stderr = self._read_stderr()
        missing = _MISSING_KERNEL_MODULE.search(stderr)
        if missing:
            return KernelDependencyError(
                f"The interpreter for '{self.metadata.kernel_spec.display_name}' does not have ipykernel installed.",
                metadata=self.metadata,
            )
        return KernelProcessExitedError(await self._exit_code(), stderr, metadata=self.metadata)

    async def _port_in_use(self, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(self.km.ip, port), timeout=1.0)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        return True

    async def timeout_error(self, timeout: float) -> KilnError:
        """Classify a launch timeout by whether the process lives and has bound its ports."""
        if self.km is None:
            return await super().timeout_error(timeout)
        if not await self.km.is_alive():
            return await self._launch_failure()
        if self.km.transport == "tcp":
            ports = [port for port in (self.km.shell_port, self.km.hb_port) if port]
            if ports and not any([await self._port_in_use(port) for port in ports]):
                return KernelPortNotUsedTimeoutError(
                    f"Kernel {self.name} did not open its ports ({ports}) within {timeout} seconds",
                    metadata=self.metadata,
                )
        return await super().timeout_error(timeout)

    async def wait_for_ready(self, timeout: float) -> None:
        try:
            await self.client.wait_for_ready(timeout=timeout)
        except RuntimeError as e:
            raise await self.timeout_error(timeout) from e

        if self.km is not None and not await self.km.is_alive():
            raise await self._launch_failure()

        self._set_status(KernelStatus.IDLE)
        self._reader_tasks = [
            asyncio.ensure_future(self._read_channel("iopub", self.client.get_iopub_msg)),
            asyncio.ensure_future(self._read_channel("shell", self.client.get_shell_msg)),
            asyncio.ensure_future(self._read_channel("control", self.client.get_control_msg)),
        ]
        self.monitor_task = asyncio.ensure_future(self._monitor_process())

    async def _read_channel(self, channel: str, getter) -> None:
        try:
            while True:
                try:
                    msg = await getter(timeout=1.0)
                except queue.Empty:
                    continue
                except Exception as e:
                    self._logger.warning(f"Error receiving {channel} message from kernel {self.id}: {e}")
                    await asyncio.sleep(0.1)
                    continue
                self._handle_message(channel, msg)
        except asyncio.CancelledError:
            self._logger.debug(f"{channel} reader for kernel {self.id} cancelled")
            raise

    async def _monitor_process(self) -> None:
        """Periodically check that the kernel process is still alive."""
        try:
            while True:
                if self.km is not None and not await self.km.is_alive():
                    code = await self._exit_code()
                    self._mark_dead(f"Kernel process exited with code {code}")
                    break
                await asyncio.sleep(2.0)
        except asyncio.CancelledError:
            pass

    async def _send(self, channel: str, msg: Dict[str, Any]) -> None:
        if self.client is None:
            raise KernelDiedError("Kernel client is not available", metadata=self.metadata)
        target = self.client.control_channel if channel == "control" else self.client.shell_channel
        target.send(msg)

    async def interrupt(self) -> None:
        if self.km is None:
            raise KernelDiedError("Kernel manager is not available", metadata=self.metadata)
        self._logger.info(f"Interrupting kernel {self.id}")
        await self.km.interrupt_kernel()

    async def shutdown(self) -> None:
        if self.km is None:
            return
        self._logger.info(f"Sending shutdown signal to kernel {self.id}")
        try:
            await asyncio.wait_for(self.km.shutdown_kernel(now=True), timeout=2.0)
            self._logger.info(f"Kernel {self.id} shut down successfully.")
        except asyncio.TimeoutError:
            self._logger.warning(f"Timeout shutting down kernel {self.id}. It may be orphaned.")

    async def _close(self) -> None:
        tasks = [t for t in self._reader_tasks + [self.monitor_task] if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await asyncio.wait_for(task, timeout=1.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            except Exception as e:
                self._logger.warning(f"Task for kernel {self.id} had an error on cleanup: {e}")

        if self.client is not None:
            self.client.stop_channels()
        if self._stderr is not None:
            self._stderr.close()
        self.client = None
        self.km = None
        self._stderr = None
        self._reader_tasks = []
        self.monitor_task = None


class RawKernelSession(KernelSession):
    """A session whose kernels are local processes started from a kernel spec."""

    def __init__(self, metadata: KernelConnectionMetadata, working_directory: str, interpreters=None, **kwargs):
        super().__init__(metadata, working_directory, **kwargs)
        self.interpreters = interpreters

    def _create_connection(self) -> KernelConnection:
        extra_env = {}
        if self.interpreters is not None:
            extra_env = self.interpreters.get_environment_variables(self.metadata.interpreter)
        return LocalKernelConnection(self.metadata, self.working_directory, extra_env)
