import asyncio
import dataclasses
import logging
logging.basicConfig(filename="/tmp/kiln.log", level=logging.DEBUG)
from typing import Any, Dict

import pynvim

# Import core modules
from .core.async_executor import AsyncExecutor
from .core.cancellation import CancellationTokenSource
from .core.config import load_settings

# Import the Jupyter server layer
from .jupyter.connection import ConnectionNegotiator, SecurityPolicyStore
from .jupyter.password_connect import JupyterPasswordConnect
from .jupyter.server_cache import ServerCache
from .jupyter.session_manager import JupyterSessionManagerFactory

# Import the kernel layer
from .kernels.dependencies import KernelDependencyService
from .kernels.error_handler import KernelErrorHandler
from .kernels.finders import KernelFinder, LocalKernelFinder, RemoteKernelFinder
from .kernels.interpreters import InterpreterService
from .kernels.kernel_provider import KernelProvider
from .kernels.notebook_provider import NotebookProvider
from .kernels.types import KernelStatus

# Import utilities
from .utils.notifications import NvimPromptSurface, notify_user


@pynvim.plugin
class Kiln:
    """
    Main Kiln plugin class: binds buffers to Jupyter kernels, local or on a
    Jupyter server, and runs cells in them.
    """

    def __init__(self, nvim):
        """
        Initialize the plugin with all required components.

        Args:
            nvim: The pynvim.Nvim instance for interacting with Neovim.
        """
        self.nvim = nvim

        # Set up logging
        self._logger = logging.getLogger("kiln.main")

        self.settings = load_settings(nvim, self._logger)
        self.prompt = NvimPromptSurface(nvim)

        # Jupyter server layer
        self.security_store = SecurityPolicyStore(self.settings.allow_insecure_connections)
        self.password_connect = JupyterPasswordConnect(self.prompt, self.settings)
        self.negotiator = ConnectionNegotiator(self.prompt, self.password_connect, self.security_store, self.settings)
        self.session_manager_factory = JupyterSessionManagerFactory(self.negotiator, self.settings)
        self.server_cache = ServerCache()

        # Kernel layer
        self.interpreters = InterpreterService(self.settings.python_path)
        self.dependencies = KernelDependencyService(self.interpreters, self.prompt)
        self.error_handler = KernelErrorHandler(self.prompt, self.dependencies, self.settings, self._persist_setting)
        self.notebook_provider = NotebookProvider(
            self.settings, self.server_cache, self.session_manager_factory, self.interpreters
        )
        self.kernel_finder = KernelFinder(
            LocalKernelFinder(self.interpreters),
            RemoteKernelFinder(self.notebook_provider, self.session_manager_factory, self.interpreters),
            self.settings,
        )
        self.kernel_provider = KernelProvider(self.notebook_provider, self.error_handler)
        self.kernel_provider.on_kernel_created.subscribe(self._on_kernel_created)
        self.kernel_provider.on_kernel_status_changed.subscribe(self._on_kernel_status_changed)

        # Initialize async executor
        self.async_executor = AsyncExecutor(nvim, self._logger)

        self.cancel_source = CancellationTokenSource()
        self._cleanup_lock = asyncio.Lock()  # Lock to manage cleanup process

        self._logger.info("Kiln plugin initialized")

    def _refresh_settings(self):
        """Re-read the g:kiln_nvim_* variables into the shared settings object."""
        latest = load_settings(self.nvim, self._logger)
        for settings_field in dataclasses.fields(latest):
            setattr(self.settings, settings_field.name, getattr(latest, settings_field.name))
        if self.settings.allow_insecure_connections:
            self.security_store.allow_insecure_connections()
        self.interpreters.python_path = self.settings.python_path

    def _persist_setting(self, name: str, value: Any):
        def persist():
            self.nvim.vars[name] = value

        try:
            self.nvim.async_call(persist)
        except Exception as e:
            self._logger.error(f"Failed to persist setting {name}: {e}")

    def _on_kernel_created(self, kernel):
        kernel.on_iopub_message.subscribe(lambda message: self._handle_message_for_nvim(kernel, message))

    def _on_kernel_status_changed(self, event):
        kernel, status = event
        if status == KernelStatus.DEAD:
            self._logger.warning(f"Kernel {kernel.id} for {kernel.identity} died")
            self.nvim.async_call(
                lambda: notify_user(self.nvim, f"Kernel {kernel.display_name} died. Run a cell to start it again.",
                                    level='error')
            )

    def _handle_message_for_nvim(self, kernel, message: Dict[str, Any]):
        """
        Echo text output of a kernel in Neovim.

        Args:
            kernel: The Kernel that sent the message
            message: The IOPub message
        """
        msg_type = message.get('msg_type') or message.get('header', {}).get('msg_type')
        content = message.get('content', {})
        text = None
        level = 'info'

        try:
            if msg_type == 'stream':
                text = content.get('text', '')
                if content.get('name') == 'stderr':
                    level = 'warning'
            elif msg_type in ('execute_result', 'display_data'):
                text = content.get('data', {}).get('text/plain')
                if isinstance(text, list):
                    text = '\n'.join(text)
            elif msg_type == 'error':
                text = f"{content.get('ename', 'Error')}: {content.get('evalue', '')}"
                level = 'error'
        except Exception as e:
            self._logger.warning(f"Error handling message for Neovim: {e}")
            return

        if text and text.strip():
            self._logger.debug(f"[{(kernel.kernel_id or '')[:8]}] {msg_type}: {text.strip()}")
            self.nvim.async_call(lambda: notify_user(self.nvim, text.rstrip('\n'), level=level))

    @pynvim.autocmd("VimLeave", sync=True)
    def on_vim_leave(self):
        """
        Handle Vim exit - fires off the async cleanup and allows Neovim to exit immediately.
        """
        self._logger.info("Vim leaving - scheduling 'fire and forget' async cleanup.")
        try:
            loop = asyncio.get_running_loop()

            # The pynvim host process stays alive until the task completes
            asyncio.run_coroutine_threadsafe(self._async_cleanup(), loop)

            self._logger.info("Cleanup task scheduled. Neovim can now exit.")

        except Exception as e:
            self._logger.error(f"Error scheduling VimLeave cleanup: {e}")

    async def _async_cleanup(self):
        """
        A unified and sequential async cleanup method to prevent race conditions.
        """
        async with self._cleanup_lock:
            self._logger.info("Starting async cleanup")

            # 1. Cancel in-flight operations
            self.cancel_source.cancel()
            self.cancel_source = CancellationTokenSource()

            # 2. Dispose all kernels
            try:
                await self.kernel_provider.dispose_all()
                self._logger.info("All kernels disposed.")
            except Exception as e:
                self._logger.error(f"Error disposing kernels: {e}")

            # 3. Dispose cached servers and forget connection decisions
            try:
                await self.notebook_provider.dispose()
            except Exception as e:
                self._logger.error(f"Error disposing servers: {e}")
            self.password_connect.clear()
            self.security_store.clear()

            self._logger.info("Async cleanup completed")

    def _current_buffer_identity(self):
        from .commands.execution import buffer_identity

        try:
            buffer = self.nvim.current.buffer
            return buffer_identity(buffer.number, buffer.name)
        except Exception as e:
            self._logger.error(f"Error getting buffer: {e}")
            notify_user(self.nvim, f"Error accessing buffer: {e}", level='error')
            return None, None

    # Server Commands
    @pynvim.command('KilnConnect', nargs='?', sync=True)
    def connect_command(self, args):
        """
        Connect to a Jupyter server, given as argument or by g:kiln_nvim_jupyter_server_uri.
        """
        self._logger.info("KilnConnect called")
        if args:
            self.nvim.vars['kiln_nvim_jupyter_server_uri'] = args[0]
        self._refresh_settings()

        from .commands.kernel_mgmt import connect_impl
        return self.async_executor.execute_sync(connect_impl(self), "server connection")

    @pynvim.command('KilnDisconnect', sync=True)
    def disconnect_command(self):
        """
        Shut down remote kernels and drop the connection to the Jupyter server.
        """
        self._logger.info("KilnDisconnect called")
        from .commands.kernel_mgmt import disconnect_impl
        return self.async_executor.execute_sync(disconnect_impl(self), "server disconnection")

    # Kernel Management Commands
    @pynvim.command('KilnListKernels', sync=True)
    def list_kernels_command(self):
        """
        List local kernels and those of the configured Jupyter server.
        """
        self._logger.info("KilnListKernels called")
        self._refresh_settings()
        _, resource = self._current_buffer_identity()

        from .commands.kernel_mgmt import list_kernels_impl
        return self.async_executor.execute_sync(list_kernels_impl(self, resource), "kernel listing")

    @pynvim.command('KilnSelectKernel', sync=True)
    def select_kernel_command(self):
        """
        Select a kernel for the current buffer and start it.
        """
        self._logger.info("KilnSelectKernel called")
        self._refresh_settings()
        identity, resource = self._current_buffer_identity()
        if identity is None:
            return

        from .commands.kernel_mgmt import select_and_start_kernel_impl
        return self.async_executor.execute_sync(
            select_and_start_kernel_impl(self, identity, resource), "kernel selection"
        )

    @pynvim.command('KilnInterruptKernel', sync=True)
    def interrupt_kernel_command(self):
        """
        Send an interrupt to the kernel associated with the current buffer.
        """
        self._logger.info("KilnInterruptKernel called")
        identity, _ = self._current_buffer_identity()
        if identity is None:
            return

        from .commands.kernel_mgmt import interrupt_kernel_impl
        return self.async_executor.execute_sync(interrupt_kernel_impl(self, identity), "kernel interruption")

    @pynvim.command('KilnRestartKernel', sync=True)
    def restart_kernel_command(self):
        """
        Restart the kernel associated with the current buffer and clear its state.
        """
        self._logger.info("KilnRestartKernel called")
        identity, _ = self._current_buffer_identity()
        if identity is None:
            return

        from .commands.kernel_mgmt import restart_kernel_impl
        return self.async_executor.execute_sync(restart_kernel_impl(self, identity), "kernel restart")

    @pynvim.command('KilnShutdownKernel', sync=True)
    def shutdown_kernel_command(self):
        """
        Shut down the kernel associated with the current buffer.
        """
        self._logger.info("KilnShutdownKernel called")
        identity, _ = self._current_buffer_identity()
        if identity is None:
            return

        from .commands.kernel_mgmt import shutdown_kernel_impl
        return self.async_executor.execute_sync(shutdown_kernel_impl(self, identity), "kernel shutdown")

    # Execution Commands
    @pynvim.command('KilnRunCell', sync=True)
    def run_cell(self):
        """
        Execute the current cell in the buffer's kernel.
        """
        from .commands.execution import execute_code_impl, prepare_buffer_data, prepare_cell_code

        self._logger.info("KilnRunCell called")
        self._refresh_settings()
        identity, resource, current_line, lines = prepare_buffer_data(self)
        if identity is None:
            return
        code = prepare_cell_code(self, lines, current_line)
        if code is None:
            return
        return self.async_executor.execute_sync(execute_code_impl(self, identity, resource, code), "cell execution")

    @pynvim.command('KilnRunLine', sync=True)
    def run_line(self):
        """
        Execute the current line in the buffer's kernel.
        """
        from .commands.execution import execute_code_impl, prepare_buffer_data, prepare_line_code

        self._logger.info("KilnRunLine called")
        self._refresh_settings()
        identity, resource, current_line, lines = prepare_buffer_data(self)
        if identity is None:
            return
        code = prepare_line_code(self, lines, current_line)
        if code is None:
            return
        return self.async_executor.execute_sync(execute_code_impl(self, identity, resource, code), "line execution")

    # Debug Commands
    @pynvim.command('KilnStatus', sync=True)
    def status_command(self):
        """
        Show status of Kiln plugin components.
        """
        from .commands.debug import status_command_impl
        return status_command_impl(self)

    @pynvim.command('KilnStop', sync=True)
    def stop_command(self):
        """
        Stop all kernels and forget all server connections.
        """
        self.nvim.out_write("Stopping Kiln components...\n")
        try:
            # Use the same async cleanup pattern as VimLeave
            loop = asyncio.get_running_loop()
            asyncio.run_coroutine_threadsafe(self._async_cleanup(), loop)
            self.nvim.out_write("Kiln cleanup scheduled.\n")
        except RuntimeError:
            # No running loop - this shouldn't happen in normal pynvim context
            self.nvim.err_write("No async event loop available for cleanup.\n")
        except Exception as e:
            self._logger.error(f"Error in KilnStop: {e}")
            self.nvim.err_write(f"Stop error: {e}\n")
