"""
Kernel management commands for the Kiln plugin.

This module contains the async halves of the commands for:
- Connecting to and disconnecting from a Jupyter server
- Listing and selecting kernels
- Kernel interruption, restart and shutdown

Buffer data is collected by the synchronous command handlers in the plugin
class and passed in; nothing here calls the Neovim API directly.
"""
import asyncio

from ..kernels.helpers import get_display_name_of_kernel_connection, is_kernel_connection_valid
from ..kernels.types import KernelConnectionKind, KernelOptions
from ..utils.notifications import notify_user


def _notify(plugin, message, level='info'):
    plugin.nvim.async_call(lambda: notify_user(plugin.nvim, message, level=level))


def kernel_choices(kernels):
    """
    Turn discovered kernels into choices for select_from_choices_sync.

    Args:
        kernels: List of KernelConnectionMetadata

    Returns:
        List[Dict]: Choices with display_name, value (the kernel id) and metadata
    """
    choices = []
    for metadata in kernels:
        if metadata.kind == KernelConnectionKind.CONNECT_TO_LIVE_REMOTE_KERNEL:
            prefix = "Running"
        elif metadata.is_remote:
            prefix = "Remote"
        else:
            prefix = "New"
        choices.append({
            'display_name': f"{prefix}: {get_display_name_of_kernel_connection(metadata)}",
            'value': metadata.id,
            'metadata': metadata,
        })
    return choices


async def connect_impl(plugin):
    """
    Connect to the configured Jupyter server.

    Args:
        plugin: The main Kiln plugin instance
    """
    try:
        server = await plugin.notebook_provider.get_or_create_server(cancel_token=plugin.cancel_source.token)
    except Exception as e:
        plugin._logger.error(f"Failed to connect to Jupyter server: {e}")
        await plugin.error_handler.handle_kernel_error(e, "connect")
        return

    if server is None:
        _notify(plugin, "No Jupyter server configured. Use :KilnConnect <uri>.", level='error')
        return
    _notify(plugin, f"Connected to Jupyter server {server.connection.display_name or server.base_url}")


async def disconnect_impl(plugin):
    """
    Dispose all remote kernels and forget every cached server.

    Args:
        plugin: The main Kiln plugin instance
    """
    tasks = [kernel.dispose() for kernel in plugin.kernel_provider.kernels if kernel.metadata.is_remote]
    results = await asyncio.gather(*[t for t in tasks if t is not None], return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            plugin._logger.error(f"Error disposing remote kernel: {result}")

    await plugin.notebook_provider.dispose()
    plugin.password_connect.clear()
    _notify(plugin, "Disconnected from Jupyter server")


async def list_kernels_impl(plugin, resource):
    kernels = await plugin.kernel_finder.list_kernels(resource, plugin.cancel_source.token)
    if not kernels:
        _notify(plugin, "No Jupyter kernels found. Please install ipykernel.", level='error')
        return

    lines = ["Available kernels:"]
    for choice in kernel_choices(kernels):
        lines.append(f"  {choice['display_name']} [{choice['value']}]")
    _notify(plugin, "\n".join(lines))


async def select_kernel_impl(plugin, identity, resource, prompt_title="Select a kernel for this buffer"):
    """
    Ask the user for a kernel and bind it to the buffer identity.

    Args:
        plugin: The main Kiln plugin instance
        identity: Buffer identity the kernel belongs to
        resource: Path of the buffer's file, if any
        prompt_title: Title of the selection prompt

    Returns:
        Kernel or None: The (not yet started) kernel, or None if nothing was selected
    """
    kernels = await plugin.kernel_finder.list_kernels(resource, plugin.cancel_source.token)
    if not kernels:
        _notify(plugin, "No Jupyter kernels found. Please install ipykernel.", level='error')
        return None

    choice = await plugin.prompt.select(kernel_choices(kernels), prompt_title)
    if not choice:
        return None

    return plugin.kernel_provider.get_or_create(identity, KernelOptions(choice['metadata'], resource))


async def select_and_start_kernel_impl(plugin, identity, resource):
    kernel = await select_kernel_impl(plugin, identity, resource)
    if kernel is None:
        return

    try:
        await kernel.start()
    except Exception as e:
        plugin._logger.error(f"Failed to start kernel {kernel.id}: {e}")
        await plugin.error_handler.handle_kernel_error(e, "start", kernel.metadata, resource)
        return
    _notify(plugin, f"Kernel {kernel.display_name} started for this buffer")


async def ensure_kernel(plugin, identity, resource):
    """
    Return the buffer's kernel, asking the user to pick one if there is none.

    A kernel whose connection is no longer valid (e.g. the server URI changed)
    is disposed and replaced.
    """
    kernel = plugin.kernel_provider.get(identity)
    if kernel is not None and not kernel.is_disposed:
        if is_kernel_connection_valid(kernel.metadata, plugin.settings.jupyter_server_uri):
            return kernel
        plugin._logger.info(f"Kernel {kernel.id} for {identity} is no longer valid")
        kernel.dispose()

    return await select_kernel_impl(plugin, identity, resource)


async def interrupt_kernel_impl(plugin, identity):
    """
    Implementation for sending an interrupt to the kernel associated with the current buffer.

    Args:
        plugin: The main Kiln plugin instance
        identity: Buffer identity
    """
    kernel = plugin.kernel_provider.get(identity)
    if kernel is None:
        _notify(plugin, "No active kernel found for this buffer", level='error')
        return

    try:
        await kernel.interrupt()
    except Exception as e:
        plugin._logger.error(f"Failed to interrupt kernel: {e}")
        await plugin.error_handler.handle_kernel_error(e, "interrupt", kernel.metadata, kernel.resource)
        return
    _notify(plugin, "Kernel interrupted successfully")


async def restart_kernel_impl(plugin, identity):
    """
    Implementation for restarting the kernel associated with the current buffer.

    Args:
        plugin: The main Kiln plugin instance
        identity: Buffer identity
    """
    kernel = plugin.kernel_provider.get(identity)
    if kernel is None:
        _notify(plugin, "No active kernel found for this buffer", level='error')
        return

    try:
        await kernel.restart()
    except Exception as e:
        plugin._logger.error(f"Failed to restart kernel: {e}")
        await plugin.error_handler.handle_kernel_error(e, "restart", kernel.metadata, kernel.resource)
        return
    _notify(plugin, "Kernel restarted - all variables and state cleared")


async def shutdown_kernel_impl(plugin, identity):
    kernel = plugin.kernel_provider.get(identity)
    if kernel is None:
        _notify(plugin, "No active kernel found for this buffer", level='error')
        return

    await kernel.shutdown()
    _notify(plugin, f"Kernel {kernel.display_name} shut down")
