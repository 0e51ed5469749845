"""
Status command for the Kiln plugin.
"""


def status_command_impl(plugin):
    """
    Implementation for showing status of Kiln plugin components.

    Args:
        plugin: The main Kiln plugin instance
    """
    try:
        server_uri = plugin.settings.jupyter_server_uri or "none (local kernels only)"
        kernels = plugin.kernel_provider.kernels

        status_msg = f"""Kiln Status:
  Jupyter Server: {server_uri}
  Cached Servers: {len(plugin.server_cache)}
  Kernels: {len(kernels)} active
"""

        if kernels:
            status_msg += "\nActive Kernels:\n"
            for kernel in kernels:
                kernel_id = (kernel.kernel_id or "-")[:8]
                status_msg += f"  {kernel.display_name} [{kernel.status.value}] {kernel_id}: {kernel.identity}\n"

        plugin.nvim.out_write(status_msg)

    except Exception as e:
        plugin._logger.error(f"Error in KilnStatus: {e}")
        plugin.nvim.err_write(f"Status error: {e}\n")
