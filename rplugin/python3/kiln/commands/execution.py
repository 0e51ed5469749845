"""
Code execution commands for the Kiln plugin.

The synchronous helpers collect buffer data on the Neovim thread; the async
implementation makes sure the buffer has a kernel and runs the code in it.
Output arrives through the kernel's IOPub messages.
"""
import os

from ..core.cell_parser import extract_cell, extract_line
from ..utils.notifications import notify_user
from .kernel_mgmt import ensure_kernel


def buffer_identity(bnum, name):
    """
    Identity and resource for a buffer.

    Named buffers are identified by their absolute path; unnamed ones by number.
    """
    if name:
        path = os.path.abspath(name)
        return path, path
    return f"buffer://{bnum}", None


def prepare_buffer_data(plugin):
    """Helper to get buffer data synchronously."""
    try:
        buffer = plugin.nvim.current.buffer
        current_line = plugin.nvim.current.window.cursor[0]  # 1-indexed
        lines = buffer[:]
        identity, resource = buffer_identity(buffer.number, buffer.name)
        plugin._logger.info(f"Got buffer data: {identity}, line {current_line}, {len(lines)} lines")
        return identity, resource, current_line, lines
    except Exception as e:
        plugin._logger.error(f"Error getting buffer data: {e}")
        notify_user(plugin.nvim, f"Error accessing buffer: {e}", level='error')
        return None, None, None, None


def prepare_cell_code(plugin, lines, current_line):
    try:
        cell_code, cell_start_line, cell_end_line = extract_cell(lines, current_line, plugin.settings.cell_delimiter)
    except Exception as e:
        plugin._logger.error(f"Error extracting cell code: {e}")
        notify_user(plugin.nvim, f"Error extracting cell: {e}", level='error')
        return None

    if not cell_code.strip():
        notify_user(plugin.nvim, "No code found in current cell")
        return None

    plugin._logger.debug(f"Cell code extracted: {len(cell_code)} characters")
    notify_user(plugin.nvim, f"Kiln: Executing cell (lines {cell_start_line}-{cell_end_line})")
    return cell_code


def prepare_line_code(plugin, lines, current_line):
    line_code = extract_line(lines, current_line)
    if not line_code:
        notify_user(plugin.nvim, "Current line is empty")
        return None

    notify_user(plugin.nvim, f"Kiln: Executing line {current_line}")
    return line_code


async def execute_code_impl(plugin, identity, resource, code):
    """
    Run code in the buffer's kernel, selecting and starting one if needed.

    Args:
        plugin: The main Kiln plugin instance
        identity: Buffer identity
        resource: Path of the buffer's file, if any
        code: Code to execute

    Returns:
        The execute_reply content, or None if nothing ran
    """
    kernel = await ensure_kernel(plugin, identity, resource)
    if kernel is None:
        return None

    try:
        reply = await kernel.execute(code)
    except Exception as e:
        plugin._logger.error(f"Execution failed in kernel {kernel.id}: {e}")
        await plugin.error_handler.handle_kernel_error(e, "execution", kernel.metadata, resource)
        return None

    plugin._logger.info(f"Execution finished with status {reply.get('status')} (count {reply.get('execution_count')})")
    return reply
