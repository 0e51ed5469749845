"""
Configuration management utilities for the Kiln plugin.

This module contains functions for retrieving and managing plugin configuration
from Neovim global variables with appropriate defaults and error handling.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional


DEFAULT_CELL_DELIMITER = r'^#+\s*%%'
DEFAULT_LAUNCH_TIMEOUT = 60.0
DEFAULT_INTERRUPT_TIMEOUT = 10.0


def get_cell_delimiter(nvim: Any, logger: logging.Logger) -> str:
    """
    Get the cell delimiter pattern from Neovim global variable.

    Args:
        nvim: The pynvim.Nvim instance for interacting with Neovim
        logger: Logger instance for error reporting

    Returns:
        str: The regex pattern for cell delimiters, defaults to '^#+\\s*%%' if not set.
    """
    try:
        return nvim.vars.get('kiln_nvim_cell_delimiter', DEFAULT_CELL_DELIMITER)
    except Exception:
        logger.warning("Failed to get custom cell delimiter, using default '^#+\\s*%%'")
        return DEFAULT_CELL_DELIMITER


def get_jupyter_server_uri(nvim: Any, logger: logging.Logger) -> Optional[str]:
    """
    Get the remote Jupyter server URI.

    Returns None (the default) when only local kernels should be used. The URI may
    carry the token as a query parameter, e.g. 'http://host:8888/?token=abc'.
    """
    try:
        uri = nvim.vars.get('kiln_nvim_jupyter_server_uri', None)
        return uri or None
    except Exception as e:
        logger.warning(f"Error getting Jupyter server URI from Neovim variable: {e}")
        return None


def get_launch_timeout(nvim: Any, logger: logging.Logger) -> float:
    """
    Get the number of seconds allowed for a kernel to become ready after launch.

    Args:
        nvim: The pynvim.Nvim instance for interacting with Neovim
        logger: Logger instance for error reporting

    Returns:
        float: Launch timeout in seconds, defaults to 60.
    """
    try:
        return float(nvim.vars.get('kiln_nvim_jupyter_launch_timeout', DEFAULT_LAUNCH_TIMEOUT))
    except Exception as e:
        logger.warning(f"Error getting launch timeout from Neovim variable: {e}")
        return DEFAULT_LAUNCH_TIMEOUT


def get_interrupt_timeout(nvim: Any, logger: logging.Logger) -> float:
    """
    Get the number of seconds to wait for a kernel to go idle after an interrupt.

    Returns:
        float: Interrupt timeout in seconds, defaults to 10.
    """
    try:
        return float(nvim.vars.get('kiln_nvim_jupyter_interrupt_timeout', DEFAULT_INTERRUPT_TIMEOUT))
    except Exception as e:
        logger.warning(f"Error getting interrupt timeout from Neovim variable: {e}")
        return DEFAULT_INTERRUPT_TIMEOUT


def get_allow_unauthorized_remote_connection(nvim: Any, logger: logging.Logger) -> bool:
    """
    Get whether HTTPS connections may skip certificate verification.

    This is disabled by default. When enabled it only affects connections to
    https servers; it never weakens plain http connections.

    Returns:
        bool: Whether self-signed certificates are accepted, defaults to False.
    """
    try:
        return bool(nvim.vars.get('kiln_nvim_allow_unauthorized_remote_connection', False))
    except Exception as e:
        logger.warning(f"Error getting allow_unauthorized_remote_connection from Neovim variable: {e}")
        return False


def get_allow_insecure_connections(nvim: Any, logger: logging.Logger) -> bool:
    """
    Get whether tokenless http connections to remote servers may proceed without a prompt.
    """
    try:
        return bool(nvim.vars.get('kiln_nvim_allow_insecure_connections', False))
    except Exception as e:
        logger.warning(f"Error getting allow_insecure_connections from Neovim variable: {e}")
        return False


def get_disable_password_prompt(nvim: Any, logger: logging.Logger) -> bool:
    try:
        return bool(nvim.vars.get('kiln_nvim_disable_password_prompt', False))
    except Exception as e:
        logger.warning(f"Error getting disable_password_prompt from Neovim variable: {e}")
        return False


def get_notebook_file_root(nvim: Any, logger: logging.Logger) -> Optional[str]:
    """
    Get the directory kernels should start in when the buffer has no file on disk.
    """
    try:
        return nvim.vars.get('kiln_nvim_notebook_file_root', None) or None
    except Exception as e:
        logger.warning(f"Error getting notebook file root from Neovim variable: {e}")
        return None


def get_python_path(nvim: Any, logger: logging.Logger) -> Optional[str]:
    """
    Get the interpreter used for the synthetic 'Python (active interpreter)' kernel.

    Returns:
        Optional[str]: Interpreter path, or None to use the plugin host interpreter.
    """
    try:
        return nvim.vars.get('kiln_nvim_python_path', None) or None
    except Exception as e:
        logger.warning(f"Error getting python path from Neovim variable: {e}")
        return None


@dataclass
class KilnSettings:
    """Snapshot of all plugin settings, read once per command."""

    cell_delimiter: str = DEFAULT_CELL_DELIMITER
    jupyter_server_uri: Optional[str] = None
    launch_timeout: float = DEFAULT_LAUNCH_TIMEOUT
    interrupt_timeout: float = DEFAULT_INTERRUPT_TIMEOUT
    allow_unauthorized_remote_connection: bool = False
    allow_insecure_connections: bool = False
    disable_password_prompt: bool = False
    notebook_file_root: Optional[str] = None
    python_path: Optional[str] = None


def load_settings(nvim: Any, logger: logging.Logger) -> KilnSettings:
    """
    Read every plugin setting from Neovim global variables.

    Must be called from the Neovim thread (a sync command handler or a function
    scheduled with nvim.async_call).
    """
    return KilnSettings(
        cell_delimiter=get_cell_delimiter(nvim, logger),
        jupyter_server_uri=get_jupyter_server_uri(nvim, logger),
        launch_timeout=get_launch_timeout(nvim, logger),
        interrupt_timeout=get_interrupt_timeout(nvim, logger),
        allow_unauthorized_remote_connection=get_allow_unauthorized_remote_connection(nvim, logger),
        allow_insecure_connections=get_allow_insecure_connections(nvim, logger),
        disable_password_prompt=get_disable_password_prompt(nvim, logger),
        notebook_file_root=get_notebook_file_root(nvim, logger),
        python_path=get_python_path(nvim, logger),
    )
