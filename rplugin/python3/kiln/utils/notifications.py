"""
User notification utilities for the Kiln plugin.

The plain functions must run on the Neovim thread. NvimPromptSurface wraps them
for coroutines running in the kernel layer: every call is scheduled with
nvim.async_call and its result handed back to the event loop.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

_logger = logging.getLogger('kiln.notifications')


def notify_user(nvim: Any, message: str, level: str = 'info') -> None:
    """
    Send a single-line notification to the user.

    Args:
        nvim: The pynvim.Nvim instance for interacting with Neovim
        message: The message to display to the user
        level: The notification level ('info', 'warning' or 'error')
    """
    if level == 'info':
        nvim.out_write(message + '\n')
    elif level == 'warning':
        nvim.out_write(f"Warning: {message}\n")
    elif level == 'error':
        nvim.err_write(message + '\n')


def notify_error_after_input(nvim: Any, message: str) -> None:
    """
    Display an error message after an input() dialog without requiring enter press.

    Args:
        nvim: The pynvim.Nvim instance for interacting with Neovim
        message: The error message to display
    """
    nvim.command('redraw')
    escaped = message.replace("'", "''")
    nvim.command(f"echohl ErrorMsg | echo '{escaped}' | echohl None")


def select_from_choices_sync(nvim: Any, choices: List[Dict[str, Any]], prompt_title: str) -> Optional[Dict[str, Any]]:
    """
    Present numbered choices to the user and return the selected one.

    Args:
        nvim: The pynvim.Nvim instance for interacting with Neovim
        choices: List of choice dictionaries with 'display_name' and 'value' keys
        prompt_title: Title to display to the user

    Returns:
        The selected choice dictionary or None if cancelled/failed
    """
    if not choices:
        notify_user(nvim, "No choices available", level='error')
        return None

    if len(choices) == 1:
        return choices[0]

    display_choices = [f"{i + 1}. {choice['display_name']}" for i, choice in enumerate(choices)]
    nvim.out_write(f"{prompt_title}:\n" + "\n".join(display_choices) + "\n")

    try:
        choice_input = nvim.call('input', 'Enter selection number: ')
    except Exception as e:
        _logger.error(f"nvim.call('input') failed: {e}")
        return None

    if choice_input is None or (isinstance(choice_input, str) and not choice_input.strip()):
        notify_error_after_input(nvim, "Empty input. Selection cancelled.")
        return None

    try:
        choice_idx = int(choice_input) - 1
    except (ValueError, TypeError):
        notify_error_after_input(nvim, f"Invalid input '{choice_input}'. Selection cancelled.")
        return None

    if 0 <= choice_idx < len(choices):
        return choices[choice_idx]

    notify_error_after_input(nvim, f"Invalid selection: number out of range (1-{len(choices)}).")
    return None


def confirm_sync(nvim: Any, message: str, options: List[str], level: str = 'Warning') -> Optional[str]:
    """
    Ask the user to pick one of options with Neovim's confirm() dialog.

    Returns:
        The chosen option text, or None when the dialog was dismissed.
    """
    buttons = "\n".join(f"&{option}" for option in options)
    try:
        index = nvim.call('confirm', message, buttons, 0, level)
    except Exception as e:
        _logger.error(f"nvim.call('confirm') failed: {e}")
        return None
    if isinstance(index, int) and 1 <= index <= len(options):
        return options[index - 1]
    return None


def _resolve(future: asyncio.Future, result: Any) -> None:
    if not future.done():
        future.set_result(result)


def _reject(future: asyncio.Future, error: BaseException) -> None:
    if not future.done():
        future.set_exception(error)


class NvimPromptSurface:
    """Async prompts for the kernel layer, executed on the Neovim thread."""

    def __init__(self, nvim: Any):
        self.nvim = nvim

    async def _call_in_nvim(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def run():
            try:
                result = fn()
            except Exception as e:
                loop.call_soon_threadsafe(_reject, future, e)
            else:
                loop.call_soon_threadsafe(_resolve, future, result)

        self.nvim.async_call(run)
        return await future

    async def show_info_message(self, message: str) -> None:
        await self._call_in_nvim(lambda: notify_user(self.nvim, message))

    async def show_warning_message(self, message: str, *options: str) -> Optional[str]:
        """Show a warning; with options, wait for the user's pick (None if dismissed)."""
        if not options:
            await self._call_in_nvim(lambda: notify_user(self.nvim, message, level='warning'))
            return None
        return await self._call_in_nvim(lambda: confirm_sync(self.nvim, message, list(options), 'Warning'))

    async def show_error_message(self, message: str, *options: str) -> Optional[str]:
        if not options:
            await self._call_in_nvim(lambda: notify_user(self.nvim, message, level='error'))
            return None
        return await self._call_in_nvim(lambda: confirm_sync(self.nvim, message, list(options), 'Error'))

    async def ask_password(self, prompt: str) -> Optional[str]:
        """Read a password without echoing it. Returns None when nothing was entered."""
        value = await self._call_in_nvim(lambda: self.nvim.call('inputsecret', prompt))
        return value or None

    async def select(self, choices: List[Dict[str, Any]], prompt_title: str) -> Optional[Dict[str, Any]]:
        return await self._call_in_nvim(lambda: select_from_choices_sync(self.nvim, choices, prompt_title))
