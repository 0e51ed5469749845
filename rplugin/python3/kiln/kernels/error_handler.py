"""
Turns kernel layer failures into user-facing messages and recovery flows.
"""
import logging
import re
from typing import Any, Callable, Optional

from .dependencies import DependencyResponse
from .errors import (
    ErrorKind,
    KernelDependencyError,
    KernelDiedError,
    KernelProcessExitedError,
    RecoveryAction,
    classify_error,
    recovery_action_for,
)
from .helpers import get_display_name_of_kernel_connection

ENABLE_OPTION = "Enable"
CLOSE_OPTION = "Close"

_CONTEXT_PREFIXES = {
    "start": "Failed to start the Kernel.",
    "restart": "Failed to restart the Kernel.",
    "interrupt": "Failed to interrupt the Kernel.",
    "execution": "The kernel failed while executing code.",
    "connect": "Failed to connect to the Jupyter server.",
}

_MISSING_MODULE = re.compile(r"No module named '?([\w.]+)'?")


def _tail(text: str, lines: int = 5) -> str:
    return "\n".join((text or "").strip().splitlines()[-lines:])


class KernelErrorHandler:
    """
    Shows at most one message per error instance and drives recovery.

    Args:
        prompt: An object with async show_error_message(text, *options)
        dependencies: A KernelDependencyService
        settings: The shared KilnSettings; updated when the user trusts a certificate
        persist_setting: Optional callable(name, value) to remember a setting change
    """

    def __init__(self, prompt, dependencies, settings, persist_setting: Optional[Callable[[str, Any], None]] = None):
        self.prompt = prompt
        self.dependencies = dependencies
        self.settings = settings
        self.persist_setting = persist_setting
        self._logger = logging.getLogger("kiln.error_handler")

    def _first_time(self, error: BaseException) -> bool:
        # The handler keeps no references to the errors it reported
        if getattr(error, "_kiln_reported", False):
            return False
        error._kiln_reported = True
        return True

    async def handle_error(self, error: BaseException) -> None:
        """Report an error that is not tied to a kernel operation."""
        kind = classify_error(error)
        if kind == ErrorKind.CANCELLED:
            self._logger.debug(f"Ignoring cancellation: {error}")
            return
        if not self._first_time(error):
            return

        self._logger.error(f"Handling error ({kind.value}): {error}")
        if recovery_action_for(kind) == RecoveryAction.PROMPT_TRUST_CERTIFICATE:
            await self._prompt_trust_certificate()
            return
        await self.prompt.show_error_message(self.get_error_message_for_display(error))

    async def handle_kernel_error(self, error: BaseException, context: str, metadata=None,
                                  resource: Optional[str] = None, display=None) -> DependencyResponse:
        """
        Report a failure of a kernel operation (context: start, restart, interrupt, execution).

        Returns:
            DependencyResponse.OK when recovery succeeded and the operation may be
            retried, otherwise how the user responded.
        """
        kind = classify_error(error)
        action = recovery_action_for(kind)
        self._logger.info(f"Kernel error during {context} ({kind.value} -> {action.value}) for {resource}: {error}")

        if action == RecoveryAction.IGNORE:
            return DependencyResponse.CANCEL

        if action == RecoveryAction.PROMPT_INSTALL:
            # The install prompt is the report for this error
            if not self._first_time(error):
                return DependencyResponse.CANCEL
            if not isinstance(error, KernelDependencyError):
                error = KernelDependencyError(str(error), metadata)
            return await self.dependencies.install_missing_dependencies(error, display)

        if action == RecoveryAction.PROMPT_TRUST_CERTIFICATE:
            if self._first_time(error):
                await self._prompt_trust_certificate()
            return DependencyResponse.CANCEL

        if display is not None and getattr(display, "disable_ui", False):
            return DependencyResponse.FAILED

        if self._first_time(error):
            prefix = _CONTEXT_PREFIXES.get(context, "Kernel error.")
            kernel_name = get_display_name_of_kernel_connection(metadata)
            if kernel_name:
                prefix = f"{prefix[:-1]} '{kernel_name}'."
            message = f"{prefix} {self.get_error_message_for_display(error)}"
            if action == RecoveryAction.OFFER_RESTART:
                message += " Consider restarting the kernel."
            elif action == RecoveryAction.RECREATE_KERNEL:
                message += " A new kernel will be started on the next run."
            await self.prompt.show_error_message(message)
        return DependencyResponse.FAILED

    def get_error_message_for_display(self, error: BaseException) -> str:
        if isinstance(error, (KernelDiedError, KernelProcessExitedError)) and error.stderr:
            missing = _MISSING_MODULE.search(error.stderr)
            if missing:
                module = missing.group(1).split(".")[0]
                return (f"The kernel's Python environment is missing the '{module}' module. "
                        f"Install it with: python -m pip install {module}")
            return f"{error.message}\n{_tail(error.stderr)}"
        if isinstance(error, KernelDependencyError):
            return (f"{error.message} Install it with: python -m pip install {error.module}")
        message = str(error) or error.__class__.__name__
        return message

    async def _prompt_trust_certificate(self) -> None:
        choice = await self.prompt.show_error_message(
            "The Jupyter server is using a self-signed or untrusted certificate. "
            "Allow connections without certificate verification?",
            ENABLE_OPTION,
            CLOSE_OPTION,
        )
        if choice != ENABLE_OPTION:
            return
        self.settings.allow_unauthorized_remote_connection = True
        self._logger.info("User allowed unauthorized remote connections")
        if self.persist_setting:
            self.persist_setting("kiln_nvim_allow_unauthorized_remote_connection", True)
