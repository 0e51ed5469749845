"""
Unit tests for KernelErrorHandler.
"""
import pytest
import gc
import sys
import os
import weakref
from unittest.mock import AsyncMock, Mock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'rplugin', 'python3'))

from kiln.core.cancellation import CancellationError
from kiln.core.config import KilnSettings
from kiln.kernels.dependencies import DependencyResponse
from kiln.kernels.error_handler import CLOSE_OPTION, ENABLE_OPTION, KernelErrorHandler
from kiln.kernels.errors import (
    JupyterSelfCertsError,
    KernelConnectionTimeoutError,
    KernelDependencyError,
    KernelDiedError,
)
from kiln.kernels.types import DisplayOptions


class TestKernelErrorHandler:

    def setup_method(self):
        self.prompt = Mock()
        self.prompt.show_error_message = AsyncMock(return_value=None)
        self.dependencies = Mock()
        self.dependencies.install_missing_dependencies = AsyncMock(return_value=DependencyResponse.OK)
        self.settings = KilnSettings()
        self.persist = Mock()
        self.handler = KernelErrorHandler(self.prompt, self.dependencies, self.settings, self.persist)

    @pytest.mark.asyncio
    async def test_cancellation_is_silent(self):
        result = await self.handler.handle_kernel_error(CancellationError(), "start")

        assert result == DependencyResponse.CANCEL
        self.prompt.show_error_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_same_error_is_reported_once(self):
        error = KernelConnectionTimeoutError("Kernel did not become ready")

        first = await self.handler.handle_kernel_error(error, "start")
        second = await self.handler.handle_kernel_error(error, "start")
        await self.handler.handle_error(error)

        assert first == second == DependencyResponse.FAILED
        self.prompt.show_error_message.assert_awaited_once()
        message = self.prompt.show_error_message.await_args.args[0]
        assert message.startswith("Failed to start the Kernel.")
        assert "Consider restarting the kernel." in message

    @pytest.mark.asyncio
    async def test_reported_errors_are_not_retained(self):
        error = KernelDiedError("died")
        await self.handler.handle_kernel_error(error, "execution")
        reference = weakref.ref(error)

        del error
        gc.collect()

        assert reference() is None

    @pytest.mark.asyncio
    async def test_builtin_error_is_reported_once(self):
        error = ValueError("bad value")

        await self.handler.handle_error(error)
        await self.handler.handle_error(error)

        self.prompt.show_error_message.assert_awaited_once_with("bad value")

    @pytest.mark.asyncio
    async def test_disabled_ui_shows_nothing(self):
        result = await self.handler.handle_kernel_error(
            KernelDiedError("died"), "execution", display=DisplayOptions(disable_ui=True)
        )

        assert result == DependencyResponse.FAILED
        self.prompt.show_error_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_dependency_prompts_install_once(self):
        error = KernelDependencyError("ipykernel is not installed")

        first = await self.handler.handle_kernel_error(error, "start")
        second = await self.handler.handle_kernel_error(error, "start")

        assert first == DependencyResponse.OK
        assert second == DependencyResponse.CANCEL
        self.dependencies.install_missing_dependencies.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_trusting_certificate_updates_settings(self):
        self.prompt.show_error_message = AsyncMock(return_value=ENABLE_OPTION)

        result = await self.handler.handle_kernel_error(JupyterSelfCertsError("self signed"), "connect")

        assert result == DependencyResponse.CANCEL
        assert self.settings.allow_unauthorized_remote_connection is True
        self.persist.assert_called_once_with("kiln_nvim_allow_unauthorized_remote_connection", True)

    @pytest.mark.asyncio
    async def test_declining_certificate_leaves_settings(self):
        self.prompt.show_error_message = AsyncMock(return_value=CLOSE_OPTION)

        await self.handler.handle_error(JupyterSelfCertsError("self signed"))

        assert self.settings.allow_unauthorized_remote_connection is False
        self.persist.assert_not_called()

    def test_missing_module_in_stderr(self):
        error = KernelDiedError("Kernel died", stderr="Traceback...\nModuleNotFoundError: No module named 'ipykernel'")

        message = self.handler.get_error_message_for_display(error)

        assert "missing the 'ipykernel' module" in message

    def test_stderr_tail_is_appended(self):
        stderr = "\n".join(f"line {i}" for i in range(10))

        message = self.handler.get_error_message_for_display(KernelDiedError("Kernel died", stderr=stderr))

        assert message.startswith("Kernel died\n")
        assert "line 9" in message
        assert "line 4" not in message


if __name__ == "__main__":
    pytest.main([__file__])
