"""
Unit tests for ipykernel dependency checks and installs.
"""
import pytest
import asyncio
import sys
import os
from unittest.mock import AsyncMock, Mock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'rplugin', 'python3'))

from kiln.kernels.dependencies import (
    INSTALL_OPTION,
    SELECT_ANOTHER_OPTION,
    DependencyResponse,
    KernelDependencyService,
)
from kiln.kernels.errors import KernelDependencyError
from kiln.kernels.types import DisplayOptions, JupyterKernelSpec, KernelConnectionMetadata, PythonEnvironment


class TestKernelDependencyService:

    def setup_method(self):
        self.interpreter = PythonEnvironment(path="/venv/bin/python", display_name="venv")
        spec = JupyterKernelSpec(name="python3", display_name="Python 3", argv=["python"])
        self.error = KernelDependencyError(
            "ipykernel missing", KernelConnectionMetadata.python_interpreter(spec, self.interpreter))
        self.prompt = Mock()
        self.prompt.show_error_message = AsyncMock(return_value=INSTALL_OPTION)
        self.prompt.show_info_message = AsyncMock()
        self.service = KernelDependencyService(Mock(), self.prompt)

    @pytest.mark.asyncio
    async def test_already_installed(self):
        with patch.object(self.service, "are_dependencies_installed", AsyncMock(return_value=True)):
            result = await self.service.install_missing_dependencies(self.error)

        assert result == DependencyResponse.OK
        self.prompt.show_error_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_install(self):
        with patch.object(self.service, "are_dependencies_installed", AsyncMock(return_value=False)), \
                patch.object(self.service, "_run", AsyncMock(return_value=0)) as run:
            result = await self.service.install_missing_dependencies(self.error)

        assert result == DependencyResponse.OK
        args = run.await_args.args
        assert args[:5] == ("/venv/bin/python", "-m", "pip", "install", "-U")
        assert args[5] == "ipykernel"

    @pytest.mark.asyncio
    async def test_failed_install(self):
        with patch.object(self.service, "are_dependencies_installed", AsyncMock(return_value=False)), \
                patch.object(self.service, "_run", AsyncMock(return_value=1)):
            result = await self.service.install_missing_dependencies(self.error)

        assert result == DependencyResponse.FAILED

    @pytest.mark.asyncio
    async def test_select_another(self):
        self.prompt.show_error_message = AsyncMock(return_value=SELECT_ANOTHER_OPTION)

        with patch.object(self.service, "are_dependencies_installed", AsyncMock(return_value=False)):
            result = await self.service.install_missing_dependencies(self.error)

        assert result == DependencyResponse.SELECT_ANOTHER

    @pytest.mark.asyncio
    async def test_dismissed_prompt_cancels(self):
        self.prompt.show_error_message = AsyncMock(return_value=None)

        with patch.object(self.service, "are_dependencies_installed", AsyncMock(return_value=False)):
            result = await self.service.install_missing_dependencies(self.error)

        assert result == DependencyResponse.CANCEL

    @pytest.mark.asyncio
    async def test_no_prompt_without_ui(self):
        with patch.object(self.service, "are_dependencies_installed", AsyncMock(return_value=False)):
            result = await self.service.install_missing_dependencies(self.error, DisplayOptions(disable_ui=True))

        assert result == DependencyResponse.CANCEL
        self.prompt.show_error_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_prompt(self):
        release = asyncio.Event()

        async def answer(*args):
            await release.wait()
            return INSTALL_OPTION

        self.prompt.show_error_message = AsyncMock(side_effect=answer)

        with patch.object(self.service, "are_dependencies_installed", AsyncMock(return_value=False)), \
                patch.object(self.service, "_run", AsyncMock(return_value=0)):
            pending = asyncio.gather(
                self.service.install_missing_dependencies(self.error),
                self.service.install_missing_dependencies(self.error),
            )
            await asyncio.sleep(0.01)
            release.set()
            results = await pending

        assert results == [DependencyResponse.OK, DependencyResponse.OK]
        self.prompt.show_error_message.assert_awaited_once()


if __name__ == "__main__":
    pytest.main([__file__])
