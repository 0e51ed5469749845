"""
Unit tests for the main Kiln plugin class and its command implementations.
"""
import pytest
import sys
import os
from unittest.mock import AsyncMock, Mock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'rplugin', 'python3'))

from kiln import Kiln
from kiln.commands.execution import buffer_identity, execute_code_impl
from kiln.commands.kernel_mgmt import connect_impl, ensure_kernel, kernel_choices, restart_kernel_impl
from kiln.core.config import KilnSettings
from kiln.kernels.errors import KernelDiedError
from kiln.kernels.types import (
    JupyterKernelSpec,
    KernelConnectionMetadata,
    KernelStatus,
    LiveKernelModel,
)


class MockBuffer(list):
    """Mock buffer that behaves like a list."""

    def __init__(self, lines, number=1, name="test.py"):
        super().__init__(lines)
        self.number = number
        self.name = name


class MockNvim:
    """Mock Neovim instance for testing."""

    def __init__(self, lines=None, cursor=(1, 0)):
        self.current = Mock()
        self.current.buffer = MockBuffer(lines or ["  "], 1, "/work/test.py")
        self.current.window = Mock()
        self.current.window.cursor = cursor

        self.output_messages = []
        self.error_messages = []
        self.vars = {}

    def out_write(self, message):
        self.output_messages.append(message)

    def err_write(self, message):
        self.error_messages.append(message)

    def async_call(self, func, *args):
        return func(*args)

    def command(self, cmd):
        pass


SPEC = JupyterKernelSpec(name="python3", display_name="Python 3", argv=["python"])


class TestKilnPlugin:
    """Test cases for the main Kiln plugin class."""

    def setup_method(self):
        self.mock_nvim = MockNvim()

    def test_initialization_reads_settings(self):
        self.mock_nvim.vars["kiln_nvim_jupyter_server_uri"] = "http://localhost:8888/?token=abc"

        plugin = Kiln(self.mock_nvim)

        assert plugin.nvim is self.mock_nvim
        assert plugin.settings.jupyter_server_uri == "http://localhost:8888/?token=abc"
        assert plugin.kernel_provider.kernels == []
        assert len(plugin.server_cache) == 0
        # Components share one settings object so that :KilnConnect reaches all of them
        assert plugin.negotiator.settings is plugin.settings
        assert plugin.notebook_provider.settings is plugin.settings

    def test_refresh_settings_updates_in_place(self):
        plugin = Kiln(self.mock_nvim)
        settings = plugin.settings
        self.mock_nvim.vars["kiln_nvim_allow_insecure_connections"] = True

        plugin._refresh_settings()

        assert plugin.settings is settings
        assert settings.allow_insecure_connections is True
        assert plugin.security_store.insecure_connections_allowed

    def test_run_cell_no_code_found(self):
        plugin = Kiln(self.mock_nvim)
        plugin.async_executor.execute_sync = Mock()

        plugin.run_cell()

        assert any("No code found in current cell" in msg for msg in self.mock_nvim.output_messages)
        plugin.async_executor.execute_sync.assert_not_called()

    def test_run_cell_schedules_execution(self):
        self.mock_nvim = MockNvim(["x = 1", "# %%", "print(x)"], cursor=(3, 0))
        plugin = Kiln(self.mock_nvim)
        plugin.async_executor.execute_sync = Mock(side_effect=lambda coro, context: coro.close())

        plugin.run_cell()

        assert plugin.async_executor.execute_sync.call_args.args[1] == "cell execution"
        assert any("lines 3-3" in msg for msg in self.mock_nvim.output_messages)

    def test_run_line_empty(self):
        plugin = Kiln(self.mock_nvim)
        plugin.async_executor.execute_sync = Mock()

        plugin.run_line()

        assert any("Current line is empty" in msg for msg in self.mock_nvim.output_messages)

    def test_connect_with_argument_sets_server_uri(self):
        plugin = Kiln(self.mock_nvim)
        plugin.async_executor.execute_sync = Mock(side_effect=lambda coro, context: coro.close())

        plugin.connect_command(["http://localhost:8888/?token=abc"])

        assert self.mock_nvim.vars["kiln_nvim_jupyter_server_uri"] == "http://localhost:8888/?token=abc"
        assert plugin.settings.jupyter_server_uri == "http://localhost:8888/?token=abc"

    def test_stream_output_is_echoed(self):
        plugin = Kiln(self.mock_nvim)
        kernel = Mock(kernel_id="k1")

        plugin._handle_message_for_nvim(kernel, {"msg_type": "stream", "content": {"name": "stdout", "text": "hi\n"}})

        assert self.mock_nvim.output_messages == ["hi\n"]

    def test_error_output_is_echoed_as_error(self):
        plugin = Kiln(self.mock_nvim)
        kernel = Mock(kernel_id="k1")

        plugin._handle_message_for_nvim(kernel, {
            "msg_type": "error", "content": {"ename": "NameError", "evalue": "name 'x' is not defined"}
        })

        assert self.mock_nvim.error_messages == ["NameError: name 'x' is not defined\n"]

    def test_status_messages_are_not_echoed(self):
        plugin = Kiln(self.mock_nvim)

        plugin._handle_message_for_nvim(Mock(kernel_id="k1"), {
            "msg_type": "status", "content": {"execution_state": "busy"}
        })

        assert self.mock_nvim.output_messages == []

    def test_dead_kernel_is_reported(self):
        plugin = Kiln(self.mock_nvim)
        kernel = Mock(id="python3.abc", identity="/work/test.py", display_name="Python 3")

        plugin._on_kernel_status_changed((kernel, KernelStatus.DEAD))
        plugin._on_kernel_status_changed((kernel, KernelStatus.IDLE))

        assert len(self.mock_nvim.error_messages) == 1
        assert "Python 3 died" in self.mock_nvim.error_messages[0]

    def test_status_command(self):
        plugin = Kiln(self.mock_nvim)

        plugin.status_command()

        output = "".join(self.mock_nvim.output_messages)
        assert "Kiln Status:" in output
        assert "none (local kernels only)" in output
        assert "Kernels: 0 active" in output


class TestCommandHelpers:

    def test_buffer_identity(self):
        assert buffer_identity(3, "") == ("buffer://3", None)
        assert buffer_identity(3, "/work/a.py") == ("/work/a.py", "/work/a.py")

    def test_kernel_choices(self):
        kernels = [
            KernelConnectionMetadata.local_kernel_spec(SPEC),
            KernelConnectionMetadata.remote_kernel_spec(SPEC, "http://host:8888/"),
            KernelConnectionMetadata.live_remote_kernel(LiveKernelModel(id="abcdef0123", name="python3"),
                                                        "http://host:8888/"),
        ]

        choices = kernel_choices(kernels)

        assert [choice['display_name'].split(":")[0] for choice in choices] == ["New", "Remote", "Running"]
        assert [choice['value'] for choice in choices] == [kernel.id for kernel in kernels]


class TestCommandImplementations:

    def setup_method(self):
        self.plugin = Mock()
        self.plugin.nvim = MockNvim()
        self.plugin.settings = KilnSettings()
        self.plugin.error_handler.handle_kernel_error = AsyncMock()
        self.metadata = KernelConnectionMetadata.local_kernel_spec(SPEC)
        self.kernel = Mock()
        self.kernel.id = self.metadata.id
        self.kernel.metadata = self.metadata
        self.kernel.resource = "/work/a.py"
        self.kernel.is_disposed = False
        self.kernel.execute = AsyncMock(return_value={"status": "ok", "execution_count": 1})
        self.kernel.restart = AsyncMock()

    @pytest.mark.asyncio
    async def test_execute_in_existing_kernel(self):
        self.plugin.kernel_provider.get = Mock(return_value=self.kernel)

        reply = await execute_code_impl(self.plugin, "/work/a.py", "/work/a.py", "print(1)")

        assert reply["status"] == "ok"
        self.kernel.execute.assert_awaited_once_with("print(1)")

    @pytest.mark.asyncio
    async def test_execute_failure_is_handled(self):
        error = KernelDiedError("died")
        self.kernel.execute = AsyncMock(side_effect=error)
        self.plugin.kernel_provider.get = Mock(return_value=self.kernel)

        assert await execute_code_impl(self.plugin, "/work/a.py", "/work/a.py", "print(1)") is None

        self.plugin.error_handler.handle_kernel_error.assert_awaited_once_with(
            error, "execution", self.metadata, "/work/a.py")

    @pytest.mark.asyncio
    async def test_ensure_kernel_selects_when_missing(self):
        self.plugin.kernel_provider.get = Mock(return_value=None)
        self.plugin.kernel_provider.get_or_create = Mock(return_value=self.kernel)
        self.plugin.kernel_finder.list_kernels = AsyncMock(return_value=[self.metadata])
        self.plugin.prompt.select = AsyncMock(side_effect=lambda choices, title: choices[0])

        kernel = await ensure_kernel(self.plugin, "/work/a.py", "/work/a.py")

        assert kernel is self.kernel
        identity, options = self.plugin.kernel_provider.get_or_create.call_args.args
        assert identity == "/work/a.py"
        assert options.metadata is self.metadata
        assert options.resource == "/work/a.py"

    @pytest.mark.asyncio
    async def test_ensure_kernel_replaces_invalid_remote_kernel(self):
        remote = KernelConnectionMetadata.remote_kernel_spec(SPEC, "http://old-host:8888/")
        self.kernel.metadata = remote
        self.plugin.settings.jupyter_server_uri = "http://new-host:8888/?token=t"
        self.plugin.kernel_provider.get = Mock(return_value=self.kernel)
        self.plugin.kernel_finder.list_kernels = AsyncMock(return_value=[])

        assert await ensure_kernel(self.plugin, "/work/a.py", "/work/a.py") is None

        self.kernel.dispose.assert_called_once()
        assert any("No Jupyter kernels found" in msg for msg in self.plugin.nvim.error_messages)

    @pytest.mark.asyncio
    async def test_cancelled_selection(self):
        self.plugin.kernel_provider.get = Mock(return_value=None)
        self.plugin.kernel_finder.list_kernels = AsyncMock(return_value=[self.metadata])
        self.plugin.prompt.select = AsyncMock(return_value=None)

        assert await execute_code_impl(self.plugin, "/work/a.py", "/work/a.py", "1") is None
        self.plugin.kernel_provider.get_or_create.assert_not_called()

    @pytest.mark.asyncio
    async def test_restart_without_kernel(self):
        self.plugin.kernel_provider.get = Mock(return_value=None)

        await restart_kernel_impl(self.plugin, "/work/a.py")

        assert any("No active kernel" in msg for msg in self.plugin.nvim.error_messages)

    @pytest.mark.asyncio
    async def test_restart(self):
        self.plugin.kernel_provider.get = Mock(return_value=self.kernel)

        await restart_kernel_impl(self.plugin, "/work/a.py")

        self.kernel.restart.assert_awaited_once()
        assert any("Kernel restarted" in msg for msg in self.plugin.nvim.output_messages)

    @pytest.mark.asyncio
    async def test_connect_without_server(self):
        self.plugin.notebook_provider.get_or_create_server = AsyncMock(return_value=None)

        await connect_impl(self.plugin)

        assert any("No Jupyter server configured" in msg for msg in self.plugin.nvim.error_messages)

    @pytest.mark.asyncio
    async def test_connect_failure_is_handled(self):
        error = ConnectionRefusedError("refused")
        self.plugin.notebook_provider.get_or_create_server = AsyncMock(side_effect=error)

        await connect_impl(self.plugin)

        self.plugin.error_handler.handle_kernel_error.assert_awaited_once_with(error, "connect")


if __name__ == "__main__":
    pytest.main([__file__])
