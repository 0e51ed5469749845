"""
Unit tests for Kernel and KernelProvider.
"""
import pytest
import asyncio
import sys
import os
from unittest.mock import AsyncMock, Mock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'rplugin', 'python3'))

from kiln.core.cancellation import CancellationError
from kiln.core.events import EventChannel
from kiln.kernels.dependencies import DependencyResponse
from kiln.kernels.errors import (
    KernelConnectionTimeoutError,
    KernelDependencyError,
    KernelDiedError,
    SessionDisposedError,
)
from kiln.kernels.kernel import Kernel
from kiln.kernels.kernel_provider import KernelProvider
from kiln.kernels.types import JupyterKernelSpec, KernelConnectionMetadata, KernelOptions, KernelStatus


def make_metadata(name="python3", argv=None):
    spec = JupyterKernelSpec(name=name, display_name=name, argv=argv or [name])
    return KernelConnectionMetadata.local_kernel_spec(spec)


def make_session(kernel_id="k1"):
    session = Mock()
    session.kernel_id = kernel_id
    session.is_connected = True
    session.is_disposed = False
    session.status = KernelStatus.IDLE
    session.on_status_changed = EventChannel("status")
    session.on_iopub_message = EventChannel("iopub")
    session.execute = AsyncMock(return_value={"status": "ok"})
    session.interrupt = AsyncMock()
    session.restart = AsyncMock()
    session.dispose = AsyncMock()
    return session


class TestKernel:

    def setup_method(self):
        self.metadata = make_metadata()
        self.session = make_session()
        self.notebook_provider = Mock()
        self.notebook_provider.create_session = AsyncMock(return_value=self.session)
        self.error_handler = Mock()
        self.error_handler.handle_kernel_error = AsyncMock(return_value=DependencyResponse.FAILED)
        self.kernel = Kernel("/work/a.py", self.metadata, self.notebook_provider,
                             resource="/work/a.py", error_handler=self.error_handler)

    @pytest.mark.asyncio
    async def test_start_is_shared_by_concurrent_callers(self):
        release = asyncio.Event()

        async def create(*args):
            await release.wait()
            return self.session

        self.notebook_provider.create_session = AsyncMock(side_effect=create)
        started = Mock()
        self.kernel.on_started.subscribe(started)

        pending = asyncio.gather(self.kernel.start(), self.kernel.start())
        await asyncio.sleep(0)
        release.set()
        first, second = await pending

        assert first is second is self.session
        self.notebook_provider.create_session.assert_awaited_once()
        started.assert_called_once_with(self.kernel)
        assert self.kernel.status == KernelStatus.IDLE
        assert self.kernel.kernel_id == "k1"

    @pytest.mark.asyncio
    async def test_execute_starts_kernel(self):
        reply = await self.kernel.execute("print(1)")

        assert reply == {"status": "ok"}
        self.session.execute.assert_awaited_once_with("print(1)", timeout=None)

    @pytest.mark.asyncio
    async def test_start_retries_once_after_dependencies_installed(self):
        error = KernelDependencyError("ipykernel missing")
        self.notebook_provider.create_session = AsyncMock(side_effect=[error, self.session])
        self.error_handler.handle_kernel_error = AsyncMock(return_value=DependencyResponse.OK)

        session = await self.kernel.start()

        assert session is self.session
        assert self.notebook_provider.create_session.await_count == 2
        self.error_handler.handle_kernel_error.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_declined_install_is_a_cancellation(self):
        self.notebook_provider.create_session = AsyncMock(side_effect=KernelDependencyError("ipykernel missing"))
        self.error_handler.handle_kernel_error = AsyncMock(return_value=DependencyResponse.CANCEL)

        with pytest.raises(CancellationError):
            await self.kernel.start()

        assert self.kernel.status == KernelStatus.DEAD

    @pytest.mark.asyncio
    async def test_failed_start_can_be_retried(self):
        self.notebook_provider.create_session = AsyncMock(side_effect=[KernelDiedError("died"), self.session])

        with pytest.raises(KernelDiedError):
            await self.kernel.start()
        assert self.kernel.status == KernelStatus.DEAD

        assert await self.kernel.start() is self.session

    @pytest.mark.asyncio
    async def test_session_death_marks_kernel_dead(self):
        await self.kernel.start()
        statuses = []
        self.kernel.on_status_changed.subscribe(statuses.append)

        self.session.on_status_changed.fire(KernelStatus.BUSY)
        self.session.on_status_changed.fire(KernelStatus.DISPOSED)

        assert statuses == [KernelStatus.BUSY, KernelStatus.DEAD]

    @pytest.mark.asyncio
    async def test_iopub_messages_are_forwarded(self):
        await self.kernel.start()
        messages = []
        self.kernel.on_iopub_message.subscribe(messages.append)

        self.session.on_iopub_message.fire({"msg_type": "stream"})

        assert messages == [{"msg_type": "stream"}]

    @pytest.mark.asyncio
    async def test_restart(self):
        await self.kernel.start()
        restarted = Mock()
        self.kernel.on_restarted.subscribe(restarted)

        await self.kernel.restart()

        self.session.restart.assert_awaited_once()
        restarted.assert_called_once_with(self.kernel)

    @pytest.mark.asyncio
    async def test_failed_restart_returns_to_session_status(self):
        await self.kernel.start()
        self.session.restart = AsyncMock(side_effect=KernelConnectionTimeoutError("not ready"))
        statuses = []
        self.kernel.on_status_changed.subscribe(statuses.append)
        restarted = Mock()
        self.kernel.on_restarted.subscribe(restarted)

        with pytest.raises(KernelConnectionTimeoutError):
            await self.kernel.restart()

        assert statuses == [KernelStatus.RESTARTING, KernelStatus.IDLE]
        assert self.kernel.status == KernelStatus.IDLE
        restarted.assert_not_called()

    @pytest.mark.asyncio
    async def test_restart_without_session_starts(self):
        await self.kernel.restart()

        self.notebook_provider.create_session.assert_awaited_once()
        self.session.restart.assert_not_called()

    @pytest.mark.asyncio
    async def test_interrupt_without_session_is_a_no_op(self):
        await self.kernel.interrupt()

        self.session.interrupt.assert_not_called()

    @pytest.mark.asyncio
    async def test_dispose_is_disposed_not_dead(self):
        await self.kernel.start()
        statuses = []
        disposed = Mock()
        self.kernel.on_status_changed.subscribe(statuses.append)
        self.kernel.on_disposed.subscribe(disposed)

        task = self.kernel.dispose()

        assert statuses == [KernelStatus.DISPOSED]
        disposed.assert_called_once_with(self.kernel)
        await task
        self.session.dispose.assert_awaited_once()
        assert self.kernel.dispose() is task

    @pytest.mark.asyncio
    async def test_calls_after_dispose_raise(self):
        await self.kernel.shutdown()

        with pytest.raises(SessionDisposedError):
            await self.kernel.start()
        with pytest.raises(SessionDisposedError):
            await self.kernel.restart()
        with pytest.raises(SessionDisposedError):
            await self.kernel.interrupt()


class TestKernelProvider:

    def setup_method(self):
        self.notebook_provider = Mock()
        self.notebook_provider.create_session = AsyncMock(side_effect=lambda *args: make_session())
        self.provider = KernelProvider(self.notebook_provider)

    @pytest.mark.asyncio
    async def test_same_kernel_is_reused(self):
        options = KernelOptions(metadata=make_metadata())

        first = self.provider.get_or_create("/work/a.py", options)
        second = self.provider.get_or_create("/work/a.py", KernelOptions(metadata=make_metadata()))

        assert first is second
        assert self.provider.kernels == [first]

    @pytest.mark.asyncio
    async def test_switching_kernels_disposes_the_old_one_first(self):
        events = []
        self.provider.on_kernel_disposed.subscribe(lambda k: events.append(("disposed", k)))
        self.provider.on_kernel_created.subscribe(lambda k: events.append(("created", k)))
        first = self.provider.get_or_create("/work/a.py", KernelOptions(metadata=make_metadata("python3")))
        events.clear()

        second = self.provider.get_or_create("/work/a.py", KernelOptions(metadata=make_metadata("ir", ["R"])))

        assert events == [("disposed", first), ("created", second)]
        assert first.is_disposed
        assert self.provider.get("/work/a.py") is second

    @pytest.mark.asyncio
    async def test_disposed_kernel_is_replaced(self):
        options = KernelOptions(metadata=make_metadata())
        first = self.provider.get_or_create("/work/a.py", options)
        first.dispose()

        assert self.provider.get("/work/a.py") is None

        second = self.provider.get_or_create("/work/a.py", options)

        assert second is not first

    @pytest.mark.asyncio
    async def test_kernel_events_are_forwarded(self):
        started = Mock()
        statuses = []
        self.provider.on_kernel_started.subscribe(started)
        self.provider.on_kernel_status_changed.subscribe(statuses.append)
        kernel = self.provider.get_or_create("/work/a.py", KernelOptions(metadata=make_metadata()))

        await kernel.start()

        started.assert_called_once_with(kernel)
        assert (kernel, KernelStatus.IDLE) in statuses

    @pytest.mark.asyncio
    async def test_dispose_all(self):
        a = self.provider.get_or_create("/work/a.py", KernelOptions(metadata=make_metadata()))
        b = self.provider.get_or_create("/work/b.py", KernelOptions(metadata=make_metadata()))
        await a.start()

        await self.provider.dispose_all()

        assert a.is_disposed and b.is_disposed
        assert self.provider.kernels == []


if __name__ == "__main__":
    pytest.main([__file__])
