"""
Unit tests for cancellation tokens and bounded waits.
"""
import pytest
import asyncio
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'rplugin', 'python3'))

from kiln.core.cancellation import (
    CancellationError,
    CancellationTokenSource,
    wait_for_cancellable,
    wait_or_default,
)


class TestCancellationToken:

    def test_cancel_sets_flag_and_fires_once(self):
        source = CancellationTokenSource()
        calls = []
        source.token.on_cancelled.subscribe(calls.append)

        source.cancel()
        source.cancel()

        assert source.token.is_cancelled
        assert calls == [None]

    def test_raise_if_cancelled(self):
        source = CancellationTokenSource()
        source.token.raise_if_cancelled()

        source.cancel()

        with pytest.raises(CancellationError):
            source.token.raise_if_cancelled()


class TestWaitForCancellable:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        source = CancellationTokenSource()

        async def work():
            return "done"

        assert await wait_for_cancellable(work(), source.token, timeout=1.0) == "done"

    @pytest.mark.asyncio
    async def test_cancellation_cancels_inner_work(self):
        source = CancellationTokenSource()
        started = asyncio.Event()
        inner_cancelled = asyncio.Event()

        async def work():
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                inner_cancelled.set()
                raise

        async def cancel_later():
            await started.wait()
            source.cancel()

        canceller = asyncio.ensure_future(cancel_later())
        with pytest.raises(CancellationError):
            await wait_for_cancellable(work(), source.token, timeout=5.0)
        await canceller
        await asyncio.wait_for(inner_cancelled.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_already_cancelled_token(self):
        source = CancellationTokenSource()
        source.cancel()

        async def work():
            return 1

        with pytest.raises(CancellationError):
            await wait_for_cancellable(work(), source.token)

    @pytest.mark.asyncio
    async def test_timeout(self):
        source = CancellationTokenSource()

        with pytest.raises(asyncio.TimeoutError):
            await wait_for_cancellable(asyncio.sleep(10), source.token, timeout=0.05)

    @pytest.mark.asyncio
    async def test_timeout_without_token(self):
        with pytest.raises(asyncio.TimeoutError):
            await wait_for_cancellable(asyncio.sleep(10), None, timeout=0.05)


class TestWaitOrDefault:

    @pytest.mark.asyncio
    async def test_returns_default_and_keeps_work_running(self):
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.1)
            finished.set()
            return "late"

        result = await wait_or_default(slow(), timeout=0.01, default="default")

        assert result == "default"
        await asyncio.wait_for(finished.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_returns_result_in_time(self):
        async def fast():
            return "value"

        assert await wait_or_default(fast(), timeout=1.0) == "value"

    @pytest.mark.asyncio
    async def test_propagates_errors_raised_in_time(self):
        async def failing():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await wait_or_default(failing(), timeout=1.0)


if __name__ == "__main__":
    pytest.main([__file__])
