"""
Process wide cache of Jupyter servers keyed by how they were requested.

Concurrent requests for the same server share one connection attempt. Failed
attempts are forgotten right away so the next request tries again.
"""
import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional

from ..core.cancellation import CancellationToken, wait_for_cancellable, wait_or_default
from ..kernels.types import ServerOptions

# Grace period per server when the whole cache is torn down
DISPOSE_TIMEOUT = 1.0


class ServerCache:
    def __init__(self):
        self._cache: Dict[str, "asyncio.Task[Any]"] = {}
        self._logger = logging.getLogger("kiln.server_cache")

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, options: ServerOptions) -> bool:
        return self.generate_key(options) in self._cache

    @staticmethod
    def generate_key(options: ServerOptions) -> str:
        uri = (options.uri or "local").strip().rstrip("/")
        working_dir = os.path.normcase(os.path.normpath(options.working_dir)) if options.working_dir else ""
        return (
            f"uri={uri};useFlag={options.skip_using_default_config};"
            f"local={options.local_jupyter};workingDir={working_dir};"
            f"unauthorized={options.allow_unauthorized}"
        )

    async def get_or_create(self, create_fn: Callable[[ServerOptions], Awaitable[Any]], options: ServerOptions,
                            cancel_token: Optional[CancellationToken] = None) -> Any:
        """
        Return the cached server for options, creating it with create_fn if needed.

        Cancelling one caller does not cancel the shared attempt.
        """
        key = self.generate_key(options)
        task = self._cache.get(key)
        if task is None:
            self._logger.info(f"Creating server for {key}")
            task = asyncio.ensure_future(self._create(create_fn, options, key))
            self._cache[key] = task
        return await wait_for_cancellable(asyncio.shield(task), cancel_token)

    def _evict(self, key: str, task: Optional["asyncio.Task[Any]"]) -> None:
        if task is not None and self._cache.get(key) is task:
            del self._cache[key]

    async def _create(self, create_fn, options: ServerOptions, key: str) -> Any:
        task = asyncio.current_task()
        try:
            server = await create_fn(options)
        except (Exception, asyncio.CancelledError) as e:
            self._logger.warning(f"Failed to create server for {key}: {e!r}")
            self._evict(key, task)
            raise

        if server is None:
            self._evict(key, task)
            return None

        original_dispose = server.dispose

        async def dispose():
            self._evict(key, task)
            return await original_dispose()

        server.dispose = dispose
        return server

    async def _dispose_entry(self, key: str, task: "asyncio.Task[Any]") -> None:
        try:
            server = await task
            if server is not None:
                await server.dispose()
        except (Exception, asyncio.CancelledError) as e:
            self._logger.warning(f"Error disposing server {key}: {e!r}")

    async def dispose(self) -> None:
        entries = list(self._cache.items())
        self._cache.clear()
        if not entries:
            return
        self._logger.info(f"Disposing {len(entries)} cached server(s)")
        await asyncio.gather(
            *(wait_or_default(self._dispose_entry(key, task), DISPOSE_TIMEOUT) for key, task in entries)
        )
