"""
Clients for the Jupyter server REST API (kernelspecs, kernels, sessions, contents).
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from ..kernels.errors import JupyterConnectError, JupyterRequestError, JupyterSelfCertsError
from .connection import ServerSettings


class ServerConnection:
    """One aiohttp client session bound to negotiated ServerSettings."""

    def __init__(self, settings: ServerSettings, timeout: float = 30.0):
        self.settings = settings
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._client: Optional[aiohttp.ClientSession] = None
        self._logger = logging.getLogger("kiln.server_connection")

    @property
    def base_url(self) -> str:
        return self.settings.base_url

    def _session(self) -> aiohttp.ClientSession:
        if self._client is None or self._client.closed:
            self._client = aiohttp.ClientSession(timeout=self._timeout)
        return self._client

    def url(self, path: str) -> str:
        return self.settings.base_url.rstrip("/") + "/" + path.lstrip("/")

    def ws_url(self, path: str, **query: str) -> str:
        if self.settings.append_token and self.settings.token:
            query["token"] = self.settings.token
        url = self.settings.ws_url.rstrip("/") + "/" + path.lstrip("/")
        return f"{url}?{urlencode(query)}" if query else url

    async def request(self, method: str, path: str, json: Any = None) -> Any:
        """
        Send a REST request and decode the JSON reply (None for empty replies).

        Raises:
            JupyterSelfCertsError: The server certificate was rejected.
            JupyterConnectError: The server could not be reached or refused our credentials.
            JupyterRequestError: The server answered with another error status.
        """
        url = self.url(path)
        headers = self.settings.auth_headers()
        self._logger.debug(f"{method} {url}")
        try:
            async with self._session().request(method, url, json=json, headers=headers,
                                               ssl=self.settings.ssl) as resp:
                if resp.status in (401, 403):
                    raise JupyterConnectError(f"Not authorized to access {url} ({resp.status})")
                if resp.status >= 400:
                    text = await resp.text()
                    raise JupyterRequestError(f"{method} {path} failed with {resp.status}: {text[:200]}",
                                              status=resp.status)
                if resp.status == 204:
                    return None
                body = await resp.read()
                if not body:
                    return None
                return await resp.json(content_type=None)
        except aiohttp.ClientConnectorCertificateError as e:
            raise JupyterSelfCertsError(f"Certificate of {self.base_url} is not trusted: {e}") from e
        except aiohttp.ClientError as e:
            raise JupyterConnectError(f"Failed to reach {url}: {e}") from e
        except asyncio.TimeoutError as e:
            raise JupyterConnectError(f"Request to {url} timed out") from e

    async def ws_connect(self, path: str, **query: str) -> aiohttp.ClientWebSocketResponse:
        url = self.ws_url(path, **query)
        try:
            return await self._session().ws_connect(url, headers=self.settings.auth_headers(),
                                                    ssl=self.settings.ssl, heartbeat=30.0)
        except aiohttp.ClientConnectorCertificateError as e:
            raise JupyterSelfCertsError(f"Certificate of {self.base_url} is not trusted: {e}") from e
        except aiohttp.ClientError as e:
            raise JupyterConnectError(f"Failed to open kernel websocket {path}: {e}") from e

    async def close(self) -> None:
        if self._client is not None and not self._client.closed:
            await self._client.close()
        self._client = None


class KernelSpecsManager:
    def __init__(self, server: ServerConnection):
        self.server = server
        self.specs: Optional[Dict[str, Any]] = None

    async def refresh_specs(self) -> Dict[str, Any]:
        self.specs = await self.server.request("GET", "api/kernelspecs") or {}
        return self.specs

    @property
    def kernelspecs(self) -> Dict[str, Any]:
        return (self.specs or {}).get("kernelspecs") or {}


class RemoteKernelManager:
    def __init__(self, server: ServerConnection):
        self.server = server

    async def list_running(self) -> List[Dict[str, Any]]:
        return await self.server.request("GET", "api/kernels") or []

    async def get_kernel(self, kernel_id: str) -> Dict[str, Any]:
        return await self.server.request("GET", f"api/kernels/{kernel_id}")

    async def start_kernel(self, name: str, path: Optional[str] = None) -> Dict[str, Any]:
        body = {"name": name}
        if path:
            body["path"] = path
        return await self.server.request("POST", "api/kernels", json=body)

    async def interrupt(self, kernel_id: str) -> None:
        await self.server.request("POST", f"api/kernels/{kernel_id}/interrupt")

    async def restart(self, kernel_id: str) -> Dict[str, Any]:
        return await self.server.request("POST", f"api/kernels/{kernel_id}/restart")

    async def shutdown(self, kernel_id: str) -> None:
        await self.server.request("DELETE", f"api/kernels/{kernel_id}")


class RemoteSessionManager:
    """
    Client for /api/sessions.

    Construction starts a readiness check (the first sessions listing); `ready`
    resolves once the server has answered, successfully or not.
    """

    def __init__(self, server: ServerConnection):
        self.server = server
        self.is_disposed = False
        self._logger = logging.getLogger("kiln.session_api")
        self.ready: "asyncio.Task[None]" = asyncio.ensure_future(self._check_ready())

    async def _check_ready(self) -> None:
        try:
            await self.list_running()
        except Exception as e:
            self._logger.warning(f"Session manager readiness check failed: {e}")

    async def list_running(self) -> List[Dict[str, Any]]:
        return await self.server.request("GET", "api/sessions") or []

    async def create_session(self, path: str, name: str, kernel_name: str,
                             session_type: str = "notebook") -> Dict[str, Any]:
        body = {"path": path, "name": name, "type": session_type, "kernel": {"name": kernel_name}}
        return await self.server.request("POST", "api/sessions", json=body)

    async def delete_session(self, session_id: str) -> None:
        await self.server.request("DELETE", f"api/sessions/{session_id}")

    def dispose(self) -> None:
        self.is_disposed = True
        if not self.ready.done():
            self.ready.cancel()


class ContentsManager:
    def __init__(self, server: ServerConnection):
        self.server = server
        self.is_disposed = False

    def dispose(self) -> None:
        self.is_disposed = True
