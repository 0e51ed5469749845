"""
Password login for Jupyter servers that are protected by a password instead of a token.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import aiohttp

from ..kernels.errors import JupyterConnectError, JupyterSelfCertsError


@dataclass
class PasswordConnectionInfo:
    """Headers to send with every request after a successful login."""

    request_headers: Dict[str, str] = field(default_factory=dict)
    remapped_base_url: Optional[str] = None
    remapped_token: Optional[str] = None


class JupyterPasswordConnect:
    """
    Logs into a password protected server with the classic /login form.

    Results are cached per base URL; a failed login is not cached so the user
    can try again.
    """

    def __init__(self, prompt, settings, timeout: float = 30.0):
        self.prompt = prompt
        self.settings = settings
        self.timeout = timeout
        self._cache: Dict[str, "asyncio.Future[Optional[PasswordConnectionInfo]]"] = {}
        self._logger = logging.getLogger("kiln.password_connect")

    def _ssl(self, base_url: str):
        if base_url.startswith("https") and self.settings.allow_unauthorized_remote_connection:
            return False
        return True

    async def get_password_connection_info(self, base_url: str) -> Optional[PasswordConnectionInfo]:
        if not base_url.endswith("/"):
            base_url += "/"

        pending = self._cache.get(base_url)
        if pending is None:
            pending = asyncio.ensure_future(self._login(base_url))
            self._cache[base_url] = pending

        try:
            result = await asyncio.shield(pending)
        except Exception:
            self._cache.pop(base_url, None)
            raise
        if result is None:
            self._cache.pop(base_url, None)
        return result

    def clear(self) -> None:
        self._cache.clear()

    async def _login(self, base_url: str) -> Optional[PasswordConnectionInfo]:
        try:
            return await self._form_login(base_url)
        except aiohttp.ClientConnectorCertificateError as e:
            raise JupyterSelfCertsError(f"Certificate of {base_url} is not trusted: {e}") from e
        except aiohttp.ClientError as e:
            raise JupyterConnectError(f"Failed to reach {base_url}: {e}") from e

    async def _form_login(self, base_url: str) -> Optional[PasswordConnectionInfo]:
        ssl = self._ssl(base_url)
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(cookie_jar=aiohttp.CookieJar(unsafe=True), timeout=timeout) as client:
            if not await self._needs_password(client, base_url, ssl):
                self._logger.info(f"Server {base_url} does not require a password")
                return PasswordConnectionInfo()

            password = await self.prompt.ask_password(f"Password for Jupyter server {base_url}: ")
            if not password:
                self._logger.info("Password prompt cancelled")
                return None

            xsrf = await self._get_xsrf_token(client, base_url, ssl)
            data = {"password": password}
            headers = {}
            if xsrf:
                data["_xsrf"] = xsrf
                headers["X-XSRFToken"] = xsrf

            async with client.post(f"{base_url}login?", data=data, headers=headers,
                                   allow_redirects=False, ssl=ssl) as resp:
                if resp.status not in (200, 302):
                    self._logger.warning(f"Login to {base_url} failed with status {resp.status}")
                    return None

            cookies = {morsel.key: morsel.value for morsel in client.cookie_jar}
            if not any(name.startswith("username-") for name in cookies):
                self._logger.warning(f"Login to {base_url} did not return a session cookie")
                await self.prompt.show_error_message(f"Invalid password for {base_url}")
                return None

            request_headers = {"Cookie": "; ".join(f"{k}={v}" for k, v in cookies.items())}
            if xsrf:
                request_headers["X-XSRFToken"] = xsrf
            return PasswordConnectionInfo(request_headers=request_headers)

    async def _needs_password(self, client: aiohttp.ClientSession, base_url: str, ssl) -> bool:
        async with client.get(f"{base_url}tree?", allow_redirects=False, ssl=ssl) as resp:
            location = resp.headers.get("Location", "")
            return resp.status in (301, 302, 303) and "login" in location

    async def _get_xsrf_token(self, client: aiohttp.ClientSession, base_url: str, ssl) -> Optional[str]:
        async with client.get(f"{base_url}login?", allow_redirects=False, ssl=ssl) as resp:
            await resp.read()
        for morsel in client.cookie_jar:
            if morsel.key == "_xsrf":
                return morsel.value
        return None
