"""
Connection negotiation: turns a JupyterConnection into settings for HTTP and
WebSocket traffic, asking the user about passwords and insecure servers.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..kernels.errors import InsecureSessionDeniedError, JupyterSelfCertsError, PasswordError
from ..kernels.types import JupyterConnection

YES_OPTION = "Yes"
NO_OPTION = "No"
DONT_ASK_AGAIN_OPTION = "Don't Ask Again"


@dataclass
class ServerSettings:
    """Everything a ServerConnection needs to talk to one server."""

    base_url: str
    ws_url: str
    token: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    # False disables certificate verification for this server only
    ssl: bool = True
    append_token: bool = False
    connection: Optional[JupyterConnection] = None

    def auth_headers(self) -> Dict[str, str]:
        headers = dict(self.headers)
        if self.connection is not None and self.connection.get_auth_header is not None:
            headers.update(self.connection.get_auth_header())
        elif self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers


class SecurityPolicyStore:
    """
    Process wide record of which servers the user agreed to connect to insecurely.

    Decisions are futures so that concurrent connections to the same server
    share one prompt.
    """

    def __init__(self, allow_insecure_connections: bool = False):
        self.insecure_connections_allowed = allow_insecure_connections
        self._decisions: Dict[str, "asyncio.Future[bool]"] = {}

    def get_decision(self, base_url: str) -> Optional["asyncio.Future[bool]"]:
        return self._decisions.get(base_url)

    def set_decision(self, base_url: str, decision: "asyncio.Future[bool]") -> None:
        self._decisions[base_url] = decision

    def allow_insecure_connections(self) -> None:
        self.insecure_connections_allowed = True

    def clear(self) -> None:
        for decision in self._decisions.values():
            if not decision.done():
                decision.cancel()
        self._decisions.clear()


class ConnectionNegotiator:
    def __init__(self, prompt, password_connect, security_store: SecurityPolicyStore, settings,
                 fail_on_password: bool = False):
        self.prompt = prompt
        self.password_connect = password_connect
        self.security_store = security_store
        self.settings = settings
        self.fail_on_password = fail_on_password
        self._logger = logging.getLogger("kiln.connection")

    async def get_server_connect_settings(self, connection: JupyterConnection,
                                          fail_on_password: Optional[bool] = None) -> ServerSettings:
        """
        Negotiate how to talk to the server behind connection.

        Raises:
            InsecureSessionDeniedError: The user refused an insecure connection.
            PasswordError: A password was needed but the login did not succeed.
            JupyterSelfCertsError: The login request rejected the server certificate.
        """
        server = ServerSettings(
            base_url=connection.base_url,
            ws_url=connection.base_url.replace("http", "ws", 1),
            connection=connection,
        )

        await self._secure_connection_check(connection)

        if not connection.has_token and connection.get_auth_header is None:
            if fail_on_password is None:
                fail_on_password = self.fail_on_password
            if fail_on_password or self.settings.disable_password_prompt:
                raise PasswordError("Password request not allowed.")
            try:
                info = await self.password_connect.get_password_connection_info(connection.base_url)
            except JupyterSelfCertsError:
                raise
            except Exception as e:
                raise PasswordError(f"Failed to log into {connection.base_url}: {e}") from e
            if info is None:
                raise PasswordError()
            server.headers = dict(info.request_headers)
            if info.remapped_base_url:
                server.base_url = info.remapped_base_url
                server.ws_url = info.remapped_base_url.replace("http", "ws", 1)
            if info.remapped_token:
                server.token = info.remapped_token
        elif connection.has_token:
            server.token = connection.token
            server.append_token = True

        if connection.base_url.startswith("https") and self.settings.allow_unauthorized_remote_connection:
            self._logger.info(f"Certificate verification disabled for {connection.base_url}")
            server.ssl = False

        return server

    async def _secure_connection_check(self, connection: JupyterConnection) -> None:
        if self.security_store.insecure_connections_allowed:
            return
        if connection.local_launch or connection.base_url.startswith("https") or connection.has_token:
            return

        decision = self.security_store.get_decision(connection.base_url)
        if decision is None:
            decision = asyncio.ensure_future(self._insecure_server_warning_prompt(connection))
            self.security_store.set_decision(connection.base_url, decision)

        if not await asyncio.shield(decision):
            raise InsecureSessionDeniedError(connection.base_url)

    async def _insecure_server_warning_prompt(self, connection: JupyterConnection) -> bool:
        self._logger.info(f"Asking whether to trust insecure server {connection.base_url}")
        choice = await self.prompt.show_warning_message(
            f"Connecting to {connection.base_url} over an unencrypted connection without a token. "
            "Continue?",
            YES_OPTION,
            NO_OPTION,
            DONT_ASK_AGAIN_OPTION,
        )
        if choice == YES_OPTION:
            return True
        if choice == DONT_ASK_AGAIN_OPTION:
            self.security_store.allow_insecure_connections()
            return True
        return False
