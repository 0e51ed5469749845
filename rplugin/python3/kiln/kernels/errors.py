"""
Typed errors raised by the kernel layer and their recovery policy.

Every error the layer raises carries an ErrorKind. classify_error maps any
exception, including third party ones, onto that closed set, and
recovery_action_for decides what the user-facing side should do about it.
"""
import asyncio
import enum
import ssl
from typing import Optional

import aiohttp

from ..core.cancellation import CancellationError


class ErrorKind(str, enum.Enum):
    CONNECTION = "connection"
    PASSWORD = "password"
    INSECURE_SESSION_DENIED = "insecureSessionDenied"
    SELF_CERT = "selfCert"
    REQUEST = "request"
    SESSION_DISPOSED = "sessionDisposed"
    TIMEOUT = "timeout"
    CONNECTION_TIMEOUT = "connectionTimeout"
    INTERRUPT_TIMEOUT = "interruptTimeout"
    PORT_NOT_USED = "portNotUsed"
    DEPENDENCY_MISSING = "dependencyMissing"
    CANCELLED = "cancelled"
    PROCESS_EXITED = "processExited"
    DIED = "died"
    UNKNOWN = "unknown"


class RecoveryAction(str, enum.Enum):
    IGNORE = "ignore"
    SHOW_MESSAGE = "showMessage"
    PROMPT_INSTALL = "promptInstall"
    PROMPT_TRUST_CERTIFICATE = "promptTrustCertificate"
    OFFER_RESTART = "offerRestart"
    RECREATE_KERNEL = "recreateKernel"


class KilnError(Exception):
    """Base class of all errors raised by the kernel layer."""

    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, metadata=None):
        super().__init__(message)
        self.message = message
        self.metadata = metadata


class JupyterConnectError(KilnError):
    """Negotiating or talking to a Jupyter server failed."""

    kind = ErrorKind.CONNECTION


class PasswordError(JupyterConnectError):
    kind = ErrorKind.PASSWORD

    def __init__(self, message: str = "Failed to connect to the Jupyter server: a password is required"):
        super().__init__(message)


class InsecureSessionDeniedError(JupyterConnectError):
    kind = ErrorKind.INSECURE_SESSION_DENIED

    def __init__(self, base_url: str):
        super().__init__(f"Connection to insecure server {base_url} was not allowed")
        self.base_url = base_url


class JupyterSelfCertsError(JupyterConnectError):
    kind = ErrorKind.SELF_CERT


class JupyterRequestError(JupyterConnectError):
    kind = ErrorKind.REQUEST

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SessionDisposedError(KilnError):
    kind = ErrorKind.SESSION_DISPOSED

    def __init__(self, message: str = "Session has been disposed"):
        super().__init__(message)


class KernelTimeoutError(KilnError):
    kind = ErrorKind.TIMEOUT


class KernelConnectionTimeoutError(KernelTimeoutError):
    kind = ErrorKind.CONNECTION_TIMEOUT


class KernelInterruptTimeoutError(KernelTimeoutError):
    kind = ErrorKind.INTERRUPT_TIMEOUT


class KernelPortNotUsedTimeoutError(KernelTimeoutError):
    kind = ErrorKind.PORT_NOT_USED


class KernelDependencyError(KilnError):
    """The kernel's interpreter lacks a package the kernel needs (usually ipykernel)."""

    kind = ErrorKind.DEPENDENCY_MISSING

    def __init__(self, message: str, metadata=None, module: str = "ipykernel"):
        super().__init__(message, metadata)
        self.module = module


class KernelProcessExitedError(KilnError):
    kind = ErrorKind.PROCESS_EXITED

    def __init__(self, exit_code: Optional[int], stderr: str = "", metadata=None):
        super().__init__(f"Kernel process exited with code {exit_code}", metadata)
        self.exit_code = exit_code
        self.stderr = stderr


class KernelDiedError(KilnError):
    kind = ErrorKind.DIED

    def __init__(self, message: str, stderr: str = "", metadata=None):
        super().__init__(message, metadata)
        self.stderr = stderr


_RECOVERY_ACTIONS = {
    ErrorKind.CONNECTION: RecoveryAction.SHOW_MESSAGE,
    ErrorKind.PASSWORD: RecoveryAction.SHOW_MESSAGE,
    ErrorKind.INSECURE_SESSION_DENIED: RecoveryAction.SHOW_MESSAGE,
    ErrorKind.SELF_CERT: RecoveryAction.PROMPT_TRUST_CERTIFICATE,
    ErrorKind.REQUEST: RecoveryAction.SHOW_MESSAGE,
    ErrorKind.SESSION_DISPOSED: RecoveryAction.SHOW_MESSAGE,
    ErrorKind.TIMEOUT: RecoveryAction.OFFER_RESTART,
    ErrorKind.CONNECTION_TIMEOUT: RecoveryAction.OFFER_RESTART,
    ErrorKind.INTERRUPT_TIMEOUT: RecoveryAction.OFFER_RESTART,
    ErrorKind.PORT_NOT_USED: RecoveryAction.OFFER_RESTART,
    ErrorKind.DEPENDENCY_MISSING: RecoveryAction.PROMPT_INSTALL,
    ErrorKind.CANCELLED: RecoveryAction.IGNORE,
    ErrorKind.PROCESS_EXITED: RecoveryAction.RECREATE_KERNEL,
    ErrorKind.DIED: RecoveryAction.RECREATE_KERNEL,
    ErrorKind.UNKNOWN: RecoveryAction.SHOW_MESSAGE,
}

if set(_RECOVERY_ACTIONS) != set(ErrorKind):
    raise RuntimeError("Every ErrorKind needs a recovery action")


def classify_error(error: BaseException) -> ErrorKind:
    if isinstance(error, KilnError):
        return error.kind
    if isinstance(error, (CancellationError, asyncio.CancelledError)):
        return ErrorKind.CANCELLED
    if isinstance(error, asyncio.TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, (aiohttp.ClientConnectorCertificateError, ssl.SSLCertVerificationError)):
        return ErrorKind.SELF_CERT
    if isinstance(error, aiohttp.ClientResponseError):
        return ErrorKind.REQUEST
    if isinstance(error, aiohttp.ClientError):
        return ErrorKind.CONNECTION
    return ErrorKind.UNKNOWN


def recovery_action_for(kind: ErrorKind) -> RecoveryAction:
    return _RECOVERY_ACTIONS[kind]


__all__ = [
    "CancellationError",
    "ErrorKind",
    "RecoveryAction",
    "KilnError",
    "JupyterConnectError",
    "PasswordError",
    "InsecureSessionDeniedError",
    "JupyterSelfCertsError",
    "JupyterRequestError",
    "SessionDisposedError",
    "KernelTimeoutError",
    "KernelConnectionTimeoutError",
    "KernelInterruptTimeoutError",
    "KernelPortNotUsedTimeoutError",
    "KernelDependencyError",
    "KernelProcessExitedError",
    "KernelDiedError",
    "classify_error",
    "recovery_action_for",
]
