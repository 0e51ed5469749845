"""
Unit tests for error classification and recovery policy.
"""
import pytest
import asyncio
import ssl
import sys
import os
from unittest.mock import Mock

import aiohttp

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'rplugin', 'python3'))

from kiln.core.cancellation import CancellationError
from kiln.kernels.errors import (
    ErrorKind,
    InsecureSessionDeniedError,
    JupyterConnectError,
    JupyterRequestError,
    KernelConnectionTimeoutError,
    KernelDependencyError,
    KernelDiedError,
    KernelProcessExitedError,
    KilnError,
    PasswordError,
    RecoveryAction,
    SessionDisposedError,
    classify_error,
    recovery_action_for,
)


class TestClassifyError:

    @pytest.mark.parametrize("error, kind", [
        (PasswordError(), ErrorKind.PASSWORD),
        (InsecureSessionDeniedError("http://host:8888/"), ErrorKind.INSECURE_SESSION_DENIED),
        (JupyterRequestError("bad", status=500), ErrorKind.REQUEST),
        (SessionDisposedError(), ErrorKind.SESSION_DISPOSED),
        (KernelConnectionTimeoutError("slow"), ErrorKind.CONNECTION_TIMEOUT),
        (KernelDependencyError("missing"), ErrorKind.DEPENDENCY_MISSING),
        (KernelProcessExitedError(1), ErrorKind.PROCESS_EXITED),
        (KernelDiedError("died"), ErrorKind.DIED),
        (KilnError("generic"), ErrorKind.UNKNOWN),
    ])
    def test_kiln_errors_carry_their_kind(self, error, kind):
        assert classify_error(error) == kind

    def test_cancellation(self):
        assert classify_error(CancellationError()) == ErrorKind.CANCELLED
        assert classify_error(asyncio.CancelledError()) == ErrorKind.CANCELLED

    def test_timeout(self):
        assert classify_error(asyncio.TimeoutError()) == ErrorKind.TIMEOUT

    def test_certificate_errors(self):
        assert classify_error(ssl.SSLCertVerificationError("self signed")) == ErrorKind.SELF_CERT

    def test_http_errors(self):
        response_error = aiohttp.ClientResponseError(Mock(), (), status=403)

        assert classify_error(response_error) == ErrorKind.REQUEST
        assert classify_error(aiohttp.ClientConnectionError("refused")) == ErrorKind.CONNECTION

    def test_unknown(self):
        assert classify_error(ValueError("?")) == ErrorKind.UNKNOWN

    def test_connect_errors_share_a_base(self):
        assert isinstance(PasswordError(), JupyterConnectError)
        assert isinstance(InsecureSessionDeniedError("x"), JupyterConnectError)


class TestRecoveryActions:

    def test_every_kind_has_an_action(self):
        for kind in ErrorKind:
            assert isinstance(recovery_action_for(kind), RecoveryAction)

    def test_selected_actions(self):
        assert recovery_action_for(ErrorKind.CANCELLED) == RecoveryAction.IGNORE
        assert recovery_action_for(ErrorKind.DEPENDENCY_MISSING) == RecoveryAction.PROMPT_INSTALL
        assert recovery_action_for(ErrorKind.SELF_CERT) == RecoveryAction.PROMPT_TRUST_CERTIFICATE
        assert recovery_action_for(ErrorKind.DIED) == RecoveryAction.RECREATE_KERNEL
        assert recovery_action_for(ErrorKind.CONNECTION_TIMEOUT) == RecoveryAction.OFFER_RESTART


if __name__ == "__main__":
    pytest.main([__file__])
