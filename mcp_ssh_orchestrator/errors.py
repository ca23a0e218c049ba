"""Error taxonomy for remote command orchestration."""
import errno
import socket
from typing import Iterable, Optional

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestrator core."""


class SessionConnectionError(OrchestratorError, ConnectionError):
    """Establishing or keeping a remote session failed."""

    user_message = "Connection failed."

    def __init__(self, message: str, server_id: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.server_id = server_id
        self.cause = cause


class AuthenticationFailed(SessionConnectionError):
    user_message = "Authentication failed. Check your credentials."


class NetworkUnreachable(SessionConnectionError):
    user_message = "Host unreachable. Check network connection."

    @property
    def refused(self) -> bool:
        return getattr(self.cause, 'errno', None) == errno.ECONNREFUSED


class ConnectTimeout(SessionConnectionError):
    user_message = "Connection timed out. Server might be unreachable."


class HostNotFound(SessionConnectionError):
    user_message = "Server not found. Check the hostname."


class ConnectionReset(SessionConnectionError):
    user_message = "Connection reset by server."


class TransportError(SessionConnectionError):
    user_message = "SSH transport error."


class NotConnected(OrchestratorError):
    def __init__(self, server_id: str):
        super().__init__(f"No connection found for server: {server_id}")
        self.server_id = server_id


class ExecutionError(OrchestratorError):
    """The remote process could not be started or its channel broke."""

    def __init__(self, message: str, server_id: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.server_id = server_id
        self.cause = cause


class NoServerAvailable(OrchestratorError):
    def __init__(self, choices: Iterable[str] = ()):
        self.choices = tuple(choices)
        if self.choices:
            message = "Several servers are connected; choose one: " + ", ".join(self.choices)
        else:
            message = "No server connected"
        super().__init__(message)


class UnknownServer(OrchestratorError):
    def __init__(self, server: str):
        super().__init__(f"Server not found: {server}")
        self.server = server


class NoPendingConfirmation(OrchestratorError):
    def __init__(self):
        super().__init__("No pending command to confirm")


class NoActiveStreamingCommands(OrchestratorError):
    def __init__(self):
        super().__init__("No active streaming commands")


class StreamLimitReached(OrchestratorError):
    def __init__(self, limit: int):
        super().__init__(
            f"Too many streaming commands running (limit {limit}). Stop one with /stop first."
        )
        self.limit = limit


_UNREACHABLE_ERRNOS = {errno.ECONNREFUSED, errno.ENETUNREACH, errno.EHOSTUNREACH, errno.EHOSTDOWN}


def classify_connect_error(exc: BaseException, server_id: Optional[str] = None) -> SessionConnectionError:
    """Map a paramiko/socket exception onto the connection error taxonomy."""
    if isinstance(exc, SessionConnectionError):
        return exc

    if isinstance(exc, NoValidConnectionsError) and exc.errors:
        # One entry per resolved address; the first one is representative
        return classify_connect_error(next(iter(exc.errors.values())), server_id)

    message = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, paramiko.AuthenticationException):
        return AuthenticationFailed(message, server_id, exc)
    if isinstance(exc, socket.gaierror):
        return HostNotFound(message, server_id, exc)
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return ConnectTimeout(message, server_id, exc)
    if isinstance(exc, ConnectionResetError):
        return ConnectionReset(message, server_id, exc)
    if isinstance(exc, OSError) and exc.errno in _UNREACHABLE_ERRNOS:
        return NetworkUnreachable(message, server_id, exc)
    if isinstance(exc, paramiko.SSHException):
        if 'timeout' in str(exc).lower():
            return ConnectTimeout(message, server_id, exc)
        return TransportError(message, server_id, exc)
    return TransportError(message, server_id, exc)


def describe_error(exc: BaseException) -> str:
    """Human readable, single-message description of a failure."""
    if isinstance(exc, NetworkUnreachable) and exc.refused:
        return "Connection refused. Is the server running?"
    if isinstance(exc, TransportError):
        return f"{exc.user_message} {exc}"
    if isinstance(exc, SessionConnectionError):
        return exc.user_message
    if isinstance(exc, NotConnected):
        return f"Not connected to {exc.server_id}. Use /connect to reconnect."
    if isinstance(exc, ExecutionError):
        return f"Command could not be run: {exc}. Retry or reconnect to the server."
    if isinstance(exc, OrchestratorError):
        return str(exc)
    return f"Error: {exc}"
