"""Error hierarchy for Orion Fleet.

Every failure surfaced to callers is a FleetError carrying an ErrorKind,
so callers can branch on ``err.kind`` instead of parsing messages.

SSH library errors are unstructured strings; classify_error() maps them
onto the taxonomy by substring matching on the lowered message.
"""

from enum import Enum
from typing import Optional, Union


class ErrorKind(str, Enum):
    """Error taxonomy exposed at the API boundary."""

    CONFIG = "config"
    UNREACHABLE = "unreachable"
    AUTH_FAILED = "auth_failed"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    REMOTE_COMMAND_FAILED = "remote_command_failed"
    PARSE = "parse"
    UNCATEGORIZED = "uncategorized"


class FleetError(Exception):
    """Base exception for all Orion Fleet errors.

    Raised directly for failures the classifier could not categorize;
    the original message is kept verbatim.
    """

    kind = ErrorKind.UNCATEGORIZED

    def __init__(
        self,
        message: str,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.host = host
        self.port = port


class ConfigError(FleetError):
    """Raised for invalid or missing authentication configuration."""

    kind = ErrorKind.CONFIG


class UnreachableError(FleetError):
    """Raised when DNS, TCP connect or the SSH handshake fails."""

    kind = ErrorKind.UNREACHABLE


class AuthFailedError(FleetError):
    """Raised when credentials are rejected or the session is not authenticated."""

    kind = ErrorKind.AUTH_FAILED


class ConnectionTimeoutError(FleetError):
    """Raised when connect, handshake or a command exceeds its time bound."""

    kind = ErrorKind.TIMEOUT


class SessionNotFoundError(FleetError):
    """Raised when an operation references an unregistered session."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, session_id: str, message: str = "session not found"):
        super().__init__(message)
        self.session_id = session_id


class RemoteCommandFailed(FleetError):
    """Raised when a command exits non-zero for an operation that requires success."""

    kind = ErrorKind.REMOTE_COMMAND_FAILED

    def __init__(
        self,
        message: str,
        exit_status: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.exit_status = exit_status
        self.stderr = stderr


class ParseError(FleetError):
    """Raised when remote output lacks a required field."""

    kind = ErrorKind.PARSE


_AUTH_MARKERS = ("auth", "permission denied")
_TIMEOUT_MARKERS = ("timeout", "timed out")
_UNREACHABLE_MARKERS = ("unable to open", "unreachable", "connection refused")


def classify_error(
    error: Union[BaseException, str],
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> FleetError:
    """Map a raw transport/library error onto the error taxonomy.

    Args:
        error: Exception or message to classify
        host: Host for context
        port: Port for context

    Returns:
        A FleetError subclass instance. FleetErrors are returned unchanged;
        unmatched messages become a plain FleetError with the raw text.
    """
    if isinstance(error, FleetError):
        return error

    raw = str(error)
    if not raw and isinstance(error, BaseException):
        raw = type(error).__name__
    lowered = raw.lower()

    if any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthFailedError("Authentication Failed", host=host, port=port)
    if any(marker in lowered for marker in _TIMEOUT_MARKERS):
        return ConnectionTimeoutError("Connection Timed Out", host=host, port=port)
    if any(marker in lowered for marker in _UNREACHABLE_MARKERS):
        return UnreachableError("host unreachable or port closed", host=host, port=port)
    return FleetError(raw, host=host, port=port)
