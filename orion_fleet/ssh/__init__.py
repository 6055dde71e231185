"""SSH transport, session registry and command execution."""

from .transport import AuthType, Credential, SSHTransport, probe, close_connection
from .session import CommandResult, SessionHandle
from .monitor import SessionMonitor
from .registry import SessionRegistry
from .executor import CommandExecutor

__all__ = [
    "AuthType",
    "Credential",
    "SSHTransport",
    "probe",
    "close_connection",
    "CommandResult",
    "SessionHandle",
    "SessionMonitor",
    "SessionRegistry",
    "CommandExecutor",
]
