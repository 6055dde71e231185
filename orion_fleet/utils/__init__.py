"""Utility modules for Orion Fleet."""

from .errors import (
    ErrorKind,
    FleetError,
    ConfigError,
    UnreachableError,
    AuthFailedError,
    ConnectionTimeoutError,
    SessionNotFoundError,
    RemoteCommandFailed,
    ParseError,
    classify_error,
)
from .logging import setup_logging

__all__ = [
    "ErrorKind",
    "FleetError",
    "ConfigError",
    "UnreachableError",
    "AuthFailedError",
    "ConnectionTimeoutError",
    "SessionNotFoundError",
    "RemoteCommandFailed",
    "ParseError",
    "classify_error",
    "setup_logging",
]
