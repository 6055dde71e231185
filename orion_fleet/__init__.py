"""Orion Fleet - SSH session management, device control and telemetry for Jetson fleets."""

__version__ = "0.1.0"

from orion_fleet.config import FleetSettings
from orion_fleet.fleet import FleetManager
from orion_fleet.ssh import Credential, SSHTransport, SessionRegistry, CommandExecutor, CommandResult
from orion_fleet.telemetry import TelemetrySample, TelemetrySampler, StreamController
from orion_fleet.utils.errors import ErrorKind, FleetError

__all__ = [
    "__version__",
    "FleetSettings",
    "FleetManager",
    "Credential",
    "SSHTransport",
    "SessionRegistry",
    "CommandExecutor",
    "CommandResult",
    "TelemetrySample",
    "TelemetrySampler",
    "StreamController",
    "ErrorKind",
    "FleetError",
]
