"""Runtime settings for Orion Fleet.

Defaults match the device-side behaviour the fleet was built against:
- 5s TCP connect timeout per resolved address
- 5s session liveness probe interval
- 1s telemetry polling interval
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_PROBE_TIMEOUT = 3.0
DEFAULT_LOGIN_TIMEOUT = 15.0
DEFAULT_COMMAND_TIMEOUT = 60.0
DEFAULT_MONITOR_INTERVAL = 5.0
DEFAULT_POLL_INTERVAL = 1.0

DEFAULT_STORE_PATH = Path.home() / ".orion-fleet" / "samples"

ENV_PREFIX = "ORION_"


class FleetSettings(BaseModel):
    """Timeouts, intervals and storage location for a FleetManager."""

    connect_timeout: float = Field(DEFAULT_CONNECT_TIMEOUT, description="TCP connect timeout per address (s)")
    probe_timeout: float = Field(DEFAULT_PROBE_TIMEOUT, description="Reachability probe timeout (s)")
    login_timeout: float = Field(DEFAULT_LOGIN_TIMEOUT, description="SSH handshake + auth timeout (s)")
    command_timeout: float = Field(DEFAULT_COMMAND_TIMEOUT, description="Per-command timeout (s)")
    monitor_interval: float = Field(DEFAULT_MONITOR_INTERVAL, description="Session liveness probe interval (s)")
    poll_interval: float = Field(DEFAULT_POLL_INTERVAL, description="Default telemetry polling interval (s)")
    store_path: Optional[Path] = Field(None, description="Sample store directory (None disables persistence)")

    @field_validator(
        "connect_timeout",
        "probe_timeout",
        "login_timeout",
        "command_timeout",
        "monitor_interval",
        "poll_interval",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "FleetSettings":
        """Build settings from ORION_* environment variables.

        Recognised: ORION_CONNECT_TIMEOUT, ORION_PROBE_TIMEOUT,
        ORION_LOGIN_TIMEOUT, ORION_COMMAND_TIMEOUT, ORION_MONITOR_INTERVAL,
        ORION_POLL_INTERVAL, ORION_STORE_PATH.
        """
        env = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        return cls(**values)
