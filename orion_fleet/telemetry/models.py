"""Telemetry data types."""

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class CpuCounterSample:
    """Cumulative CPU counters from the first line of /proc/stat.

    Both values only grow while the remote machine stays up.
    """

    total: int
    idle: int


class TelemetrySample(BaseModel):
    """One timestamped CPU/RAM/GPU snapshot for a device."""

    model_config = ConfigDict(frozen=True)

    timestamp: int = Field(..., description="Milliseconds since epoch")
    cpu_percent: float = Field(..., ge=0.0, le=100.0)
    ram_used_mb: int
    ram_total_mb: int
    gpu_util: Optional[float] = Field(None, description="GR3D utilization percent")
    gpu_temp_c: Optional[float] = None
    power_mode: Optional[str] = None
    device_id: str

    @property
    def ram_used_pct(self) -> float:
        if self.ram_total_mb == 0:
            return 0.0
        return (self.ram_used_mb / self.ram_total_mb) * 100
