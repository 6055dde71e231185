"""Device control commands for Jetson boards.

Each operation is a thin wrapper over CommandExecutor with its own
output parsing and exit-status policy:
- power mode query: exit status ignored, output parsed
- power mode set / shutdown: non-zero exit raises RemoteCommandFailed
- reboot: exit status ignored (the link usually drops mid-command)
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from orion_fleet.ssh.executor import CommandExecutor
from orion_fleet.utils.errors import RemoteCommandFailed

logger = logging.getLogger(__name__)

POWER_MODE_QUERY = (
    "sh -lc 'sudo -n nvpmodel -q 2>/dev/null || nvpmodel -q 2>/dev/null || echo \"unknown\"'"
)
SHUTDOWN_COMMAND = "sudo -n shutdown"
REBOOT_COMMAND = "sh -lc 'sudo -n reboot 2>/dev/null || reboot 2>/dev/null'"

# hostname, os, kernel, cuda, jetpack, uptime seconds; one per line
SYSTEM_INFO_COMMAND = r"""sh -lc '
    hostname=$(hostname)
    os=$(uname -s)
    kernel=$(uname -r)
    cuda=$(nvcc --version 2>/dev/null | grep "release" | sed -E "s/.*release ([0-9.]+).*/\1/" || echo "")
    jetpack=$(dpkg -l 2>/dev/null | grep nvidia-jetpack | awk "{print \$3}" | head -1 || echo "")
    uptime_sec=$(cat /proc/uptime | awk "{print int(\$1)}")

    echo "$hostname"
    echo "$os"
    echo "$kernel"
    echo "$cuda"
    echo "$jetpack"
    echo "$uptime_sec"
'"""


def power_mode_set_command(mode: int) -> str:
    return f"sh -lc 'sudo -n nvpmodel -m {mode} 2>/dev/null || nvpmodel -m {mode} 2>/dev/null'"


@dataclass
class SystemInfo:
    """Hardware/OS details of one device."""

    device_id: str
    hostname: str = "unknown"
    os: str = "unknown"
    kernel: str = "unknown"
    cuda: Optional[str] = None
    jetpack: Optional[str] = None
    uptime_sec: int = 0
    updated_at: Optional[int] = None  # ms since epoch

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SystemInfo":
        return cls(**data)


def parse_power_mode(output: str) -> str:
    """Extract the mode name from `nvpmodel -q` output.

    Typical output is "NV Power Mode: MAXN" followed by the mode number.
    Falls back to the trimmed raw output.
    """
    for line in output.splitlines():
        if "Power Mode" in line and ":" in line:
            return line.split(":", 1)[1].strip()
    return output.strip()


def parse_system_info(output: str, device_id: str) -> SystemInfo:
    """Parse SYSTEM_INFO_COMMAND output; missing lines fall back to defaults."""
    lines = output.splitlines()

    def _line(index: int) -> str:
        return lines[index].strip() if index < len(lines) else ""

    try:
        uptime_sec = int(_line(5))
    except ValueError:
        uptime_sec = 0

    return SystemInfo(
        device_id=device_id,
        hostname=_line(0) or "unknown",
        os=_line(1) or "unknown",
        kernel=_line(2) or "unknown",
        cuda=_line(3) or None,
        jetpack=_line(4) or None,
        uptime_sec=uptime_sec,
        updated_at=int(time.time() * 1000),
    )


class DeviceController:
    """Power and system operations on registered sessions."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    async def get_power_mode(self, session_id: str) -> str:
        result = await self.executor.run(session_id, POWER_MODE_QUERY)
        return parse_power_mode(result.stdout)

    async def set_power_mode(self, session_id: str, mode: int) -> None:
        """Switch the nvpmodel power mode.

        Raises:
            RemoteCommandFailed: If nvpmodel exits non-zero
        """
        result = await self.executor.run(session_id, power_mode_set_command(int(mode)))
        if not result.success:
            raise RemoteCommandFailed(
                f"nvpmodel failed: {result.stdout.strip()}",
                exit_status=result.exit_status,
                stderr=result.stderr,
            )
        logger.info(f"[{session_id}] power mode set to {mode}")

    async def shutdown(self, session_id: str) -> str:
        """Schedule a shutdown.

        Returns:
            The broadcast message printed by shutdown, or a default message

        Raises:
            RemoteCommandFailed: With stderr (e.g. "sudo: a password is required")
        """
        result = await self.executor.run(session_id, SHUTDOWN_COMMAND)
        if not result.success:
            stderr = result.stderr.strip()
            message = stderr or f"Shutdown command failed with exit status: {result.exit_status}"
            raise RemoteCommandFailed(message, exit_status=result.exit_status, stderr=result.stderr)

        logger.info(f"[{session_id}] shutdown scheduled")
        return result.stdout.strip() or "Shutdown scheduled successfully."

    async def reboot(self, session_id: str) -> None:
        await self.executor.run(session_id, REBOOT_COMMAND)
        logger.info(f"[{session_id}] reboot requested")

    async def fetch_system_info(self, session_id: str, device_id: Optional[str] = None) -> SystemInfo:
        result = await self.executor.run(session_id, SYSTEM_INFO_COMMAND)
        return parse_system_info(result.stdout, device_id or session_id)
