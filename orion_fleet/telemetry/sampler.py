"""Telemetry sampling over SSH.

One sample combines:
- /proc/stat aggregate CPU counters (delta against the previous sample
  of the same session)
- `free -m` total/used memory
- a best-effort one-shot `tegrastats` line for GR3D utilization and GPU
  temperature

GPU stats are optional: boards without tegrastats, or without
passwordless sudo for it, still produce CPU/RAM samples.
"""

import logging
import time
from typing import Dict, Optional, Tuple

from orion_fleet.utils.errors import ParseError
from orion_fleet.ssh.executor import CommandExecutor
from .models import CpuCounterSample, TelemetrySample

logger = logging.getLogger(__name__)

# First line of /proc/stat, then "<total> <used>" in MB
STATS_COMMAND = (
    "sh -lc 'cat /proc/stat | head -n1; free -m | awk \"/Mem:/ {print $2, $3}\"'"
)
GPU_COMMAND = (
    "sh -lc 'tegrastats --interval 1000 --count 1 2>/dev/null"
    " || sudo -n tegrastats --interval 1000 --count 1 2>/dev/null'"
)
DEFAULT_GPU_TIMEOUT = 10.0

GPU_UTIL_MARKER = "GR3D_FREQ"
GPU_TEMP_MARKER = "GPU@"

# user nice system idle iowait irq softirq steal
CPU_FIELDS = 8
MIN_CPU_FIELDS = 4


def parse_cpu_line(line: str) -> CpuCounterSample:
    """Parse the aggregate `cpu` line of /proc/stat.

    Raises:
        ParseError: If fewer than 4 counters are present
    """
    tokens = line.split()[1:]
    fields = [int(t) for t in tokens if t.isascii() and t.isdigit()][:CPU_FIELDS]
    if len(fields) < MIN_CPU_FIELDS:
        raise ParseError(f"failed to parse cpu: {line.strip()[:80]!r}")

    fields += [0] * (CPU_FIELDS - len(fields))
    idle, iowait = fields[3], fields[4]
    return CpuCounterSample(total=sum(fields), idle=idle + iowait)


def cpu_percent(previous: CpuCounterSample, current: CpuCounterSample) -> float:
    """Busy percentage between two counter samples, clamped to [0, 100].

    Deltas saturate at zero, so a counter reset (remote reboot) yields 0
    instead of a negative value.
    """
    d_total = max(current.total - previous.total, 0)
    d_idle = max(current.idle - previous.idle, 0)
    if d_total == 0:
        return 0.0
    busy = max(d_total - d_idle, 0)
    return min(busy * 100.0 / d_total, 100.0)


def parse_memory_line(line: str) -> Tuple[int, int]:
    """Parse "<total> <used>" megabytes; unparseable tokens read as 0."""
    tokens = line.split()

    def _int_at(index: int) -> int:
        try:
            return int(tokens[index])
        except (IndexError, ValueError):
            return 0

    return _int_at(0), _int_at(1)


def parse_tegrastats_line(line: str) -> Tuple[Optional[float], Optional[float]]:
    """Extract GPU utilization and temperature from one tegrastats line.

    Looks for "GR3D_FREQ <n>%" and "GPU@<n>C". Either may be missing.
    """
    gpu_util: Optional[float] = None
    gpu_temp: Optional[float] = None

    idx = line.find(GPU_UTIL_MARKER)
    if idx != -1:
        before_pct = line[idx:].split("%", 1)[0]
        if " " in before_pct:
            try:
                gpu_util = float(before_pct.rsplit(" ", 1)[1])
            except ValueError:
                pass

    idx = line.find(GPU_TEMP_MARKER)
    if idx != -1:
        rest = line[idx + len(GPU_TEMP_MARKER):]
        digits = ""
        for ch in rest:
            if not ch.isdigit() or not ch.isascii():
                break
            digits += ch
        if digits:
            gpu_temp = float(digits)

    return gpu_util, gpu_temp


class TelemetrySampler:
    """Produces TelemetrySamples for registered sessions.

    Keeps the most recent CPU counters per session id. Entries for
    disconnected sessions are left in place; they are overwritten on the
    next sample of a session with the same id.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        gpu_timeout: float = DEFAULT_GPU_TIMEOUT,
    ):
        self.executor = executor
        self.gpu_timeout = gpu_timeout
        self._last_cpu: Dict[str, CpuCounterSample] = {}

    def last_counters(self, session_id: str) -> Optional[CpuCounterSample]:
        return self._last_cpu.get(session_id)

    def _swap_counters(
        self, session_id: str, current: CpuCounterSample
    ) -> Optional[CpuCounterSample]:
        # No await between read and write: atomic on the event loop
        previous = self._last_cpu.get(session_id)
        self._last_cpu[session_id] = current
        return previous

    async def sample_gpu(self, session_id: str) -> Tuple[Optional[float], Optional[float]]:
        """Best-effort GPU utilization and temperature.

        Never raises; any failure yields (None, None).
        """
        try:
            result = await self.executor.run(session_id, GPU_COMMAND, timeout=self.gpu_timeout)
            lines = result.stdout.splitlines()
            return parse_tegrastats_line(lines[0] if lines else "")
        except Exception as e:
            logger.debug(f"[{session_id}] GPU sampling unavailable: {e!r}")
            return None, None

    async def sample(self, session_id: str, device_id: Optional[str] = None) -> TelemetrySample:
        """Take one telemetry sample.

        Args:
            session_id: Registered session id
            device_id: Device the sample is attributed to (default: session_id)

        Raises:
            SessionNotFoundError: Session not registered
            ParseError: Malformed CPU line
            FleetError: Classified transport failure of the stats command
        """
        result = await self.executor.run(session_id, STATS_COMMAND)
        lines = result.stdout.splitlines()
        cpu_line = lines[0] if lines else ""
        mem_line = lines[1] if len(lines) > 1 else ""

        current = parse_cpu_line(cpu_line)
        previous = self._swap_counters(session_id, current)
        cpu = cpu_percent(previous or current, current)

        ram_total_mb, ram_used_mb = parse_memory_line(mem_line)
        gpu_util, gpu_temp_c = await self.sample_gpu(session_id)

        return TelemetrySample(
            timestamp=int(time.time() * 1000),
            cpu_percent=cpu,
            ram_used_mb=ram_used_mb,
            ram_total_mb=ram_total_mb,
            gpu_util=gpu_util,
            gpu_temp_c=gpu_temp_c,
            device_id=device_id or session_id,
        )
