"""Telemetry sample and system-info storage.

Samples are appended per device and read back newest-first-limited but
returned in chronological order, ready for plotting.
"""

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from orion_fleet.config import DEFAULT_STORE_PATH
from orion_fleet.control.system import SystemInfo
from .models import TelemetrySample

logger = logging.getLogger(__name__)

DEFAULT_READ_LIMIT = 120


class SampleStore(Protocol):
    """Storage collaborator used by the fleet manager."""

    async def insert_sample(self, sample: TelemetrySample) -> None: ...

    async def read_samples(
        self,
        device_id: str,
        limit: int = DEFAULT_READ_LIMIT,
        start_ts: Optional[int] = None,
        end_ts: Optional[int] = None,
    ) -> List[TelemetrySample]: ...

    async def save_system_info(self, info: SystemInfo) -> None: ...

    async def get_system_info(self, device_id: str) -> Optional[SystemInfo]: ...


def _select(
    samples: List[TelemetrySample],
    limit: int,
    start_ts: Optional[int],
    end_ts: Optional[int],
) -> List[TelemetrySample]:
    """Apply time filters, keep the newest `limit`, return oldest first."""
    if start_ts is not None:
        samples = [s for s in samples if s.timestamp >= start_ts]
    if end_ts is not None:
        samples = [s for s in samples if s.timestamp <= end_ts]
    samples = sorted(samples, key=lambda s: s.timestamp)
    if limit <= 0:
        return []
    return samples[-limit:]


class MemorySampleStore:
    """In-process store; contents are lost on exit."""

    def __init__(self):
        self._samples: Dict[str, List[TelemetrySample]] = {}
        self._system_info: Dict[str, SystemInfo] = {}

    async def insert_sample(self, sample: TelemetrySample) -> None:
        self._samples.setdefault(sample.device_id, []).append(sample)

    async def read_samples(
        self,
        device_id: str,
        limit: int = DEFAULT_READ_LIMIT,
        start_ts: Optional[int] = None,
        end_ts: Optional[int] = None,
    ) -> List[TelemetrySample]:
        return _select(list(self._samples.get(device_id, [])), limit, start_ts, end_ts)

    async def save_system_info(self, info: SystemInfo) -> None:
        self._system_info[info.device_id] = info

    async def get_system_info(self, device_id: str) -> Optional[SystemInfo]:
        return self._system_info.get(device_id)


class JsonSampleStore:
    """File-backed store.

    Layout under store_path:
    - <device_id>.jsonl: one TelemetrySample per line, append-only
    - system_info.json: {device_id: SystemInfo}
    """

    def __init__(self, store_path: Optional[Path] = None):
        self.store_path = Path(store_path or DEFAULT_STORE_PATH)
        self.store_path.mkdir(parents=True, exist_ok=True)
        self.system_info_file = self.store_path / "system_info.json"
        self._lock = asyncio.Lock()

    def _samples_file(self, device_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", device_id)
        return self.store_path / f"{safe}.jsonl"

    @staticmethod
    def _append_line(path: Path, line: str) -> None:
        with open(path, "a") as f:
            f.write(line + "\n")

    @staticmethod
    def _read_lines(path: Path) -> List[str]:
        if not path.exists():
            return []
        with open(path) as f:
            return f.readlines()

    async def insert_sample(self, sample: TelemetrySample) -> None:
        path = self._samples_file(sample.device_id)
        async with self._lock:
            await asyncio.to_thread(self._append_line, path, sample.model_dump_json())

    async def read_samples(
        self,
        device_id: str,
        limit: int = DEFAULT_READ_LIMIT,
        start_ts: Optional[int] = None,
        end_ts: Optional[int] = None,
    ) -> List[TelemetrySample]:
        path = self._samples_file(device_id)
        async with self._lock:
            lines = await asyncio.to_thread(self._read_lines, path)

        samples: List[TelemetrySample] = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                samples.append(TelemetrySample.model_validate_json(line))
            except ValidationError as e:
                logger.warning(f"Skipping corrupt sample {path.name}:{lineno}: {e.error_count()} errors")

        return _select(samples, limit, start_ts, end_ts)

    def _load_system_info(self) -> Dict[str, Dict]:
        if not self.system_info_file.exists():
            return {}
        try:
            with open(self.system_info_file) as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load system info: {e}")
            return {}

    def _update_system_info(self, info: SystemInfo) -> None:
        data = self._load_system_info()
        data[info.device_id] = info.to_dict()
        with open(self.system_info_file, "w") as f:
            json.dump(data, f, indent=2)

    async def save_system_info(self, info: SystemInfo) -> None:
        async with self._lock:
            await asyncio.to_thread(self._update_system_info, info)
        logger.debug(f"Saved system info for {info.device_id}")

    async def get_system_info(self, device_id: str) -> Optional[SystemInfo]:
        async with self._lock:
            data = await asyncio.to_thread(self._load_system_info)
        entry = data.get(device_id)
        if entry is None:
            return None
        return SystemInfo.from_dict(entry)
