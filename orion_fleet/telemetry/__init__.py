"""Telemetry sampling, streaming and storage."""

from .models import CpuCounterSample, TelemetrySample
from .sampler import (
    TelemetrySampler,
    parse_cpu_line,
    parse_memory_line,
    parse_tegrastats_line,
    cpu_percent,
)
from .stream import StreamController, StreamState, SampleBroadcaster
from .store import SampleStore, MemorySampleStore, JsonSampleStore

__all__ = [
    "CpuCounterSample",
    "TelemetrySample",
    "TelemetrySampler",
    "parse_cpu_line",
    "parse_memory_line",
    "parse_tegrastats_line",
    "cpu_percent",
    "StreamController",
    "StreamState",
    "SampleBroadcaster",
    "SampleStore",
    "MemorySampleStore",
    "JsonSampleStore",
]
