"""Tests for telemetry parsing and sampling."""

import asyncssh
import pytest

from orion_fleet.ssh.executor import CommandExecutor
from orion_fleet.ssh.registry import SessionRegistry
from orion_fleet.telemetry.models import CpuCounterSample, TelemetrySample
from orion_fleet.telemetry.sampler import (
    GPU_COMMAND,
    STATS_COMMAND,
    TelemetrySampler,
    cpu_percent,
    parse_cpu_line,
    parse_memory_line,
    parse_tegrastats_line,
)
from orion_fleet.utils.errors import ParseError, SessionNotFoundError
from fakes import CountingTransport, FakeConnection, ssh_result

CPU_BEFORE = "cpu  100 0 100 700 100 0 0 0"
CPU_AFTER = "cpu  170 0 100 730 100 0 0 0"
TEGRASTATS = (
    "RAM 2048/7772MB (lfb 1x4MB) SWAP 0/3886MB CPU [12%@1190,8%@1190] "
    "EMC_FREQ 0% GR3D_FREQ 45%@[1300] CPU@40.5C GPU@38.5C tj@41C"
)


class TestParseCpuLine:
    """Tests for parse_cpu_line()."""

    def test_total_and_idle(self):
        sample = parse_cpu_line(CPU_BEFORE)
        assert sample == CpuCounterSample(total=1000, idle=800)

    def test_only_first_eight_fields(self):
        sample = parse_cpu_line("cpu 1 1 1 1 1 1 1 1 99 99")
        assert sample.total == 8

    def test_non_integer_tokens_skipped(self):
        sample = parse_cpu_line("cpu 10 x 20 -5 30 40")
        assert sample == CpuCounterSample(total=100, idle=40)

    def test_four_fields_is_enough(self):
        sample = parse_cpu_line("cpu 10 20 30 40")
        assert sample == CpuCounterSample(total=100, idle=40)

    @pytest.mark.parametrize("line", ["cpu 1 2 3", "", "cpu a b c d e"])
    def test_too_few_fields(self, line):
        with pytest.raises(ParseError):
            parse_cpu_line(line)


class TestCpuPercent:
    """Tests for cpu_percent()."""

    def test_busy_share_of_delta(self):
        previous = parse_cpu_line(CPU_BEFORE)
        current = parse_cpu_line(CPU_AFTER)
        assert cpu_percent(previous, current) == 70.0

    def test_counter_pair(self):
        previous = CpuCounterSample(total=1000, idle=700)
        current = CpuCounterSample(total=1200, idle=760)
        assert cpu_percent(previous, current) == 70.0

    def test_no_elapsed_ticks(self):
        counters = CpuCounterSample(total=500, idle=100)
        assert cpu_percent(counters, counters) == 0.0

    def test_counter_reset(self):
        """Counters going backwards (remote reboot) should read as idle, not negative."""
        previous = CpuCounterSample(total=10_000, idle=8_000)
        current = CpuCounterSample(total=50, idle=40)
        assert cpu_percent(previous, current) == 0.0

    def test_idle_went_backwards(self):
        previous = CpuCounterSample(total=100, idle=90)
        current = CpuCounterSample(total=200, idle=50)
        assert cpu_percent(previous, current) == 100.0


class TestParseMemoryLine:
    """Tests for parse_memory_line()."""

    def test_total_and_used(self):
        assert parse_memory_line("7772 2048") == (7772, 2048)

    def test_bad_tokens_read_as_zero(self):
        assert parse_memory_line("lots 12") == (0, 12)
        assert parse_memory_line("") == (0, 0)


class TestParseTegrastats:
    """Tests for parse_tegrastats_line()."""

    def test_util_and_temp(self):
        assert parse_tegrastats_line(TEGRASTATS) == (45.0, 38.0)

    def test_plain_percentage(self):
        assert parse_tegrastats_line("GR3D_FREQ 0% GPU@31C") == (0.0, 31.0)

    def test_garbage(self):
        assert parse_tegrastats_line("tegrastats: command not found") == (None, None)

    def test_missing_temperature(self):
        assert parse_tegrastats_line("GR3D_FREQ 99%") == (99.0, None)


async def _sampler(credential, connection: FakeConnection) -> TelemetrySampler:
    registry = SessionRegistry(CountingTransport(lambda: connection), monitor_interval=3600)
    await registry.connect("jetson-1", credential)
    return TelemetrySampler(CommandExecutor(registry))


class TestTelemetrySampler:
    """Tests for TelemetrySampler.sample()."""

    @pytest.mark.asyncio
    async def test_first_and_second_sample(self, credential):
        conn = FakeConnection({
            STATS_COMMAND: [
                ssh_result(stdout=f"{CPU_BEFORE}\n7772 2048\n"),
                ssh_result(stdout=f"{CPU_AFTER}\n7772 2100\n"),
            ],
            GPU_COMMAND: ssh_result(stdout=TEGRASTATS + "\n"),
        })
        sampler = await _sampler(credential, conn)

        first = await sampler.sample("jetson-1")
        assert first.cpu_percent == 0.0
        assert first.device_id == "jetson-1"
        assert (first.ram_total_mb, first.ram_used_mb) == (7772, 2048)
        assert (first.gpu_util, first.gpu_temp_c) == (45.0, 38.0)

        second = await sampler.sample("jetson-1", device_id="orin-nx-01")
        assert second.cpu_percent == 70.0
        assert second.device_id == "orin-nx-01"
        assert second.ram_used_mb == 2100
        assert second.timestamp >= first.timestamp
        assert sampler.last_counters("jetson-1") == CpuCounterSample(total=1100, idle=830)
        await sampler.executor.registry.close()

    @pytest.mark.asyncio
    async def test_gpu_failure_is_not_fatal(self, credential):
        conn = FakeConnection({
            STATS_COMMAND: ssh_result(stdout=f"{CPU_BEFORE}\n4096 1024\n"),
            GPU_COMMAND: asyncssh.ChannelOpenError(2, "Unable to open channel"),
        })
        sampler = await _sampler(credential, conn)

        sample = await sampler.sample("jetson-1")
        assert sample.gpu_util is None
        assert sample.gpu_temp_c is None
        assert sample.ram_total_mb == 4096
        await sampler.executor.registry.close()

    @pytest.mark.asyncio
    async def test_gpu_garbage_output(self, credential):
        conn = FakeConnection({
            STATS_COMMAND: ssh_result(stdout=f"{CPU_BEFORE}\n4096 1024\n"),
            GPU_COMMAND: ssh_result(stdout="garbage\n", exit_status=1),
        })
        sampler = await _sampler(credential, conn)

        assert await sampler.sample_gpu("jetson-1") == (None, None)
        await sampler.executor.registry.close()

    @pytest.mark.asyncio
    async def test_malformed_cpu_line(self, credential):
        conn = FakeConnection({STATS_COMMAND: ssh_result(stdout="cpu 1 2\n4096 1024\n")})
        sampler = await _sampler(credential, conn)

        with pytest.raises(ParseError):
            await sampler.sample("jetson-1")
        assert sampler.last_counters("jetson-1") is None
        await sampler.executor.registry.close()

    @pytest.mark.asyncio
    async def test_unknown_session(self, credential):
        sampler = await _sampler(credential, FakeConnection())
        with pytest.raises(SessionNotFoundError):
            await sampler.sample("ghost")
        await sampler.executor.registry.close()


class TestTelemetrySample:
    """Tests for the TelemetrySample model."""

    def test_ram_used_pct(self):
        sample = TelemetrySample(
            timestamp=1, cpu_percent=5.0, ram_used_mb=1024, ram_total_mb=4096, device_id="d"
        )
        assert sample.ram_used_pct == 25.0

    def test_ram_used_pct_unknown_total(self):
        sample = TelemetrySample(timestamp=1, cpu_percent=0.0, ram_used_mb=0, ram_total_mb=0, device_id="d")
        assert sample.ram_used_pct == 0.0

    def test_cpu_percent_bounds(self):
        with pytest.raises(ValueError):
            TelemetrySample(timestamp=1, cpu_percent=120.0, ram_used_mb=0, ram_total_mb=0, device_id="d")
