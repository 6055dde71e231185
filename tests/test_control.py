"""Tests for device control commands."""

import pytest

from orion_fleet.control.system import (
    POWER_MODE_QUERY,
    REBOOT_COMMAND,
    SHUTDOWN_COMMAND,
    SYSTEM_INFO_COMMAND,
    DeviceController,
    SystemInfo,
    parse_power_mode,
    parse_system_info,
    power_mode_set_command,
)
from orion_fleet.ssh.executor import CommandExecutor
from orion_fleet.ssh.registry import SessionRegistry
from orion_fleet.utils.errors import RemoteCommandFailed, SessionNotFoundError
from fakes import CountingTransport, FakeConnection, ssh_result

SYSINFO_OUTPUT = "orin-nx-01\nLinux\n5.10.120-tegra\n11.4\n5.1.2-b104\n93784\n"


async def _controller(credential, connection: FakeConnection) -> DeviceController:
    registry = SessionRegistry(CountingTransport(lambda: connection), monitor_interval=3600)
    await registry.connect("jetson-1", credential)
    return DeviceController(CommandExecutor(registry))


class TestParsers:
    """Tests for power mode and system info parsing."""

    def test_power_mode_name(self):
        assert parse_power_mode("NV Power Mode: MAXN\n0\n") == "MAXN"

    def test_power_mode_fallback(self):
        assert parse_power_mode("unknown\n") == "unknown"

    def test_system_info(self):
        info = parse_system_info(SYSINFO_OUTPUT, "orin-01")
        assert info.device_id == "orin-01"
        assert info.hostname == "orin-nx-01"
        assert info.kernel == "5.10.120-tegra"
        assert info.cuda == "11.4"
        assert info.jetpack == "5.1.2-b104"
        assert info.uptime_sec == 93784
        assert info.updated_at is not None

    def test_system_info_missing_lines(self):
        info = parse_system_info("nano\nLinux\n4.9.337-tegra\n\n\n", "nano-1")
        assert info.cuda is None
        assert info.jetpack is None
        assert info.uptime_sec == 0

    def test_system_info_empty(self):
        info = parse_system_info("", "nano-1")
        assert info.hostname == "unknown"
        assert info.os == "unknown"

    def test_system_info_dict_round_trip(self):
        info = parse_system_info(SYSINFO_OUTPUT, "orin-01")
        assert SystemInfo.from_dict(info.to_dict()) == info

    def test_set_command_includes_mode(self):
        assert "nvpmodel -m 2" in power_mode_set_command(2)


class TestDeviceController:
    """Tests for DeviceController operations."""

    @pytest.mark.asyncio
    async def test_get_power_mode(self, credential):
        conn = FakeConnection({POWER_MODE_QUERY: ssh_result(stdout="NV Power Mode: 15W\n2\n")})
        controller = await _controller(credential, conn)
        assert await controller.get_power_mode("jetson-1") == "15W"
        await controller.executor.registry.close()

    @pytest.mark.asyncio
    async def test_set_power_mode(self, credential):
        conn = FakeConnection()
        controller = await _controller(credential, conn)
        await controller.set_power_mode("jetson-1", 0)
        assert conn.commands[-1] == power_mode_set_command(0)
        await controller.executor.registry.close()

    @pytest.mark.asyncio
    async def test_set_power_mode_failure(self, credential):
        conn = FakeConnection({power_mode_set_command(9): ssh_result(stdout="Invalid mode\n", exit_status=1)})
        controller = await _controller(credential, conn)
        with pytest.raises(RemoteCommandFailed, match="nvpmodel failed: Invalid mode"):
            await controller.set_power_mode("jetson-1", 9)
        await controller.executor.registry.close()

    @pytest.mark.asyncio
    async def test_shutdown_without_sudo(self, credential):
        conn = FakeConnection({
            SHUTDOWN_COMMAND: ssh_result(stderr="sudo: a password is required\n", exit_status=1)
        })
        controller = await _controller(credential, conn)
        with pytest.raises(RemoteCommandFailed) as exc_info:
            await controller.shutdown("jetson-1")
        assert exc_info.value.message == "sudo: a password is required"
        assert exc_info.value.exit_status == 1
        await controller.executor.registry.close()

    @pytest.mark.asyncio
    async def test_shutdown_failure_without_stderr(self, credential):
        conn = FakeConnection({SHUTDOWN_COMMAND: ssh_result(exit_status=3)})
        controller = await _controller(credential, conn)
        with pytest.raises(RemoteCommandFailed, match="exit status: 3"):
            await controller.shutdown("jetson-1")
        await controller.executor.registry.close()

    @pytest.mark.asyncio
    async def test_shutdown_scheduled(self, credential):
        conn = FakeConnection({SHUTDOWN_COMMAND: ssh_result()})
        controller = await _controller(credential, conn)
        assert await controller.shutdown("jetson-1") == "Shutdown scheduled successfully."
        await controller.executor.registry.close()

    @pytest.mark.asyncio
    async def test_shutdown_returns_broadcast(self, credential):
        message = "Shutdown scheduled for Mon 2024-01-01 12:01:00 UTC, use 'shutdown -c' to cancel."
        conn = FakeConnection({SHUTDOWN_COMMAND: ssh_result(stdout=message + "\n")})
        controller = await _controller(credential, conn)
        assert await controller.shutdown("jetson-1") == message
        await controller.executor.registry.close()

    @pytest.mark.asyncio
    async def test_reboot_ignores_exit_status(self, credential):
        conn = FakeConnection({REBOOT_COMMAND: ssh_result(exit_status=-1)})
        controller = await _controller(credential, conn)
        await controller.reboot("jetson-1")
        assert conn.commands == [REBOOT_COMMAND]
        await controller.executor.registry.close()

    @pytest.mark.asyncio
    async def test_fetch_system_info(self, credential):
        conn = FakeConnection({SYSTEM_INFO_COMMAND: ssh_result(stdout=SYSINFO_OUTPUT)})
        controller = await _controller(credential, conn)
        info = await controller.fetch_system_info("jetson-1")
        assert info.device_id == "jetson-1"
        assert info.hostname == "orin-nx-01"
        await controller.executor.registry.close()

    @pytest.mark.asyncio
    async def test_unknown_session(self, credential):
        controller = await _controller(credential, FakeConnection())
        with pytest.raises(SessionNotFoundError):
            await controller.reboot("ghost")
        await controller.executor.registry.close()
