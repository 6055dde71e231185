"""Tests for the FleetManager facade."""

import asyncio

import pytest

from orion_fleet.config import FleetSettings
from orion_fleet.control.system import SYSTEM_INFO_COMMAND
from orion_fleet.fleet import FleetManager
from orion_fleet.telemetry.sampler import GPU_COMMAND, STATS_COMMAND
from orion_fleet.telemetry.store import JsonSampleStore, MemorySampleStore
from orion_fleet.utils.errors import SessionNotFoundError
from fakes import CountingTransport, FakeConnection, ssh_result


def jetson_connection() -> FakeConnection:
    return FakeConnection({
        STATS_COMMAND: ssh_result(stdout="cpu  100 0 100 700 100 0 0 0\n7772 2048\n"),
        GPU_COMMAND: ssh_result(stdout="GR3D_FREQ 12%@[1300] GPU@40C\n"),
        SYSTEM_INFO_COMMAND: ssh_result(stdout="orin\nLinux\n5.10.120-tegra\n11.4\n5.1.2\n600\n"),
    })


def _settings(**kwargs) -> FleetSettings:
    return FleetSettings(monitor_interval=3600, poll_interval=0.01, **kwargs)


@pytest.fixture
def jetson_transport():
    return CountingTransport(jetson_connection)


class TestSessions:
    """Tests for session operations."""

    @pytest.mark.asyncio
    async def test_connect_run_disconnect(self, jetson_transport, credential):
        async with FleetManager(_settings(), transport=jetson_transport) as fleet:
            await fleet.connect("jetson-1", credential)
            assert fleet.list_sessions() == ["jetson-1"]
            assert fleet.is_alive("jetson-1")

            result = await fleet.run("jetson-1", "true")
            assert result.exit_status == 0

            await fleet.disconnect("jetson-1")
            assert not fleet.is_alive("jetson-1")

    @pytest.mark.asyncio
    async def test_probe_uses_transport(self, jetson_transport):
        fleet = FleetManager(_settings(), transport=jetson_transport)
        assert await fleet.probe("jetson-1.local")
        jetson_transport.reachable = False
        assert not await fleet.probe("jetson-1.local", 22)

    @pytest.mark.asyncio
    async def test_close_closes_sessions(self, jetson_transport, credential):
        fleet = FleetManager(_settings(), transport=jetson_transport)
        await fleet.connect("a", credential)
        await fleet.connect("b", credential)
        await fleet.close()
        assert fleet.list_sessions() == []
        assert all(c.closed for c in jetson_transport.connections)

    def test_store_from_settings(self, tmp_path):
        fleet = FleetManager(_settings(store_path=tmp_path))
        assert isinstance(fleet.store, JsonSampleStore)
        assert FleetManager(_settings()).store is None


class TestTelemetry:
    """Tests for sampling, storage and streaming through the manager."""

    @pytest.mark.asyncio
    async def test_sample_once_persists(self, jetson_transport, credential):
        store = MemorySampleStore()
        async with FleetManager(_settings(), transport=jetson_transport, store=store) as fleet:
            await fleet.connect("jetson-1", credential)
            sample = await fleet.sample_once("jetson-1", device_id="orin-01")

            assert sample.gpu_util == 12.0
            assert await fleet.get_samples("orin-01") == [sample]

    @pytest.mark.asyncio
    async def test_no_store(self, jetson_transport, credential):
        async with FleetManager(_settings(), transport=jetson_transport) as fleet:
            await fleet.connect("jetson-1", credential)
            await fleet.sample_once("jetson-1")
            assert await fleet.get_samples("jetson-1") == []
            assert await fleet.get_stored_system_info("jetson-1") is None

    @pytest.mark.asyncio
    async def test_system_info_persists(self, jetson_transport, credential):
        async with FleetManager(_settings(), transport=jetson_transport, store=MemorySampleStore()) as fleet:
            await fleet.connect("jetson-1", credential)
            info = await fleet.fetch_system_info("jetson-1")
            assert await fleet.get_stored_system_info("jetson-1") == info

    @pytest.mark.asyncio
    async def test_stream_to_subscribers_and_store(self, jetson_transport, credential):
        store = MemorySampleStore()
        async with FleetManager(_settings(), transport=jetson_transport, store=store) as fleet:
            await fleet.connect("jetson-1", credential)
            queue = fleet.subscribe()

            assert await fleet.start_stream("jetson-1")
            sample = await asyncio.wait_for(queue.get(), timeout=2.0)
            assert sample.device_id == "jetson-1"

            await fleet.stop_stream("jetson-1")
            fleet.unsubscribe(queue)
            assert len(await store.read_samples("jetson-1")) >= 1

    @pytest.mark.asyncio
    async def test_stream_custom_publisher(self, jetson_transport, credential):
        received = []
        async with FleetManager(_settings(), transport=jetson_transport) as fleet:
            await fleet.connect("jetson-1", credential)
            await fleet.start_stream("jetson-1", 0.01, publish_fn=received.append)
            for _ in range(200):
                if received:
                    break
                await asyncio.sleep(0.01)
            await fleet.stop_stream("jetson-1")
        assert received

    @pytest.mark.asyncio
    async def test_stream_requires_session(self, jetson_transport):
        async with FleetManager(_settings(), transport=jetson_transport) as fleet:
            with pytest.raises(SessionNotFoundError):
                await fleet.start_stream("ghost")
            assert fleet.streams.active() == []

    @pytest.mark.asyncio
    async def test_disconnect_stops_stream(self, jetson_transport, credential):
        async with FleetManager(_settings(), transport=jetson_transport) as fleet:
            await fleet.connect("jetson-1", credential)
            await fleet.start_stream("jetson-1")
            await fleet.disconnect("jetson-1")
            assert not fleet.streams.is_streaming("jetson-1")

    @pytest.mark.asyncio
    async def test_disconnect_racing_stop_stream(self, credential):
        """Nothing is published once both a disconnect and a stop have returned."""
        transport = CountingTransport(lambda: FakeConnection(jetson_connection().responses, delay=0.1))
        received = []
        async with FleetManager(_settings(), transport=transport) as fleet:
            await fleet.connect("jetson-1", credential)
            await fleet.start_stream("jetson-1", 0.01, publish_fn=received.append)
            connection = transport.connections[0]
            for _ in range(200):
                if connection.active:
                    break
                await asyncio.sleep(0.01)

            await asyncio.gather(fleet.disconnect("jetson-1"), fleet.stop_stream("jetson-1"))
            count = len(received)
            await asyncio.sleep(0.3)

            assert len(received) == count
            assert fleet.streams.active() == []
            assert fleet.list_sessions() == []
