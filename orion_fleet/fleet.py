"""Fleet manager: the caller-facing entry point.

Wires one SessionRegistry to the executor, sampler, stream controller,
device controller and (optionally) a sample store, so that every
component shares the same sessions.
"""

import logging
from typing import List, Optional

from orion_fleet.config import FleetSettings
from orion_fleet.control.system import DeviceController, SystemInfo
from orion_fleet.ssh.executor import CommandExecutor
from orion_fleet.ssh.registry import SessionRegistry
from orion_fleet.ssh.session import CommandResult
from orion_fleet.ssh.transport import Credential, SSHTransport
from orion_fleet.telemetry.models import TelemetrySample
from orion_fleet.telemetry.store import DEFAULT_READ_LIMIT, JsonSampleStore, SampleStore
from orion_fleet.telemetry.sampler import TelemetrySampler
from orion_fleet.telemetry.stream import PublishFn, SampleBroadcaster, StreamController

logger = logging.getLogger(__name__)


class FleetManager:
    """Manages SSH sessions, commands and telemetry for a fleet of boards.

    Usage:
        async with FleetManager() as fleet:
            await fleet.connect("jetson-1", credential)
            sample = await fleet.sample_once("jetson-1")
    """

    def __init__(
        self,
        settings: Optional[FleetSettings] = None,
        transport: Optional[SSHTransport] = None,
        store: Optional[SampleStore] = None,
    ):
        """Initialize the manager.

        Args:
            settings: Timeouts and intervals (default: FleetSettings())
            transport: Authenticator for new sessions (default: built from settings)
            store: Sample store; when None and settings.store_path is set,
                a JsonSampleStore is opened there
        """
        self.settings = settings or FleetSettings()
        self.transport = transport or SSHTransport(
            connect_timeout=self.settings.connect_timeout,
            login_timeout=self.settings.login_timeout,
            probe_timeout=self.settings.probe_timeout,
        )
        if store is None and self.settings.store_path is not None:
            store = JsonSampleStore(self.settings.store_path)
        self.store = store

        self.registry = SessionRegistry(
            self.transport,
            monitor_interval=self.settings.monitor_interval,
            probe_timeout=self.settings.probe_timeout,
        )
        self.executor = CommandExecutor(self.registry, command_timeout=self.settings.command_timeout)
        self.sampler = TelemetrySampler(self.executor)
        self.streams = StreamController(self.sampler)
        self.broadcaster = SampleBroadcaster()
        self.devices = DeviceController(self.executor)

    async def __aenter__(self) -> "FleetManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # Sessions

    async def connect(self, session_id: str, credential: Credential) -> str:
        return await self.registry.connect(session_id, credential)

    async def disconnect(self, session_id: str) -> None:
        """Stop the session's stream (if any) and remove the session."""
        await self.streams.stop(session_id)
        await self.registry.disconnect(session_id)

    async def probe(self, host: str, port: int = 22) -> bool:
        return await self.transport.probe(host, port)

    def is_alive(self, session_id: str) -> bool:
        return self.registry.is_alive(session_id)

    def list_sessions(self) -> List[str]:
        return self.registry.list()

    async def run(self, session_id: str, command: str, timeout: Optional[float] = None) -> CommandResult:
        return await self.executor.run(session_id, command, timeout)

    # Device control

    async def get_power_mode(self, session_id: str) -> str:
        return await self.devices.get_power_mode(session_id)

    async def set_power_mode(self, session_id: str, mode: int) -> None:
        await self.devices.set_power_mode(session_id, mode)

    async def shutdown(self, session_id: str) -> str:
        return await self.devices.shutdown(session_id)

    async def reboot(self, session_id: str) -> None:
        await self.devices.reboot(session_id)

    async def fetch_system_info(self, session_id: str, device_id: Optional[str] = None) -> SystemInfo:
        info = await self.devices.fetch_system_info(session_id, device_id)
        if self.store is not None:
            await self.store.save_system_info(info)
        return info

    async def get_stored_system_info(self, device_id: str) -> Optional[SystemInfo]:
        if self.store is None:
            return None
        return await self.store.get_system_info(device_id)

    # Telemetry

    async def sample_once(self, session_id: str, device_id: Optional[str] = None) -> TelemetrySample:
        sample = await self.sampler.sample(session_id, device_id)
        if self.store is not None:
            await self.store.insert_sample(sample)
        return sample

    async def get_samples(
        self,
        device_id: str,
        limit: int = DEFAULT_READ_LIMIT,
        start_ts: Optional[int] = None,
        end_ts: Optional[int] = None,
    ) -> List[TelemetrySample]:
        if self.store is None:
            return []
        return await self.store.read_samples(device_id, limit=limit, start_ts=start_ts, end_ts=end_ts)

    async def start_stream(
        self,
        session_id: str,
        interval: Optional[float] = None,
        publish_fn: Optional[PublishFn] = None,
        device_id: Optional[str] = None,
    ) -> bool:
        """Start background sampling of a registered session.

        Samples go to publish_fn, or to the built-in broadcaster (and the
        store, when present) if none is given.

        Raises:
            SessionNotFoundError: Session not registered
        """
        self.registry.get(session_id)
        if publish_fn is None:
            publish_fn = self._publish
        return await self.streams.start(
            session_id,
            interval or self.settings.poll_interval,
            publish_fn,
            device_id=device_id,
        )

    async def stop_stream(self, session_id: str) -> bool:
        return await self.streams.stop(session_id)

    def subscribe(self):
        return self.broadcaster.subscribe()

    def unsubscribe(self, queue) -> None:
        self.broadcaster.unsubscribe(queue)

    async def _publish(self, sample: TelemetrySample) -> None:
        self.broadcaster.publish(sample)
        if self.store is not None:
            await self.store.insert_sample(sample)

    async def close(self) -> None:
        """Stop every stream, then close every session."""
        await self.streams.stop_all()
        await self.registry.close()
        logger.info("Fleet manager closed")
