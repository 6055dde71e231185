"""Session registry: one authenticated connection per session id.

The registry is an explicitly owned object, not a module global; every
component that needs sessions receives the same instance.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from orion_fleet.config import DEFAULT_MONITOR_INTERVAL, DEFAULT_PROBE_TIMEOUT
from orion_fleet.utils.errors import SessionNotFoundError
from .monitor import SessionMonitor
from .session import SessionHandle
from .transport import Credential, SSHTransport, close_connection

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Concurrent map from session id to a shared SessionHandle.

    Structural changes (insert/remove) happen under one registry lock.
    Each handle has its own lock for command execution, so commands on
    different sessions never contend.

    Usage:
        registry = SessionRegistry(SSHTransport())
        await registry.connect("jetson-1", credential)
        handle = registry.get("jetson-1")
        ...
        await registry.close()
    """

    def __init__(
        self,
        transport: Optional[SSHTransport] = None,
        monitor_interval: float = DEFAULT_MONITOR_INTERVAL,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ):
        """Initialize the registry.

        Args:
            transport: Authenticates new sessions (default: SSHTransport())
            monitor_interval: Seconds between liveness probes
            probe_timeout: Bound on one liveness probe command
        """
        self.transport = transport or SSHTransport()
        self.monitor_interval = monitor_interval
        self.probe_timeout = probe_timeout
        self._sessions: Dict[str, SessionHandle] = {}
        self._monitors: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def connect(self, session_id: str, credential: Credential) -> str:
        """Authenticate and register a session.

        An id that is already registered is returned unchanged without
        re-authenticating.

        Raises:
            FleetError: Classified transport error; nothing is registered
        """
        if session_id in self._sessions:
            logger.debug(f"[{session_id}] already connected")
            return session_id

        logger.info(f"[{session_id}] connect requested: {credential.address}")
        conn = await self.transport.authenticate(credential)

        async with self._lock:
            lost_race = session_id in self._sessions
            if not lost_race:
                handle = SessionHandle(session_id=session_id, connection=conn, host=credential.host)
                self._sessions[session_id] = handle
                self._start_monitor(handle)

        if lost_race:
            # A concurrent connect registered the id first; keep that one
            logger.debug(f"[{session_id}] concurrent connect won, closing duplicate")
            await close_connection(conn)
        else:
            logger.info(f"[{session_id}] session registered")
        return session_id

    async def disconnect(self, session_id: str) -> None:
        """Remove a session, stop its monitor and close the connection.

        Raises:
            SessionNotFoundError: If the session is not registered
        """
        async with self._lock:
            handle = self._sessions.pop(session_id, None)
            monitor = self._monitors.pop(session_id, None)

        if handle is None:
            raise SessionNotFoundError(session_id)

        if monitor is not None and monitor is not asyncio.current_task():
            monitor.cancel()
            await asyncio.gather(monitor, return_exceptions=True)

        await close_connection(handle.connection)
        logger.info(f"[{session_id}] session removed")

    async def evict(self, handle: SessionHandle) -> bool:
        """Remove a dead session found by its monitor.

        Only removes the entry if it still maps to this exact handle, so a
        fresh reconnect under the same id is never evicted by a stale monitor.

        Returns:
            True if the handle was removed
        """
        async with self._lock:
            if self._sessions.get(handle.session_id) is not handle:
                return False
            del self._sessions[handle.session_id]
            monitor = self._monitors.pop(handle.session_id, None)

        if monitor is not None and monitor is not asyncio.current_task():
            monitor.cancel()
        await close_connection(handle.connection)
        return True

    def is_alive(self, session_id: str) -> bool:
        """Presence check; does not touch the network."""
        return session_id in self._sessions

    def list(self) -> List[str]:
        return list(self._sessions)

    def lookup(self, session_id: str) -> Optional[SessionHandle]:
        return self._sessions.get(session_id)

    def get(self, session_id: str) -> SessionHandle:
        """Get a registered handle.

        Raises:
            SessionNotFoundError: If the session is not registered
        """
        handle = self._sessions.get(session_id)
        if handle is None:
            raise SessionNotFoundError(session_id)
        return handle

    async def close(self) -> None:
        """Disconnect every session and join every monitor task."""
        for session_id in self.list():
            try:
                await self.disconnect(session_id)
            except SessionNotFoundError:
                pass  # Evicted concurrently by its monitor

        async with self._lock:
            leftovers = list(self._monitors.values())
            self._monitors.clear()
        for task in leftovers:
            task.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)

    def _start_monitor(self, handle: SessionHandle) -> None:
        monitor = SessionMonitor(
            self,
            handle,
            interval=self.monitor_interval,
            probe_timeout=self.probe_timeout,
        )
        self._monitors[handle.session_id] = asyncio.create_task(
            monitor.run(), name=f"session-monitor:{handle.session_id}"
        )
