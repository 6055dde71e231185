"""Per-session liveness monitor.

Liveness is operational: a session is alive while a trivial command can
still be run on it. Socket-level keepalives miss the common failure
modes on the boards (hung sshd children, revoked accounts).
"""

import asyncio
import logging
from typing import TYPE_CHECKING

import asyncssh

from orion_fleet.config import DEFAULT_MONITOR_INTERVAL, DEFAULT_PROBE_TIMEOUT
from .session import SessionHandle

if TYPE_CHECKING:
    from .registry import SessionRegistry

logger = logging.getLogger(__name__)

PROBE_COMMAND = "true"


class SessionMonitor:
    """Background probe loop for one registered session."""

    def __init__(
        self,
        registry: "SessionRegistry",
        handle: SessionHandle,
        interval: float = DEFAULT_MONITOR_INTERVAL,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ):
        self.registry = registry
        self.handle = handle
        self.interval = interval
        self.probe_timeout = probe_timeout

    @property
    def session_id(self) -> str:
        return self.handle.session_id

    async def is_alive(self) -> bool:
        """Run the probe command; any exit status counts as alive."""
        try:
            await self.handle.execute(PROBE_COMMAND, timeout=self.probe_timeout)
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            logger.debug(f"[{self.session_id}] liveness probe failed: {e!r}")
            return False
        except Exception:
            logger.exception(f"[{self.session_id}] unexpected error in liveness probe")
            return False
        return True

    async def tick(self) -> bool:
        """Run one monitor cycle.

        Returns:
            True if monitoring should continue
        """
        if self.registry.lookup(self.session_id) is not self.handle:
            logger.debug(f"[{self.session_id}] session gone, monitor exiting")
            return False

        if await self.is_alive():
            return True

        logger.warning(f"[{self.session_id}] session dead, removing from registry")
        await self.registry.evict(self.handle)
        return False

    async def run(self) -> None:
        """Sleep, probe, repeat until the session is gone or dead."""
        while True:
            await asyncio.sleep(self.interval)
            if not await self.tick():
                return
