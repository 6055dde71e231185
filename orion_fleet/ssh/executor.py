"""Command execution on registered sessions.

All higher-level operations (device control, telemetry) go through
CommandExecutor so lookup, locking and error classification happen in
one place.
"""

import asyncio
import logging
from typing import Optional

import asyncssh

from orion_fleet.config import DEFAULT_COMMAND_TIMEOUT
from orion_fleet.utils.errors import (
    ConnectionTimeoutError,
    RemoteCommandFailed,
    classify_error,
)
from .registry import SessionRegistry
from .session import CommandResult

logger = logging.getLogger(__name__)


class CommandExecutor:
    """Runs one command at a time per session and classifies failures."""

    def __init__(
        self,
        registry: SessionRegistry,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.registry = registry
        self.command_timeout = command_timeout

    async def run(
        self,
        session_id: str,
        command: str,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Execute a command on a registered session.

        A non-zero exit status is returned as data, not raised.

        Args:
            session_id: Registered session id
            command: Shell command line
            timeout: Command timeout (default: self.command_timeout)

        Returns:
            CommandResult with stdout, stderr, exit_status

        Raises:
            SessionNotFoundError: Session not registered (no I/O attempted)
            FleetError: Classified transport failure
        """
        handle = self.registry.get(session_id)
        timeout = timeout or self.command_timeout

        try:
            return await handle.execute(command, timeout=timeout)
        except asyncio.TimeoutError:
            raise ConnectionTimeoutError(
                f"Command timeout ({timeout}s): {command[:50]}",
                host=handle.host,
            )
        except (asyncssh.Error, OSError) as e:
            logger.debug(f"[{session_id}] command failed: {command} - {e!r}")
            raise classify_error(e, host=handle.host) from e

    async def run_checked(
        self,
        session_id: str,
        command: str,
        timeout: Optional[float] = None,
    ) -> str:
        """Execute a command and raise on non-zero exit.

        Returns:
            Command stdout

        Raises:
            RemoteCommandFailed: On non-zero exit status
        """
        result = await self.run(session_id, command, timeout)
        if not result.success:
            raise RemoteCommandFailed(
                f"Command failed (exit {result.exit_status}): {result.stderr.strip()}",
                exit_status=result.exit_status,
                stderr=result.stderr,
            )
        return result.stdout
