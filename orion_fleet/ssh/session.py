"""Registered session handle and command result types."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import asyncssh

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of one remote command execution."""

    stdout: str
    stderr: str
    exit_status: int

    @property
    def success(self) -> bool:
        return self.exit_status == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_status": self.exit_status,
        }


def _as_text(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


@dataclass
class SessionHandle:
    """An authenticated connection shared by every user of one session.

    The lock serializes channel use: one open -> exec -> drain -> close
    sequence at a time per session. It is never held across a sleep.
    """

    session_id: str
    connection: asyncssh.SSHClientConnection
    host: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run one command on a fresh channel.

        Library errors (channel open failure, disconnect, timeout) are
        raised unclassified; the caller decides how to surface them.
        Output is read as bytes; invalid UTF-8 becomes U+FFFD.
        """
        async with self.lock:
            logger.debug(f"[{self.session_id}] exec: {command}")
            result = await asyncio.wait_for(
                self.connection.run(command, check=False, encoding=None),
                timeout=timeout,
            )

        # exit_status is None when the remote process died from a signal
        exit_status = result.exit_status if result.exit_status is not None else -1
        return CommandResult(
            stdout=_as_text(result.stdout),
            stderr=_as_text(result.stderr),
            exit_status=exit_status,
        )
