"""TCP connect, SSH handshake and authentication.

One call authenticates one credential; the transport keeps no state
between calls. Address resolution and the per-address connect timeout
are handled here so a dead first address (e.g. IPv6 on a board without
a v6 route) never blocks the remaining ones.
"""

import asyncio
import logging
import socket
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import asyncssh
from pydantic import BaseModel, ConfigDict, Field

from orion_fleet.config import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_LOGIN_TIMEOUT,
    DEFAULT_PROBE_TIMEOUT,
)
from orion_fleet.utils.errors import (
    AuthFailedError,
    ConfigError,
    ConnectionTimeoutError,
    FleetError,
    UnreachableError,
    classify_error,
)

logger = logging.getLogger(__name__)


class AuthType(str, Enum):
    """Supported authentication strategies."""

    PASSWORD = "password"
    KEY = "key"


class Credential(BaseModel):
    """SSH credential for one device.

    ``auth_type`` is kept as a plain string so that unsupported values
    are rejected by the transport with a ConfigError rather than at
    construction time.
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(..., description="Hostname or IP address")
    port: int = Field(22, description="SSH port")
    username: str = Field(..., description="Login user")
    auth_type: str = Field(AuthType.PASSWORD.value, description="password or key")
    password: Optional[str] = Field(None, repr=False, description="Password, or key passphrase")
    private_key_path: Optional[str] = Field(None, description="Private key file for key auth")

    @property
    def address(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


class _AuthTrackingClient(asyncssh.SSHClient):
    """Client callbacks recording whether authentication completed."""

    def __init__(self) -> None:
        self.authenticated = False

    def auth_completed(self) -> None:
        self.authenticated = True


async def _open_socket(host: str, port: int, timeout: float) -> socket.socket:
    """Connect to the first reachable address of host:port.

    Raises:
        UnreachableError: If resolution fails or no address accepts
    """
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except OSError as e:
        raise UnreachableError(f"Unable to resolve {host}:{port}: {e}", host=host, port=port)

    for family, sock_type, proto, _, address in infos:
        sock = socket.socket(family, sock_type, proto)
        sock.setblocking(False)
        try:
            await asyncio.wait_for(loop.sock_connect(sock, address), timeout=timeout)
        except (OSError, asyncio.TimeoutError) as e:
            sock.close()
            logger.debug(f"TCP connect to {address} failed: {e!r}")
            continue
        return sock

    raise UnreachableError("Unable to open TCP connection", host=host, port=port)


async def probe(host: str, port: int, timeout: float = DEFAULT_PROBE_TIMEOUT) -> bool:
    """Check whether host:port accepts TCP connections.

    Returns:
        True if any resolved address accepted within the timeout
    """
    try:
        sock = await _open_socket(host, port, timeout)
    except UnreachableError:
        return False
    sock.close()
    return True


async def close_connection(conn: Any) -> None:
    """Close an SSH connection, logging rather than raising on teardown errors."""
    try:
        conn.close()
        await conn.wait_closed()
    except Exception as e:
        logger.warning(f"Error closing SSH connection: {e}")


class SSHTransport:
    """Authenticates credentials into asyncssh client connections.

    Usage:
        transport = SSHTransport()
        conn = await transport.authenticate(credential)
        result = await conn.run("uname -a", check=False)
    """

    def __init__(
        self,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        login_timeout: float = DEFAULT_LOGIN_TIMEOUT,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ):
        """Initialize transport timeouts.

        Args:
            connect_timeout: TCP connect timeout per resolved address
            login_timeout: Bound on SSH handshake plus authentication
            probe_timeout: Timeout used by probe()
        """
        self.connect_timeout = connect_timeout
        self.login_timeout = login_timeout
        self.probe_timeout = probe_timeout

    def auth_options(self, credential: Credential) -> Dict[str, Any]:
        """Build asyncssh auth options for exactly one strategy.

        Raises:
            ConfigError: Unsupported auth type, or key auth without a usable key path
        """
        if credential.auth_type == AuthType.PASSWORD.value:
            return {
                "password": credential.password or "",
                "client_keys": None,
                "agent_path": None,
                "preferred_auth": "password,keyboard-interactive",
            }

        if credential.auth_type == AuthType.KEY.value:
            if not credential.private_key_path:
                raise ConfigError("privateKeyPath required", host=credential.host, port=credential.port)
            key_path = Path(credential.private_key_path).expanduser()
            if not key_path.exists():
                raise ConfigError(
                    f"SSH private key not found: {key_path}",
                    host=credential.host,
                    port=credential.port,
                )
            return {
                "client_keys": [str(key_path)],
                "passphrase": credential.password,
                "agent_path": None,
                "preferred_auth": "publickey",
            }

        raise ConfigError(
            f"unsupported auth type: {credential.auth_type!r}",
            host=credential.host,
            port=credential.port,
        )

    async def probe(self, host: str, port: int) -> bool:
        """Check TCP reachability of host:port."""
        return await probe(host, port, timeout=self.probe_timeout)

    async def authenticate(self, credential: Credential) -> asyncssh.SSHClientConnection:
        """Open an authenticated SSH connection.

        Args:
            credential: Device credential

        Returns:
            Authenticated connection

        Raises:
            ConfigError: Invalid auth configuration (raised before any I/O)
            UnreachableError: Resolution, TCP connect or handshake failed
            ConnectionTimeoutError: Handshake/auth exceeded login_timeout
            AuthFailedError: Credentials rejected or not authenticated
        """
        host, port = credential.host, credential.port
        options = self.auth_options(credential)

        logger.info(
            f"Connecting to {credential.address} (auth={credential.auth_type})"
        )
        sock = await _open_socket(host, port, self.connect_timeout)
        logger.debug(f"TCP connect succeeded to {host}:{port}")

        try:
            conn, authenticated = await asyncio.wait_for(
                self._handshake(sock, credential, options),
                timeout=self.login_timeout,
            )
        except asyncio.TimeoutError:
            sock.close()
            raise ConnectionTimeoutError(
                f"SSH handshake timeout ({self.login_timeout}s)", host=host, port=port
            )
        except asyncssh.PermissionDenied as e:
            sock.close()
            raise AuthFailedError(f"Authentication Failed: {e}", host=host, port=port) from e
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
            sock.close()
            raise ConfigError(f"Unable to load private key: {e}", host=host, port=port) from e
        except (asyncssh.Error, OSError) as e:
            sock.close()
            error = classify_error(e, host=host, port=port)
            if type(error) is FleetError:
                # The SSH layer never came up
                raise UnreachableError(f"SSH handshake failed: {e}", host=host, port=port) from e
            raise error from e

        if not authenticated:
            logger.warning(f"SSH session to {credential.address} not authenticated")
            await close_connection(conn)
            raise AuthFailedError("authentication failed", host=host, port=port)

        logger.info(f"SSH authenticated for user={credential.username} on {host}:{port}")
        return conn

    async def validate(self, credential: Credential) -> None:
        """Check that a credential can reach and log into its device.

        Used before persisting a new device; the connection is closed.
        """
        if not await self.probe(credential.host, credential.port):
            raise UnreachableError(
                "host unreachable or port closed", host=credential.host, port=credential.port
            )
        conn = await self.authenticate(credential)
        await close_connection(conn)

    async def _handshake(
        self,
        sock: socket.socket,
        credential: Credential,
        options: Dict[str, Any],
    ) -> Tuple[asyncssh.SSHClientConnection, bool]:
        """Run the SSH handshake and auth over a connected socket."""
        conn, client = await asyncssh.create_connection(
            _AuthTrackingClient,
            credential.host,
            credential.port,
            sock=sock,
            username=credential.username,
            known_hosts=None,  # Freshly flashed boards regenerate host keys
            config=None,
            **options,
        )
        return conn, client.authenticated
