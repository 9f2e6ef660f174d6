"""Reachability checks and SSH session management for the target host."""

from __future__ import annotations

import asyncio
import logging
import socket
import time

import asyncssh

from vmmigrator.events import ConnectionEvent, EventBus
from vmmigrator.models import Host, SessionEstablishmentError, UnreachableHostError

__all__ = [
    "Connection",
    "check_reachability",
    "get_local_hostname",
    "probe_port",
]

logger = logging.getLogger(__name__)


def get_local_hostname() -> str:
    """Get the hostname of the source machine."""
    return socket.gethostname()


async def probe_port(host: str, port: int, timeout: float) -> bool:
    """Check whether a TCP port accepts connections.

    Args:
        host: Hostname or address
        port: TCP port
        timeout: Seconds to wait for the handshake

    Returns:
        True if the connection was established
    """
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def check_reachability(host: str, ports: list[int], timeout: float) -> None:
    """Probe all required ports concurrently.

    Raises:
        UnreachableHostError: Listing every port that did not answer
    """
    results = await asyncio.gather(*(probe_port(host, port, timeout) for port in ports))
    failed = [port for port, ok in zip(ports, results, strict=True) if not ok]
    for port in failed:
        logger.error("Port %d is not reachable", port, extra={"job": "connection", "host": Host.TARGET})
    if failed:
        raise UnreachableHostError(host, failed)


class Connection:
    """Manages the SSH session to the target host.

    Uses asyncssh with keepalive for connection health monitoring and
    a semaphore for session multiplexing to prevent overwhelming the SSH server.
    """

    def __init__(
        self,
        target: str,
        event_bus: EventBus,
        username: str | None = None,
        max_sessions: int = 10,
        keepalive_interval: int = 15,
        keepalive_count_max: int = 3,
    ) -> None:
        """Initialize connection parameters.

        Args:
            target: Hostname or SSH config alias for the target host
            event_bus: EventBus for publishing connection events
            username: Login name (default: from ~/.ssh/config or current user)
            max_sessions: Maximum concurrent SSH channels (default 10)
            keepalive_interval: Seconds between keepalive packets (default 15)
            keepalive_count_max: Max missed keepalives before disconnect (default 3)
        """
        self._target = target
        self._event_bus = event_bus
        self._username = username
        self._conn: asyncssh.SSHClientConnection | None = None
        self._session_semaphore = asyncio.Semaphore(max_sessions)
        self._keepalive_interval = keepalive_interval
        self._keepalive_count_max = keepalive_count_max

    @property
    def connected(self) -> bool:
        """Check if connection is established."""
        return self._conn is not None

    @property
    def ssh_connection(self) -> asyncssh.SSHClientConnection:
        """Get the underlying SSH connection.

        Raises:
            RuntimeError: If not connected
        """
        if self._conn is None:
            raise RuntimeError("Not connected to target")
        return self._conn

    async def connect(self) -> None:
        """Establish the SSH session.

        Respects ~/.ssh/config automatically via asyncssh. There are no
        retries: reachability was already verified, so a failure here is an
        authentication or negotiation problem.

        Raises:
            SessionEstablishmentError: If the session cannot be negotiated
        """
        options: dict[str, object] = {
            "keepalive_interval": self._keepalive_interval,
            "keepalive_count_max": self._keepalive_count_max,
        }
        if self._username:
            options["username"] = self._username

        started = time.monotonic()
        try:
            self._conn = await asyncssh.connect(self._target, **options)
        except (OSError, asyncssh.Error) as e:
            raise SessionEstablishmentError(self._target, str(e) or type(e).__name__) from e

        latency = (time.monotonic() - started) * 1000
        self._event_bus.publish(ConnectionEvent(status="connected", latency=latency))

    async def disconnect(self) -> None:
        """Close the SSH connection gracefully."""
        if self._conn:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None
            self._event_bus.publish(ConnectionEvent(status="disconnected", latency=None))

    async def run(self, cmd: str) -> asyncssh.SSHCompletedProcess:
        """Run a command and wait for completion.

        Raises:
            RuntimeError: If not connected
        """
        if self._conn is None:
            raise RuntimeError("Not connected to target")
        async with self._session_semaphore:
            return await self._conn.run(cmd)
