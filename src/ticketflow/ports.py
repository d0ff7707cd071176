"""Port registry — OS-level port probing plus an in-memory ownership map.

Availability is checked with a real bind-and-release on the configured host.
Ownership is advisory bookkeeping so concurrent runs never hand out the same
port twice; a port can only be released by the owner that registered it.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import socket

from ticketflow.errors import PortExhaustedError

logger = logging.getLogger(__name__)

MAX_PORT = 65535


def _probe_bind(host: str, port: int) -> bool:
    """Return True if ``port`` is in use (or otherwise unbindable) on ``host``."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
    except OSError as e:
        if e.errno != errno.EADDRINUSE:
            # EACCES and friends: treat as unavailable
            logger.debug("Port %d unbindable on %s: %s", port, host, e)
        return True
    finally:
        sock.close()
    return False


class PortRegistry:
    """Tracks which owner (ticket/run id) holds which port."""

    def __init__(self, host: str = "127.0.0.1") -> None:
        self.host = host
        self._owners: dict[int, str] = {}
        self._allocate_lock = asyncio.Lock()

    async def is_port_in_use(self, port: int) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _probe_bind, self.host, port)

    async def find_available(self, base_port: int, max_attempts: int = 20) -> int:
        """Scan ``base_port, base_port+1, ...`` for the first free, unowned port.

        Raises:
            PortExhaustedError: if none of the ``max_attempts`` candidates is free.
        """
        for offset in range(max_attempts):
            candidate = base_port + offset
            if candidate > MAX_PORT:
                break
            if candidate in self._owners:
                continue
            if not await self.is_port_in_use(candidate):
                return candidate
        raise PortExhaustedError(base_port, max_attempts)

    async def allocate(self, owner_id: str, base_port: int, max_attempts: int = 20) -> int:
        """Find a free port and register it to ``owner_id`` in one step.

        Concurrent callers are serialised, so two owners never receive the
        same port even though each bind probe yields to the event loop.
        """
        async with self._allocate_lock:
            port = await self.find_available(base_port, max_attempts)
            self._owners[port] = owner_id
        logger.debug("Allocated port %d to %s", port, owner_id)
        return port

    def register(self, owner_id: str, port: int) -> bool:
        """Record ``owner_id`` as holder of ``port``. False if another owner holds it."""
        previous = self._owners.get(port)
        if previous is not None and previous != owner_id:
            logger.warning("Port %d already held by %s; refusing %s", port, previous, owner_id)
            return False
        self._owners[port] = owner_id
        return True

    def unregister(self, owner_id: str, port: int) -> bool:
        """Release ``port`` only if ``owner_id`` holds it. Returns True if released."""
        if self._owners.get(port) != owner_id:
            return False
        del self._owners[port]
        return True

    def owner_of(self, port: int) -> str | None:
        return self._owners.get(port)

    def ports_of(self, owner_id: str) -> list[int]:
        return sorted(port for port, owner in self._owners.items() if owner == owner_id)

    def unregister_all(self, owner_id: str) -> list[int]:
        released = self.ports_of(owner_id)
        for port in released:
            del self._owners[port]
        return released

    def snapshot(self) -> dict[int, str]:
        return dict(self._owners)
