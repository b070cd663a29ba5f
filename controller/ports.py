"""
External port allocation on scheduling hosts.

The host's running container list is the source of truth for which ports are
taken. Ports handed out by this allocator stay reserved in-process until the
caller releases them, which keeps concurrent rollouts inside one controller
from colliding before their containers exist. Other controller processes are
not covered: two of them can still pick the same free port.
"""

import random
import logging
from typing import Callable, Dict, Optional, Set

from .runtime import DockerRuntime

logger = logging.getLogger(__name__)

DEFAULT_PORT_RANGE = range(8000, 8999)


class NoPortAvailable(Exception):
    def __init__(self, host: str):
        self.host = host
        super().__init__(f"No free port left on {host}")


class PortAllocator:
    def __init__(self, runtime_factory: Callable[[str], DockerRuntime],
                 port_range: range = DEFAULT_PORT_RANGE,
                 rng: Optional[random.Random] = None):
        self.runtime_factory = runtime_factory
        self.port_range = port_range
        self._rng = rng or random.Random()
        self._reserved: Dict[str, Set[int]] = {}

    async def ports_in_use(self, host: str) -> Set[int]:
        containers = await self.runtime_factory(host).list_containers()
        return {c.public_port for c in containers if c.public_port is not None}

    async def find_available_port(self, host: str) -> int:
        """Pick a random free port on `host` and reserve it."""
        in_use = await self.ports_in_use(host)
        # No await between here and the reservation, so this is atomic within the event loop
        taken = in_use | self._reserved.get(host, set())
        candidates = [port for port in self.port_range if port not in taken]
        if not candidates:
            raise NoPortAvailable(host)
        port = self._rng.choice(candidates)
        self._reserved.setdefault(host, set()).add(port)
        logger.debug(f"Reserved port {port} on {host} ({len(in_use)} in use)")
        return port

    def release(self, host: str, port: int):
        reserved = self._reserved.get(host)
        if reserved is None:
            return
        reserved.discard(port)
        if not reserved:
            del self._reserved[host]

    def reserved(self, host: str) -> Set[int]:
        return set(self._reserved.get(host, set()))
