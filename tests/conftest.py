"""
Shared fixtures: an in-memory registry store and fake container hosts.
"""

import itertools
from typing import Dict, List, Optional

import pytest
from fakeredis.aioredis import FakeRedis

from registry.store import Registry
from controller.runtime import ContainerSpec, ContainerSummary
from controller.health import HealthStatus


class FakeRuntime:
    """In-memory stand-in for one Docker host.

    `failures` maps an operation name (pull, create, start, stop, remove, list,
    logs) to the exception that operation raises.
    """

    _ids = itertools.count(1)

    def __init__(self, host: str):
        self.host = host
        self.containers: Dict[str, Dict] = {}
        self.failures: Dict[str, Exception] = {}
        self.pulled: List[str] = []
        self.calls: List[tuple] = []

    def _maybe_fail(self, operation: str):
        self.calls.append((operation, self.host))
        error = self.failures.get(operation)
        if error is not None:
            raise error

    def run(self, image: str, port: int, logs: str = "") -> str:
        """Seed an already running container."""
        container_id = f"c{next(self._ids):04d}"
        self.containers[container_id] = {
            "image": image, "port": port, "running": True, "env": [], "logs": logs,
        }
        return container_id

    def running(self) -> List[Dict]:
        return [c for c in self.containers.values() if c["running"]]

    async def pull_image(self, image: str):
        self._maybe_fail("pull")
        self.pulled.append(image)

    async def create_container(self, spec: ContainerSpec) -> str:
        self._maybe_fail("create")
        container_id = f"c{next(self._ids):04d}"
        self.containers[container_id] = {
            "image": spec.image,
            "port": spec.host_port,
            "running": False,
            "env": list(spec.env),
            "logs": f"{spec.image} listening on {spec.container_port}\n",
        }
        return container_id

    async def start_container(self, container_id: str):
        self._maybe_fail("start")
        self.containers[container_id]["running"] = True

    async def list_containers(self) -> List[ContainerSummary]:
        self._maybe_fail("list")
        return [
            ContainerSummary(id=cid, image=c["image"], public_port=c["port"])
            for cid, c in self.containers.items()
            if c["running"]
        ]

    async def inspect_container(self, container_id: str) -> Dict:
        return {"Id": container_id, "Config": {"Image": self.containers[container_id]["image"]}}

    async def stop_container(self, container_id: str, timeout: int = 10):
        self._maybe_fail("stop")
        self.containers[container_id]["running"] = False

    async def remove_container(self, container_id: str):
        self._maybe_fail("remove")
        self.containers.pop(container_id, None)

    async def fetch_logs(self, container_id: str) -> str:
        self._maybe_fail("logs")
        return self.containers[container_id]["logs"]

    async def find_container_by_port(self, port: int) -> Optional[ContainerSummary]:
        for container in await self.list_containers():
            if container.public_port == int(port):
                return container
        return None


class FakeRuntimeFactory:
    def __init__(self):
        self.runtimes: Dict[str, FakeRuntime] = {}

    def __call__(self, host: str) -> FakeRuntime:
        if host not in self.runtimes:
            self.runtimes[host] = FakeRuntime(host)
        return self.runtimes[host]

    def close(self):
        pass


class FakeHealthChecker:
    """Answers probes from a table instead of polling HTTP.

    `statuses` maps a host (or "host:port") to the HealthStatus it reports;
    everything else is healthy on the first attempt.
    """

    def __init__(self):
        self.statuses: Dict[str, HealthStatus] = {}
        self.probed: List[str] = []

    async def probe(self, host: str, port: int) -> HealthStatus:
        self.probed.append(f"{host}:{port}")
        status = self.statuses.get(f"{host}:{port}") or self.statuses.get(host)
        return status or HealthStatus(is_healthy=True, attempts=1, status_code=200)

    async def health_check(self, host: str, port: int) -> bool:
        return (await self.probe(host, port)).is_healthy

    async def start(self):
        pass

    async def stop(self):
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis(decode_responses=True)


@pytest.fixture
def registry(fake_redis):
    return Registry(fake_redis)


@pytest.fixture
def runtimes():
    return FakeRuntimeFactory()


@pytest.fixture
def health():
    return FakeHealthChecker()
