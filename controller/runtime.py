"""
Container runtime client for remote Docker daemons.
One client per host, addressed by the host's network address. Every call is a
blocking Docker API request, run in a worker thread so hosts never wait on
each other.
"""

import asyncio
import logging
import threading
from typing import Dict, List, Optional, Any, Callable, Tuple
from dataclasses import dataclass, field

import docker
import requests
from docker.errors import DockerException

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_PORT = 2375
DEFAULT_CONTAINER_PORT = 3000


class ContainerRuntimeError(Exception):
    """A remote container runtime call failed."""

    def __init__(self, host: str, operation: str, cause: Exception):
        self.host = host
        self.operation = operation
        self.cause = cause
        super().__init__(f"Container runtime {operation} failed on {host}: {cause}")


@dataclass
class ContainerSpec:
    image: str
    env: List[str] = field(default_factory=list)
    container_port: int = DEFAULT_CONTAINER_PORT
    host_port: Optional[int] = None


@dataclass
class ContainerSummary:
    id: str
    image: str
    public_port: Optional[int] = None


def parse_image(image: str) -> Tuple[str, str]:
    """Split an image reference into repository and tag (default: latest)."""
    # A colon before the last slash belongs to a registry address, not a tag
    repository, sep, tag = image.rpartition(":")
    if not sep or "/" in tag:
        return image, "latest"
    return repository, tag or "latest"


def _public_port(ports: List[Dict[str, Any]]) -> Optional[int]:
    for binding in ports or []:
        if binding.get("PublicPort"):
            return int(binding["PublicPort"])
    return None


class DockerRuntime:
    """Docker Remote API client for a single host."""

    def __init__(self, host: str, docker_port: int = DEFAULT_DOCKER_PORT, timeout: int = 60):
        self.host = host
        self.base_url = f"tcp://{host}:{docker_port}"
        self.timeout = timeout
        self._client: Optional[docker.DockerClient] = None
        self._client_lock = threading.Lock()

    @property
    def client(self) -> docker.DockerClient:
        # Created on first use: building a client negotiates the API version with the daemon
        with self._client_lock:
            if self._client is None:
                self._client = docker.DockerClient(base_url=self.base_url, timeout=self.timeout)
            return self._client

    async def _call(self, operation: str, fn: Callable, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ContainerRuntimeError(self.host, operation, e) from e

    async def pull_image(self, image: str):
        repository, tag = parse_image(image)
        logger.info(f"Pulling {repository}:{tag} on {self.host}")
        await self._call("pull", lambda: self.client.images.pull(repository, tag=tag))

    async def create_container(self, spec: ContainerSpec) -> str:
        def create():
            ports = {f"{spec.container_port}/tcp": spec.host_port} if spec.host_port else {}
            container = self.client.containers.create(
                spec.image,
                environment=list(spec.env),
                ports=ports,
                tty=True,
                stdin_open=False,
                detach=True,
            )
            return container.id

        container_id = await self._call("create", create)
        logger.debug(f"Created container {container_id[:12]} on {self.host} from {spec.image}")
        return container_id

    async def start_container(self, container_id: str):
        await self._call("start", lambda: self.client.api.start(container_id))

    async def list_containers(self) -> List[ContainerSummary]:
        raw = await self._call("list", lambda: self.client.api.containers())
        return [
            ContainerSummary(
                id=c["Id"],
                image=c.get("Image", ""),
                public_port=_public_port(c.get("Ports")),
            )
            for c in raw or []
        ]

    async def inspect_container(self, container_id: str) -> Dict[str, Any]:
        return await self._call("inspect", lambda: self.client.api.inspect_container(container_id))

    async def stop_container(self, container_id: str, timeout: int = 10):
        logger.info(f"Stopping container {container_id[:12]} on {self.host}")
        await self._call("stop", lambda: self.client.api.stop(container_id, timeout=timeout))

    async def remove_container(self, container_id: str):
        await self._call("remove", lambda: self.client.api.remove_container(container_id))

    async def fetch_logs(self, container_id: str) -> str:
        raw = await self._call(
            "logs",
            lambda: self.client.api.logs(container_id, stdout=True, stderr=True),
        )
        if isinstance(raw, bytes):
            return raw.decode("utf-8", errors="replace")
        return raw or ""

    async def find_container_by_port(self, port: int) -> Optional[ContainerSummary]:
        """Return the running container published on `port`, if any."""
        for container in await self.list_containers():
            if container.public_port == int(port):
                return container
        return None

    def close(self):
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None


class DockerRuntimeFactory:
    """Hands out one DockerRuntime per host, reused across calls."""

    def __init__(self, docker_port: int = DEFAULT_DOCKER_PORT, timeout: int = 60):
        self.docker_port = docker_port
        self.timeout = timeout
        self._runtimes: Dict[str, DockerRuntime] = {}
        self._lock = threading.Lock()

    def __call__(self, host: str) -> DockerRuntime:
        with self._lock:
            runtime = self._runtimes.get(host)
            if runtime is None:
                runtime = DockerRuntime(host, self.docker_port, self.timeout)
                self._runtimes[host] = runtime
            return runtime

    def close(self):
        with self._lock:
            for runtime in self._runtimes.values():
                try:
                    runtime.close()
                except Exception as e:
                    logger.warning(f"Failed to close runtime client for {runtime.host}: {e}")
            self._runtimes.clear()
