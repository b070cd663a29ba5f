"""
Rollout orchestration across the host pool.

Drives the per-instance rollout (pull, start, health check, register, with
rollback on failure) and the whole-deployment protocol: place new instances,
roll them out concurrently, and retire the previous generation only once every
new instance is registered.
"""

import asyncio
import contextlib
import time
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

from registry.store import Registry, DeploymentRecord, format_instance, parse_instance
from .runtime import DockerRuntime, ContainerSpec, DEFAULT_CONTAINER_PORT
from .health import HealthChecker
from .placement import PlacementPlanner
from .ports import PortAllocator

logger = logging.getLogger(__name__)


class RolloutState(str, Enum):
    PENDING = "pending"
    IMAGE_PULLED = "image_pulled"
    STARTED = "started"
    HEALTH_CHECKED = "health_checked"
    REGISTERED = "registered"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


class DeployFailed(Exception):
    """An instance did not become healthy."""


class HealthCheckExhausted(DeployFailed):
    """No health response before the retries ran out."""


class RollbackFailed(Exception):
    """Undoing a failed rollout failed; registry and runtime may disagree."""

    def __init__(self, message: str, original: Optional[BaseException] = None):
        self.original = original
        super().__init__(message)


class DeploymentIncomplete(DeployFailed):
    """Some planned instances of a deployment failed and were rolled back."""

    def __init__(self, app: str, requested: int, registered: List[str],
                 failures: List[Tuple[str, BaseException]]):
        self.app = app
        self.requested = requested
        self.registered = registered
        self.failures = failures
        super().__init__(
            f"Deployment of {app} reached {len(registered)}/{requested} instances; "
            f"{len(failures)} failed and were rolled back, previous generation left running"
        )


@dataclass
class Rollout:
    """State of one instance rollout."""
    app: str
    host: str
    port: int
    image: str
    state: RolloutState = RolloutState.PENDING
    container_id: Optional[str] = None
    history: List[RolloutState] = field(default_factory=lambda: [RolloutState.PENDING])

    @property
    def instance(self) -> str:
        return format_instance(self.host, self.port)

    def advance(self, state: RolloutState):
        logger.debug(f"Rollout {self.app}@{self.instance}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def reached(self, state: RolloutState) -> bool:
        return state in self.history


@dataclass
class DeploymentResult:
    app: str
    image: str
    requested: int
    instances: List[str]
    retired: List[str]
    record: Optional[DeploymentRecord] = None


class RolloutOrchestrator:
    def __init__(self,
                 registry: Registry,
                 runtime_factory: Callable[[str], DockerRuntime],
                 health_checker: HealthChecker,
                 port_allocator: Optional[PortAllocator] = None,
                 planner: Optional[PlacementPlanner] = None,
                 metrics=None,
                 container_port: int = DEFAULT_CONTAINER_PORT,
                 max_parallel: int = 0):
        self.registry = registry
        self.runtime_factory = runtime_factory
        self.health_checker = health_checker
        self.port_allocator = port_allocator or PortAllocator(runtime_factory)
        self.planner = planner or PlacementPlanner()
        self.metrics = metrics
        self.container_port = container_port
        self._semaphore = asyncio.Semaphore(max_parallel) if max_parallel else None

    def _slot(self):
        return self._semaphore or contextlib.nullcontext()

    # ------------------------- Per-instance rollout -------------------------
    async def deploy_instance(self, app: str, host: str, port: int, image: str) -> Rollout:
        """Bring one instance at host:port to a registered state or roll it back.

        On failure the rollout is undone and the original error re-raised; if
        the undo itself fails, RollbackFailed is raised instead.
        """
        rollout = Rollout(app=app, host=host, port=port, image=image)
        runtime = self.runtime_factory(host)
        started_at = time.monotonic()

        try:
            logger.info(f"Pulling {image} on {host} for {app}")
            await runtime.pull_image(image)
            rollout.advance(RolloutState.IMAGE_PULLED)

            envs = await self.registry.list_envs(app)

            logger.info(f"Starting {app} container at {rollout.instance}")
            spec = ContainerSpec(image=image, env=envs, container_port=self.container_port, host_port=port)
            rollout.container_id = await runtime.create_container(spec)
            await runtime.start_container(rollout.container_id)
            rollout.advance(RolloutState.STARTED)

            logger.info(f"Checking health of {rollout.instance}")
            status = await self.health_checker.probe(host, port)
            if not status.is_healthy:
                if status.exhausted:
                    raise HealthCheckExhausted(
                        f"{app} at {rollout.instance} gave no health response after {status.attempts} attempts"
                    )
                raise DeployFailed(f"{app} at {rollout.instance} answered health check with {status.status_code}")
            rollout.advance(RolloutState.HEALTH_CHECKED)

            logger.info(f"Adding {rollout.instance} to router for {app}")
            await self.registry.add_instance(app, rollout.instance)
            rollout.advance(RolloutState.REGISTERED)

        except Exception as e:
            logger.warning(f"Deploy of {app} at {rollout.instance} failed at {rollout.state.value}: {e}. Rolling back.")
            try:
                await self._rollback(rollout, runtime, e)
            except RollbackFailed:
                self._record_rollout(app, "rollback_failed", started_at)
                raise
            self._record_rollout(app, "rolled_back", started_at)
            raise

        self._record_rollout(app, "registered", started_at)
        return rollout

    async def _rollback(self, rollout: Rollout, runtime: DockerRuntime, error: Exception):
        rollout.advance(RolloutState.ROLLING_BACK)
        try:
            if rollout.container_id:
                await runtime.stop_container(rollout.container_id)
                await self._discard_container(runtime, rollout.container_id)
            # Registration may have been applied even if its reply was lost
            if rollout.reached(RolloutState.HEALTH_CHECKED):
                await self.registry.remove_instance(rollout.app, rollout.instance)
        except Exception as rollback_error:
            logger.error(
                f"Rollback of {rollout.app} at {rollout.instance} failed: {rollback_error}. "
                f"System may be in an inconsistent state."
            )
            raise RollbackFailed(
                f"Rollback of {rollout.app} at {rollout.instance} failed after '{error}': {rollback_error}",
                original=error,
            ) from rollback_error
        rollout.advance(RolloutState.ROLLED_BACK)
        logger.info(f"Rolled back {rollout.app} at {rollout.instance}")

    async def _discard_container(self, runtime: DockerRuntime, container_id: str):
        """Remove a stopped container; failures are logged only."""
        try:
            await runtime.remove_container(container_id)
        except Exception as e:
            logger.error(f"Failed to remove stopped container {container_id[:12]} on {runtime.host}: {e}")

    def _record_rollout(self, app: str, outcome: str, started_at: float):
        if self.metrics:
            self.metrics.record_rollout(app, outcome, time.monotonic() - started_at)

    # ------------------------- Whole deployment -------------------------
    async def container_distribution(self) -> Dict[str, int]:
        """Count running containers on every registered host."""
        hosts = await self.registry.list_hosts()
        counts = await asyncio.gather(
            *(self.runtime_factory(host).list_containers() for host in hosts)
        )
        return {host: len(containers) for host, containers in zip(hosts, counts)}

    async def _launch(self, app: str, host: str, image: str) -> Rollout:
        async with self._slot():
            port = await self.port_allocator.find_available_port(host)
            try:
                return await self.deploy_instance(app, host, port, image)
            finally:
                self.port_allocator.release(host, port)

    async def deploy(self, app: str, image: str, count: int) -> DeploymentResult:
        """Replace the app's instance set with `count` instances of `image`."""
        if count < 1:
            raise ValueError("count must be >= 1")

        previous = await self.registry.list_instances(app)
        distribution = await self.container_distribution()
        launches = self.planner.plan(distribution, count)
        targets = [host for host, n in launches.items() for _ in range(n)]

        logger.info(f"Deploying {image} for {app}: {count} instance(s) {launches}, previous generation {previous}")
        results = await asyncio.gather(
            *(self._launch(app, host, image) for host in targets),
            return_exceptions=True,
        )

        registered: List[str] = []
        failures: List[Tuple[str, BaseException]] = []
        for host, result in zip(targets, results):
            if isinstance(result, BaseException):
                failures.append((host, result))
            else:
                registered.append(result.instance)

        if failures:
            for host, error in failures:
                logger.error(f"Instance of {app} on {host} failed: {error}")
            fatal = [error for _, error in failures if isinstance(error, RollbackFailed)]
            if fatal:
                self._record_deployment(app, "rollback_failed", image, count)
                raise RollbackFailed(
                    f"Deployment of {app} failed and {len(fatal)} rollback(s) failed; "
                    f"manual reconciliation required",
                    original=fatal[0],
                )
            self._record_deployment(app, "failed", image, count)
            raise DeploymentIncomplete(app, count, registered, failures)

        record = None
        try:
            record = await self.registry.append_deployment(app, image, count)
        except Exception as e:
            logger.error(f"Failed to record deployment of {image} for {app}: {e}")

        # A dead container's port can be reused by the new generation
        current = set(registered)
        stale = [instance for instance in previous if instance not in current]
        logger.info(f"All {count} instance(s) of {app} live, retiring {len(stale)} previous instance(s)")
        retired = await self._kill_instances(app, stale)
        if self.metrics:
            self.metrics.record_retired(app, len(retired))

        self._record_deployment(app, "succeeded", image, count)
        return DeploymentResult(
            app=app,
            image=image,
            requested=count,
            instances=sorted(registered),
            retired=retired,
            record=record,
        )

    def _record_deployment(self, app: str, outcome: str, image: str, count: int):
        if self.metrics:
            self.metrics.record_deployment(app, outcome, image, count)

    # ------------------------- Teardown -------------------------
    async def kill_app_instance(self, app: str, host: str, port: int):
        """Stop the container published on host:port and drop the instance record."""
        logger.info(f"Killing {app} instance at {host}:{port}")
        runtime = self.runtime_factory(host)
        container = await runtime.find_container_by_port(port)
        if container:
            await runtime.stop_container(container.id)
            await self._discard_container(runtime, container.id)
        else:
            logger.info(f"No running container on {host}:{port}, removing record only")
        await self.registry.remove_instance(app, format_instance(host, port))

    async def _kill_instances(self, app: str, instances: List[str]) -> List[str]:
        """Tear down instances concurrently; re-raise the first failure after all finish."""
        results = await asyncio.gather(
            *(self.kill_app_instance(app, *parse_instance(instance)) for instance in instances),
            return_exceptions=True,
        )
        killed = []
        errors = []
        for instance, result in zip(instances, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to tear down {app} instance {instance}: {result}")
                errors.append(result)
            else:
                killed.append(instance)
        if errors:
            raise errors[0]
        return killed

    async def kill_app_instances(self, app: str) -> List[str]:
        """Tear down every registered instance of `app`. A no-op when there are none."""
        instances = await self.registry.list_instances(app)
        if not instances:
            return []
        return await self._kill_instances(app, instances)

    # ------------------------- Read-only views -------------------------
    async def load_app_logs(self, app: str) -> Dict[str, str]:
        instances = await self.registry.list_instances(app)

        async def logs_for(instance: str) -> Optional[str]:
            host, port = parse_instance(instance)
            runtime = self.runtime_factory(host)
            container = await runtime.find_container_by_port(port)
            if container is None:
                logger.warning(f"No running container found for {app} instance {instance}")
                return None
            logger.info(f"Loading logs for {instance}")
            return await runtime.fetch_logs(container.id)

        results = await asyncio.gather(*(logs_for(instance) for instance in instances))
        return {
            instance: text
            for instance, text in zip(instances, results)
            if text is not None
        }

    async def _describe_app(self, app: str) -> Dict:
        description = await self.registry.snapshot(app)
        description["image"] = None
        if description["instances"]:
            host, port = parse_instance(description["instances"][0])
            container = await self.runtime_factory(host).find_container_by_port(port)
            if container:
                description["image"] = container.image
        return description

    async def describe(self) -> Dict[str, Dict]:
        """Snapshot of every app: instances, envs and the running image."""
        apps = await self.registry.list_apps()
        descriptions = await asyncio.gather(*(self._describe_app(app) for app in apps))
        return dict(zip(apps, descriptions))
