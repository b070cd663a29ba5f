"""
Lifecycle management for the Harbormaster controller.
Builds the components on API startup and releases them on shutdown.
"""
import logging
from typing import Optional

from registry.store import Registry
from controller.config import Settings
from controller.runtime import DockerRuntimeFactory
from controller.health import HealthChecker, HealthCheckConfig
from controller.ports import PortAllocator
from controller.placement import PlacementPlanner
from controller.orchestrator import RolloutOrchestrator
from metrics.exporter import MetricsExporter

logger = logging.getLogger(__name__)

# Components, initialized when starting the API
settings: Optional[Settings] = None
registry: Optional[Registry] = None
runtime_factory: Optional[DockerRuntimeFactory] = None
health_checker: Optional[HealthChecker] = None
orchestrator: Optional[RolloutOrchestrator] = None
metrics_exporter: Optional[MetricsExporter] = None


def get_settings() -> Settings:
    """Get the active settings, loading them from the environment if needed."""
    global settings
    if settings is None:
        settings = Settings.from_env()
    return settings


def get_registry() -> Optional[Registry]:
    return registry


def get_orchestrator() -> Optional[RolloutOrchestrator]:
    return orchestrator


def get_metrics_exporter() -> Optional[MetricsExporter]:
    return metrics_exporter


def build_orchestrator(config: Settings, store: Registry, metrics: Optional[MetricsExporter] = None,
                       factory: Optional[DockerRuntimeFactory] = None) -> RolloutOrchestrator:
    """Assemble an orchestrator and its collaborators from settings."""
    factory = factory or DockerRuntimeFactory(config.docker_port, config.docker_timeout)
    checker = HealthChecker(
        HealthCheckConfig(
            path=config.health_path,
            retries=config.health_retries,
            interval_seconds=config.health_interval_seconds,
            timeout_seconds=config.health_timeout_seconds,
        ),
        metrics=metrics,
    )
    return RolloutOrchestrator(
        registry=store,
        runtime_factory=factory,
        health_checker=checker,
        port_allocator=PortAllocator(factory, config.port_range),
        planner=PlacementPlanner(),
        metrics=metrics,
        container_port=config.container_port,
        max_parallel=config.max_parallel,
    )


async def startup_event():
    """Initialize all components when the API starts."""
    global registry, runtime_factory, health_checker, orchestrator, metrics_exporter

    config = get_settings()
    try:
        logger.info(f"Connecting to registry store at {config.redis_url}")
        registry = Registry.from_url(config.redis_url, config.updates_channel)
        try:
            await registry.ping()
        except Exception as e:
            # Not fatal: every request reports StoreUnavailable until the store is back
            logger.warning(f"Registry store not reachable yet: {e}")

        metrics_exporter = MetricsExporter()
        runtime_factory = DockerRuntimeFactory(config.docker_port, config.docker_timeout)
        orchestrator = build_orchestrator(config, registry, metrics_exporter, runtime_factory)
        health_checker = orchestrator.health_checker
        await health_checker.start()

        logger.info(
            f"Harbormaster controller started (docker port {config.docker_port}, "
            f"container port {config.container_port}, ports {config.port_range_start}-{config.port_range_end - 1})"
        )
    except Exception as e:
        logger.error(f"Failed to start controller: {e}")
        raise


async def shutdown_event():
    """Clean up resources when shutting down."""
    global registry, runtime_factory, health_checker, orchestrator

    if health_checker:
        await health_checker.stop()

    if runtime_factory:
        runtime_factory.close()

    if registry:
        await registry.close()

    registry = None
    runtime_factory = None
    health_checker = None
    orchestrator = None
    logger.info("Harbormaster controller shut down")
