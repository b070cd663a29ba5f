"""
Harbormaster Controller Package

This package contains the deployment engine that rolls containerized apps
out across a pool of Docker hosts.

Components:
- RolloutOrchestrator: Per-instance rollouts and whole deployments
- PlacementPlanner: Spreads new instances across hosts
- PortAllocator: Picks free external ports on a host
- HealthChecker: Polls new instances until they answer
- DockerRuntime: Remote Docker daemon client, one per host
- API: FastAPI-based admin interface
"""

from .runtime import DockerRuntime, DockerRuntimeFactory, ContainerSpec, ContainerRuntimeError
from .ports import PortAllocator, NoPortAvailable
from .health import HealthChecker, HealthCheckConfig, HealthStatus
from .placement import PlacementPlanner, NoHostsAvailable
from .orchestrator import (
    RolloutOrchestrator, Rollout, RolloutState, DeploymentResult,
    DeployFailed, HealthCheckExhausted, RollbackFailed, DeploymentIncomplete
)
from .api import app as api_app

__version__ = "1.0.0"

__all__ = [
    "DockerRuntime",
    "DockerRuntimeFactory",
    "ContainerSpec",
    "ContainerRuntimeError",
    "PortAllocator",
    "NoPortAvailable",
    "HealthChecker",
    "HealthCheckConfig",
    "HealthStatus",
    "PlacementPlanner",
    "NoHostsAvailable",
    "RolloutOrchestrator",
    "Rollout",
    "RolloutState",
    "DeploymentResult",
    "DeployFailed",
    "HealthCheckExhausted",
    "RollbackFailed",
    "DeploymentIncomplete",
    "api_app"
]
