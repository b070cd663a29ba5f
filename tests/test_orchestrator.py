"""
Tests for per-instance rollouts and whole deployments.
"""

from unittest.mock import AsyncMock

import pytest

from registry.store import StoreUnavailable, parse_instance
from controller.health import HealthStatus
from controller.ports import PortAllocator
from controller.placement import NoHostsAvailable
from controller.runtime import ContainerRuntimeError
from controller.orchestrator import (
    RolloutOrchestrator,
    RolloutState,
    DeployFailed,
    HealthCheckExhausted,
    RollbackFailed,
    DeploymentIncomplete,
)
from metrics.exporter import MetricsExporter


@pytest.fixture
def metrics():
    return MetricsExporter()


@pytest.fixture
def orchestrator(registry, runtimes, health, metrics):
    return RolloutOrchestrator(
        registry=registry,
        runtime_factory=runtimes,
        health_checker=health,
        port_allocator=PortAllocator(runtimes, port_range=range(8000, 8010)),
        metrics=metrics,
    )


async def add_hosts(registry, *hosts):
    for host in hosts:
        await registry.add_host(host)


def container_for(runtimes, instance):
    host, port = parse_instance(instance)
    for container in runtimes(host).running():
        if container["port"] == port:
            return container
    return None


def runtime_error(host, operation):
    return ContainerRuntimeError(host, operation, RuntimeError(f"{operation} refused"))


def exhausted() -> HealthStatus:
    return HealthStatus(is_healthy=False, attempts=10)


# ------------------------- Single instance -------------------------

@pytest.mark.asyncio
async def test_deploy_instance_registers_healthy_instance(orchestrator, registry, runtimes):
    await registry.add_env("web", "A=1")

    rollout = await orchestrator.deploy_instance("web", "h1", 8001, "app:v1")

    assert rollout.state == RolloutState.REGISTERED
    assert rollout.history == [
        RolloutState.PENDING,
        RolloutState.IMAGE_PULLED,
        RolloutState.STARTED,
        RolloutState.HEALTH_CHECKED,
        RolloutState.REGISTERED,
    ]
    assert await registry.list_instances("web") == ["h1:8001"]
    container = container_for(runtimes, "h1:8001")
    assert container["image"] == "app:v1"
    assert container["env"] == ["A=1"]
    assert runtimes("h1").pulled == ["app:v1"]


@pytest.mark.asyncio
async def test_pull_failure_leaves_nothing_behind(orchestrator, registry, runtimes):
    runtimes("h1").failures["pull"] = runtime_error("h1", "pull")

    with pytest.raises(ContainerRuntimeError):
        await orchestrator.deploy_instance("web", "h1", 8001, "app:v1")

    assert runtimes("h1").containers == {}
    assert await registry.list_instances("web") == []


@pytest.mark.asyncio
async def test_start_failure_removes_created_container(orchestrator, registry, runtimes):
    runtimes("h1").failures["start"] = runtime_error("h1", "start")

    with pytest.raises(ContainerRuntimeError):
        await orchestrator.deploy_instance("web", "h1", 8001, "app:v1")

    assert runtimes("h1").containers == {}
    assert ("stop", "h1") in runtimes("h1").calls


@pytest.mark.asyncio
async def test_unresponsive_instance_is_rolled_back(orchestrator, registry, runtimes, health, metrics):
    health.statuses["h1"] = exhausted()

    with pytest.raises(HealthCheckExhausted):
        await orchestrator.deploy_instance("web", "h1", 8001, "app:v1")

    assert runtimes("h1").running() == []
    assert await registry.list_instances("web") == []
    text = metrics.get_prometheus_metrics()
    assert 'harbormaster_instance_rollouts_total{app="web",outcome="rolled_back"} 1.0' in text


@pytest.mark.asyncio
async def test_error_status_is_deploy_failed(orchestrator, health):
    health.statuses["h1"] = HealthStatus(is_healthy=False, attempts=1, status_code=500)

    with pytest.raises(DeployFailed) as exc_info:
        await orchestrator.deploy_instance("web", "h1", 8001, "app:v1")

    assert not isinstance(exc_info.value, HealthCheckExhausted)
    assert "500" in str(exc_info.value)


@pytest.mark.asyncio
async def test_registration_failure_undoes_registration(orchestrator, registry, runtimes, monkeypatch):
    async def add_then_fail(app, instance):
        await registry.redis.sadd(f"{app}:instances", instance)
        raise StoreUnavailable("sadd web:instances", ConnectionError("reply lost"))

    monkeypatch.setattr(registry, "add_instance", add_then_fail)

    with pytest.raises(StoreUnavailable):
        await orchestrator.deploy_instance("web", "h1", 8001, "app:v1")

    assert await registry.list_instances("web") == []
    assert runtimes("h1").containers == {}


@pytest.mark.asyncio
async def test_failed_rollback_raises_rollback_failed(orchestrator, registry, runtimes, health, metrics):
    health.statuses["h1"] = exhausted()
    runtimes("h1").failures["stop"] = runtime_error("h1", "stop")

    with pytest.raises(RollbackFailed) as exc_info:
        await orchestrator.deploy_instance("web", "h1", 8001, "app:v1")

    assert isinstance(exc_info.value.original, HealthCheckExhausted)
    assert not isinstance(exc_info.value, DeployFailed)
    text = metrics.get_prometheus_metrics()
    assert 'harbormaster_instance_rollouts_total{app="web",outcome="rollback_failed"} 1.0' in text


@pytest.mark.asyncio
async def test_container_removal_failure_is_not_fatal(orchestrator, registry, runtimes, health):
    health.statuses["h1"] = exhausted()
    runtimes("h1").failures["remove"] = runtime_error("h1", "remove")

    with pytest.raises(HealthCheckExhausted):
        await orchestrator.deploy_instance("web", "h1", 8001, "app:v1")

    assert runtimes("h1").running() == []


# ------------------------- Whole deployment -------------------------

@pytest.mark.asyncio
async def test_first_deploy_spreads_and_records_history(orchestrator, registry, runtimes, metrics):
    await add_hosts(registry, "h1", "h2")
    assert await registry.list_deployments("web") == []

    result = await orchestrator.deploy("web", "app:v1", 2)

    instances = await registry.list_instances("web")
    assert sorted(result.instances) == instances
    assert sorted(parse_instance(i)[0] for i in instances) == ["h1", "h2"]
    assert result.retired == []
    history = await registry.list_deployments("web")
    assert [(r.image, r.count) for r in history] == [("app:v1", 2)]
    assert result.record == history[0]
    assert 'harbormaster_deployments_total{app="web",outcome="succeeded"} 1.0' in metrics.get_prometheus_metrics()


@pytest.mark.asyncio
async def test_redeploy_replaces_previous_generation(orchestrator, registry, runtimes):
    await add_hosts(registry, "h1", "h2")
    first = await orchestrator.deploy("web", "app:v1", 2)

    second = await orchestrator.deploy("web", "app:v2", 2)

    instances = await registry.list_instances("web")
    assert len(instances) == 2
    assert set(instances) == set(second.instances)
    assert sorted(second.retired) == sorted(first.instances)
    for instance in instances:
        assert container_for(runtimes, instance)["image"] == "app:v2"
    images = [c["image"] for host in ("h1", "h2") for c in runtimes(host).containers.values()]
    assert sorted(images) == ["app:v2", "app:v2"]
    assert [r.image for r in await registry.list_deployments("web")] == ["app:v1", "app:v2"]


@pytest.mark.asyncio
async def test_several_instances_on_one_host_get_distinct_ports(orchestrator, registry):
    await add_hosts(registry, "h1")

    result = await orchestrator.deploy("web", "app:v1", 3)

    ports = {parse_instance(i)[1] for i in result.instances}
    assert len(ports) == 3
    assert all(8000 <= p < 8010 for p in ports)
    assert orchestrator.port_allocator.reserved("h1") == set()


@pytest.mark.asyncio
async def test_new_ports_avoid_running_containers(orchestrator, registry, runtimes):
    await add_hosts(registry, "h1")
    for port in range(8000, 8008):
        runtimes("h1").run("other:latest", port)

    result = await orchestrator.deploy("web", "app:v1", 2)

    assert sorted(parse_instance(i)[1] for i in result.instances) == [8008, 8009]


@pytest.mark.asyncio
async def test_partial_failure_keeps_previous_generation(orchestrator, registry, runtimes, health, metrics):
    await add_hosts(registry, "h1", "h2")
    first = await orchestrator.deploy("web", "app:v1", 2)
    health.statuses["h2"] = exhausted()

    with pytest.raises(DeploymentIncomplete) as exc_info:
        await orchestrator.deploy("web", "app:v2", 2)

    error = exc_info.value
    assert error.requested == 2
    assert len(error.registered) == 1
    assert parse_instance(error.registered[0])[0] == "h1"
    assert isinstance(error.failures[0][1], HealthCheckExhausted)
    instances = await registry.list_instances("web")
    assert set(first.instances) <= set(instances)
    assert len(await registry.list_deployments("web")) == 1
    assert 'harbormaster_deployments_total{app="web",outcome="failed"} 1.0' in metrics.get_prometheus_metrics()


@pytest.mark.asyncio
async def test_rollback_failure_fails_whole_deployment(orchestrator, registry, runtimes, health):
    await add_hosts(registry, "h1", "h2")
    health.statuses["h1"] = exhausted()
    runtimes("h1").failures["stop"] = runtime_error("h1", "stop")

    with pytest.raises(RollbackFailed):
        await orchestrator.deploy("web", "app:v1", 2)

    assert await registry.list_deployments("web") == []


@pytest.mark.asyncio
async def test_deploy_without_hosts(orchestrator):
    with pytest.raises(NoHostsAvailable):
        await orchestrator.deploy("web", "app:v1", 1)


@pytest.mark.asyncio
async def test_deploy_rejects_zero_count(orchestrator):
    with pytest.raises(ValueError):
        await orchestrator.deploy("web", "app:v1", 0)


@pytest.mark.asyncio
async def test_history_failure_does_not_fail_deploy(orchestrator, registry, monkeypatch):
    await add_hosts(registry, "h1")
    monkeypatch.setattr(
        registry, "append_deployment",
        AsyncMock(side_effect=StoreUnavailable("rpush deployments:web", ConnectionError("down"))),
    )

    result = await orchestrator.deploy("web", "app:v1", 1)

    assert result.record is None
    assert len(await registry.list_instances("web")) == 1


@pytest.mark.asyncio
async def test_teardown_failure_is_reported_after_all_attempts(orchestrator, registry, runtimes):
    await add_hosts(registry, "h1", "h2")
    runtimes("h1").run("app:v1", 8005)
    runtimes("h2").run("app:v1", 8005)
    await registry.add_instance("web", "h1:8005")
    await registry.add_instance("web", "h2:8005")
    runtimes("h1").failures["stop"] = runtime_error("h1", "stop")

    with pytest.raises(ContainerRuntimeError):
        await orchestrator.deploy("web", "app:v2", 2)

    instances = await registry.list_instances("web")
    assert "h2:8005" not in instances
    assert "h1:8005" in instances
    assert len(await registry.list_deployments("web")) == 1


@pytest.mark.asyncio
async def test_bounded_parallelism(registry, runtimes, health):
    orchestrator = RolloutOrchestrator(registry, runtimes, health, max_parallel=1)
    await add_hosts(registry, "h1", "h2")

    result = await orchestrator.deploy("web", "app:v1", 4)

    assert len(result.instances) == 4


@pytest.mark.asyncio
async def test_container_distribution(orchestrator, registry, runtimes):
    await add_hosts(registry, "h1", "h2")
    runtimes("h1").run("a:1", 8000)
    runtimes("h1").run("b:1", 8001)

    assert await orchestrator.container_distribution() == {"h1": 2, "h2": 0}


# ------------------------- Teardown and views -------------------------

@pytest.mark.asyncio
async def test_kill_app_instances_is_idempotent(orchestrator, registry, runtimes):
    await add_hosts(registry, "h1", "h2")
    result = await orchestrator.deploy("web", "app:v1", 2)

    killed = await orchestrator.kill_app_instances("web")

    assert sorted(killed) == sorted(result.instances)
    assert await registry.list_instances("web") == []
    assert runtimes("h1").running() == [] and runtimes("h2").running() == []
    assert await orchestrator.kill_app_instances("web") == []


@pytest.mark.asyncio
async def test_kill_instance_without_container_removes_record(orchestrator, registry):
    await registry.add_instance("web", "h1:8005")

    await orchestrator.kill_app_instance("web", "h1", 8005)

    assert await registry.list_instances("web") == []


@pytest.mark.asyncio
async def test_load_app_logs_skips_missing_containers(orchestrator, registry, runtimes):
    runtimes("h1").run("app:v1", 8001, logs="hello\n")
    await registry.add_instance("web", "h1:8001")
    await registry.add_instance("web", "h1:8002")

    logs = await orchestrator.load_app_logs("web")

    assert logs == {"h1:8001": "hello\n"}


@pytest.mark.asyncio
async def test_describe(orchestrator, registry):
    await add_hosts(registry, "h1")
    await registry.add_app("web")
    await registry.add_app("idle")
    await registry.add_env("web", "A=1")
    result = await orchestrator.deploy("web", "app:v1", 1)

    description = await orchestrator.describe()

    assert description == {
        "idle": {"instances": [], "envs": [], "image": None},
        "web": {"instances": result.instances, "envs": ["A=1"], "image": "app:v1"},
    }
