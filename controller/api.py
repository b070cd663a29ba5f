import logging
import time
from dataclasses import asdict
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from registry.store import StoreUnavailable
from controller.runtime import ContainerRuntimeError
from controller.ports import NoPortAvailable
from controller.placement import NoHostsAvailable
from controller.orchestrator import DeployFailed, DeploymentIncomplete, RollbackFailed
from controller.utils.models import (
    AppRequest,
    HostRequest,
    EnvRequest,
    DeployRequest,
    DeployResponse,
    DescribeResponse,
)
from controller.utils import lifecycle

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

app = FastAPI(
    title="Harbormaster Controller API",
    description="Multi-host container deployment controller",
    version=VERSION
)


@app.on_event("startup")
async def startup_event():
    """Initialize all components when the API starts."""
    await lifecycle.startup_event()


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources when shutting down."""
    await lifecycle.shutdown_event()


def get_registry():
    registry = lifecycle.get_registry()
    if registry is None:
        raise HTTPException(status_code=503, detail="Controller not initialized")
    return registry


def get_orchestrator():
    orchestrator = lifecycle.get_orchestrator()
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Controller not initialized")
    return orchestrator


# Error mapping

def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


@app.exception_handler(HTTPException)
async def http_error(request: Request, exc: HTTPException):
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    problems = [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]
    return _error(422, "; ".join(problems), detail=jsonable_encoder(exc.errors()))


@app.exception_handler(StoreUnavailable)
async def store_unavailable(request: Request, exc: StoreUnavailable):
    return _error(503, str(exc))


@app.exception_handler(ContainerRuntimeError)
async def runtime_error(request: Request, exc: ContainerRuntimeError):
    return _error(502, str(exc), host=exc.host, operation=exc.operation)


@app.exception_handler(NoHostsAvailable)
async def no_hosts(request: Request, exc: NoHostsAvailable):
    return _error(409, str(exc))


@app.exception_handler(NoPortAvailable)
async def no_port(request: Request, exc: NoPortAvailable):
    return _error(409, str(exc), host=exc.host)


@app.exception_handler(DeployFailed)
async def deploy_failed(request: Request, exc: DeployFailed):
    if isinstance(exc, DeploymentIncomplete):
        return _error(500, str(exc), instances=exc.registered)
    return _error(500, str(exc))


@app.exception_handler(RollbackFailed)
async def rollback_failed(request: Request, exc: RollbackFailed):
    logger.error(f"Rollback failed, operator attention required: {exc}")
    return _error(500, str(exc), fatal=True)


# API Endpoints

@app.get("/describe", response_model=DescribeResponse)
async def describe():
    """Describe every app: instances, envs and running image."""
    description = await get_orchestrator().describe()
    return {"error": False, "description": description}


@app.get("/apps")
async def list_apps():
    return {"error": False, "apps": await get_registry().list_apps()}


@app.post("/apps")
async def add_app(body: AppRequest):
    await get_registry().add_app(body.app)
    return {"error": False}


@app.delete("/apps/{name}")
async def remove_app(name: str):
    await get_registry().remove_app(name)
    return {"error": False}


@app.get("/hosts")
async def list_hosts():
    return {"error": False, "hosts": await get_registry().list_hosts()}


@app.post("/hosts")
async def add_host(body: HostRequest):
    await get_registry().add_host(body.host)
    return {"error": False}


@app.delete("/hosts/{host}")
async def remove_host(host: str):
    await get_registry().remove_host(host)
    return {"error": False}


@app.post("/{name}/deploy", response_model=DeployResponse)
async def deploy(name: str, body: DeployRequest):
    """Roll out `count` instances of `image` and retire the previous generation."""
    config = lifecycle.get_settings()
    count = body.resolved_count(config.default_count, config.max_count)
    result = await get_orchestrator().deploy(name, body.image, count)
    return DeployResponse(
        app=result.app,
        image=result.image,
        instances=result.instances,
        retired=result.retired,
    )


@app.get("/{name}/instances")
async def load_app_instances(name: str):
    return {"error": False, "instances": await get_registry().list_instances(name)}


@app.get("/{name}/history")
async def load_deployments(name: str):
    limit = lifecycle.get_settings().history_limit
    records = await get_registry().list_deployments(name, limit)
    return {"error": False, "history": [asdict(r) for r in records]}


@app.get("/{name}/envs")
async def load_app_envs(name: str):
    return {"error": False, "envs": await get_registry().list_envs(name)}


@app.post("/{name}/envs")
async def add_app_env(name: str, body: EnvRequest):
    await get_registry().add_env(name, body.env)
    return {"error": False}


@app.delete("/{name}/envs/{key}")
async def remove_app_env(name: str, key: str):
    removed = await get_registry().remove_env(name, key)
    return {"error": False, "removed": removed}


@app.get("/{name}/logs")
async def load_app_logs(name: str):
    return {"error": False, "logs": await get_orchestrator().load_app_logs(name)}


@app.post("/{name}/kill")
async def kill_app_instances(name: str):
    killed = await get_orchestrator().kill_app_instances(name)
    return {"error": False, "killed": killed}


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    exporter = lifecycle.get_metrics_exporter()
    return exporter.get_prometheus_metrics() if exporter else ""


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    exporter = lifecycle.get_metrics_exporter()
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": VERSION,
        "deployments": exporter.get_metrics_summary() if exporter else None
    }
