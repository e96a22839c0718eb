"""FastAPI REST API for connector configuration and runtime status."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from connector_control.commands import ConnectorCommandService
from connector_control.config import KAFKA_CONNECT_URL, LOG_LEVEL, REGISTRY_URL
from connector_control.config_resolver import ConfigResolver
from connector_control.database.session import SessionLocal, check_db_connection, get_db
from connector_control.exceptions import (
    CommandRejected,
    ConnectorControlError,
    NotFoundError,
    ValidationError,
)
from connector_control.kafka_connect_client import KafkaConnectClient
from connector_control.monitor import PipelineMonitor
from connector_control.pending_changes import PendingChangeManager
from connector_control.progress_tracker import ProgressTracker
from connector_control.registry import ConnectorRegistry, build_registry
from connector_control.repository import PipelineRepository
from connector_control.scheduler import ScheduledTaskRegistry
from connector_control.table_discovery import TableDiscoveryClient

logger = logging.getLogger(__name__)

router = APIRouter()


# Pydantic models for request bodies

class CreateVersionRequest(BaseModel):
    """Registry version creation request."""
    kind: str = Field(..., description="'source' or 'sink'")
    connector_class: str = Field(..., description="Kafka Connect connector class")
    config: Dict[str, Any] = Field(..., description="Full connector configuration")
    created_by: Optional[str] = None


class StageChangeRequest(BaseModel):
    """Pending configuration edit."""
    config: Dict[str, Any]
    updated_by: Optional[str] = None


class DeployPendingRequest(BaseModel):
    deployed_by: Optional[str] = None
    apply_to_connect: bool = Field(default=True, description="Push the config to Kafka Connect before versioning it")


def _ok(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": data}


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    content = {"success": False, "error": message}
    content.update({key: value for key, value in extra.items() if value is not None})
    return JSONResponse(status_code=status_code, content=content)


# Dependencies

def get_registry(request: Request) -> ConnectorRegistry:
    return request.app.state.registry


def get_monitor(request: Request) -> PipelineMonitor:
    return request.app.state.monitor


def get_repository(db: Session = Depends(get_db)) -> PipelineRepository:
    return PipelineRepository(db)


def get_pending_manager(
    repository: PipelineRepository = Depends(get_repository),
    registry: ConnectorRegistry = Depends(get_registry)
) -> PendingChangeManager:
    return PendingChangeManager(repository, registry)


def get_command_service(
    request: Request,
    pending_manager: PendingChangeManager = Depends(get_pending_manager),
    monitor: PipelineMonitor = Depends(get_monitor)
) -> ConnectorCommandService:
    return ConnectorCommandService(
        request.app.state.kafka_client,
        monitor.burst_refresher,
        pending_manager,
        on_deployed=monitor.reload,
    )


# Health

@router.get("/api/health")
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint."""
    database = "connected" if check_db_connection(db.get_bind()) else "unavailable"
    return {"success": True, "status": "healthy", "service": "connector-control", "database": database}


# Registry

@router.post("/api/registry/connectors/{name}/versions")
async def create_version(
    name: str,
    body: CreateVersionRequest,
    registry: ConnectorRegistry = Depends(get_registry)
):
    version = await asyncio.to_thread(
        registry.create_version, name, body.kind, body.connector_class, body.config, body.created_by
    )
    return _ok(version.to_dict())


@router.get("/api/registry/connectors/{name}/versions")
async def list_versions(name: str, registry: ConnectorRegistry = Depends(get_registry)):
    versions = await asyncio.to_thread(registry.list_versions, name)
    return _ok([version.to_dict() for version in versions])


@router.post("/api/registry/connectors/{name}/versions/{version}/activate")
async def activate_version(name: str, version: int, registry: ConnectorRegistry = Depends(get_registry)):
    activated = await asyncio.to_thread(registry.activate_version, name, version)
    return _ok(activated.to_dict())


# Connector commands

@router.post("/api/connectors/{name}/pause")
async def pause_connector(
    name: str,
    repository: PipelineRepository = Depends(get_repository),
    service: ConnectorCommandService = Depends(get_command_service),
    monitor: PipelineMonitor = Depends(get_monitor)
):
    connector = repository.get_connector_by_name(name)
    await monitor.track(connector.pipeline_id)
    await service.pause_connector(connector.pipeline_id, name)
    return _ok(monitor.snapshot(connector.pipeline_id))


@router.post("/api/connectors/{name}/resume")
async def resume_connector(
    name: str,
    repository: PipelineRepository = Depends(get_repository),
    service: ConnectorCommandService = Depends(get_command_service),
    monitor: PipelineMonitor = Depends(get_monitor)
):
    connector = repository.get_connector_by_name(name)
    await monitor.track(connector.pipeline_id)
    await service.resume_connector(connector.pipeline_id, name)
    return _ok(monitor.snapshot(connector.pipeline_id))


@router.post("/api/connectors/{name}/tasks/{task_number}/restart")
async def restart_task(
    name: str,
    task_number: int,
    repository: PipelineRepository = Depends(get_repository),
    service: ConnectorCommandService = Depends(get_command_service),
    monitor: PipelineMonitor = Depends(get_monitor)
):
    connector = repository.get_connector_by_name(name)
    await monitor.track(connector.pipeline_id)
    await service.restart_task(connector.pipeline_id, name, task_number)
    return _ok(monitor.snapshot(connector.pipeline_id))


@router.post("/api/connectors/{name}/restart")
async def restart_connector(
    name: str,
    include_tasks: bool = True,
    only_failed: bool = False,
    repository: PipelineRepository = Depends(get_repository),
    service: ConnectorCommandService = Depends(get_command_service),
    monitor: PipelineMonitor = Depends(get_monitor)
):
    connector = repository.get_connector_by_name(name)
    await monitor.track(connector.pipeline_id)
    await service.restart_connector(connector.pipeline_id, name, include_tasks=include_tasks, only_failed=only_failed)
    return _ok(monitor.snapshot(connector.pipeline_id))


# Pending changes

@router.post("/api/connectors/{connector_id}/pending")
async def stage_pending(
    connector_id: str,
    body: StageChangeRequest,
    manager: PendingChangeManager = Depends(get_pending_manager)
):
    connector = manager.stage_change(connector_id, body.config, updated_by=body.updated_by)
    return _ok(connector.to_dict())


@router.get("/api/connectors/{connector_id}/pending/diff")
async def pending_diff(connector_id: str, manager: PendingChangeManager = Depends(get_pending_manager)):
    changes = await asyncio.to_thread(manager.get_diff, connector_id)
    return _ok([change.to_dict() for change in changes])


@router.post("/api/connectors/{connector_id}/deploy-pending")
async def deploy_pending(
    connector_id: str,
    body: Optional[DeployPendingRequest] = None,
    repository: PipelineRepository = Depends(get_repository),
    service: ConnectorCommandService = Depends(get_command_service),
    monitor: PipelineMonitor = Depends(get_monitor)
):
    body = body or DeployPendingRequest()
    connector = repository.get_connector(connector_id)
    await monitor.track(connector.pipeline_id)
    result = await service.deploy_pending(
        connector.pipeline_id,
        connector_id,
        deployed_by=body.deployed_by,
        apply_to_connect=body.apply_to_connect,
    )
    return _ok(result.to_dict())


@router.post("/api/connectors/{connector_id}/dismiss-pending")
async def dismiss_pending(connector_id: str, manager: PendingChangeManager = Depends(get_pending_manager)):
    connector = manager.dismiss(connector_id)
    return _ok(connector.to_dict())


@router.get("/api/connectors/{connector_id}/config")
async def connector_config(
    connector_id: str,
    repository: PipelineRepository = Depends(get_repository),
    registry: ConnectorRegistry = Depends(get_registry)
):
    connector = repository.get_connector(connector_id)
    resolved = await asyncio.to_thread(ConfigResolver(registry).resolve, connector)
    return _ok(resolved.to_dict())


# Pipelines

@router.get("/api/pipelines")
async def list_pipelines(repository: PipelineRepository = Depends(get_repository)):
    return _ok([pipeline.to_dict() for pipeline in repository.list_pipelines()])


@router.get("/api/pipelines/{pipeline_id}/status")
async def pipeline_status(
    pipeline_id: str,
    refresh: bool = False,
    repository: PipelineRepository = Depends(get_repository),
    monitor: PipelineMonitor = Depends(get_monitor)
):
    repository.get_pipeline(pipeline_id)
    view = monitor.poller.view(pipeline_id)
    if view is None:
        await monitor.track(pipeline_id)
        refresh = True
    if refresh:
        await monitor.poller.refresh(pipeline_id, explicit=True)
    return _ok(monitor.snapshot(pipeline_id))


@router.post("/api/pipelines/{pipeline_id}/monitor")
async def open_monitor(
    pipeline_id: str,
    repository: PipelineRepository = Depends(get_repository),
    monitor: PipelineMonitor = Depends(get_monitor)
):
    repository.get_pipeline(pipeline_id)
    await monitor.open(pipeline_id)
    return _ok(monitor.snapshot(pipeline_id))


@router.delete("/api/pipelines/{pipeline_id}/monitor")
async def close_monitor(pipeline_id: str, monitor: PipelineMonitor = Depends(get_monitor)):
    stopped = monitor.close(pipeline_id)
    return _ok({"pipeline_id": pipeline_id, "stopped_jobs": stopped})


@router.get("/api/pipelines/{pipeline_id}/progress")
async def pipeline_progress(
    pipeline_id: str,
    request: Request,
    capture: bool = False,
    repository: PipelineRepository = Depends(get_repository)
):
    tracker = ProgressTracker(repository, request.app.state.kafka_client)
    if capture:
        milestones = await tracker.capture(pipeline_id)
    else:
        repository.get_pipeline(pipeline_id)
        milestones = tracker.get_progress(pipeline_id)
    return _ok({
        "milestones": [milestone.to_dict() for milestone in milestones],
        "progress": {milestone.name: milestone.to_dict() for milestone in milestones},
    })


# Exception handlers

async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(400, str(exc), field=exc.field)


async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, str(exc))


async def command_rejected_handler(request: Request, exc: CommandRejected):
    # Client-side rejections from Kafka Connect are conflicts; anything else is a gateway failure
    upstream_status = exc.details.get("status_code")
    status_code = 409 if upstream_status and 400 <= upstream_status < 500 else 502
    return _error(status_code, str(exc), command=exc.command, connector_name=exc.connector_name)


async def connector_control_error_handler(request: Request, exc: ConnectorControlError):
    logger.error(f"Request {request.method} {request.url.path} failed: {exc}")
    return _error(500, str(exc) or type(exc).__name__)


async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error(500, str(exc) or "Internal server error")


def create_app(
    session_factory: Callable = SessionLocal,
    registry: Optional[ConnectorRegistry] = None,
    kafka_client=None,
    discovery_client: Optional[TableDiscoveryClient] = None,
    scheduler: Optional[ScheduledTaskRegistry] = None
) -> FastAPI:
    """Build the application and its long-lived collaborators."""
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting connector control API")
        yield
        logger.info("Shutting down connector control API...")
        app.state.monitor.close_all()

    app = FastAPI(title="Connector Control API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.registry = registry or build_registry(REGISTRY_URL, session_factory)
    app.state.kafka_client = kafka_client or KafkaConnectClient(base_url=KAFKA_CONNECT_URL)
    app.state.monitor = PipelineMonitor(
        session_factory,
        app.state.registry,
        app.state.kafka_client,
        discovery_client=discovery_client,
        scheduler=scheduler,
    )

    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(CommandRejected, command_rejected_handler)
    app.add_exception_handler(ConnectorControlError, connector_control_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(router)
    return app


def run(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    uvicorn.run(app, host=host, port=port)


# Served with: uvicorn connector_control.api:app
app = create_app()
