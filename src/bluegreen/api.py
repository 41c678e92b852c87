"""
HTTP API for the deployment controller.

A thin FastAPI layer over ``BlueGreenService``: payload validation and state
rules live in the core, this module maps results and errors to HTTP. The
``MonitoringMiddleware`` turns every request into a health-check sample for
the deployment named in the ``X-Deployment-ID`` header.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from . import __version__
from .config import BlueGreenSettings, load_settings
from .exceptions import BlueGreenError, InvariantViolation, NotFoundError, ValidationError
from .logging import setup_logging
from .models import (
    Deployment,
    HealthCheckStatus,
    LogLevel,
    TrafficSplitUpdate,
    parse_payload,
    parse_timestamp,
)
from .service import BlueGreenService

logger = logging.getLogger(__name__)

DEPLOYMENT_HEADER = "X-Deployment-ID"
UNKNOWN_DEPLOYMENT = "unknown"


class MonitoringMiddleware(BaseHTTPMiddleware):
    """Record latency and outcome of each request as a health-check sample."""

    def __init__(self, app, service: BlueGreenService, exclude_paths: tuple[str, ...] = ()):
        super().__init__(app)
        self.service = service
        self.exclude_paths = exclude_paths or ("/health", "/docs", "/openapi.json", "/redoc")

    def is_excluded(self, path: str) -> bool:
        """True for an excluded path itself or anything beneath it."""
        prefixes = (p.rstrip("/") for p in self.exclude_paths)
        return any(path == p or path.startswith(p + "/") for p in prefixes)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_path = request.url.path
        if self.is_excluded(request_path):
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        sample = {
            "deploymentId": request.headers.get(DEPLOYMENT_HEADER) or UNKNOWN_DEPLOYMENT,
            "endpoint": request_path,
            "status": (
                HealthCheckStatus.FAILING if response.status_code >= 400 else HealthCheckStatus.PASSING
            ),
            "responseTime": round(duration_ms, 3),
        }
        try:
            await self.service.ingest_health_check(sample)
        except BlueGreenError as e:
            logger.warning(f"Dropped request sample for {request_path}: {e.message}")
        return response


def get_service(request: Request) -> BlueGreenService:
    return request.app.state.service


def _deployment_summary(deployment: Deployment) -> dict[str, Any]:
    return {
        "id": deployment.id,
        "version": deployment.version,
        "environment": deployment.environment.value,
        "status": deployment.status.value,
    }


router = APIRouter()


@router.get("/health")
async def health(service: BlueGreenService = Depends(get_service)):
    return await service.health()


@router.get("/api/deployments")
async def list_deployments(service: BlueGreenService = Depends(get_service)):
    return [d.to_dict() for d in await service.registry.get_all()]


@router.get("/api/deployments/current")
async def current_deployments(service: BlueGreenService = Depends(get_service)):
    current = await service.registry.get_current()
    return {env: (d.to_dict() if d else None) for env, d in current.items()}


@router.get("/api/deployments/environment/{env}")
async def deployments_by_environment(env: str, service: BlueGreenService = Depends(get_service)):
    return [d.to_dict() for d in await service.registry.get_by_environment(env)]


@router.get("/api/deployments/{deployment_id}")
async def get_deployment(deployment_id: str, service: BlueGreenService = Depends(get_service)):
    return (await service.registry.get_by_id(deployment_id)).to_dict()


@router.post("/api/deployments", status_code=201)
async def create_deployment(
    payload: Any = Body(None), service: BlueGreenService = Depends(get_service)
):
    return (await service.registry.create(payload)).to_dict()


@router.patch("/api/deployments/{deployment_id}")
async def update_deployment(
    deployment_id: str,
    payload: Any = Body(None),
    service: BlueGreenService = Depends(get_service),
):
    return (await service.registry.update(deployment_id, payload)).to_dict()


@router.post("/api/deployments/promote/{deployment_id}")
async def promote_deployment(deployment_id: str, service: BlueGreenService = Depends(get_service)):
    deployment = await service.registry.promote(deployment_id)
    return {
        "message": "Deployment promoted successfully",
        "deployment": _deployment_summary(deployment),
    }


@router.post("/api/deployments/rollback/{deployment_id}")
async def rollback_deployment(deployment_id: str, service: BlueGreenService = Depends(get_service)):
    deployment = await service.registry.rollback(deployment_id)
    return {"message": "Rollback successful", "deployment": _deployment_summary(deployment)}


@router.get("/api/deployments/{deployment_id}/audit")
async def deployment_audit(deployment_id: str, service: BlueGreenService = Depends(get_service)):
    return await service.audit_trail(deployment_id)


@router.get("/api/health-checks")
async def active_health_checks(service: BlueGreenService = Depends(get_service)):
    active = await service.registry.get_active()
    if active is None:
        return []
    return [h.to_dict() for h in await service.registry.get_health_checks(active.id)]


@router.get("/api/health-checks/{deployment_id}")
async def deployment_health_checks(
    deployment_id: str, service: BlueGreenService = Depends(get_service)
):
    return [h.to_dict() for h in await service.registry.get_health_checks(deployment_id)]


@router.post("/api/health-checks", status_code=201)
async def create_health_check(
    payload: Any = Body(None), service: BlueGreenService = Depends(get_service)
):
    return (await service.ingest_health_check(payload)).to_dict()


@router.get("/api/logs")
async def recent_logs(service: BlueGreenService = Depends(get_service)):
    return [entry.to_dict() for entry in service.log_sink.recent()]


@router.get("/api/logs/structured")
async def structured_logs(
    level: str | None = None,
    trace_id: str | None = Query(None, alias="traceId"),
    start_time: str | None = Query(None, alias="startTime"),
    end_time: str | None = Query(None, alias="endTime"),
    service: BlueGreenService = Depends(get_service),
):
    try:
        wanted_level = LogLevel(level) if level else None
        start = parse_timestamp(start_time)
        end = parse_timestamp(end_time)
    except ValueError as e:
        raise ValidationError("Invalid log filter", details=[{"msg": str(e)}], cause=e) from e

    entries = service.log_sink.query(
        level=wanted_level, trace_id=trace_id, start_time=start, end_time=end
    )
    return [entry.to_dict() for entry in entries]


@router.get("/api/traffic-split")
async def get_traffic_split(service: BlueGreenService = Depends(get_service)):
    return service.traffic.get().to_dict()


@router.post("/api/traffic-split")
async def update_traffic_split(
    payload: Any = Body(None), service: BlueGreenService = Depends(get_service)
):
    split = parse_payload(TrafficSplitUpdate, payload, "traffic split")
    return (await service.traffic.set(split.blue, split.green)).to_dict()


@router.get("/api/metrics")
async def metrics(service: BlueGreenService = Depends(get_service)):
    return await service.summary()


def register_exception_handlers(app: FastAPI) -> None:
    """Map controller errors to status codes."""

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": exc.message, "details": exc.details})

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        details = [
            {k: v for k, v in error.items() if k not in ("input", "ctx", "url")}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request body", "details": jsonable_encoder(details)},
        )

    @app.exception_handler(InvariantViolation)
    async def _invariant_violation(request: Request, exc: InvariantViolation):
        return JSONResponse(status_code=400, content={"error": exc.message})

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"error": "Deployment not found"})

    @app.exception_handler(BlueGreenError)
    async def _controller_error(request: Request, exc: BlueGreenError):
        logger.error(f"Unhandled controller error on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=500, content={"error": exc.message})


def create_app(
    service: BlueGreenService | None = None, settings: BlueGreenSettings | None = None
) -> FastAPI:
    """Build the FastAPI application around an explicitly constructed service."""
    service = service or BlueGreenService(settings or load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(
        title="Blue/Green Deployment Controller",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.add_middleware(MonitoringMiddleware, service=service)
    register_exception_handlers(app)
    app.include_router(router)
    return app


def main() -> None:
    """Run the controller with uvicorn."""
    settings = load_settings()
    setup_logging(settings.service_name, settings.log_level, settings.log_format)
    app = create_app(settings=settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
