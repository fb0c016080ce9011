"""Health check API routes for model-runner.

Provides liveness (/health) and readiness (/health/ready) endpoints for
probes and service monitoring. Models load lazily, so readiness means the
registry and scheduler exist and admissions are open.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from model_runner import __version__
from model_runner.core.constants import DEFAULT_SERVICE_NAME
from model_runner.models.responses import QueueStatsResponse
from model_runner.services.model_registry import ModelRegistry
from model_runner.services.scheduler import Scheduler


# =============================================================================
# Constants
# =============================================================================

STATUS_OK = "ok"
STATUS_READY = "ready"
STATUS_NOT_READY = "not_ready"
REASON_NOT_INITIALIZED = "Model registry not initialized"
REASON_SHUTTING_DOWN = "Service is shutting down"


# =============================================================================
# Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Response model for /health liveness endpoint."""

    status: str = Field(
        default=STATUS_OK,
        description="Service health status",
        examples=["ok"],
    )
    service: str = Field(
        default=DEFAULT_SERVICE_NAME,
        description="Service name",
        examples=["model-runner"],
    )
    version: str = Field(
        default=__version__,
        description="Service version",
        examples=["0.1.0"],
    )


class ReadinessResponse(BaseModel):
    """Response model for /health/ready readiness endpoint."""

    status: str = Field(
        description="Readiness status",
        examples=["ready", "not_ready"],
    )
    loaded_models: list[str] = Field(
        default_factory=list,
        description="Currently resident model IDs",
        examples=[["phi2"]],
    )
    queues: dict[str, QueueStatsResponse] = Field(
        default_factory=dict,
        description="Queue stats per model that has received requests",
    )
    reason: str | None = Field(
        default=None,
        description="Reason for not ready status",
        examples=["Service is shutting down"],
    )


# =============================================================================
# Router
# =============================================================================

router = APIRouter(tags=["health"])


def _not_ready(reason: str) -> JSONResponse:
    response = ReadinessResponse(status=STATUS_NOT_READY, reason=reason)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(exclude_none=True),
    )


# =============================================================================
# Endpoints
# =============================================================================


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness check",
    description="Returns 200 if the service is running.",
)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe endpoint.

    Returns:
        HealthResponse with status 'ok'.
    """
    service = getattr(request.app.state, "service_name", DEFAULT_SERVICE_NAME)
    return HealthResponse(status=STATUS_OK, service=service, version=__version__)


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    responses={
        200: {"description": "Service is ready", "model": ReadinessResponse},
        503: {"description": "Service is not ready", "model": ReadinessResponse},
    },
    summary="Readiness check",
    description="Returns 200 while the service admits requests.",
)
async def readiness_check(request: Request) -> JSONResponse:
    """Readiness probe endpoint.

    Args:
        request: FastAPI request to access app state.

    Returns:
        JSONResponse with readiness status, resident models and queue stats.
    """
    registry: ModelRegistry | None = getattr(request.app.state, "registry", None)
    scheduler: Scheduler | None = getattr(request.app.state, "scheduler", None)

    if registry is None or scheduler is None:
        return _not_ready(REASON_NOT_INITIALIZED)

    if not scheduler.accepting:
        return _not_ready(REASON_SHUTTING_DOWN)

    response = ReadinessResponse(
        status=STATUS_READY,
        loaded_models=registry.get_loaded_models(),
        queues={
            model_id: QueueStatsResponse(
                active=stats.active,
                waiting=stats.waiting,
                processed=stats.processed,
                max_concurrent=stats.max_concurrent,
                max_queue_depth=stats.max_queue_depth,
            )
            for model_id, stats in scheduler.stats().items()
        },
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=response.model_dump(exclude_none=True),
    )
