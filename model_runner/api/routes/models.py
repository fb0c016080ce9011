"""Models API routes for listing, loading, and unloading models.

Provides endpoints for model lifecycle management. Listing needs the STATUS
permission; load and unload need UPDATE on the model's owner.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from model_runner.api.dependencies import get_caller, get_registry, get_scheduler
from model_runner.auth.clients import ApiClient
from model_runner.auth.permissions import Operation, require, target_owner_for
from model_runner.core.logging import get_logger
from model_runner.models.definitions import ModelStatus
from model_runner.models.responses import (
    ModelActionResponse,
    ModelInfoResponse,
    ModelListResponse,
    QueueStatsResponse,
)
from model_runner.services.model_registry import ModelInfo, ModelRegistry
from model_runner.services.scheduler import QueueStats, Scheduler


# =============================================================================
# Router Configuration
# =============================================================================

router = APIRouter(tags=["models"])
logger = get_logger(__name__)


# =============================================================================
# Helper Functions
# =============================================================================


def _queue_stats_to_response(stats: QueueStats | None) -> QueueStatsResponse | None:
    if stats is None:
        return None
    return QueueStatsResponse(
        active=stats.active,
        waiting=stats.waiting,
        processed=stats.processed,
        max_concurrent=stats.max_concurrent,
        max_queue_depth=stats.max_queue_depth,
    )


def _model_info_to_response(info: ModelInfo, queue: QueueStats | None) -> ModelInfoResponse:
    """Convert a registry ModelInfo to the response model.

    Args:
        info: Model info from the registry
        queue: Queue stats, if the model has received requests

    Returns:
        ModelInfoResponse object
    """
    definition = info.definition
    return ModelInfoResponse(
        id=definition.id,
        name=definition.name,
        license=definition.license,
        family=definition.family.value,
        backend=definition.backend.value,
        precision=definition.precision.value,
        context_length=definition.context_length,
        size_gb=definition.size_gb,
        owner=definition.owner,
        status=info.status.value,
        queue=_queue_stats_to_response(queue),
    )


def _require_update(caller: ApiClient, registry: ModelRegistry, model_id: str) -> None:
    definition = registry.get_definition(model_id)
    require(caller, Operation.UPDATE, target_owner_for(caller, definition.owner))


# =============================================================================
# Endpoints
# =============================================================================


@router.get(
    "/models",
    response_model=ModelListResponse,
    summary="List all models",
    description="Returns every configured model with its residency status and queue stats.",
)
async def list_models(
    caller: ApiClient = Depends(get_caller),
    registry: ModelRegistry = Depends(get_registry),
    scheduler: Scheduler = Depends(get_scheduler),
) -> ModelListResponse:
    """List configured models.

    Returns:
        ModelListResponse with model data and memory usage
    """
    require(caller, Operation.STATUS, caller.id)

    queues = scheduler.stats()
    data = [_model_info_to_response(info, queues.get(info.definition.id)) for info in registry.list_models()]

    return ModelListResponse(
        data=data,
        loaded=registry.get_loaded_models(),
        memory_used_gb=round(registry.memory_used_gb, 3),
        memory_limit_gb=registry.memory_limit_gb,
    )


@router.post(
    "/models/{model_id}/load",
    response_model=ModelActionResponse,
    summary="Load a model",
    description="Load a model into memory ahead of its first request.",
    responses={
        403: {"description": "Caller lacks the UPDATE permission"},
        404: {"description": "Model not found"},
        502: {"description": "Model failed to load"},
        503: {"description": "Every resident model is in use"},
    },
)
async def load_model(
    model_id: str,
    caller: ApiClient = Depends(get_caller),
    registry: ModelRegistry = Depends(get_registry),
) -> ModelActionResponse:
    _require_update(caller, registry, model_id)
    await registry.load(model_id)
    logger.info("Model preloaded", model_id=model_id, client_id=caller.id)
    return ModelActionResponse(id=model_id, status=ModelStatus.LOADED.value)


@router.post(
    "/models/{model_id}/unload",
    response_model=ModelActionResponse,
    summary="Unload a model",
    description="Unload a model from memory to free resources.",
    responses={
        403: {"description": "Caller lacks the UPDATE permission"},
        404: {"description": "Model not found"},
        409: {"description": "Model has requests in flight"},
    },
)
async def unload_model(
    model_id: str,
    caller: ApiClient = Depends(get_caller),
    registry: ModelRegistry = Depends(get_registry),
) -> ModelActionResponse:
    """Unload a model by ID.

    Unloading a model that is not resident is a no-op.
    """
    _require_update(caller, registry, model_id)
    unloaded = await registry.unload(model_id)
    logger.info("Model unload requested", model_id=model_id, client_id=caller.id, unloaded=unloaded)
    return ModelActionResponse(id=model_id, status=ModelStatus.AVAILABLE.value)
