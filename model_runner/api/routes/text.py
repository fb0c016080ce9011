"""Text generation API routes.

Provides /text/raw (prompt used as-is) and /text/instruct (prompt wrapped in
the model's instruct template).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from model_runner.api.dependencies import (
    get_caller,
    get_generation_engine,
    get_registry,
    get_scheduler,
)
from model_runner.auth.clients import ApiClient
from model_runner.auth.permissions import Operation
from model_runner.inference.generation import GenerationEngine, GenerationResult
from model_runner.models.requests import GenerationRequest
from model_runner.models.responses import GenerationResponse
from model_runner.services.model_registry import ModelRegistry
from model_runner.services.scheduler import Scheduler


# =============================================================================
# Router Configuration
# =============================================================================

router = APIRouter(prefix="/text", tags=["text"])

ERROR_RESPONSES: dict[int | str, dict[str, str]] = {
    400: {"description": "Invalid request or context budget exceeded"},
    401: {"description": "Missing or invalid bearer token"},
    403: {"description": "Caller lacks the USE permission"},
    404: {"description": "Model not configured"},
    499: {"description": "Request cancelled"},
    503: {"description": "Queue full or capacity exhausted"},
    504: {"description": "Admission or inference timeout"},
}


# =============================================================================
# Helper Functions
# =============================================================================


async def _generate(
    body: GenerationRequest,
    caller: ApiClient,
    registry: ModelRegistry,
    scheduler: Scheduler,
    engine: GenerationEngine,
    instruct: bool,
) -> GenerationResponse:
    async with scheduler.admit(caller, body.model, Operation.USE):
        async with registry.checkout(body.model) as instance:
            run = engine.instruct if instruct else engine.generate
            result: GenerationResult = await scheduler.run_in_worker(
                lambda cancel: run(instance, body.input, body.sampling, body.max_length, cancel)
            )

    return GenerationResponse(
        output=result.text,
        inference_time=result.inference_time,
        generated_tokens=result.generated_tokens,
        finish_reason=result.finish_reason,
        seed=result.seed,
    )


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "/raw",
    response_model=GenerationResponse,
    summary="Generate text",
    description="Continue the input prompt with the selected causal language model.",
    responses=ERROR_RESPONSES,
)
async def generate_raw(
    body: GenerationRequest,
    caller: ApiClient = Depends(get_caller),
    registry: ModelRegistry = Depends(get_registry),
    scheduler: Scheduler = Depends(get_scheduler),
    engine: GenerationEngine = Depends(get_generation_engine),
) -> GenerationResponse:
    return await _generate(body, caller, registry, scheduler, engine, instruct=False)


@router.post(
    "/instruct",
    response_model=GenerationResponse,
    summary="Generate text from an instruction",
    description="Wrap the input in the model's instruct template, then generate.",
    responses=ERROR_RESPONSES,
)
async def generate_instruct(
    body: GenerationRequest,
    caller: ApiClient = Depends(get_caller),
    registry: ModelRegistry = Depends(get_registry),
    scheduler: Scheduler = Depends(get_scheduler),
    engine: GenerationEngine = Depends(get_generation_engine),
) -> GenerationResponse:
    """Generate from an instruction.

    Models without an instruct template receive the input unchanged.
    """
    return await _generate(body, caller, registry, scheduler, engine, instruct=True)
