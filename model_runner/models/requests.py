"""Request models for model-runner endpoints."""

from __future__ import annotations

import secrets

from pydantic import BaseModel, Field

from model_runner.core.constants import (
    DEFAULT_REPEAT_CONTEXT_SIZE,
    DEFAULT_REPEAT_PENALTY,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_P,
)


# =============================================================================
# Sampling
# =============================================================================


class SamplingConfig(BaseModel):
    """Per-request sampling parameters (``model_config`` on the wire).

    A seed is drawn when the caller does not send one; it is echoed in the
    response so the request can be replayed.
    """

    temperature: float | None = Field(
        default=DEFAULT_TEMPERATURE,
        ge=0.0,
        description="Softmax temperature; null or ~0 selects greedy decoding",
    )
    top_p: float | None = Field(
        default=DEFAULT_TOP_P,
        description="Nucleus sampling threshold; null, <=0 or >=1 disables it",
    )
    repeat_penalty: float = Field(
        default=DEFAULT_REPEAT_PENALTY,
        gt=0.0,
        description="Penalty applied to recently seen tokens; 1.0 disables it",
    )
    repeat_context_size: int = Field(
        default=DEFAULT_REPEAT_CONTEXT_SIZE,
        ge=0,
        description="Number of trailing history tokens the penalty considers",
    )
    seed: int = Field(
        default_factory=lambda: secrets.randbits(63),
        ge=0,
        description="PRNG seed",
    )


# =============================================================================
# Text
# =============================================================================


class GenerationRequest(BaseModel):
    """Body of POST /text/raw and /text/instruct."""

    model: str = Field(..., min_length=1, description="Model identifier")
    input: str = Field(..., description="Prompt text")
    max_length: int = Field(..., ge=1, description="Maximum generated tokens")
    sampling: SamplingConfig = Field(
        default_factory=SamplingConfig,
        alias="model_config",
        description="Sampling parameters",
    )

    model_config = {"populate_by_name": True}


# =============================================================================
# Audio
# =============================================================================


class TranscriptionRequest(BaseModel):
    """JSON part (``request_content``) of POST /audio/transcribe."""

    model: str = Field(..., min_length=1, description="Model identifier")
    language: str = Field(default="en", min_length=1, description="Language code, e.g. 'en'")
    max_length: int | None = Field(default=None, ge=1, description="Maximum tokens per segment")
    sampling: SamplingConfig | None = Field(
        default=None,
        alias="model_config",
        description="Sampling parameters; greedy when omitted",
    )

    model_config = {"populate_by_name": True}
