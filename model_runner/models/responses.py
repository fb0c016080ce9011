"""Response models for model-runner endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class GenerationResponse(BaseModel):
    """Body returned by POST /text/raw and /text/instruct."""

    output: str = Field(..., description="Generated text, without the EOS token")
    inference_time: float = Field(..., description="Decode wall time in seconds")
    generated_tokens: int = Field(..., description="Tokens produced")
    finish_reason: str = Field(..., examples=["eos", "length"])
    seed: int = Field(..., description="Seed used by the sampler")


class SegmentResponse(BaseModel):
    start: float
    duration: float
    text: str
    avg_logprob: float
    no_speech_prob: float
    temperature: float
    compression_ratio: float


class TranscriptionResponse(BaseModel):
    """Body returned by POST /audio/transcribe."""

    output: list[SegmentResponse] = Field(default_factory=list)
    text: str = ""
    inference_time: float


class QueueStatsResponse(BaseModel):
    active: int
    waiting: int
    processed: int
    max_concurrent: int
    max_queue_depth: int


class ModelInfoResponse(BaseModel):
    """One entry of GET /models."""

    id: str
    name: str
    license: str
    family: str
    backend: str
    precision: str
    context_length: int
    size_gb: float
    owner: str | None
    status: str
    queue: QueueStatsResponse | None = None


class ModelListResponse(BaseModel):
    data: list[ModelInfoResponse]
    loaded: list[str]
    memory_used_gb: float
    memory_limit_gb: float


class ModelActionResponse(BaseModel):
    """Result of POST /models/{id}/load and /models/{id}/unload."""

    id: str
    status: str
