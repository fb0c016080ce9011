"""Audio transcription API route.

POST /audio/transcribe takes a multipart body with two parts:
``request_content`` (JSON TranscriptionRequest) and ``audio_content`` (WAV).
"""

from __future__ import annotations

import asyncio

import pydantic
from fastapi import APIRouter, Depends, File, Form, UploadFile

from model_runner.api.dependencies import (
    get_app_settings,
    get_caller,
    get_registry,
    get_scheduler,
    get_transcription_engine,
)
from model_runner.auth.clients import ApiClient
from model_runner.auth.permissions import Operation, require, target_owner_for
from model_runner.core.config import Settings
from model_runner.core.constants import VALID_WAV_MIME_TYPES
from model_runner.core.exceptions import ValidationError
from model_runner.inference.audio import decode_wav
from model_runner.inference.transcription import TranscriptionEngine, TranscriptionResult
from model_runner.models.requests import TranscriptionRequest
from model_runner.models.responses import SegmentResponse, TranscriptionResponse
from model_runner.services.model_registry import ModelRegistry
from model_runner.services.scheduler import Scheduler


router = APIRouter(prefix="/audio", tags=["audio"])


def _parse_request_content(raw: str) -> TranscriptionRequest:
    try:
        return TranscriptionRequest.model_validate_json(raw)
    except pydantic.ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or "request_content"
        msg = f"Invalid request_content: {first.get('msg', str(e))}"
        raise ValidationError(msg, field=field) from e


async def _read_audio(upload: UploadFile, max_bytes: int) -> bytes:
    content_type = (upload.content_type or "").split(";")[0].strip().lower()
    if content_type not in VALID_WAV_MIME_TYPES:
        msg = f"Unsupported audio content type '{content_type or 'unknown'}', expected WAV"
        raise ValidationError(msg, field="audio_content", value=content_type)

    data = await upload.read(max_bytes + 1)
    if len(data) > max_bytes:
        msg = f"Audio payload exceeds {max_bytes} bytes"
        raise ValidationError(msg, field="audio_content")
    return data


def _to_response(result: TranscriptionResult) -> TranscriptionResponse:
    return TranscriptionResponse(
        output=[
            SegmentResponse(
                start=segment.start,
                duration=segment.duration,
                text=segment.result.text,
                avg_logprob=segment.result.avg_logprob,
                no_speech_prob=segment.result.no_speech_prob,
                temperature=segment.result.temperature,
                compression_ratio=segment.result.compression_ratio,
            )
            for segment in result.segments
        ],
        text=result.text,
        inference_time=result.inference_time,
    )


@router.post(
    "/transcribe",
    response_model=TranscriptionResponse,
    summary="Transcribe audio",
    description="Transcribe a WAV recording with the selected speech model.",
    responses={
        400: {"description": "Invalid request, audio payload or language"},
        401: {"description": "Missing or invalid bearer token"},
        403: {"description": "Caller lacks the USE permission"},
        404: {"description": "Model not configured"},
        503: {"description": "Queue full or capacity exhausted"},
        504: {"description": "Admission or inference timeout"},
    },
)
async def transcribe(
    request_content: str = Form(..., description="JSON TranscriptionRequest"),
    audio_content: UploadFile = File(..., description="WAV audio"),
    caller: ApiClient = Depends(get_caller),
    settings: Settings = Depends(get_app_settings),
    registry: ModelRegistry = Depends(get_registry),
    scheduler: Scheduler = Depends(get_scheduler),
    engine: TranscriptionEngine = Depends(get_transcription_engine),
) -> TranscriptionResponse:
    """Transcribe uploaded audio.

    The caller is checked before the upload is read; the payload is then
    validated and decoded before the request is queued.
    """
    body = _parse_request_content(request_content)
    definition = registry.get_definition(body.model)
    require(caller, Operation.USE, target_owner_for(caller, definition.owner))

    data = await _read_audio(audio_content, settings.max_audio_bytes)
    samples = await asyncio.to_thread(decode_wav, data)

    async with scheduler.admit(caller, body.model, Operation.USE):
        async with registry.checkout(body.model) as instance:
            result = await scheduler.run_in_worker(
                lambda cancel: engine.transcribe(
                    instance,
                    samples,
                    body.language,
                    config=body.sampling,
                    cancel=cancel,
                    max_length=body.max_length,
                )
            )

    return _to_response(result)
