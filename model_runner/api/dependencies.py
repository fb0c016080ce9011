"""FastAPI dependencies for model-runner routes.

Services are built in the application lifespan and stored on app.state;
these helpers hand them to endpoints and resolve the bearer token to an
ApiClient snapshot.
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from model_runner.auth.clients import ApiClient, ClientStore
from model_runner.core.config import Settings
from model_runner.core.exceptions import AuthError, ServiceShuttingDownError
from model_runner.inference.generation import GenerationEngine
from model_runner.inference.transcription import TranscriptionEngine
from model_runner.services.model_registry import ModelRegistry
from model_runner.services.scheduler import Scheduler


# auto_error=False so a missing header surfaces as AuthError (401), not 403
bearer_scheme = HTTPBearer(auto_error=False)


def _state(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise ServiceShuttingDownError(f"Service not initialized: {name} unavailable")
    return value


def get_app_settings(request: Request) -> Settings:
    return _state(request, "settings")


def get_registry(request: Request) -> ModelRegistry:
    return _state(request, "registry")


def get_scheduler(request: Request) -> Scheduler:
    return _state(request, "scheduler")


def get_generation_engine(request: Request) -> GenerationEngine:
    return _state(request, "generation_engine")


def get_transcription_engine(request: Request) -> TranscriptionEngine:
    return _state(request, "transcription_engine")


def get_client_store(request: Request) -> ClientStore:
    return _state(request, "client_store")


def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    store: ClientStore = Depends(get_client_store),
) -> ApiClient:
    """Resolve ``Authorization: Bearer <id>_<key>`` to a client snapshot.

    Synchronous so FastAPI runs the scrypt check in its threadpool.

    Raises:
        AuthError: If the header is missing or the token does not authenticate.
    """
    if credentials is None or not credentials.credentials:
        raise AuthError("Missing bearer token")
    return store.authenticate(credentials.credentials)
