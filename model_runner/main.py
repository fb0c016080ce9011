"""FastAPI application entrypoint for model-runner.

Patterns applied:
- asynccontextmanager lifespan (not the deprecated @app.on_event)
- configure_logging() called ONCE in lifespan startup
- Services built in the lifespan, stored on app.state, injected via dependencies
- Shutdown drains the scheduler first, then closes the registry
- Docs disabled in production
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response

from model_runner import __version__
from model_runner.api.error_handlers import register_exception_handlers
from model_runner.api.routes.audio import router as audio_router
from model_runner.api.routes.health import router as health_router
from model_runner.api.routes.models import router as models_router
from model_runner.api.routes.text import router as text_router
from model_runner.auth.clients import ClientStore, YamlClientStore
from model_runner.core.config import Settings, get_settings
from model_runner.core.logging import configure_logging, get_logger, reset_request_id, set_request_id
from model_runner.inference.audio import MelFilterBank
from model_runner.inference.generation import GenerationEngine
from model_runner.inference.runtimes import RuntimeLoader, load_runtime
from model_runner.inference.sampling import RepeatPenaltyScheme
from model_runner.inference.transcription import TranscriptionEngine
from model_runner.models.definitions import load_model_definitions
from model_runner.services.model_registry import ModelRegistry
from model_runner.services.scheduler import Scheduler


# =============================================================================
# Application Metadata
# =============================================================================
APP_NAME = "model-runner"
APP_DESCRIPTION = "Local inference server for text generation and speech transcription"
REQUEST_ID_HEADER = "X-Request-ID"


# =============================================================================
# Lifespan Context Manager
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - startup and shutdown events.

    Args:
        app: FastAPI application instance.

    Yields:
        None after startup, before shutdown.
    """
    # =========================================================================
    # STARTUP
    # =========================================================================
    settings: Settings = app.state.settings

    configure_logging(level=settings.log_level)
    logger = get_logger(__name__)

    logger.info(
        "Application starting",
        service=settings.service_name,
        version=__version__,
        environment=settings.environment,
        port=settings.port,
        tls=settings.tls_enabled,
    )

    definitions = load_model_definitions(settings.models_file)
    client_store: ClientStore | None = app.state.client_store
    if client_store is None:
        client_store = YamlClientStore.from_file(settings.clients_file)
    filterbank = MelFilterBank.load(settings.mel_filters_path)
    penalty_scheme = RepeatPenaltyScheme(settings.repeat_penalty_scheme)

    registry = ModelRegistry(
        definitions,
        cache_dir=settings.cache_dir,
        max_resident_models=settings.max_resident_models,
        memory_limit_gb=settings.memory_limit_gb,
        load_retries=settings.load_retries,
        load_retry_backoff=settings.load_retry_backoff,
        loader=app.state.runtime_loader,
    )
    scheduler = Scheduler(
        registry,
        max_concurrent_per_model=settings.max_concurrent_per_model,
        max_queue_depth=settings.max_queue_depth,
        admission_timeout=settings.admission_timeout,
        request_timeout=settings.request_timeout,
    )

    app.state.service_name = settings.service_name
    app.state.client_store = client_store
    app.state.registry = registry
    app.state.scheduler = scheduler
    app.state.generation_engine = GenerationEngine(penalty_scheme)
    app.state.transcription_engine = TranscriptionEngine(filterbank, penalty_scheme)

    logger.info("Application ready", models=sorted(definitions), penalty_scheme=penalty_scheme.value)

    yield

    # =========================================================================
    # SHUTDOWN
    # =========================================================================
    logger.info("Application shutting down", service=settings.service_name)
    stats = await scheduler.shutdown(settings.shutdown_timeout)
    await registry.close()
    app.state.registry = None
    app.state.scheduler = None
    logger.info(
        "Application stopped",
        processed={model_id: queue.processed for model_id, queue in stats.items()},
    )


# =============================================================================
# Middleware
# =============================================================================
async def request_id_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Bind X-Request-ID (or a fresh uuid) to the logging context."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    token = set_request_id(request_id)
    try:
        response = await call_next(request)
    finally:
        reset_request_id(token)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


# =============================================================================
# Application Factory
# =============================================================================
def create_app(
    settings: Settings | None = None,
    runtime_loader: RuntimeLoader = load_runtime,
    client_store: ClientStore | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Settings to use; defaults to get_settings().
        runtime_loader: Blocking loader used by the registry.
        client_store: Caller store; defaults to clients.yaml in config_dir.

    Returns:
        Configured FastAPI instance. Services are created on startup.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=APP_NAME,
        description=APP_DESCRIPTION,
        version=__version__,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runtime_loader = runtime_loader
    app.state.client_store = client_store

    app.middleware("http")(request_id_middleware)

    app.include_router(health_router)
    app.include_router(models_router)
    app.include_router(text_router)
    app.include_router(audio_router)

    register_exception_handlers(app)
    return app


app = create_app()
