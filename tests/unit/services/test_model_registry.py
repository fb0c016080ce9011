"""Unit tests for ModelRegistry.

Tests verify:
- One shared load per model id under concurrent resolves
- LRU eviction bounded by instance count and memory
- Pinned instances are never evicted or unloaded
- Transient load failures retried, persistent ones reported and retryable later
- Shutdown unloads everything and rejects new resolves
"""

from __future__ import annotations

import asyncio

import pytest

from model_runner.core.exceptions import (
    IncompatibleArchitectureError,
    ModelBusyError,
    ModelLoadFailedError,
    ModelNotFoundError,
    ServiceShuttingDownError,
    TemporaryResourceError,
)
from model_runner.models.definitions import ModelDefinition, ModelStatus
from model_runner.services.model_registry import ModelRegistry
from tests.conftest import MODEL_PHI2, MODEL_PRIVATE, MODEL_WHISPER
from tests.unit.fakes import FakeLoader


# =============================================================================
# Constants (S1192: Avoid duplicated string literals)
# =============================================================================

CACHE_DIR = "/tmp/model-runner-cache"


def _registry(
    definitions: dict[str, ModelDefinition],
    loader: FakeLoader,
    **kwargs: object,
) -> ModelRegistry:
    options: dict[str, object] = {"max_resident_models": 2, "memory_limit_gb": 16.0, "load_retry_backoff": 0.0}
    options.update(kwargs)
    return ModelRegistry(definitions, cache_dir=CACHE_DIR, loader=loader, **options)  # type: ignore[arg-type]


# =============================================================================
# Resolution
# =============================================================================


class TestResolve:
    """resolve() loads lazily and shares in-flight loads."""

    @pytest.mark.asyncio
    async def test_lazy_load_on_first_use(self, model_definitions: dict[str, ModelDefinition]) -> None:
        loader = FakeLoader()
        registry = _registry(model_definitions, loader)

        assert registry.get_loaded_models() == []
        instance = await registry.resolve(MODEL_PHI2)

        assert instance.model_id == MODEL_PHI2
        assert instance.runtime is loader.runtimes[MODEL_PHI2]
        assert registry.get_model_status(MODEL_PHI2) is ModelStatus.LOADED

    @pytest.mark.asyncio
    async def test_concurrent_resolves_share_one_load(self, model_definitions: dict[str, ModelDefinition]) -> None:
        loader = FakeLoader(delay=0.05)
        registry = _registry(model_definitions, loader)

        instances = await asyncio.gather(*(registry.resolve(MODEL_PHI2) for _ in range(5)))

        assert loader.calls == [MODEL_PHI2]
        assert all(instance is instances[0] for instance in instances)

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_shared_load(
        self, model_definitions: dict[str, ModelDefinition]
    ) -> None:
        loader = FakeLoader(delay=0.1)
        registry = _registry(model_definitions, loader)

        first = asyncio.create_task(registry.resolve(MODEL_PHI2))
        second = asyncio.create_task(registry.resolve(MODEL_PHI2))
        await asyncio.sleep(0.02)
        first.cancel()

        instance = await second

        assert instance.model_id == MODEL_PHI2
        assert loader.calls == [MODEL_PHI2]

    @pytest.mark.asyncio
    async def test_loading_status_while_in_flight(self, model_definitions: dict[str, ModelDefinition]) -> None:
        registry = _registry(model_definitions, FakeLoader(delay=0.1))

        task = asyncio.create_task(registry.resolve(MODEL_PHI2))
        await asyncio.sleep(0.02)

        assert registry.get_model_status(MODEL_PHI2) is ModelStatus.LOADING
        await task

    @pytest.mark.asyncio
    async def test_unknown_model(self, model_definitions: dict[str, ModelDefinition]) -> None:
        registry = _registry(model_definitions, FakeLoader())

        with pytest.raises(ModelNotFoundError) as exc_info:
            await registry.resolve("gpt-17")

        assert exc_info.value.available_models == sorted(model_definitions)

    @pytest.mark.asyncio
    async def test_incompatible_definition_never_loads(self) -> None:
        definition = ModelDefinition.model_validate(
            {
                "id": "whisper-gguf",
                "family": "speech-seq2seq",
                "backend": "llamacpp",
                "precision": "gguf",
                "source": {"repo": "org/whisper"},
            }
        )
        loader = FakeLoader()
        registry = _registry({definition.id: definition}, loader)

        with pytest.raises(IncompatibleArchitectureError):
            await registry.resolve(definition.id)

        assert loader.calls == []


# =============================================================================
# Eviction
# =============================================================================


class TestEviction:
    """LRU eviction under count and memory bounds."""

    @pytest.mark.asyncio
    async def test_least_recently_used_evicted(self, model_definitions: dict[str, ModelDefinition]) -> None:
        loader = FakeLoader()
        registry = _registry(model_definitions, loader, max_resident_models=2)

        await registry.resolve(MODEL_PHI2)
        await registry.resolve(MODEL_WHISPER)
        await registry.resolve(MODEL_PHI2)
        await registry.resolve(MODEL_PRIVATE)

        assert registry.get_loaded_models() == [MODEL_PHI2, MODEL_PRIVATE]
        assert loader.runtimes[MODEL_WHISPER].closed

    @pytest.mark.asyncio
    async def test_memory_budget_evicts(self, model_definitions: dict[str, ModelDefinition]) -> None:
        registry = _registry(model_definitions, FakeLoader(), max_resident_models=5, memory_limit_gb=6.0)

        await registry.resolve(MODEL_PHI2)
        await registry.resolve(MODEL_WHISPER)
        await registry.resolve(MODEL_PRIVATE)

        assert registry.get_loaded_models() == [MODEL_WHISPER, MODEL_PRIVATE]
        assert registry.memory_used_gb == pytest.approx(1.2)

    @pytest.mark.asyncio
    async def test_pinned_instance_never_evicted(self, model_definitions: dict[str, ModelDefinition]) -> None:
        loader = FakeLoader()
        registry = _registry(model_definitions, loader, max_resident_models=1)

        async with registry.checkout(MODEL_PHI2):
            with pytest.raises(TemporaryResourceError) as exc_info:
                await registry.resolve(MODEL_WHISPER)

            assert exc_info.value.resource_type == "memory"
            assert registry.get_loaded_models() == [MODEL_PHI2]
            assert not loader.runtimes[MODEL_PHI2].closed

        # Released: room can be made now
        await registry.resolve(MODEL_WHISPER)
        assert registry.get_loaded_models() == [MODEL_WHISPER]

    @pytest.mark.asyncio
    async def test_model_larger_than_budget(self, model_definitions: dict[str, ModelDefinition]) -> None:
        loader = FakeLoader()
        registry = _registry(model_definitions, loader, memory_limit_gb=1.0)

        with pytest.raises(ModelLoadFailedError, match="exceeds the memory limit"):
            await registry.resolve(MODEL_PHI2)

        assert loader.calls == []


# =============================================================================
# Load Failures
# =============================================================================


class TestLoadFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, model_definitions: dict[str, ModelDefinition]) -> None:
        loader = FakeLoader(failures=[ConnectionError("connection reset")])
        registry = _registry(model_definitions, loader)

        instance = await registry.resolve(MODEL_PHI2)

        assert instance.model_id == MODEL_PHI2
        assert loader.calls == [MODEL_PHI2, MODEL_PHI2]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, model_definitions: dict[str, ModelDefinition]) -> None:
        loader = FakeLoader(failures=[TimeoutError("slow")] * 3)
        registry = _registry(model_definitions, loader, load_retries=2)

        with pytest.raises(ModelLoadFailedError) as exc_info:
            await registry.resolve(MODEL_PHI2)

        assert exc_info.value.attempts == 3
        assert exc_info.value.transient
        assert len(loader.calls) == 3

    @pytest.mark.asyncio
    async def test_persistent_failure_not_retried(self, model_definitions: dict[str, ModelDefinition]) -> None:
        loader = FakeLoader(failures=[ValueError("corrupt weights")])
        registry = _registry(model_definitions, loader)

        with pytest.raises(ModelLoadFailedError, match="corrupt weights") as exc_info:
            await registry.resolve(MODEL_PHI2)

        assert exc_info.value.attempts == 1
        assert not exc_info.value.transient
        assert registry.get_model_status(MODEL_PHI2) is ModelStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_failed_load_can_be_retried_later(self, model_definitions: dict[str, ModelDefinition]) -> None:
        loader = FakeLoader(failures=[ValueError("corrupt weights")])
        registry = _registry(model_definitions, loader)

        with pytest.raises(ModelLoadFailedError):
            await registry.resolve(MODEL_PHI2)
        instance = await registry.resolve(MODEL_PHI2)

        assert instance.model_id == MODEL_PHI2
        assert loader.calls == [MODEL_PHI2, MODEL_PHI2]

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_failure(self, model_definitions: dict[str, ModelDefinition]) -> None:
        loader = FakeLoader(delay=0.05, failures=[ValueError("corrupt weights")])
        registry = _registry(model_definitions, loader)

        results = await asyncio.gather(
            registry.resolve(MODEL_PHI2), registry.resolve(MODEL_PHI2), return_exceptions=True
        )

        assert all(isinstance(r, ModelLoadFailedError) for r in results)
        assert loader.calls == [MODEL_PHI2]


# =============================================================================
# Unload and Close
# =============================================================================


class TestUnload:
    @pytest.mark.asyncio
    async def test_unload_resident(self, model_definitions: dict[str, ModelDefinition]) -> None:
        loader = FakeLoader()
        registry = _registry(model_definitions, loader)
        await registry.load(MODEL_PHI2)

        assert await registry.unload(MODEL_PHI2) is True
        assert loader.runtimes[MODEL_PHI2].closed
        assert registry.get_loaded_models() == []

    @pytest.mark.asyncio
    async def test_unload_not_resident(self, model_definitions: dict[str, ModelDefinition]) -> None:
        registry = _registry(model_definitions, FakeLoader())

        assert await registry.unload(MODEL_PHI2) is False

    @pytest.mark.asyncio
    async def test_unload_pinned_raises_busy(self, model_definitions: dict[str, ModelDefinition]) -> None:
        registry = _registry(model_definitions, FakeLoader())

        async with registry.checkout(MODEL_PHI2):
            with pytest.raises(ModelBusyError) as exc_info:
                await registry.unload(MODEL_PHI2)

        assert exc_info.value.active_requests == 1
        assert await registry.unload(MODEL_PHI2) is True

    @pytest.mark.asyncio
    async def test_unload_while_loading_raises_busy(self, model_definitions: dict[str, ModelDefinition]) -> None:
        registry = _registry(model_definitions, FakeLoader(delay=0.1))

        task = asyncio.create_task(registry.resolve(MODEL_PHI2))
        await asyncio.sleep(0.02)

        with pytest.raises(ModelBusyError, match="is loading"):
            await registry.unload(MODEL_PHI2)
        await task

    @pytest.mark.asyncio
    async def test_checkout_tracks_active_requests(self, model_definitions: dict[str, ModelDefinition]) -> None:
        registry = _registry(model_definitions, FakeLoader())

        async with registry.checkout(MODEL_PHI2), registry.checkout(MODEL_PHI2) as instance:
            infos = {info.definition.id: info for info in registry.list_models()}
            assert infos[MODEL_PHI2].active_requests == 2
            assert infos[MODEL_PHI2].status is ModelStatus.LOADED
            assert infos[MODEL_WHISPER].status is ModelStatus.AVAILABLE

        assert instance.active == 0

    @pytest.mark.asyncio
    async def test_close_unloads_and_rejects(self, model_definitions: dict[str, ModelDefinition]) -> None:
        loader = FakeLoader()
        registry = _registry(model_definitions, loader)
        await registry.resolve(MODEL_PHI2)
        await registry.resolve(MODEL_WHISPER)

        await registry.close()

        assert registry.get_loaded_models() == []
        assert loader.runtimes[MODEL_PHI2].closed
        assert loader.runtimes[MODEL_WHISPER].closed
        with pytest.raises(ServiceShuttingDownError):
            await registry.resolve(MODEL_PHI2)
