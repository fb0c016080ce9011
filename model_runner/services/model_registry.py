"""Model Registry for resident model lifecycle.

This module provides centralized model residency management:
- Lazy loading on first use, one shared load per model id
- Pinning instances while requests use them
- LRU eviction bounded by instance count and memory budget
- Retrying transient load failures with exponential backoff

Follows: one asyncio.Lock for the resident and in-flight maps, never held
across a load or a forward pass.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from model_runner.core.exceptions import (
    ModelBusyError,
    ModelLoadFailedError,
    ModelNotFoundError,
    ModelRunnerError,
    ServiceShuttingDownError,
    TemporaryResourceError,
)
from model_runner.core.logging import get_logger
from model_runner.inference.runtimes import Runtime, RuntimeLoader, check_compatibility, load_runtime
from model_runner.models.definitions import ModelDefinition, ModelStatus


logger = get_logger(__name__)


# =============================================================================
# Data Models
# =============================================================================


@dataclass(eq=False)
class ModelInstance:
    """A resident model. Owned by the registry; holds no per-request state.

    Attributes:
        definition: Definition the runtime was loaded from.
        runtime: Loaded weights and tokenizer.
        active: Number of requests currently pinning the instance.
        loaded_at: Monotonic time the load finished.
        last_used: Monotonic time of the last resolve or release.
    """

    definition: ModelDefinition
    runtime: Runtime
    active: int = 0
    loaded_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)

    @property
    def model_id(self) -> str:
        return self.definition.id

    @property
    def pinned(self) -> bool:
        return self.active > 0


@dataclass(frozen=True)
class ModelInfo:
    """Status snapshot of one configured model."""

    definition: ModelDefinition
    status: ModelStatus
    active_requests: int = 0


# =============================================================================
# ModelRegistry Service
# =============================================================================


class ModelRegistry:
    """Resident model lifecycle management service.

    Attributes:
        cache_dir: Download cache handed to the runtime loader.
        max_resident_models: Maximum number of resident instances.
        memory_limit_gb: Maximum sum of size_gb over resident instances.
    """

    def __init__(
        self,
        definitions: dict[str, ModelDefinition],
        cache_dir: str,
        max_resident_models: int = 2,
        memory_limit_gb: float = 16.0,
        load_retries: int = 2,
        load_retry_backoff: float = 1.0,
        loader: RuntimeLoader = load_runtime,
    ) -> None:
        """Initialize the ModelRegistry.

        Args:
            definitions: Model definitions keyed by id.
            cache_dir: Download cache directory.
            max_resident_models: Resident instance bound.
            memory_limit_gb: Resident memory bound in GB.
            load_retries: Extra attempts for transient load failures.
            load_retry_backoff: Base delay between attempts in seconds.
            loader: Blocking function building a runtime from a definition.
        """
        self._definitions = dict(definitions)
        self.cache_dir = cache_dir
        self.max_resident_models = max_resident_models
        self.memory_limit_gb = memory_limit_gb
        self._load_retries = load_retries
        self._load_retry_backoff = load_retry_backoff
        self._loader = loader

        # Resident instances in least-recently-used order (oldest first)
        self._resident: OrderedDict[str, ModelInstance] = OrderedDict()
        self._loading: dict[str, asyncio.Task[ModelInstance]] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    # =========================================================================
    # Definitions and Status
    # =========================================================================

    @property
    def definitions(self) -> dict[str, ModelDefinition]:
        return dict(self._definitions)

    def get_definition(self, model_id: str) -> ModelDefinition:
        """Get the definition for a model id.

        Raises:
            ModelNotFoundError: If no definition exists.
        """
        definition = self._definitions.get(model_id)
        if definition is None:
            raise ModelNotFoundError(
                f"Model '{model_id}' is not configured",
                model_id=model_id,
                available_models=sorted(self._definitions),
            )
        return definition

    def get_loaded_models(self) -> list[str]:
        """Get list of resident model IDs, least recently used first."""
        return list(self._resident.keys())

    def get_model_status(self, model_id: str) -> ModelStatus:
        self.get_definition(model_id)
        if model_id in self._resident:
            return ModelStatus.LOADED
        if model_id in self._loading:
            return ModelStatus.LOADING
        return ModelStatus.AVAILABLE

    def list_models(self) -> list[ModelInfo]:
        """List all configured models with their residency status."""
        infos = []
        for model_id, definition in self._definitions.items():
            instance = self._resident.get(model_id)
            infos.append(
                ModelInfo(
                    definition=definition,
                    status=self.get_model_status(model_id),
                    active_requests=instance.active if instance is not None else 0,
                )
            )
        return infos

    @property
    def memory_used_gb(self) -> float:
        return sum(instance.definition.size_gb for instance in self._resident.values())

    # =========================================================================
    # Resolution
    # =========================================================================

    async def resolve(self, model_id: str) -> ModelInstance:
        """Return the resident instance for model_id, loading it if needed.

        Concurrent callers for the same id share one load.

        Raises:
            ModelNotFoundError: If model_id has no definition.
            IncompatibleArchitectureError: If no runtime can serve the definition.
            ModelLoadFailedError: If the load fails after retries.
            TemporaryResourceError: If every resident instance is pinned.
            ServiceShuttingDownError: If the registry is closed.
        """
        definition = self.get_definition(model_id)

        async with self._lock:
            if self._closed:
                raise ServiceShuttingDownError()

            instance = self._resident.get(model_id)
            if instance is not None:
                self._resident.move_to_end(model_id)
                instance.last_used = time.monotonic()
                return instance

            task = self._loading.get(model_id)
            if task is None:
                check_compatibility(definition)
                evicted = self._make_room(definition)
                task = asyncio.create_task(self._load(definition), name=f"load:{model_id}")
                self._loading[model_id] = task
            else:
                evicted = []

        await self._close_instances(evicted)
        # Shielded so one cancelled caller does not abort the shared load
        return await asyncio.shield(task)

    @asynccontextmanager
    async def checkout(self, model_id: str) -> AsyncIterator[ModelInstance]:
        """Resolve model_id and pin the instance for the duration of the block."""
        while True:
            instance = await self.resolve(model_id)
            # No await between the residency check and the pin
            if self._resident.get(model_id) is instance:
                instance.active += 1
                break

        try:
            yield instance
        finally:
            instance.active -= 1
            instance.last_used = time.monotonic()

    async def load(self, model_id: str) -> ModelInstance:
        """Preload a model without pinning it."""
        return await self.resolve(model_id)

    # =========================================================================
    # Unloading
    # =========================================================================

    async def unload(self, model_id: str) -> bool:
        """Remove a resident instance.

        Returns:
            True if an instance was unloaded, False if none was resident.

        Raises:
            ModelNotFoundError: If model_id has no definition.
            ModelBusyError: If the instance is pinned or still loading.
        """
        self.get_definition(model_id)
        async with self._lock:
            if model_id in self._loading:
                raise ModelBusyError(f"Model '{model_id}' is loading", model_id=model_id)
            instance = self._resident.get(model_id)
            if instance is None:
                return False
            if instance.pinned:
                raise ModelBusyError(
                    f"Model '{model_id}' has {instance.active} active requests",
                    model_id=model_id,
                    active_requests=instance.active,
                )
            del self._resident[model_id]

        await self._close_instances([instance])
        return True

    async def close(self) -> None:
        """Unload everything. Further resolves raise ServiceShuttingDownError."""
        async with self._lock:
            self._closed = True
            pending = list(self._loading.values())

        for task in pending:
            try:
                await asyncio.shield(task)
            except ModelRunnerError as e:
                logger.warning("Model load failed during shutdown", error=e.message)

        async with self._lock:
            instances = list(self._resident.values())
            self._resident.clear()

        await self._close_instances(instances)
        logger.info("Model registry closed", unloaded=len(instances))

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _make_room(self, definition: ModelDefinition) -> list[ModelInstance]:
        """Evict LRU unpinned instances until definition fits. Caller holds the lock.

        Nothing is evicted unless the model can be made to fit.
        """
        if definition.size_gb > self.memory_limit_gb:
            msg = (
                f"Model '{definition.id}' ({definition.size_gb:.1f}GB) exceeds the "
                f"memory limit ({self.memory_limit_gb:.1f}GB)"
            )
            raise ModelLoadFailedError(msg, model_id=definition.id)

        remaining = [i for i in self._resident.values() if i.model_id != definition.id]
        # In-flight loads will occupy room too
        reserved = [
            self._definitions[mid] for mid in self._loading if mid != definition.id and mid in self._definitions
        ]
        victims: list[ModelInstance] = []
        candidates = [i for i in remaining if not i.pinned]

        def fits() -> bool:
            count_ok = len(remaining) + len(reserved) + 1 <= self.max_resident_models
            memory = (
                sum(i.definition.size_gb for i in remaining)
                + sum(d.size_gb for d in reserved)
                + definition.size_gb
            )
            return count_ok and memory <= self.memory_limit_gb

        while not fits():
            if not candidates:
                raise TemporaryResourceError(
                    f"Cannot make room for '{definition.id}': every resident model is in use",
                    resource_type="memory",
                )
            victim = candidates.pop(0)
            remaining.remove(victim)
            victims.append(victim)

        for victim in victims:
            del self._resident[victim.model_id]
            logger.info("Evicting model", model_id=victim.model_id, reason="lru")
        return victims

    async def _load(self, definition: ModelDefinition) -> ModelInstance:
        try:
            runtime = await self._load_with_retries(definition)
        except BaseException:
            async with self._lock:
                self._loading.pop(definition.id, None)
            raise

        async with self._lock:
            self._loading.pop(definition.id, None)
            instance = ModelInstance(definition=definition, runtime=runtime)
            self._resident[definition.id] = instance

        logger.info(
            "Model loaded",
            model_id=definition.id,
            size_gb=definition.size_gb,
            memory_used_gb=round(self.memory_used_gb, 2),
        )
        return instance

    async def _load_with_retries(self, definition: ModelDefinition) -> Runtime:
        attempts = self._load_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.to_thread(self._loader, definition, self.cache_dir)
            except ModelLoadFailedError as e:
                e.attempts = attempt
                if not e.transient or attempt == attempts:
                    raise
                error_text = e.message
            except ModelRunnerError:
                raise
            except Exception as e:
                transient = isinstance(e, (ConnectionError, TimeoutError))
                if not transient or attempt == attempts:
                    raise ModelLoadFailedError(
                        f"Failed to load model '{definition.id}': {e}",
                        model_id=definition.id,
                        attempts=attempt,
                        transient=transient,
                    ) from e
                error_text = str(e)

            delay = self._load_retry_backoff * (2 ** (attempt - 1))
            logger.warning(
                "Transient model load failure, retrying",
                model_id=definition.id,
                attempt=attempt,
                retry_in_seconds=delay,
                error=error_text,
            )
            await asyncio.sleep(delay)

        msg = f"Failed to load model '{definition.id}'"
        raise ModelLoadFailedError(msg, model_id=definition.id, attempts=attempts)

    async def _close_instances(self, instances: list[ModelInstance]) -> None:
        for instance in instances:
            await asyncio.to_thread(instance.runtime.close)
            logger.info("Model unloaded", model_id=instance.model_id)
