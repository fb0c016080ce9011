"""Scheduler service for request admission and concurrency control.

This module implements:
- One FIFO ModelQueue per model id with a concurrency limit
- Backpressure when the waiting count reaches max_queue_depth
- Admission timeout for requests waiting on a slot
- Running blocking decode loops in worker threads with cooperative cancellation
- Draining in-flight requests at shutdown
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from model_runner.auth.permissions import Operation, require, target_owner_for
from model_runner.core.exceptions import (
    AdmissionTimeoutError,
    BackpressureError,
    InferenceTimeoutError,
    ModelRunnerError,
    RequestCancelledError,
    ServiceShuttingDownError,
)
from model_runner.core.logging import get_logger


if TYPE_CHECKING:
    from model_runner.auth.clients import ApiClient
    from model_runner.services.model_registry import ModelRegistry


logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class QueueStats:
    """Snapshot of one model queue.

    Attributes:
        model_id: Model the queue serves.
        active: Requests holding a slot.
        waiting: Requests waiting for a slot.
        processed: Requests that held and released a slot.
        max_concurrent: Slot count.
        max_queue_depth: Waiting-request limit.
    """

    model_id: str
    active: int
    waiting: int
    processed: int
    max_concurrent: int
    max_queue_depth: int


class ModelQueue:
    """FIFO admission queue for one model.

    A released slot is handed directly to the oldest waiter, so a late
    arrival never takes a slot ahead of a queued request.
    """

    def __init__(self, model_id: str, max_concurrent: int = 1, max_queue_depth: int = 8) -> None:
        self.model_id = model_id
        self.max_concurrent = max_concurrent
        self.max_queue_depth = max_queue_depth
        self._active = 0
        self._processed = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    @property
    def processed(self) -> int:
        return self._processed

    def stats(self) -> QueueStats:
        return QueueStats(
            model_id=self.model_id,
            active=self._active,
            waiting=self.waiting,
            processed=self._processed,
            max_concurrent=self.max_concurrent,
            max_queue_depth=self.max_queue_depth,
        )

    async def acquire(self, timeout: float | None = None) -> None:
        """Take a slot, waiting FIFO for at most timeout seconds.

        Raises:
            BackpressureError: If max_queue_depth requests are already waiting.
            AdmissionTimeoutError: If no slot was handed over in time.
        """
        if self._active < self.max_concurrent and not self._waiters:
            self._active += 1
            return

        if len(self._waiters) >= self.max_queue_depth:
            logger.warning(
                "Queue full, rejecting request",
                model_id=self.model_id,
                waiting=len(self._waiters),
                max_queue_depth=self.max_queue_depth,
            )
            raise BackpressureError(
                f"Queue for model '{self.model_id}' is full",
                model_id=self.model_id,
                max_queue_depth=self.max_queue_depth,
                waiting=len(self._waiters),
            )

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            self._abandon(waiter)
            logger.warning("Admission timed out", model_id=self.model_id, timeout_seconds=timeout)
            raise AdmissionTimeoutError(
                f"Timed out waiting for model '{self.model_id}'",
                model_id=self.model_id,
                timeout_seconds=timeout,
            ) from None
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

    def release(self) -> None:
        """Hand the slot to the oldest live waiter, or free it."""
        self._processed += 1
        self._hand_off()

    def reject_waiters(self, error: ModelRunnerError) -> int:
        """Fail every waiter with error. Returns how many were rejected."""
        rejected = 0
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(error)
                rejected += 1
        return rejected

    def _hand_off(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Slot ownership moves to the waiter; active count is unchanged
                waiter.set_result(None)
                return
        self._active -= 1

    def _abandon(self, waiter: asyncio.Future[None]) -> None:
        if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
            # The slot was handed over as the wait ended; pass it on
            self._hand_off()
            return
        waiter.cancel()
        if waiter in self._waiters:
            self._waiters.remove(waiter)


class Slot:
    """An admitted request's hold on a queue slot."""

    def __init__(self, queue: ModelQueue) -> None:
        self._queue = queue
        self._released = False

    @property
    def model_id(self) -> str:
        return self._queue.model_id

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Return the slot. Calls after the first are no-ops."""
        if self._released:
            return
        self._released = True
        self._queue.release()


class Scheduler:
    """Admission gate in front of the model registry.

    Attributes:
        max_concurrent_per_model: Slot count for definitions without max_concurrency.
        max_queue_depth: Waiting-request limit per model.
        admission_timeout: Seconds a request may wait for a slot.
        request_timeout: Seconds an admitted request may run.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        max_concurrent_per_model: int = 1,
        max_queue_depth: int = 8,
        admission_timeout: float = 30.0,
        request_timeout: float = 300.0,
    ) -> None:
        self._registry = registry
        self.max_concurrent_per_model = max_concurrent_per_model
        self.max_queue_depth = max_queue_depth
        self.admission_timeout = admission_timeout
        self.request_timeout = request_timeout

        self._queues: dict[str, ModelQueue] = {}
        self._in_flight = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self._shutting_down = False

    @property
    def accepting(self) -> bool:
        return not self._shutting_down

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def queue_for(self, model_id: str) -> ModelQueue:
        """Get or create the queue for a configured model.

        Raises:
            ModelNotFoundError: If model_id has no definition.
        """
        queue = self._queues.get(model_id)
        if queue is None:
            definition = self._registry.get_definition(model_id)
            queue = ModelQueue(
                model_id,
                max_concurrent=definition.max_concurrency or self.max_concurrent_per_model,
                max_queue_depth=self.max_queue_depth,
            )
            self._queues[model_id] = queue
        return queue

    @asynccontextmanager
    async def admit(
        self,
        caller: ApiClient,
        model_id: str,
        operation: Operation = Operation.USE,
        target_owner: str | None = None,
    ) -> AsyncIterator[Slot]:
        """Admit a request into model_id's queue and hold a slot for the block.

        The permission check runs before any queue is touched.

        Raises:
            ServiceShuttingDownError: If shutdown has started.
            ModelNotFoundError: If model_id has no definition.
            PermissionDeniedError: If the caller may not perform operation.
            BackpressureError: If the queue is full.
            AdmissionTimeoutError: If no slot frees up in time.
        """
        if self._shutting_down:
            raise ServiceShuttingDownError()

        definition = self._registry.get_definition(model_id)
        if target_owner is None:
            target_owner = target_owner_for(caller, definition.owner)
        require(caller, operation, target_owner)

        queue = self.queue_for(model_id)
        await queue.acquire(self.admission_timeout)

        slot = Slot(queue)
        self._in_flight += 1
        self._drained.clear()
        try:
            yield slot
        finally:
            slot.release()
            self._in_flight -= 1
            if self._in_flight == 0:
                self._drained.set()

    async def run_in_worker(
        self,
        fn: Callable[[threading.Event], T],
        timeout: float | None = None,
    ) -> T:
        """Run fn(cancel) in a worker thread under the in-flight deadline.

        On task cancellation or timeout the cancel event is set and the
        thread is awaited until it stops at its next step boundary.

        Raises:
            RequestCancelledError: If the awaiting task was cancelled.
            InferenceTimeoutError: If timeout seconds elapsed.
        """
        if timeout is None:
            timeout = self.request_timeout

        cancel = threading.Event()
        worker = asyncio.ensure_future(asyncio.to_thread(fn, cancel))
        try:
            return await asyncio.wait_for(asyncio.shield(worker), timeout)
        except asyncio.TimeoutError:
            cancel.set()
            _, interrupted = await self._join(worker)
            if interrupted:
                logger.info("Request cancelled after timeout")
                raise asyncio.CancelledError() from None
            logger.warning("Inference timed out", timeout_seconds=timeout)
            raise InferenceTimeoutError(
                f"Request exceeded {timeout:.1f}s",
                timeout_seconds=timeout,
            ) from None
        except asyncio.CancelledError:
            cancel.set()
            stopped, _ = await self._join(worker)
            logger.info("Request cancelled")
            if isinstance(stopped, RequestCancelledError):
                raise stopped from None
            raise RequestCancelledError() from None

    async def shutdown(self, timeout: float | None = None) -> dict[str, QueueStats]:
        """Stop admitting, fail waiters and drain in-flight requests.

        Returns:
            Per-model queue stats after draining.
        """
        self._shutting_down = True
        rejected = sum(queue.reject_waiters(ServiceShuttingDownError()) for queue in self._queues.values())

        logger.info("Scheduler draining", in_flight=self._in_flight, rejected=rejected)
        try:
            await asyncio.wait_for(self._drained.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Drain timed out", in_flight=self._in_flight, timeout_seconds=timeout)

        return self.stats()

    def stats(self) -> dict[str, QueueStats]:
        return {model_id: queue.stats() for model_id, queue in self._queues.items()}

    @staticmethod
    async def _join(worker: asyncio.Future[T]) -> tuple[BaseException | None, bool]:
        """Wait until the worker thread has returned.

        Further cancellations of the awaiting task are absorbed until then,
        so the caller's slot outlives the thread.

        Returns:
            The worker's exception, if any, and whether the wait was cancelled.
        """
        interrupted = False
        while not worker.done():
            try:
                await asyncio.wait({worker})
            except asyncio.CancelledError:
                interrupted = True
        if worker.cancelled():
            return None, interrupted
        return worker.exception(), interrupted
