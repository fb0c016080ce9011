"""Text generation over a causal language model.

GenerationEngine.generate() encodes a prompt, drives the shared decode loop
with the sampling policy and detokenizes incrementally. It is blocking and
is meant to run inside Scheduler.run_in_worker().
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from model_runner.core.exceptions import (
    ContextBudgetExceededError,
    InferenceError,
    ModelRunnerError,
    ValidationError,
)
from model_runner.core.logging import get_logger
from model_runner.inference.decode import DecodeState, run_decode_loop
from model_runner.inference.runtimes.base import CausalLMRuntime
from model_runner.inference.sampling import RepeatPenaltyScheme, new_generator, select_token


if TYPE_CHECKING:
    from model_runner.models.definitions import ModelDefinition
    from model_runner.models.requests import SamplingConfig
    from model_runner.services.model_registry import ModelInstance


logger = get_logger(__name__)


@dataclass(frozen=True)
class GenerationResult:
    text: str
    generated_tokens: int
    finish_reason: str
    seed: int
    inference_time: float


class TokenOutputStream:
    """Incremental detokenizer.

    Text is emitted only once the decoded window ends in an alphanumeric
    character, so byte-level pieces of one character are never split.
    """

    def __init__(self, decode: Callable[[Sequence[int]], str]) -> None:
        self._decode = decode
        self._tokens: list[int] = []
        self._prev_index = 0
        self._current_index = 0

    def next_token(self, token: int) -> str | None:
        prev_text = self._decode(self._tokens[self._prev_index : self._current_index]) if self._tokens else ""
        self._tokens.append(token)
        text = self._decode(self._tokens[self._prev_index :])
        if len(text) > len(prev_text) and text[-1].isalnum():
            self._prev_index = self._current_index
            self._current_index = len(self._tokens)
            return text[len(prev_text) :]
        return None

    def decode_rest(self) -> str | None:
        prev_text = self._decode(self._tokens[self._prev_index : self._current_index])
        text = self._decode(self._tokens[self._prev_index :])
        if len(text) > len(prev_text):
            return text[len(prev_text) :]
        return None


class CausalDecodeTask:
    """DecodeTask feeding the prompt once, then one token per step."""

    def __init__(self, runtime: CausalLMRuntime, eos_token_id: int) -> None:
        self._runtime = runtime
        self._eos_token_id = eos_token_id

    def prime(self, state: DecodeState) -> np.ndarray:
        scores, state.cache = self._runtime.forward(state.tokens, None)
        return scores

    def step(self, state: DecodeState) -> np.ndarray:
        scores, state.cache = self._runtime.forward(state.tokens[-1:], state.cache)
        return scores

    def is_stop(self, token: int, state: DecodeState) -> bool:
        return token == self._eos_token_id


class GenerationEngine:
    """Runs text generation requests against a resident causal LM."""

    def __init__(self, penalty_scheme: RepeatPenaltyScheme = RepeatPenaltyScheme.SIGNED) -> None:
        self._penalty_scheme = penalty_scheme

    @staticmethod
    def resolve_eos(runtime: CausalLMRuntime, definition: ModelDefinition) -> int:
        """Return the stop token: the definition override, else the runtime's.

        Raises:
            InferenceError: If no end-of-sequence token can be found.
        """
        if definition.eos_token is not None:
            token_id = runtime.token_to_id(definition.eos_token)
            if token_id is None:
                msg = f"Cannot find {definition.eos_token} token"
                raise InferenceError(msg, model_id=definition.id)
            return token_id

        if runtime.eos_token_id is None:
            msg = "Model has no end-of-sequence token"
            raise InferenceError(msg, model_id=definition.id)
        return runtime.eos_token_id

    def generate(
        self,
        instance: ModelInstance,
        prompt: str,
        config: SamplingConfig,
        max_length: int,
        cancel: threading.Event | None = None,
    ) -> GenerationResult:
        """Generate up to max_length tokens continuing prompt.

        Raises:
            ValidationError: If the prompt encodes to no tokens.
            ContextBudgetExceededError: If prompt plus max_length exceeds the context.
            RequestCancelledError: If cancel is set mid-decode.
            InferenceError: If the runtime or the sampler fails.
        """
        definition = instance.definition
        runtime = instance.runtime
        if not isinstance(runtime, CausalLMRuntime):
            msg = f"Model '{definition.id}' does not generate text"
            raise ValidationError(msg, field="model", value=definition.id)

        tokens = runtime.encode(prompt)
        if not tokens:
            raise ValidationError("Prompt is empty", field="input")

        requested = len(tokens) + max_length
        if requested > definition.context_length:
            raise ContextBudgetExceededError(requested, definition.context_length, model=definition.id)

        eos_token_id = self.resolve_eos(runtime, definition)
        rng = new_generator(config.seed)
        state = DecodeState.from_prompt(tokens)
        stream = TokenOutputStream(runtime.decode)
        pieces: list[str] = []

        def select(scores: np.ndarray, current: DecodeState) -> int:
            return select_token(scores, current.tokens, config, rng, self._penalty_scheme)

        def emit(token: int) -> None:
            text = stream.next_token(token)
            if text is not None:
                pieces.append(text)

        start = time.perf_counter()
        try:
            run_decode_loop(
                CausalDecodeTask(runtime, eos_token_id),
                state,
                select,
                max_steps=max_length,
                cancel=cancel,
                on_token=emit,
            )
        except ModelRunnerError:
            raise
        except Exception as e:
            msg = f"Generation failed for {definition.id}: {e}"
            raise InferenceError(msg, model_id=definition.id) from e

        rest = stream.decode_rest()
        if rest is not None:
            pieces.append(rest)
        inference_time = time.perf_counter() - start

        logger.info(
            "Generation complete",
            model_id=definition.id,
            prompt_tokens=state.prompt_length,
            generated_tokens=len(state.generated),
            finish_reason=state.finish_reason.value,
            inference_time=round(inference_time, 4),
        )
        return GenerationResult(
            text="".join(pieces),
            generated_tokens=len(state.generated),
            finish_reason=state.finish_reason.value,
            seed=config.seed,
            inference_time=inference_time,
        )

    def instruct(
        self,
        instance: ModelInstance,
        prompt: str,
        config: SamplingConfig,
        max_length: int,
        cancel: threading.Event | None = None,
    ) -> GenerationResult:
        """Generate after wrapping prompt in the model's instruct template."""
        return self.generate(instance, instance.definition.render_instruct(prompt), config, max_length, cancel)
