"""Unit tests for the decode loop and GenerationEngine.

Uses FakeCausalLM, whose scores depend only on the token history.
"""

from __future__ import annotations

import threading

import numpy as np
import pytest

from model_runner.core.exceptions import (
    ContextBudgetExceededError,
    InferenceError,
    RequestCancelledError,
    ValidationError,
)
from model_runner.inference.decode import DecodeState, FinishReason, run_decode_loop
from model_runner.inference.generation import GenerationEngine, TokenOutputStream
from model_runner.models.definitions import ModelDefinition
from model_runner.models.requests import SamplingConfig
from model_runner.services.model_registry import ModelInstance
from tests.unit.fakes import FakeCausalLM, FakeWhisper


# =============================================================================
# Constants
# =============================================================================

PROMPT = "USER: Tell me a story. ASSISTANT:"
SEED = 12345


def _definition(**overrides: object) -> ModelDefinition:
    fields: dict[str, object] = {
        "id": "phi2",
        "family": "causal-lm",
        "source": {"repo": "microsoft/phi-2"},
        "context_length": 2048,
        "instruct_template": "Instruct: {input}\nOutput:",
        "eos_token": "<|endoftext|>",
    }
    fields.update(overrides)
    return ModelDefinition.model_validate(fields)


def _instance(runtime: FakeCausalLM | FakeWhisper | None = None, **overrides: object) -> ModelInstance:
    return ModelInstance(definition=_definition(**overrides), runtime=runtime or FakeCausalLM())


def _config(**overrides: object) -> SamplingConfig:
    fields: dict[str, object] = {
        "temperature": 0.6,
        "top_p": 0.8,
        "repeat_penalty": 0.8,
        "repeat_context_size": 64,
        "seed": SEED,
    }
    fields.update(overrides)
    return SamplingConfig.model_validate(fields)


# =============================================================================
# TestDecodeLoop
# =============================================================================


class _CountingTask:
    """Emits tokens 1, 2, 3, ... and stops on stop_token."""

    def __init__(self, stop_token: int | None = None) -> None:
        self.stop_token = stop_token
        self.primed = 0
        self.steps = 0

    def _scores(self, state: DecodeState) -> np.ndarray:
        scores = np.zeros(16, dtype=np.float32)
        scores[len(state.generated) + 1] = 1.0
        return scores

    def prime(self, state: DecodeState) -> np.ndarray:
        self.primed += 1
        return self._scores(state)

    def step(self, state: DecodeState) -> np.ndarray:
        self.steps += 1
        return self._scores(state)

    def is_stop(self, token: int, state: DecodeState) -> bool:
        return token == self.stop_token


def _argmax(scores: np.ndarray, state: DecodeState) -> int:
    return int(np.argmax(scores))


class TestDecodeLoop:
    """Shared loop: prime once, step after, stop token excluded."""

    def test_primes_once_then_steps(self) -> None:
        task = _CountingTask()
        state = run_decode_loop(task, DecodeState.from_prompt([0]), _argmax, max_steps=4)

        assert task.primed == 1
        assert task.steps == 3
        assert state.generated == [1, 2, 3, 4]
        assert state.finish_reason is FinishReason.LENGTH

    def test_stop_token_not_appended(self) -> None:
        state = run_decode_loop(_CountingTask(stop_token=3), DecodeState.from_prompt([0]), _argmax, max_steps=10)

        assert state.generated == [1, 2]
        assert state.finish_reason is FinishReason.EOS

    def test_cancel_checked_before_each_step(self) -> None:
        cancel = threading.Event()
        seen: list[int] = []

        def on_token(token: int) -> None:
            seen.append(token)
            if len(seen) == 2:
                cancel.set()

        with pytest.raises(RequestCancelledError) as exc_info:
            run_decode_loop(
                _CountingTask(), DecodeState.from_prompt([0]), _argmax, max_steps=10, cancel=cancel, on_token=on_token
            )

        assert seen == [1, 2]
        assert exc_info.value.generated_tokens == 2


# =============================================================================
# TestTokenOutputStream
# =============================================================================


class TestTokenOutputStream:
    """Text is released once a decoded window ends alphanumeric."""

    @staticmethod
    def _decode(ids: list[int]) -> str:
        return bytes(ids).decode("utf-8", errors="replace")

    def test_multibyte_character_released_whole(self) -> None:
        stream = TokenOutputStream(self._decode)
        first, second = "é".encode()

        assert stream.next_token(first) is None
        assert stream.next_token(second) == "é"

    def test_punctuation_held_until_rest(self) -> None:
        stream = TokenOutputStream(self._decode)
        pieces = [stream.next_token(b) for b in b"hi!"]

        assert pieces == ["h", "i", None]
        assert stream.decode_rest() == "!"

    def test_decode_rest_empty_when_flushed(self) -> None:
        stream = TokenOutputStream(self._decode)
        stream.next_token(ord("a"))

        assert stream.decode_rest() is None


# =============================================================================
# TestGenerationEngine
# =============================================================================


class TestGenerationEngine:
    """GenerationEngine.generate over a fake causal runtime."""

    def test_same_seed_same_text(self) -> None:
        engine = GenerationEngine()
        first = engine.generate(_instance(), PROMPT, _config(), max_length=100)
        second = engine.generate(_instance(), PROMPT, _config(), max_length=100)

        assert first.text == second.text
        assert first.generated_tokens == second.generated_tokens <= 100
        assert first.seed == SEED

    def test_greedy_ignores_seed(self) -> None:
        engine = GenerationEngine()
        texts = {
            engine.generate(_instance(), PROMPT, _config(temperature=0.0, seed=seed), max_length=20).text
            for seed in (1, 2, 3)
        }

        assert len(texts) == 1

    def test_stops_at_max_length(self) -> None:
        result = GenerationEngine().generate(_instance(), PROMPT, _config(), max_length=7)

        assert result.generated_tokens == 7
        assert result.finish_reason == FinishReason.LENGTH.value

    def test_stops_on_eos_without_emitting_it(self) -> None:
        runtime = FakeCausalLM(eos_after=5)
        result = GenerationEngine().generate(_instance(runtime), PROMPT, _config(), max_length=50)

        assert result.generated_tokens == 5
        assert result.finish_reason == FinishReason.EOS.value
        assert "<|endoftext|>" not in result.text

    def test_prompt_fed_once_then_single_tokens(self) -> None:
        runtime = FakeCausalLM()
        GenerationEngine().generate(_instance(runtime), PROMPT, _config(), max_length=4)

        assert runtime.calls == [len(PROMPT), 1, 1, 1]

    def test_definition_eos_override(self) -> None:
        runtime = FakeCausalLM(eos_token=None)
        # The runtime reports no EOS; the definition supplies it
        result = GenerationEngine().generate(_instance(runtime), PROMPT, _config(), max_length=50)

        assert result.generated_tokens == 50

    def test_missing_eos_raises(self) -> None:
        runtime = FakeCausalLM(eos_token=None)
        instance = _instance(runtime, eos_token=None)

        with pytest.raises(InferenceError, match="end-of-sequence"):
            GenerationEngine().generate(instance, PROMPT, _config(), max_length=5)

    def test_unknown_eos_override_raises(self) -> None:
        instance = _instance(eos_token="<|missing|>")

        with pytest.raises(InferenceError, match="Cannot find"):
            GenerationEngine().generate(instance, PROMPT, _config(), max_length=5)

    def test_empty_prompt_raises(self) -> None:
        with pytest.raises(ValidationError):
            GenerationEngine().generate(_instance(), "", _config(), max_length=5)

    def test_context_budget_exceeded(self) -> None:
        instance = _instance(context_length=40)

        with pytest.raises(ContextBudgetExceededError):
            GenerationEngine().generate(instance, PROMPT, _config(), max_length=10)

    def test_cancel_raises_without_text(self) -> None:
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(RequestCancelledError):
            GenerationEngine().generate(_instance(), PROMPT, _config(), max_length=5, cancel=cancel)

    def test_speech_runtime_rejected(self) -> None:
        with pytest.raises(ValidationError, match="does not generate text"):
            GenerationEngine().generate(_instance(FakeWhisper()), PROMPT, _config(), max_length=5)

    def test_instruct_wraps_prompt(self) -> None:
        runtime = FakeCausalLM()
        GenerationEngine().instruct(_instance(runtime), "Say hi", _config(), max_length=1)

        assert runtime.calls[0] == len("Instruct: Say hi\nOutput:")
