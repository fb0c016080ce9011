"""Shared autoregressive decode loop.

run_decode_loop() is an explicit step loop meant to run in a worker thread.
It checks a threading.Event at the top of every step, so cancellation lands
between forward passes and never inside one.

Text and speech plug in through a DecodeTask: ``prime`` runs the first
forward pass over the prompt, ``step`` runs one pass over the newest token,
and ``is_stop`` recognizes the end-of-sequence token.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import numpy as np

from model_runner.core.exceptions import RequestCancelledError


class FinishReason(str, Enum):
    EOS = "eos"
    LENGTH = "length"


@dataclass
class DecodeState:
    """Per-request decode context. Created and discarded inside one call.

    Attributes:
        tokens: Prompt token ids followed by generated ids.
        prompt_length: Index of the first generated token.
        cache: Runtime cache object for this request.
        step: Number of forward passes run.
        finish_reason: Set when the loop ends normally.
    """

    tokens: list[int]
    prompt_length: int
    cache: Any = None
    step: int = 0
    finish_reason: FinishReason | None = None

    @classmethod
    def from_prompt(cls, prompt: list[int]) -> DecodeState:
        return cls(tokens=list(prompt), prompt_length=len(prompt))

    @property
    def generated(self) -> list[int]:
        return self.tokens[self.prompt_length :]


class DecodeTask(Protocol):
    """Forward-pass hooks for one decode family."""

    def prime(self, state: DecodeState) -> np.ndarray:
        """First forward pass over the whole prompt; returns next-token scores."""
        ...

    def step(self, state: DecodeState) -> np.ndarray:
        """Forward pass over the newest token; returns next-token scores."""
        ...

    def is_stop(self, token: int, state: DecodeState) -> bool:
        """True if token ends the sequence."""
        ...


TokenSelector = Callable[[np.ndarray, DecodeState], int]
TokenCallback = Callable[[int], None]


def run_decode_loop(
    task: DecodeTask,
    state: DecodeState,
    select: TokenSelector,
    max_steps: int,
    cancel: threading.Event | None = None,
    on_token: TokenCallback | None = None,
) -> DecodeState:
    """Decode until a stop token or max_steps generated tokens.

    The stop token is not appended to state.tokens.

    Args:
        task: Forward-pass hooks.
        state: Fresh state holding the prompt.
        select: Picks the next token from scores.
        max_steps: Upper bound on generated tokens.
        cancel: Checked before every step.
        on_token: Called with each accepted token.

    Returns:
        The same state, with finish_reason set.

    Raises:
        RequestCancelledError: If cancel is set before a step.
    """
    for index in range(max_steps):
        if cancel is not None and cancel.is_set():
            raise RequestCancelledError(generated_tokens=len(state.generated))

        scores = task.prime(state) if index == 0 else task.step(state)
        state.step += 1
        token = select(scores, state)
        if task.is_stop(token, state):
            state.finish_reason = FinishReason.EOS
            return state

        state.tokens.append(token)
        if on_token is not None:
            on_token(token)

    state.finish_reason = FinishReason.LENGTH
    return state
