"""Token selection for autoregressive decoding.

select_token() turns one step's score vector into a token id:

1. temperature scaling (greedy argmax when temperature is ~0)
2. repeat penalty over the trailing history window
3. max-shifted softmax
4. nucleus (top-p) filtering
5. a draw from the per-request generator

The policy is pure: identical scores, history, config and generator state
always produce the same token.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

import numpy as np

from model_runner.core.constants import GREEDY_TEMPERATURE_EPSILON
from model_runner.core.exceptions import InferenceError


if TYPE_CHECKING:
    from collections.abc import Sequence

    from model_runner.models.requests import SamplingConfig


class RepeatPenaltyScheme(str, Enum):
    """Formula used to dampen recently seen tokens.

    SIGNED divides non-negative scores and multiplies negative ones, so the
    penalty always lowers the score when the factor is above 1. UNIFORM
    divides every score by the factor.
    """

    SIGNED = "signed"
    UNIFORM = "uniform"


def new_generator(seed: int) -> np.random.Generator:
    """Create the per-request generator for a seed."""
    return np.random.Generator(np.random.PCG64(seed))


def is_greedy(temperature: float | None) -> bool:
    return temperature is None or temperature < GREEDY_TEMPERATURE_EPSILON


def apply_repeat_penalty(
    scores: np.ndarray,
    history: Sequence[int],
    penalty: float,
    context_size: int,
    scheme: RepeatPenaltyScheme = RepeatPenaltyScheme.SIGNED,
) -> np.ndarray:
    """Dampen scores of tokens in the last context_size history entries."""
    if penalty == 1.0 or context_size <= 0 or not history:
        return scores

    window = np.unique(np.asarray(history[-context_size:], dtype=np.int64))
    window = window[(window >= 0) & (window < scores.shape[0])]
    if window.size == 0:
        return scores

    out = scores.copy()
    selected = out[window]
    if scheme is RepeatPenaltyScheme.SIGNED:
        out[window] = np.where(selected >= 0, selected / penalty, selected * penalty)
    else:
        out[window] = selected / penalty
    return out


def softmax(scores: np.ndarray) -> np.ndarray:
    """Max-shifted softmax in float64."""
    shifted = scores.astype(np.float64) - np.max(scores)
    exp = np.exp(shifted)
    total = exp.sum()
    if not np.isfinite(total) or total <= 0.0:
        msg = "Score normalization produced an invalid distribution"
        raise InferenceError(msg)
    return exp / total


def top_p_filter(probs: np.ndarray, top_p: float | None) -> np.ndarray:
    """Keep the smallest descending-probability prefix reaching top_p."""
    if top_p is None or top_p <= 0.0 or top_p >= 1.0:
        return probs

    order = np.argsort(-probs, kind="stable")
    cumulative = np.cumsum(probs[order])
    cutoff = int(np.searchsorted(cumulative, top_p)) + 1
    keep = order[: min(cutoff, probs.shape[0])]

    filtered = np.zeros_like(probs)
    filtered[keep] = probs[keep]
    total = filtered.sum()
    if not np.isfinite(total) or total <= 0.0:
        msg = "Nucleus filtering removed every candidate token"
        raise InferenceError(msg)
    return filtered / total


def sample_from(probs: np.ndarray, rng: np.random.Generator) -> int:
    """Draw one index from a normalized distribution."""
    cumulative = np.cumsum(probs)
    draw = rng.random() * cumulative[-1]
    index = int(np.searchsorted(cumulative, draw, side="right"))
    return min(index, probs.shape[0] - 1)


def _validate(scores: np.ndarray) -> None:
    if scores.ndim != 1 or scores.shape[0] == 0:
        msg = "Score vector is empty"
        raise InferenceError(msg)
    if np.isnan(scores).any():
        msg = "Score vector contains NaN"
        raise InferenceError(msg)
    if not np.any(scores):
        msg = "Score vector is all zeros"
        raise InferenceError(msg)


def select_token(
    scores: np.ndarray,
    history: Sequence[int],
    config: SamplingConfig,
    rng: np.random.Generator,
    scheme: RepeatPenaltyScheme = RepeatPenaltyScheme.SIGNED,
) -> int:
    """Select the next token id from one step's scores.

    Args:
        scores: Dense 1-D score vector over the vocabulary.
        history: Token ids seen so far, prompt included.
        config: Sampling parameters of the request.
        rng: Per-request generator, advanced by one draw when sampling.
        scheme: Repeat penalty formula.

    Returns:
        Selected token id.

    Raises:
        InferenceError: If the scores are empty, all zero, contain NaN, or
            normalize to an invalid distribution.
    """
    scores = np.asarray(scores)
    _validate(scores)

    if is_greedy(config.temperature):
        return int(np.argmax(scores))

    scaled = scores.astype(np.float64) / config.temperature
    penalized = apply_repeat_penalty(
        scaled, history, config.repeat_penalty, config.repeat_context_size, scheme
    )
    probs = top_p_filter(softmax(penalized), config.top_p)
    return sample_from(probs, rng)
