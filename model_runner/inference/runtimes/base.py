"""Runtime adapters: the forward-pass primitives the decode loops drive.

A runtime owns weights and tokenizer for one resident model. It holds no
per-request state; every call takes and returns the request's own cache
object, which the decode loop keeps in DecodeState.

Patterns applied:
- ABC with @abstractmethod decorator
- Runtimes are synchronous; callers run them in worker threads
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import numpy as np


class Runtime(ABC):
    """Common surface of all runtimes."""

    #: Upper bound on concurrent decode streams this backend supports
    max_concurrency: int | None = None

    @property
    @abstractmethod
    def vocab_size(self) -> int:
        """Size of the score vector returned by forward passes."""

    @abstractmethod
    def token_to_id(self, token: str) -> int | None:
        """Return the id of a literal vocabulary entry, or None."""

    @abstractmethod
    def decode(self, ids: Sequence[int], skip_special_tokens: bool = True) -> str:
        """Convert token ids to text."""

    def close(self) -> None:
        """Release weights and device memory."""
        return None


class CausalLMRuntime(Runtime):
    """Decoder-only language model."""

    @property
    @abstractmethod
    def eos_token_id(self) -> int | None:
        """End-of-sequence id reported by the tokenizer."""

    @abstractmethod
    def encode(self, text: str) -> list[int]:
        """Tokenize a prompt, adding the model's special prefix tokens."""

    @abstractmethod
    def forward(self, new_tokens: Sequence[int], cache: Any) -> tuple[np.ndarray, Any]:
        """Run one forward pass.

        Args:
            new_tokens: Tokens not yet covered by cache; the full prompt on
                the first step, the last sampled token afterwards.
            cache: Request-scoped cache from the previous call, or None.

        Returns:
            Tuple of (scores for the last position, updated cache).
        """


class SpeechSeq2SeqRuntime(Runtime):
    """Encoder-decoder speech recognition model (Whisper conventions)."""

    @property
    @abstractmethod
    def num_mel_bins(self) -> int:
        """Mel bins the encoder expects."""

    @property
    @abstractmethod
    def max_target_positions(self) -> int:
        """Maximum decoder sequence length."""

    @property
    @abstractmethod
    def suppress_tokens(self) -> Sequence[int]:
        """Token ids that must never be sampled."""

    @abstractmethod
    def encode_audio(self, mel: np.ndarray) -> Any:
        """Run the encoder over one (n_mels, frames) log-mel segment."""

    @abstractmethod
    def decoder_forward(
        self, new_tokens: Sequence[int], features: Any, cache: Any
    ) -> tuple[np.ndarray, Any]:
        """Run one decoder pass cross-attending features.

        Returns:
            Tuple of (scores for every position in new_tokens with shape
            (len(new_tokens), vocab_size), updated cache).
        """
