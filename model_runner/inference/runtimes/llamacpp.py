"""llama.cpp runtime for GGUF checkpoints.

The llama.cpp context keeps one KV cache for the whole model. It is used here
only as a prefix cache: before every evaluation the cached tokens are compared
with the calling request's own token history, and anything past the common
prefix is discarded and re-evaluated. A stale cache from another request can
therefore cost time but never change results.

The backend is not reentrant, so this runtime always serves one stream at a
time (max_concurrency = 1).
"""

from __future__ import annotations

import platform
from collections.abc import Sequence
from typing import Any

import llama_cpp
import numpy as np

from model_runner.core.logging import get_logger
from model_runner.inference.runtimes.base import CausalLMRuntime
from model_runner.inference.runtimes.sources import resolve_model_file
from model_runner.models.definitions import ModelDefinition


logger = get_logger(__name__)


def _common_prefix_length(cached: Sequence[int], wanted: Sequence[int]) -> int:
    length = 0
    for a, b in zip(cached, wanted):
        if a != b:
            break
        length += 1
    return length


class LlamaCppCausalLM(CausalLMRuntime):
    """GGUF model evaluated through llama-cpp-python.

    The request cache is the list of token ids this request has fed so far.
    """

    max_concurrency = 1

    def __init__(self, llm: llama_cpp.Llama) -> None:
        self._llm = llm

    @classmethod
    def load(cls, definition: ModelDefinition, cache_dir: str, n_gpu_layers: int = -1) -> LlamaCppCausalLM:
        """Fetch and load a GGUF file.

        Raises:
            ModelLoadFailedError: If the file cannot be fetched.
        """
        model_path = resolve_model_file(definition, cache_dir)
        llm = llama_cpp.Llama(
            model_path=str(model_path),
            n_ctx=definition.context_length,
            n_gpu_layers=n_gpu_layers,
            logits_all=False,
            verbose=False,
        )
        logger.info(
            "GGUF model loaded",
            model_id=definition.id,
            path=str(model_path),
            metal=platform.system() == "Darwin" and n_gpu_layers != 0,
        )
        return cls(llm)

    @property
    def vocab_size(self) -> int:
        return int(self._llm.n_vocab())

    @property
    def eos_token_id(self) -> int | None:
        eos = self._llm.token_eos()
        return None if eos < 0 else int(eos)

    def token_to_id(self, token: str) -> int | None:
        ids = self._llm.tokenize(token.encode("utf-8"), add_bos=False, special=True)
        return int(ids[0]) if len(ids) == 1 else None

    def encode(self, text: str) -> list[int]:
        return list(self._llm.tokenize(text.encode("utf-8"), add_bos=True, special=True))

    def decode(self, ids: Sequence[int], skip_special_tokens: bool = True) -> str:
        raw = self._llm.detokenize(list(ids), special=not skip_special_tokens)
        return raw.decode("utf-8", errors="replace")

    def forward(self, new_tokens: Sequence[int], cache: Any) -> tuple[np.ndarray, Any]:
        history: list[int] = list(cache or []) + list(new_tokens)
        llm = self._llm

        # Reuse the shared context only up to where it agrees with this request.
        # input_ids spans n_ctx; entries past n_tokens are stale.
        cached = llm.input_ids[: llm.n_tokens].tolist()
        prefix = _common_prefix_length(cached, history[:-1])
        if prefix < llm.n_tokens:
            llm.n_tokens = prefix

        llm.eval(history[prefix:])
        logits = llama_cpp.llama_get_logits(llm.ctx)
        scores = np.ctypeslib.as_array(logits, shape=(self.vocab_size,)).astype(np.float32, copy=True)
        return scores, history

    def close(self) -> None:
        llm, self._llm = self._llm, None
        if llm is not None:
            llm.close()
