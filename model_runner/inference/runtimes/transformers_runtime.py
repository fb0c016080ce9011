"""transformers/torch runtimes.

TransformersCausalLM serves decoder-only checkpoints through
AutoModelForCausalLM. TransformersWhisper serves Whisper-style
encoder-decoder checkpoints through WhisperForConditionalGeneration.

Both return the model's ``past_key_values`` as the request cache, so a
forward pass after the first one only feeds the newest token.
"""

from __future__ import annotations

import gc
from collections.abc import Sequence
from typing import Any

import numpy as np
import torch

from model_runner.core.exceptions import IncompatibleArchitectureError
from model_runner.core.logging import get_logger
from model_runner.inference.runtimes.base import CausalLMRuntime, SpeechSeq2SeqRuntime
from model_runner.inference.runtimes.sources import resolve_model_dir, resolve_tokenizer_dir
from model_runner.models.definitions import ModelDefinition, Precision


logger = get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

TORCH_DTYPES: dict[Precision, torch.dtype] = {
    Precision.FLOAT32: torch.float32,
    Precision.FLOAT16: torch.float16,
    Precision.BFLOAT16: torch.bfloat16,
}


def select_device() -> str:
    """Pick the best available torch device."""
    if torch.backends.mps.is_available():
        return "mps"
    if torch.cuda.is_available():
        return "cuda"
    return "cpu"


def _release_device_memory() -> None:
    gc.collect()
    if torch.backends.mps.is_available():
        torch.mps.empty_cache()
    elif torch.cuda.is_available():
        torch.cuda.empty_cache()


def _dtype_for(definition: ModelDefinition, device: str) -> torch.dtype:
    dtype = TORCH_DTYPES[definition.precision]
    # Half precision matmuls are not implemented for every CPU kernel
    if device == "cpu" and dtype == torch.float16:
        logger.warning("float16 is unsupported on CPU; using float32", model_id=definition.id)
        return torch.float32
    return dtype


# =============================================================================
# Causal LM
# =============================================================================


class TransformersCausalLM(CausalLMRuntime):
    """Decoder-only model driven one forward pass at a time."""

    def __init__(self, model: Any, tokenizer: Any, device: str) -> None:
        self._model = model
        self._tokenizer = tokenizer
        self._device = device
        self._vocab = tokenizer.get_vocab()

    @classmethod
    def load(cls, definition: ModelDefinition, cache_dir: str) -> TransformersCausalLM:
        """Fetch and load a causal-lm checkpoint.

        Raises:
            IncompatibleArchitectureError: If the checkpoint is encoder-decoder.
            ModelLoadFailedError: If the weights cannot be fetched.
        """
        from transformers import AutoConfig, AutoModelForCausalLM, AutoTokenizer

        model_dir = resolve_model_dir(definition, cache_dir)
        config = AutoConfig.from_pretrained(model_dir)
        if getattr(config, "is_encoder_decoder", False):
            msg = f"Model '{definition.id}' is declared causal-lm but its config is encoder-decoder ({config.model_type})"
            raise IncompatibleArchitectureError(
                msg, model_id=definition.id, family=definition.family.value, backend=definition.backend.value
            )

        device = select_device()
        tokenizer = AutoTokenizer.from_pretrained(resolve_tokenizer_dir(definition, model_dir, cache_dir))
        model = AutoModelForCausalLM.from_pretrained(
            model_dir,
            config=config,
            torch_dtype=_dtype_for(definition, device),
        )
        model.to(device)
        model.eval()

        logger.info("Causal LM loaded", model_id=definition.id, device=device, model_type=config.model_type)
        return cls(model, tokenizer, device)

    @property
    def vocab_size(self) -> int:
        return int(self._model.config.vocab_size)

    @property
    def eos_token_id(self) -> int | None:
        return self._tokenizer.eos_token_id

    def token_to_id(self, token: str) -> int | None:
        return self._vocab.get(token)

    def encode(self, text: str) -> list[int]:
        return list(self._tokenizer.encode(text, add_special_tokens=True))

    def decode(self, ids: Sequence[int], skip_special_tokens: bool = True) -> str:
        return self._tokenizer.decode(list(ids), skip_special_tokens=skip_special_tokens)

    def forward(self, new_tokens: Sequence[int], cache: Any) -> tuple[np.ndarray, Any]:
        input_ids = torch.tensor([list(new_tokens)], dtype=torch.long, device=self._device)
        with torch.inference_mode():
            outputs = self._model(input_ids=input_ids, past_key_values=cache, use_cache=True)
        scores = outputs.logits[0, -1].float().cpu().numpy()
        return scores, outputs.past_key_values

    def close(self) -> None:
        self._model = None
        self._tokenizer = None
        _release_device_memory()


# =============================================================================
# Whisper
# =============================================================================


class TransformersWhisper(SpeechSeq2SeqRuntime):
    """Whisper encoder-decoder driven one decoder pass at a time."""

    def __init__(self, model: Any, tokenizer: Any, device: str, dtype: torch.dtype) -> None:
        self._model = model
        self._tokenizer = tokenizer
        self._device = device
        self._dtype = dtype
        self._vocab = tokenizer.get_vocab()

        generation_config = getattr(model, "generation_config", None)
        suppress = getattr(generation_config, "suppress_tokens", None)
        if suppress is None:
            suppress = getattr(model.config, "suppress_tokens", None)
        self._suppress_tokens: list[int] = list(suppress or [])

    @classmethod
    def load(cls, definition: ModelDefinition, cache_dir: str) -> TransformersWhisper:
        """Fetch and load a Whisper checkpoint.

        Raises:
            IncompatibleArchitectureError: If the checkpoint is not Whisper.
            ModelLoadFailedError: If the weights cannot be fetched.
        """
        from transformers import AutoConfig, AutoTokenizer, WhisperForConditionalGeneration

        model_dir = resolve_model_dir(definition, cache_dir)
        config = AutoConfig.from_pretrained(model_dir)
        if config.model_type != "whisper":
            msg = f"Model '{definition.id}' is declared speech-seq2seq but its config is '{config.model_type}'"
            raise IncompatibleArchitectureError(
                msg, model_id=definition.id, family=definition.family.value, backend=definition.backend.value
            )

        device = select_device()
        dtype = _dtype_for(definition, device)
        tokenizer = AutoTokenizer.from_pretrained(resolve_tokenizer_dir(definition, model_dir, cache_dir))
        model = WhisperForConditionalGeneration.from_pretrained(model_dir, config=config, torch_dtype=dtype)
        model.to(device)
        model.eval()

        logger.info("Whisper model loaded", model_id=definition.id, device=device)
        return cls(model, tokenizer, device, dtype)

    @property
    def vocab_size(self) -> int:
        return int(self._model.config.vocab_size)

    @property
    def num_mel_bins(self) -> int:
        return int(self._model.config.num_mel_bins)

    @property
    def max_target_positions(self) -> int:
        return int(self._model.config.max_target_positions)

    @property
    def suppress_tokens(self) -> Sequence[int]:
        return self._suppress_tokens

    def token_to_id(self, token: str) -> int | None:
        return self._vocab.get(token)

    def decode(self, ids: Sequence[int], skip_special_tokens: bool = True) -> str:
        return self._tokenizer.decode(list(ids), skip_special_tokens=skip_special_tokens)

    def encode_audio(self, mel: np.ndarray) -> Any:
        input_features = torch.from_numpy(np.ascontiguousarray(mel[None])).to(self._device, dtype=self._dtype)
        with torch.inference_mode():
            return self._model.model.encoder(input_features).last_hidden_state

    def decoder_forward(
        self, new_tokens: Sequence[int], features: Any, cache: Any
    ) -> tuple[np.ndarray, Any]:
        decoder_input_ids = torch.tensor([list(new_tokens)], dtype=torch.long, device=self._device)
        with torch.inference_mode():
            outputs = self._model(
                encoder_outputs=(features,),
                decoder_input_ids=decoder_input_ids,
                past_key_values=cache,
                use_cache=True,
            )
        scores = outputs.logits[0].float().cpu().numpy()
        return scores, outputs.past_key_values

    def close(self) -> None:
        self._model = None
        self._tokenizer = None
        _release_device_memory()
