"""Runtime adapters and the loader registry keyed by (family, backend)."""

from __future__ import annotations

from collections.abc import Callable

from model_runner.core.exceptions import IncompatibleArchitectureError
from model_runner.inference.runtimes.base import CausalLMRuntime, Runtime, SpeechSeq2SeqRuntime
from model_runner.models.definitions import Backend, ModelDefinition, ModelFamily, Precision


RuntimeLoader = Callable[[ModelDefinition, str], Runtime]


def _load_transformers_causal(definition: ModelDefinition, cache_dir: str) -> Runtime:
    from model_runner.inference.runtimes.transformers_runtime import TransformersCausalLM

    return TransformersCausalLM.load(definition, cache_dir)


def _load_transformers_whisper(definition: ModelDefinition, cache_dir: str) -> Runtime:
    from model_runner.inference.runtimes.transformers_runtime import TransformersWhisper

    return TransformersWhisper.load(definition, cache_dir)


def _load_llamacpp_causal(definition: ModelDefinition, cache_dir: str) -> Runtime:
    from model_runner.inference.runtimes.llamacpp import LlamaCppCausalLM

    return LlamaCppCausalLM.load(definition, cache_dir)


LOADERS: dict[tuple[ModelFamily, Backend], RuntimeLoader] = {
    (ModelFamily.CAUSAL_LM, Backend.TRANSFORMERS): _load_transformers_causal,
    (ModelFamily.SPEECH_SEQ2SEQ, Backend.TRANSFORMERS): _load_transformers_whisper,
    (ModelFamily.CAUSAL_LM, Backend.LLAMACPP): _load_llamacpp_causal,
}

RUNTIME_TYPES: dict[ModelFamily, type[Runtime]] = {
    ModelFamily.CAUSAL_LM: CausalLMRuntime,
    ModelFamily.SPEECH_SEQ2SEQ: SpeechSeq2SeqRuntime,
}


def _incompatible(definition: ModelDefinition, reason: str) -> IncompatibleArchitectureError:
    return IncompatibleArchitectureError(
        f"Model '{definition.id}': {reason}",
        model_id=definition.id,
        family=definition.family.value,
        backend=definition.backend.value,
    )


def check_compatibility(definition: ModelDefinition) -> None:
    """Reject family/backend/precision combinations no runtime serves.

    Raises:
        IncompatibleArchitectureError: If the combination is unsupported.
    """
    if (definition.family, definition.backend) not in LOADERS:
        raise _incompatible(
            definition,
            f"backend '{definition.backend.value}' cannot serve family '{definition.family.value}'",
        )
    is_gguf = definition.precision is Precision.GGUF
    if is_gguf != (definition.backend is Backend.LLAMACPP):
        raise _incompatible(
            definition,
            f"precision '{definition.precision.value}' is not valid for backend '{definition.backend.value}'",
        )
    if definition.backend is Backend.LLAMACPP and (definition.max_concurrency or 1) > 1:
        raise _incompatible(definition, "llamacpp models serve one stream at a time")


def check_runtime(definition: ModelDefinition, runtime: Runtime) -> None:
    """Verify a loaded runtime implements the declared family and concurrency."""
    expected = RUNTIME_TYPES[definition.family]
    if not isinstance(runtime, expected):
        raise _incompatible(definition, f"loaded runtime {type(runtime).__name__} is not a {expected.__name__}")

    limit = runtime.max_concurrency
    if limit is not None and (definition.max_concurrency or 1) > limit:
        raise _incompatible(
            definition,
            f"max_concurrency {definition.max_concurrency} exceeds the {limit} streams "
            f"{type(runtime).__name__} supports",
        )


def load_runtime(definition: ModelDefinition, cache_dir: str) -> Runtime:
    """Load the runtime for a definition (blocking; run in a worker thread)."""
    check_compatibility(definition)
    runtime = LOADERS[(definition.family, definition.backend)](definition, cache_dir)
    check_runtime(definition, runtime)
    return runtime


__all__ = [
    "LOADERS",
    "CausalLMRuntime",
    "Runtime",
    "RuntimeLoader",
    "SpeechSeq2SeqRuntime",
    "check_compatibility",
    "check_runtime",
    "load_runtime",
]
