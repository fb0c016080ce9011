"""Model definitions loaded from models.yaml.

Example entry::

    models:
      phi2:
        name: Phi-2
        license: MIT
        family: causal-lm
        backend: transformers
        source:
          repo: microsoft/phi-2
          revision: main
        precision: float32
        context_length: 2048
        size_gb: 5.6
        instruct_template: "Instruct: {input}\\nOutput:"
        eos_token: "<|endoftext|>"
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from model_runner.core.exceptions import ConfigurationError


class ModelFamily(str, Enum):
    """Decode loop a model plugs into."""

    CAUSAL_LM = "causal-lm"
    SPEECH_SEQ2SEQ = "speech-seq2seq"


class Backend(str, Enum):
    """Runtime that executes the forward pass."""

    TRANSFORMERS = "transformers"
    LLAMACPP = "llamacpp"


class Precision(str, Enum):
    FLOAT32 = "float32"
    FLOAT16 = "float16"
    BFLOAT16 = "bfloat16"
    GGUF = "gguf"


class ModelStatus(str, Enum):
    """Residency status reported by the registry."""

    LOADED = "loaded"
    LOADING = "loading"
    AVAILABLE = "available"


class ModelSource(BaseModel):
    """Where weights come from: a local path or a Hugging Face Hub repo."""

    model_config = ConfigDict(frozen=True)

    path: str | None = None
    repo: str | None = None
    revision: str = "main"
    filename: str | None = None
    tokenizer_repo: str | None = None

    @model_validator(mode="after")
    def validate_location(self) -> ModelSource:
        if (self.path is None) == (self.repo is None):
            msg = "source must set exactly one of 'path' or 'repo'"
            raise ValueError(msg)
        return self

    @property
    def is_remote(self) -> bool:
        return self.repo is not None


class ModelDefinition(BaseModel):
    """Immutable description of a servable model.

    Attributes:
        id: Identifier used in requests (the models.yaml key).
        family: causal-lm or speech-seq2seq.
        backend: transformers or llamacpp.
        source: Weight location.
        precision: Weight dtype, or gguf for llama.cpp files.
        context_length: Token budget for prompt plus generation.
        size_gb: Memory estimate used by the registry budget.
        owner: Owning client id; None means shared by all callers.
        instruct_template: Prompt template containing ``{input}``.
        eos_token: Overrides the runtime's end-of-sequence token.
        max_concurrency: Concurrent decode streams; None uses the settings default.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = ""
    license: str = ""
    family: ModelFamily
    backend: Backend = Backend.TRANSFORMERS
    source: ModelSource
    precision: Precision = Precision.FLOAT32
    context_length: int = Field(default=2048, ge=1)
    size_gb: float = Field(default=0.0, ge=0)
    owner: str | None = None
    instruct_template: str | None = None
    eos_token: str | None = None
    max_concurrency: int | None = Field(default=None, ge=1)

    @field_validator("instruct_template")
    @classmethod
    def validate_template(cls, v: str | None) -> str | None:
        if v is not None and "{input}" not in v:
            msg = "instruct_template must contain '{input}'"
            raise ValueError(msg)
        return v

    def render_instruct(self, text: str) -> str:
        """Wrap text in the instruct template, or return it unchanged."""
        if self.instruct_template is None:
            return text
        return self.instruct_template.replace("{input}", text)


def parse_model_definitions(raw: dict[str, Any], source: str = "<memory>") -> dict[str, ModelDefinition]:
    """Validate a parsed ``{"models": {id: {...}}}`` mapping.

    Raises:
        ConfigurationError: If an entry is invalid.
    """
    definitions: dict[str, ModelDefinition] = {}
    for model_id, entry in (raw.get("models") or {}).items():
        try:
            definitions[model_id] = ModelDefinition.model_validate({**(entry or {}), "id": model_id})
        except ValueError as e:
            msg = f"Invalid model definition '{model_id}' in {source}: {e}"
            raise ConfigurationError(msg, setting="models") from e
    return definitions


def load_model_definitions(path: Path) -> dict[str, ModelDefinition]:
    """Load model definitions from a YAML file.

    Raises:
        ConfigurationError: If the file is missing or invalid.
    """
    if not path.exists():
        msg = f"Model definitions file not found: {path}"
        raise ConfigurationError(msg, setting="config_dir")

    with path.open() as f:
        raw = yaml.safe_load(f) or {}

    return parse_model_definitions(raw, source=str(path))
