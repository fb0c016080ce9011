"""Resolve a ModelSource to files on local disk.

Remote sources are fetched through the Hugging Face Hub cache, so a second
load of the same revision does not touch the network.
"""

from __future__ import annotations

from pathlib import Path

from huggingface_hub import hf_hub_download, snapshot_download
from huggingface_hub.errors import (
    EntryNotFoundError,
    GatedRepoError,
    RepositoryNotFoundError,
    RevisionNotFoundError,
)

from model_runner.core.exceptions import ModelLoadFailedError
from model_runner.core.logging import get_logger
from model_runner.models.definitions import ModelDefinition


logger = get_logger(__name__)

# Weights formats fetched for transformers snapshots
SNAPSHOT_PATTERNS = ["*.json", "*.safetensors", "*.model", "*.txt", "*.tiktoken"]

_PERSISTENT_HUB_ERRORS = (
    RepositoryNotFoundError,
    RevisionNotFoundError,
    EntryNotFoundError,
    GatedRepoError,
)


def is_transient(error: BaseException) -> bool:
    """Classify a fetch failure as worth retrying."""
    if isinstance(error, _PERSISTENT_HUB_ERRORS):
        return False
    return isinstance(error, (ConnectionError, TimeoutError, OSError))


def _load_failed(definition: ModelDefinition, error: Exception) -> ModelLoadFailedError:
    return ModelLoadFailedError(
        f"Failed to fetch weights for '{definition.id}': {error}",
        model_id=definition.id,
        transient=is_transient(error),
    )


def resolve_model_dir(definition: ModelDefinition, cache_dir: str) -> Path:
    """Return a local directory holding a transformers checkpoint.

    Raises:
        ModelLoadFailedError: If the path is missing or the download fails.
    """
    source = definition.source
    if source.path is not None:
        local = Path(source.path)
        if not local.exists():
            msg = f"Model path not found for '{definition.id}': {local}"
            raise ModelLoadFailedError(msg, model_id=definition.id)
        return local

    logger.info("Fetching model snapshot", model_id=definition.id, repo=source.repo, revision=source.revision)
    try:
        return Path(
            snapshot_download(
                repo_id=source.repo,
                revision=source.revision,
                cache_dir=cache_dir,
                allow_patterns=SNAPSHOT_PATTERNS,
            )
        )
    except Exception as e:
        raise _load_failed(definition, e) from e


def resolve_model_file(definition: ModelDefinition, cache_dir: str) -> Path:
    """Return a local single-file checkpoint (GGUF).

    Raises:
        ModelLoadFailedError: If the file is missing or the download fails.
    """
    source = definition.source
    if source.path is not None:
        local = Path(source.path)
        if local.is_dir() and source.filename:
            local = local / source.filename
        if not local.is_file():
            msg = f"Model file not found for '{definition.id}': {local}"
            raise ModelLoadFailedError(msg, model_id=definition.id)
        return local

    if not source.filename:
        msg = f"Model '{definition.id}' needs source.filename to fetch a single file"
        raise ModelLoadFailedError(msg, model_id=definition.id)

    logger.info("Fetching model file", model_id=definition.id, repo=source.repo, filename=source.filename)
    try:
        return Path(
            hf_hub_download(
                repo_id=source.repo,
                filename=source.filename,
                revision=source.revision,
                cache_dir=cache_dir,
            )
        )
    except Exception as e:
        raise _load_failed(definition, e) from e


def resolve_tokenizer_dir(definition: ModelDefinition, model_dir: Path, cache_dir: str) -> Path:
    """Return where the tokenizer lives: tokenizer_repo if set, else the checkpoint."""
    tokenizer_repo = definition.source.tokenizer_repo
    if tokenizer_repo is None:
        return model_dir
    try:
        return Path(
            snapshot_download(
                repo_id=tokenizer_repo,
                cache_dir=cache_dir,
                allow_patterns=["*.json", "*.model", "*.txt", "*.tiktoken"],
            )
        )
    except Exception as e:
        raise _load_failed(definition, e) from e
