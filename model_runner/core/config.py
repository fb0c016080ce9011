"""Core configuration module for model-runner.

Loads settings from MODEL_RUNNER_* prefixed environment variables using
Pydantic Settings. Model definitions and API clients live in YAML files
under ``config_dir`` and are read once at startup.

Patterns applied:
- pydantic-settings BaseSettings (Pydantic v2 split)
- env_prefix = "MODEL_RUNNER_" for namespace isolation
- @field_validator + @classmethod (Pydantic v2 pattern)
- @lru_cache for singleton pattern
- PEP 604 union syntax (X | None)
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from model_runner.core.constants import (
    CLIENTS_FILE_NAME,
    CONTAINER_CACHE_DIR,
    CONTAINER_CONFIG_DIR,
    DEFAULT_ENVIRONMENT,
    DEFAULT_HOST,
    DEFAULT_LOG_LEVEL,
    DEFAULT_PORT,
    DEFAULT_SERVICE_NAME,
    MODELS_FILE_NAME,
)


class Settings(BaseSettings):
    """Application settings loaded from MODEL_RUNNER_* environment variables.

    Example: MODEL_RUNNER_PORT=8080, MODEL_RUNNER_LOG_LEVEL=DEBUG

    Attributes:
        service_name: Service identifier for logging.
        host: Bind address.
        port: HTTP port (1-65535).
        environment: Deployment environment.
        log_level: Logging verbosity.
        config_dir: Directory holding models.yaml and clients.yaml.
        cache_dir: Download cache for remote model sources.
        tls_certificate: PEM certificate path (requires tls_private_key).
        tls_private_key: PEM private key path (requires tls_certificate).
        max_resident_models: Resident instance count bound.
        memory_limit_gb: Resident instance memory bound (sum of size_gb).
        max_concurrent_per_model: Default in-flight streams per instance.
        max_queue_depth: Waiting requests per model before backpressure.
        admission_timeout: Seconds a request may wait for a slot.
        request_timeout: Seconds a decode may run once admitted.
        load_retries: Extra attempts for transient load failures.
        load_retry_backoff: Base backoff in seconds between load attempts.
        repeat_penalty_scheme: Repeat penalty formula.
        mel_filters_path: Optional bundled mel filterbank (float32 LE).
        max_audio_bytes: Upload limit for audio payloads.
        shutdown_timeout: Seconds to drain in-flight requests on shutdown.
    """

    # =========================================================================
    # Core Settings
    # =========================================================================
    service_name: str = Field(
        default=DEFAULT_SERVICE_NAME,
        description="Service name for identification",
    )
    host: str = Field(
        default=DEFAULT_HOST,
        description="HTTP server bind address",
    )
    port: int = Field(
        default=DEFAULT_PORT,
        ge=1,
        le=65535,
        description="HTTP server port",
    )
    environment: Literal["development", "staging", "production"] = Field(
        default=DEFAULT_ENVIRONMENT,
        description="Deployment environment",
    )
    log_level: str = Field(
        default=DEFAULT_LOG_LEVEL,
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Paths
    # =========================================================================
    config_dir: str = Field(
        default=CONTAINER_CONFIG_DIR,
        description="Directory containing models.yaml and clients.yaml",
    )
    cache_dir: str = Field(
        default=CONTAINER_CACHE_DIR,
        description="Local cache directory for downloaded model files",
    )
    tls_certificate: str | None = Field(
        default=None,
        description="Path to the PEM certificate; enables TLS with tls_private_key",
    )
    tls_private_key: str | None = Field(
        default=None,
        description="Path to the PEM private key; enables TLS with tls_certificate",
    )

    # =========================================================================
    # Registry Limits
    # =========================================================================
    max_resident_models: int = Field(
        default=2,
        ge=1,
        description="Maximum number of resident model instances",
    )
    memory_limit_gb: float = Field(
        default=16.0,
        gt=0,
        description="Memory budget for resident instances in GB",
    )
    load_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries for transient model load failures",
    )
    load_retry_backoff: float = Field(
        default=1.0,
        ge=0,
        description="Base backoff between load attempts in seconds",
    )

    # =========================================================================
    # Admission Limits
    # =========================================================================
    max_concurrent_per_model: int = Field(
        default=1,
        ge=1,
        description="Default concurrent decode streams per model instance",
    )
    max_queue_depth: int = Field(
        default=8,
        ge=0,
        description="Waiting requests per model before rejecting with backpressure",
    )
    admission_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds a request may wait in the queue",
    )
    request_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Seconds an admitted request may spend decoding",
    )
    shutdown_timeout: float = Field(
        default=45.0,
        ge=0,
        description="Seconds to drain in-flight requests on shutdown",
    )

    # =========================================================================
    # Inference
    # =========================================================================
    repeat_penalty_scheme: Literal["signed", "uniform"] = Field(
        default="signed",
        description="Repeat penalty formula applied by the sampling policy",
    )
    mel_filters_path: str | None = Field(
        default=None,
        description="Bundled mel filterbank (little-endian float32); computed if unset",
    )
    max_audio_bytes: int = Field(
        default=10_000_000,
        gt=0,
        description="Maximum accepted audio payload size in bytes",
    )

    # =========================================================================
    # Pydantic v2 Model Configuration
    # =========================================================================
    model_config = {
        "env_prefix": "MODEL_RUNNER_",
        "case_sensitive": False,
        "extra": "ignore",
    }

    # =========================================================================
    # Validators
    # =========================================================================
    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level to uppercase.

        Args:
            v: Input log level string.

        Returns:
            Normalized uppercase log level.

        Raises:
            ValueError: If log level is not valid.
        """
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        normalized = v.upper()
        if normalized not in valid_levels:
            msg = f"log_level must be one of {valid_levels}, got '{v}'"
            raise ValueError(msg)
        return normalized

    @model_validator(mode="after")
    def validate_tls_pair(self) -> "Settings":
        """Require certificate and private key together."""
        if (self.tls_certificate is None) != (self.tls_private_key is None):
            msg = "tls_certificate and tls_private_key must be provided together"
            raise ValueError(msg)
        return self

    @property
    def tls_enabled(self) -> bool:
        """True when both TLS files are configured."""
        return self.tls_certificate is not None and self.tls_private_key is not None

    @property
    def models_file(self) -> Path:
        """Path to the model definitions file."""
        return Path(self.config_dir) / MODELS_FILE_NAME

    @property
    def clients_file(self) -> Path:
        """Path to the API client definitions file."""
        return Path(self.config_dir) / CLIENTS_FILE_NAME


@lru_cache
def get_settings() -> Settings:
    """Get singleton Settings instance.

    Returns:
        Cached Settings instance.
    """
    return Settings()
