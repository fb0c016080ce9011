"""Custom exceptions for model-runner.

Every failure a request can end in is one of these types. The API layer maps
each to an HTTP status in ``model_runner.api.error_handlers``.

Exception Hierarchy:
    ModelRunnerError (base)
    ├── RetriableError (transient errors)
    │   ├── ModelBusyError
    │   ├── BackpressureError
    │   ├── TemporaryResourceError
    │   ├── ServiceShuttingDownError
    │   ├── AdmissionTimeoutError
    │   └── InferenceTimeoutError
    └── NonRetriableError (permanent errors)
        ├── ValidationError
        ├── ContextBudgetExceededError
        ├── AuthError
        ├── PermissionDeniedError
        ├── ModelNotFoundError
        ├── ModelLoadFailedError
        ├── IncompatibleArchitectureError
        ├── InferenceError
        ├── RequestCancelledError
        └── ConfigurationError
"""

from __future__ import annotations

from enum import Enum
from typing import Any


# =============================================================================
# Error Codes Enum
# =============================================================================


class ErrorCode(str, Enum):
    """Error codes for model-runner exceptions.

    These codes provide a consistent way to identify error types
    across the API and in logging.
    """

    # Base error
    MODEL_RUNNER_ERROR = "MODEL_RUNNER_ERROR"

    # Retriable errors
    MODEL_BUSY = "MODEL_BUSY"
    BACKPRESSURE = "BACKPRESSURE"
    TEMPORARY_RESOURCE = "TEMPORARY_RESOURCE"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    ADMISSION_TIMEOUT = "ADMISSION_TIMEOUT"
    INFERENCE_TIMEOUT = "INFERENCE_TIMEOUT"

    # Non-retriable errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONTEXT_BUDGET_EXCEEDED = "CONTEXT_BUDGET_EXCEEDED"
    AUTH_ERROR = "AUTH_ERROR"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    MODEL_LOAD_FAILED = "MODEL_LOAD_FAILED"
    INCOMPATIBLE_ARCHITECTURE = "INCOMPATIBLE_ARCHITECTURE"
    INFERENCE_ERROR = "INFERENCE_ERROR"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


# =============================================================================
# Base Exception
# =============================================================================


class ModelRunnerError(Exception):
    """Base exception for all model-runner errors.

    Attributes:
        message: Human-readable error message.
        error_code: Machine-readable error code from ErrorCode enum.
    """

    def __init__(
        self,
        message: str,
        error_code: str | ErrorCode = ErrorCode.MODEL_RUNNER_ERROR,
        **kwargs: Any,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
            error_code: Machine-readable error code.
            **kwargs: Additional attributes to set on the exception.
        """
        super().__init__(message)
        self.message = message
        self.error_code = (
            error_code.value if isinstance(error_code, ErrorCode) else error_code
        )

        # Set any additional attributes from kwargs
        for key, value in kwargs.items():
            setattr(self, key, value)


# =============================================================================
# Retriable Error Base
# =============================================================================


class RetriableError(ModelRunnerError):
    """Base class for transient errors that may succeed on retry.

    Attributes:
        retry_after_ms: Suggested retry delay in milliseconds.
    """

    def __init__(
        self,
        message: str,
        retry_after_ms: int = 1000,
        error_code: str | ErrorCode = ErrorCode.MODEL_RUNNER_ERROR,
        **kwargs: Any,
    ) -> None:
        """Initialize the retriable error.

        Args:
            message: Human-readable error message.
            retry_after_ms: Suggested retry delay in milliseconds (default: 1000).
            error_code: Machine-readable error code.
            **kwargs: Additional attributes.
        """
        super().__init__(message, error_code, **kwargs)
        self.retry_after_ms = retry_after_ms


# =============================================================================
# Non-Retriable Error Base
# =============================================================================


class NonRetriableError(ModelRunnerError):
    """Base class for permanent errors that should not be retried."""

    pass


# =============================================================================
# Retriable Exceptions
# =============================================================================


class ModelBusyError(RetriableError):
    """Model has in-flight requests and cannot be unloaded.

    Attributes:
        model_id: ID of the busy model.
        active_requests: Number of requests pinning the instance.
    """

    def __init__(
        self,
        message: str,
        model_id: str | None = None,
        active_requests: int | None = None,
        retry_after_ms: int = 1000,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            retry_after_ms=retry_after_ms,
            error_code=ErrorCode.MODEL_BUSY,
            **kwargs,
        )
        self.model_id = model_id
        self.active_requests = active_requests


class BackpressureError(RetriableError):
    """Model queue is at its waiting-request limit.

    Attributes:
        model_id: ID of the model whose queue is full.
        max_queue_depth: Waiting-request limit of the queue.
        waiting: Number of requests waiting when rejected.
    """

    def __init__(
        self,
        message: str,
        model_id: str | None = None,
        max_queue_depth: int | None = None,
        waiting: int | None = None,
        retry_after_ms: int = 1000,
        **kwargs: Any,
    ) -> None:
        """Initialize BackpressureError.

        Args:
            message: Error message.
            model_id: ID of the model.
            max_queue_depth: Waiting-request limit.
            waiting: Current waiting count.
            retry_after_ms: Suggested retry delay.
            **kwargs: Additional attributes.
        """
        super().__init__(
            message,
            retry_after_ms=retry_after_ms,
            error_code=ErrorCode.BACKPRESSURE,
            **kwargs,
        )
        self.model_id = model_id
        self.max_queue_depth = max_queue_depth
        self.waiting = waiting


class TemporaryResourceError(RetriableError):
    """Temporary resource exhaustion (e.g., every resident model is pinned).

    Attributes:
        resource_type: Type of resource that is exhausted.
    """

    def __init__(
        self,
        message: str,
        resource_type: str | None = None,
        retry_after_ms: int = 5000,
        **kwargs: Any,
    ) -> None:
        """Initialize TemporaryResourceError.

        Args:
            message: Error message.
            resource_type: Type of exhausted resource (e.g., "memory", "slots").
            retry_after_ms: Suggested retry delay.
            **kwargs: Additional attributes.
        """
        super().__init__(
            message,
            retry_after_ms=retry_after_ms,
            error_code=ErrorCode.TEMPORARY_RESOURCE,
            **kwargs,
        )
        self.resource_type = resource_type


class ServiceShuttingDownError(RetriableError):
    """Service is draining and no longer admits requests."""

    def __init__(
        self,
        message: str = "Service is shutting down",
        retry_after_ms: int = 5000,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            retry_after_ms=retry_after_ms,
            error_code=ErrorCode.SHUTTING_DOWN,
            **kwargs,
        )


class AdmissionTimeoutError(RetriableError):
    """Request waited longer than the admission timeout for a slot.

    Attributes:
        model_id: ID of the model queue.
        timeout_seconds: Admission timeout that elapsed.
    """

    def __init__(
        self,
        message: str,
        model_id: str | None = None,
        timeout_seconds: float | None = None,
        retry_after_ms: int = 1000,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            retry_after_ms=retry_after_ms,
            error_code=ErrorCode.ADMISSION_TIMEOUT,
            **kwargs,
        )
        self.model_id = model_id
        self.timeout_seconds = timeout_seconds


class InferenceTimeoutError(RetriableError):
    """Admitted request exceeded the in-flight deadline.

    Attributes:
        timeout_seconds: Request timeout that elapsed.
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        retry_after_ms: int = 1000,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            retry_after_ms=retry_after_ms,
            error_code=ErrorCode.INFERENCE_TIMEOUT,
            **kwargs,
        )
        self.timeout_seconds = timeout_seconds


# =============================================================================
# Non-Retriable Exceptions
# =============================================================================


class ValidationError(NonRetriableError):
    """Request validation failed.

    This error indicates the request failed validation beyond
    Pydantic's built-in validation.

    Attributes:
        field: Name of the invalid field.
        value: The invalid value.
    """

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        """Initialize ValidationError.

        Args:
            message: Error message.
            field: Name of the invalid field.
            value: The invalid value.
            **kwargs: Additional attributes.
        """
        super().__init__(
            message,
            error_code=ErrorCode.VALIDATION_ERROR,
            **kwargs,
        )
        self.field = field
        self.value = value


class ContextBudgetExceededError(NonRetriableError):
    """Prompt plus requested length does not fit the model context window.

    Attributes:
        current_tokens: Prompt tokens plus max_length.
        budget: Context length of the model.
        model: Model that has the budget constraint.
    """

    def __init__(
        self,
        current_tokens: int,
        budget: int,
        model: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize ContextBudgetExceededError.

        Args:
            current_tokens: Requested token count.
            budget: Maximum token budget.
            model: Model with the budget constraint.
            **kwargs: Additional attributes.
        """
        message = f"Context budget exceeded: {current_tokens}/{budget} tokens"
        if model:
            message = f"Request does not fit in {model} context window ({current_tokens}/{budget} tokens)"

        super().__init__(
            message,
            error_code=ErrorCode.CONTEXT_BUDGET_EXCEEDED,
            **kwargs,
        )
        self.current_tokens = current_tokens
        self.budget = budget
        self.model = model


class AuthError(NonRetriableError):
    """Bearer token is missing, malformed or does not match a client."""

    def __init__(self, message: str = "Invalid credentials", **kwargs: Any) -> None:
        super().__init__(message, error_code=ErrorCode.AUTH_ERROR, **kwargs)


class PermissionDeniedError(NonRetriableError):
    """Caller lacks the permission bit required for the operation.

    Attributes:
        client_id: ID of the caller.
        operation: Operation that was denied.
        target_owner: Owner of the target resource.
    """

    def __init__(
        self,
        message: str,
        client_id: str | None = None,
        operation: str | None = None,
        target_owner: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            error_code=ErrorCode.PERMISSION_DENIED,
            **kwargs,
        )
        self.client_id = client_id
        self.operation = operation
        self.target_owner = target_owner


class ModelNotFoundError(NonRetriableError):
    """Requested model not available in configuration.

    Attributes:
        model_id: ID of the requested model.
        available_models: List of available model IDs.
    """

    def __init__(
        self,
        message: str,
        model_id: str | None = None,
        available_models: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize ModelNotFoundError.

        Args:
            message: Error message.
            model_id: ID of the missing model.
            available_models: List of available models.
            **kwargs: Additional attributes.
        """
        super().__init__(
            message,
            error_code=ErrorCode.MODEL_NOT_FOUND,
            **kwargs,
        )
        self.model_id = model_id
        self.available_models = available_models


class ModelLoadFailedError(NonRetriableError):
    """Model weights could not be fetched or loaded.

    Attributes:
        model_id: ID of the model.
        attempts: Number of load attempts made.
        transient: Whether the last failure looked transient.
    """

    def __init__(
        self,
        message: str,
        model_id: str | None = None,
        attempts: int | None = None,
        transient: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            error_code=ErrorCode.MODEL_LOAD_FAILED,
            **kwargs,
        )
        self.model_id = model_id
        self.attempts = attempts
        self.transient = transient


class IncompatibleArchitectureError(NonRetriableError):
    """Model definition does not match the runtime or loaded weights.

    Attributes:
        model_id: ID of the model.
        family: Declared model family.
        backend: Declared backend.
    """

    def __init__(
        self,
        message: str,
        model_id: str | None = None,
        family: str | None = None,
        backend: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            error_code=ErrorCode.INCOMPATIBLE_ARCHITECTURE,
            **kwargs,
        )
        self.model_id = model_id
        self.family = family
        self.backend = backend


class InferenceError(NonRetriableError):
    """Forward pass, tokenization or sampling failed."""

    def __init__(self, message: str, model_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, error_code=ErrorCode.INFERENCE_ERROR, **kwargs)
        self.model_id = model_id


class RequestCancelledError(NonRetriableError):
    """Request was cancelled before the decode finished.

    Attributes:
        generated_tokens: Tokens produced before cancellation.
    """

    def __init__(
        self,
        message: str = "Request cancelled",
        generated_tokens: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            error_code=ErrorCode.REQUEST_CANCELLED,
            **kwargs,
        )
        self.generated_tokens = generated_tokens


class ConfigurationError(NonRetriableError):
    """Service configuration is invalid.

    Attributes:
        setting: Name of the problematic setting.
    """

    def __init__(
        self,
        message: str,
        setting: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize ConfigurationError.

        Args:
            message: Error message.
            setting: Name of the problematic setting.
            **kwargs: Additional attributes.
        """
        super().__init__(
            message,
            error_code=ErrorCode.CONFIGURATION_ERROR,
            **kwargs,
        )
        self.setting = setting
