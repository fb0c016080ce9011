"""Error handlers for FastAPI exception handling.

Error Response Schema:
{
    "error": {
        "code": "ERROR_CODE",
        "message": "Human-readable message",
        "type": "retriable|non_retriable",
        "provider": "model-runner",
        "details": {...}
    }
}
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from model_runner.core.exceptions import (
    AdmissionTimeoutError,
    AuthError,
    BackpressureError,
    ContextBudgetExceededError,
    ErrorCode,
    IncompatibleArchitectureError,
    InferenceError,
    InferenceTimeoutError,
    ModelBusyError,
    ModelLoadFailedError,
    ModelNotFoundError,
    ModelRunnerError,
    NonRetriableError,
    PermissionDeniedError,
    RequestCancelledError,
    RetriableError,
    ValidationError,
)
from model_runner.core.logging import get_logger


logger = get_logger(__name__)

PROVIDER_NAME = "model-runner"

# Non-standard status used by nginx for "client closed request"
HTTP_CLIENT_CLOSED_REQUEST = 499


# =============================================================================
# Error Response Models (Pydantic)
# =============================================================================


class ErrorDetail(BaseModel):
    """Error detail schema.

    Attributes:
        code: Machine-readable error code.
        message: Human-readable error message.
        type: Error type (retriable or non_retriable).
        provider: Service that generated the error.
        details: Additional error-specific information.
    """

    code: str
    message: str
    type: str
    provider: str = PROVIDER_NAME
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    """Error response wrapper.

    Attributes:
        error: The error detail object.
    """

    error: ErrorDetail


# =============================================================================
# Status Code Mapping
# =============================================================================

_STATUS_BY_TYPE: tuple[tuple[type[Exception], int], ...] = (
    (ValidationError, 400),
    (ContextBudgetExceededError, 400),
    (AuthError, 401),
    (PermissionDeniedError, 403),
    (ModelNotFoundError, 404),
    (ModelBusyError, 409),
    (IncompatibleArchitectureError, 422),
    (RequestCancelledError, HTTP_CLIENT_CLOSED_REQUEST),
    (ModelLoadFailedError, 502),
    (AdmissionTimeoutError, 504),
    (InferenceTimeoutError, 504),
    (BackpressureError, 503),
)


def get_status_code_for_error(error: Exception) -> int:
    """Determine HTTP status code based on exception type.

    Args:
        error: The exception to get status code for.

    Returns:
        Appropriate HTTP status code.
    """
    for error_type, status_code in _STATUS_BY_TYPE:
        if isinstance(error, error_type):
            return status_code

    # General categories
    if isinstance(error, RetriableError):
        return 503  # Service Unavailable
    return 500


# =============================================================================
# Error Details Extraction
# =============================================================================


def extract_error_details(error: Exception) -> dict[str, Any]:
    """Extract additional details from exception attributes.

    Args:
        error: The exception to extract details from.

    Returns:
        Dictionary of error details.
    """
    details: dict[str, Any] = {}

    known_attrs = [
        "model_id",
        "model",
        "current_tokens",
        "budget",
        "active_requests",
        "max_queue_depth",
        "waiting",
        "resource_type",
        "timeout_seconds",
        "available_models",
        "attempts",
        "family",
        "backend",
        "operation",
        "generated_tokens",
        "field",
        "setting",
    ]

    for attr in known_attrs:
        if hasattr(error, attr):
            value = getattr(error, attr)
            if value is not None:
                details[attr] = value

    return details


# =============================================================================
# Error Response Builder
# =============================================================================


def build_error_response(
    error: Exception,
    error_type: str = "non_retriable",
) -> ErrorResponse:
    """Build a standardized error response.

    Args:
        error: The exception that occurred.
        error_type: Either "retriable" or "non_retriable".

    Returns:
        ErrorResponse with structured error information.
    """
    code = (
        error.error_code
        if hasattr(error, "error_code")
        else ErrorCode.MODEL_RUNNER_ERROR.value
    )
    message = error.message if hasattr(error, "message") else str(error)
    details = extract_error_details(error)

    return ErrorResponse(
        error=ErrorDetail(
            code=code,
            message=message,
            type=error_type,
            provider=PROVIDER_NAME,
            details=details if details else None,
        )
    )


# =============================================================================
# Exception Handlers
# =============================================================================


async def retriable_error_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle RetriableError exceptions with Retry-After header.

    Args:
        request: The FastAPI request.
        exc: The retriable exception that was raised.

    Returns:
        JSONResponse with error details and Retry-After header.
    """
    retriable_exc = exc if isinstance(exc, RetriableError) else None
    if retriable_exc is None:
        return generic_error_handler(request, exc)

    response = build_error_response(retriable_exc, "retriable")
    status_code = get_status_code_for_error(retriable_exc)

    # Calculate Retry-After in seconds
    retry_after_seconds = retriable_exc.retry_after_ms // 1000
    if retry_after_seconds == 0:
        retry_after_seconds = 1

    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(),
        headers={"Retry-After": str(retry_after_seconds)},
    )


async def non_retriable_error_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle NonRetriableError exceptions.

    InferenceError is logged before the response is returned.

    Args:
        request: The FastAPI request.
        exc: The non-retriable exception that was raised.

    Returns:
        JSONResponse with error details.
    """
    non_retriable_exc = exc if isinstance(exc, NonRetriableError) else None
    if non_retriable_exc is None:
        return generic_error_handler(request, exc)

    if isinstance(non_retriable_exc, InferenceError):
        logger.error(
            "Inference failed",
            path=request.url.path,
            error_code=non_retriable_exc.error_code,
            error=non_retriable_exc.message,
            model_id=non_retriable_exc.model_id,
        )

    response = build_error_response(non_retriable_exc, "non_retriable")
    status_code = get_status_code_for_error(non_retriable_exc)

    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(),
    )


async def model_runner_error_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle base ModelRunnerError exceptions outside the two branches."""
    if isinstance(exc, RetriableError):
        return await retriable_error_handler(request, exc)
    if isinstance(exc, NonRetriableError):
        return await non_retriable_error_handler(request, exc)
    if not isinstance(exc, ModelRunnerError):
        return generic_error_handler(request, exc)

    response = build_error_response(exc, "non_retriable")
    return JSONResponse(
        status_code=get_status_code_for_error(exc),
        content=response.model_dump(),
    )


def generic_error_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle generic/unexpected exceptions.

    Args:
        request: The FastAPI request.
        exc: The exception that was raised.

    Returns:
        JSONResponse with 500 status code.
    """
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    response = ErrorResponse(
        error=ErrorDetail(
            code=ErrorCode.MODEL_RUNNER_ERROR.value,
            message=f"Internal server error: {exc!s}",
            type="non_retriable",
            provider=PROVIDER_NAME,
            details=None,
        )
    )

    return JSONResponse(
        status_code=500,
        content=response.model_dump(),
    )


# =============================================================================
# Handler Registration
# =============================================================================


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application.

    Args:
        app: The FastAPI application instance.
    """
    app.add_exception_handler(RetriableError, retriable_error_handler)
    app.add_exception_handler(NonRetriableError, non_retriable_error_handler)
    app.add_exception_handler(ModelRunnerError, model_runner_error_handler)

    # Catch-all for unexpected exceptions
    app.add_exception_handler(Exception, generic_error_handler)
