"""Standardized error handling and response schemas for the REST API.

Error Response Format:
    All errors return JSON with this structure:
    {
        "code": "CAPACITY_EXCEEDED",
        "message": "Human-readable description",
        "details": {"stream_id": "cam2", "max_streams": 1}
    }

Supervisor Failures:
    StreamError subclasses raised by the supervisor are translated by
    stream_error_handler using STATUS_BY_KIND:

    INPUT_REJECTED     → 400
    NOT_FOUND          → 404
    ALREADY_ACTIVE     → 409
    CAPACITY_EXCEEDED  → 429
    LAUNCH_FAILURE     → 503
    READINESS_TIMEOUT  → 504

Logging Strategy:
    DEBUG - Error response creation
    INFO  - Client errors (4xx)
    WARN  - Request validation failures
    ERROR - Server errors (5xx), unexpected exceptions
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Final, Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..services.errors import ErrorKind, StreamError

logger = logging.getLogger(__name__)

# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response schema for all API errors.

    Attributes:
        code: Machine-readable error code (from ErrorCode enum)
        message: Human-readable error message for display
        details: Optional additional context
    """

    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[dict[str, Any]] = Field(None, description="Additional error details")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "code": "CAPACITY_EXCEEDED",
                    "message": "Maximum concurrent streams limit reached",
                    "details": {"stream_id": "cam2", "max_streams": 1}
                }
            ]
        }
    }


# ============================================================================
# Error Codes Enum
# ============================================================================

class ErrorCode(str, Enum):
    """Standardized error codes for the API."""

    # Supervisor failures
    INPUT_REJECTED = ErrorKind.INPUT_REJECTED.value
    ALREADY_ACTIVE = ErrorKind.ALREADY_ACTIVE.value
    CAPACITY_EXCEEDED = ErrorKind.CAPACITY_EXCEEDED.value
    LAUNCH_FAILURE = ErrorKind.LAUNCH_FAILURE.value
    READINESS_TIMEOUT = ErrorKind.READINESS_TIMEOUT.value
    NOT_FOUND = ErrorKind.NOT_FOUND.value

    # Request errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # System errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


STATUS_BY_KIND: Final[dict[ErrorKind, int]] = {
    ErrorKind.INPUT_REJECTED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ALREADY_ACTIVE: status.HTTP_409_CONFLICT,
    ErrorKind.CAPACITY_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.LAUNCH_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.READINESS_TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


# ============================================================================
# Error Response Factory
# ============================================================================

def create_error_response(
    code: ErrorCode | str,
    message: str,
    details: Optional[dict[str, Any]] = None
) -> ErrorResponse:
    """Create a standardized error response."""
    code_str = code.value if isinstance(code, ErrorCode) else code
    logger.debug(f"Creating error response: code={code_str}, message={message}")
    return ErrorResponse(code=code_str, message=message, details=details)


def raise_not_found(resource: str, resource_id: str) -> None:
    """Raise a standardized 404 error.

    Raises:
        HTTPException: 404 error with standardized format
    """
    logger.debug(f"Resource not found: {resource} with id={resource_id}")

    error = create_error_response(
        code=ErrorCode.NOT_FOUND,
        message=f"{resource.capitalize()} not found",
        details={"resource": resource, "id": resource_id}
    )
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=error.model_dump()
    )


def status_for(exc: StreamError) -> int:
    return STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


# ============================================================================
# Global Exception Handlers
# ============================================================================

async def stream_error_handler(request: Request, exc: StreamError) -> JSONResponse:
    """Translate supervisor failures into the standardized format."""
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"Stream error: {request.method} {request.url.path} -> {status_code}: {exc.message}")
    else:
        logger.info(f"Client error: {request.method} {request.url.path} -> {status_code}: {exc.message}")

    error = create_error_response(exc.kind.value, exc.message, exc.to_details() or None)
    return JSONResponse(status_code=status_code, content=error.model_dump())


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """Handle request body validation errors with standardized format.

    Missing or mistyped fields are input errors, so they answer 400 like
    every other rejected input.
    """
    errors = exc.errors()
    logger.warning(
        f"Validation failed: {request.method} {request.url.path} "
        f"({len(errors)} error(s))"
    )
    logger.debug(f"Validation errors: {errors}")

    fields = sorted({
        str(err["loc"][-1]) for err in errors if err.get("loc")
    })
    error = create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        details={
            "fields": fields,
            "errors": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                for err in errors
            ],
        }
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error.model_dump()
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException
) -> JSONResponse:
    """Handle HTTPException with standardized format.

    Pre-formatted details pass through; anything else is wrapped.
    """
    if exc.status_code >= 500:
        logger.error(
            f"Server error: {request.method} {request.url.path} "
            f"-> {exc.status_code}: {exc.detail}"
        )
    else:
        logger.info(
            f"Client error: {request.method} {request.url.path} "
            f"-> {exc.status_code}: {exc.detail}"
        )

    if isinstance(exc.detail, dict) and "code" in exc.detail:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.detail,
            headers=getattr(exc, "headers", None)
        )

    code = ErrorCode.NOT_FOUND if exc.status_code == status.HTTP_404_NOT_FOUND else ErrorCode.INTERNAL_ERROR
    error = create_error_response(
        code=code,
        message=str(exc.detail) if exc.detail else "An error occurred"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error.model_dump(),
        headers=getattr(exc, "headers", None)
    )


async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions without leaking internals."""
    logger.error(
        f"Unhandled exception: {request.method} {request.url.path} "
        f"-> {type(exc).__name__}: {str(exc)}",
        exc_info=exc
    )

    error = create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An internal server error occurred"
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error.model_dump()
    )
