"""
Custom exceptions and error handlers for consistent error responses.

Error taxonomy:
- ValidationError: malformed stop/route input, rejected before diffing or pricing.
- NotFoundError: unknown route, notification, batch, order or earnings record.
- InvalidStateError: lifecycle transition not allowed from the current state.
- StopAlreadyAssignedError: stop owned by a sibling route of the same batch.
- TransientStorageError: lost conditional update; safe to retry (merge is idempotent).
- PricingConfigurationError: missing or malformed zone/tier tables. Never defaulted to zero.
- ExternalServiceError: geocoding provider unreachable or failing.

Reconciliation findings are data (Violation records), not exceptions.
"""

import logging
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationError(AppException):
    """Raised when stop or route input is malformed."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class NotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class InvalidStateError(AppException):
    """Raised when an entity is not in a state that allows the operation."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_STATE_001",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class TransientStorageError(AppException):
    """Raised when a conditional write lost a race. Callers retry with merge."""

    def __init__(self, message: str = "Concurrent write conflict", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_CONFLICT_001",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class StopAlreadyAssignedError(AppException):
    """Raised when a stop is already assigned to another route of the same batch."""

    def __init__(self, batch_id: int, stop_ids: list):
        super().__init__(
            message=f"Stops already assigned to another route of batch {batch_id}",
            error_code="ERR_CONFLICT_002",
            status_code=status.HTTP_409_CONFLICT,
            details={"batch_id": batch_id, "stop_ids": stop_ids}
        )


class PricingConfigurationError(AppException):
    """Raised when pricing zones or tiers are missing or malformed."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PRICING_001",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


class ExternalServiceError(AppException):
    """Raised when a collaborator (geocoding provider) is unreachable or errors."""

    def __init__(self, service: str, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=f"{service} unavailable: {message}",
            error_code="ERR_EXTERNAL_001",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    if exc.status_code >= 500:
        logger.error("Application error", extra={"error_code": exc.error_code, "error_message": exc.message})
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors on request bodies."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": [
                    {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
                    for err in exc.errors()
                ]
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception", extra={"path": request.url.path})

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
