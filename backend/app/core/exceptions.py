"""
Custom exceptions and error handlers for consistent error responses.

Every engine guard raises one of the taxonomy exceptions below. Each carries
the taxonomy code as ``error_code`` so clients can branch on it.
"""

import logging
from datetime import datetime
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationFailedError(AppException):
    """Raised for malformed or missing input."""

    def __init__(self, message: str = "Validation failed", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="VALIDATION_FAILED",
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class TransitionNotAllowedError(AppException):
    """Raised when a status edge is not in the transition table."""

    def __init__(self, from_status: str, to_status: str, allowed: Optional[List[str]] = None):
        allowed = allowed or []
        message = f"Cannot transition from '{from_status}' to '{to_status}'"
        if allowed:
            message += f". Allowed: {', '.join(allowed)}"
        super().__init__(
            message=message,
            error_code="TRANSITION_NOT_ALLOWED",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"from": from_status, "to": to_status, "allowed": allowed}
        )


class AllocationInvalidError(AppException):
    """Raised when an allocation set breaks a ledger rule."""

    def __init__(self, rule: str, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ALLOCATION_INVALID",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"rule": rule, **(details or {})}
        )
        self.rule = rule


class ChangeOrderLinkRequiredError(AppException):
    """Raised when change-order coded lines lack a change order link on approval."""

    def __init__(self, allocations: List[Dict[str, Any]]):
        super().__init__(
            message=f"{len(allocations)} change order allocation(s) must be linked to a change order before approval",
            error_code="CHANGE_ORDER_LINK_REQUIRED",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"allocations": allocations}
        )


class AlreadySplitError(AppException):
    """Raised when splitting an invoice that is already part of a family."""

    def __init__(self, invoice_id: int):
        super().__init__(
            message="Invoice is already part of a split",
            error_code="ALREADY_SPLIT",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"invoice_id": invoice_id}
        )


class InvalidStatusForSplitError(AppException):
    """Raised when the invoice status does not permit splitting."""

    def __init__(self, invoice_id: int, current_status: str):
        super().__init__(
            message=f"Cannot split invoice in {current_status} status",
            error_code="INVALID_STATUS_FOR_SPLIT",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"invoice_id": invoice_id, "status": current_status}
        )


class SplitSumMismatchError(AppException):
    """Raised when split amounts do not add up to the invoice amount."""

    def __init__(self, split_total, invoice_amount):
        super().__init__(
            message=f"Split amounts ({split_total}) must equal original amount ({invoice_amount})",
            error_code="SPLIT_SUM_MISMATCH",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"split_total": str(split_total), "invoice_amount": str(invoice_amount)}
        )


class ChildAlreadyProcessedError(AppException):
    """Raised when unsplitting a family whose child has moved past approval."""

    def __init__(self, child_id: int, child_number: Optional[str], child_status: str):
        super().__init__(
            message=f"Cannot unsplit: child invoice {child_number or child_id} is already {child_status}",
            error_code="CHILD_ALREADY_PROCESSED",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"child_id": child_id, "invoice_number": child_number, "status": child_status}
        )


class LockHeldError(AppException):
    """Raised when another holder owns an active lease on the entity."""

    def __init__(self, entity_type: str, entity_id: str, holder: str, expires_at: datetime):
        super().__init__(
            message=f"{entity_type} is being edited by {holder}",
            error_code="LOCK_HELD",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "holder": holder,
                "expires_at": expires_at.isoformat(),
            }
        )
        self.holder = holder
        self.expires_at = expires_at


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class UndoNotFoundError(AppException):
    """Raised when no replayable undo entry exists."""

    def __init__(self, message: str = "No undo available"):
        super().__init__(
            message=message,
            error_code="UNDO_NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND
        )


class UndoStaleError(AppException):
    """Raised when the entity changed after the undo entry was recorded."""

    def __init__(self, entity_type: str, entity_id: str, recorded_version: int, current_version: int):
        super().__init__(
            message="This record has changed since the action was performed; undo is no longer safe",
            error_code="UNDO_STALE",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "recorded_version": recorded_version,
                "current_version": current_version,
            }
        )


class UndoExpiredError(AppException):
    """Raised when the undo window has passed."""

    def __init__(self):
        super().__init__(
            message="Undo window has expired",
            error_code="UNDO_EXPIRED",
            status_code=status.HTTP_409_CONFLICT
        )


class VersionConflictError(AppException):
    """Raised when the record was modified by another request."""

    def __init__(self, resource: str, resource_id: Any, expected: Optional[int] = None, actual: Optional[int] = None):
        super().__init__(
            message=f"{resource} {resource_id} has been modified by another user",
            error_code="VERSION_CONFLICT",
            status_code=status.HTTP_409_CONFLICT,
            details={"resource": resource, "id": resource_id, "expected_version": expected, "current_version": actual}
        )


class DatabaseError(AppException):
    """Raised for storage-layer failures."""

    def __init__(self, message: str = "Database operation failed"):
        super().__init__(
            message=message,
            error_code="DATABASE_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
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
        400: "VALIDATION_FAILED",
        404: "NOT_FOUND",
        409: "VERSION_CONFLICT",
        500: "DATABASE_ERROR"
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
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "VALIDATION_FAILED",
            "message": "Validation error",
            "details": {
                "errors": [
                    {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
                    for err in exc.errors()
                ]
            }
        }
    )


async def stale_data_exception_handler(request: Request, exc: StaleDataError) -> JSONResponse:
    """Handler for optimistic-concurrency failures raised at flush time."""
    logger.warning("Concurrent modification detected", extra={"path": request.url.path})
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "error_code": "VERSION_CONFLICT",
            "message": "The record has been modified by another user",
            "details": {}
        }
    )


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handler for storage-layer failures. Surfaced as-is, never retried."""
    logger.error("Database error", extra={"path": request.url.path, "error": type(exc).__name__})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "DATABASE_ERROR",
            "message": "Database operation failed",
            "details": {"type": type(exc).__name__}
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s", type(exc).__name__)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
