"""
Error taxonomy and standardized error responses
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None
    request_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Business Logic
    INSUFFICIENT_RESOURCES = "INSUFFICIENT_RESOURCES"
    NOT_FOUND = "NOT_FOUND"

    # Sagas
    PROVISIONING_FAILED = "PROVISIONING_FAILED"
    UPDATE_FAILED = "UPDATE_FAILED"
    DELETION_FAILED = "DELETION_FAILED"
    ORPHANED_INSTANCE = "ORPHANED_INSTANCE"

    # Remote control plane
    TRANSIENT_REMOTE_ERROR = "TRANSIENT_REMOTE_ERROR"
    PERMANENT_REMOTE_ERROR = "PERMANENT_REMOTE_ERROR"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

class BusinessLogicError(Exception):
    """Custom exception for business logic errors"""

    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Custom exception for service-level errors"""

    def __init__(self, code: str, message: str, original_error: Exception = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        super().__init__(message)

# Caller-facing errors, always detected before any remote side effect

class InsufficientResources(BusinessLogicError):
    """One or more ledger fields cannot cover the requested amounts.

    ``fields`` maps each short field to ``{"needed": n, "available": a}``.
    """

    def __init__(self, fields: Dict[str, Dict[str, int]]):
        self.fields = fields
        summary = ", ".join(
            f"{name} (need {amounts['needed']}, have {amounts['available']})"
            for name, amounts in fields.items()
        )
        super().__init__(
            ErrorCodes.INSUFFICIENT_RESOURCES,
            f"Insufficient resources: {summary}",
            context={"fields": fields},
        )

class NotFound(BusinessLogicError):
    def __init__(self, resource_kind: str, resource_id: Any):
        self.resource_kind = resource_kind
        self.resource_id = resource_id
        super().__init__(
            ErrorCodes.NOT_FOUND,
            f"{resource_kind} {resource_id} not found",
            context={"resource_kind": resource_kind, "id": resource_id},
        )

class ValidationError(BusinessLogicError):
    def __init__(self, field: str, reason: str):
        self.reason = reason
        super().__init__(ErrorCodes.VALIDATION_ERROR, f"{field}: {reason}", field=field)

# Saga outcomes

class ProvisioningFailed(ServiceError):
    def __init__(self, cause: Exception, context: Dict[str, Any] = None):
        self.cause = cause
        super().__init__(ErrorCodes.PROVISIONING_FAILED, f"Server provisioning failed: {display_cause(cause)}",
                         original_error=cause, context=context)

class UpdateFailed(ServiceError):
    def __init__(self, cause: Exception, context: Dict[str, Any] = None):
        self.cause = cause
        super().__init__(ErrorCodes.UPDATE_FAILED, f"Server update failed: {display_cause(cause)}",
                         original_error=cause, context=context)

class DeletionFailed(ServiceError):
    def __init__(self, cause: Exception, context: Dict[str, Any] = None):
        self.cause = cause
        super().__init__(ErrorCodes.DELETION_FAILED, f"Server deletion failed: {display_cause(cause)}",
                         original_error=cause, context=context)

class OrphanedInstanceError(ServiceError):
    """A remote instance exists that no local record references."""

    def __init__(self, remote_id: Any, cause: Exception = None, cleaned_up: bool = False):
        self.remote_id = remote_id
        self.cleaned_up = cleaned_up
        super().__init__(
            ErrorCodes.ORPHANED_INSTANCE,
            f"Remote server {remote_id} was created but could not be recorded locally",
            original_error=cause,
            context={"remote_id": remote_id, "cleaned_up": cleaned_up},
        )

# Remote control plane call failures

class RemoteError(ServiceError):
    retryable = False

    def __init__(self, code: str, message: str, status: Optional[int] = None,
                 detail: Any = None, original_error: Exception = None):
        self.status = status
        self.detail = detail
        context = {"remote_status": status} if status is not None else {}
        super().__init__(code, message, original_error=original_error, context=context)

class TransientRemoteError(RemoteError):
    """Network failure, timeout, 429 or 5xx. Safe to retry idempotent calls."""
    retryable = True

    def __init__(self, message: str, status: Optional[int] = None, original_error: Exception = None):
        super().__init__(ErrorCodes.TRANSIENT_REMOTE_ERROR, message, status=status, original_error=original_error)

class PermanentRemoteError(RemoteError):
    """4xx from the panel. Retrying will not help."""

    def __init__(self, message: str, status: Optional[int] = None, detail: Any = None):
        super().__init__(ErrorCodes.PERMANENT_REMOTE_ERROR, message, status=status, detail=detail)
        if detail is not None:
            self.context["details"] = detail

class RemoteNotFoundError(PermanentRemoteError):
    def __init__(self, message: str, detail: Any = None):
        super().__init__(message, status=404, detail=detail)

class NoAllocationAvailable(PermanentRemoteError):
    def __init__(self, node_id: Any):
        self.node_id = node_id
        super().__init__(f"No unassigned allocations available on node {node_id}")

class CatalogItemNotFound(PermanentRemoteError):
    def __init__(self, item_id: Any):
        self.item_id = item_id
        super().__init__(f"Egg {item_id} not found in any nest", status=404)

def display_cause(cause: Exception) -> str:
    """Remote validation failures are safe to show, anything else gets a generic message"""
    if isinstance(cause, PermanentRemoteError):
        return cause.message
    if isinstance(cause, TransientRemoteError):
        return "the control panel is temporarily unavailable"
    if isinstance(cause, BusinessLogicError):
        return cause.message
    return "unexpected error"

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
    request_id: str = None
) -> JSONResponse:
    """Create standardized error response"""

    error_detail = ErrorDetail(
        code=error_code,
        message=message,
        field=field,
        context=context
    )

    error_response = StandardErrorResponse(
        error=error_detail,
        timestamp=time.time(),
        trace_id=trace_id,
        request_id=request_id
    )

    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump()
    )

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business logic exceptions"""

    status_code_map = {
        ErrorCodes.INSUFFICIENT_RESOURCES: 400,
        ErrorCodes.NOT_FOUND: 404,
        ErrorCodes.VALIDATION_ERROR: 400,
        ErrorCodes.FORBIDDEN: 403,
        ErrorCodes.UNAUTHORIZED: 401,
    }

    status_code = status_code_map.get(exc.code, 400)

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "request_id": request_id,
        "field": exc.field,
        "context": exc.context
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context,
        trace_id=trace_id,
        request_id=request_id
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""

    status_code_map = {
        ErrorCodes.PROVISIONING_FAILED: 502,
        ErrorCodes.UPDATE_FAILED: 502,
        ErrorCodes.DELETION_FAILED: 502,
        ErrorCodes.ORPHANED_INSTANCE: 500,
        ErrorCodes.TRANSIENT_REMOTE_ERROR: 503,
        ErrorCodes.PERMANENT_REMOTE_ERROR: 502,
        ErrorCodes.SERVICE_UNAVAILABLE: 503,
    }

    status_code = status_code_map.get(exc.code, 500)
    # Panel rejected the payload (422 and friends): that is the caller's input
    cause = getattr(exc, "cause", None)
    if isinstance(cause, PermanentRemoteError) and cause.status == 422:
        status_code = 400

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "request_id": request_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    context = dict(exc.context)
    if isinstance(cause, PermanentRemoteError) and cause.detail is not None:
        context["details"] = cause.detail

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        context=context or None,
        trace_id=trace_id,
        request_id=request_id
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "trace_id": trace_id,
        "request_id": request_id,
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        trace_id=trace_id,
        request_id=request_id
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    status_to_code = {
        401: ErrorCodes.UNAUTHORIZED,
        403: ErrorCodes.FORBIDDEN,
        404: ErrorCodes.NOT_FOUND,
        500: ErrorCodes.INTERNAL_SERVER_ERROR,
        503: ErrorCodes.SERVICE_UNAVAILABLE,
    }

    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "trace_id": trace_id,
        "request_id": request_id
    })

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=trace_id,
        request_id=request_id
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "request_id": request_id,
        "traceback": traceback.format_exc()
    })

    # Don't expose internal error details
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=trace_id,
        request_id=request_id
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
