"""Custom exception classes and error handling for the Pulse API."""

from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config.logging import get_logger
from .models.responses import ErrorResponse

logger = get_logger(__name__)


class PulseException(Exception):
    """Base exception for Pulse application."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.request_id = request_id

    @property
    def headers(self) -> Dict[str, str]:
        return {}


class ValidationException(PulseException):
    """Exception for validation errors."""

    def __init__(
        self,
        message: str = "Validation failed",
        field_errors: Optional[Dict[str, str]] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            status_code=422,
            details={"field_errors": field_errors or {}},
            request_id=request_id,
        )


class NotFoundError(PulseException):
    """Exception for resource not found errors."""

    def __init__(
        self, resource: str, identifier: str, request_id: Optional[str] = None
    ):
        message = f"{resource} {identifier} not found"
        super().__init__(
            message=message,
            status_code=404,
            details={"resource": resource, "identifier": identifier},
            request_id=request_id,
        )


class AuthenticationError(PulseException):
    """Exception for missing or invalid credentials."""

    def __init__(self, message: str = "Unauthorized", request_id: Optional[str] = None):
        super().__init__(message=message, status_code=401, request_id=request_id)

    @property
    def headers(self) -> Dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class PermissionDeniedError(PulseException):
    """Exception for authenticated callers lacking the required role."""

    def __init__(
        self,
        message: str = "Forbidden",
        required_role: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            status_code=403,
            details={"required_role": required_role} if required_role else {},
            request_id=request_id,
        )


class RateLimitError(PulseException):
    """Exception for rate limiting errors."""

    def __init__(
        self,
        resource: str,
        limit: int,
        window: str,
        retry_after: int = 0,
        request_id: Optional[str] = None,
    ):
        message = f"Rate limit exceeded for {resource}: {limit} requests per {window}"
        super().__init__(
            message=message,
            status_code=429,
            details={
                "resource": resource,
                "limit": limit,
                "window": window,
                "retry_after": retry_after,
            },
            request_id=request_id,
        )
        self.retry_after = retry_after

    @property
    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)} if self.retry_after else {}


class ConfigurationError(PulseException):
    """Exception for configuration errors."""

    def __init__(self, setting: str, message: str, request_id: Optional[str] = None):
        super().__init__(
            message=f"Configuration error for '{setting}': {message}",
            status_code=500,
            details={"setting": setting},
            request_id=request_id,
        )


class DatabaseError(PulseException):
    """Exception for database operation failures reaching the API."""

    def __init__(self, operation: str, message: str, request_id: Optional[str] = None):
        super().__init__(
            message=f"Database {operation} failed: {message}",
            status_code=500,
            details={"operation": operation},
            request_id=request_id,
        )


class ExternalServiceError(PulseException):
    """Exception for failures of a third-party service the API depends on."""

    def __init__(
        self,
        service: str,
        operation: str,
        message: str,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"{service} service error during {operation}: {message}",
            status_code=503,
            details={"service": service, "operation": operation},
            request_id=request_id,
        )


class RunFailedError(PulseException):
    """Exception for alert runs that could not get started."""

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message=message, status_code=500, request_id=request_id)


def error_response(
    request: Request,
    status_code: int,
    error_type: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render the error envelope shared by every failing endpoint."""
    error = {"type": error_type, "message": message, "status_code": status_code}
    if details is not None:
        error["details"] = details

    body = ErrorResponse(
        success=False,
        error=error,
        request_id=getattr(request.state, "request_id", None),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


async def pulse_exception_handler(request: Request, exc: PulseException) -> JSONResponse:
    """Handle Pulse exceptions raised by services and dependencies."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Request failed",
        exception_type=type(exc).__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=getattr(request.state, "request_id", None),
        path=request.url.path,
        method=request.method,
    )

    return error_response(
        request,
        exc.status_code,
        type(exc).__name__,
        exc.message,
        details=exc.details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle request and Pydantic validation exceptions."""
    field_errors = {
        ".".join(str(loc) for loc in error["loc"]): error["msg"] for error in exc.errors()
    }

    logger.warning(
        "Request validation failed",
        field_errors=field_errors,
        path=request.url.path,
        method=request.method,
    )

    return error_response(
        request,
        422,
        "ValidationError",
        "Request validation failed",
        details={"field_errors": field_errors},
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Handle routing and framework HTTP errors such as 404 and 405."""
    logger.warning(
        "HTTP exception occurred",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )

    return error_response(
        request,
        exc.status_code,
        "HTTPException",
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without exposing their details."""
    logger.error(
        "Unexpected exception occurred",
        exception_type=type(exc).__name__,
        message=str(exc),
        request_id=getattr(request.state, "request_id", None),
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )

    return error_response(request, 500, "InternalServerError", "An unexpected error occurred")


def setup_exception_handlers(app):
    """Register exception handlers with FastAPI app."""
    app.add_exception_handler(PulseException, pulse_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    logger.info("Exception handlers registered")
