"""
Exception handling for the operator API.
"""

import logging
from typing import Any, Dict
from fastapi import Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .responses import ErrorResponse, ResponseStatus

logger = logging.getLogger(__name__)

class BaseAPIException(Exception):
    """Base exception for API errors"""
    status_code = 500

    def __init__(self, message: str, code: str = None, details: Dict[str, Any] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

class NotFoundException(BaseAPIException):
    """Resource not found exception"""
    status_code = 404

    def __init__(self, message: str, resource_type: str = None, resource_id: Any = None):
        details = {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id is not None:
            details["resource_id"] = resource_id
        super().__init__(message, code="NOT_FOUND", details=details)

class ForbiddenException(BaseAPIException):
    """Forbidden access exception"""
    status_code = 403

    def __init__(self, message: str = "Access forbidden"):
        super().__init__(message, code="FORBIDDEN")

class ServiceUnavailableException(BaseAPIException):
    """A collaborator (store, broker) failed while serving the request"""
    status_code = 503

    def __init__(self, message: str, operation: str = None):
        details = {}
        if operation:
            details["operation"] = operation
        super().__init__(message, code="SERVICE_UNAVAILABLE", details=details)

def setup_exception_handlers(app):
    """Setup exception handlers for the FastAPI app"""

    @app.exception_handler(BaseAPIException)
    async def base_api_exception_handler(request: Request, exc: BaseAPIException):
        """Handle custom API exceptions"""
        logger.warning(f"API Exception: {exc.message} (Code: {exc.code})", extra={
            "exception_type": exc.__class__.__name__,
            "code": exc.code,
            "details": exc.details,
            "path": request.url.path,
            "method": request.method
        })

        error_response = ErrorResponse(
            status=ResponseStatus.ERROR,
            message=exc.message,
            code=exc.code,
            details=exc.details
        )

        return JSONResponse(
            status_code=exc.status_code,
            content=error_response.model_dump()
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle Pydantic validation errors"""
        logger.warning(f"Validation Error: {exc.errors()}", extra={
            "path": request.url.path,
            "method": request.method,
        })

        field_errors = []
        for error in exc.errors():
            field_path = " -> ".join(str(loc) for loc in error["loc"])
            field_errors.append(f"{field_path}: {error['msg']}")

        error_response = ErrorResponse(
            status=ResponseStatus.ERROR,
            message="Validation failed",
            errors=field_errors,
            code="VALIDATION_ERROR",
        )

        return JSONResponse(
            status_code=422,
            content=error_response.model_dump()
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle FastAPI HTTP exceptions"""
        logger.warning(f"HTTP Exception: {exc.detail}", extra={
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method
        })

        error_response = ErrorResponse(
            status=ResponseStatus.ERROR,
            message=str(exc.detail),
            code=f"HTTP_{exc.status_code}"
        )

        return JSONResponse(
            status_code=exc.status_code,
            content=error_response.model_dump()
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions"""
        logger.error(f"Unexpected Exception: {str(exc)}", extra={
            "exception_type": exc.__class__.__name__,
            "path": request.url.path,
            "method": request.method
        }, exc_info=True)

        error_response = ErrorResponse(
            status=ResponseStatus.ERROR,
            message="An unexpected error occurred",
            code="INTERNAL_SERVER_ERROR"
        )

        return JSONResponse(
            status_code=500,
            content=error_response.model_dump()
        )

def raise_not_found(message: str, resource_type: str = None, resource_id: Any = None):
    """Raise a not found exception"""
    raise NotFoundException(message, resource_type, resource_id)
