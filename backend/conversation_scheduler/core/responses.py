"""
Standard response models for consistent API responses.
"""

from typing import Any, Dict, List, Optional, Generic, TypeVar
from pydantic import BaseModel, Field
from enum import Enum

T = TypeVar('T')

class ResponseStatus(str, Enum):
    """Standard response status values"""
    SUCCESS = "success"
    ERROR = "error"

class StandardResponse(BaseModel, Generic[T]):
    """Standard API response wrapper"""
    status: ResponseStatus = Field(..., description="Response status")
    data: Optional[T] = Field(None, description="Response data")
    message: Optional[str] = Field(None, description="Human-readable message")
    errors: Optional[List[str]] = Field(None, description="List of error messages")
    meta: Optional[Dict[str, Any]] = Field(None, description="Additional metadata")

class ErrorResponse(BaseModel):
    """Standard error response"""
    status: ResponseStatus = ResponseStatus.ERROR
    message: str = Field(..., description="Error message")
    errors: List[str] = Field(default_factory=list, description="Detailed error messages")
    code: Optional[str] = Field(None, description="Error code")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")

def success_response(data: Any, message: str = None, meta: Dict[str, Any] = None) -> StandardResponse:
    """Create a success response"""
    return StandardResponse(
        status=ResponseStatus.SUCCESS,
        data=data,
        message=message,
        meta=meta
    )
