"""
Response envelope shared by every JSON endpoint.

The console reads ``response.data.data`` everywhere, so payloads are always
wrapped as ``{success, data, message}``.
"""
from typing import Any, Dict, Generic, List, Optional, TypeVar
from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Standard API response wrapper."""
    success: bool = Field(True, description="Operation success flag")
    data: Optional[T] = Field(None, description="Response data")
    message: Optional[str] = Field(None, description="Response message")
    errors: Optional[Dict[str, Any]] = Field(None, description="Error details")

    @classmethod
    def ok(cls, data: Any = None, message: Optional[str] = None) -> "ApiResponse[T]":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, message: str, errors: Optional[Dict[str, Any]] = None) -> "ApiResponse[Any]":
        return cls(success=False, data=None, message=message, errors=errors or None)


class Page(BaseModel, Generic[T]):
    """Paginated slice of a listing."""
    items: List[T]
    total: int
    page: int
    page_size: int
    pages: int
