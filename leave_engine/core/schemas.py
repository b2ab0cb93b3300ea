from typing import Any, Dict, Generic, Optional, TypeVar
from pydantic import BaseModel, Field
from datetime import datetime, timezone

from leave_engine.core.exceptions import AppException

T = TypeVar("T")

class ErrorInfo(BaseModel):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None

class PageMeta(BaseModel):
    page: int
    per_page: int
    total: int

class ApiResponse(BaseModel, Generic[T]):
    """Envelope for every API payload: {success, data, error, metadata, timestamp}."""
    success: bool
    data: Optional[T] = None
    error: Optional[ErrorInfo] = None
    metadata: Dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def ok(cls, data: T, metadata: Optional[Dict[str, Any]] = None) -> "ApiResponse[T]":
        return cls(success=True, data=data, metadata=metadata or {})

    @classmethod
    def page(cls, data: T, page: int, per_page: int, total: int) -> "ApiResponse[T]":
        return cls.ok(data, metadata=PageMeta(page=page, per_page=per_page, total=total).model_dump())

    @classmethod
    def fail(cls, message: str, code: str = "ERROR", details: Optional[Dict[str, Any]] = None) -> "ApiResponse[T]":
        return cls(success=False, error=ErrorInfo(code=code, message=message, details=details))

    @classmethod
    def from_exception(cls, exc: AppException) -> "ApiResponse[T]":
        return cls.fail(exc.message, exc.error_code, exc.details or None)
