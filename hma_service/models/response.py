"""Standard API response envelope"""

from typing import Any, Optional
from pydantic import BaseModel


class ApiResponse(BaseModel):
    """Every route returns this shape; failures carry the error kind in ``error``"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "success") -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str, message: str = "failed", data: Any = None) -> "ApiResponse":
        return cls(success=False, error=error, message=message, data=data)
