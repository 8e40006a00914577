"""
Response envelope shared by every endpoint.
"""

from pydantic import BaseModel
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """{"success": true, "data": ..., "message": ...}"""
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None
