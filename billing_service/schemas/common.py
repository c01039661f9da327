# billing_service/schemas/common.py
# Response envelope shared by every billing endpoint:
#   {"success": true, "message": "...", "data": {...}}

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    message: str
    data: Optional[T] = None


class WebhookAck(BaseModel):
    """Sepay expects a 200 with this body whatever happened."""
    success: bool
    message: str
