"""Common schemas used across all routes."""

from typing import Any, Optional

from pydantic import BaseModel


class ServiceResponse(BaseModel):
    """Standard response wrapper."""

    success: bool = True
    data: Optional[Any] = None


class ErrorDetail(BaseModel):
    """Body of ``detail`` on every error response."""

    error_kind: str
    message: str
    details: Optional[dict] = None
