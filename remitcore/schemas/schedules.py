"""Pydantic schemas for recurring schedule requests."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class ScheduleCreateRequest(BaseModel):
    """Request to create a recurring remittance."""

    recipient_id: str = Field(..., min_length=1, max_length=64)
    amount_usd: Decimal = Field(..., description="Fixed amount sent on every run, in USD")
    frequency: str = Field(..., description="weekly, biweekly or monthly")
    note: Optional[str] = Field(None, max_length=500)
