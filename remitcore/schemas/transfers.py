"""Pydantic schemas for transfer, FX and admin requests."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


# ============================================================================
# Transfer Schemas
# ============================================================================

class AttemptRequest(BaseModel):
    """Request to start a transfer attempt."""

    recipient_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., description="Amount in the sender's currency")
    currency: str = Field(..., min_length=3, max_length=3)
    idempotency_key: Optional[str] = Field(None, max_length=200)


class VerifyChallengeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=12)


class ConfirmRequest(BaseModel):
    """Request to confirm an attempt, optionally carrying the OTP code."""

    attempt_id: str
    otp_code: Optional[str] = Field(None, max_length=12)


class ChallengeResponse(BaseModel):
    challenge_id: str
    attempt_id: str
    expires_at: str
    # Only populated when REMITCORE_EXPOSE_OTP_CODES is set (local dev)
    code: Optional[str] = None


# ============================================================================
# Admin Schemas
# ============================================================================

class ReverseRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class RateUpdateRequest(BaseModel):
    """Publish a new mid rate for a currency pair."""

    from_currency: str = Field(..., min_length=3, max_length=3)
    to_currency: str = Field(..., min_length=3, max_length=3)
    mid: Decimal = Field(..., gt=0)
    spread_bps: Optional[int] = Field(None, ge=0, le=5000)
