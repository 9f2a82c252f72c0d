"""Transfer, recipient trust and FX quote routes."""

import logging

from fastapi import APIRouter, Depends, Query

from remitcore.config import Settings, get_settings
from remitcore.core.errors import Failure
from remitcore.core.fx_lock import FxRateLockService
from remitcore.core.transfers import TransferAuthorizationService
from remitcore.dependencies import (
    get_current_user,
    get_fx_service,
    get_transfer_service,
    raise_failure,
)
from remitcore.schemas.common import ServiceResponse
from remitcore.schemas.transfers import (
    AttemptRequest,
    ChallengeResponse,
    ConfirmRequest,
    VerifyChallengeRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=get_settings().api_prefix, tags=["transfers"])


# ==================== Transfer Endpoints ====================


@router.post("/transfers/attempt")
async def create_attempt(
    request: AttemptRequest,
    user_id: str = Depends(get_current_user),
    service: TransferAuthorizationService = Depends(get_transfer_service),
) -> ServiceResponse:
    """Price and risk-assess a transfer; tells the caller whether a code is needed."""
    attempt = await service.attempt(
        sender_id=user_id,
        recipient_id=request.recipient_id,
        amount=request.amount,
        currency=request.currency,
        idempotency_key=request.idempotency_key,
    )
    if isinstance(attempt, Failure):
        raise_failure(attempt)
    return ServiceResponse(data=await service.describe_attempt(attempt))


@router.post("/transfers/attempts/{attempt_id}/challenge")
async def issue_challenge(
    attempt_id: str,
    user_id: str = Depends(get_current_user),
    service: TransferAuthorizationService = Depends(get_transfer_service),
    settings: Settings = Depends(get_settings),
) -> ServiceResponse:
    """Send a one-time code for an attempt that requires step-up."""
    issued = await service.issue_challenge(attempt_id, actor_id=user_id)
    if isinstance(issued, Failure):
        raise_failure(issued)
    return ServiceResponse(
        data=ChallengeResponse(
            challenge_id=issued.challenge_id,
            attempt_id=issued.attempt_id,
            expires_at=issued.expires_at.isoformat(),
            code=issued.code if settings.expose_otp_codes else None,
        )
    )


@router.post("/transfers/challenges/{challenge_id}/verify")
async def verify_challenge(
    challenge_id: str,
    request: VerifyChallengeRequest,
    user_id: str = Depends(get_current_user),
    service: TransferAuthorizationService = Depends(get_transfer_service),
) -> ServiceResponse:
    challenge = await service.verify_challenge(challenge_id, request.code, actor_id=user_id)
    if isinstance(challenge, Failure):
        raise_failure(challenge)
    return ServiceResponse(
        data={
            "challenge_id": challenge.challenge_id,
            "attempt_id": challenge.attempt_id,
            "status": challenge.status,
        }
    )


@router.post("/transfers/confirm")
async def confirm_transfer(
    request: ConfirmRequest,
    user_id: str = Depends(get_current_user),
    service: TransferAuthorizationService = Depends(get_transfer_service),
) -> ServiceResponse:
    """
    Commit an attempt.

    Safe to retry: a repeated confirm returns the already-committed transfer.
    """
    transfer = await service.confirm(request.attempt_id, otp_code=request.otp_code, actor_id=user_id)
    if isinstance(transfer, Failure):
        raise_failure(transfer)
    return ServiceResponse(data=transfer.to_dict())


@router.get("/transfers/{transfer_id}")
async def get_transfer(
    transfer_id: str,
    user_id: str = Depends(get_current_user),
    service: TransferAuthorizationService = Depends(get_transfer_service),
) -> ServiceResponse:
    transfer = await service.get_transfer(transfer_id, actor_id=user_id)
    if isinstance(transfer, Failure):
        raise_failure(transfer)
    return ServiceResponse(data=transfer.to_dict())


# ==================== Recipient & FX Endpoints ====================


@router.get("/recipients/{recipient_id}/trust")
async def get_recipient_trust(
    recipient_id: str,
    user_id: str = Depends(get_current_user),
    service: TransferAuthorizationService = Depends(get_transfer_service),
) -> ServiceResponse:
    """Trust level of the caller's relationship with a recipient."""
    trust = await service.evaluate_trust(user_id, recipient_id)
    return ServiceResponse(data={"recipient_id": recipient_id, **trust.to_dict()})


@router.get("/fx/quote")
async def get_fx_quote(
    from_currency: str = Query(..., alias="from", min_length=3, max_length=3),
    to_currency: str = Query(..., alias="to", min_length=3, max_length=3),
    fx: FxRateLockService = Depends(get_fx_service),
) -> ServiceResponse:
    """Preview the current rate without locking it."""
    quote = await fx.quote(from_currency, to_currency)
    if isinstance(quote, Failure):
        raise_failure(quote)
    return ServiceResponse(data=quote)
