"""Admin API routes: reversals, scheduler trigger and FX rate publishing."""

import logging

from fastapi import APIRouter, Depends

from remitcore.auth import verify_admin_token
from remitcore.core.errors import Failure
from remitcore.core.fx_lock import FxRateLockService
from remitcore.core.schedule_runner import ScheduleRunner
from remitcore.core.transfers import TransferAuthorizationService
from remitcore.dependencies import (
    get_fx_service,
    get_schedule_runner,
    get_transfer_service,
    raise_failure,
)
from remitcore.schemas.common import ServiceResponse
from remitcore.schemas.transfers import RateUpdateRequest, ReverseRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ============================================================================
# Transfer Review
# ============================================================================

@router.post("/transfers/{transfer_id}/reverse")
async def reverse_transfer(
    transfer_id: str,
    request: ReverseRequest,
    service: TransferAuthorizationService = Depends(get_transfer_service),
    _token: str = Depends(verify_admin_token),
) -> ServiceResponse:
    """
    Reverse a completed transfer with a compensating transfer.

    The original transfer is left untouched; the reversal is a new record
    with status ``reversed`` pointing back at it.
    """
    reversal = await service.reverse(transfer_id, request.reason)
    if isinstance(reversal, Failure):
        raise_failure(reversal)
    logger.info(f"Admin reversed transfer {transfer_id}")
    return ServiceResponse(data=reversal.to_dict())


# ============================================================================
# Scheduler
# ============================================================================

@router.post("/scheduler/run")
async def run_scheduler(
    runner: ScheduleRunner = Depends(get_schedule_runner),
    _token: str = Depends(verify_admin_token),
) -> ServiceResponse:
    """Run one scheduler pass now instead of waiting for the interval."""
    summary = await runner.run_once()
    return ServiceResponse(data=summary.to_dict())


# ============================================================================
# FX Rates
# ============================================================================

@router.put("/fx/rates")
async def publish_rate(
    request: RateUpdateRequest,
    fx: FxRateLockService = Depends(get_fx_service),
    _token: str = Depends(verify_admin_token),
) -> ServiceResponse:
    rate = await fx.set_rate(
        request.from_currency,
        request.to_currency,
        request.mid,
        spread_bps=request.spread_bps,
    )
    return ServiceResponse(
        data={
            "rate_id": rate.rate_id,
            "from_currency": rate.from_currency,
            "to_currency": rate.to_currency,
            "mid": str(rate.mid),
            "spread_bps": rate.spread_bps,
            "source": rate.source,
        }
    )
