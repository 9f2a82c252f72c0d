"""Recurring schedule routes."""

import logging

from fastapi import APIRouter, Depends, Query

from remitcore.config import get_settings
from remitcore.core.errors import Failure
from remitcore.core.schedules import RecurringScheduleEngine
from remitcore.dependencies import get_current_user, get_schedule_engine, raise_failure
from remitcore.schemas.common import ServiceResponse
from remitcore.schemas.schedules import ScheduleCreateRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{get_settings().api_prefix}/schedules", tags=["schedules"])


@router.post("")
async def create_schedule(
    request: ScheduleCreateRequest,
    user_id: str = Depends(get_current_user),
    engine: RecurringScheduleEngine = Depends(get_schedule_engine),
) -> ServiceResponse:
    """Create a recurring remittance; creating it records standing consent."""
    schedule = await engine.create(
        owner_id=user_id,
        recipient_id=request.recipient_id,
        amount_usd=request.amount_usd,
        frequency=request.frequency,
        note=request.note,
    )
    if isinstance(schedule, Failure):
        raise_failure(schedule)
    return ServiceResponse(data=schedule.to_dict())


@router.get("")
async def list_schedules(
    include_canceled: bool = Query(False),
    user_id: str = Depends(get_current_user),
    engine: RecurringScheduleEngine = Depends(get_schedule_engine),
) -> ServiceResponse:
    schedules = await engine.list_for_owner(user_id, include_canceled=include_canceled)
    return ServiceResponse(data=[s.to_dict() for s in schedules])


@router.post("/{schedule_id}/pause")
async def pause_schedule(
    schedule_id: str,
    user_id: str = Depends(get_current_user),
    engine: RecurringScheduleEngine = Depends(get_schedule_engine),
) -> ServiceResponse:
    schedule = await engine.pause(schedule_id, owner_id=user_id)
    if isinstance(schedule, Failure):
        raise_failure(schedule)
    return ServiceResponse(data=schedule.to_dict())


@router.post("/{schedule_id}/resume")
async def resume_schedule(
    schedule_id: str,
    user_id: str = Depends(get_current_user),
    engine: RecurringScheduleEngine = Depends(get_schedule_engine),
) -> ServiceResponse:
    schedule = await engine.resume(schedule_id, owner_id=user_id)
    if isinstance(schedule, Failure):
        raise_failure(schedule)
    return ServiceResponse(data=schedule.to_dict())


@router.post("/{schedule_id}/cancel")
async def cancel_schedule(
    schedule_id: str,
    user_id: str = Depends(get_current_user),
    engine: RecurringScheduleEngine = Depends(get_schedule_engine),
) -> ServiceResponse:
    schedule = await engine.cancel(schedule_id, owner_id=user_id)
    if isinstance(schedule, Failure):
        raise_failure(schedule)
    return ServiceResponse(data=schedule.to_dict())


@router.get("/{schedule_id}/runs")
async def list_schedule_runs(
    schedule_id: str,
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user),
    engine: RecurringScheduleEngine = Depends(get_schedule_engine),
) -> ServiceResponse:
    """Audit log of a schedule's runs, newest first."""
    schedule = await engine.get(schedule_id, owner_id=user_id)
    if isinstance(schedule, Failure):
        raise_failure(schedule)
    runs = await engine.list_runs(schedule_id, limit=limit)
    return ServiceResponse(data=[r.to_dict() for r in runs])
