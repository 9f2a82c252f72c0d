"""FastAPI dependencies wiring services to the request session."""

from datetime import datetime
from typing import Callable, NoReturn

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from remitcore.clients.ledger import get_wallet_locks
from remitcore.clients.notifications import Notifier, get_notifier
from remitcore.config import Settings, get_settings
from remitcore.core.errors import Failure, http_status_for
from remitcore.core.fx_lock import FxRateLockService
from remitcore.core.schedule_runner import ScheduleRunner
from remitcore.core.schedules import RecurringScheduleEngine
from remitcore.core.transfers import TransferAuthorizationService
from remitcore.database import async_session_maker, get_db, utcnow


def get_clock() -> Callable[[], datetime]:
    return utcnow


async def get_current_user(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    """Caller identity, asserted by the upstream gateway."""
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def get_transfer_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> TransferAuthorizationService:
    return TransferAuthorizationService(
        db,
        notifier=notifier,
        settings=settings,
        clock=clock,
        wallet_locks=get_wallet_locks(),
    )


def get_schedule_engine(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> RecurringScheduleEngine:
    return RecurringScheduleEngine(db, settings=settings, clock=clock)


def get_fx_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> FxRateLockService:
    return FxRateLockService(db, settings, clock)


def get_schedule_runner(
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ScheduleRunner:
    return ScheduleRunner(
        async_session_maker,
        settings=settings,
        clock=clock,
        notifier=notifier,
        wallet_locks=get_wallet_locks(),
    )


def raise_failure(failure: Failure) -> NoReturn:
    """Translate a business failure into the HTTP error contract."""
    raise HTTPException(status_code=http_status_for(failure.kind), detail=failure.to_dict())
