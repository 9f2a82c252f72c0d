"""Billing / plan interface used to gate schedule creation."""

import logging
from typing import Dict, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from remitcore.config import get_settings
from remitcore.models.account import Account
from remitcore.models.schedule import RecurringSchedule

logger = logging.getLogger(__name__)

# Statuses that hold a plan slot; paused and failed schedules can be resumed.
SLOT_HOLDING_STATUSES = ("active", "paused", "failed")


class PlanGate(Protocol):
    async def get_active_schedule_count(self, owner_id: str) -> int:
        ...

    async def get_plan_tier(self, owner_id: str) -> str:
        ...

    def schedule_limit(self, plan_tier: str) -> Optional[int]:
        ...


class LocalPlanGate:
    """Plan gate reading the plan tier from the local account mirror."""

    def __init__(self, db: AsyncSession, limits: Optional[Dict[str, int]] = None):
        self.db = db
        self._limits = limits if limits is not None else get_settings().plan_schedule_limits

    async def get_active_schedule_count(self, owner_id: str) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(RecurringSchedule)
            .where(
                RecurringSchedule.owner_id == owner_id,
                RecurringSchedule.status.in_(SLOT_HOLDING_STATUSES),
            )
        )
        return int(result.scalar_one())

    async def get_plan_tier(self, owner_id: str) -> str:
        result = await self.db.execute(select(Account.plan_tier).where(Account.user_id == owner_id))
        tier = result.scalar_one_or_none()
        return tier or "free"

    def schedule_limit(self, plan_tier: str) -> Optional[int]:
        """Concurrent schedule limit for a tier; None means unlimited."""
        return self._limits.get(plan_tier)
