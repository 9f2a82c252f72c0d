"""Recurring remittance schedules: the state machine and run bookkeeping."""

import calendar
import logging
from datetime import datetime, timedelta
from decimal import InvalidOperation
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from remitcore.clients.billing import LocalPlanGate, PlanGate
from remitcore.clients.ledger import LedgerClient, SqlLedger
from remitcore.config import Settings, get_settings
from remitcore.core.errors import ErrorKind, Failure, Outcome
from remitcore.core.fees import money
from remitcore.database import utcnow
from remitcore.models.account import Account
from remitcore.models.schedule import RecurringSchedule, ScheduleRun

logger = logging.getLogger(__name__)

FREQUENCIES = ("weekly", "biweekly", "monthly")
SCHEDULE_CURRENCY = "USD"


def next_occurrence(current: datetime, frequency: str, anchor_day: int) -> datetime:
    """The due date after ``current``.

    Monthly keeps the anchor day and clamps to the last day of short months,
    so Jan 31 -> Feb 28 -> Mar 31.
    """
    if frequency == "weekly":
        return current + timedelta(days=7)
    if frequency == "biweekly":
        return current + timedelta(days=14)
    if frequency == "monthly":
        year, month = current.year, current.month + 1
        if month > 12:
            year, month = year + 1, 1
        day = min(anchor_day, calendar.monthrange(year, month)[1])
        return current.replace(year=year, month=month, day=day)
    raise ValueError(f"Unknown frequency: {frequency}")


def advance_past(current: datetime, frequency: str, anchor_day: int, now: datetime) -> datetime:
    """Step ``current`` forward at least once and until it is after ``now``."""
    following = next_occurrence(current, frequency, anchor_day)
    while following <= now:
        following = next_occurrence(following, frequency, anchor_day)
    return following


class RecurringScheduleEngine:
    """Owns every write to RecurringSchedule and ScheduleRun."""

    def __init__(
        self,
        db: AsyncSession,
        plan_gate: Optional[PlanGate] = None,
        ledger: Optional[LedgerClient] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.plan_gate = plan_gate or LocalPlanGate(db, self.settings.plan_schedule_limits)
        self.ledger = ledger or SqlLedger(db)

    # ==================== LOOKUP ====================

    async def get(self, schedule_id: str, owner_id: Optional[str] = None) -> Outcome[RecurringSchedule]:
        schedule = await self.db.get(RecurringSchedule, schedule_id)
        if schedule is None or (owner_id is not None and schedule.owner_id != owner_id):
            return Failure(ErrorKind.SCHEDULE_NOT_FOUND, "Schedule not found")
        return schedule

    async def list_for_owner(self, owner_id: str, include_canceled: bool = False) -> List[RecurringSchedule]:
        query = select(RecurringSchedule).where(RecurringSchedule.owner_id == owner_id)
        if not include_canceled:
            query = query.where(RecurringSchedule.status != "canceled")
        result = await self.db.execute(query.order_by(RecurringSchedule.created_at))
        return list(result.scalars().all())

    async def list_runs(self, schedule_id: str, limit: int = 50) -> List[ScheduleRun]:
        result = await self.db.execute(
            select(ScheduleRun)
            .where(ScheduleRun.schedule_id == schedule_id)
            .order_by(ScheduleRun.attempted_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def successful_run_for(self, schedule_id: str, due_at: datetime) -> Optional[ScheduleRun]:
        result = await self.db.execute(
            select(ScheduleRun).where(
                ScheduleRun.schedule_id == schedule_id,
                ScheduleRun.due_at == due_at,
                ScheduleRun.outcome == "success",
            )
        )
        return result.scalars().first()

    # ==================== TRANSITIONS ====================

    async def _check_plan_limit(self, owner_id: str, slots_needed: int) -> Optional[Failure]:
        tier = await self.plan_gate.get_plan_tier(owner_id)
        limit = self.plan_gate.schedule_limit(tier)
        if limit is None:
            return None
        held = await self.plan_gate.get_active_schedule_count(owner_id)
        if held + slots_needed > limit:
            logger.info(f"Owner {owner_id} at schedule limit ({held}/{limit}, plan {tier})")
            return Failure(
                ErrorKind.PLAN_LIMIT_EXCEEDED,
                f"Your {tier} plan allows {limit} recurring schedule(s)",
                {"plan_tier": tier, "limit": limit, "current": held},
            )
        return None

    async def create(
        self,
        owner_id: str,
        recipient_id: str,
        amount_usd,
        frequency: str,
        note: Optional[str] = None,
    ) -> Outcome[RecurringSchedule]:
        """Create an active schedule and record the owner's standing consent."""
        try:
            amount = money(amount_usd)
        except (InvalidOperation, TypeError, ValueError):
            return Failure(ErrorKind.INVALID_AMOUNT, "Amount must be a number")
        if amount <= 0:
            return Failure(ErrorKind.INVALID_AMOUNT, "Amount must be positive")
        frequency = (frequency or "").lower()
        if frequency not in FREQUENCIES:
            return Failure(
                ErrorKind.INVALID_FREQUENCY,
                f"Frequency must be one of: {', '.join(FREQUENCIES)}",
            )
        if owner_id == recipient_id:
            return Failure(ErrorKind.SELF_TRANSFER, "Cannot schedule transfers to yourself")

        recipient = await self.db.get(Account, recipient_id)
        if recipient is None and await self.ledger.get_wallet(recipient_id) is None:
            return Failure(ErrorKind.RECIPIENT_NOT_FOUND, "Recipient not found")
        if await self.ledger.get_wallet(owner_id, SCHEDULE_CURRENCY) is None:
            return Failure(ErrorKind.WALLET_NOT_FOUND, f"Owner has no {SCHEDULE_CURRENCY} wallet")

        limited = await self._check_plan_limit(owner_id, 1)
        if limited is not None:
            return limited

        now = self.clock()
        schedule = RecurringSchedule(
            owner_id=owner_id,
            recipient_id=recipient_id,
            amount_usd=amount,
            frequency=frequency,
            status="active",
            anchor_day=now.day,
            next_run_at=next_occurrence(now, frequency, now.day),
            failure_count=0,
            consent_recorded_at=now,
            note=note,
            created_at=now,
            updated_at=now,
        )
        self.db.add(schedule)
        await self.db.commit()

        logger.info(
            f"Schedule {schedule.schedule_id} created: {owner_id}->{recipient_id} "
            f"{amount} USD {frequency}, first run {schedule.next_run_at.isoformat()}"
        )
        return schedule

    async def pause(self, schedule_id: str, owner_id: Optional[str] = None) -> Outcome[RecurringSchedule]:
        schedule = await self.get(schedule_id, owner_id)
        if isinstance(schedule, Failure):
            return schedule
        if schedule.status != "active":
            return self._invalid(schedule, "pause")

        schedule.status = "paused"
        schedule.updated_at = self.clock()
        await self.db.commit()
        logger.info(f"Schedule {schedule_id} paused")
        return schedule

    async def resume(self, schedule_id: str, owner_id: Optional[str] = None) -> Outcome[RecurringSchedule]:
        """paused|failed -> active, with the next run moved into the future."""
        schedule = await self.get(schedule_id, owner_id)
        if isinstance(schedule, Failure):
            return schedule
        if schedule.status not in ("paused", "failed"):
            return self._invalid(schedule, "resume")

        # The schedule already holds one of the counted slots
        limited = await self._check_plan_limit(schedule.owner_id, 0)
        if limited is not None:
            return limited

        now = self.clock()
        if schedule.next_run_at <= now:
            schedule.next_run_at = advance_past(
                schedule.next_run_at, schedule.frequency, schedule.anchor_day, now
            )
        schedule.status = "active"
        schedule.failure_count = 0
        schedule.retry_after = None
        schedule.resumed_at = now
        schedule.updated_at = now
        await self.db.commit()
        logger.info(f"Schedule {schedule_id} resumed, next run {schedule.next_run_at.isoformat()}")
        return schedule

    async def cancel(self, schedule_id: str, owner_id: Optional[str] = None) -> Outcome[RecurringSchedule]:
        schedule = await self.get(schedule_id, owner_id)
        if isinstance(schedule, Failure):
            return schedule
        if schedule.status == "canceled":
            return self._invalid(schedule, "cancel")

        now = self.clock()
        schedule.status = "canceled"
        schedule.canceled_at = now
        schedule.updated_at = now
        await self.db.commit()
        logger.info(f"Schedule {schedule_id} canceled")
        return schedule

    def _invalid(self, schedule: RecurringSchedule, action: str) -> Failure:
        return Failure(
            ErrorKind.INVALID_TRANSITION,
            f"Cannot {action} a {schedule.status} schedule",
            {"status": schedule.status},
        )

    # ==================== RUN OUTCOMES ====================

    async def record_success(
        self, schedule: RecurringSchedule, transfer_id: Optional[str], now: datetime
    ) -> ScheduleRun:
        """Append a successful run and advance next_run_at past ``now``."""
        due_at = schedule.next_run_at
        run = ScheduleRun(
            schedule_id=schedule.schedule_id,
            due_at=due_at,
            attempted_at=now,
            outcome="success",
            transfer_id=transfer_id,
        )
        self.db.add(run)

        schedule.last_run_at = now
        schedule.last_transfer_id = transfer_id
        schedule.failure_count = 0
        schedule.retry_after = None
        schedule.next_run_at = advance_past(due_at, schedule.frequency, schedule.anchor_day, now)
        schedule.updated_at = now
        await self.db.flush()

        logger.info(
            f"Schedule {schedule.schedule_id} ran for {due_at.isoformat()} "
            f"(transfer {transfer_id}), next {schedule.next_run_at.isoformat()}"
        )
        return run

    async def record_failure(
        self, schedule: RecurringSchedule, reason: str, message: str, now: datetime
    ) -> ScheduleRun:
        """Append a failed run; next_run_at is left unchanged.

        The schedule moves to ``failed`` exactly when ``failure_count``
        reaches ``max_consecutive_failures``.
        """
        due_at = schedule.next_run_at
        run = ScheduleRun(
            schedule_id=schedule.schedule_id,
            due_at=due_at,
            attempted_at=now,
            outcome="failure",
            reason=reason,
            message=(message or "")[:500],
        )
        self.db.add(run)
        await self.db.flush()

        schedule.failure_count = (schedule.failure_count or 0) + 1
        retries_today = await self._failures_for_due_date(schedule.schedule_id, due_at, now)
        if retries_today >= self.settings.max_retries_per_day:
            schedule.retry_after = next_occurrence(due_at, schedule.frequency, schedule.anchor_day)
        else:
            schedule.retry_after = now + timedelta(seconds=self.settings.retry_backoff_seconds)

        if schedule.failure_count >= self.settings.max_consecutive_failures:
            schedule.status = "failed"
            logger.warning(
                f"Schedule {schedule.schedule_id} failed after "
                f"{schedule.failure_count} consecutive failures (last: {reason})"
            )
        else:
            logger.info(
                f"Schedule {schedule.schedule_id} run failed ({reason}), "
                f"retry after {schedule.retry_after.isoformat()}"
            )
        schedule.updated_at = now
        await self.db.flush()
        return run

    async def _failures_for_due_date(self, schedule_id: str, due_at: datetime, now: datetime) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(ScheduleRun)
            .where(
                ScheduleRun.schedule_id == schedule_id,
                ScheduleRun.due_at == due_at,
                ScheduleRun.outcome == "failure",
                ScheduleRun.attempted_at > now - timedelta(hours=24),
            )
        )
        return int(result.scalar_one())

    async def failure_count_from_runs(self, schedule_id: str) -> int:
        """Consecutive failures since the last success or resume, from the run log."""
        last_success = await self.db.execute(
            select(func.max(ScheduleRun.attempted_at)).where(
                ScheduleRun.schedule_id == schedule_id,
                ScheduleRun.outcome == "success",
            )
        )
        resumed = await self.db.execute(
            select(RecurringSchedule.resumed_at).where(RecurringSchedule.schedule_id == schedule_id)
        )
        marks = [m for m in (last_success.scalar_one_or_none(), resumed.scalar_one_or_none()) if m is not None]
        since: Optional[datetime] = max(marks) if marks else None
        query = (
            select(func.count())
            .select_from(ScheduleRun)
            .where(ScheduleRun.schedule_id == schedule_id, ScheduleRun.outcome == "failure")
        )
        if since is not None:
            query = query.where(ScheduleRun.attempted_at > since)
        result = await self.db.execute(query)
        return int(result.scalar_one())
