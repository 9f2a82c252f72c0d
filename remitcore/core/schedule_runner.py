"""Background execution of due recurring schedules."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from remitcore.clients.ledger import WalletLockRegistry, get_wallet_locks
from remitcore.clients.notifications import Notifier, get_notifier
from remitcore.config import Settings, get_settings
from remitcore.core.errors import ErrorKind, Failure
from remitcore.core.schedules import SCHEDULE_CURRENCY, RecurringScheduleEngine, advance_past
from remitcore.core.transfers import CHANNEL_SCHEDULED, TransferAuthorizationService
from remitcore.database import utcnow
from remitcore.models.schedule import RecurringSchedule

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    """Result of executing one schedule for one due date."""

    schedule_id: str
    outcome: str  # success, failure, skipped
    due_at: Optional[datetime] = None
    transfer_id: Optional[str] = None
    reason: Optional[str] = None
    kind: Optional[ErrorKind] = None

    def to_dict(self) -> dict:
        return {
            "schedule_id": self.schedule_id,
            "outcome": self.outcome,
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "transfer_id": self.transfer_id,
            "reason": self.reason,
        }


@dataclass
class RunSummary:
    started_at: datetime
    outcomes: List[RunOutcome] = field(default_factory=list)
    errors: int = 0

    def count(self, outcome: str) -> int:
        return sum(1 for o in self.outcomes if o.outcome == outcome)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "succeeded": self.count("success"),
            "failed": self.count("failure"),
            "skipped": self.count("skipped"),
            "errors": self.errors,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class ScheduleRunner:
    """Executes due schedules through the transfer authorization flow.

    Every schedule task gets its own session from ``session_maker``. A
    schedule is claimed with a conditional UPDATE on ``run_in_flight_since``
    so that at most one run per schedule is in flight.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        notifier: Optional[Notifier] = None,
        wallet_locks: Optional[WalletLockRegistry] = None,
    ):
        self.session_maker = session_maker
        self.settings = settings or get_settings()
        self.clock = clock
        self.notifier = notifier or get_notifier()
        self.wallet_locks = wallet_locks or get_wallet_locks()
        self._stopping = asyncio.Event()

    # ==================== CLAIM ====================

    async def due_schedule_ids(self, now: datetime) -> List[str]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(RecurringSchedule.schedule_id)
                .where(
                    RecurringSchedule.status == "active",
                    RecurringSchedule.next_run_at <= now,
                    or_(RecurringSchedule.retry_after.is_(None), RecurringSchedule.retry_after <= now),
                )
                .order_by(RecurringSchedule.next_run_at)
                .limit(self.settings.scheduler_batch_size)
            )
            return list(result.scalars().all())

    async def claim(self, schedule_id: str, now: datetime) -> bool:
        """Mark the schedule in flight; False if another run holds it."""
        stale_before = now - timedelta(seconds=self.settings.run_claim_timeout_seconds)
        async with self.session_maker() as db:
            result = await db.execute(
                update(RecurringSchedule)
                .where(
                    RecurringSchedule.schedule_id == schedule_id,
                    RecurringSchedule.status == "active",
                    or_(
                        RecurringSchedule.run_in_flight_since.is_(None),
                        RecurringSchedule.run_in_flight_since < stale_before,
                    ),
                )
                .values(run_in_flight_since=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def release(self, schedule_id: str) -> None:
        async with self.session_maker() as db:
            await db.execute(
                update(RecurringSchedule)
                .where(RecurringSchedule.schedule_id == schedule_id)
                .values(run_in_flight_since=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    # ==================== EXECUTION ====================

    async def run_schedule(self, schedule_id: str, now: datetime) -> RunOutcome:
        if not await self.claim(schedule_id, now):
            logger.info(f"Schedule {schedule_id} already in flight, skipping")
            return RunOutcome(schedule_id, "skipped", reason="in_flight")
        try:
            async with self.session_maker() as db:
                try:
                    return await self._execute(db, schedule_id, now)
                except Exception:
                    await db.rollback()
                    raise
        finally:
            await self.release(schedule_id)

    async def _execute(self, db: AsyncSession, schedule_id: str, now: datetime) -> RunOutcome:
        engine = RecurringScheduleEngine(db, settings=self.settings, clock=self.clock)
        schedule = await db.get(RecurringSchedule, schedule_id)
        if schedule is None or schedule.status != "active" or schedule.next_run_at > now:
            return RunOutcome(schedule_id, "skipped", reason="not_due")

        due_at = schedule.next_run_at
        if await engine.successful_run_for(schedule_id, due_at) is not None:
            schedule.next_run_at = advance_past(due_at, schedule.frequency, schedule.anchor_day, now)
            await db.commit()
            logger.info(f"Schedule {schedule_id} already ran for {due_at.isoformat()}, advancing")
            return RunOutcome(schedule_id, "skipped", due_at=due_at, reason="already_ran")

        if schedule.consent_recorded_at is None:
            return await self._fail(
                db, engine, schedule, Failure(ErrorKind.CONSENT_MISSING, "No standing consent recorded"), now
            )

        transfers = TransferAuthorizationService(
            db,
            notifier=self.notifier,
            settings=self.settings,
            clock=self.clock,
            wallet_locks=self.wallet_locks,
        )
        key = schedule.run_key()
        result = await transfers.get_transfer_by_key(key)
        if result is None:
            attempt = await transfers.attempt(
                schedule.owner_id,
                schedule.recipient_id,
                schedule.amount_usd,
                SCHEDULE_CURRENCY,
                channel=CHANNEL_SCHEDULED,
                idempotency_key=key,
            )
            result = attempt if isinstance(attempt, Failure) else await transfers.confirm(attempt.attempt_id)

        if isinstance(result, Failure):
            return await self._fail(db, engine, schedule, result, now)

        await engine.record_success(schedule, result.transfer_id, now)
        await db.commit()
        await self._safe_notify(
            "schedule.executed",
            schedule.owner_id,
            {"schedule_id": schedule_id, "transfer_id": result.transfer_id, "due_at": due_at.isoformat()},
        )
        return RunOutcome(schedule_id, "success", due_at=due_at, transfer_id=result.transfer_id)

    async def _fail(
        self,
        db: AsyncSession,
        engine: RecurringScheduleEngine,
        schedule: RecurringSchedule,
        failure: Failure,
        now: datetime,
    ) -> RunOutcome:
        due_at = schedule.next_run_at
        reason = failure.kind.value
        await engine.record_failure(schedule, reason, failure.message, now)
        await db.commit()
        if schedule.status == "failed":
            await self._safe_notify(
                "schedule.failed",
                schedule.owner_id,
                {
                    "schedule_id": schedule.schedule_id,
                    "reason": reason,
                    "failure_count": schedule.failure_count,
                },
            )
        return RunOutcome(
            schedule.schedule_id,
            "failure",
            due_at=due_at,
            reason=reason,
            kind=ErrorKind.SCHEDULE_RUN_FAILED,
        )

    async def run_once(self, now: Optional[datetime] = None) -> RunSummary:
        """Execute every due schedule once, with bounded concurrency."""
        now = now or self.clock()
        summary = RunSummary(started_at=now)
        schedule_ids = await self.due_schedule_ids(now)
        if not schedule_ids:
            return summary

        semaphore = asyncio.Semaphore(self.settings.scheduler_max_concurrency)

        async def bounded(schedule_id: str) -> RunOutcome:
            async with semaphore:
                return await self.run_schedule(schedule_id, now)

        results = await asyncio.gather(*(bounded(sid) for sid in schedule_ids), return_exceptions=True)
        for schedule_id, result in zip(schedule_ids, results):
            if isinstance(result, BaseException):
                summary.errors += 1
                logger.error(f"Schedule {schedule_id} run crashed: {result!r}", exc_info=result)
            else:
                summary.outcomes.append(result)

        logger.info(
            f"Scheduler pass: {summary.count('success')} succeeded, {summary.count('failure')} failed, "
            f"{summary.count('skipped')} skipped, {summary.errors} errors"
        )
        return summary

    async def sweep(self, now: Optional[datetime] = None) -> dict:
        """Storage reclamation for expired attempts, challenges and locks."""
        async with self.session_maker() as db:
            transfers = TransferAuthorizationService(
                db, notifier=self.notifier, settings=self.settings, clock=self.clock,
                wallet_locks=self.wallet_locks,
            )
            return await transfers.purge_expired(now or self.clock())

    async def run_forever(self) -> None:
        """Interval loop; one failing pass never stops the loop."""
        interval = self.settings.scheduler_interval_seconds
        logger.info(f"Schedule runner started (every {interval}s)")
        while not self._stopping.is_set():
            try:
                await self.run_once()
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduler pass failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Schedule runner stopped")

    def stop(self) -> None:
        self._stopping.set()

    async def _safe_notify(self, event: str, user_id: str, payload: dict) -> None:
        try:
            await self.notifier.notify(event, user_id, payload)
        except Exception:
            logger.exception(f"Notification {event} for {user_id} failed")
