"""Recurring schedule and schedule run ORM models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from remitcore.database import Base, new_id, utcnow


class RecurringSchedule(Base):
    """Recurring remittance instruction.

    Fields are written only by ``RecurringScheduleEngine``.
    """

    __tablename__ = "recurring_schedules"

    schedule_id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: new_id("sch")
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    # weekly, biweekly, monthly
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    # active, paused, canceled, failed
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", index=True)
    anchor_day: Mapped[int] = mapped_column(Integer, nullable=False)

    next_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_transfer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_after: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    run_in_flight_since: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    consent_recorded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Failures before this point no longer count towards failed
    resumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<RecurringSchedule {self.schedule_id} {self.frequency} ({self.status})>"

    def run_key(self) -> str:
        """Idempotency key for the run of the current due date."""
        return f"sched:{self.schedule_id}:{self.next_run_at.isoformat()}"

    def to_dict(self) -> dict:
        return {
            "schedule_id": self.schedule_id,
            "owner_id": self.owner_id,
            "recipient_id": self.recipient_id,
            "amount_usd": str(self.amount_usd),
            "frequency": self.frequency,
            "status": self.status,
            "next_run_at": self.next_run_at.isoformat(),
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_transfer_id": self.last_transfer_id,
            "failure_count": self.failure_count,
            "note": self.note,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "canceled_at": self.canceled_at.isoformat() if self.canceled_at else None,
        }


class ScheduleRun(Base):
    """Append-only audit record of one execution attempt of a schedule."""

    __tablename__ = "schedule_runs"

    run_id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: new_id("run")
    )
    schedule_id: Mapped[str] = mapped_column(
        ForeignKey("recurring_schedules.schedule_id"), nullable=False, index=True
    )
    due_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    # success, failure
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    transfer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "schedule_id": self.schedule_id,
            "due_at": self.due_at.isoformat(),
            "attempted_at": self.attempted_at.isoformat(),
            "outcome": self.outcome,
            "reason": self.reason,
            "message": self.message,
            "transfer_id": self.transfer_id,
        }
