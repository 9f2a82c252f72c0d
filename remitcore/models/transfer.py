"""Transfer attempt, challenge and committed transfer ORM models."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from remitcore.database import Base, new_id, utcnow


class TransferAttempt(Base):
    """Provisional, time-boxed transfer request awaiting confirmation."""

    __tablename__ = "transfer_attempts"

    attempt_id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: new_id("att")
    )
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sender_wallet_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_wallet_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    recipient_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate_lock_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("rate_locks.lock_id"), nullable=True
    )

    # {platform_fee, agent_fee, network_fee, total, currency, corridor}
    fee_breakdown: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    total_debit: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    recipient_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    otp_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    risk_reasons: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # interactive, scheduled
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="interactive")
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # pending, consumed, abandoned
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    transfer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<TransferAttempt {self.attempt_id} ({self.status})>"

    @property
    def ledger_key(self) -> str:
        """Key under which the ledger posting for this attempt is made.

        Scheduled runs post under the runner's ``sched:`` key as-is; caller
        keys are scoped to the sender so two users never share a posting.
        """
        if not self.idempotency_key:
            return self.attempt_id
        if self.channel == "scheduled":
            return self.idempotency_key
        return f"user:{self.sender_id}:{self.idempotency_key}"

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class TransferChallenge(Base):
    """OTP step-up bound to a single attempt. Only the code hash is stored."""

    __tablename__ = "transfer_challenges"

    challenge_id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: new_id("chl")
    )
    attempt_id: Mapped[str] = mapped_column(
        ForeignKey("transfer_attempts.attempt_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # active, verified, consumed, exhausted, superseded
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    issued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<TransferChallenge {self.challenge_id} ({self.status})>"


class Transfer(Base):
    """Committed transfer. Never mutated; reversals are new rows."""

    __tablename__ = "transfers"

    transfer_id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: new_id("txn")
    )
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    from_wallet_id: Mapped[str] = mapped_column(String(64), nullable=False)
    to_wallet_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    credited_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    credited_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    fee_breakdown: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    fees_total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    total_debited: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    fx_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)
    rate_lock_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # completed, reversed
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")
    idempotency_key: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    attempt_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="interactive")
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    risk_reasons: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    reverses_transfer_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, unique=True
    )
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Transfer {self.transfer_id} {self.amount} {self.currency} ({self.status})>"

    def to_dict(self) -> dict:
        """Full breakdown so callers can reconcile what was applied."""
        return {
            "transfer_id": self.transfer_id,
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "credited_amount": str(self.credited_amount),
            "credited_currency": self.credited_currency,
            "fees": self.fee_breakdown,
            "fees_total": str(self.fees_total),
            "total_debited": str(self.total_debited),
            "fx_rate": str(self.fx_rate) if self.fx_rate is not None else None,
            "rate_lock_id": self.rate_lock_id,
            "status": self.status,
            "channel": self.channel,
            "risk_score": self.risk_score,
            "risk_reasons": list(self.risk_reasons or []),
            "reverses_transfer_id": self.reverses_transfer_id,
            "created_at": self.created_at.isoformat(),
        }
