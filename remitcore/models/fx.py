"""FX rate and rate-lock ORM models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from remitcore.database import Base, new_id, utcnow


class FxRate(Base):
    """Admin-published mid rate for a currency pair."""

    __tablename__ = "fx_rates"

    rate_id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: new_id("fxr")
    )
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False, index=True)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False, index=True)
    mid: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    spread_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    source: Mapped[str] = mapped_column(String(30), nullable=False, default="admin")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class RateLock(Base):
    """A quoted rate guaranteed until ``lock_expires_at`` or consumption."""

    __tablename__ = "rate_locks"

    lock_id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: new_id("lck")
    )
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    mid: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    spread_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    buy: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    sell: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    lock_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<RateLock {self.lock_id} {self.from_currency}->{self.to_currency} "
            f"buy={self.buy} until={self.lock_expires_at.isoformat()}>"
        )

    def to_dict(self) -> dict:
        return {
            "lock_id": self.lock_id,
            "from_currency": self.from_currency,
            "to_currency": self.to_currency,
            "mid": str(self.mid),
            "spread_bps": self.spread_bps,
            "buy": str(self.buy),
            "sell": str(self.sell),
            "locked_at": self.locked_at.isoformat(),
            "lock_expires_at": self.lock_expires_at.isoformat(),
        }
