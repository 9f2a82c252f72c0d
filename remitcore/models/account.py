"""Account directory mirror and ledger ORM models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from remitcore.database import Base, new_id, utcnow


class Account(Base):
    """Local mirror of a user in the account directory."""

    __tablename__ = "accounts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # CLIENT, DIASPORA, MERCHANT, DISTRIBUTOR
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="CLIENT")
    verification_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    plan_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Account {self.user_id} ({self.role})>"


class Wallet(Base):
    """A single-currency wallet. Available balance is balance minus held."""

    __tablename__ = "wallets"

    wallet_id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: new_id("wal")
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    held_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0.00")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (UniqueConstraint("owner_id", "currency", name="uq_wallet_owner_currency"),)

    @property
    def available(self) -> Decimal:
        return Decimal(self.balance) - Decimal(self.held_amount or 0)

    def __repr__(self) -> str:
        return f"<Wallet {self.wallet_id} {self.currency} (owner={self.owner_id})>"


class LedgerEntry(Base):
    """Append-only double-entry line."""

    __tablename__ = "ledger_entries"

    entry_id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: new_id("led")
    )
    wallet_id: Mapped[str] = mapped_column(
        ForeignKey("wallets.wallet_id"), nullable=False, index=True
    )
    # Signed: negative for debits
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    # transfer_out, transfer_in, fee, reversal_out, reversal_in
    entry_type: Mapped[str] = mapped_column(String(20), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(300), nullable=False, index=True)
    transfer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class TransferContact(Base):
    """Relationship history between a sender and a recipient."""

    __tablename__ = "transfer_contacts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contact_user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    transfer_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_favorite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_transfer_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
