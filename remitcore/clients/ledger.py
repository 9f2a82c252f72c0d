"""Ledger / wallet interface and its SQL-backed implementation."""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from remitcore.core.errors import LedgerUnavailableError
from remitcore.core.fees import money
from remitcore.models.account import LedgerEntry, Wallet

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    """Result of a ledger posting."""

    committed: bool
    reason: Optional[str] = None
    deduplicated: bool = False


class LedgerClient(Protocol):
    """Balance-mutation contract consumed by the transfer flow.

    ``debit_and_credit`` must be atomic and idempotent on ``idempotency_key``.
    """

    async def get_wallet(self, owner_id: str, currency: Optional[str] = None) -> Optional[Wallet]:
        ...

    async def get_wallet_by_id(self, wallet_id: str) -> Optional[Wallet]:
        ...

    async def get_available_balance(self, wallet_id: str) -> Decimal:
        ...

    async def debit_and_credit(
        self,
        from_wallet_id: str,
        to_wallet_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        *,
        credit_amount: Optional[Decimal] = None,
        credit_currency: Optional[str] = None,
        fee_amount: Decimal = Decimal("0"),
        fee_wallet_id: Optional[str] = None,
        transfer_id: Optional[str] = None,
        reversal: bool = False,
    ) -> LedgerResult:
        ...


class WalletLockRegistry:
    """Per-wallet exclusive mutation scopes for this process.

    Locks are held weakly and disappear once nobody holds or waits on them.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, wallet_id: str) -> asyncio.Lock:
        lock = self._locks.get(wallet_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[wallet_id] = lock
        return lock

    @asynccontextmanager
    async def scope(self, wallet_id: str) -> AsyncIterator[None]:
        lock = self._lock_for(wallet_id)
        async with lock:
            yield

    def is_locked(self, wallet_id: str) -> bool:
        lock = self._locks.get(wallet_id)
        return bool(lock and lock.locked())


_wallet_locks: Optional[WalletLockRegistry] = None


def get_wallet_locks() -> WalletLockRegistry:
    """Get the process-wide wallet lock registry."""
    global _wallet_locks
    if _wallet_locks is None:
        _wallet_locks = WalletLockRegistry()
    return _wallet_locks


class SqlLedger:
    """Ledger over the local ``wallets`` / ``ledger_entries`` tables.

    Works inside the caller's session so the posting commits or rolls back
    together with the transfer record.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_wallet(self, owner_id: str, currency: Optional[str] = None) -> Optional[Wallet]:
        query = select(Wallet).where(Wallet.owner_id == owner_id)
        if currency:
            query = query.where(Wallet.currency == currency.upper())
        result = await self._execute(query.order_by(Wallet.wallet_id))
        return result.scalars().first()

    async def get_wallet_by_id(self, wallet_id: str) -> Optional[Wallet]:
        result = await self._execute(select(Wallet).where(Wallet.wallet_id == wallet_id))
        return result.scalar_one_or_none()

    async def get_available_balance(self, wallet_id: str) -> Decimal:
        wallet = await self.get_wallet_by_id(wallet_id)
        if wallet is None:
            return Decimal("0.00")
        # Re-read the row; another session may have committed since it was loaded
        await self.db.refresh(wallet)
        return money(wallet.available)

    async def debit_and_credit(
        self,
        from_wallet_id: str,
        to_wallet_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        *,
        credit_amount: Optional[Decimal] = None,
        credit_currency: Optional[str] = None,
        fee_amount: Decimal = Decimal("0"),
        fee_wallet_id: Optional[str] = None,
        transfer_id: Optional[str] = None,
        reversal: bool = False,
    ) -> LedgerResult:
        """Debit ``amount + fee_amount`` and credit recipient (and fee wallet).

        All validation happens before the first write, so a rejected posting
        leaves every balance untouched.
        """
        existing = await self._execute(
            select(LedgerEntry.entry_id).where(LedgerEntry.idempotency_key == idempotency_key).limit(1)
        )
        if existing.first() is not None:
            logger.info(f"Ledger posting {idempotency_key} already applied")
            return LedgerResult(committed=True, deduplicated=True)

        amount = money(amount)
        fee_amount = money(fee_amount or 0)
        credit_amount = money(credit_amount if credit_amount is not None else amount)
        credit_currency = (credit_currency or currency).upper()
        currency = currency.upper()

        if amount <= 0 or credit_amount <= 0 or fee_amount < 0:
            return LedgerResult(committed=False, reason="invalid_amount")
        if fee_amount > 0 and not fee_wallet_id:
            return LedgerResult(committed=False, reason="fee_wallet_missing")

        wallet_ids = sorted({from_wallet_id, to_wallet_id, *([fee_wallet_id] if fee_amount > 0 else [])})
        wallets = await self._lock_wallets(wallet_ids)

        source = wallets.get(from_wallet_id)
        target = wallets.get(to_wallet_id)
        fee_target = wallets.get(fee_wallet_id) if fee_amount > 0 else None
        if source is None or target is None or (fee_amount > 0 and fee_target is None):
            return LedgerResult(committed=False, reason="wallet_not_found")
        if source.currency != currency or target.currency != credit_currency:
            return LedgerResult(committed=False, reason="currency_mismatch")
        if fee_target is not None and fee_target.currency != currency:
            return LedgerResult(committed=False, reason="currency_mismatch")

        debit_total = amount + fee_amount
        if source.available < debit_total:
            return LedgerResult(committed=False, reason="insufficient_funds")

        out_type, in_type = ("reversal_out", "reversal_in") if reversal else ("transfer_out", "transfer_in")
        entries: List[LedgerEntry] = [
            LedgerEntry(
                wallet_id=source.wallet_id,
                amount=-debit_total,
                currency=currency,
                entry_type=out_type,
                idempotency_key=idempotency_key,
                transfer_id=transfer_id,
            ),
            LedgerEntry(
                wallet_id=target.wallet_id,
                amount=credit_amount,
                currency=credit_currency,
                entry_type=in_type,
                idempotency_key=idempotency_key,
                transfer_id=transfer_id,
            ),
        ]
        if fee_target is not None:
            entries.append(
                LedgerEntry(
                    wallet_id=fee_target.wallet_id,
                    amount=fee_amount,
                    currency=currency,
                    entry_type="fee",
                    idempotency_key=idempotency_key,
                    transfer_id=transfer_id,
                )
            )

        source.balance = money(Decimal(source.balance) - debit_total)
        target.balance = money(Decimal(target.balance) + credit_amount)
        if fee_target is not None:
            fee_target.balance = money(Decimal(fee_target.balance) + fee_amount)
        self.db.add_all(entries)

        try:
            await self.db.flush()
        except OperationalError as e:
            raise LedgerUnavailableError(f"Ledger write failed: {e}") from e

        logger.info(
            f"Ledger posted {idempotency_key}: {source.wallet_id} -{debit_total} {currency}, "
            f"{target.wallet_id} +{credit_amount} {credit_currency}"
            f"{f', fee +{fee_amount}' if fee_amount > 0 else ''}"
        )
        return LedgerResult(committed=True)

    async def _lock_wallets(self, wallet_ids: List[str]) -> dict:
        """Row-lock wallets in id order (FOR UPDATE is a no-op on SQLite)."""
        result = await self._execute(
            select(Wallet)
            .where(Wallet.wallet_id.in_(wallet_ids))
            .order_by(Wallet.wallet_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {w.wallet_id: w for w in result.scalars().all()}

    async def _execute(self, statement):
        try:
            return await self.db.execute(statement)
        except OperationalError as e:
            logger.error(f"Ledger storage unavailable: {e}")
            raise LedgerUnavailableError(str(e)) from e
