"""Transfer authorization: attempt -> (optional OTP challenge) -> confirm.

Both user-initiated transfers and scheduled remittances go through this
service, so they share one authorization and ledger contract.

Transaction boundaries: every public mutating method commits its own work
before returning, including when it returns a ``Failure`` (e.g. a failed OTP
verification must be counted even though the caller gets an error).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional

from sqlalchemy import and_, delete, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from remitcore.clients.ledger import LedgerClient, SqlLedger, WalletLockRegistry, get_wallet_locks
from remitcore.clients.notifications import Notifier, get_notifier
from remitcore.config import Settings, get_settings
from remitcore.core.errors import ErrorKind, Failure, Outcome
from remitcore.core.fees import FeeBreakdown, FeeSchedule, money
from remitcore.core.fx_lock import FxRateLockService
from remitcore.core.otp import IssuedChallenge, OtpChallengeService, OtpCheck
from remitcore.core.trust_engine import (
    RecipientTrustEngine,
    TrustLevel,
    TrustPolicy,
    TrustScore,
    TrustSignals,
)
from remitcore.database import new_id, utcnow
from remitcore.models.account import Account, TransferContact
from remitcore.models.fx import RateLock
from remitcore.models.transfer import Transfer, TransferAttempt, TransferChallenge

logger = logging.getLogger(__name__)

CHANNEL_INTERACTIVE = "interactive"
CHANNEL_SCHEDULED = "scheduled"
SCHEDULED_KEY_PREFIX = "sched:"


@dataclass
class RiskDecision:
    """Outcome of the per-transaction risk policy."""

    trust: TrustScore
    otp_required: bool = False
    blocked: bool = False
    score: int = 0
    reasons: List[str] = field(default_factory=list)


class TransferAuthorizationService:
    """Orchestrates attempt, step-up and confirm against the ledger."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[LedgerClient] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        wallet_locks: Optional[WalletLockRegistry] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.ledger = ledger or SqlLedger(db)
        self.notifier = notifier or get_notifier()
        self.wallet_locks = wallet_locks or get_wallet_locks()
        self.fx = FxRateLockService(db, self.settings, clock)
        self.otp = OtpChallengeService(db, self.settings, clock)
        self.trust_engine = RecipientTrustEngine(TrustPolicy.from_settings(self.settings))
        self.fee_schedule = FeeSchedule(self.settings.fee_schedule)

    # ==================== RISK ====================

    async def evaluate_trust(self, sender_id: str, recipient_id: str) -> TrustScore:
        """Score the recipient relationship from stored history."""
        contact = await self.db.get(TransferContact, (sender_id, recipient_id))
        account = await self.db.get(Account, recipient_id)

        age_days = 0
        if account is not None and account.created_at is not None:
            age_days = max(0, (self.clock() - account.created_at).days)

        signals = TrustSignals(
            prior_transfer_count=contact.transfer_count if contact else 0,
            is_favorite=bool(contact and contact.is_favorite),
            account_age_days=age_days,
            verification_tier=account.verification_tier if account else 0,
            is_frozen=bool(account and account.is_frozen),
        )
        return self.trust_engine.score(signals)

    async def _recent_transfer_count(self, sender_id: str, now: datetime) -> int:
        window_start = now - timedelta(minutes=self.settings.velocity_window_minutes)
        result = await self.db.execute(
            select(func.count())
            .select_from(Transfer)
            .where(
                Transfer.sender_id == sender_id,
                Transfer.status == "completed",
                Transfer.created_at >= window_start,
            )
        )
        return int(result.scalar_one())

    async def assess_risk(
        self,
        sender: Optional[Account],
        recipient_id: str,
        sender_id: str,
        amount: Decimal,
        currency: str,
        now: datetime,
    ) -> RiskDecision:
        trust = await self.evaluate_trust(sender_id, recipient_id)
        decision = RiskDecision(trust=trust)

        if sender is not None and sender.is_frozen:
            decision.blocked = True
            decision.reasons.append("sender_frozen")
        if "account_frozen" in trust.reasons:
            decision.blocked = True
            decision.reasons.append("recipient_frozen")

        block_threshold = self.settings.block_amount_thresholds.get(currency)
        if (
            trust.level == TrustLevel.NEW
            and block_threshold is not None
            and amount >= Decimal(str(block_threshold))
        ):
            decision.blocked = True
            decision.reasons.append("high_amount_new_recipient")

        if trust.level == TrustLevel.NEW:
            decision.otp_required = True
            decision.score += 20
            decision.reasons.append("new_recipient")
        elif trust.level == TrustLevel.MODERATE:
            decision.score += 10

        otp_threshold = self.settings.otp_amount_thresholds.get(currency)
        if otp_threshold is not None and amount >= Decimal(str(otp_threshold)):
            decision.otp_required = True
            decision.score += 20
            decision.reasons.append("high_amount")

        if await self._recent_transfer_count(sender_id, now) >= self.settings.velocity_max_transfers:
            decision.otp_required = True
            decision.score += 40
            decision.reasons.append("high_velocity")

        if decision.blocked:
            decision.score = 100
        decision.score = min(decision.score, 100)
        return decision

    # ==================== ATTEMPT ====================

    async def attempt(
        self,
        sender_id: str,
        recipient_id: str,
        amount,
        currency: str,
        channel: str = CHANNEL_INTERACTIVE,
        idempotency_key: Optional[str] = None,
    ) -> Outcome[TransferAttempt]:
        """Price, risk-assess and persist a provisional transfer."""
        try:
            amount = money(amount)
        except (InvalidOperation, TypeError, ValueError):
            return Failure(ErrorKind.INVALID_AMOUNT, "Amount must be a number")
        if amount <= 0:
            return Failure(ErrorKind.INVALID_AMOUNT, "Amount must be positive")
        if sender_id == recipient_id:
            return Failure(ErrorKind.SELF_TRANSFER, "Cannot transfer to yourself")
        if (
            idempotency_key
            and channel != CHANNEL_SCHEDULED
            and idempotency_key.startswith(SCHEDULED_KEY_PREFIX)
        ):
            return Failure(
                ErrorKind.INVALID_IDEMPOTENCY_KEY,
                f"Idempotency keys starting with '{SCHEDULED_KEY_PREFIX}' are reserved",
            )

        currency = currency.upper()
        now = self.clock()

        sender_wallet = await self.ledger.get_wallet(sender_id, currency)
        if sender_wallet is None:
            return Failure(ErrorKind.WALLET_NOT_FOUND, f"Sender has no {currency} wallet")
        recipient_wallet = await self.ledger.get_wallet(recipient_id, currency)
        if recipient_wallet is None:
            recipient_wallet = await self.ledger.get_wallet(recipient_id)
        if recipient_wallet is None:
            return Failure(ErrorKind.WALLET_NOT_FOUND, "Recipient wallet not found")

        sender = await self.db.get(Account, sender_id)
        recipient = await self.db.get(Account, recipient_id)

        # Risk
        risk = await self.assess_risk(sender, recipient_id, sender_id, amount, currency, now)
        if risk.blocked:
            logger.warning(
                f"Transfer {sender_id}->{recipient_id} {amount} {currency} blocked: {risk.reasons}"
            )
            return Failure(
                ErrorKind.RISK_BLOCKED,
                "Transfer refused by risk policy",
                {"reasons": risk.reasons, "trust": risk.trust.to_dict()},
            )
        if risk.otp_required and channel == CHANNEL_SCHEDULED:
            logger.warning(
                f"Scheduled transfer {sender_id}->{recipient_id} needs step-up: {risk.reasons}"
            )
            return Failure(
                ErrorKind.RISK_BLOCKED,
                "Step-up verification required; unattended transfers cannot answer an OTP",
                {"reasons": risk.reasons, "trust": risk.trust.to_dict()},
            )

        # FX
        to_currency = recipient_wallet.currency
        rate_lock: Optional[RateLock] = None
        recipient_amount = amount
        if to_currency != currency:
            locked = await self.fx.lock(currency, to_currency)
            if isinstance(locked, Failure):
                return locked
            rate_lock = locked
            recipient_amount = money(amount * Decimal(rate_lock.buy))
            if recipient_amount < Decimal("0.01"):
                return Failure(
                    ErrorKind.INVALID_AMOUNT,
                    f"Amount too small: {amount} {currency} converts to less than 0.01 {to_currency}",
                )

        # Fees
        fees = self.fee_schedule.compute(
            amount,
            sender.role if sender else "CLIENT",
            recipient.role if recipient else "CLIENT",
            currency,
            to_currency,
        )
        total_debit = amount + fees.total

        # Pre-check only; the binding check happens under the wallet lock in confirm()
        available = await self.ledger.get_available_balance(sender_wallet.wallet_id)
        if available < total_debit:
            return Failure(
                ErrorKind.INSUFFICIENT_FUNDS,
                "Insufficient available balance",
                {"available": str(available), "required": str(total_debit)},
            )

        attempt = TransferAttempt(
            attempt_id=new_id("att"),
            sender_id=sender_id,
            recipient_id=recipient_id,
            sender_wallet_id=sender_wallet.wallet_id,
            recipient_wallet_id=recipient_wallet.wallet_id,
            amount=amount,
            currency=currency,
            recipient_currency=to_currency,
            rate_lock_id=rate_lock.lock_id if rate_lock else None,
            fee_breakdown=fees.to_dict(),
            total_debit=total_debit,
            recipient_amount=recipient_amount,
            otp_required=risk.otp_required,
            risk_score=risk.score,
            risk_reasons=risk.reasons,
            channel=channel,
            idempotency_key=idempotency_key,
            status="pending",
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.attempt_ttl_seconds),
        )
        self.db.add(attempt)
        await self.db.commit()

        logger.info(
            f"Attempt {attempt.attempt_id}: {sender_id}->{recipient_id} {amount} {currency} "
            f"(fees {fees.total}, otp_required={risk.otp_required}, trust={risk.trust.level.label})"
        )
        return attempt

    async def get_attempt(self, attempt_id: str) -> Optional[TransferAttempt]:
        result = await self.db.execute(
            select(TransferAttempt).where(TransferAttempt.attempt_id == attempt_id)
        )
        return result.scalar_one_or_none()

    async def describe_attempt(self, attempt: TransferAttempt) -> dict:
        """Caller-facing view of an attempt, including the lock countdown."""
        now = self.clock()
        rate_lock = await self.fx.get_lock(attempt.rate_lock_id) if attempt.rate_lock_id else None
        return {
            "attempt_id": attempt.attempt_id,
            "sender_id": attempt.sender_id,
            "recipient_id": attempt.recipient_id,
            "amount": str(attempt.amount),
            "currency": attempt.currency,
            "recipient_amount": str(attempt.recipient_amount),
            "recipient_currency": attempt.recipient_currency,
            "fees": attempt.fee_breakdown,
            "total_debit": str(attempt.total_debit),
            "otp_required": attempt.otp_required,
            "risk_score": attempt.risk_score,
            "risk_reasons": list(attempt.risk_reasons or []),
            "rate_lock": (
                {
                    **rate_lock.to_dict(),
                    "seconds_remaining": self.fx.seconds_remaining(rate_lock, now),
                }
                if rate_lock
                else None
            ),
            "status": attempt.status,
            "expires_at": attempt.expires_at.isoformat(),
        }

    async def _load_pending_attempt(
        self, attempt_id: str, actor_id: Optional[str], now: datetime
    ) -> Outcome[TransferAttempt]:
        attempt = await self.get_attempt(attempt_id)
        if attempt is None or (actor_id is not None and attempt.sender_id != actor_id):
            return Failure(ErrorKind.ATTEMPT_NOT_FOUND_OR_EXPIRED, "Transfer attempt not found")
        if attempt.status != "pending":
            return Failure(
                ErrorKind.ATTEMPT_NOT_FOUND_OR_EXPIRED,
                f"Transfer attempt is no longer pending ({attempt.status})",
            )
        if attempt.is_expired(now):
            return Failure(ErrorKind.ATTEMPT_EXPIRED, "Transfer attempt expired; start again")
        return attempt

    async def _abandon(self, attempt: TransferAttempt, reason: str) -> None:
        attempt.status = "abandoned"
        await self.db.flush()
        logger.warning(f"Attempt {attempt.attempt_id}: abandoned ({reason})")

    # ==================== STEP-UP ====================

    async def issue_challenge(
        self, attempt_id: str, actor_id: Optional[str] = None
    ) -> Outcome[IssuedChallenge]:
        """Issue an OTP for an attempt that requires step-up and deliver it."""
        now = self.clock()
        attempt = await self._load_pending_attempt(attempt_id, actor_id, now)
        if isinstance(attempt, Failure):
            return attempt
        if not attempt.otp_required:
            return Failure(ErrorKind.OTP_NOT_REQUIRED, "This transfer does not require a code")

        issued = await self.otp.issue(attempt.attempt_id)
        if isinstance(issued, Failure):
            await self._abandon(attempt, "otp issue limit")
            await self.db.commit()
            return issued

        await self.db.commit()
        await self._safe_notify(
            "otp.issued",
            attempt.sender_id,
            {
                "attempt_id": attempt.attempt_id,
                "challenge_id": issued.challenge_id,
                "code": issued.code,
                "expires_at": issued.expires_at.isoformat(),
            },
        )
        return issued

    async def verify_challenge(
        self, challenge_id: str, code: str, actor_id: Optional[str] = None
    ) -> Outcome[TransferChallenge]:
        """Verify a code ahead of confirm. Exhaustion abandons the attempt."""
        now = self.clock()
        challenge = await self.otp.get_challenge(challenge_id)
        if challenge is None:
            return Failure(ErrorKind.CHALLENGE_NOT_FOUND, "Challenge not found")
        attempt = await self._load_pending_attempt(challenge.attempt_id, actor_id, now)
        if isinstance(attempt, Failure):
            if attempt.kind is ErrorKind.ATTEMPT_NOT_FOUND_OR_EXPIRED and actor_id is not None:
                return Failure(ErrorKind.CHALLENGE_NOT_FOUND, "Challenge not found")
            return attempt

        failure = await self._apply_check(attempt, await self.otp.verify_challenge(challenge, code))
        await self.db.commit()
        if failure is not None:
            return failure
        return challenge

    async def _apply_check(self, attempt: TransferAttempt, check: OtpCheck) -> Optional[Failure]:
        if check.ok:
            return None
        if check is OtpCheck.EXHAUSTED:
            await self._abandon(attempt, "otp exhausted")
            return Failure(
                ErrorKind.OTP_EXHAUSTED,
                "Too many incorrect codes; this transfer was cancelled, start again",
            )
        messages = {
            OtpCheck.INVALID: "Incorrect code",
            OtpCheck.EXPIRED: "Code expired; request a new one",
            OtpCheck.ALREADY_USED: "Code already used",
            OtpCheck.NOT_FOUND: "Challenge not found",
        }
        return Failure(check.error_kind, messages[check])

    # ==================== CONFIRM ====================

    async def confirm(
        self,
        attempt_id: str,
        otp_code: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Outcome[Transfer]:
        """Commit an attempt exactly once.

        Idempotent on ``attempt_id``: once committed, every later call
        returns the same Transfer.
        """
        now = self.clock()
        attempt = await self.get_attempt(attempt_id)
        if attempt is None or (actor_id is not None and attempt.sender_id != actor_id):
            return Failure(ErrorKind.ATTEMPT_NOT_FOUND_OR_EXPIRED, "Transfer attempt not found")

        if attempt.status == "consumed" and attempt.transfer_id:
            committed = await self.db.get(Transfer, attempt.transfer_id)
            if committed is not None:
                logger.info(f"Attempt {attempt_id}: already confirmed as {committed.transfer_id}")
                return committed

        attempt = await self._load_pending_attempt(attempt_id, actor_id, now)
        if isinstance(attempt, Failure):
            return attempt

        rate_lock: Optional[RateLock] = None
        if attempt.rate_lock_id:
            rate_lock = await self.fx.get_lock(attempt.rate_lock_id)
            if rate_lock is None or not self.fx.is_valid(rate_lock, now):
                logger.info(f"Attempt {attempt_id}: rate lock expired")
                return Failure(
                    ErrorKind.RATE_LOCK_EXPIRED,
                    "The quoted exchange rate expired; start again for a fresh quote",
                )

        challenge: Optional[TransferChallenge] = None
        if attempt.otp_required:
            challenge = await self.otp.open_challenge_for(attempt.attempt_id)
            if challenge is None:
                return Failure(
                    ErrorKind.OTP_REQUIRED_BUT_MISSING,
                    "This transfer requires a verification code; request one first",
                )
            if challenge.status == "active":
                if not otp_code:
                    return Failure(
                        ErrorKind.OTP_REQUIRED_BUT_MISSING,
                        "This transfer requires a verification code",
                    )
                failure = await self._apply_check(
                    attempt, await self.otp.verify_challenge(challenge, otp_code)
                )
                if failure is not None:
                    await self.db.commit()
                    return failure

        duplicate = await self.get_transfer_by_key(attempt.ledger_key)
        if duplicate is not None:
            return await self._settle_duplicate(attempt, duplicate)

        fees = FeeBreakdown.from_dict(attempt.fee_breakdown)
        fee_wallet_id = None
        if fees.total > 0:
            fee_wallet = await self.ledger.get_wallet(self.settings.fee_wallet_owner_id, attempt.currency)
            if fee_wallet is None:
                logger.error(f"No fee wallet configured for {attempt.currency}")
                return Failure(ErrorKind.LEDGER_REJECTED, "Fee collection wallet not configured")
            fee_wallet_id = fee_wallet.wallet_id

        async with self.wallet_locks.scope(attempt.sender_wallet_id):
            # A concurrent confirm of the same attempt may have committed while we waited
            await self.db.refresh(attempt)
            if attempt.status == "consumed" and attempt.transfer_id:
                committed = await self.db.get(Transfer, attempt.transfer_id)
                if committed is not None:
                    logger.info(f"Attempt {attempt_id}: confirmed concurrently as {committed.transfer_id}")
                    return committed
            if attempt.status != "pending":
                await self.db.commit()
                return Failure(
                    ErrorKind.ATTEMPT_NOT_FOUND_OR_EXPIRED,
                    f"Transfer attempt is no longer pending ({attempt.status})",
                )
            try:
                transfer = await self._commit_locked(attempt, fees, fee_wallet_id, rate_lock, challenge, now)
            except Exception:
                await self.db.rollback()
                raise

        if isinstance(transfer, Failure):
            return transfer
        if transfer.attempt_id != attempt.attempt_id:
            # Settled against a posting made by an earlier attempt
            return transfer

        await self._safe_notify("transfer.completed", attempt.sender_id, transfer.to_dict())
        await self._safe_notify("transfer.received", attempt.recipient_id, transfer.to_dict())
        return transfer

    async def _commit_locked(
        self,
        attempt: TransferAttempt,
        fees: FeeBreakdown,
        fee_wallet_id: Optional[str],
        rate_lock: Optional[RateLock],
        challenge: Optional[TransferChallenge],
        now: datetime,
    ) -> Outcome[Transfer]:
        """Check-then-debit-then-commit; runs inside the sender wallet scope."""
        available = await self.ledger.get_available_balance(attempt.sender_wallet_id)
        if available < attempt.total_debit:
            await self.db.commit()
            logger.info(f"Attempt {attempt.attempt_id}: insufficient funds at confirm")
            return Failure(
                ErrorKind.INSUFFICIENT_FUNDS,
                "Insufficient available balance",
                {"available": str(available), "required": str(attempt.total_debit)},
            )

        transfer_id = new_id("txn")
        posted = await self.ledger.debit_and_credit(
            attempt.sender_wallet_id,
            attempt.recipient_wallet_id,
            attempt.amount,
            attempt.currency,
            attempt.ledger_key,
            credit_amount=attempt.recipient_amount,
            credit_currency=attempt.recipient_currency,
            fee_amount=fees.total,
            fee_wallet_id=fee_wallet_id,
            transfer_id=transfer_id,
        )
        if posted.committed and posted.deduplicated:
            existing = await self.get_transfer_by_key(attempt.ledger_key)
            if existing is not None:
                return await self._settle_duplicate(attempt, existing)
            logger.warning(
                f"Attempt {attempt.attempt_id}: ledger already holds {attempt.ledger_key}, recording transfer"
            )
        if not posted.committed:
            await self.db.commit()
            if posted.reason == "insufficient_funds":
                return Failure(ErrorKind.INSUFFICIENT_FUNDS, "Insufficient available balance")
            logger.error(f"Attempt {attempt.attempt_id}: ledger rejected posting ({posted.reason})")
            return Failure(
                ErrorKind.LEDGER_REJECTED,
                "The ledger rejected this transfer",
                {"reason": posted.reason},
            )

        transfer = Transfer(
            transfer_id=transfer_id,
            sender_id=attempt.sender_id,
            recipient_id=attempt.recipient_id,
            from_wallet_id=attempt.sender_wallet_id,
            to_wallet_id=attempt.recipient_wallet_id,
            amount=attempt.amount,
            currency=attempt.currency,
            credited_amount=attempt.recipient_amount,
            credited_currency=attempt.recipient_currency,
            fee_breakdown=attempt.fee_breakdown,
            fees_total=fees.total,
            total_debited=attempt.total_debit,
            fx_rate=rate_lock.buy if rate_lock else None,
            rate_lock_id=rate_lock.lock_id if rate_lock else None,
            status="completed",
            idempotency_key=attempt.ledger_key,
            attempt_id=attempt.attempt_id,
            channel=attempt.channel,
            risk_score=attempt.risk_score,
            risk_reasons=list(attempt.risk_reasons or []),
            created_at=now,
        )
        self.db.add(transfer)

        attempt.status = "consumed"
        attempt.transfer_id = transfer_id
        if challenge is not None:
            self.otp.consume(challenge, now)
        if rate_lock is not None:
            self.fx.consume(rate_lock, now)
        await self._record_contact(attempt.sender_id, attempt.recipient_id, now)

        await self.db.commit()
        logger.info(
            f"Transfer {transfer_id} committed for attempt {attempt.attempt_id}: "
            f"{attempt.total_debit} {attempt.currency} debited"
        )
        return transfer

    @staticmethod
    def _same_payload(attempt: TransferAttempt, transfer: Transfer) -> bool:
        return (
            transfer.sender_id == attempt.sender_id
            and transfer.recipient_id == attempt.recipient_id
            and transfer.currency == attempt.currency
            and money(transfer.amount) == money(attempt.amount)
        )

    async def _settle_duplicate(self, attempt: TransferAttempt, duplicate: Transfer) -> Outcome[Transfer]:
        """Resolve an attempt whose key already has a committed transfer."""
        if not self._same_payload(attempt, duplicate):
            await self._abandon(attempt, f"idempotency key {attempt.ledger_key} reused with a different payload")
            await self.db.commit()
            return Failure(
                ErrorKind.IDEMPOTENCY_CONFLICT,
                "This idempotency key was already used for a different transfer",
                {"idempotency_key": attempt.idempotency_key},
            )
        attempt.status = "consumed"
        attempt.transfer_id = duplicate.transfer_id
        await self.db.commit()
        logger.info(f"Attempt {attempt.attempt_id}: key {attempt.ledger_key} already committed")
        return duplicate

    async def _record_contact(self, sender_id: str, recipient_id: str, now: datetime) -> None:
        contact = await self.db.get(TransferContact, (sender_id, recipient_id))
        if contact is None:
            contact = TransferContact(
                user_id=sender_id, contact_user_id=recipient_id, transfer_count=0
            )
            self.db.add(contact)
        contact.transfer_count = (contact.transfer_count or 0) + 1
        contact.last_transfer_at = now

    async def get_transfer_by_key(self, key: str) -> Optional[Transfer]:
        result = await self.db.execute(select(Transfer).where(Transfer.idempotency_key == key))
        return result.scalar_one_or_none()

    async def get_transfer(self, transfer_id: str, actor_id: Optional[str] = None) -> Outcome[Transfer]:
        transfer = await self.db.get(Transfer, transfer_id)
        if transfer is None or (
            actor_id is not None and actor_id not in (transfer.sender_id, transfer.recipient_id)
        ):
            return Failure(ErrorKind.TRANSFER_NOT_FOUND, "Transfer not found")
        return transfer

    # ==================== REVERSAL ====================

    async def reverse(self, transfer_id: str, reason: str) -> Outcome[Transfer]:
        """Compensate a completed transfer with a new ``reversed`` transfer.

        The recipient gives back what they were credited, the fee wallet
        refunds the fees, and the original row is left untouched.
        """
        original = await self.db.get(Transfer, transfer_id)
        if original is None:
            return Failure(ErrorKind.TRANSFER_NOT_FOUND, "Transfer not found")
        if original.reverses_transfer_id is not None:
            return Failure(ErrorKind.INVALID_TRANSITION, "A reversal cannot itself be reversed")

        existing = await self.db.execute(
            select(Transfer).where(Transfer.reverses_transfer_id == transfer_id)
        )
        prior = existing.scalar_one_or_none()
        if prior is not None:
            return Failure(
                ErrorKind.ALREADY_REVERSED,
                "Transfer already reversed",
                {"reversal_transfer_id": prior.transfer_id},
            )

        now = self.clock()
        key = f"reversal:{transfer_id}"
        fees_total = money(original.fees_total)

        async with self.wallet_locks.scope(original.to_wallet_id):
            try:
                reversal_id = new_id("txn")
                posted = await self.ledger.debit_and_credit(
                    original.to_wallet_id,
                    original.from_wallet_id,
                    original.credited_amount,
                    original.credited_currency,
                    key,
                    credit_amount=original.amount,
                    credit_currency=original.currency,
                    transfer_id=reversal_id,
                    reversal=True,
                )
                if posted.committed and fees_total > 0:
                    fee_wallet = await self.ledger.get_wallet(
                        self.settings.fee_wallet_owner_id, original.currency
                    )
                    if fee_wallet is None:
                        await self.db.rollback()
                        return Failure(ErrorKind.LEDGER_REJECTED, "Fee collection wallet not configured")
                    posted = await self.ledger.debit_and_credit(
                        fee_wallet.wallet_id,
                        original.from_wallet_id,
                        fees_total,
                        original.currency,
                        f"{key}:fees",
                        transfer_id=reversal_id,
                        reversal=True,
                    )
                if not posted.committed:
                    await self.db.rollback()
                    if posted.reason == "insufficient_funds":
                        return Failure(
                            ErrorKind.INSUFFICIENT_FUNDS,
                            "Recipient balance no longer covers the reversal",
                        )
                    return Failure(
                        ErrorKind.LEDGER_REJECTED,
                        "The ledger rejected the reversal",
                        {"reason": posted.reason},
                    )

                reversal = Transfer(
                    transfer_id=reversal_id,
                    sender_id=original.recipient_id,
                    recipient_id=original.sender_id,
                    from_wallet_id=original.to_wallet_id,
                    to_wallet_id=original.from_wallet_id,
                    amount=original.credited_amount,
                    currency=original.credited_currency,
                    credited_amount=money(original.amount) + fees_total,
                    credited_currency=original.currency,
                    fee_breakdown={"refunded_fees": str(fees_total), "currency": original.currency},
                    fees_total=money(0),
                    total_debited=original.credited_amount,
                    fx_rate=original.fx_rate,
                    status="reversed",
                    idempotency_key=key,
                    channel=original.channel,
                    reverses_transfer_id=original.transfer_id,
                    reason=reason,
                    created_at=now,
                )
                self.db.add(reversal)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(f"Transfer {transfer_id} reversed by {reversal.transfer_id}: {reason}")
        await self._safe_notify("transfer.reversed", original.sender_id, reversal.to_dict())
        await self._safe_notify("transfer.reversed", original.recipient_id, reversal.to_dict())
        return reversal

    # ==================== HOUSEKEEPING ====================

    async def purge_expired(self, now: Optional[datetime] = None) -> dict:
        """Reclaim storage for dead attempts, their challenges and stale locks.

        Correctness never depends on this: expiry is enforced at use.
        """
        now = now or self.clock()
        dead = or_(
            TransferAttempt.status == "abandoned",
            and_(TransferAttempt.status == "pending", TransferAttempt.expires_at <= now),
        )
        unsynced = {"synchronize_session": False}
        challenges = await self.db.execute(
            delete(TransferChallenge)
            .where(TransferChallenge.attempt_id.in_(select(TransferAttempt.attempt_id).where(dead)))
            .execution_options(**unsynced)
        )
        attempts = await self.db.execute(
            delete(TransferAttempt).where(dead).execution_options(**unsynced)
        )
        locks = await self.db.execute(
            delete(RateLock)
            .where(
                RateLock.lock_expires_at <= now,
                ~exists().where(TransferAttempt.rate_lock_id == RateLock.lock_id),
                ~exists().where(Transfer.rate_lock_id == RateLock.lock_id),
            )
            .execution_options(**unsynced)
        )
        await self.db.commit()
        purged = {
            "attempts": attempts.rowcount or 0,
            "challenges": challenges.rowcount or 0,
            "rate_locks": locks.rowcount or 0,
        }
        if any(purged.values()):
            logger.info(f"Purged expired records: {purged}")
        return purged

    async def _safe_notify(self, event: str, user_id: str, payload: dict) -> None:
        try:
            await self.notifier.notify(event, user_id, payload)
        except Exception:
            logger.exception(f"Notification {event} for {user_id} failed")
