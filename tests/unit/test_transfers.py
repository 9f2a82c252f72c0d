"""Unit tests for the attempt -> challenge -> confirm transfer flow."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import create_account, get_wallet
from remitcore.core.errors import ErrorKind, Failure
from remitcore.core.transfers import CHANNEL_SCHEDULED
from remitcore.models.account import LedgerEntry, TransferContact
from remitcore.models.transfer import Transfer, TransferAttempt


async def balance(db, owner_id: str, currency: str) -> Decimal:
    return Decimal((await get_wallet(db, owner_id, currency)).balance)


def wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestAttempt:

    @pytest.mark.asyncio
    async def test_trusted_same_currency_attempt(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "bob", "100", "HTG")

        assert not isinstance(attempt, Failure)
        assert attempt.status == "pending"
        assert attempt.otp_required is False
        assert attempt.rate_lock_id is None
        assert attempt.recipient_amount == Decimal("100.00")
        assert attempt.fee_breakdown["total"] == "1.00"
        assert attempt.total_debit == Decimal("101.00")

    @pytest.mark.asyncio
    async def test_new_recipient_above_threshold_requires_otp(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "carl", "60000", "HTG")

        assert attempt.otp_required is True
        assert "new_recipient" in attempt.risk_reasons
        assert "high_amount" in attempt.risk_reasons

    @pytest.mark.asyncio
    async def test_new_recipient_above_block_threshold_is_refused(self, world, transfer_service):
        result = await transfer_service.attempt("alice", "carl", "700000", "HTG")

        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.RISK_BLOCKED
        assert "high_amount_new_recipient" in result.details["reasons"]

    @pytest.mark.asyncio
    async def test_frozen_recipient_is_refused(self, world, transfer_service):
        from remitcore.models.account import Account

        bob = await world.get(Account, "bob")
        bob.is_frozen = True
        await world.commit()

        result = await transfer_service.attempt("alice", "bob", "10", "HTG")
        assert result.kind is ErrorKind.RISK_BLOCKED
        assert "recipient_frozen" in result.details["reasons"]

    @pytest.mark.asyncio
    async def test_input_validation(self, world, transfer_service):
        assert (await transfer_service.attempt("alice", "bob", "0", "HTG")).kind is ErrorKind.INVALID_AMOUNT
        assert (await transfer_service.attempt("alice", "bob", "-5", "HTG")).kind is ErrorKind.INVALID_AMOUNT
        assert (await transfer_service.attempt("alice", "bob", "abc", "HTG")).kind is ErrorKind.INVALID_AMOUNT
        assert (await transfer_service.attempt("alice", "alice", "5", "HTG")).kind is ErrorKind.SELF_TRANSFER
        assert (await transfer_service.attempt("alice", "nobody", "5", "HTG")).kind is ErrorKind.WALLET_NOT_FOUND
        assert (await transfer_service.attempt("carl", "bob", "5", "USD")).kind is ErrorKind.WALLET_NOT_FOUND

    @pytest.mark.asyncio
    async def test_insufficient_funds_precheck(self, world, transfer_service):
        result = await transfer_service.attempt("alice", "bob", "200000", "HTG")

        assert result.kind is ErrorKind.INSUFFICIENT_FUNDS
        assert result.details["required"] == "202000.00"

    @pytest.mark.asyncio
    async def test_unconvertible_amount_is_rejected(self, world, transfer_service):
        # 0.01 HTG is far below one US cent
        result = await transfer_service.attempt("alice", "dana", "0.01", "HTG")
        assert result.kind is ErrorKind.INVALID_AMOUNT

    @pytest.mark.asyncio
    async def test_scheduled_channel_never_asks_for_otp(self, world, transfer_service):
        result = await transfer_service.attempt("alice", "carl", "100", "HTG", channel=CHANNEL_SCHEDULED)

        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.RISK_BLOCKED

    @pytest.mark.asyncio
    async def test_velocity_triggers_step_up(self, world, transfer_service, settings):
        for _ in range(settings.velocity_max_transfers):
            attempt = await transfer_service.attempt("alice", "bob", "10", "HTG")
            assert not isinstance(await transfer_service.confirm(attempt.attempt_id), Failure)

        attempt = await transfer_service.attempt("alice", "bob", "10", "HTG")
        assert attempt.otp_required is True
        assert "high_velocity" in attempt.risk_reasons


class TestConfirm:

    @pytest.mark.asyncio
    async def test_trusted_transfer_commits_immediately(self, world, transfer_service, notifier):
        attempt = await transfer_service.attempt("alice", "bob", "100", "HTG")
        transfer = await transfer_service.confirm(attempt.attempt_id)

        assert isinstance(transfer, Transfer)
        assert transfer.status == "completed"
        assert await balance(world, "alice", "HTG") == Decimal("99899.00")
        assert await balance(world, "bob", "HTG") == Decimal("1100.00")
        assert await balance(world, "platform_fees", "HTG") == Decimal("1.00")
        # Sender debit equals recipient credit plus disclosed fees
        assert transfer.total_debited == transfer.credited_amount + transfer.fees_total

        contact = await world.get(TransferContact, ("alice", "bob"), populate_existing=True)
        assert contact.transfer_count == 13
        assert [n["event"] for n in notifier.sent] == ["transfer.completed", "transfer.received"]

    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "bob", "100", "HTG")
        first = await transfer_service.confirm(attempt.attempt_id)
        second = await transfer_service.confirm(attempt.attempt_id)

        assert second.transfer_id == first.transfer_id
        assert await balance(world, "alice", "HTG") == Decimal("99899.00")
        count = await world.execute(select(func.count()).select_from(Transfer))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_caller_idempotency_key_is_honoured(self, world, transfer_service):
        first_attempt = await transfer_service.attempt("alice", "bob", "100", "HTG", idempotency_key="client-key-1")
        first = await transfer_service.confirm(first_attempt.attempt_id)

        retry_attempt = await transfer_service.attempt("alice", "bob", "100", "HTG", idempotency_key="client-key-1")
        retry = await transfer_service.confirm(retry_attempt.attempt_id)

        assert retry.transfer_id == first.transfer_id
        assert await balance(world, "alice", "HTG") == Decimal("99899.00")

    @pytest.mark.asyncio
    async def test_idempotency_keys_are_scoped_to_the_sender(self, world, transfer_service):
        await create_account(world, "mallory", age_days=400, wallets={"USD": "500.00"})
        world.add(TransferContact(user_id="mallory", contact_user_id="dana", transfer_count=6))
        await world.commit()

        alice_attempt = await transfer_service.attempt("alice", "dana", "100", "USD", idempotency_key="k1")
        alices = await transfer_service.confirm(alice_attempt.attempt_id, actor_id="alice")
        mallory_attempt = await transfer_service.attempt("mallory", "dana", "7", "USD", idempotency_key="k1")
        mallorys = await transfer_service.confirm(mallory_attempt.attempt_id, actor_id="mallory")

        assert isinstance(mallorys, Transfer)
        assert mallorys.transfer_id != alices.transfer_id
        assert mallorys.sender_id == "mallory"
        assert mallorys.amount == Decimal("7.00")
        assert alices.idempotency_key == "user:alice:k1"
        assert mallorys.idempotency_key == "user:mallory:k1"
        assert await balance(world, "mallory", "USD") < Decimal("500.00")

    @pytest.mark.asyncio
    async def test_reused_key_with_different_payload_conflicts(self, world, transfer_service):
        first_attempt = await transfer_service.attempt("alice", "bob", "100", "HTG", idempotency_key="k2")
        first = await transfer_service.confirm(first_attempt.attempt_id)

        changed = await transfer_service.attempt("alice", "bob", "250", "HTG", idempotency_key="k2")
        result = await transfer_service.confirm(changed.attempt_id)

        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.IDEMPOTENCY_CONFLICT
        assert await balance(world, "alice", "HTG") == Decimal("99899.00")
        stored = await world.get(TransferAttempt, changed.attempt_id, populate_existing=True)
        assert stored.status == "abandoned"
        assert stored.transfer_id is None
        assert (await transfer_service.get_transfer(first.transfer_id)).amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_scheduled_key_prefix_is_reserved(self, world, transfer_service):
        result = await transfer_service.attempt(
            "alice", "dana", "10", "USD", idempotency_key="sched:sch_1:2026-02-15T12:00:00"
        )

        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.INVALID_IDEMPOTENCY_KEY

    @pytest.mark.asyncio
    async def test_otp_flow_with_code_on_confirm(self, world, transfer_service, notifier):
        attempt = await transfer_service.attempt("alice", "carl", "60000", "HTG")

        missing = await transfer_service.confirm(attempt.attempt_id)
        assert missing.kind is ErrorKind.OTP_REQUIRED_BUT_MISSING

        issued = await transfer_service.issue_challenge(attempt.attempt_id)
        assert notifier.sent[-1]["event"] == "otp.issued"
        assert notifier.sent[-1]["payload"]["code"] == issued.code

        transfer = await transfer_service.confirm(attempt.attempt_id, otp_code=issued.code)
        assert isinstance(transfer, Transfer)
        assert await balance(world, "carl", "HTG") == Decimal("60000.00")

        challenge = await transfer_service.otp.get_challenge(issued.challenge_id)
        assert challenge.status == "consumed"

    @pytest.mark.asyncio
    async def test_otp_flow_with_prior_verification(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "carl", "60000", "HTG")
        issued = await transfer_service.issue_challenge(attempt.attempt_id)

        verified = await transfer_service.verify_challenge(issued.challenge_id, issued.code)
        assert verified.status == "verified"

        transfer = await transfer_service.confirm(attempt.attempt_id)
        assert isinstance(transfer, Transfer)

    @pytest.mark.asyncio
    async def test_code_without_challenge_is_missing(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "carl", "60000", "HTG")
        result = await transfer_service.confirm(attempt.attempt_id, otp_code="123456")
        assert result.kind is ErrorKind.OTP_REQUIRED_BUT_MISSING

    @pytest.mark.asyncio
    async def test_wrong_code_then_right_code(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "carl", "60000", "HTG")
        issued = await transfer_service.issue_challenge(attempt.attempt_id)

        bad = await transfer_service.confirm(attempt.attempt_id, otp_code=wrong_code(issued.code))
        assert bad.kind is ErrorKind.OTP_INVALID
        assert await balance(world, "carl", "HTG") == Decimal("0.00")

        good = await transfer_service.confirm(attempt.attempt_id, otp_code=issued.code)
        assert isinstance(good, Transfer)

    @pytest.mark.asyncio
    async def test_exhausted_challenge_abandons_attempt(self, world, transfer_service, settings):
        attempt = await transfer_service.attempt("alice", "carl", "60000", "HTG")
        issued = await transfer_service.issue_challenge(attempt.attempt_id)

        results = [
            await transfer_service.verify_challenge(issued.challenge_id, wrong_code(issued.code))
            for _ in range(settings.otp_max_attempts)
        ]
        assert [r.kind for r in results[:-1]] == [ErrorKind.OTP_INVALID] * (settings.otp_max_attempts - 1)
        assert results[-1].kind is ErrorKind.OTP_EXHAUSTED

        stored = await world.get(TransferAttempt, attempt.attempt_id)
        assert stored.status == "abandoned"
        result = await transfer_service.confirm(attempt.attempt_id, otp_code=issued.code)
        assert result.kind is ErrorKind.ATTEMPT_NOT_FOUND_OR_EXPIRED

    @pytest.mark.asyncio
    async def test_challenge_only_for_otp_attempts(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "bob", "100", "HTG")
        result = await transfer_service.issue_challenge(attempt.attempt_id)
        assert result.kind is ErrorKind.OTP_NOT_REQUIRED

    @pytest.mark.asyncio
    async def test_expired_attempt(self, world, transfer_service, clock):
        attempt = await transfer_service.attempt("alice", "bob", "100", "HTG")
        clock.advance(seconds=121)

        result = await transfer_service.confirm(attempt.attempt_id)
        assert result.kind is ErrorKind.ATTEMPT_EXPIRED

    @pytest.mark.asyncio
    async def test_unknown_attempt(self, world, transfer_service):
        result = await transfer_service.confirm("att_missing")
        assert result.kind is ErrorKind.ATTEMPT_NOT_FOUND_OR_EXPIRED

    @pytest.mark.asyncio
    async def test_other_users_attempt_is_not_found(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "bob", "100", "HTG")
        result = await transfer_service.confirm(attempt.attempt_id, actor_id="bob")
        assert result.kind is ErrorKind.ATTEMPT_NOT_FOUND_OR_EXPIRED

    @pytest.mark.asyncio
    async def test_cross_currency_uses_locked_rate(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "bob", "100", "USD")

        assert attempt.recipient_currency == "HTG"
        assert attempt.rate_lock_id is not None
        assert attempt.recipient_amount == Decimal("13150.63")

        transfer = await transfer_service.confirm(attempt.attempt_id)
        assert transfer.fx_rate == Decimal("131.506250")
        assert await balance(world, "alice", "USD") == Decimal("899.00")
        assert await balance(world, "bob", "HTG") == Decimal("14150.63")
        assert await balance(world, "platform_fees", "USD") == Decimal("1.00")

        rate_lock = await transfer_service.fx.get_lock(attempt.rate_lock_id)
        assert rate_lock.consumed_at is not None

    @pytest.mark.asyncio
    async def test_expired_rate_lock_is_never_applied(self, world, transfer_service, clock):
        attempt = await transfer_service.attempt("alice", "bob", "100", "USD")
        rate_lock = await transfer_service.fx.get_lock(attempt.rate_lock_id)
        assert rate_lock.lock_expires_at == clock() + timedelta(seconds=45)

        clock.advance(seconds=46)
        result = await transfer_service.confirm(attempt.attempt_id)

        assert result.kind is ErrorKind.RATE_LOCK_EXPIRED
        assert await balance(world, "alice", "USD") == Decimal("1000.00")
        assert await balance(world, "bob", "HTG") == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_insufficient_funds_at_confirm_changes_nothing(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "bob", "100", "HTG")

        wallet = await get_wallet(world, "alice", "HTG")
        wallet.balance = Decimal("50.00")
        await world.commit()

        result = await transfer_service.confirm(attempt.attempt_id)
        assert result.kind is ErrorKind.INSUFFICIENT_FUNDS
        assert await balance(world, "alice", "HTG") == Decimal("50.00")
        assert await balance(world, "bob", "HTG") == Decimal("1000.00")
        entries = await world.execute(select(func.count()).select_from(LedgerEntry))
        assert entries.scalar_one() == 0

        stored = await world.get(TransferAttempt, attempt.attempt_id)
        assert stored.status == "pending"

    @pytest.mark.asyncio
    async def test_missing_fee_wallet_is_rejected(self, world, transfer_service):
        wallet = await get_wallet(world, "platform_fees", "HTG")
        await world.delete(wallet)
        await world.commit()

        attempt = await transfer_service.attempt("alice", "bob", "100", "HTG")
        result = await transfer_service.confirm(attempt.attempt_id)
        assert result.kind is ErrorKind.LEDGER_REJECTED


class TestReversal:

    @pytest.mark.asyncio
    async def test_reverse_restores_balances(self, world, transfer_service, notifier):
        attempt = await transfer_service.attempt("alice", "bob", "100", "HTG")
        original = await transfer_service.confirm(attempt.attempt_id)

        reversal = await transfer_service.reverse(original.transfer_id, "customer dispute")

        assert reversal.status == "reversed"
        assert reversal.reverses_transfer_id == original.transfer_id
        assert reversal.reason == "customer dispute"
        assert await balance(world, "alice", "HTG") == Decimal("100000.00")
        assert await balance(world, "bob", "HTG") == Decimal("1000.00")
        assert await balance(world, "platform_fees", "HTG") == Decimal("0.00")

        refreshed = await world.get(Transfer, original.transfer_id, populate_existing=True)
        assert refreshed.status == "completed"
        assert notifier.sent[-1]["event"] == "transfer.reversed"

    @pytest.mark.asyncio
    async def test_reverse_cross_currency(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "bob", "100", "USD")
        original = await transfer_service.confirm(attempt.attempt_id)

        reversal = await transfer_service.reverse(original.transfer_id, "wrong recipient")

        assert reversal.currency == "HTG"
        assert reversal.amount == Decimal("13150.63")
        assert reversal.credited_amount == Decimal("101.00")
        assert await balance(world, "alice", "USD") == Decimal("1000.00")
        assert await balance(world, "bob", "HTG") == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_reverse_only_once(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "bob", "100", "HTG")
        original = await transfer_service.confirm(attempt.attempt_id)
        reversal = await transfer_service.reverse(original.transfer_id, "dispute")

        again = await transfer_service.reverse(original.transfer_id, "dispute")
        assert again.kind is ErrorKind.ALREADY_REVERSED
        assert again.details["reversal_transfer_id"] == reversal.transfer_id

        nested = await transfer_service.reverse(reversal.transfer_id, "undo")
        assert nested.kind is ErrorKind.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_reverse_requires_recipient_funds(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "bob", "100", "HTG")
        original = await transfer_service.confirm(attempt.attempt_id)

        wallet = await get_wallet(world, "bob", "HTG")
        wallet.balance = Decimal("0.00")
        await world.commit()

        result = await transfer_service.reverse(original.transfer_id, "dispute")
        assert result.kind is ErrorKind.INSUFFICIENT_FUNDS
        assert await balance(world, "alice", "HTG") == Decimal("99899.00")

    @pytest.mark.asyncio
    async def test_reverse_unknown_transfer(self, world, transfer_service):
        result = await transfer_service.reverse("txn_missing", "dispute")
        assert result.kind is ErrorKind.TRANSFER_NOT_FOUND


class TestHousekeeping:

    @pytest.mark.asyncio
    async def test_purge_removes_dead_attempts_only(self, world, transfer_service, clock):
        expired = await transfer_service.attempt("alice", "bob", "100", "USD")
        clock.advance(seconds=200)
        live = await transfer_service.attempt("alice", "bob", "100", "HTG")

        purged = await transfer_service.purge_expired()

        assert purged["attempts"] == 1
        assert purged["rate_locks"] == 1
        assert await transfer_service.get_attempt(expired.attempt_id) is None
        assert await transfer_service.get_attempt(live.attempt_id) is not None

    @pytest.mark.asyncio
    async def test_get_transfer_is_scoped_to_parties(self, world, transfer_service):
        attempt = await transfer_service.attempt("alice", "bob", "100", "HTG")
        transfer = await transfer_service.confirm(attempt.attempt_id)

        assert (await transfer_service.get_transfer(transfer.transfer_id, actor_id="bob")).transfer_id == transfer.transfer_id
        outsider = await transfer_service.get_transfer(transfer.transfer_id, actor_id="carl")
        assert outsider.kind is ErrorKind.TRANSFER_NOT_FOUND
