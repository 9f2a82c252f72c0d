"""Unit tests for OTP challenges."""

from datetime import timedelta

import pytest

from remitcore.core.errors import ErrorKind, Failure
from remitcore.core.otp import OtpChallengeService, OtpCheck


@pytest.fixture
def otp(db_session, settings, clock) -> OtpChallengeService:
    return OtpChallengeService(db_session, settings, clock)


@pytest.mark.asyncio
async def test_issue_stores_only_a_hash(otp):
    issued = await otp.issue("att_1")

    assert len(issued.code) == 6
    assert issued.code.isdigit()
    challenge = await otp.get_challenge(issued.challenge_id)
    assert challenge.status == "active"
    assert challenge.code_hash != issued.code
    assert challenge.code_hash == otp.hash_code(issued.challenge_id, issued.code)


@pytest.mark.asyncio
async def test_correct_code_verifies_once(otp):
    issued = await otp.issue("att_1")

    assert await otp.verify(issued.challenge_id, issued.code) is OtpCheck.VERIFIED
    # Single use: the same correct code cannot verify twice
    assert await otp.verify(issued.challenge_id, issued.code) is OtpCheck.ALREADY_USED


@pytest.mark.asyncio
async def test_wrong_code_counts_failures_until_exhausted(otp, settings):
    issued = await otp.issue("att_1")
    wrong = "000000" if issued.code != "000000" else "111111"

    for _ in range(settings.otp_max_attempts - 1):
        assert await otp.verify(issued.challenge_id, wrong) is OtpCheck.INVALID

    assert await otp.verify(issued.challenge_id, wrong) is OtpCheck.EXHAUSTED
    # Exhaustion is permanent, even for the right code
    assert await otp.verify(issued.challenge_id, issued.code) is OtpCheck.EXHAUSTED


@pytest.mark.asyncio
async def test_expired_code_is_rejected(otp, clock):
    issued = await otp.issue("att_1")
    clock.advance(seconds=300)

    assert await otp.verify(issued.challenge_id, issued.code) is OtpCheck.EXPIRED


@pytest.mark.asyncio
async def test_reissue_supersedes_previous_challenge(otp):
    first = await otp.issue("att_1")
    second = await otp.issue("att_1")

    assert await otp.verify(first.challenge_id, first.code) is OtpCheck.EXPIRED
    open_challenge = await otp.open_challenge_for("att_1")
    assert open_challenge.challenge_id == second.challenge_id


@pytest.mark.asyncio
async def test_issue_limit_per_attempt(otp, settings):
    for _ in range(settings.otp_max_issues_per_attempt):
        assert not isinstance(await otp.issue("att_1"), Failure)

    result = await otp.issue("att_1")
    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.OTP_EXHAUSTED


@pytest.mark.asyncio
async def test_unknown_challenge(otp):
    assert await otp.verify("chl_missing", "123456") is OtpCheck.NOT_FOUND


def test_check_maps_to_error_kinds():
    assert OtpCheck.VERIFIED.ok
    assert OtpCheck.VERIFIED.error_kind is None
    assert OtpCheck.INVALID.error_kind is ErrorKind.OTP_INVALID
    assert OtpCheck.ALREADY_USED.error_kind is ErrorKind.OTP_ALREADY_USED
