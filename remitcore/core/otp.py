"""One-time-code step-up challenges bound to transfer attempts."""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from remitcore.config import Settings, get_settings
from remitcore.core.errors import ErrorKind, Failure, Outcome
from remitcore.database import new_id, utcnow
from remitcore.models.transfer import TransferChallenge

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("active", "verified")


class OtpCheck(str, Enum):
    """Outcome of a verification."""

    VERIFIED = "verified"
    INVALID = "invalid"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    ALREADY_USED = "already_used"
    NOT_FOUND = "not_found"

    @property
    def ok(self) -> bool:
        return self is OtpCheck.VERIFIED

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return {
            OtpCheck.INVALID: ErrorKind.OTP_INVALID,
            OtpCheck.EXPIRED: ErrorKind.OTP_EXPIRED,
            OtpCheck.EXHAUSTED: ErrorKind.OTP_EXHAUSTED,
            OtpCheck.ALREADY_USED: ErrorKind.OTP_ALREADY_USED,
            OtpCheck.NOT_FOUND: ErrorKind.CHALLENGE_NOT_FOUND,
        }.get(self)


@dataclass(frozen=True)
class IssuedChallenge:
    """A fresh challenge. ``code`` is plaintext and only ever handed to delivery."""

    challenge_id: str
    attempt_id: str
    code: str
    expires_at: datetime


class OtpChallengeService:
    """Issues, verifies and consumes OTP challenges.

    Only an HMAC of the code (keyed with the service secret and bound to the
    challenge id) is persisted.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    def hash_code(self, challenge_id: str, code: str) -> str:
        return hmac.new(
            self.settings.secret_key.encode(),
            f"{challenge_id}:{code}".encode(),
            hashlib.sha256,
        ).hexdigest()

    def _generate_code(self) -> str:
        length = self.settings.otp_code_length
        return f"{secrets.randbelow(10 ** length):0{length}d}"

    async def issue(self, attempt_id: str) -> Outcome[IssuedChallenge]:
        """Issue a challenge for an attempt, superseding any open one."""
        issued_count = await self.db.execute(
            select(func.count())
            .select_from(TransferChallenge)
            .where(TransferChallenge.attempt_id == attempt_id)
        )
        if issued_count.scalar_one() >= self.settings.otp_max_issues_per_attempt:
            logger.warning(f"Attempt {attempt_id}: OTP issue limit reached")
            return Failure(
                ErrorKind.OTP_EXHAUSTED,
                "Too many codes requested for this transfer; start a new one",
            )

        await self.db.execute(
            update(TransferChallenge)
            .where(
                TransferChallenge.attempt_id == attempt_id,
                TransferChallenge.status.in_(OPEN_STATUSES),
            )
            .values(status="superseded")
            .execution_options(synchronize_session="fetch")
        )

        now = self.clock()
        challenge_id = new_id("chl")
        code = self._generate_code()
        challenge = TransferChallenge(
            challenge_id=challenge_id,
            attempt_id=attempt_id,
            code_hash=self.hash_code(challenge_id, code),
            failed_attempts=0,
            status="active",
            issued_at=now,
            expires_at=now + timedelta(seconds=self.settings.otp_ttl_seconds),
        )
        self.db.add(challenge)
        await self.db.flush()

        logger.info(f"Attempt {attempt_id}: issued challenge {challenge_id}")
        return IssuedChallenge(
            challenge_id=challenge_id,
            attempt_id=attempt_id,
            code=code,
            expires_at=challenge.expires_at,
        )

    async def get_challenge(self, challenge_id: str) -> Optional[TransferChallenge]:
        result = await self.db.execute(
            select(TransferChallenge).where(TransferChallenge.challenge_id == challenge_id)
        )
        return result.scalar_one_or_none()

    async def open_challenge_for(self, attempt_id: str) -> Optional[TransferChallenge]:
        """The attempt's current active or verified challenge, if any."""
        result = await self.db.execute(
            select(TransferChallenge)
            .where(
                TransferChallenge.attempt_id == attempt_id,
                TransferChallenge.status.in_(OPEN_STATUSES),
            )
            .order_by(TransferChallenge.issued_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def verify(self, challenge_id: str, code: str) -> OtpCheck:
        challenge = await self.get_challenge(challenge_id)
        if challenge is None:
            return OtpCheck.NOT_FOUND
        return await self.verify_challenge(challenge, code)

    async def verify_challenge(self, challenge: TransferChallenge, code: str) -> OtpCheck:
        """Verify a code; a challenge verifies successfully at most once."""
        if challenge.status in ("verified", "consumed"):
            return OtpCheck.ALREADY_USED
        if challenge.status == "exhausted":
            return OtpCheck.EXHAUSTED
        if challenge.status == "superseded":
            return OtpCheck.EXPIRED

        now = self.clock()
        if now >= challenge.expires_at:
            return OtpCheck.EXPIRED

        expected = challenge.code_hash
        supplied = self.hash_code(challenge.challenge_id, (code or "").strip())
        if not hmac.compare_digest(expected, supplied):
            challenge.failed_attempts = (challenge.failed_attempts or 0) + 1
            if challenge.failed_attempts >= self.settings.otp_max_attempts:
                challenge.status = "exhausted"
                await self.db.flush()
                logger.warning(
                    f"Challenge {challenge.challenge_id}: exhausted after "
                    f"{challenge.failed_attempts} failed verifications"
                )
                return OtpCheck.EXHAUSTED
            await self.db.flush()
            logger.info(
                f"Challenge {challenge.challenge_id}: invalid code "
                f"({challenge.failed_attempts}/{self.settings.otp_max_attempts})"
            )
            return OtpCheck.INVALID

        challenge.status = "verified"
        challenge.verified_at = now
        await self.db.flush()
        logger.info(f"Challenge {challenge.challenge_id}: verified")
        return OtpCheck.VERIFIED

    def consume(self, challenge: TransferChallenge, now: datetime) -> None:
        """Terminal; called when the bound attempt commits."""
        challenge.status = "consumed"
        challenge.consumed_at = now
