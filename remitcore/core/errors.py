"""Typed business outcomes and infrastructure errors.

Business outcomes (expired attempt, bad OTP, insufficient funds, ...) are
returned as ``Failure`` values so every caller handles them explicitly. Only
conditions nobody can act on (ledger unreachable, storage down) are raised.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, TypeVar, Union


class ErrorKind(str, Enum):
    """Stable, enumerable error kinds surfaced to callers."""

    # Transfer flow
    ATTEMPT_NOT_FOUND_OR_EXPIRED = "attempt_not_found_or_expired"
    ATTEMPT_EXPIRED = "attempt_expired"
    OTP_REQUIRED_BUT_MISSING = "otp_required_but_missing"
    OTP_INVALID = "otp_invalid"
    OTP_EXPIRED = "otp_expired"
    OTP_EXHAUSTED = "otp_exhausted"
    OTP_ALREADY_USED = "otp_already_used"
    OTP_NOT_REQUIRED = "otp_not_required"
    CHALLENGE_NOT_FOUND = "challenge_not_found"
    RATE_LOCK_EXPIRED = "rate_lock_expired"
    RATE_UNAVAILABLE = "rate_unavailable"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    RISK_BLOCKED = "risk_blocked"
    INVALID_AMOUNT = "invalid_amount"
    SELF_TRANSFER = "self_transfer"
    WALLET_NOT_FOUND = "wallet_not_found"
    LEDGER_REJECTED = "ledger_rejected"
    TRANSFER_NOT_FOUND = "transfer_not_found"
    ALREADY_REVERSED = "already_reversed"
    IDEMPOTENCY_CONFLICT = "idempotency_conflict"
    INVALID_IDEMPOTENCY_KEY = "invalid_idempotency_key"

    # Schedule flow
    SCHEDULE_RUN_FAILED = "schedule_run_failed"
    PLAN_LIMIT_EXCEEDED = "plan_limit_exceeded"
    SCHEDULE_NOT_FOUND = "schedule_not_found"
    INVALID_TRANSITION = "invalid_transition"
    INVALID_FREQUENCY = "invalid_frequency"
    RECIPIENT_NOT_FOUND = "recipient_not_found"
    CONSENT_MISSING = "consent_missing"


@dataclass(frozen=True)
class Failure:
    """A business outcome that is not a success."""

    kind: ErrorKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "error_kind": self.kind.value,
            "message": self.message,
            **({"details": self.details} if self.details else {}),
        }


T = TypeVar("T")

Outcome = Union[T, Failure]


def is_failure(value: Any) -> bool:
    return isinstance(value, Failure)


class InfrastructureError(Exception):
    """Unexpected condition in a collaborator; never a business outcome."""


class LedgerUnavailableError(InfrastructureError):
    """The ledger could not be reached or did not answer."""


# HTTP status for each kind; anything unlisted is a 400.
HTTP_STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.ATTEMPT_NOT_FOUND_OR_EXPIRED: 404,
    ErrorKind.TRANSFER_NOT_FOUND: 404,
    ErrorKind.SCHEDULE_NOT_FOUND: 404,
    ErrorKind.CHALLENGE_NOT_FOUND: 404,
    ErrorKind.RECIPIENT_NOT_FOUND: 404,
    ErrorKind.WALLET_NOT_FOUND: 404,
    ErrorKind.ATTEMPT_EXPIRED: 410,
    ErrorKind.RATE_LOCK_EXPIRED: 410,
    ErrorKind.OTP_EXPIRED: 410,
    ErrorKind.INSUFFICIENT_FUNDS: 402,
    ErrorKind.PLAN_LIMIT_EXCEEDED: 402,
    ErrorKind.RISK_BLOCKED: 403,
    ErrorKind.OTP_REQUIRED_BUT_MISSING: 401,
    ErrorKind.OTP_INVALID: 401,
    ErrorKind.OTP_EXHAUSTED: 401,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.ALREADY_REVERSED: 409,
    ErrorKind.IDEMPOTENCY_CONFLICT: 409,
    ErrorKind.OTP_ALREADY_USED: 409,
    ErrorKind.RATE_UNAVAILABLE: 503,
}


def http_status_for(kind: ErrorKind) -> int:
    return HTTP_STATUS_BY_KIND.get(kind, 400)
