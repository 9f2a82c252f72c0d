"""Recipient trust scoring.

A policy table, not a model: every point and every reason comes from exactly
one rule below, so a decision can be audited by reading ``reasons``.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional

from remitcore.config import Settings, get_settings


class TrustLevel(IntEnum):
    """Ordered so the lower (more conservative) level compares smaller."""

    NEW = 0
    MODERATE = 1
    TRUSTED = 2

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class TrustSignals:
    """Relationship history between a sender and a recipient."""

    prior_transfer_count: int = 0
    is_favorite: bool = False
    account_age_days: int = 0
    verification_tier: int = 0
    is_frozen: bool = False


@dataclass(frozen=True)
class TrustScore:
    score: int
    level: TrustLevel
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"score": self.score, "level": self.level.label, "reasons": list(self.reasons)}


@dataclass(frozen=True)
class TrustPolicy:
    trusted_min_transfers: int = 5
    moderate_min_transfers: int = 1
    established_account_days: int = 90
    active_account_days: int = 30
    active_recipient_min_transfers: int = 21
    some_history_min_transfers: int = 6

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TrustPolicy":
        settings = settings or get_settings()
        return cls(
            trusted_min_transfers=settings.trust_trusted_min_transfers,
            moderate_min_transfers=settings.trust_moderate_min_transfers,
            established_account_days=settings.trust_established_account_days,
            active_account_days=settings.trust_active_account_days,
            active_recipient_min_transfers=settings.trust_active_recipient_min_transfers,
            some_history_min_transfers=settings.trust_some_history_min_transfers,
        )


class RecipientTrustEngine:
    """Scores a sender/recipient pair into a discrete trust level."""

    def __init__(self, policy: Optional[TrustPolicy] = None):
        self.policy = policy or TrustPolicy()

    def score(self, signals: TrustSignals) -> TrustScore:
        points = 0
        reasons: List[str] = []

        # History rules
        if signals.prior_transfer_count >= self.policy.active_recipient_min_transfers:
            points += 30
            reasons.append("active_recipient")
        elif signals.prior_transfer_count >= self.policy.some_history_min_transfers:
            points += 20
            reasons.append("some_history")
        elif signals.prior_transfer_count >= 1:
            points += 10
            reasons.append("prior_transfers")

        if signals.is_favorite:
            points += 15
            reasons.append("favorite_recipient")

        # Account rules
        if signals.account_age_days > self.policy.established_account_days:
            points += 20
            reasons.append("established_account")
        elif signals.account_age_days > self.policy.active_account_days:
            points += 10
            reasons.append("active_account")

        if signals.verification_tier >= 2:
            points += 30
            reasons.append("kyc_verified")
        elif signals.verification_tier == 1:
            points += 10
            reasons.append("basic_kyc")

        if signals.is_frozen:
            points -= 40
            reasons.append("account_frozen")

        points = max(0, min(points, 100))

        history_level = self._history_level(signals)
        account_level = self._account_level(signals)
        reasons.append(f"history_level:{history_level.label}")
        reasons.append(f"account_level:{account_level.label}")

        level = min(history_level, account_level)
        if signals.is_frozen:
            level = TrustLevel.NEW

        return TrustScore(score=points, level=level, reasons=reasons)

    def _history_level(self, signals: TrustSignals) -> TrustLevel:
        count = signals.prior_transfer_count
        if count >= self.policy.trusted_min_transfers:
            return TrustLevel.TRUSTED
        if signals.is_favorite and count >= self.policy.moderate_min_transfers:
            return TrustLevel.TRUSTED
        if count >= self.policy.moderate_min_transfers or signals.is_favorite:
            return TrustLevel.MODERATE
        return TrustLevel.NEW

    def _account_level(self, signals: TrustSignals) -> TrustLevel:
        age = signals.account_age_days
        tier = signals.verification_tier
        if age > self.policy.established_account_days and tier >= 2:
            return TrustLevel.TRUSTED
        if age > self.policy.active_account_days or tier >= 1:
            return TrustLevel.MODERATE
        return TrustLevel.NEW
