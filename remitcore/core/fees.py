"""Corridor fee schedule."""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Mapping, Optional

CENT = Decimal("0.01")

ROLES = ("CLIENT", "DIASPORA", "MERCHANT", "DISTRIBUTOR")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, ROUND_HALF_UP)


def corridor_code(from_role: str, to_role: str) -> str:
    return f"{(from_role or 'CLIENT').upper()}_{(to_role or 'CLIENT').upper()}"


@dataclass(frozen=True)
class FeeRule:
    platform_flat: Decimal = Decimal("0")
    platform_percent: Decimal = Decimal("0")
    agent_flat: Decimal = Decimal("0")
    agent_percent: Decimal = Decimal("0")
    network_flat: Decimal = Decimal("0")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Decimal]) -> "FeeRule":
        return cls(**{k: Decimal(str(v)) for k, v in values.items()})


@dataclass(frozen=True)
class FeeBreakdown:
    platform_fee: Decimal
    agent_fee: Decimal
    network_fee: Decimal
    currency: str
    corridor: str

    @property
    def total(self) -> Decimal:
        return self.platform_fee + self.agent_fee + self.network_fee

    def to_dict(self) -> dict:
        return {
            "platform_fee": str(self.platform_fee),
            "agent_fee": str(self.agent_fee),
            "network_fee": str(self.network_fee),
            "total": str(self.total),
            "currency": self.currency,
            "corridor": self.corridor,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FeeBreakdown":
        return cls(
            platform_fee=Decimal(data["platform_fee"]),
            agent_fee=Decimal(data["agent_fee"]),
            network_fee=Decimal(data["network_fee"]),
            currency=data["currency"],
            corridor=data["corridor"],
        )


class FeeSchedule:
    """Fee table keyed by corridor code, with a DEFAULT row.

    Fees are always charged in the sender's currency. Network fees apply to
    cross-currency transfers only.
    """

    def __init__(self, table: Optional[Dict[str, Mapping[str, Decimal]]] = None):
        table = table or {}
        self._rules = {code.upper(): FeeRule.from_mapping(row) for code, row in table.items()}
        self._default = self._rules.get("DEFAULT", FeeRule())

    def rule_for(self, corridor: str) -> FeeRule:
        return self._rules.get(corridor, self._default)

    def compute(
        self,
        amount: Decimal,
        from_role: str,
        to_role: str,
        from_currency: str,
        to_currency: str,
    ) -> FeeBreakdown:
        corridor = corridor_code(from_role, to_role)
        rule = self.rule_for(corridor)
        amount = Decimal(amount)

        platform = money(rule.platform_flat + amount * rule.platform_percent / 100)
        agent = money(rule.agent_flat + amount * rule.agent_percent / 100)
        network = money(rule.network_flat) if from_currency != to_currency else money(0)

        return FeeBreakdown(
            platform_fee=platform,
            agent_fee=agent,
            network_fee=network,
            currency=from_currency.upper(),
            corridor=corridor,
        )
