"""FX rate quotes and rate locks."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from remitcore.config import Settings, get_settings
from remitcore.core.errors import ErrorKind, Failure, Outcome
from remitcore.database import utcnow
from remitcore.models.fx import FxRate, RateLock

logger = logging.getLogger(__name__)

RATE_PLACES = Decimal("0.000001")


def quantize_rate(value: Decimal) -> Decimal:
    return Decimal(value).quantize(RATE_PLACES, ROUND_HALF_UP)


@dataclass(frozen=True)
class MidRate:
    from_currency: str
    to_currency: str
    mid: Decimal
    spread_bps: int
    source: str

    @property
    def buy(self) -> Decimal:
        """Rate the customer receives when converting from -> to."""
        return quantize_rate(self.mid * (1 - Decimal(self.spread_bps) / Decimal(20000)))

    @property
    def sell(self) -> Decimal:
        return quantize_rate(self.mid * (1 + Decimal(self.spread_bps) / Decimal(20000)))


class FxRateLockService:
    """Produces short-lived rate locks.

    The lock is advisory for the UI countdown but load-bearing for confirm,
    which must call ``is_valid`` itself.
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

    async def get_mid_rate(self, from_currency: str, to_currency: str) -> Optional[MidRate]:
        """Resolve the mid rate: published rate, static config, then inverse pair."""
        from_currency, to_currency = from_currency.upper(), to_currency.upper()

        published = await self._published_rate(from_currency, to_currency)
        if published is not None:
            return MidRate(
                from_currency, to_currency, Decimal(published.mid), published.spread_bps, published.source
            )

        static = self.settings.fx_static_mid_rates.get(f"{from_currency}/{to_currency}")
        if static is not None:
            return MidRate(
                from_currency, to_currency, Decimal(str(static)),
                self.settings.fx_default_spread_bps, "static",
            )

        inverse = await self._published_rate(to_currency, from_currency)
        if inverse is not None:
            return MidRate(
                from_currency, to_currency, quantize_rate(1 / Decimal(inverse.mid)),
                inverse.spread_bps, f"{inverse.source}:inverse",
            )

        static_inverse = self.settings.fx_static_mid_rates.get(f"{to_currency}/{from_currency}")
        if static_inverse is not None:
            return MidRate(
                from_currency, to_currency, quantize_rate(1 / Decimal(str(static_inverse))),
                self.settings.fx_default_spread_bps, "static:inverse",
            )

        return None

    async def quote(self, from_currency: str, to_currency: str) -> Outcome[dict]:
        """Preview a rate without locking it."""
        rate = await self.get_mid_rate(from_currency, to_currency)
        if rate is None:
            return Failure(
                ErrorKind.RATE_UNAVAILABLE,
                f"Exchange rate unavailable for {from_currency.upper()}->{to_currency.upper()}",
            )
        return {
            "from_currency": rate.from_currency,
            "to_currency": rate.to_currency,
            "mid": str(rate.mid),
            "spread_bps": rate.spread_bps,
            "buy": str(rate.buy),
            "sell": str(rate.sell),
            "source": rate.source,
            "lock_ttl_seconds": self.settings.fx_lock_ttl_seconds,
        }

    async def lock(self, from_currency: str, to_currency: str) -> Outcome[RateLock]:
        """Lock the current rate for ``fx_lock_ttl_seconds``."""
        rate = await self.get_mid_rate(from_currency, to_currency)
        if rate is None:
            logger.warning(f"No FX rate configured for {from_currency}->{to_currency}")
            return Failure(
                ErrorKind.RATE_UNAVAILABLE,
                f"Exchange rate unavailable for {from_currency.upper()}->{to_currency.upper()}",
            )

        now = self.clock()
        rate_lock = RateLock(
            from_currency=rate.from_currency,
            to_currency=rate.to_currency,
            mid=quantize_rate(rate.mid),
            spread_bps=rate.spread_bps,
            buy=rate.buy,
            sell=rate.sell,
            locked_at=now,
            lock_expires_at=now + timedelta(seconds=self.settings.fx_lock_ttl_seconds),
        )
        self.db.add(rate_lock)
        await self.db.flush()
        logger.info(
            f"Locked {rate.from_currency}->{rate.to_currency} at {rate.buy} "
            f"until {rate_lock.lock_expires_at.isoformat()} ({rate_lock.lock_id})"
        )
        return rate_lock

    async def get_lock(self, lock_id: str) -> Optional[RateLock]:
        result = await self.db.execute(select(RateLock).where(RateLock.lock_id == lock_id))
        return result.scalar_one_or_none()

    @staticmethod
    def is_valid(rate_lock: RateLock, now: datetime) -> bool:
        """Pure expiry check; a consumed lock is no longer valid."""
        return rate_lock.consumed_at is None and now < rate_lock.lock_expires_at

    @staticmethod
    def seconds_remaining(rate_lock: RateLock, now: datetime) -> int:
        remaining = (rate_lock.lock_expires_at - now).total_seconds()
        return max(0, int(remaining))

    def consume(self, rate_lock: RateLock, now: datetime) -> None:
        rate_lock.consumed_at = now

    async def set_rate(
        self,
        from_currency: str,
        to_currency: str,
        mid: Decimal,
        spread_bps: Optional[int] = None,
        source: str = "admin",
    ) -> FxRate:
        """Publish a new active rate, retiring the previous one for the pair."""
        from_currency, to_currency = from_currency.upper(), to_currency.upper()
        await self.db.execute(
            update(FxRate)
            .where(
                FxRate.from_currency == from_currency,
                FxRate.to_currency == to_currency,
                FxRate.active.is_(True),
            )
            .values(active=False)
        )
        rate = FxRate(
            from_currency=from_currency,
            to_currency=to_currency,
            mid=quantize_rate(mid),
            spread_bps=spread_bps if spread_bps is not None else self.settings.fx_default_spread_bps,
            active=True,
            source=source,
            created_at=self.clock(),
        )
        self.db.add(rate)
        await self.db.flush()
        logger.info(f"Published FX rate {from_currency}->{to_currency} mid={rate.mid} ({source})")
        return rate

    async def _published_rate(self, from_currency: str, to_currency: str) -> Optional[FxRate]:
        result = await self.db.execute(
            select(FxRate)
            .where(
                FxRate.from_currency == from_currency,
                FxRate.to_currency == to_currency,
                FxRate.active.is_(True),
            )
            .order_by(FxRate.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
