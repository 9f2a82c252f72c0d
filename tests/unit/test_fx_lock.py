"""Unit tests for FX quotes and rate locks."""

from datetime import timedelta
from decimal import Decimal

import pytest

from remitcore.core.errors import ErrorKind, Failure
from remitcore.core.fx_lock import FxRateLockService, MidRate


@pytest.fixture
def fx(db_session, settings, clock) -> FxRateLockService:
    return FxRateLockService(db_session, settings, clock)


def test_spread_is_split_around_mid():
    rate = MidRate("USD", "HTG", Decimal("132.50"), 150, "static")
    assert rate.buy == Decimal("131.506250")
    assert rate.sell == Decimal("133.493750")


@pytest.mark.asyncio
async def test_lock_uses_static_rate_and_ttl(fx, clock):
    rate_lock = await fx.lock("usd", "htg")

    assert not isinstance(rate_lock, Failure)
    assert rate_lock.from_currency == "USD"
    assert rate_lock.to_currency == "HTG"
    assert rate_lock.buy == Decimal("131.506250")
    assert rate_lock.lock_expires_at == clock() + timedelta(seconds=45)
    assert fx.seconds_remaining(rate_lock, clock()) == 45


@pytest.mark.asyncio
async def test_lock_validity_is_strict_at_expiry(fx, clock):
    rate_lock = await fx.lock("USD", "HTG")
    start = clock()

    assert fx.is_valid(rate_lock, start + timedelta(seconds=44))
    assert not fx.is_valid(rate_lock, start + timedelta(seconds=45))
    assert not fx.is_valid(rate_lock, start + timedelta(seconds=46))
    assert fx.seconds_remaining(rate_lock, start + timedelta(seconds=60)) == 0


@pytest.mark.asyncio
async def test_consumed_lock_is_invalid(fx, clock):
    rate_lock = await fx.lock("USD", "HTG")
    fx.consume(rate_lock, clock())
    assert not fx.is_valid(rate_lock, clock())


@pytest.mark.asyncio
async def test_inverse_pair_is_derived(fx):
    rate = await fx.get_mid_rate("HTG", "USD")
    assert rate is not None
    assert rate.source == "static:inverse"
    assert rate.mid == Decimal("0.007547")


@pytest.mark.asyncio
async def test_unknown_pair_is_unavailable(fx):
    result = await fx.lock("USD", "EUR")
    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.RATE_UNAVAILABLE

    quote = await fx.quote("USD", "EUR")
    assert isinstance(quote, Failure)


@pytest.mark.asyncio
async def test_published_rate_overrides_static(fx):
    await fx.set_rate("USD", "HTG", Decimal("140"), spread_bps=100)
    await fx.set_rate("USD", "HTG", Decimal("141"), spread_bps=100)

    rate = await fx.get_mid_rate("USD", "HTG")
    assert rate.mid == Decimal("141.000000")
    assert rate.source == "admin"

    quote = await fx.quote("USD", "HTG")
    assert quote["mid"] == "141.000000"
    assert quote["buy"] == "140.295000"
    assert quote["lock_ttl_seconds"] == 45
