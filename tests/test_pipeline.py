"""
Tests for quote sources, the retrying fetch boundary and SurfaceService.
"""

import asyncio
import math
from datetime import timedelta
from types import SimpleNamespace

import pandas as pd
import pytest
from tenacity import wait_none

from volsurf import data_feed
from volsurf.data_feed import (
    ConstantRateProvider,
    ConstantSpotProvider,
    SyntheticQuoteSource,
    YFinanceQuoteSource,
    fetch_with_limits,
    spot_with_limits,
)
from volsurf.exceptions import FeedRateLimited, FeedUnavailable, InvalidPricingInput, RateLimitTimeout
from volsurf.pipeline import SurfaceService
from volsurf.rate_limiter import RateLimiter
from volsurf.svi_calibration import reduced_form_vol

from conftest import AS_OF, RATE, SPOT


class FakeSource:
    """Serves a fixed chain per underlying; failures are scripted per call."""

    def __init__(self, chains, failures=None, delay=0.0):
        self.chains = chains
        self.failures = dict(failures or {})
        self.delay = delay
        self.calls = []

    async def fetch_quotes(self, underlying, as_of):
        self.calls.append(underlying)
        if self.delay:
            await asyncio.sleep(self.delay)
        pending = self.failures.get(underlying)
        if pending:
            raise pending.pop(0)
        return list(self.chains[underlying])


def fast_limiter():
    return RateLimiter(rate=1000.0, capacity=100)


class TestFetchWithLimits:

    @pytest.mark.asyncio
    async def test_retries_feed_errors(self, chain):
        source = FakeSource({"SPY": chain},
                            failures={"SPY": [FeedUnavailable("503"), FeedRateLimited("429")]})
        quotes = await fetch_with_limits(source, fast_limiter(), "SPY", AS_OF, wait=wait_none())
        assert len(quotes) == len(chain)
        assert source.calls == ["SPY"] * 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, chain):
        source = FakeSource({"SPY": chain}, failures={"SPY": [FeedUnavailable(str(i)) for i in range(5)]})
        with pytest.raises(FeedUnavailable):
            await fetch_with_limits(source, fast_limiter(), "SPY", AS_OF, max_attempts=3, wait=wait_none())
        assert len(source.calls) == 3

    @pytest.mark.asyncio
    async def test_each_attempt_takes_a_token(self, chain, clock):
        limiter = RateLimiter(rate=1.0, capacity=2, clock=clock)
        source = FakeSource({"SPY": chain}, failures={"SPY": [FeedUnavailable("503")]})
        await fetch_with_limits(source, limiter, "SPY", AS_OF, wait=wait_none())
        assert limiter.available == 0.0

    @pytest.mark.asyncio
    async def test_rate_limit_timeout_not_retried(self, chain, clock):
        limiter = RateLimiter(rate=0.01, capacity=1, clock=clock)
        await limiter.acquire()
        source = FakeSource({"SPY": chain})
        with pytest.raises(RateLimitTimeout):
            await fetch_with_limits(source, limiter, "SPY", AS_OF, acquire_timeout=0.1, wait=wait_none())
        assert source.calls == []


class TestProviders:

    @pytest.mark.asyncio
    async def test_rate_must_be_finite(self):
        assert await ConstantRateProvider(0.05).rate(AS_OF) == 0.05
        with pytest.raises(InvalidPricingInput):
            await ConstantRateProvider(float("nan")).rate(AS_OF)

    @pytest.mark.asyncio
    async def test_spot_provider(self):
        provider = ConstantSpotProvider(default=100.0, spots={"qqq": 400.0})
        assert await provider.spot("QQQ", AS_OF) == 400.0
        assert await provider.spot("SPY", AS_OF) == 100.0
        with pytest.raises(InvalidPricingInput):
            await ConstantSpotProvider().spot("SPY", AS_OF)


class TestSyntheticSource:

    def test_quotes_share_one_snapshot(self):
        source = SyntheticQuoteSource(spot=600.0, expiry_days=(30, 91))
        quotes = source.generate("spy", AS_OF)
        assert quotes
        assert {q.timestamp for q in quotes} == {AS_OF}
        assert {q.underlying for q in quotes} == {"SPY"}
        assert all(q.contract_type.value == ("put" if q.strike < 600.0 else "call") for q in quotes)

    def test_reproducible(self):
        a = SyntheticQuoteSource(seed=7, expiry_days=(30,)).generate("SPY", AS_OF)
        b = SyntheticQuoteSource(seed=7, expiry_days=(30,)).generate("SPY", AS_OF)
        assert a == b

    @pytest.mark.asyncio
    async def test_surface_recovers_generating_smile(self):
        source = SyntheticQuoteSource(spot=600.0, expiry_days=(30, 91), noise_std=0.0, risk_free_rate=RATE)
        service = SurfaceService(source, rate_provider=ConstantRateProvider(RATE), limiter=fast_limiter())
        surface = await service.get_surface("SPY", AS_OF)

        expiration = surface.expirations[0]
        smile = surface.smile(expiration)
        atm = smile.iloc[(smile["strike"] - 600.0).abs().argmin()]
        T = surface.time_to_expiry(expiration)
        assert atm["iv"] == pytest.approx(reduced_form_vol(math.log(atm["strike"] / 600.0), T), abs=1e-3)


class TestSurfaceService:

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_build(self, chain):
        source = FakeSource({"SPY": chain}, delay=0.01)
        service = SurfaceService(source, spot_provider=ConstantSpotProvider(SPOT),
                                 rate_provider=ConstantRateProvider(RATE), limiter=fast_limiter())
        results = await asyncio.gather(*(
            service.get_surface("SPY", AS_OF + timedelta(seconds=i)) for i in range(5)
        ))
        assert source.calls == ["SPY"]
        assert all(r is results[0] for r in results)
        assert len(results[0]) == 15

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self, chain, make_quote):
        qqq_chain = [make_quote(q.strike, (q.expiration - AS_OF.date()).days, underlying="QQQ") for q in chain]
        source = FakeSource(
            {"SPY": chain, "QQQ": qqq_chain, "BAD": []},
            failures={"BAD": [FeedUnavailable("down")] * 3},
        )
        service = SurfaceService(source, spot_provider=ConstantSpotProvider(SPOT),
                                 rate_provider=ConstantRateProvider(RATE),
                                 limiter=fast_limiter(), retry_wait=wait_none())
        results = await service.build_many(["SPY", "bad", "QQQ"], AS_OF)

        assert list(results) == ["SPY", "BAD", "QQQ"]
        assert isinstance(results["BAD"], FeedUnavailable)
        assert len(results["SPY"]) == 15
        assert len(results["QQQ"]) == 15

    @pytest.mark.asyncio
    async def test_failed_build_is_retried_later(self, chain):
        source = FakeSource({"SPY": chain}, failures={"SPY": [FeedUnavailable("down")] * 3})
        service = SurfaceService(source, spot_provider=ConstantSpotProvider(SPOT),
                                 rate_provider=ConstantRateProvider(RATE),
                                 limiter=fast_limiter(), retry_wait=wait_none())
        with pytest.raises(FeedUnavailable):
            await service.get_surface("SPY", AS_OF)
        surface = await service.get_surface("SPY", AS_OF)
        assert len(surface) == 15

    @pytest.mark.asyncio
    async def test_caller_timeout_leaves_nothing_cached(self, chain):
        source = FakeSource({"SPY": chain}, delay=1.0)
        service = SurfaceService(source, spot_provider=ConstantSpotProvider(SPOT),
                                 rate_provider=ConstantRateProvider(RATE), limiter=fast_limiter())
        with pytest.raises(asyncio.TimeoutError):
            await service.get_surface("SPY", AS_OF, timeout=0.05)
        await asyncio.sleep(0)
        assert len(service.surface_cache) == 0
        assert service.surface_cache.stats()["inflight"] == 0

    def test_needs_spot_provider(self, chain):
        with pytest.raises(ValueError):
            SurfaceService(FakeSource({"SPY": chain}))


class FakeTicker:
    """Stands in for yfinance.Ticker; records each HTTP-backed call."""

    expiries = ("2024-02-01", "2024-03-01", "2024-04-01")

    def __init__(self):
        self.requests = []

    def history(self, period):
        self.requests.append("history")
        return pd.DataFrame({"Close": [SPOT - 1.0, SPOT]})

    @property
    def options(self):
        self.requests.append("options")
        return self.expiries

    def option_chain(self, expiry):
        self.requests.append(expiry)
        rows = pd.DataFrame({
            "strike": [95.0, 100.0, 105.0],
            "bid": [1.0, 2.5, 1.0],
            "ask": [1.1, 2.7, 1.1],
            "openInterest": [500, 800, 500],
            "volume": [50, 90, 50],
        })
        return SimpleNamespace(puts=rows, calls=rows)


@pytest.fixture
def ticker(monkeypatch):
    tk = FakeTicker()
    monkeypatch.setattr(data_feed, "_import_yfinance", lambda: SimpleNamespace(Ticker=lambda symbol: tk))
    return tk


class TestYFinanceMetering:

    @pytest.mark.asyncio
    async def test_every_request_takes_a_token(self, ticker, clock):
        limiter = RateLimiter(rate=1.0, capacity=10, clock=clock)
        source = YFinanceQuoteSource(n_expiries=2, limiter=limiter)
        quotes = await fetch_with_limits(source, limiter, "SPY", AS_OF, wait=wait_none())

        assert ticker.requests == ["history", "options", "2024-02-01", "2024-03-01"]
        assert limiter.available == pytest.approx(6.0)
        assert len(quotes) == 12
        assert {q.timestamp for q in quotes} == {AS_OF}

    @pytest.mark.asyncio
    async def test_unmetered_source_costs_one_token_per_attempt(self, ticker, clock):
        limiter = RateLimiter(rate=1.0, capacity=10, clock=clock)
        await fetch_with_limits(YFinanceQuoteSource(n_expiries=2), limiter, "SPY", AS_OF, wait=wait_none())
        assert limiter.available == pytest.approx(9.0)

    @pytest.mark.asyncio
    async def test_spot_is_metered(self, ticker, clock):
        limiter = RateLimiter(rate=1.0, capacity=10, clock=clock)
        source = YFinanceQuoteSource(limiter=limiter)
        assert await spot_with_limits(source, limiter, "SPY", AS_OF) == SPOT
        assert limiter.available == pytest.approx(9.0)

    @pytest.mark.asyncio
    async def test_request_failure_becomes_feed_error(self, ticker, clock, monkeypatch):
        def broken(expiry):
            raise ConnectionError("reset by peer")

        monkeypatch.setattr(ticker, "option_chain", broken)
        source = YFinanceQuoteSource(n_expiries=1, limiter=RateLimiter(rate=1.0, capacity=10, clock=clock))
        with pytest.raises(FeedUnavailable):
            await source.fetch_quotes("SPY", AS_OF)

    @pytest.mark.asyncio
    async def test_service_meters_spot_lookup(self, chain, clock):
        limiter = RateLimiter(rate=1.0, capacity=10, clock=clock)
        service = SurfaceService(FakeSource({"SPY": chain}), spot_provider=ConstantSpotProvider(SPOT),
                                 rate_provider=ConstantRateProvider(RATE), limiter=limiter)
        surface = await service.get_surface("SPY", AS_OF)
        assert len(surface) == 15
        assert limiter.available == pytest.approx(8.0)
