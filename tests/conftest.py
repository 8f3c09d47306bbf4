"""
Shared test fixtures and pytest configuration.
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from volsurf.black_scholes import bs_price
from volsurf.models import ContractType, OptionQuote, occ_symbol, time_to_expiry
from volsurf.surface_builder import build_surface


# mid-session snapshot, 30s into its one-minute as-of bucket
AS_OF = datetime(2024, 1, 2, 15, 0, 30, tzinfo=timezone.utc)
SPOT = 100.0
RATE = 0.03


def smile_vol(strike: float, days: int) -> float:
    """Downward skew that flattens with maturity."""
    return 0.20 + 0.002 * (SPOT - strike) * 30.0 / days + 0.0001 * days


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def set_random_seed():
    """Ensure test reproducibility."""
    np.random.seed(42)
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture
def make_quote():
    """
    Factory for quotes priced off ``smile_vol`` with a 1% half spread,
    unless bid/ask are given explicitly.
    """

    def _make(strike, days, contract_type=None, vol=None, bid=None, ask=None,
              timestamp=AS_OF, underlying="SPY"):
        if contract_type is None:
            contract_type = "put" if strike < SPOT else "call"
        expiration = timestamp.date() + timedelta(days=days)
        if bid is None and ask is None:
            T = time_to_expiry(expiration, timestamp)
            sigma = smile_vol(strike, days) if vol is None else vol
            price = bs_price(SPOT, strike, T, RATE, sigma, contract_type)
            bid, ask = price * 0.99, price * 1.01
        return OptionQuote(
            underlying=underlying,
            contract_symbol=occ_symbol(underlying, expiration, contract_type, strike),
            strike=float(strike),
            expiration=expiration,
            contract_type=ContractType.parse(contract_type),
            bid=bid,
            ask=ask,
            timestamp=timestamp,
        )

    return _make


@pytest.fixture
def chain(make_quote):
    """Out-of-the-money chain: 5 strikes x 3 expiries."""
    return [make_quote(k, d) for d in (30, 60, 91) for k in (90.0, 95.0, 100.0, 105.0, 110.0)]


@pytest.fixture
def surface(chain):
    return build_surface("SPY", chain, SPOT, RATE, AS_OF)
