"""
Value types shared across the pipeline: quotes, pricing inputs, greeks,
solver results, plus the calendar helpers that turn dates into the
year fractions the pricer works in.

Everything here is immutable. A quote update produces a new OptionQuote,
a re-solve produces a new ImpliedVolatilityResult; nothing is patched in
place.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Iterable, Optional

import pandas as pd

from . import config
from .exceptions import InvalidPricingInput


class ContractType(str, Enum):
    CALL = "call"
    PUT = "put"

    @classmethod
    def parse(cls, value) -> "ContractType":
        """Accept a ContractType or any of "c", "call", "p", "put" (any case)."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        if key in ("c", "call"):
            return cls.CALL
        if key in ("p", "put"):
            return cls.PUT
        raise ValueError(f"Unknown contract type: {value!r}. Use 'call' or 'put'.")

    @property
    def is_call(self) -> bool:
        return self is ContractType.CALL


# ════════════════════════════════════════════════════════════════════════
#  CALENDAR
# ════════════════════════════════════════════════════════════════════════

def ensure_utc(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def expiry_datetime(expiration: date) -> datetime:
    """Expiration instant: the expiration date at config.EXPIRY_HOUR_UTC."""
    return datetime(expiration.year, expiration.month, expiration.day,
                    config.EXPIRY_HOUR_UTC, tzinfo=timezone.utc)


def year_fraction(t0: datetime, t1: datetime) -> float:
    """Convert timedelta to year-fraction (ACT/365.25)."""
    return (ensure_utc(t1) - ensure_utc(t0)).total_seconds() / (config.DAYS_PER_YEAR * 24 * 3600)


def time_to_expiry(expiration: date, as_of: datetime) -> float:
    """Years from ``as_of`` to expiry. Zero or negative once the contract has expired."""
    return year_fraction(as_of, expiry_datetime(expiration))


def as_of_bucket(ts: datetime, bucket_seconds: Optional[int] = None) -> datetime:
    """
    Floor a timestamp to the start of its as-of bucket.

    Quotes whose timestamps fall in the same bucket are considered
    simultaneous; cache keys and surface snapshots are built per bucket.
    """
    if bucket_seconds is None:
        bucket_seconds = config.AS_OF_BUCKET_SECONDS
    if bucket_seconds <= 0:
        raise ValueError(f"bucket_seconds must be positive, got {bucket_seconds}")
    epoch = ensure_utc(ts).timestamp()
    floored = math.floor(epoch / bucket_seconds) * bucket_seconds
    return datetime.fromtimestamp(floored, tz=timezone.utc)


# ════════════════════════════════════════════════════════════════════════
#  OCC CONTRACT SYMBOLS
# ════════════════════════════════════════════════════════════════════════

_OCC_RE = re.compile(r"^(?P<root>[A-Z0-9.]{1,6})(?P<date>\d{6})(?P<type>[CP])(?P<strike>\d{8})$")


def occ_symbol(underlying: str, expiration: date, contract_type, strike: float) -> str:
    """
    Build an OCC option symbol: ROOT + YYMMDD + C/P + strike*1000 (8 digits).

    Example: occ_symbol("AAPL", date(2021, 1, 15), "call", 125) -> "AAPL210115C00125000"
    """
    kind = "C" if ContractType.parse(contract_type).is_call else "P"
    return f"{underlying.upper()}{expiration:%y%m%d}{kind}{int(round(strike * 1000)):08d}"


def parse_occ_symbol(symbol: str):
    """
    Inverse of occ_symbol.

    Returns
    -------
    (underlying, expiration, contract_type, strike)

    Raises
    ------
    ValueError : if the symbol is not a well-formed OCC symbol
    """
    match = _OCC_RE.match(symbol.strip().upper())
    if match is None:
        raise ValueError(f"Malformed OCC symbol: {symbol!r}")
    expiration = datetime.strptime(match["date"], "%y%m%d").date()
    contract_type = ContractType.CALL if match["type"] == "C" else ContractType.PUT
    strike = int(match["strike"]) / 1000.0
    return match["root"], expiration, contract_type, strike


# ════════════════════════════════════════════════════════════════════════
#  QUOTES
# ════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class OptionQuote:
    """
    A two-sided quote for one option contract.

    Crossed (bid > ask) and empty markets are representable because feeds
    emit them; ``has_valid_market`` is false for those and the surface
    builder skips them instead of pricing them.
    """

    underlying: str
    contract_symbol: str
    strike: float
    expiration: date
    contract_type: ContractType
    bid: Optional[float]
    ask: Optional[float]
    timestamp: datetime
    bid_size: int = 0
    ask_size: int = 0

    def __post_init__(self):
        object.__setattr__(self, "contract_type", ContractType.parse(self.contract_type))
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))
        if isinstance(self.expiration, datetime):
            object.__setattr__(self, "expiration", self.expiration.date())

        if not (math.isfinite(self.strike) and self.strike > 0):
            raise InvalidPricingInput("strike", self.strike)
        for name in ("bid", "ask"):
            px = getattr(self, name)
            if px is not None and not (math.isfinite(px) and px >= 0):
                raise InvalidPricingInput(name, px, "must be non-negative and finite")
        if self.expiration < self.timestamp.date():
            raise InvalidPricingInput(
                "expiration", self.expiration,
                f"precedes quote timestamp {self.timestamp.date()}",
            )

    @classmethod
    def from_occ(cls, contract_symbol: str, bid: Optional[float], ask: Optional[float],
                 timestamp: datetime, bid_size: int = 0, ask_size: int = 0) -> "OptionQuote":
        """Build a quote whose contract fields are parsed from an OCC symbol."""
        underlying, expiration, contract_type, strike = parse_occ_symbol(contract_symbol)
        return cls(
            underlying=underlying,
            contract_symbol=contract_symbol.strip().upper(),
            strike=strike,
            expiration=expiration,
            contract_type=contract_type,
            bid=bid,
            ask=ask,
            timestamp=timestamp,
            bid_size=bid_size,
            ask_size=ask_size,
        )

    @property
    def is_crossed(self) -> bool:
        return self.bid is not None and self.ask is not None and self.bid > self.ask

    @property
    def has_valid_market(self) -> bool:
        """Both sides present, non-zero, and not crossed."""
        return (self.bid is not None and self.ask is not None
                and self.bid > 0 and self.ask > 0 and self.bid <= self.ask)

    @property
    def mid(self) -> Optional[float]:
        if not self.has_valid_market:
            return None
        return 0.5 * (self.bid + self.ask)

    @property
    def spread(self) -> Optional[float]:
        if self.bid is None or self.ask is None:
            return None
        return self.ask - self.bid


def quotes_to_frame(quotes: Iterable[OptionQuote]) -> pd.DataFrame:
    """Flatten quotes into a DataFrame, one row per contract."""
    rows = [{
        "underlying": q.underlying,
        "contract_symbol": q.contract_symbol,
        "option_type": q.contract_type.value,
        "strike": q.strike,
        "expiry": q.expiration,
        "bid": q.bid,
        "ask": q.ask,
        "mid": q.mid,
        "bid_size": q.bid_size,
        "ask_size": q.ask_size,
        "timestamp": q.timestamp,
    } for q in quotes]
    columns = ["underlying", "contract_symbol", "option_type", "strike", "expiry",
               "bid", "ask", "mid", "bid_size", "ask_size", "timestamp"]
    return pd.DataFrame(rows, columns=columns)


# ════════════════════════════════════════════════════════════════════════
#  PRICING TYPES
# ════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PricingInput:
    """Everything the solver needs for one contract, derived from a quote."""

    quote: OptionQuote
    spot: float
    risk_free_rate: float
    time_to_expiry: float
    observed_price: float

    @classmethod
    def from_quote(cls, quote: OptionQuote, spot: float, risk_free_rate: float,
                   as_of: datetime) -> "PricingInput":
        """
        Raises
        ------
        InvalidPricingInput : expired contract (time_to_expiry <= 0) or no usable mid
        """
        T = time_to_expiry(quote.expiration, as_of)
        if T <= 0:
            raise InvalidPricingInput("time_to_expiry", T, "contract has expired")
        mid = quote.mid
        if mid is None:
            raise InvalidPricingInput("observed_price", None, "quote has no valid two-sided market")
        return cls(quote=quote, spot=spot, risk_free_rate=risk_free_rate,
                   time_to_expiry=T, observed_price=mid)


@dataclass(frozen=True)
class Greeks:
    delta: float
    gamma: float
    theta: float    # per year
    vega: float     # per 1.00 of vol
    rho: float      # per 1.00 of rate


@dataclass(frozen=True)
class PriceAndGreeks:
    price: float
    greeks: Greeks


@dataclass(frozen=True)
class ImpliedVolatilityResult:
    """
    Outcome of one implied vol solve.

    ``converged`` false means the solver ran out of iterations or the
    target sat outside the vol bracket; ``volatility`` is then the last
    iterate and callers decide whether to keep it.
    """

    volatility: float
    iterations: int
    converged: bool
    strike: float
    contract_type: ContractType
    observed_price: float
    spot: float
    time_to_expiry: float
    residual: float
    delta: float = math.nan
    vega: float = math.nan
    contract_symbol: Optional[str] = None
    expiration: Optional[date] = field(default=None)

    @property
    def total_variance(self) -> float:
        return self.volatility ** 2 * self.time_to_expiry
