"""
Quote sources and the rate-limited, retrying fetch boundary.

Two sources implement the same async contract:
    1. Synthetic: SVI-shaped smile priced into bid/ask (offline, reproducible)
    2. Live: option chains from yfinance (requires internet + market hours)

Either way, every call to the feed goes through ``fetch_with_limits``:
    - take a token from the shared RateLimiter
    - call the source
    - on FeedUnavailable / FeedRateLimited, back off (exponential + jitter)
      and try again, re-acquiring a token for each attempt

A source that makes several HTTP requests per snapshot (yfinance) holds
the limiter itself and takes a token per request; the fetch boundary
then leaves metering to it. Spot lookups go through ``spot_with_limits``
on the same terms.

Spot and risk-free rate come from small provider objects so a pipeline
can mix, e.g., live quotes with a constant rate.
"""

import asyncio
import functools
import math
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol, Sequence

import numpy as np
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from . import config
from .black_scholes import bs_price
from .exceptions import FeedError, FeedRateLimited, FeedUnavailable, InvalidPricingInput
from .logging_config import get_logger
from .models import ContractType, OptionQuote, ensure_utc, occ_symbol, time_to_expiry
from .rate_limiter import RateLimiter
from .svi_calibration import generate_svi_surface

log = get_logger(__name__)


class QuoteSource(Protocol):
    async def fetch_quotes(self, underlying: str, as_of: datetime) -> List[OptionQuote]:
        """Raises FeedUnavailable / FeedRateLimited on feed failure."""
        ...


class SpotProvider(Protocol):
    async def spot(self, underlying: str, as_of: datetime) -> float: ...


class RateProvider(Protocol):
    async def rate(self, as_of: datetime) -> float: ...


class ConstantRateProvider:
    """Flat risk-free rate, continuously compounded."""

    def __init__(self, rate: float = None) -> None:
        self._rate = config.RISK_FREE_RATE if rate is None else rate

    async def rate(self, as_of: datetime) -> float:
        if self._rate is None or not math.isfinite(self._rate):
            raise InvalidPricingInput("risk_free_rate", self._rate, "must be finite")
        return float(self._rate)


class ConstantSpotProvider:
    """Fixed spot per underlying; ``default`` covers symbols not listed."""

    def __init__(self, default: float = None, spots: dict = None) -> None:
        self.default = default
        self.spots = {k.upper(): v for k, v in (spots or {}).items()}

    async def spot(self, underlying: str, as_of: datetime) -> float:
        value = self.spots.get(underlying.upper(), self.default)
        if value is None or not math.isfinite(value) or value <= 0:
            raise InvalidPricingInput("spot", value)
        return float(value)


# ════════════════════════════════════════════════════════════════════════
#  SYNTHETIC DATA (SVI)
# ════════════════════════════════════════════════════════════════════════

class SyntheticQuoteSource:
    """
    Generate option quotes from the SVI-style smile in svi_calibration.

    This is the default data source: no network dependency, fully
    reproducible, and produces chains that look like real SPY data.
    Each strike is quoted on its out-of-the-money side (``both_sides``
    adds the in-the-money contract too). The mid is the model price, so
    the solved surface recovers the generating smile.

    Parameters
    ----------
    spot : spot price to simulate around
    seed : random seed for the smile noise and sizes (default: config.SEED)
    expiry_days : calendar days from as-of to each expiration
    half_spread : relative half bid/ask spread around the model price
    risk_free_rate : rate used to price the quotes
    """

    def __init__(
        self,
        spot: float = 602.0,
        seed: Optional[int] = None,
        expiry_days: Sequence[int] = None,
        half_spread: float = None,
        risk_free_rate: float = None,
        noise_std: float = None,
        both_sides: bool = False,
    ) -> None:
        self.spot_price = spot
        self.seed = config.SEED if seed is None else seed
        self.expiry_days = tuple(config.SVI_EXPIRY_DAYS if expiry_days is None else expiry_days)
        self.half_spread = config.SVI_HALF_SPREAD if half_spread is None else half_spread
        self.risk_free_rate = config.RISK_FREE_RATE if risk_free_rate is None else risk_free_rate
        self.noise_std = noise_std
        self.both_sides = both_sides

    async def spot(self, underlying: str, as_of: datetime) -> float:
        return self.spot_price

    async def fetch_quotes(self, underlying: str, as_of: datetime) -> List[OptionQuote]:
        return await asyncio.to_thread(self.generate, underlying, as_of)

    def generate(self, underlying: str, as_of: datetime) -> List[OptionQuote]:
        as_of = ensure_utc(as_of)
        S = self.spot_price
        underlying = underlying.upper()

        expirations = [as_of.date() + timedelta(days=d) for d in self.expiry_days]
        expirations = [e for e in expirations if time_to_expiry(e, as_of) > 0]
        T_by_exp = {e: time_to_expiry(e, as_of) for e in expirations}

        grid = generate_svi_surface(
            S=S,
            maturities=np.array(list(T_by_exp.values())),
            seed=self.seed,
            noise_std=self.noise_std,
        )
        exp_by_T = {T: e for e, T in T_by_exp.items()}
        rng = np.random.default_rng(self.seed)

        quotes = []
        for row in grid.itertuples(index=False):
            expiration = exp_by_T[row.T]
            otm = ContractType.PUT if row.strike < S else ContractType.CALL
            sides = (ContractType.PUT, ContractType.CALL) if self.both_sides else (otm,)
            for ctype in sides:
                price = bs_price(S, row.strike, row.T, self.risk_free_rate, row.iv, ctype)
                quotes.append(OptionQuote(
                    underlying=underlying,
                    contract_symbol=occ_symbol(underlying, expiration, ctype, row.strike),
                    strike=row.strike,
                    expiration=expiration,
                    contract_type=ctype,
                    # sub-cent prices quote as an empty bid, like a real chain
                    bid=round(price * (1 - self.half_spread), 4) if price >= 0.01 else 0.0,
                    ask=round(price * (1 + self.half_spread), 4) if price >= 0.01 else 0.01,
                    timestamp=as_of,
                    bid_size=int(rng.integers(1, 500)),
                    ask_size=int(rng.integers(1, 500)),
                ))

        log.debug("synthetic_chain", underlying=underlying, quotes=len(quotes),
                  expiries=len(expirations))
        return quotes


# ════════════════════════════════════════════════════════════════════════
#  LIVE DATA (yfinance)
# ════════════════════════════════════════════════════════════════════════

def _import_yfinance():
    try:
        import yfinance as yf
    except ImportError:
        raise ImportError(
            "yfinance is required for live data. Install with: pip install volsurf[live]\n"
            "Or use --source synthetic for offline mode."
        )
    return yf


def _feed_error(underlying: str, exc: Exception) -> FeedError:
    if "RateLimit" in type(exc).__name__:
        return FeedRateLimited(f"{underlying}: yfinance rate limited ({exc})")
    return FeedUnavailable(f"{underlying}: yfinance request failed ({type(exc).__name__}: {exc})")


def _price_or_none(value) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    return value if math.isfinite(value) else None


class YFinanceQuoteSource:
    """
    Pull option chains from yfinance.

    yfinance is blocking, so every call runs in a worker thread. Quotes
    are stamped with the request's as-of time, so one chain pull always
    lands in one as-of bucket.

    A chain pull is one spot request, one request for the expiry list and
    one per expiry. With a ``limiter`` each of those takes its own token,
    and ``fetch_with_limits`` / ``spot_with_limits`` skip their token for
    a source metered against the same limiter.

    Parameters
    ----------
    n_expiries : how many near-term expiries to fetch (default: config.N_EXPIRIES)
    moneyness_bound : drop strikes with |log(K/S)| above this (default: config.MONEYNESS_BOUND)
    limiter : RateLimiter metering every HTTP request; None leaves metering to the caller
    acquire_timeout : longest wait for a token (default: config.FEED_ACQUIRE_TIMEOUT)
    """

    def __init__(
        self,
        n_expiries: int = None,
        moneyness_bound: float = None,
        limiter: Optional[RateLimiter] = None,
        acquire_timeout: float = None,
    ) -> None:
        self.n_expiries = config.N_EXPIRIES if n_expiries is None else n_expiries
        self.moneyness_bound = config.MONEYNESS_BOUND if moneyness_bound is None else moneyness_bound
        self.limiter = limiter
        self.acquire_timeout = config.FEED_ACQUIRE_TIMEOUT if acquire_timeout is None else acquire_timeout

    async def _request(self, underlying: str, fn: Callable[[], Any]) -> Any:
        if self.limiter is not None:
            await self.limiter.acquire(timeout=self.acquire_timeout)
        try:
            return await asyncio.to_thread(fn)
        except Exception as exc:
            raise _feed_error(underlying, exc) from exc

    async def spot(self, underlying: str, as_of: datetime) -> float:
        tk = _import_yfinance().Ticker(underlying)
        # last 5 days to handle weekends
        hist = await self._request(underlying, lambda: tk.history(period="5d"))
        if hist.empty:
            raise FeedUnavailable(f"Failed to get price data for {underlying}. Check ticker symbol and network.")
        return float(hist["Close"].iloc[-1])

    async def fetch_quotes(self, underlying: str, as_of: datetime) -> List[OptionQuote]:
        as_of = ensure_utc(as_of)
        tk = _import_yfinance().Ticker(underlying)
        spot = await self.spot(underlying, as_of)
        options = await self._request(underlying, lambda: tk.options)
        expiries = list(options)[:self.n_expiries]
        if not expiries:
            raise FeedUnavailable(f"No option expiries found for {underlying}.")

        chains = []
        for expiry in expiries:
            chain = await self._request(underlying, functools.partial(tk.option_chain, expiry))
            chains.append((expiry, chain))
        return await asyncio.to_thread(self._chain_quotes, underlying, as_of, spot, chains)

    def _chain_quotes(self, underlying: str, as_of: datetime, spot: float, chains) -> List[OptionQuote]:
        quotes = []
        for expiry_str, chain in chains:
            expiration = datetime.strptime(expiry_str, "%Y-%m-%d").date()
            for opt_df, opt_type in [(chain.puts, ContractType.PUT), (chain.calls, ContractType.CALL)]:
                for _, row in opt_df.iterrows():
                    K = float(row["strike"])
                    if abs(math.log(K / spot)) > self.moneyness_bound:
                        continue

                    oi = row.get("openInterest", 0) or 0
                    volume = row.get("volume", 0) or 0
                    if oi < config.MIN_OPEN_INTEREST and volume < config.MIN_VOLUME:
                        continue

                    try:
                        quotes.append(OptionQuote(
                            underlying=underlying.upper(),
                            contract_symbol=row.get("contractSymbol") or occ_symbol(underlying, expiration, opt_type, K),
                            strike=K,
                            expiration=expiration,
                            contract_type=opt_type,
                            bid=_price_or_none(row.get("bid")),
                            ask=_price_or_none(row.get("ask")),
                            timestamp=as_of,
                        ))
                    except InvalidPricingInput as exc:
                        log.debug("quote_rejected", underlying=underlying, strike=K,
                                  expiry=expiry_str, detail=str(exc))

        if not quotes:
            raise FeedUnavailable(
                f"No usable quotes for {underlying}. Market may be closed or filters are too strict."
            )
        return quotes


# ════════════════════════════════════════════════════════════════════════
#  RATE-LIMITED FETCH
# ════════════════════════════════════════════════════════════════════════

def _meters_itself(source, limiter: RateLimiter) -> bool:
    return getattr(source, "limiter", None) is limiter


async def spot_with_limits(
    provider: SpotProvider,
    limiter: RateLimiter,
    underlying: str,
    as_of: datetime,
    acquire_timeout: float = None,
) -> float:
    """Spot for ``underlying``, taking one token from ``limiter`` unless the provider meters itself."""
    if acquire_timeout is None:
        acquire_timeout = config.FEED_ACQUIRE_TIMEOUT
    if not _meters_itself(provider, limiter):
        await limiter.acquire(timeout=acquire_timeout)
    return await provider.spot(underlying, as_of)


async def fetch_with_limits(
    source: QuoteSource,
    limiter: RateLimiter,
    underlying: str,
    as_of: datetime,
    max_attempts: int = None,
    acquire_timeout: float = None,
    wait=None,
) -> List[OptionQuote]:
    """
    Fetch one quote snapshot through the shared rate limiter, retrying feed errors.

    Parameters
    ----------
    source : QuoteSource to call
    limiter : shared RateLimiter; one token per attempt, or one per request
        when the source meters itself against it
    max_attempts : total attempts (default: config.FEED_MAX_RETRIES)
    acquire_timeout : longest wait for a token (default: config.FEED_ACQUIRE_TIMEOUT)
    wait : tenacity wait strategy (default: exponential backoff with jitter)

    Raises
    ------
    RateLimitTimeout : no token within ``acquire_timeout`` (not retried here)
    FeedUnavailable / FeedRateLimited : the last attempt's feed error
    """
    if max_attempts is None:
        max_attempts = config.FEED_MAX_RETRIES
    if acquire_timeout is None:
        acquire_timeout = config.FEED_ACQUIRE_TIMEOUT
    if wait is None:
        wait = wait_exponential_jitter(
            initial=config.FEED_RETRY_INITIAL,
            max=config.FEED_RETRY_MAX,
            jitter=config.FEED_RETRY_JITTER,
        )

    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(FeedError),
        stop=stop_after_attempt(max_attempts),
        wait=wait,
        reraise=True,
    ):
        with attempt:
            waited = 0.0 if _meters_itself(source, limiter) else await limiter.acquire(timeout=acquire_timeout)
            log.debug(
                "quote_fetch",
                underlying=underlying,
                attempt=attempt.retry_state.attempt_number,
                rate_wait_s=round(waited, 4),
            )
            try:
                quotes = await source.fetch_quotes(underlying, as_of)
            except FeedError as exc:
                log.warning("quote_fetch_failed", underlying=underlying,
                            attempt=attempt.retry_state.attempt_number,
                            error=type(exc).__name__, detail=str(exc))
                raise
            log.info("quote_fetch", underlying=underlying, quotes=len(quotes))
            return quotes

    # Should not be reached, but satisfies type checker
    raise FeedUnavailable(f"{underlying}: fetch failed after retries")  # pragma: no cover
