"""
SurfaceService: the end-to-end pipeline for many underlyings at once.

    QuoteSource -> RateLimiter-gated fetch -> QuoteCache
    SpotProvider -> RateLimiter-gated lookup
        -> build_surface (worker thread) -> SurfaceCache

One asyncio task per underlying. The limiter and the two caches are the
only shared state and are owned by the service instance. A build that
is cancelled or times out sets its cancel event so the worker thread
stops at the next contract, and nothing is cached for it.
"""

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Tuple, Union

from . import config
from .cache import QuoteCache
from .data_feed import (
    ConstantRateProvider,
    QuoteSource,
    RateProvider,
    SpotProvider,
    fetch_with_limits,
    spot_with_limits,
)
from .logging_config import get_logger
from .models import OptionQuote, ensure_utc
from .persistence import SurfaceCache
from .rate_limiter import RateLimiter
from .surface_builder import VolatilitySurface, build_surface

log = get_logger(__name__)


class SurfaceService:
    """
    Parameters
    ----------
    source : QuoteSource for option chains
    spot_provider : SpotProvider; defaults to ``source`` when it implements ``spot``
    rate_provider : RateProvider (default: ConstantRateProvider())
    limiter, quote_cache, surface_cache : shared state; fresh defaults when omitted
    dividend_yield : passed to the pricer (default: config.DIVIDEND_YIELD)
    moneyness_bound : strike filter for builds, None keeps every strike
    fetch_attempts, retry_wait : forwarded to fetch_with_limits
    """

    def __init__(
        self,
        source: QuoteSource,
        spot_provider: Optional[SpotProvider] = None,
        rate_provider: Optional[RateProvider] = None,
        limiter: Optional[RateLimiter] = None,
        quote_cache: Optional[QuoteCache] = None,
        surface_cache: Optional[SurfaceCache] = None,
        dividend_yield: float = None,
        moneyness_bound: Optional[float] = None,
        fetch_attempts: int = None,
        retry_wait=None,
    ) -> None:
        if spot_provider is None:
            if not hasattr(source, "spot"):
                raise ValueError("source has no spot(); pass a spot_provider")
            spot_provider = source
        self.source = source
        self.spot_provider = spot_provider
        self.rate_provider = rate_provider or ConstantRateProvider()
        self.limiter = limiter or RateLimiter()
        self.quote_cache = quote_cache or QuoteCache()
        self.surface_cache = surface_cache or SurfaceCache()
        self.dividend_yield = config.DIVIDEND_YIELD if dividend_yield is None else dividend_yield
        self.moneyness_bound = moneyness_bound
        self.fetch_attempts = fetch_attempts
        self.retry_wait = retry_wait

    async def quotes(self, underlying: str, as_of: datetime) -> Tuple[OptionQuote, ...]:
        """Quote snapshot for (underlying, bucket of as_of), fetched at most once per bucket."""
        key = self.quote_cache.key_for(underlying, as_of)
        return await self.quote_cache.get_or_fetch(
            key,
            lambda: fetch_with_limits(
                self.source, self.limiter, underlying, as_of,
                max_attempts=self.fetch_attempts, wait=self.retry_wait,
            ),
        )

    async def _build(self, underlying: str, as_of: datetime) -> VolatilitySurface:
        quotes = await self.quotes(underlying, as_of)
        spot, rate = await asyncio.gather(
            spot_with_limits(self.spot_provider, self.limiter, underlying, as_of),
            self.rate_provider.rate(as_of),
        )
        cancel = threading.Event()
        try:
            return await asyncio.to_thread(
                build_surface, underlying, quotes, spot, rate, as_of,
                dividend_yield=self.dividend_yield,
                bucket_seconds=self.quote_cache.bucket_seconds,
                moneyness_bound=self.moneyness_bound,
                cancel_event=cancel,
            )
        except asyncio.CancelledError:
            cancel.set()
            raise

    async def get_surface(
        self,
        underlying: str,
        as_of: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> VolatilitySurface:
        """
        Surface for ``underlying`` at ``as_of`` (default: now), built at most
        once per as-of bucket across concurrent callers.

        Raises
        ------
        asyncio.TimeoutError : this caller's ``timeout`` elapsed
        FeedError, RateLimitTimeout, InvalidPricingInput : from the fetch or build
        """
        as_of = ensure_utc(as_of) if as_of is not None else datetime.now(timezone.utc)
        return await self.surface_cache.get_or_build(
            underlying, as_of, lambda: self._build(underlying, as_of), timeout=timeout,
        )

    async def build_many(
        self,
        underlyings: Iterable[str],
        as_of: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Union[VolatilitySurface, BaseException]]:
        """
        Build surfaces for several underlyings concurrently.

        One underlying failing does not affect the others: its slot in the
        returned dict holds the exception instead of a surface.
        """
        as_of = ensure_utc(as_of) if as_of is not None else datetime.now(timezone.utc)
        symbols = list(dict.fromkeys(u.upper() for u in underlyings))
        results = await asyncio.gather(
            *(self.get_surface(u, as_of, timeout) for u in symbols),
            return_exceptions=True,
        )
        out = dict(zip(symbols, results))
        for symbol, res in out.items():
            if isinstance(res, BaseException):
                log.warning("surface_failed", underlying=symbol,
                            error=type(res).__name__, detail=str(res))
        return out
