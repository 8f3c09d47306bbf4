"""
Token-bucket rate limiter for calls to the quote feed.

The bucket holds up to ``capacity`` tokens and refills continuously at
``rate`` tokens per second. ``acquire`` reserves its tokens immediately
(the balance may go negative) and then sleeps until the reservation is
covered. Reserving happens without an ``await`` in between, so on a
single event loop concurrent callers can never double-spend a token,
and they are served in the order they reserved. No lock is held while
a caller sleeps. A cancelled waiter returns its tokens only when nobody
reserved after it.

Usage::

    limiter = RateLimiter(rate=2.0, capacity=2)
    await limiter.acquire(timeout=5.0)
    quotes = await source.fetch_quotes("SPY", as_of)
"""

import asyncio
import time
from typing import Callable, Optional

from . import config
from .exceptions import RateLimitTimeout
from .logging_config import get_logger

log = get_logger(__name__)


class RateLimiter:
    """Shared, explicitly owned token bucket. Pass one instance to every fetcher."""

    def __init__(
        self,
        rate: float = None,
        capacity: int = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "feed",
    ) -> None:
        self.rate = float(config.FEED_REQUESTS_PER_SECOND if rate is None else rate)
        self.capacity = int(config.FEED_BURST if capacity is None else capacity)
        if self.rate <= 0:
            raise ValueError(f"rate must be positive, got {self.rate}")
        if self.capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {self.capacity}")
        self.name = name
        self._clock = clock
        self._tokens = float(self.capacity)
        self._updated = clock()
        self._reservations = 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._updated, 0.0)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
        self._updated = now

    @property
    def available(self) -> float:
        """Tokens that could be taken right now without waiting."""
        self._refill()
        return max(self._tokens, 0.0)

    async def acquire(self, cost: int = 1, timeout: Optional[float] = None) -> float:
        """
        Take ``cost`` tokens, suspending until they are available.

        Parameters
        ----------
        cost : tokens to take, an int in [1, capacity]
        timeout : longest the caller is willing to wait, in seconds; None waits as long as needed

        Returns
        -------
        float : seconds the caller was delayed (0.0 when served immediately)

        Raises
        ------
        RateLimitTimeout : the wait would exceed ``timeout``; no tokens are consumed
        ValueError : ``cost`` is out of range
        """
        if isinstance(cost, bool) or not isinstance(cost, int) or not 1 <= cost <= self.capacity:
            raise ValueError(f"cost must be an int in [1, {self.capacity}], got {cost!r}")

        # reservation: no await between the balance check and the decrement
        self._refill()
        self._tokens -= cost
        self._reservations += 1
        ticket = self._reservations
        wait = -self._tokens / self.rate if self._tokens < 0 else 0.0

        if wait > 0 and timeout is not None and wait > timeout:
            self._tokens += cost
            raise RateLimitTimeout(
                f"{self.name}: need {wait:.3f}s for {cost} token(s), timeout is {timeout:.3f}s"
            )

        if wait > 0:
            log.debug("rate_limit_wait", limiter=self.name, cost=cost, wait_s=round(wait, 4))
            try:
                await asyncio.sleep(wait)
            except asyncio.CancelledError:
                # later reservations have fixed wake-up times: only the newest
                # one hands its tokens back, an earlier slot lapses unused
                if ticket == self._reservations:
                    self._refill()
                    self._tokens = min(float(self.capacity), self._tokens + cost)
                raise
        return wait

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *exc) -> None:
        return None
