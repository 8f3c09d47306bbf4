"""
In-memory caches with single-flight fetch coordination.

SingleFlightCache is the shared machinery:

- TTL expiry, checked lazily when an entry is looked up
- least-recently-used eviction once ``max_entries`` is exceeded
- single-flight misses: the first caller for a key starts one fetch
  task and installs it in the in-flight map; every concurrent caller
  for that key awaits the same task instead of fetching again
- failures (and cancellations) are never cached; the in-flight marker
  is cleared so the next call retries
- a caller that times out only stops waiting; when the last waiter of
  a fetch gives up, the fetch itself is cancelled

Map mutations sit behind a threading.Lock that is never held across an
``await``. The fetch tasks themselves belong to the event loop the
first caller runs on.

QuoteCache specialises the key to (symbol, as-of bucket).

Usage::

    cache = QuoteCache()
    quotes = await cache.get_or_fetch(quote_key("SPY", now), fetch_spy)
"""

import asyncio
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

from . import config
from .logging_config import get_logger
from .models import as_of_bucket

log = get_logger(__name__)


@dataclass
class CacheEntry:
    key: Hashable
    payload: Any
    inserted_at: float
    last_access: float


class _Flight:
    """One in-flight fetch and the number of callers awaiting it."""

    __slots__ = ("task", "waiters")

    def __init__(self) -> None:
        self.task: Optional[asyncio.Task] = None
        self.waiters = 0


class SingleFlightCache:
    """
    TTL + LRU cache whose misses are coalesced into a single fetch per key.

    Parameters
    ----------
    ttl : seconds an entry stays fresh after insertion
    max_entries : capacity before least-recently-used entries are evicted
    clock : monotonic time source, injectable for tests
    name : label used in log events
    """

    def __init__(
        self,
        ttl: float,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ) -> None:
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self.ttl = ttl
        self.max_entries = max_entries
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[Hashable, CacheEntry]" = OrderedDict()
        self._inflight: Dict[Hashable, _Flight] = {}
        self._hits = 0
        self._misses = 0
        self._coalesced = 0
        self._evictions = 0

    # ── plain map operations ─────────────────────────────────────────────

    def _lookup(self, key: Hashable) -> Optional[CacheEntry]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now - entry.inserted_at >= self.ttl:
                del self._entries[key]
                return None
            entry.last_access = now
            self._entries.move_to_end(key)
            return entry

    def get(self, key: Hashable) -> Optional[Any]:
        """Fresh payload for ``key``, or None. Never fetches."""
        entry = self._lookup(key)
        return None if entry is None else entry.payload

    def put(self, key: Hashable, payload: Any) -> None:
        """Insert or replace ``key``, evicting least-recently-used entries over capacity."""
        now = self._clock()
        evicted = []
        with self._lock:
            self._entries[key] = CacheEntry(key, payload, now, now)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                old_key, _ = self._entries.popitem(last=False)
                evicted.append(old_key)
            self._evictions += len(evicted)
        for old_key in evicted:
            log.debug("cache_evicted", cache=self.name, key=str(old_key))

    def invalidate(self, key: Hashable) -> bool:
        """Drop ``key``; returns whether an entry was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self._lookup(key) is not None

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "inflight": len(self._inflight),
                "hits": self._hits,
                "misses": self._misses,
                "coalesced": self._coalesced,
                "evictions": self._evictions,
            }

    # ── single-flight ────────────────────────────────────────────────────

    async def _run(self, key: Hashable, fetch_fn: Callable[[], Awaitable[Any]], flight: _Flight) -> Any:
        started = self._clock()
        try:
            payload = await fetch_fn()
            self.put(key, payload)
            log.debug("cache_filled", cache=self.name, key=str(key),
                      elapsed_s=round(self._clock() - started, 4))
            return payload
        except asyncio.CancelledError:
            log.info("cache_fetch_cancelled", cache=self.name, key=str(key))
            raise
        except Exception as exc:
            log.warning("cache_fetch_failed", cache=self.name, key=str(key),
                        error=type(exc).__name__, detail=str(exc))
            raise
        finally:
            with self._lock:
                if self._inflight.get(key) is flight:
                    del self._inflight[key]

    async def get_or_fetch(
        self,
        key: Hashable,
        fetch_fn: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Return the cached payload for ``key``, fetching it at most once across
        concurrent callers.

        Parameters
        ----------
        key : hashable cache key
        fetch_fn : zero-argument coroutine function producing the payload
        timeout : seconds this caller will wait for an in-flight fetch;
            None waits indefinitely

        Raises
        ------
        asyncio.TimeoutError : this caller's ``timeout`` elapsed
        Exception : whatever ``fetch_fn`` raised, delivered to every waiter
        """
        entry = self._lookup(key)
        if entry is not None:
            with self._lock:
                self._hits += 1
            return entry.payload

        with self._lock:
            flight = self._inflight.get(key)
            if flight is None:
                self._misses += 1
                flight = _Flight()
                flight.task = asyncio.get_running_loop().create_task(self._run(key, fetch_fn, flight))
                self._inflight[key] = flight
            else:
                self._coalesced += 1
            flight.waiters += 1

        try:
            return await asyncio.wait_for(asyncio.shield(flight.task), timeout)
        finally:
            with self._lock:
                flight.waiters -= 1
                abandon = flight.waiters == 0 and not flight.task.done()
                if abandon and self._inflight.get(key) is flight:
                    del self._inflight[key]
            if abandon:
                flight.task.cancel()


# ════════════════════════════════════════════════════════════════════════
#  QUOTES
# ════════════════════════════════════════════════════════════════════════

def quote_key(symbol: str, as_of: datetime, bucket_seconds: int = None) -> Tuple[str, datetime]:
    """Cache key for a symbol (underlying or contract) at an as-of time."""
    return symbol.upper(), as_of_bucket(as_of, bucket_seconds)


class QuoteCache(SingleFlightCache):
    """
    Short-lived cache of quote snapshots keyed by (symbol, as-of bucket).

    Quotes are time-sensitive: the TTL should not exceed the feed's
    refresh interval, since pricing off a stale quote is a correctness
    bug rather than an efficiency loss.
    """

    def __init__(self, ttl: float = None, max_entries: int = None,
                 bucket_seconds: int = None, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(
            ttl=config.QUOTE_CACHE_TTL_SECONDS if ttl is None else ttl,
            max_entries=config.QUOTE_CACHE_MAX_ENTRIES if max_entries is None else max_entries,
            clock=clock,
            name="quotes",
        )
        self.bucket_seconds = config.AS_OF_BUCKET_SECONDS if bucket_seconds is None else bucket_seconds

    def key_for(self, symbol: str, as_of: datetime) -> Tuple[str, datetime]:
        return quote_key(symbol, as_of, self.bucket_seconds)

    async def get_or_fetch(self, key, fetch_fn, timeout: Optional[float] = None):
        async def fetch_snapshot():
            # tuples so every waiter shares one immutable snapshot
            return tuple(await fetch_fn())

        return await super().get_or_fetch(key, fetch_snapshot, timeout=timeout)
