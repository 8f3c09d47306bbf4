"""
Surface cache and cold storage.

A surface is persisted as a JSON envelope:

    {"schema": "volsurf.surface", "version": 1,
     "digest": "<sha256 of the canonical body>",
     "body": {underlying, as_of, spot, risk_free_rate, dividend_yield,
              built_at, entries}}

Decoding checks the schema, version and digest before building anything,
and the VolatilitySurface constructor re-validates the entries, so a bad
payload raises PersistenceDecodeError instead of producing a partial
surface. Loading never touches the in-memory cache.

Backends only move bytes:
    InMemoryBackend   - dict, for tests and ephemeral runs
    FileSystemBackend - one file per key, written atomically (tmp + rename)
"""

import asyncio
import hashlib
import json
import os
import re
import tempfile
import time
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Protocol, Tuple

from . import config
from .cache import SingleFlightCache
from .exceptions import PersistenceDecodeError
from .logging_config import get_logger
from .models import ContractType, ImpliedVolatilityResult, as_of_bucket
from .surface_builder import VolatilitySurface

log = get_logger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9._-]+(/[A-Za-z0-9._-]+)*$")


# ════════════════════════════════════════════════════════════════════════
#  BACKENDS
# ════════════════════════════════════════════════════════════════════════

class PersistenceBackend(Protocol):
    def put(self, key: str, data: bytes) -> None: ...

    def get(self, key: str) -> bytes:
        """Raises KeyError when nothing is stored under ``key``."""
        ...

    def exists(self, key: str) -> bool: ...


def _check_key(key: str) -> str:
    if not _KEY_RE.match(key) or ".." in key.split("/"):
        raise ValueError(f"Invalid storage key: {key!r}")
    return key


class InMemoryBackend:
    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}

    def put(self, key: str, data: bytes) -> None:
        self._blobs[_check_key(key)] = bytes(data)

    def get(self, key: str) -> bytes:
        return self._blobs[_check_key(key)]

    def exists(self, key: str) -> bool:
        return _check_key(key) in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)


class FileSystemBackend:
    """Stores each key as ``<root>/<key>.json``; writes are atomic renames."""

    def __init__(self, root: Path = None) -> None:
        self.root = Path(config.SURFACE_STORE_DIR if root is None else root)

    def _path(self, key: str) -> Path:
        return self.root / f"{_check_key(key)}.json"

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise KeyError(key) from None

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()


# ════════════════════════════════════════════════════════════════════════
#  CODEC
# ════════════════════════════════════════════════════════════════════════

def _canonical(body: dict) -> bytes:
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _digest(body: dict) -> str:
    return hashlib.sha256(_canonical(body)).hexdigest()


def _entry_to_dict(res: ImpliedVolatilityResult) -> dict:
    return {
        "strike": res.strike,
        "expiration": res.expiration.isoformat(),
        "contract_type": res.contract_type.value,
        "contract_symbol": res.contract_symbol,
        "volatility": res.volatility,
        "iterations": res.iterations,
        "converged": res.converged,
        "observed_price": res.observed_price,
        "spot": res.spot,
        "time_to_expiry": res.time_to_expiry,
        "residual": res.residual,
        "delta": res.delta,
        "vega": res.vega,
    }


def _entry_from_dict(d: dict) -> ImpliedVolatilityResult:
    return ImpliedVolatilityResult(
        volatility=float(d["volatility"]),
        iterations=int(d["iterations"]),
        converged=bool(d["converged"]),
        strike=float(d["strike"]),
        contract_type=ContractType.parse(d["contract_type"]),
        observed_price=float(d["observed_price"]),
        spot=float(d["spot"]),
        time_to_expiry=float(d["time_to_expiry"]),
        residual=float(d["residual"]),
        delta=float(d["delta"]),
        vega=float(d["vega"]),
        contract_symbol=d["contract_symbol"],
        expiration=date.fromisoformat(d["expiration"]),
    )


def encode_surface(surface: VolatilitySurface) -> Tuple[bytes, str]:
    """Serialize a surface. Returns (payload bytes, body digest)."""
    body = {
        "underlying": surface.underlying,
        "as_of": surface.as_of.isoformat(),
        "spot": surface.spot,
        "risk_free_rate": surface.risk_free_rate,
        "dividend_yield": surface.dividend_yield,
        "built_at": surface.built_at.isoformat(),
        "entries": [_entry_to_dict(res) for _, res in sorted(surface.entries.items())],
    }
    digest = _digest(body)
    envelope = {
        "schema": config.SURFACE_SCHEMA,
        "version": config.SURFACE_SCHEMA_VERSION,
        "digest": digest,
        "body": body,
    }
    return json.dumps(envelope, sort_keys=True).encode("utf-8"), digest


def decode_surface(payload: bytes, expected_digest: Optional[str] = None) -> VolatilitySurface:
    """
    Inverse of encode_surface.

    Raises
    ------
    PersistenceDecodeError : malformed JSON, wrong schema or version,
        digest mismatch, or entries that do not form a valid surface
    """
    try:
        envelope = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise PersistenceDecodeError(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(envelope, dict):
        raise PersistenceDecodeError("payload is not a JSON object")

    schema, version = envelope.get("schema"), envelope.get("version")
    if schema != config.SURFACE_SCHEMA or version != config.SURFACE_SCHEMA_VERSION:
        raise PersistenceDecodeError(
            f"schema mismatch: got {schema!r} v{version!r}, "
            f"expected {config.SURFACE_SCHEMA!r} v{config.SURFACE_SCHEMA_VERSION}"
        )

    body = envelope.get("body")
    if not isinstance(body, dict):
        raise PersistenceDecodeError("envelope has no body")
    digest = _digest(body)
    if digest != envelope.get("digest"):
        raise PersistenceDecodeError("digest mismatch: payload is corrupt")
    if expected_digest is not None and digest != expected_digest:
        raise PersistenceDecodeError("digest does not match handle: stored surface was replaced")

    try:
        entries = {}
        for d in body["entries"]:
            res = _entry_from_dict(d)
            entries[(res.strike, res.expiration)] = res
        return VolatilitySurface(
            underlying=body["underlying"],
            as_of=datetime.fromisoformat(body["as_of"]),
            spot=float(body["spot"]),
            risk_free_rate=float(body["risk_free_rate"]),
            dividend_yield=float(body.get("dividend_yield", 0.0)),
            entries=entries,
            built_at=datetime.fromisoformat(body["built_at"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise PersistenceDecodeError(f"invalid surface body: {exc}") from exc


# ════════════════════════════════════════════════════════════════════════
#  SURFACE CACHE
# ════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SurfaceHandle:
    """Where a persisted surface lives and what it hashed to when written."""

    key: str
    digest: Optional[str] = None


def storage_key(underlying: str, bucket: datetime) -> str:
    return f"{underlying.upper()}/{bucket:%Y%m%dT%H%M%SZ}"


class SurfaceCache(SingleFlightCache):
    """
    Surfaces keyed by (underlying, as-of bucket), built at most once per key
    across concurrent callers.

    Parameters
    ----------
    backend : cold storage for persist/load; None disables both
    read_through : on a miss, try cold storage before building
    persist_on_build : write every freshly built surface to cold storage
    """

    def __init__(
        self,
        backend: Optional[PersistenceBackend] = None,
        ttl: float = None,
        max_entries: int = None,
        bucket_seconds: int = None,
        read_through: bool = False,
        persist_on_build: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(
            ttl=config.SURFACE_CACHE_TTL_SECONDS if ttl is None else ttl,
            max_entries=config.SURFACE_CACHE_MAX_ENTRIES if max_entries is None else max_entries,
            clock=clock,
            name="surfaces",
        )
        if (read_through or persist_on_build) and backend is None:
            raise ValueError("read_through / persist_on_build need a backend")
        self.backend = backend
        self.bucket_seconds = config.AS_OF_BUCKET_SECONDS if bucket_seconds is None else bucket_seconds
        self.read_through = read_through
        self.persist_on_build = persist_on_build

    def key_for(self, underlying: str, as_of: datetime) -> Tuple[str, datetime]:
        return underlying.upper(), as_of_bucket(as_of, self.bucket_seconds)

    def handle_for(self, underlying: str, as_of: datetime) -> SurfaceHandle:
        return SurfaceHandle(storage_key(*self.key_for(underlying, as_of)))

    async def get_or_build(
        self,
        underlying: str,
        as_of: datetime,
        builder_fn: Callable[[], Awaitable[VolatilitySurface]],
        timeout: Optional[float] = None,
    ) -> VolatilitySurface:
        """
        Cached surface for (underlying, bucket of as_of), building it on a miss.

        Concurrent callers for the same key share one ``builder_fn`` call.
        A failed or cancelled build is not cached.
        """
        key = self.key_for(underlying, as_of)

        async def produce() -> VolatilitySurface:
            if self.read_through:
                handle = SurfaceHandle(storage_key(*key))
                if self.backend.exists(handle.key):
                    try:
                        surface = await asyncio.to_thread(self.load, handle)
                        log.info("surface_loaded", underlying=key[0], key=handle.key)
                        return surface
                    except PersistenceDecodeError as exc:
                        log.warning("surface_load_failed", key=handle.key, detail=str(exc))
            surface = await builder_fn()
            if self.persist_on_build:
                await asyncio.to_thread(self.persist, surface)
            return surface

        return await self.get_or_fetch(key, produce, timeout=timeout)

    def persist(self, surface: VolatilitySurface) -> SurfaceHandle:
        """Write ``surface`` to cold storage under its (underlying, bucket) key."""
        if self.backend is None:
            raise ValueError("SurfaceCache has no persistence backend")
        payload, digest = encode_surface(surface)
        handle = SurfaceHandle(
            storage_key(surface.underlying, as_of_bucket(surface.as_of, self.bucket_seconds)),
            digest,
        )
        self.backend.put(handle.key, payload)
        log.info("surface_persisted", underlying=surface.underlying, key=handle.key,
                 points=len(surface), bytes=len(payload))
        return handle

    def load(self, handle: SurfaceHandle) -> VolatilitySurface:
        """
        Read a surface back from cold storage. The in-memory cache is untouched.

        Raises
        ------
        KeyError : nothing stored under ``handle.key``
        PersistenceDecodeError : stored payload is corrupt or from another schema
        """
        if self.backend is None:
            raise ValueError("SurfaceCache has no persistence backend")
        return decode_surface(self.backend.get(handle.key), handle.digest)
