"""
Surface construction: from a snapshot of option quotes to an immutable
implied volatility surface for one underlying.

The challenge: real option chains don't have the same strikes across
expiries, some quotes are crossed or empty, and some mids sit outside
the no-arbitrage bounds. The builder prices what it can and leaves the
rest out, so the surface is sparse exactly where the data is unreliable.

The pipeline:
    1. Drop quotes for other underlyings or other as-of buckets
    2. Drop crossed / empty markets and expired contracts
    3. Solve implied vol from the mid for each remaining contract
    4. Drop arbitrage violations and non-converged solves
    5. Keep the out-of-the-money contract where a call and put share
       a (strike, expiration)

Queries interpolate linearly in total variance w = sigma^2 * T, first
along strike inside an expiry slice, then along T between the two
bracketing expiries. Points outside the observed domain raise
ExtrapolationNotSupported unless the caller opts into flat extrapolation.

``VolatilitySurface.to_grid`` resamples onto a regular (K, T) mesh for
the visualization module.
"""

import math
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.integrate import trapezoid
from scipy.interpolate import griddata
from scipy.ndimage import gaussian_filter

from . import config
from .black_scholes import call_price
from .exceptions import (
    ArbitrageViolation,
    BuildCancelled,
    ExtrapolationNotSupported,
    InvalidPricingInput,
    NumericalInstability,
)
from .implied_vol import solve
from .logging_config import get_logger
from .models import (
    ContractType,
    ImpliedVolatilityResult,
    OptionQuote,
    PricingInput,
    as_of_bucket,
    ensure_utc,
    time_to_expiry,
)

log = get_logger(__name__)

SurfaceKey = Tuple[float, date]

# maturities closer than this are treated as the same slice
_T_EPS = 1e-12


@dataclass(frozen=True)
class _Slice:
    expiration: date
    T: float
    strikes: np.ndarray
    vols: np.ndarray


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class VolatilitySurface:
    """
    Immutable implied vol snapshot for one underlying at one as-of time.

    ``entries`` maps (strike, expiration) to the solved result and is
    exposed read-only. A fresher surface replaces this one; it is never
    updated in place.
    """

    underlying: str
    as_of: datetime
    spot: float
    risk_free_rate: float
    entries: Mapping[SurfaceKey, ImpliedVolatilityResult]
    dividend_yield: float = 0.0
    built_at: datetime = field(default_factory=_utcnow, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "as_of", ensure_utc(self.as_of))
        entries = dict(self.entries)
        for (strike, expiration), res in entries.items():
            if res.strike != strike or (res.expiration is not None and res.expiration != expiration):
                raise ValueError(f"entry keyed ({strike}, {expiration}) holds contract "
                                 f"({res.strike}, {res.expiration})")
        object.__setattr__(self, "entries", MappingProxyType(entries))
        object.__setattr__(self, "_slices", self._make_slices(entries))

    def _make_slices(self, entries) -> Tuple[_Slice, ...]:
        by_expiry: Dict[date, List[Tuple[float, float]]] = {}
        for (strike, expiration), res in entries.items():
            by_expiry.setdefault(expiration, []).append((strike, res.volatility))
        slices = []
        for expiration in sorted(by_expiry):
            pts = sorted(by_expiry[expiration])
            slices.append(_Slice(
                expiration=expiration,
                T=time_to_expiry(expiration, self.as_of),
                strikes=np.array([k for k, _ in pts], dtype=float),
                vols=np.array([v for _, v in pts], dtype=float),
            ))
        return tuple(slices)

    # ── shape ────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def bucket(self) -> datetime:
        return as_of_bucket(self.as_of)

    @property
    def strikes(self) -> List[float]:
        return sorted({k for k, _ in self.entries})

    @property
    def expirations(self) -> List[date]:
        return [s.expiration for s in self._slices]

    def time_to_expiry(self, expiration: date) -> float:
        return time_to_expiry(expiration, self.as_of)

    # ── queries ──────────────────────────────────────────────────────────

    def implied_vol(self, strike: float, expiration: date, extrapolate: bool = False) -> float:
        """
        Implied vol at (strike, expiration).

        A grid point returns its solved vol unchanged. Anything else is
        interpolated in total variance.

        The observed domain is narrower than the convex hull of the grid
        points. Between two expiries the strike has to lie inside the
        strike range of both bracketing slices, so a sparse slice clips
        the domain on either side of it.

        Raises
        ------
        ExtrapolationNotSupported : outside the observed domain and extrapolate=False
        """
        if isinstance(expiration, datetime):
            expiration = expiration.date()
        hit = self.entries.get((float(strike), expiration))
        if hit is not None:
            return hit.volatility
        return self.implied_vol_at(strike, self.time_to_expiry(expiration), extrapolate)

    def implied_vol_at(self, strike: float, T: float, extrapolate: bool = False) -> float:
        """
        Implied vol at a strike and a time to expiry in years.

        Same domain as ``implied_vol``: a T between two slices needs the
        strike inside both of their strike ranges.
        """
        if not self._slices:
            raise ExtrapolationNotSupported(f"{self.underlying}: surface is empty")
        if not (math.isfinite(strike) and math.isfinite(T)) or T <= 0:
            raise ExtrapolationNotSupported(f"{self.underlying}: invalid query point K={strike}, T={T}")

        slices = self._slices
        first, last = slices[0], slices[-1]
        if T < first.T - _T_EPS or T > last.T + _T_EPS:
            if not extrapolate:
                raise ExtrapolationNotSupported(
                    f"{self.underlying}: T={T:.4f} outside observed maturities "
                    f"[{first.T:.4f}, {last.T:.4f}]"
                )
            edge = first if T < first.T else last
            return self._slice_vol(edge, strike, extrapolate)

        for s in slices:
            if abs(s.T - T) <= _T_EPS:
                return self._slice_vol(s, strike, extrapolate)

        idx = int(np.searchsorted([s.T for s in slices], T))
        near, far = slices[idx - 1], slices[idx]
        w_near = self._slice_vol(near, strike, extrapolate) ** 2 * near.T
        w_far = self._slice_vol(far, strike, extrapolate) ** 2 * far.T
        weight = (T - near.T) / (far.T - near.T)
        w = w_near + weight * (w_far - w_near)
        return math.sqrt(w / T)

    def _slice_vol(self, s: _Slice, strike: float, extrapolate: bool) -> float:
        ks, vols = s.strikes, s.vols
        exact = np.nonzero(ks == strike)[0]
        if exact.size:
            return float(vols[exact[0]])
        if strike < ks[0] or strike > ks[-1]:
            if not extrapolate:
                raise ExtrapolationNotSupported(
                    f"{self.underlying}: K={strike} outside strikes "
                    f"[{ks[0]}, {ks[-1]}] for {s.expiration}"
                )
            return float(vols[0] if strike < ks[0] else vols[-1])
        # same T across the slice, so linear in total variance == linear in variance
        return float(math.sqrt(np.interp(strike, ks, vols ** 2)))

    # ── tabular views ────────────────────────────────────────────────────

    def to_frame(self) -> pd.DataFrame:
        """One row per surface point, sorted by expiry then strike."""
        rows = []
        for (strike, expiration), res in self.entries.items():
            rows.append({
                "strike": strike,
                "expiry": expiration,
                "T": res.time_to_expiry,
                "iv": res.volatility,
                "option_type": res.contract_type.value,
                "contract_symbol": res.contract_symbol,
                "mid": res.observed_price,
                "iterations": res.iterations,
                "delta": res.delta,
                "vega": res.vega,
                "moneyness": strike / self.spot,
                "log_moneyness": math.log(strike / self.spot),
            })
        columns = ["strike", "expiry", "T", "iv", "option_type", "contract_symbol", "mid",
                   "iterations", "delta", "vega", "moneyness", "log_moneyness"]
        df = pd.DataFrame(rows, columns=columns)
        return df.sort_values(["T", "strike"]).reset_index(drop=True)

    def smile(self, expiration: date) -> pd.DataFrame:
        """Strike slice at one expiration: [strike, iv, total_variance]."""
        for s in self._slices:
            if s.expiration == expiration:
                return pd.DataFrame({
                    "strike": s.strikes,
                    "iv": s.vols,
                    "total_variance": s.vols ** 2 * s.T,
                })
        raise KeyError(f"{self.underlying}: no expiration {expiration} on surface")

    def term_structure(self, strike: float) -> pd.DataFrame:
        """Expiry slice at one strike: [expiry, T, iv] for expirations quoting that strike."""
        rows = [{"expiry": exp, "T": res.time_to_expiry, "iv": res.volatility}
                for (k, exp), res in self.entries.items() if k == strike]
        if not rows:
            raise KeyError(f"{self.underlying}: no strike {strike} on surface")
        return pd.DataFrame(rows).sort_values("T").reset_index(drop=True)

    def risk_neutral_density(self, expiration: date, n_points: int = None) -> pd.DataFrame:
        """
        Risk-neutral density of the underlying at one expiration.

        Breeden-Litzenberger: q(K) = e^{rT} d^2C/dK^2. Call prices come
        from Black-Scholes on the interpolated smile, sampled on an even
        strike grid spanning the slice. The second derivative is a
        central difference; non-positive or non-finite values and the two
        end points are set to zero, then the curve is normalized to unit
        area with the trapezoidal rule.

        Parameters
        ----------
        expiration : an expiration on the surface
        n_points : strike samples (default config.DENSITY_POINTS)

        Returns
        -------
        pd.DataFrame with columns [strike, density]

        Raises
        ------
        KeyError : expiration not on the surface
        ValueError : fewer than three strikes at that expiration
        """
        n_points = config.DENSITY_POINTS if n_points is None else n_points
        s = next((s for s in self._slices if s.expiration == expiration), None)
        if s is None:
            raise KeyError(f"{self.underlying}: no expiration {expiration} on surface")
        if len(s.strikes) < 3 or n_points < 3:
            raise ValueError(f"{self.underlying}: need three strikes and three samples for a density")

        grid = np.linspace(s.strikes[0], s.strikes[-1], n_points)
        calls = np.array([
            call_price(self.spot, k, s.T, self.risk_free_rate,
                       self._slice_vol(s, k, extrapolate=False), self.dividend_yield)
            for k in grid
        ])
        h = grid[1] - grid[0]
        density = np.zeros(n_points)
        second = math.exp(self.risk_free_rate * s.T) * (calls[2:] - 2.0 * calls[1:-1] + calls[:-2]) / (h * h)
        density[1:-1] = np.where(np.isfinite(second) & (second > 0), second, 0.0)

        total = trapezoid(density, grid)
        if total > 0:
            density = density / total
        return pd.DataFrame({"strike": grid, "density": density})

    def to_grid(
        self,
        n_k: int = None,
        n_t: int = None,
        method: str = None,
        smooth_sigma: Optional[float] = None,
        extrapolate: bool = False,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Resample the scattered surface onto a regular 2D grid.

        Parameters
        ----------
        n_k : grid points along strike (default: config.GRID_K_POINTS)
        n_t : grid points along maturity (default: config.GRID_T_POINTS)
        method : "cubic", "linear", or "nearest" (default: config.INTERPOLATION_METHOD)
        smooth_sigma : optional Gaussian smoothing of the result, None = off
        extrapolate : fill cells outside the data's convex hull with the
            nearest observed vol instead of leaving them NaN

        Returns
        -------
        K_grid : 1D array of strike values (length n_k)
        T_grid : 1D array of maturity values (length n_t)
        K_mesh, T_mesh : 2D meshgrids (n_t x n_k)
        IV_mesh : 2D array of implied vols (n_t x n_k)
        """
        if n_k is None:
            n_k = config.GRID_K_POINTS
        if n_t is None:
            n_t = config.GRID_T_POINTS
        if method is None:
            method = config.INTERPOLATION_METHOD

        if len(self._slices) < 2 or len(self.entries) < 3:
            raise ValueError(f"{self.underlying}: need at least two expiries and three points to grid")

        df = self.to_frame()
        strikes = df["strike"].values
        maturities = df["T"].values
        ivs = df["iv"].values

        K_grid = np.linspace(strikes.min(), strikes.max(), n_k)
        T_grid = np.linspace(maturities.min(), maturities.max(), n_t)
        K_mesh, T_mesh = np.meshgrid(K_grid, T_grid)

        IV_mesh = griddata(points=(strikes, maturities), values=ivs,
                           xi=(K_mesh, T_mesh), method=method)

        nan_mask = np.isnan(IV_mesh)
        if extrapolate and nan_mask.any():
            IV_nearest = griddata(points=(strikes, maturities), values=ivs,
                                  xi=(K_mesh, T_mesh), method="nearest")
            IV_mesh[nan_mask] = IV_nearest[nan_mask]
            nan_mask = np.isnan(IV_mesh)

        # gaussian_filter would smear NaNs across the whole mesh
        if smooth_sigma is not None and smooth_sigma > 0 and not nan_mask.any():
            IV_mesh = gaussian_filter(IV_mesh, sigma=smooth_sigma)

        return K_grid, T_grid, K_mesh, T_mesh, IV_mesh

    def statistics(self) -> dict:
        """
        Summary statistics for quick diagnostics.

        Returns
        -------
        dict with keys:
            n_points, n_expiries, strike_range, T_range, iv_range,
            atm_iv_mean    : average IV for strikes within 1% of spot
            skew_25d_proxy : IV at ~90% moneyness minus IV at ~110%
        """
        df = self.to_frame()
        if df.empty:
            return {"n_points": 0, "n_expiries": 0, "strike_range": (np.nan, np.nan),
                    "T_range": (np.nan, np.nan), "iv_range": (np.nan, np.nan),
                    "atm_iv_mean": np.nan, "skew_25d_proxy": np.nan}

        stats = {
            "n_points": len(df),
            "n_expiries": df["T"].nunique(),
            "strike_range": (df["strike"].min(), df["strike"].max()),
            "T_range": (df["T"].min(), df["T"].max()),
            "iv_range": (df["iv"].min(), df["iv"].max()),
        }

        atm_mask = df["moneyness"].between(0.99, 1.01)
        stats["atm_iv_mean"] = df.loc[atm_mask, "iv"].mean() if atm_mask.any() else np.nan

        put_side = df[df["moneyness"].between(0.89, 0.91)]
        call_side = df[df["moneyness"].between(1.09, 1.11)]
        if len(put_side) > 0 and len(call_side) > 0:
            stats["skew_25d_proxy"] = put_side["iv"].mean() - call_side["iv"].mean()
        else:
            stats["skew_25d_proxy"] = np.nan

        return stats


# ════════════════════════════════════════════════════════════════════════
#  BUILD
# ════════════════════════════════════════════════════════════════════════

# skip reason for each field PricingInput.from_quote can reject
_UNPRICEABLE = {"time_to_expiry": "expired", "observed_price": "no_market"}


def _prefer(existing: ImpliedVolatilityResult, candidate: ImpliedVolatilityResult,
            spot: float) -> ImpliedVolatilityResult:
    """Out-of-the-money contract wins a (strike, expiration) collision."""
    otm = ContractType.PUT if candidate.strike < spot else ContractType.CALL
    if existing.contract_type is not otm and candidate.contract_type is otm:
        return candidate
    return existing


def build_surface(
    underlying: str,
    quotes: Iterable[OptionQuote],
    spot: float,
    risk_free_rate: float,
    as_of: datetime,
    dividend_yield: float = 0.0,
    bucket_seconds: int = None,
    moneyness_bound: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> VolatilitySurface:
    """
    Solve every usable quote and assemble the surface snapshot.

    Parameters
    ----------
    underlying : symbol the surface is for; quotes for other symbols are ignored
    quotes : one snapshot of option quotes
    spot : underlying price at ``as_of``
    risk_free_rate : annualized, continuously compounded
    as_of : snapshot time; quotes from other as-of buckets are ignored
    dividend_yield : continuous dividend yield passed to the pricer
    bucket_seconds : as-of bucket width (default config.AS_OF_BUCKET_SECONDS)
    moneyness_bound : drop strikes with |log(K/S)| above this; None keeps all
    cancel_event : checked between contracts; once set the build raises BuildCancelled

    Returns
    -------
    VolatilitySurface : possibly empty, never containing placeholders

    Raises
    ------
    InvalidPricingInput : spot or rate unusable
    BuildCancelled : ``cancel_event`` was set mid-build
    """
    if spot is None or not math.isfinite(spot) or spot <= 0:
        raise InvalidPricingInput("spot", spot)
    if risk_free_rate is None or not math.isfinite(risk_free_rate):
        raise InvalidPricingInput("risk_free_rate", risk_free_rate, "must be finite")

    as_of = ensure_utc(as_of)
    bucket = as_of_bucket(as_of, bucket_seconds)
    symbol = underlying.upper()

    entries: Dict[SurfaceKey, ImpliedVolatilityResult] = {}
    skipped: Dict[str, int] = {}

    def skip(quote: OptionQuote, reason: str) -> None:
        skipped[reason] = skipped.get(reason, 0) + 1
        log.debug("contract_skipped", underlying=symbol,
                  contract=quote.contract_symbol, reason=reason)

    for quote in quotes:
        if cancel_event is not None and cancel_event.is_set():
            raise BuildCancelled(f"{symbol}: surface build cancelled")

        if quote.underlying.upper() != symbol:
            skip(quote, "other_underlying")
            continue
        if as_of_bucket(quote.timestamp, bucket_seconds) != bucket:
            skip(quote, "other_bucket")
            continue
        if quote.is_crossed:
            skip(quote, "crossed")
            continue
        if moneyness_bound is not None and abs(math.log(quote.strike / spot)) > moneyness_bound:
            skip(quote, "moneyness")
            continue

        try:
            pricing = PricingInput.from_quote(quote, spot, risk_free_rate, as_of)
        except InvalidPricingInput as exc:
            skip(quote, _UNPRICEABLE.get(exc.field, "invalid_input"))
            continue

        try:
            res = solve(
                pricing.observed_price, pricing.spot, quote.strike, pricing.time_to_expiry,
                pricing.risk_free_rate, quote.contract_type,
                dividend_yield=dividend_yield,
                contract_symbol=quote.contract_symbol,
                expiration=quote.expiration,
            )
        except ArbitrageViolation:
            skip(quote, "arbitrage")
            continue
        except (InvalidPricingInput, NumericalInstability):
            skip(quote, "invalid_input")
            continue

        if not res.converged:
            skip(quote, "non_converged")
            continue

        key = (quote.strike, quote.expiration)
        existing = entries.get(key)
        entries[key] = res if existing is None else _prefer(existing, res, spot)

    surface = VolatilitySurface(
        underlying=symbol,
        as_of=as_of,
        spot=spot,
        risk_free_rate=risk_free_rate,
        entries=entries,
        dividend_yield=dividend_yield,
    )
    log.info("surface_built", underlying=symbol, as_of=as_of.isoformat(),
             points=len(surface), expiries=len(surface.expirations), skipped=skipped)
    return surface
