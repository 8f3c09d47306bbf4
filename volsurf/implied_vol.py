"""
Implied volatility inversion: observed option price -> Black-Scholes vol.

The solver is a hybrid. Newton-Raphson converges quadratically near the
root but diverges when vega collapses (deep ITM/OTM, near expiry);
bisection never diverges but needs ~40 halvings of a [1e-4, 5] bracket.
So we run Newton first and drop to bisection the moment it misbehaves,
as an explicit state machine with a hard iteration budget:

    NEWTON     --(residual < tol)------------------------> CONVERGED
    NEWTON     --(vega < floor | step leaves bracket |
                  newton budget spent)-----------------> BISECTING
    BISECTING  --(residual < tol)------------------------> CONVERGED
    any        --(iterations exhausted)-------------------> FAILED

Every price evaluation tightens the bracket (price is increasing in
vol), so the bisection phase starts from whatever Newton learned.

Prices outside the model-free no-arbitrage bounds raise
ArbitrageViolation instead of returning a degenerate vol.
"""

import math
from enum import Enum
from typing import Optional

import numpy as np
import pandas as pd

from . import config
from .black_scholes import bs_price, no_arbitrage_bounds, price_and_greeks, vega
from .exceptions import ArbitrageViolation, InvalidPricingInput, SolverNonConvergence
from .logging_config import get_logger
from .models import ContractType, ImpliedVolatilityResult

log = get_logger(__name__)


class SolverState(Enum):
    NEWTON = "newton"
    BISECTING = "bisecting"
    CONVERGED = "converged"
    FAILED = "failed"


def initial_vol_guess(observed_price: float, S: float, K: float, T: float,
                      option_type="call") -> float:
    """
    Brenner-Subrahmanyam seed: sigma ~ sqrt(2*pi/T) * price / S.

    Derived for at-the-money options, so outside the moneyness band in
    config.GUESS_MONEYNESS_BAND it falls back to config.DEFAULT_VOL_GUESS.
    """
    moneyness = S / K if ContractType.parse(option_type).is_call else K / S
    lo, hi = config.GUESS_MONEYNESS_BAND
    if not lo <= moneyness <= hi:
        return config.DEFAULT_VOL_GUESS
    guess = math.sqrt(2.0 * math.pi / T) * observed_price / S
    if not math.isfinite(guess) or guess <= 0:
        return config.DEFAULT_VOL_GUESS
    return guess


def _check_inputs(observed_price, spot, strike, time_to_expiry, risk_free_rate, dividend_yield):
    for name, value in (("spot", spot), ("strike", strike), ("time_to_expiry", time_to_expiry),
                        ("observed_price", observed_price)):
        if value is None or not math.isfinite(value) or value <= 0:
            raise InvalidPricingInput(name, value)
    for name, value in (("risk_free_rate", risk_free_rate), ("dividend_yield", dividend_yield)):
        if value is None or not math.isfinite(value):
            raise InvalidPricingInput(name, value, "must be finite")


def solve(
    observed_price: float,
    spot: float,
    strike: float,
    time_to_expiry: float,
    risk_free_rate: float,
    contract_type,
    initial_guess: Optional[float] = None,
    dividend_yield: float = 0.0,
    tol: float = None,
    max_iter: int = None,
    vol_lower: float = None,
    vol_upper: float = None,
    contract_symbol: Optional[str] = None,
    expiration=None,
) -> ImpliedVolatilityResult:
    """
    Compute implied volatility by inverting Black-Scholes.

    Parameters
    ----------
    observed_price : observed option price (ideally mid = (bid+ask)/2)
    spot, strike : underlying and strike price
    time_to_expiry : years, > 0
    risk_free_rate : continuously compounded, annualized
    contract_type : "call" / "put" or ContractType
    initial_guess : newton seed; default is initial_vol_guess()
    dividend_yield : continuous dividend yield
    tol : absolute price residual (default config.PRICE_TOLERANCE)
    max_iter : total iteration budget (default config.MAX_ITERATIONS)
    vol_lower, vol_upper : vol bracket (default config.VOL_LOWER / VOL_UPPER)
    contract_symbol, expiration : identity stamped on the result

    Returns
    -------
    ImpliedVolatilityResult : always carries iterations and the converged flag;
        a non-converged result holds the last evaluated vol.

    Raises
    ------
    InvalidPricingInput : non-positive / non-finite inputs
    ArbitrageViolation : observed price below the discounted intrinsic value
        or above spot (calls) / discounted strike (puts)
    """
    tol = config.PRICE_TOLERANCE if tol is None else tol
    max_iter = config.MAX_ITERATIONS if max_iter is None else max_iter
    lo = config.VOL_LOWER if vol_lower is None else vol_lower
    hi = config.VOL_UPPER if vol_upper is None else vol_upper

    S, K, T, r, q = spot, strike, time_to_expiry, risk_free_rate, dividend_yield
    ctype = ContractType.parse(contract_type)
    _check_inputs(observed_price, S, K, T, r, q)

    lower_bound, upper_bound = no_arbitrage_bounds(S, K, T, r, ctype, q)
    if observed_price < lower_bound - tol or observed_price > upper_bound:
        raise ArbitrageViolation(observed_price, lower_bound, upper_bound)

    def price_at(sigma):
        return bs_price(S, K, T, r, sigma, ctype, q)

    def finish(sigma, iterations, converged, residual):
        greeks = price_and_greeks(S, K, T, r, sigma, ctype, q).greeks
        return ImpliedVolatilityResult(
            volatility=sigma,
            iterations=iterations,
            converged=converged,
            strike=K,
            contract_type=ctype,
            observed_price=observed_price,
            spot=S,
            time_to_expiry=T,
            residual=residual,
            delta=greeks.delta,
            vega=greeks.vega,
            contract_symbol=contract_symbol,
            expiration=expiration,
        )

    # target outside what the bracket can produce: stop at the edge, unconverged
    residual_lo = price_at(lo) - observed_price
    if residual_lo >= 0:
        return finish(lo, 0, abs(residual_lo) < tol, residual_lo)
    residual_hi = price_at(hi) - observed_price
    if residual_hi <= 0:
        return finish(hi, 0, abs(residual_hi) < tol, residual_hi)

    if initial_guess is None:
        initial_guess = initial_vol_guess(observed_price, S, K, T, ctype)
    sigma = initial_guess if lo < initial_guess < hi else 0.5 * (lo + hi)

    state = SolverState.NEWTON
    iterations = 0
    newton_steps = 0
    last_sigma, last_residual = sigma, math.inf

    while state in (SolverState.NEWTON, SolverState.BISECTING):
        if iterations >= max_iter:
            state = SolverState.FAILED
            break
        iterations += 1

        diff = price_at(sigma) - observed_price
        last_sigma, last_residual = sigma, diff
        if abs(diff) < tol:
            state = SolverState.CONVERGED
            break

        if diff > 0:
            hi = sigma
        else:
            lo = sigma

        if state is SolverState.NEWTON:
            v = vega(S, K, T, r, sigma, q)
            if v >= config.VEGA_FLOOR and newton_steps < config.NEWTON_MAX_ITERATIONS:
                newton_steps += 1
                candidate = sigma - diff / v
                if lo < candidate < hi:
                    sigma = candidate
                    continue
            state = SolverState.BISECTING
            log.debug("iv_bisection_fallback", strike=K, vega=v,
                      newton_steps=newton_steps, bracket=(lo, hi))

        sigma = 0.5 * (lo + hi)

    return finish(last_sigma, iterations, state is SolverState.CONVERGED, last_residual)


def require_converged(result: ImpliedVolatilityResult) -> ImpliedVolatilityResult:
    """Return ``result`` unchanged, or raise SolverNonConvergence if it did not converge."""
    if not result.converged:
        raise SolverNonConvergence(result)
    return result


def solve_batch(
    df: pd.DataFrame,
    spot: float,
    risk_free_rate: float,
    dividend_yield: float = 0.0,
) -> pd.DataFrame:
    """
    Solve implied vol for every row of a DataFrame.

    Parameters
    ----------
    df : DataFrame with columns [price, strike, T, option_type]
    spot, risk_free_rate, dividend_yield : shared across rows

    Returns
    -------
    Copy of ``df`` with added columns [iv, converged, iterations, error].
    Rows that raise (arbitrage, bad input) get iv=NaN and the exception
    class name in ``error``.
    """
    ivs, converged, iterations, errors = [], [], [], []
    for row in df.itertuples(index=False):
        try:
            res = solve(row.price, spot, row.strike, row.T, risk_free_rate,
                        row.option_type, dividend_yield=dividend_yield)
        except (ArbitrageViolation, InvalidPricingInput) as exc:
            ivs.append(np.nan)
            converged.append(False)
            iterations.append(0)
            errors.append(type(exc).__name__)
            continue
        ivs.append(res.volatility)
        converged.append(res.converged)
        iterations.append(res.iterations)
        errors.append(None)

    out = df.copy()
    out["iv"] = ivs
    out["converged"] = converged
    out["iterations"] = iterations
    out["error"] = errors
    return out
