"""
Black-Scholes pricing and greeks for European options.

Everything here is closed-form and pure. Inputs are validated rather
than clamped: a non-positive spot, strike, time or vol raises
InvalidPricingInput naming the argument, so a bad quote never turns
into a plausible-looking price.

Numerics: d1/d2 are allowed to run off to +/-inf for near-expiry or
near-zero-vol contracts; N(d) then saturates to exactly 0 or 1 and the
pdf to 0, which gives the correct limiting price and greeks instead of
NaN.

References:
    Black, F. & Scholes, M. (1973). The Pricing of Options and Corporate Liabilities.
    Hull, J.C. (2018). Options, Futures, and Other Derivatives. 10th ed.
"""

import math
from dataclasses import asdict
from typing import Tuple

import numpy as np
from scipy.stats import norm

from .exceptions import InvalidPricingInput, NumericalInstability
from .models import ContractType, Greeks, PriceAndGreeks


# ════════════════════════════════════════════════════════════════════════
#  VALIDATION
# ════════════════════════════════════════════════════════════════════════

def _require_positive(name: str, value: float) -> None:
    if value is None or not math.isfinite(value) or value <= 0:
        raise InvalidPricingInput(name, value)


def _require_finite(name: str, value: float) -> None:
    if value is None or not math.isfinite(value):
        raise InvalidPricingInput(name, value, "must be finite")


def validate_inputs(S: float, K: float, T: float, r: float, sigma: float, q: float = 0.0) -> None:
    """Raise InvalidPricingInput for the first argument that violates its precondition."""
    _require_positive("spot", S)
    _require_positive("strike", K)
    _require_positive("time_to_expiry", T)
    _require_finite("risk_free_rate", r)
    _require_positive("volatility", sigma)
    _require_finite("dividend_yield", q)


def _cdf(x: float) -> float:
    # norm.cdf already maps +/-inf to 1/0; clip guards against rounding outside [0, 1]
    return float(np.clip(norm.cdf(x), 0.0, 1.0))


# ════════════════════════════════════════════════════════════════════════
#  PRICING
# ════════════════════════════════════════════════════════════════════════

def _standardized(S: float, K: float, T: float, r: float, sigma: float, q: float,
                  half_var_sign: float) -> float:
    # (log(S/K) + (r - q +/- sigma^2/2) T) / (sigma sqrt(T))
    vol_sqrt_t = sigma * np.sqrt(T)
    with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
        numerator = np.log(S / K) + (r - q + half_var_sign * 0.5 * sigma * sigma) * T
        value = numerator / vol_sqrt_t
    if np.isnan(value):
        if np.isinf(numerator):
            # inf/inf: sigma so large that the variance term dominates
            return math.copysign(math.inf, half_var_sign)
        # 0/0: at the forward with vanishing sigma*sqrt(T)
        return 0.0
    return float(value)


def d1(S: float, K: float, T: float, r: float, sigma: float, q: float = 0.0) -> float:
    """
    Compute d1 in the Black-Scholes formula.

    Parameters
    ----------
    S : spot price
    K : strike price
    T : time to expiry in years
    r : risk-free rate (annualized, continuous compounding)
    sigma : volatility (annualized)
    q : continuous dividend yield (default 0)

    Returns
    -------
    float : may be +/-inf when sigma*sqrt(T) underflows or sigma^2*T overflows
    """
    return _standardized(S, K, T, r, sigma, q, 1.0)


def d2(S: float, K: float, T: float, r: float, sigma: float, q: float = 0.0) -> float:
    """
    Compute d2 = d1 - sigma * sqrt(T).

    Evaluated from its own numerator rather than by subtraction, so an
    overflowing variance sends d1 to +inf and d2 to -inf.
    """
    return _standardized(S, K, T, r, sigma, q, -1.0)


def call_price(S: float, K: float, T: float, r: float, sigma: float, q: float = 0.0) -> float:
    """
    European call price under Black-Scholes-Merton.

    Accounts for continuous dividend yield q, which makes this
    BSM rather than plain BS. For non-dividend-paying underlyings
    just leave q=0.
    """
    validate_inputs(S, K, T, r, sigma, q)
    _d1 = d1(S, K, T, r, sigma, q)
    _d2 = d2(S, K, T, r, sigma, q)
    return S * math.exp(-q * T) * _cdf(_d1) - K * math.exp(-r * T) * _cdf(_d2)


def put_price(S: float, K: float, T: float, r: float, sigma: float, q: float = 0.0) -> float:
    """
    European put price under Black-Scholes-Merton.

        P = K * e^{-rT} * N(-d2) - S * e^{-qT} * N(-d1)
    """
    validate_inputs(S, K, T, r, sigma, q)
    _d1 = d1(S, K, T, r, sigma, q)
    _d2 = d2(S, K, T, r, sigma, q)
    return K * math.exp(-r * T) * _cdf(-_d2) - S * math.exp(-q * T) * _cdf(-_d1)


def bs_price(S: float, K: float, T: float, r: float, sigma: float,
             option_type="call", q: float = 0.0) -> float:
    """Dispatch to call_price or put_price based on option_type."""
    if ContractType.parse(option_type).is_call:
        return call_price(S, K, T, r, sigma, q)
    return put_price(S, K, T, r, sigma, q)


def no_arbitrage_bounds(S: float, K: float, T: float, r: float,
                        option_type="call", q: float = 0.0) -> Tuple[float, float]:
    """
    Model-free bounds on a European option price.

    Call: max(S*e^{-qT} - K*e^{-rT}, 0) <= C <= S*e^{-qT}
    Put:  max(K*e^{-rT} - S*e^{-qT}, 0) <= P <= K*e^{-rT}
    """
    fwd_spot = S * math.exp(-q * T)
    pv_strike = K * math.exp(-r * T)
    if ContractType.parse(option_type).is_call:
        return max(fwd_spot - pv_strike, 0.0), fwd_spot
    return max(pv_strike - fwd_spot, 0.0), pv_strike


# ════════════════════════════════════════════════════════════════════════
#  GREEKS
# ════════════════════════════════════════════════════════════════════════

def delta(S: float, K: float, T: float, r: float, sigma: float,
          option_type="call", q: float = 0.0) -> float:
    """
    Option delta: dV/dS.

    Call delta is in [0, e^{-qT}]; put delta is in [-e^{-qT}, 0].
    Near expiry, delta approaches a step function at the strike.
    """
    validate_inputs(S, K, T, r, sigma, q)
    _d1 = d1(S, K, T, r, sigma, q)
    if ContractType.parse(option_type).is_call:
        return math.exp(-q * T) * _cdf(_d1)
    return -math.exp(-q * T) * _cdf(-_d1)


def gamma(S: float, K: float, T: float, r: float, sigma: float, q: float = 0.0) -> float:
    """
    Option gamma: d²V/dS².

    Same for calls and puts (by put-call parity). Peaks at ATM
    and increases as T → 0 — this is the "gamma risk" that makes
    short-dated option selling dangerous.
    """
    validate_inputs(S, K, T, r, sigma, q)
    _d1 = d1(S, K, T, r, sigma, q)
    return math.exp(-q * T) * float(norm.pdf(_d1)) / (S * sigma * math.sqrt(T))


def vega(S: float, K: float, T: float, r: float, sigma: float, q: float = 0.0) -> float:
    """
    Option vega: dV/dσ.

    Returns the sensitivity per 1 unit (100%) change in vol.
    Divide by 100 to get sensitivity per 1% vol change.
    Same for calls and puts.
    """
    validate_inputs(S, K, T, r, sigma, q)
    _d1 = d1(S, K, T, r, sigma, q)
    return S * math.exp(-q * T) * float(norm.pdf(_d1)) * math.sqrt(T)


def theta(S: float, K: float, T: float, r: float, sigma: float,
          option_type="call", q: float = 0.0) -> float:
    """
    Option theta: dV/dt (time decay per year).

    Divide by 365 for daily theta. Typically negative for long
    positions — options lose value as time passes, all else equal.
    """
    validate_inputs(S, K, T, r, sigma, q)
    _d1 = d1(S, K, T, r, sigma, q)
    _d2 = d2(S, K, T, r, sigma, q)
    return _theta(S, K, T, r, sigma, q, _d1, _d2, ContractType.parse(option_type).is_call)


def rho(S: float, K: float, T: float, r: float, sigma: float,
        option_type="call", q: float = 0.0) -> float:
    """
    Option rho: dV/dr.

    Sensitivity to interest rate changes. Usually small for
    short-dated options but matters for LEAPS.
    """
    validate_inputs(S, K, T, r, sigma, q)
    _d2 = d2(S, K, T, r, sigma, q)
    if ContractType.parse(option_type).is_call:
        return K * T * math.exp(-r * T) * _cdf(_d2)
    return -K * T * math.exp(-r * T) * _cdf(-_d2)


def _theta(S, K, T, r, sigma, q, _d1, _d2, is_call):
    # common term: time decay from gamma
    time_decay = -(S * math.exp(-q * T) * float(norm.pdf(_d1)) * sigma) / (2 * math.sqrt(T))
    if is_call:
        return (time_decay
                + q * S * math.exp(-q * T) * _cdf(_d1)
                - r * K * math.exp(-r * T) * _cdf(_d2))
    return (time_decay
            - q * S * math.exp(-q * T) * _cdf(-_d1)
            + r * K * math.exp(-r * T) * _cdf(-_d2))


# ════════════════════════════════════════════════════════════════════════
#  PRICE + GREEKS IN ONE PASS
# ════════════════════════════════════════════════════════════════════════

def price_and_greeks(
    spot: float,
    strike: float,
    time_to_expiry: float,
    risk_free_rate: float,
    volatility: float,
    contract_type,
    dividend_yield: float = 0.0,
) -> PriceAndGreeks:
    """
    Price a European option and its first-order greeks.

    d1/d2 and the normal terms are evaluated once and shared across the
    price and all five greeks.

    Raises
    ------
    InvalidPricingInput : a precondition is violated (names the field)
    NumericalInstability : any output came out NaN or infinite
    """
    S, K, T, r, sigma, q = spot, strike, time_to_expiry, risk_free_rate, volatility, dividend_yield
    validate_inputs(S, K, T, r, sigma, q)
    is_call = ContractType.parse(contract_type).is_call

    _d1 = d1(S, K, T, r, sigma, q)
    _d2 = d2(S, K, T, r, sigma, q)
    div_disc = math.exp(-q * T)
    rate_disc = math.exp(-r * T)
    pdf_d1 = float(norm.pdf(_d1))
    sqrt_t = math.sqrt(T)

    if is_call:
        price = S * div_disc * _cdf(_d1) - K * rate_disc * _cdf(_d2)
        _delta = div_disc * _cdf(_d1)
        _rho = K * T * rate_disc * _cdf(_d2)
    else:
        price = K * rate_disc * _cdf(-_d2) - S * div_disc * _cdf(-_d1)
        _delta = -div_disc * _cdf(-_d1)
        _rho = -K * T * rate_disc * _cdf(-_d2)

    greeks = Greeks(
        delta=_delta,
        gamma=div_disc * pdf_d1 / (S * sigma * sqrt_t),
        theta=_theta(S, K, T, r, sigma, q, _d1, _d2, is_call),
        vega=S * div_disc * pdf_d1 * sqrt_t,
        rho=_rho,
    )

    values = {"price": price, **asdict(greeks)}
    bad = [name for name, v in values.items() if not math.isfinite(v)]
    if bad:
        raise NumericalInstability(f"non-finite {', '.join(bad)} for S={S} K={K} T={T} sigma={sigma}")

    # rounding can leave a deep OTM price a hair below zero
    return PriceAndGreeks(price=max(price, 0.0), greeks=greeks)
