"""
Stochastic Volatility Inspired (SVI) parameterization.

The SVI model (Gatheral, 2004) parameterizes total implied variance
w(k) as a function of log-moneyness k = ln(K/F):

    w(k) = a + b * (rho * (k - m) + sqrt((k - m)^2 + sigma^2))

where:
    a     = overall variance level
    b     = slope of the wings
    rho   = rotation / skew (-1 < rho < 1)
    m     = translation (shifts the minimum)
    sigma = curvature / ATM smile

The raw form above is not evaluated directly. This module provides a
reduced smile, a second-order expansion of SVI around the money
(level + skew * m + curvature * m^2, each term decaying with maturity),
and a generator that samples it into realistic SPY-like smiles.

The synthetic quote source prices its bid/ask off the generator, so an
offline run produces a surface with the qualitative features of a real
equity index: negative skew, steeper at short maturities, smile
curvature at the wings, and term structure flattening.

References:
    Gatheral, J. (2004). A parsimonious arbitrage-free implied volatility
    parameterization with application to the valuation of volatility derivatives.
    Gatheral, J. & Jacquier, A. (2014). Arbitrage-free SVI volatility surfaces.
"""

from typing import Optional

import numpy as np
import pandas as pd

from . import config


# ════════════════════════════════════════════════════════════════════════
#  SIMPLIFIED GENERATOR (tuned for SPY-like surfaces)
# ════════════════════════════════════════════════════════════════════════

def reduced_form_vol(log_moneyness, T: float):
    """
    Smile value at log-moneyness m and maturity T, before noise.

    Three components, each a long-run "base" plus a short-maturity boost
    that decays exponentially (parameters in config.py):

        1. ATM level:    decays with maturity (term structure)
        2. Skew:         steeper at short maturities (gamma concentration)
        3. Curvature:    wings lift at all maturities (fat tails / smile)

    iv = atm + skew * m + smile * m^2 is the second-order Taylor expansion
    of the full SVI formula around the ATM point.
    """
    atm_vol = config.SVI_ATM_BASE + config.SVI_ATM_DECAY * np.exp(-config.SVI_ATM_LAMBDA * T)
    skew_coeff = config.SVI_SKEW_SHORT * np.exp(-config.SVI_SKEW_LAMBDA * T) + config.SVI_SKEW_BASE
    smile_coeff = config.SVI_SMILE_SHORT * np.exp(-config.SVI_SMILE_LAMBDA * T) + config.SVI_SMILE_BASE
    return atm_vol + skew_coeff * log_moneyness + smile_coeff * log_moneyness**2


def generate_svi_surface(
    S: float = 602.0,
    maturities: Optional[np.ndarray] = None,
    strikes: Optional[np.ndarray] = None,
    seed: Optional[int] = None,
    noise_std: Optional[float] = None,
) -> pd.DataFrame:
    """
    Generate a realistic implied volatility grid from the reduced-form smile.

    Parameters
    ----------
    S : spot price (default: 602, approx SPY level)
    maturities : array of T values (years). Default: 10 points from 1wk to 2yr
    strikes : array of absolute strikes. Default: 2.5 spacing around 0.75S..1.25S
    seed : random seed for micro-noise (default: config.SEED)
    noise_std : std of the micro-noise (default: config.SVI_NOISE_STD), 0 = off

    Returns
    -------
    df : DataFrame with columns [strike, T, iv, moneyness, log_moneyness]
    """
    rng = np.random.default_rng(config.SEED if seed is None else seed)
    if noise_std is None:
        noise_std = config.SVI_NOISE_STD

    if maturities is None:
        maturities = np.array([0.02, 0.04, 0.08, 0.17, 0.25, 0.50, 0.75, 1.0, 1.5, 2.0])

    if strikes is None:
        strikes = np.arange(
            S * (1 - config.MONEYNESS_BOUND) - 10,
            S * (1 + config.MONEYNESS_BOUND) + 10,
            config.SVI_STRIKE_STEP,
        )

    rows = []
    for T in maturities:
        for K in strikes:
            m = np.log(K / S)  # log-moneyness
            # moneyness filter
            if abs(m) > config.MONEYNESS_BOUND:
                continue

            iv = reduced_form_vol(m, T)
            # add micro-noise for realism (real IV grids are never perfectly smooth)
            if noise_std > 0:
                iv += rng.normal(0, noise_std)
            iv = float(np.clip(iv, config.MIN_IV, config.MAX_IV))

            rows.append({
                "strike": float(K),
                "T": float(T),
                "iv": iv,
                "moneyness": K / S,
                "log_moneyness": m,
            })

    return pd.DataFrame(rows, columns=["strike", "T", "iv", "moneyness", "log_moneyness"])
