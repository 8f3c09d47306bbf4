"""
Tests for the implied volatility solver.

Covers: round trips across vols and moneyness, the arbitrage policy,
bracket edges, the newton -> bisection fallback, and the batch solver.
"""

import pandas as pd
import pytest
import numpy as np

from volsurf.black_scholes import call_price, put_price, price_and_greeks
from volsurf.exceptions import ArbitrageViolation, InvalidPricingInput, SolverNonConvergence
from volsurf.implied_vol import initial_vol_guess, require_converged, solve, solve_batch
from volsurf.models import ContractType

S = 600.0
K = 600.0
T = 0.25
r = 0.05
sigma = 0.20
q = 0.013


class TestRoundTrip:
    """Price at a known vol, invert, recover the vol."""

    def test_reference_scenario(self):
        price = price_and_greeks(100.0, 100.0, 1.0, 0.03, 0.20, "call").price
        res = solve(price, 100.0, 100.0, 1.0, 0.03, "call")
        assert res.converged
        assert res.volatility == pytest.approx(0.20, abs=1e-4)

    def test_iv_round_trip_call(self):
        price = call_price(S, K, T, r, sigma, q)
        res = solve(price, S, K, T, r, "call", dividend_yield=q)
        assert res.converged
        assert abs(res.volatility - sigma) < 1e-6

    def test_iv_round_trip_put(self):
        price = put_price(S, K, T, r, sigma, q)
        res = solve(price, S, K, T, r, "put", dividend_yield=q)
        assert abs(res.volatility - sigma) < 1e-6

    def test_iv_round_trip_various_vols(self):
        for test_sigma in [0.05, 0.10, 0.25, 0.50, 1.0, 2.0]:
            price = call_price(S, K, T, r, test_sigma, q)
            res = solve(price, S, K, T, r, "call", dividend_yield=q)
            assert res.converged
            assert abs(res.volatility - test_sigma) < 1e-5, \
                f"Round-trip failed for sigma={test_sigma}: got {res.volatility}"

    def test_iv_round_trip_otm(self):
        for K_test in [500, 550, 650, 700]:
            kind = "put" if K_test < S else "call"
            price = price_and_greeks(S, K_test, T, r, 0.25, kind).price
            res = solve(price, S, K_test, T, r, kind)
            assert res.converged
            assert abs(res.volatility - 0.25) < 1e-4

    def test_result_carries_identity_and_greeks(self):
        price = call_price(S, 620.0, T, r, sigma)
        res = solve(price, S, 620.0, T, r, ContractType.CALL, contract_symbol="SPY240402C00620000")
        assert res.strike == 620.0
        assert res.contract_type is ContractType.CALL
        assert res.contract_symbol == "SPY240402C00620000"
        assert 0 < res.delta < 1
        assert res.vega > 0
        assert abs(res.residual) < 1e-6
        assert res.total_variance == pytest.approx(res.volatility ** 2 * T)


class TestArbitrage:
    """Prices outside the model-free bounds raise."""

    def test_call_below_intrinsic(self):
        with pytest.raises(ArbitrageViolation) as exc_info:
            solve(5.00, 100.0, 90.0, 1.0, 0.03, "call")
        assert exc_info.value.lower > 5.00

    def test_call_above_spot(self):
        with pytest.raises(ArbitrageViolation):
            solve(101.0, 100.0, 90.0, 1.0, 0.03, "call")

    def test_put_above_discounted_strike(self):
        with pytest.raises(ArbitrageViolation):
            solve(99.0, 100.0, 100.0, 1.0, 0.03, "put")

    def test_not_retryable(self):
        assert ArbitrageViolation.retryable is False


class TestInputs:

    @pytest.mark.parametrize("price", [0.0, -5.0, float("nan")])
    def test_non_positive_price(self, price):
        with pytest.raises(InvalidPricingInput) as exc_info:
            solve(price, S, K, T, r, "put")
        assert exc_info.value.field == "observed_price"

    def test_expired(self):
        with pytest.raises(InvalidPricingInput):
            solve(10.0, S, K, 0, r, "put")

    def test_initial_guess_atm(self):
        """Brenner-Subrahmanyam recovers ATM vol to first order."""
        price = call_price(100.0, 100.0, 1.0, 0.0, 0.2)
        assert initial_vol_guess(price, 100.0, 100.0, 1.0, "call") == pytest.approx(0.2, abs=0.01)

    def test_initial_guess_outside_band(self):
        assert initial_vol_guess(1.0, 100.0, 300.0, 1.0, "call") == 0.3


class TestSolverStates:
    """Bracket edges, bisection fallback, exhausted budget."""

    def test_price_above_bracket_stops_at_edge(self):
        """A price the top of the bracket cannot reach returns vol_upper, unconverged."""
        res = solve(99.5, 100.0, 100.0, 1.0, 0.03, "call")
        assert res.volatility == 5.0
        assert res.iterations == 0
        assert not res.converged

    def test_bad_seed_falls_back_to_bisection(self):
        price = call_price(S, K, T, r, sigma)
        res = solve(price, S, K, T, r, "call", initial_guess=4.9)
        assert res.converged
        assert abs(res.volatility - sigma) < 1e-4

    def test_iteration_budget(self):
        price = call_price(S, K, T, r, sigma)
        res = solve(price, S, K, T, r, "call", initial_guess=4.9, max_iter=3)
        assert not res.converged
        assert res.iterations == 3

    def test_require_converged(self):
        price = call_price(S, K, T, r, sigma)
        ok = solve(price, S, K, T, r, "call")
        assert require_converged(ok) is ok
        bad = solve(price, S, K, T, r, "call", initial_guess=4.9, max_iter=2)
        with pytest.raises(SolverNonConvergence):
            require_converged(bad)

    def test_deterministic(self):
        price = put_price(S, 570.0, T, r, 0.27)
        assert solve(price, S, 570.0, T, r, "put") == solve(price, S, 570.0, T, r, "put")


class TestBatch:

    def test_solve_batch(self):
        df = pd.DataFrame({
            "price": [call_price(S, 620.0, T, r, 0.18), put_price(S, 580.0, T, r, 0.22), 0.01],
            "strike": [620.0, 580.0, 400.0],
            "T": [T, T, T],
            "option_type": ["call", "put", "call"],
        })
        out = solve_batch(df, S, r)
        assert list(out.columns[-4:]) == ["iv", "converged", "iterations", "error"]
        assert out["iv"].iloc[0] == pytest.approx(0.18, abs=1e-5)
        assert out["iv"].iloc[1] == pytest.approx(0.22, abs=1e-5)
        assert np.isnan(out["iv"].iloc[2])
        assert out["error"].iloc[2] == "ArbitrageViolation"
        assert out["error"].iloc[0] is None
