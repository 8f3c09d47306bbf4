"""
Tests for SVI parameterization and the synthetic smile generator.
"""

import pytest
import numpy as np

from volsurf import config
from volsurf.svi_calibration import (
    generate_svi_surface,
    reduced_form_vol,
)


class TestReducedForm:

    def test_atm_term_structure_decays(self):
        assert reduced_form_vol(0.0, 0.05) > reduced_form_vol(0.0, 2.0)
        assert reduced_form_vol(0.0, 50.0) == pytest.approx(config.SVI_ATM_BASE, abs=1e-6)

    def test_skew_steeper_at_short_maturity(self):
        def skew(T):
            return reduced_form_vol(-0.1, T) - reduced_form_vol(0.1, T)

        assert skew(0.05) > skew(1.0) > 0


class TestSVIGeneration:

    def test_generates_dataframe(self):
        df = generate_svi_surface(S=600.0, seed=42)
        assert len(df) > 100
        assert list(df.columns) == ["strike", "T", "iv", "moneyness", "log_moneyness"]

    def test_iv_range_realistic(self):
        df = generate_svi_surface(S=600.0, seed=42)
        assert df["iv"].min() >= config.MIN_IV
        assert df["iv"].max() < 1.0

    def test_moneyness_bound_respected(self):
        df = generate_svi_surface(S=600.0, seed=42)
        assert df["log_moneyness"].abs().max() <= config.MONEYNESS_BOUND

    def test_negative_skew_present(self):
        """Lower strikes should have higher IV (negative skew)."""
        df = generate_svi_surface(S=600.0, seed=42)
        short = df[df["T"] == df["T"].min()].sort_values("strike")
        n = len(short) // 4
        assert short.head(n)["iv"].mean() > short.tail(n)["iv"].mean(), "Negative skew not present"

    def test_reproducibility(self):
        """Same seed should produce identical results."""
        df1 = generate_svi_surface(S=600.0, seed=123)
        df2 = generate_svi_surface(S=600.0, seed=123)
        np.testing.assert_array_equal(df1["iv"].values, df2["iv"].values)

    def test_different_seeds_differ(self):
        df1 = generate_svi_surface(S=600.0, seed=1)
        df2 = generate_svi_surface(S=600.0, seed=2)
        assert not np.allclose(df1["iv"].values, df2["iv"].values)

    def test_noise_free_matches_reduced_form(self):
        df = generate_svi_surface(S=600.0, maturities=np.array([0.25]), noise_std=0.0)
        expected = reduced_form_vol(df["log_moneyness"].values, 0.25)
        np.testing.assert_allclose(df["iv"].values, expected, atol=1e-12)

    def test_custom_strikes(self):
        df = generate_svi_surface(S=100.0, maturities=np.array([0.5, 1.0]),
                                  strikes=np.array([90.0, 100.0, 110.0]))
        assert len(df) == 6
        assert sorted(df["strike"].unique()) == [90.0, 100.0, 110.0]
