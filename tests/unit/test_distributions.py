"""
Tests for distribution helpers and p-value adjustments.
"""

import numpy as np
import pytest

from lmmtour.stats.distributions import (
    adjust_pvalues,
    chi2_pvalue,
    f_pvalue,
    t_ppf,
    t_pvalue,
    tukey_pvalue,
)


class TestQuantilesAndPvalues:
    def test_t_ppf(self):
        assert t_ppf(0.975, 10) == pytest.approx(2.228139, abs=1e-6)

    def test_t_ppf_asymptotic(self):
        assert t_ppf(0.975, np.inf) == pytest.approx(1.959964, abs=1e-6)

    def test_t_pvalue(self):
        assert float(t_pvalue(1.959964, np.inf)) == pytest.approx(0.05, abs=1e-6)
        assert float(t_pvalue(-2.228139, 10)) == pytest.approx(0.05, abs=1e-6)

    def test_t_pvalue_vectorised(self):
        p = t_pvalue(np.array([0.0, 10.0]), 20)
        assert p[0] == pytest.approx(1.0)
        assert p[1] < 1e-8

    def test_f_pvalue(self):
        assert f_pvalue(4.964603, 1, 10) == pytest.approx(0.05, abs=1e-6)
        assert np.isnan(f_pvalue(2.0, 1, 0))
        assert np.isnan(f_pvalue(np.nan, 1, 10))

    def test_chi2_pvalue(self):
        assert chi2_pvalue(3.841459, 1) == pytest.approx(0.05, abs=1e-6)
        assert chi2_pvalue(-0.1, 1) == pytest.approx(1.0)
        assert np.isnan(chi2_pvalue(1.0, 0))


class TestTukey:
    def test_two_levels_is_t_test(self):
        assert tukey_pvalue(2.1, 2, 30) == pytest.approx(float(t_pvalue(2.1, 30)))

    def test_more_levels_is_more_conservative(self):
        assert tukey_pvalue(2.1, 4, 30) > tukey_pvalue(2.1, 3, 30) > float(t_pvalue(2.1, 30))

    def test_single_level(self):
        assert np.isnan(tukey_pvalue(1.0, 1, 10))


class TestAdjustPvalues:
    def test_none(self):
        p = np.array([0.01, 0.04, 0.5])
        np.testing.assert_allclose(adjust_pvalues(p, "none"), p)

    def test_bonferroni(self):
        np.testing.assert_allclose(adjust_pvalues([0.01, 0.04, 0.5], "bonferroni"), [0.03, 0.12, 1.0])

    def test_holm(self):
        np.testing.assert_allclose(adjust_pvalues([0.04, 0.01, 0.5], "holm"), [0.08, 0.03, 0.5])

    def test_holm_is_monotone(self):
        np.testing.assert_allclose(adjust_pvalues([0.02, 0.021, 0.022], "holm"), [0.06, 0.06, 0.06])

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown p-value adjustment"):
            adjust_pvalues([0.1], "sidak")

    def test_empty(self):
        assert len(adjust_pvalues([], "holm")) == 0
