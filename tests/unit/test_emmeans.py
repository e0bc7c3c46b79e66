"""
Tests for estimated marginal means, trends and pairwise contrasts.
"""

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from lmmtour import lm
from lmmtour.stats.emmeans import emmeans, emtrends, pairwise, reference_grid
from tests.config import ATOL_EXACT


class TestReferenceGrid:
    def test_factor_levels_and_covariate_mean(self, factor_data):
        fit = lm("y ~ x * g", factor_data)
        grid = reference_grid(fit)
        assert list(grid.columns) == ["x", "g"]
        assert list(grid["g"]) == ["A", "B", "C"]
        np.testing.assert_allclose(grid["x"], factor_data["x"].mean())

    def test_at_values(self, factor_data):
        fit = lm("y ~ x * g", factor_data)
        grid = reference_grid(fit, at={"x": [0.0, 1.0], "g": "B"})
        assert len(grid) == 2
        assert set(grid["g"]) == {"B"}

    def test_at_unknown_variable(self, factor_data):
        with pytest.raises(ValueError, match="not in the model"):
            reference_grid(lm("y ~ g", factor_data), at={"z": 1.0})

    def test_at_unknown_level(self, factor_data):
        with pytest.raises(ValueError, match="Unknown levels"):
            reference_grid(lm("y ~ g", factor_data), at={"g": ["D"]})


class TestEmmeans:
    def test_one_way_means_equal_group_means(self, factor_data):
        fit = lm("y ~ g", factor_data)
        emm = emmeans(fit, "g")
        group_means = factor_data.groupby("g")["y"].mean()

        assert len(emm) == 3
        assert list(emm.table.columns) == ["g", "emmean", "SE", "df", "lower.CL", "upper.CL"]
        np.testing.assert_allclose(emm.estimates, group_means.to_numpy(), atol=ATOL_EXACT)
        np.testing.assert_allclose(emm.table["SE"], fit.sigma / np.sqrt(30), atol=ATOL_EXACT)
        assert emm.df == 87

    def test_equal_weights_over_other_factor(self, factor_data):
        data = factor_data.iloc[5:].reset_index(drop=True)
        fit = lm("y ~ g + h", data)
        emm = emmeans(fit, "g")
        manual = fit.predict(pd.DataFrame({"g": ["A", "A"], "h": ["u", "v"]})).mean()
        assert emm.estimates[0] == pytest.approx(manual)

    def test_by(self, factor_data):
        fit = lm("y ~ g * h", factor_data)
        emm = emmeans(fit, "g", by="h")
        assert len(emm) == 6
        assert emm.by == ["h"]
        assert list(emm.table.columns[:2]) == ["g", "h"]

    def test_level_widens_intervals(self, factor_data):
        fit = lm("y ~ g", factor_data)
        narrow = emmeans(fit, "g", level=0.9).table
        wide = emmeans(fit, "g", level=0.99).table
        assert ((wide["upper.CL"] - wide["lower.CL"]) > (narrow["upper.CL"] - narrow["lower.CL"])).all()

    def test_invalid_level(self, factor_data):
        with pytest.raises(ValueError, match="level must be between 0 and 1"):
            emmeans(lm("y ~ g", factor_data), "g", level=95)

    def test_unknown_spec(self, factor_data):
        with pytest.raises(ValueError, match="not a predictor"):
            emmeans(lm("y ~ g", factor_data), "h")

    def test_spec_and_by_overlap(self, factor_data):
        with pytest.raises(ValueError, match="both specs and by"):
            emmeans(lm("y ~ g * h", factor_data), "g", by="g")


class TestEmtrends:
    def test_slopes_per_level(self, factor_data):
        fit = lm("y ~ x * g", factor_data)
        trends = emtrends(fit, "g", "x")
        b = fit.params
        expected = [b["x"], b["x"] + b["x:g[B]"], b["x"] + b["x:g[C]"]]

        assert trends.estimate_name == "x.trend"
        np.testing.assert_allclose(trends.estimates, expected, atol=1e-6)

    def test_simple_slopes_at_moderator_values(self, simple_data):
        rng = np.random.default_rng(5)
        data = simple_data.assign(z=rng.normal(size=len(simple_data)))
        data["y"] = data["y"] + 0.3 * data["x"] * data["z"]
        fit = lm("y ~ x * z", data)
        trends = emtrends(fit, "z", "x", at={"z": [-1.0, 0.0, 1.0]})

        b = fit.params
        np.testing.assert_allclose(trends.estimates, [b["x"] - b["x:z"], b["x"], b["x"] + b["x:z"]], atol=1e-6)

    def test_factor_variable_rejected(self, factor_data):
        with pytest.raises(ValueError, match="is a factor"):
            emtrends(lm("y ~ x * g", factor_data), "g", "g")


class TestPairwise:
    def test_labels_and_estimates(self, factor_data):
        emm = emmeans(lm("y ~ g", factor_data), "g")
        contrasts = pairwise(emm, adjust="none")
        means = emm.estimates

        assert list(contrasts["contrast"]) == ["A - B", "A - C", "B - C"]
        assert list(contrasts.columns) == ["contrast", "estimate", "SE", "df", "t.ratio", "p.value"]
        np.testing.assert_allclose(contrasts["estimate"], [means[0] - means[1], means[0] - means[2], means[1] - means[2]])

    def test_tukey_matches_scipy(self, factor_data):
        emm = emmeans(lm("y ~ g", factor_data), "g")
        contrasts = pairwise(emm, adjust="tukey")
        groups = [factor_data.loc[factor_data["g"] == g, "y"] for g in ["A", "B", "C"]]
        reference = stats.tukey_hsd(*groups).pvalue

        np.testing.assert_allclose(
            contrasts["p.value"], [reference[0, 1], reference[0, 2], reference[1, 2]], atol=1e-3
        )

    def test_bonferroni(self, factor_data):
        emm = emmeans(lm("y ~ g", factor_data), "g")
        raw = pairwise(emm, adjust="none")["p.value"]
        adjusted = pairwise(emm, adjust="bonferroni")["p.value"]
        np.testing.assert_allclose(adjusted, np.minimum(3 * raw, 1.0))

    def test_within_by_groups(self, factor_data):
        emm = emmeans(lm("y ~ g * h", factor_data), "g", by="h")
        contrasts = pairwise(emm)
        assert len(contrasts) == 6
        assert list(contrasts["h"]) == ["u", "u", "u", "v", "v", "v"]

    def test_trend_contrasts(self, factor_data):
        fit = lm("y ~ x * g", factor_data)
        contrasts = pairwise(emtrends(fit, "g", "x"), adjust="holm")
        assert contrasts.loc[0, "estimate"] == pytest.approx(-fit.params["x:g[B]"], abs=1e-6)

    def test_unknown_adjustment(self, factor_data):
        emm = emmeans(lm("y ~ g", factor_data), "g")
        with pytest.raises(ValueError, match="Unknown adjustment"):
            pairwise(emm, adjust="scheffe")
