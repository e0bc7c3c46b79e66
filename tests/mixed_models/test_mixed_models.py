"""
Tests for linear mixed model fitting (statsmodels MixedLM wrapper).

Checks the wrapper against a direct statsmodels fit and the lme4-style
views: variance components, ICC, BLUPs, per-group coefficients and
prediction for new groups.
"""

import warnings
from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from lmmtour import lm, lmer
from tests.config import ATOL_OPTIMIZER, CLUSTER_SIZE, N_CLUSTERS

pytestmark = pytest.mark.lme


def _statsmodels_fit(data, formula, groups, re_formula=None, reml=True):
    import statsmodels.formula.api as smf

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return smf.mixedlm(formula, data, groups=data[groups], re_formula=re_formula).fit(reml=reml, method="lbfgs")


class TestRandomIntercept:
    def test_matches_statsmodels(self, clustered_data):
        fit = lmer("score ~ x + (1 | school)", clustered_data)
        reference = _statsmodels_fit(clustered_data, "score ~ x", "school")

        np.testing.assert_allclose(fit.coef, reference.fe_params.to_numpy(), atol=10 * ATOL_OPTIMIZER)
        assert fit.sigma2 == pytest.approx(reference.scale, rel=1e-3)
        assert fit.cov_re[0, 0] == pytest.approx(float(reference.cov_re.iloc[0, 0]), rel=1e-2)

    def test_column_names_and_groups(self, clustered_data):
        fit = lmer("score ~ x + (1 | school)", clustered_data)
        assert fit.column_names == ["(Intercept)", "x"]
        assert fit.re_names == ["(Intercept)"]
        assert fit.n_groups == N_CLUSTERS
        assert fit.nobs == N_CLUSTERS * CLUSTER_SIZE
        assert fit.group_names[0] == "school01"

    def test_varcorr(self, clustered_data):
        fit = lmer("score ~ x + (1 | school)", clustered_data)
        varcorr = fit.varcorr()

        assert list(varcorr.columns) == ["Groups", "Name", "Variance", "Std.Dev."]
        assert list(varcorr["Groups"]) == ["school", "Residual"]
        np.testing.assert_allclose(varcorr["Std.Dev."] ** 2, varcorr["Variance"])

    def test_icc(self, clustered_data):
        fit = lmer("score ~ x + (1 | school)", clustered_data)
        tau2 = fit.cov_re[0, 0]
        assert fit.icc == pytest.approx(tau2 / (tau2 + fit.sigma2))
        # intercept SD 1.5 against residual SD 1: true ICC = 2.25 / 3.25
        assert 0.4 < fit.icc < 0.9

    def test_fixed_effects_near_truth(self, clustered_data):
        fit = lmer("score ~ x + (1 | school)", clustered_data)
        ci = fit.confint()
        assert ci.loc["x", "2.5 %"] < 0.5 < ci.loc["x", "97.5 %"]
        assert ci.loc["(Intercept)", "2.5 %"] < 50.0 < ci.loc["(Intercept)", "97.5 %"]

    def test_mixed_se_larger_than_ols_for_intercept(self, clustered_data):
        mixed = lmer("score ~ x + (1 | school)", clustered_data)
        ols = lm("score ~ x", clustered_data)
        assert mixed.bse[0] > ols.bse[0]

    def test_coefficient_table_is_asymptotic(self, clustered_data):
        fit = lmer("score ~ x + (1 | school)", clustered_data)
        assert np.isinf(fit.df)
        assert list(fit.coefficients.columns) == ["Estimate", "Std. Error", "z value", "Pr(>|z|)"]

    def test_summary(self, clustered_data):
        text = lmer("score ~ x + (1 | school)", clustered_data).summary()
        assert text.startswith("Linear mixed model fit by REML")
        assert "Number of obs: 200, groups:  school, 20" in text
        assert "Random effects:" in text
        assert "Fixed effects:" in text

    def test_ml_summary(self, clustered_data):
        text = lmer("score ~ x + (1 | school)", clustered_data, reml=False).summary()
        assert text.startswith("Linear mixed model fit by maximum likelihood")
        assert "logLik" in text

    def test_blups_sum_near_zero(self, clustered_data):
        ranef = lmer("score ~ x + (1 | school)", clustered_data).ranef()
        assert ranef.shape == (N_CLUSTERS, 1)
        assert abs(ranef["(Intercept)"].mean()) < 0.1

    def test_fitted_decomposition(self, clustered_data):
        fit = lmer("score ~ x + (1 | school)", clustered_data)
        np.testing.assert_allclose(fit.fitted + fit.residuals, clustered_data["score"].to_numpy())
        np.testing.assert_allclose(fit.predict(include_random=False), fit.fitted_fixed)

    def test_lmer_requires_random_term(self, clustered_data):
        with pytest.raises(ValueError, match="random-effect term"):
            lmer("score ~ x", clustered_data)

    def test_missing_grouping_column(self, clustered_data):
        with pytest.raises(ValueError, match="Grouping variable 'class'"):
            lmer("score ~ x + (1 | class)", clustered_data)


class TestRandomSlope:
    @pytest.fixture
    def slope_data(self, random_slope_model):
        return random_slope_model.simulate(150)

    def test_random_effect_structure(self, slope_data):
        fit = lmer("y ~ time + (1 + time | subject)", slope_data)
        assert fit.re_names == ["(Intercept)", "time"]
        assert fit.cov_re.shape == (2, 2)
        assert np.isnan(fit.icc)

        varcorr = fit.varcorr()
        assert list(varcorr["Name"]) == ["(Intercept)", "time", ""]

    def test_coef_by_group(self, slope_data):
        fit = lmer("y ~ time + (1 + time | subject)", slope_data)
        per_group = fit.coef_by_group()
        assert per_group.shape == (15, 2)
        np.testing.assert_allclose(per_group["time"] - fit.params["time"], fit.ranef()["time"])

    def test_slope_recovered(self, slope_data):
        fit = lmer("y ~ time + (1 + time | subject)", slope_data)
        assert fit.params["time"] == pytest.approx(0.8, abs=0.4)

    def test_correlation_matrix(self, slope_data):
        corr = lmer("y ~ time + (1 + time | subject)", slope_data).re_correlation
        assert corr[0, 0] == pytest.approx(1.0)
        assert -1.0 <= corr[0, 1] <= 1.0

    def test_predict_unseen_group(self, slope_data):
        fit = lmer("y ~ time + (1 + time | subject)", slope_data)
        new = pd.DataFrame({"time": [0.0, 5.0], "subject": ["subject01", "newcomer"]})
        pred = fit.predict(new)
        population = fit.predict(new, include_random=False)
        blup = fit.ranef().loc["subject01"]

        assert pred[0] == pytest.approx(population[0] + blup["(Intercept)"])
        assert pred[1] == pytest.approx(population[1])

    def test_predict_needs_grouping_column(self, slope_data):
        fit = lmer("y ~ time + (1 + time | subject)", slope_data)
        with pytest.raises(ValueError, match="grouping column"):
            fit.predict(pd.DataFrame({"time": [1.0]}))

    def test_refit_ml(self, slope_data):
        fit = lmer("y ~ time + (1 + time | subject)", slope_data)
        ml = fit.refit_ml()
        assert fit.reml and not ml.reml
        assert ml.refit_ml() is ml
        np.testing.assert_allclose(ml.coef, fit.coef, atol=0.05)
        assert ml.sigma2 <= fit.sigma2 * 1.05

    def test_matches_statsmodels(self, slope_data):
        fit = lmer("y ~ time + (1 + time | subject)", slope_data)
        reference = _statsmodels_fit(slope_data, "y ~ time", "subject", re_formula="~time")
        np.testing.assert_allclose(fit.coef, reference.fe_params.to_numpy(), atol=1e-2)


class TestNullModel:
    def test_intercept_only_fixed_part(self, clustered_data):
        fit = lmer("score ~ 1 + (1 | school)", clustered_data)
        reference = _statsmodels_fit(clustered_data, "score ~ 1", "school")

        assert fit.column_names == ["(Intercept)"]
        assert fit.formula == "score ~ 1 + (1 | school)"
        assert fit.coef[0] == pytest.approx(float(reference.fe_params.iloc[0]), abs=10 * ATOL_OPTIMIZER)
        assert 0.0 < fit.icc < 1.0

    def test_implicit_intercept(self, clustered_data):
        explicit = lmer("score ~ 1 + (1 | school)", clustered_data)
        implicit = lmer("score ~ (1 | school)", clustered_data)
        np.testing.assert_allclose(implicit.coef, explicit.coef)

    def test_summary(self, clustered_data):
        text = lmer("score ~ 1 + (1 | school)", clustered_data).summary()
        assert "(Intercept)" in text
        assert "school" in text


class TestOptimizerLadder:
    @staticmethod
    def _patched_fit(behaviour):
        from statsmodels.regression.mixed_linear_model import MixedLM

        real_fit = MixedLM.fit
        calls = []

        def fit(self, *args, **kwargs):
            calls.append(kwargs["method"])
            return behaviour(real_fit, self, *args, **kwargs)

        return patch.object(MixedLM, "fit", fit), calls

    def test_falls_back_after_error(self, clustered_data):
        def lbfgs_fails(real_fit, model, *args, **kwargs):
            if kwargs["method"] == "lbfgs":
                raise np.linalg.LinAlgError("singular")
            return real_fit(model, *args, **kwargs)

        patcher, calls = self._patched_fit(lbfgs_fails)
        with patcher, warnings.catch_warnings():
            warnings.simplefilter("ignore")
            fit = lmer("score ~ x + (1 | school)", clustered_data)

        assert calls[:2] == ["lbfgs", "powell"]
        assert fit.method == calls[-1]
        assert fit.method != "lbfgs"
        np.testing.assert_allclose(fit.coef, lmer("score ~ x + (1 | school)", clustered_data).coef, atol=1e-2)

    def test_unconverged_fit_warns(self, clustered_data):
        def never_converges(real_fit, model, *args, **kwargs):
            result = real_fit(model, *args, **kwargs)
            result.converged = False
            return result

        patcher, calls = self._patched_fit(never_converges)
        with patcher, pytest.warns(UserWarning, match="did not converge"):
            fit = lmer("score ~ x + (1 | school)", clustered_data)

        assert calls == ["lbfgs", "powell", "nm"]
        assert fit.converged is False
        assert fit.method == "nm"

    def test_every_optimizer_fails(self, clustered_data):
        def always_fails(real_fit, model, *args, **kwargs):
            raise np.linalg.LinAlgError("singular")

        patcher, calls = self._patched_fit(always_fails)
        with patcher, pytest.raises(RuntimeError, match="failed with every optimizer.*LinAlgError: singular"):
            lmer("score ~ x + (1 | school)", clustered_data)

        assert calls == ["lbfgs", "powell", "nm"]
