"""
Tests for the LinearModel class: configuration, simulation, fitting and
parameter recovery.
"""

from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from tests.config import CLUSTER_SIZE, COVERAGE_RANGE, N_CLUSTERS, N_SIMS_CHECK, N_SIMS_RECOVERY, SEED


class TestLinearModelInit:
    """Test LinearModel initialization."""

    def test_simple_equation(self):
        from lmmtour import LinearModel

        model = LinearModel("y = x1 + x2", verbose=False)
        assert model.equation == "y = x1 + x2"
        assert model.formula == "y ~ x1 + x2"
        assert model.model_type == "linear regression"

    def test_star_interaction(self):
        from lmmtour import LinearModel

        model = LinearModel("y ~ a * b", verbose=False)
        assert model.formula == "y ~ a + b + a:b"

    def test_mixed_formula(self):
        from lmmtour import LinearModel

        model = LinearModel("y ~ time + (1 + time | subject)", verbose=False)
        assert model.model_type == "linear mixed model"
        assert model.formula == "y ~ time + (1 + time | subject)"

    def test_default_values(self):
        from lmmtour import LinearModel

        model = LinearModel("y ~ x", verbose=False)
        assert model.seed == 2137
        assert model.alpha == 0.05
        assert model.level == pytest.approx(0.95)
        assert model.residual_sd == 1.0
        assert model.intercept == 0.0
        assert not model._applied

    def test_verbose_prints_variables(self, capsys):
        from lmmtour import LinearModel

        LinearModel("score ~ x + (1 | school)")
        out = capsys.readouterr().out
        assert "Variables: score (dependent), x (predictors)" in out
        assert "Random effects: (1 | school)" in out

    def test_repr(self):
        from lmmtour import LinearModel

        assert repr(LinearModel("y ~ x", verbose=False)) == "LinearModel(formula='y ~ x')"


class TestConfiguration:
    def test_setters_chain(self):
        from lmmtour import LinearModel

        model = LinearModel("y ~ x", verbose=False)
        assert model.set_seed(1).set_alpha(0.1).set_residual_sd(2.0).set_intercept(3.0) is model
        assert model.level == pytest.approx(0.9)

    def test_invalid_settings(self):
        from lmmtour import LinearModel

        model = LinearModel("y ~ x", verbose=False)
        with pytest.raises(ValueError):
            model.set_alpha(1.5)
        with pytest.raises(ValueError):
            model.set_residual_sd(0)
        with pytest.raises(ValueError):
            model.set_seed(-1)
        with pytest.raises(TypeError):
            model.set_effects(0.5)

    def test_effects_deferred_until_apply(self):
        from lmmtour import LinearModel

        model = LinearModel("y ~ x", verbose=False).set_effects("x=0.7")
        assert model.coefficients["x"] == 0.0
        model.apply()
        assert model.coefficients == {"(Intercept)": 0.0, "x": 0.7}

    def test_unknown_effect(self):
        from lmmtour import LinearModel

        model = LinearModel("y ~ x", verbose=False).set_effects("z=0.5")
        with pytest.raises(ValueError, match="Effect validation failed"):
            model.apply()

    def test_factor_coefficients(self):
        from lmmtour import LinearModel

        model = LinearModel("y ~ x * group", verbose=False)
        model.set_variable_type("group=factor(A, B, C)")
        model.set_effects("x=0.5, group[B]=1.0, x:group[C]=-0.3")
        model.apply()

        assert list(model.coefficients) == ["(Intercept)", "x", "group[B]", "group[C]", "x:group[B]", "x:group[C]"]
        assert model.coefficients["x:group[C]"] == -0.3
        assert model.factor_levels == {"group": ["A", "B", "C"]}

    def test_missing_cluster(self):
        from lmmtour import LinearModel

        model = LinearModel("y ~ x + (1 | school)", verbose=False)
        with pytest.raises(ValueError, match="set_cluster"):
            model.simulate(100)

    def test_cluster_for_unknown_group(self):
        from lmmtour import LinearModel

        model = LinearModel("y ~ x + (1 | school)", verbose=False)
        with pytest.raises(ValueError):
            model.set_cluster("class", n_clusters=10)


class TestSimulate:
    def test_columns_and_reproducibility(self, simple_model):
        first = simple_model.simulate(50)
        second = simple_model.simulate(50)

        assert list(first.columns) == ["x", "y"]
        pd.testing.assert_frame_equal(first, second)
        assert simple_model.last_data is second

    def test_seed_override(self, simple_model):
        a = simple_model.simulate(50)
        b = simple_model.simulate(50, seed=SEED + 1)
        assert not np.allclose(a["y"], b["y"])

    def test_unseeded_draws_differ(self, simple_model):
        simple_model.set_seed(None)
        assert not np.allclose(simple_model.simulate(50)["y"], simple_model.simulate(50)["y"])

    def test_sample_size_too_small(self, simple_model):
        with pytest.raises(ValueError, match="must exceed the number of coefficients"):
            simple_model.simulate(2)

    def test_clustered_layout(self, random_intercept_model, clustered_data):
        assert list(clustered_data.columns) == ["x", "school", "score"]
        counts = clustered_data["school"].value_counts()
        assert len(counts) == N_CLUSTERS
        assert (counts == CLUSTER_SIZE).all()
        assert random_intercept_model.true_random_effects.shape == (N_CLUSTERS, 1)

    def test_cluster_layout_must_divide(self, random_intercept_model):
        with pytest.raises(ValueError):
            random_intercept_model.simulate(205)

    def test_grid_variable_restarts_per_cluster(self, random_slope_model):
        data = random_slope_model.simulate(150)
        first = data[data["subject"] == "subject01"]["time"].to_numpy()
        np.testing.assert_allclose(np.sort(first), np.arange(10.0))


class TestFit:
    def test_fit_requires_data(self, simple_model):
        with pytest.raises(ValueError, match="No data to fit"):
            simple_model.fit()

    def test_fit_last_data(self, simple_model):
        simple_model.simulate(200)
        fit = simple_model.fit()
        assert fit.kind == "ols"
        assert fit.params["x"] == pytest.approx(0.5, abs=0.25)

    @pytest.mark.lme
    def test_fit_mixed(self, random_intercept_model, clustered_data):
        fit = random_intercept_model.fit(clustered_data)
        assert fit.kind == "mixed"
        assert fit.params["(Intercept)"] == pytest.approx(50.0, abs=1.5)

    @pytest.mark.lme
    def test_null_model(self, capsys):
        from lmmtour import LinearModel

        model = LinearModel("score ~ 1 + (1 | school)")
        assert "none (predictors)" in capsys.readouterr().out
        assert model.formula == "score ~ 1 + (1 | school)"

        model.set_intercept(50.0).set_cluster("school", n_clusters=N_CLUSTERS, intercept_sd=2.0)
        data = model.simulate(N_CLUSTERS * CLUSTER_SIZE)
        assert list(data.columns) == ["school", "score"]

        fit = model.fit()
        assert fit.column_names == ["(Intercept)"]
        assert fit.params["(Intercept)"] == pytest.approx(50.0, abs=2.0)

    def test_factor_levels_kept_on_refit(self):
        from lmmtour import LinearModel

        model = LinearModel("y ~ group", verbose=False)
        model.set_variable_type("group=factor(placebo, drug)")
        model.set_effects("group[drug]=1.0")
        data = model.simulate(60)
        assert model.fit(data).column_names == ["(Intercept)", "group[drug]"]


class TestFormulaHelpers:
    def test_lm_rejects_random_terms(self, clustered_data):
        from lmmtour import lm

        with pytest.raises(ValueError, match="use lmer"):
            lm("score ~ x + (1 | school)", clustered_data)

    def test_fit_formula_dispatch(self, simple_data):
        from lmmtour import fit_formula

        assert fit_formula("y ~ x", simple_data).kind == "ols"

    @pytest.mark.lme
    def test_fit_formula_mixed(self, clustered_data):
        from lmmtour import fit_formula

        assert fit_formula("score ~ x + (1 | school)", clustered_data).kind == "mixed"

    def test_declared_levels(self, factor_data):
        from lmmtour import lm

        fit = lm("y ~ g", factor_data, factor_levels={"g": ["C", "A", "B"]})
        assert fit.column_names == ["(Intercept)", "g[A]", "g[B]"]

    def test_missing_response(self, simple_data):
        from lmmtour import lm

        with pytest.raises(ValueError, match="Response 'score' not found"):
            lm("score ~ x", simple_data)

    def test_data_must_be_frame(self):
        from lmmtour import lm

        with pytest.raises(TypeError):
            lm("y ~ x", {"x": [1, 2], "y": [3, 4]})


class TestEstimateRecovery:
    def test_result_structure(self, simple_model):
        result = simple_model.estimate_recovery("x", [30, 60], n_simulations=N_SIMS_CHECK, print_results=False)
        table = result["results"]

        assert list(table.index) == [30, 60]
        assert result["model"]["target"] == "x"
        assert result["model"]["true_value"] == 0.5
        assert (table["n_used"] == N_SIMS_CHECK).all()

    def test_reproducible(self, simple_model):
        a = simple_model.estimate_recovery("x", 40, n_simulations=N_SIMS_CHECK, print_results=False)["results"]
        b = simple_model.estimate_recovery("x", 40, n_simulations=N_SIMS_CHECK, print_results=False)["results"]
        pd.testing.assert_frame_equal(a, b)

    @pytest.mark.slow
    def test_ols_recovery_properties(self, simple_model):
        table = simple_model.estimate_recovery("x", [25, 200], n_simulations=N_SIMS_RECOVERY, print_results=False)[
            "results"
        ]
        assert abs(table.loc[200, "bias"]) < 0.03
        assert table.loc[200, "empirical_sd"] < table.loc[25, "empirical_sd"]
        assert COVERAGE_RANGE[0] <= table.loc[200, "coverage"] <= COVERAGE_RANGE[1]

    def test_unknown_target(self, simple_model):
        with pytest.raises(ValueError, match="Target 'z' not found"):
            simple_model.estimate_recovery("z", 50, print_results=False)

    def test_invalid_sample_sizes(self, simple_model):
        with pytest.raises(ValueError):
            simple_model.estimate_recovery("x", [], print_results=False)

    def test_progress_callback(self, simple_model):
        cb = MagicMock()
        simple_model.estimate_recovery("x", [30, 40], n_simulations=10, progress_callback=cb, print_results=False)
        cb.assert_any_call(0, 20)
        cb.assert_called_with(20, 20)

    def test_cancel(self, simple_model):
        from lmmtour import LessonCancelled

        with pytest.raises(LessonCancelled):
            simple_model.estimate_recovery("x", 30, n_simulations=10, cancel_check=lambda: True, print_results=False)

    def test_printed_table(self, capsys):
        from lmmtour import LinearModel

        model = LinearModel("y ~ x").set_effects("x=0.5")
        model.estimate_recovery("x", 30, n_simulations=N_SIMS_CHECK)
        out = capsys.readouterr().out
        assert "PARAMETER RECOVERY RESULTS" in out
        assert "Recovery of 'x'" in out
        assert "Low simulation count" in out

    @pytest.mark.lme
    @pytest.mark.slow
    def test_mixed_recovery(self, random_intercept_model):
        table = random_intercept_model.estimate_recovery("x", [100], n_simulations=N_SIMS_CHECK, print_results=False)[
            "results"
        ]
        assert table.loc[100, "n_used"] >= N_SIMS_CHECK - 1
        assert abs(table.loc[100, "bias"]) < 0.1
