"""
Tests for the variable registry.
"""

import pytest

from lmmtour.core.variables import ClusterSpec, VariableRegistry


@pytest.fixture
def interaction_registry():
    registry = VariableRegistry("y ~ x * group")
    registry.set_variable_type("group", "factor", levels=["A", "B", "C"])
    return registry


class TestRegistryParsing:
    def test_basic_properties(self):
        registry = VariableRegistry("score ~ hours + (1 | school)")
        assert registry.dependent == "score"
        assert registry.predictor_names == ["hours"]
        assert registry.effect_names == ["hours"]
        assert registry.is_mixed
        assert registry.grouping_var == "school"
        assert registry.slope_vars == []

    def test_not_mixed(self):
        registry = VariableRegistry("y ~ x")
        assert not registry.is_mixed
        assert registry.grouping_var is None
        assert registry.cluster_specs == {}

    def test_terms(self):
        registry = VariableRegistry("y ~ x + I(x^2)")
        assert registry.terms == [("x", [("x", 1)]), ("I(x^2)", [("x", 2)])]
        power = registry.effects[1]
        assert power.effect_type == "power"
        assert power.var_names == ["x"]

    @pytest.mark.parametrize(
        "equation, message",
        [
            ("y ~ x + (1 | a) + (1 | b)", "Only one grouping variable"),
            ("y ~ x + (1 + z | g)", "must also appear as a fixed effect"),
            ("y ~ g + (1 | g)", "cannot also be a fixed-effect"),
            ("y ~ x + y", "also appears as a predictor"),
        ],
    )
    def test_invalid_formulas(self, equation, message):
        with pytest.raises(ValueError, match=message):
            VariableRegistry(equation)


class TestVariableTypes:
    def test_defaults_are_standard_normal(self):
        registry = VariableRegistry("y ~ x")
        pred = registry.get_predictor("x")
        assert pred.var_type == "normal"
        assert (pred.mean, pred.sd) == (0.0, 1.0)
        assert not pred.is_factor

    def test_factor_columns(self, interaction_registry):
        assert interaction_registry.factor_names == ["group"]
        assert interaction_registry.factor_levels == {"group": ["A", "B", "C"]}
        assert interaction_registry.design_column_names() == [
            "(Intercept)",
            "x",
            "group[B]",
            "group[C]",
            "x:group[B]",
            "x:group[C]",
        ]

    def test_unknown_variable(self):
        registry = VariableRegistry("y ~ x")
        with pytest.raises(ValueError, match="not found"):
            registry.set_variable_type("z", "uniform", low=0, high=1)

    def test_factor_in_power_term(self):
        registry = VariableRegistry("y ~ x + I(x^2)")
        with pytest.raises(ValueError, match="power term"):
            registry.set_variable_type("x", "factor", levels=["a", "b"])

    def test_factor_random_slope(self):
        registry = VariableRegistry("y ~ x + (1 + x | g)")
        with pytest.raises(ValueError, match="random slope"):
            registry.set_variable_type("x", "factor", levels=["a", "b"])

    def test_back_to_continuous_clears_levels(self, interaction_registry):
        interaction_registry.set_variable_type("group", "uniform", low=0, high=1)
        assert interaction_registry.get_predictor("group").levels is None
        assert "group" in interaction_registry.design_column_names()


class TestCoefficients:
    def test_get_coefficients(self, interaction_registry):
        interaction_registry.set_coefficient("group[B]", 1.0)
        interaction_registry.set_coefficient("x:group[C]", -0.4)
        coefs = interaction_registry.get_coefficients(2.0)
        assert list(coefs) == interaction_registry.design_column_names()
        assert coefs["(Intercept)"] == 2.0
        assert coefs["group[B]"] == 1.0
        assert coefs["x:group[C]"] == -0.4
        assert coefs["x"] == 0.0

    def test_intercept_rejected(self, interaction_registry):
        with pytest.raises(ValueError, match="set_intercept"):
            interaction_registry.set_coefficient("(Intercept)", 1.0)

    def test_unknown_column(self, interaction_registry):
        with pytest.raises(ValueError, match="not found"):
            interaction_registry.set_coefficient("group[D]", 1.0)

    def test_level_change_drops_stale_coefficients(self, interaction_registry):
        interaction_registry.set_coefficient("group[B]", 1.0)
        interaction_registry.set_coefficient("group[C]", 2.0)
        interaction_registry.set_variable_type("group", "factor", levels=["A", "B"])
        coefs = interaction_registry.get_coefficients()
        assert "group[C]" not in coefs
        assert coefs["group[B]"] == 1.0


class TestClusters:
    def test_register_cluster(self):
        registry = VariableRegistry("y ~ time + (1 + time | subject)")
        spec = registry.register_cluster("subject", 15, None, 2.0, {"time": 0.4}, 0.3)
        assert registry.cluster_spec is spec
        assert registry.cluster_specs == {"subject": spec}
        assert spec.slope_vars == ["time"]
        assert spec.random_sds == [2.0, 0.4]

    def test_missing_slope_sd_is_zero(self):
        registry = VariableRegistry("y ~ time + (1 + time | subject)")
        spec = registry.register_cluster("subject", None, 10, 1.0, {}, 0.0)
        assert spec.random_sds == [1.0, 0.0]

    def test_wrong_grouping_var(self):
        registry = VariableRegistry("y ~ x + (1 | school)")
        with pytest.raises(ValueError, match="no random term"):
            registry.register_cluster("class", 10, None, 1.0, {}, 0.0)

    def test_cluster_spec_defaults(self):
        spec = ClusterSpec("school", n_clusters=10)
        assert spec.random_sds == [1.0]
        assert spec.slope_vars == []
        assert spec.cluster_size is None
