"""
Variable and Effect Registry for LMMTour.

This module keeps a single source of truth for everything a model formula
declares: the response, the predictors and how they are simulated, the
fixed-effect terms with their coefficients, and the grouping structure of
mixed models.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..stats.design import INTERCEPT


@dataclass
class PredictorVar:
    """A single predictor variable.

    Attributes:
        name: Variable name as it appears in the formula.
        var_type: How the variable is simulated: ``"normal"``,
            ``"uniform"``, ``"grid"`` or ``"factor"``.
        mean: Mean of a normal variable.
        sd: Standard deviation of a normal variable.
        low: Lower bound of a uniform or grid variable.
        high: Upper bound of a uniform or grid variable.
        levels: Factor levels; the first one is the reference level.
    """

    name: str
    var_type: str = "normal"
    mean: float = 0.0
    sd: float = 1.0
    low: float = 0.0
    high: float = 1.0
    levels: Optional[List[str]] = None

    @property
    def is_factor(self) -> bool:
        return self.var_type == "factor"


@dataclass
class Effect:
    """A fixed-effect term of the model formula.

    Attributes:
        name: Term name (e.g. ``"x"``, ``"I(x^2)"`` or ``"x:group"``).
        effect_type: ``"main"``, ``"power"`` or ``"interaction"``.
        components: ``(variable, degree)`` pairs multiplied together.
    """

    name: str
    effect_type: str
    components: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def var_names(self) -> List[str]:
        return [var for var, _ in self.components]


@dataclass
class ClusterSpec:
    """Grouping structure of a mixed model.

    Attributes:
        grouping_var: Name of the grouping variable from the formula.
        n_clusters: Number of clusters (derived from the sample size if not set).
        cluster_size: Observations per cluster (derived if not set).
        intercept_sd: Standard deviation of the random intercepts.
        slope_vars: Variables with a random slope, in formula order.
        slope_sds: Standard deviation of each random slope.
        correlation: Correlation shared by every pair of random effects.
    """

    grouping_var: str
    n_clusters: Optional[int] = None
    cluster_size: Optional[int] = None
    intercept_sd: float = 1.0
    slope_vars: List[str] = field(default_factory=list)
    slope_sds: Dict[str, float] = field(default_factory=dict)
    correlation: float = 0.0

    @property
    def random_sds(self) -> List[float]:
        """Standard deviations in column order: intercept, then slopes."""
        return [self.intercept_sd] + [self.slope_sds.get(v, 0.0) for v in self.slope_vars]


class VariableRegistry:
    """Single source of truth for all variable and effect state.

    Parses an R-style formula and maintains:

    - The dependent variable name.
    - An ordered dictionary of ``PredictorVar`` instances.
    - An ordered dictionary of ``Effect`` instances.
    - Coefficients for every column of the expanded design matrix.
    - The random-effect terms and an optional ``ClusterSpec``.

    Design columns are ordered as R's ``model.matrix`` orders them: the
    intercept, then each term in formula order with factor dummies for
    the non-reference levels (``group[B]``, ``x:group[B]``).
    """

    def __init__(self, equation: str):
        """Parse an R-style formula and initialise the registry.

        Args:
            equation: Formula string. Supports ``=`` or ``~`` as
                separators, ``+``, ``:``, ``*``, ``I(x^k)``,
                ``poly(x, k)`` and one random-effect term per model.

        Raises:
            ValueError: If the formula is malformed, uses more than one
                grouping variable, or a random slope variable is not a
                fixed-effect predictor.
        """
        from ..utils.parsers import _parse_equation, _parse_independent_variables

        self.equation = equation.strip() if isinstance(equation, str) else equation
        dep_var, formula_part, random_effects = _parse_equation(self.equation)
        variables, effects = _parse_independent_variables(formula_part)

        self._dependent: str = dep_var
        self._fixed_formula: str = formula_part
        self._random_effects: List[Dict] = random_effects
        self._predictors: Dict[str, PredictorVar] = {}
        self._effects: Dict[str, Effect] = {}
        self._coefficients: Dict[str, float] = {}
        self._cluster_spec: Optional[ClusterSpec] = None

        for info in variables.values():
            self._predictors[info["name"]] = PredictorVar(name=info["name"])
        for info in effects.values():
            self._effects[info["name"]] = Effect(
                name=info["name"],
                effect_type=info["type"],
                components=list(info["components"]),
            )

        if dep_var in self._predictors:
            raise ValueError(f"Dependent variable '{dep_var}' also appears as a predictor")

        if len(random_effects) > 1:
            raise ValueError(
                "Only one grouping variable is supported, got: " + ", ".join(re_["grouping_var"] for re_ in random_effects)
            )
        for re_ in random_effects:
            if re_["grouping_var"] in self._predictors or re_["grouping_var"] == dep_var:
                raise ValueError(f"Grouping variable '{re_['grouping_var']}' cannot also be a fixed-effect variable")
            for var in re_["slope_vars"]:
                if var not in self._predictors:
                    raise ValueError(f"Random slope variable '{var}' must also appear as a fixed effect")

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def dependent(self) -> str:
        return self._dependent

    @property
    def predictor_names(self) -> List[str]:
        return list(self._predictors)

    @property
    def effect_names(self) -> List[str]:
        return list(self._effects)

    @property
    def effects(self) -> List[Effect]:
        return list(self._effects.values())

    @property
    def factor_names(self) -> List[str]:
        return [name for name, pred in self._predictors.items() if pred.is_factor]

    @property
    def factor_levels(self) -> Dict[str, List[str]]:
        return {name: list(pred.levels) for name, pred in self._predictors.items() if pred.is_factor}

    @property
    def random_effects(self) -> List[Dict]:
        return self._random_effects

    @property
    def is_mixed(self) -> bool:
        return bool(self._random_effects)

    @property
    def grouping_var(self) -> Optional[str]:
        return self._random_effects[0]["grouping_var"] if self._random_effects else None

    @property
    def slope_vars(self) -> List[str]:
        return list(self._random_effects[0]["slope_vars"]) if self._random_effects else []

    @property
    def cluster_spec(self) -> Optional[ClusterSpec]:
        return self._cluster_spec

    @property
    def cluster_specs(self) -> Dict[str, ClusterSpec]:
        return {self._cluster_spec.grouping_var: self._cluster_spec} if self._cluster_spec else {}

    @property
    def terms(self) -> List[Tuple[str, List[Tuple[str, int]]]]:
        """Fixed-effect terms as ``(name, components)`` pairs."""
        return [(eff.name, list(eff.components)) for eff in self._effects.values()]

    # =========================================================================
    # Lookups and mutation
    # =========================================================================

    def get_predictor(self, name: str) -> Optional[PredictorVar]:
        return self._predictors.get(name)

    def set_variable_type(self, name: str, var_type: str, **kwargs: Any) -> None:
        """Set how a predictor is simulated.

        Args:
            name: Predictor name.
            var_type: ``"normal"``, ``"uniform"``, ``"grid"`` or ``"factor"``.
            **kwargs: Distribution parameters (``mean``, ``sd``, ``low``,
                ``high``, ``levels``).

        Raises:
            ValueError: If the predictor is unknown, a factor is used in a
                power term or as a random slope.
        """
        pred = self._predictors.get(name)
        if pred is None:
            raise ValueError(f"Variable '{name}' not found. Available: {', '.join(self._predictors)}")

        if var_type == "factor":
            for eff in self._effects.values():
                if any(var == name and degree > 1 for var, degree in eff.components):
                    raise ValueError(f"Factor '{name}' cannot be used in power term '{eff.name}'")
            if name in self.slope_vars:
                raise ValueError(f"Factor '{name}' cannot have a random slope")

        pred.var_type = var_type
        for key in ("mean", "sd", "low", "high", "levels"):
            if key in kwargs:
                setattr(pred, key, kwargs[key])
        if var_type != "factor":
            pred.levels = None

        # Expanded column names change with factor levels
        valid = set(self.design_column_names())
        self._coefficients = {k: v for k, v in self._coefficients.items() if k in valid}

    def expand_term(self, components: List[Tuple[str, int]], factor_levels: Optional[Dict[str, List[str]]] = None) -> List[str]:
        """Expand one term into design column names.

        Factors contribute one dummy per non-reference level; interactions
        take the cartesian product of their components' columns.
        """
        from ..stats.design import term_column_names

        levels = self.factor_levels if factor_levels is None else factor_levels
        return term_column_names(components, levels)

    def design_column_names(self) -> List[str]:
        """Expanded coefficient names, intercept first."""
        names = [INTERCEPT]
        for eff in self._effects.values():
            names.extend(self.expand_term(eff.components))
        return names

    def set_coefficient(self, name: str, value: float) -> None:
        """Set the generating coefficient of one design column."""
        if name == INTERCEPT:
            raise ValueError("Use set_intercept() for the intercept")
        available = self.design_column_names()[1:]
        if name not in available:
            raise ValueError(f"Effect '{name}' not found. Available: {', '.join(available)}")
        self._coefficients[name] = float(value)

    def get_coefficients(self, intercept: float = 0.0) -> Dict[str, float]:
        """Coefficient per design column (unset columns are zero)."""
        coefs = {INTERCEPT: float(intercept)}
        for name in self.design_column_names()[1:]:
            coefs[name] = self._coefficients.get(name, 0.0)
        return coefs

    def register_cluster(
        self,
        grouping_var: str,
        n_clusters: Optional[int],
        cluster_size: Optional[int],
        intercept_sd: float,
        slope_sds: Dict[str, float],
        correlation: float,
    ) -> ClusterSpec:
        """Register the grouping structure for the formula's random term."""
        if grouping_var != self.grouping_var:
            raise ValueError(f"set_cluster('{grouping_var}', ...) called but no random term for '{grouping_var}' in formula")

        spec = ClusterSpec(
            grouping_var=grouping_var,
            n_clusters=n_clusters,
            cluster_size=cluster_size,
            intercept_sd=float(intercept_sd),
            slope_vars=self.slope_vars,
            slope_sds={var: float(slope_sds.get(var, 0.0)) for var in self.slope_vars},
            correlation=float(correlation),
        )
        self._cluster_spec = spec
        return spec
