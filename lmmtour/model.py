"""
LMMTour - linear and mixed models by simulation.

This module provides the ``LinearModel`` class, which simulates teaching
datasets from a generating formula and fits them back with ordinary
least squares or a linear mixed model, plus the ``lm``/``lmer`` helpers
for fitting any formula to a data frame.
"""

from functools import partial
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np
import pandas as pd

from .core import ResultsProcessor, SimulationRunner, VariableRegistry, build_recovery_result
from .stats.data_generation import (
    cluster_labels,
    generate_cluster_ids,
    generate_predictors,
    generate_random_effects,
    generate_response,
)
from .stats.design import build_design, build_random_design
from .stats.mixed_models import fit_mixed
from .stats.ols import fit_ols
from .utils.formatters import format_recovery
from .utils.validators import (
    _validate_alpha,
    _validate_cluster_config,
    _validate_cluster_layout,
    _validate_model_ready,
    _validate_numeric_parameter,
    _validate_parallel_settings,
    _validate_positive,
    _validate_sample_size,
    _validate_sample_sizes,
    _validate_seed,
    _validate_simulations,
)


def _formula_text(registry: VariableRegistry) -> str:
    """R-style rendering of a parsed formula (``y ~ x + (1 + x | g)``)."""
    text = f"{registry.dependent} ~ {' + '.join(registry.effect_names) or '1'}"
    if registry.is_mixed:
        random_part = " + ".join(["1"] + registry.slope_vars)
        text += f" + ({random_part} | {registry.grouping_var})"
    return text


def _fit_registry(registry: VariableRegistry, data: pd.DataFrame, reml: bool = True, factor_levels: Optional[Dict[str, List[str]]] = None):
    """Fit the formula held by *registry* to *data*."""
    if not isinstance(data, pd.DataFrame):
        raise TypeError(f"data must be a pandas DataFrame, got {type(data).__name__}")
    dependent = registry.dependent
    if dependent not in data.columns:
        raise ValueError(f"Response '{dependent}' not found in data. Columns: {', '.join(map(str, data.columns))}")
    if data[dependent].isna().any():
        raise ValueError(f"Response '{dependent}' contains missing values")

    declared = {k: v for k, v in (factor_levels or {}).items() if k in registry.predictor_names}
    design = build_design(registry.terms, data, declared)
    y = data[dependent].to_numpy(dtype=np.float64)
    formula = _formula_text(registry)

    if not registry.is_mixed:
        return fit_ols(design, y, response=dependent, formula=formula, data=data)

    grouping_var = registry.grouping_var
    if grouping_var not in data.columns:
        raise ValueError(f"Grouping variable '{grouping_var}' not found in data")
    groups = data[grouping_var].astype(str).to_numpy()
    Z, re_names = build_random_design(registry.slope_vars, data)
    return fit_mixed(
        design,
        y,
        groups,
        Z,
        re_names,
        reml=reml,
        response=dependent,
        formula=formula,
        grouping_var=grouping_var,
        data=data,
    )


def fit_formula(formula: str, data: pd.DataFrame, reml: bool = True, factor_levels: Optional[Dict[str, List[str]]] = None):
    """Fit any supported formula to a data frame.

    Formulas with a random-effect term are fitted as linear mixed models,
    others by ordinary least squares.

    Args:
        formula: R-style formula, e.g. ``"y ~ x * group"`` or
            ``"y ~ time + (1 + time | subject)"``.
        data: Data frame with the response and every predictor.
        reml: Use REML for mixed models (ignored for OLS).
        factor_levels: Optional level order per factor (reference first).

    Returns:
        ``OLSResult`` or ``MixedResult``.
    """
    return _fit_registry(VariableRegistry(formula), data, reml=reml, factor_levels=factor_levels)


def lm(formula: str, data: pd.DataFrame, factor_levels: Optional[Dict[str, List[str]]] = None):
    """Fit a linear model (R's ``lm``)."""
    registry = VariableRegistry(formula)
    if registry.is_mixed:
        raise ValueError("lm() does not take random-effect terms; use lmer()")
    return _fit_registry(registry, data, factor_levels=factor_levels)


def lmer(formula: str, data: pd.DataFrame, reml: bool = True, factor_levels: Optional[Dict[str, List[str]]] = None):
    """Fit a linear mixed model (lme4's ``lmer``)."""
    registry = VariableRegistry(formula)
    if not registry.is_mixed:
        raise ValueError("lmer() needs a random-effect term such as (1 | group); use lm() otherwise")
    return _fit_registry(registry, data, reml=reml, factor_levels=factor_levels)


def _recovery_iteration(model: "LinearModel", target: str, level: float, sample_size: int, sim_seed: Optional[int]):
    """One Monte Carlo iteration: simulate, refit, return the target's estimate, SE and CI."""
    rng = np.random.default_rng(sim_seed)
    data, _ = model._simulate(sample_size, rng)
    fit = model._fit_data(data, reml=True)
    idx = fit.column_names.index(target)
    ci = fit.confint(level).to_numpy()[idx]
    return fit.coef[idx], fit.bse[idx], ci[0], ci[1]


class LinearModel:
    """A generating model for teaching linear and mixed-effects regression.

    The formula names the response, the fixed-effect terms and optionally
    one random-effect term. Configuration methods (``set_*``) for variable
    types, effects and clusters are deferred: they are stored as pending
    and processed in order when ``apply()`` is called (or automatically
    before ``simulate``). All ``set_*`` methods return ``self``.

    Attributes:
        seed: Random seed for reproducibility (default: 2137).
        alpha: Significance level; intervals use ``1 - alpha`` (default: 0.05).
        residual_sd: Standard deviation of the residuals (default: 1.0).
        intercept: Generating intercept (default: 0.0).
        verbose: Print configuration messages (default: True).
        last_data: The most recently simulated data frame.
        true_random_effects: Random effects drawn for ``last_data``.

    Example:
        >>> model = LinearModel("score ~ hours + (1 + hours | student)")
        >>> model.set_variable_type("hours=grid(0, 9)")
        >>> model.set_effects("hours=0.8")
        >>> model.set_cluster("student", n_clusters=20, intercept_sd=2, slope_sd=0.3)
        >>> data = model.simulate(200)
        >>> print(model.fit().summary())
    """

    def __init__(self, formula: str, verbose: bool = True):
        """Parse the formula and set every configuration attribute to its default.

        Args:
            formula: R-style formula. Supports ``=`` or ``~`` separators,
                ``+``, ``:``, ``*``, ``I(x^k)``, ``poly(x, k)`` and one
                random-effect term ``(1 | g)`` or ``(1 + x | g)``.
            verbose: Print configuration messages.
        """
        self.verbose = verbose

        # Core configuration (applied immediately)
        self.seed: Optional[int] = 2137
        self.alpha = 0.05
        self.residual_sd = 1.0
        self.intercept = 0.0

        self._registry = VariableRegistry(formula)

        # Pending inputs (deferred until apply())
        self._pending_variable_types: Optional[str] = None
        self._pending_effects: Optional[str] = None
        self._pending_clusters: Dict[str, Dict[str, Any]] = {}
        self._applied = False

        self.last_data: Optional[pd.DataFrame] = None
        self.true_random_effects: Optional[pd.DataFrame] = None

        predictor_names = self._registry.predictor_names
        self._print(f"Variables: {self._registry.dependent} (dependent), {', '.join(predictor_names) or 'none'} (predictors)")
        if self._registry.is_mixed:
            random_part = " + ".join(["1"] + self._registry.slope_vars)
            self._print(f"Random effects: ({random_part} | {self._registry.grouping_var})")

    def _print(self, message: str):
        if self.verbose:
            print(message)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def equation(self) -> str:
        """Original equation string."""
        return self._registry.equation

    @property
    def formula(self) -> str:
        """Normalised R-style formula."""
        return _formula_text(self._registry)

    @property
    def model_type(self) -> str:
        return "linear mixed model" if self._registry.is_mixed else "linear regression"

    @property
    def level(self) -> float:
        """Confidence level implied by ``alpha``."""
        return 1.0 - self.alpha

    @property
    def coefficients(self) -> Dict[str, float]:
        """Generating coefficient of every design column, intercept first."""
        return self._registry.get_coefficients(self.intercept)

    @property
    def factor_levels(self) -> Dict[str, List[str]]:
        return self._registry.factor_levels

    # =========================================================================
    # Configuration methods
    # =========================================================================

    def set_seed(self, seed: Optional[int] = None):
        """Set the random seed.

        Args:
            seed: Non-negative integer below 3,000,000,000, or ``None`` for
                fresh entropy on every call.

        Returns:
            self: For method chaining.

        Raises:
            ValueError: If *seed* is not an integer or out of range.
        """
        _validate_seed(seed).raise_if_invalid()
        self.seed = seed
        self._print(f"Seed set to: {seed}" if seed is not None else "Random seeding enabled")
        return self

    def set_alpha(self, alpha: float):
        """Set the significance level (intervals use ``1 - alpha``)."""
        _validate_alpha(alpha).raise_if_invalid()
        self.alpha = float(alpha)
        return self

    def set_residual_sd(self, residual_sd: float):
        """Set the standard deviation of the Gaussian residuals."""
        _validate_positive(residual_sd, "residual_sd").raise_if_invalid()
        self.residual_sd = float(residual_sd)
        return self

    def set_intercept(self, intercept: float):
        """Set the generating intercept (the mean response at the reference cell)."""
        _validate_numeric_parameter(intercept, "intercept").raise_if_invalid()
        self.intercept = float(intercept)
        return self

    def set_variable_type(self, variable_types_string: str):
        """Set how predictors are simulated.

        Predictors default to standard normal. This setting is deferred
        until ``apply()`` is called.

        Args:
            variable_types_string: Comma-separated ``name=type`` assignments.
                Supported types:

                - ``"normal(mean, sd)"`` (or ``"normal"``).
                - ``"uniform(low, high)"``.
                - ``"grid(low, high)"``: evenly spaced values, restarting
                  within each cluster (repeated-measures time).
                - ``"factor(k)"`` or ``"factor(a, b, c)"``: balanced
                  factor; the first level is the reference.

                Example: ``"x=uniform(0, 10), group=factor(ctrl, drugA, drugB)"``.

        Returns:
            self: For method chaining.
        """
        if not isinstance(variable_types_string, str):
            raise TypeError("variable_types_string must be a string")

        self._pending_variable_types = variable_types_string
        self._applied = False
        return self

    def set_effects(self, effects_string: str):
        """Set generating coefficients of the design columns.

        Names are the expanded column names: ``x``, ``I(x^2)``,
        ``group[B]``, ``x:group[B]``. Unset columns are zero. This
        setting is deferred until ``apply()`` is called.

        Args:
            effects_string: Comma-separated ``name=value`` pairs,
                e.g. ``"x=0.5, group[B]=1.2, x:group[B]=-0.3"``.

        Returns:
            self: For method chaining.
        """
        if not isinstance(effects_string, str):
            raise TypeError("effects_string must be a string")
        if not effects_string.strip():
            raise ValueError("effects_string cannot be empty")

        self._pending_effects = effects_string
        self._applied = False
        return self

    def set_cluster(
        self,
        grouping_var: str,
        n_clusters: Optional[int] = None,
        cluster_size: Optional[int] = None,
        intercept_sd: float = 1.0,
        slope_sd: Optional[Union[float, Dict[str, float]]] = None,
        correlation: float = 0.0,
    ):
        """Configure the grouping structure of the random-effect term.

        Specify either *n_clusters* or *cluster_size*; the other is derived
        from the sample size at simulation time. This setting is deferred
        until ``apply()`` is called.

        Args:
            grouping_var: Grouping variable of the formula's ``(... | g)`` term.
            n_clusters: Number of clusters.
            cluster_size: Observations per cluster.
            intercept_sd: SD of the random intercepts.
            slope_sd: SD of the random slopes: one number for every slope
                variable or ``{variable: sd}``.
            correlation: Correlation between every pair of random effects.

        Returns:
            self: For method chaining.

        Raises:
            ValueError: If the grouping variable is not in the formula,
                both or neither of *n_clusters*/*cluster_size* are given,
                or a value is out of range.
        """
        slope_vars = self._registry.slope_vars if grouping_var == self._registry.grouping_var else []
        if slope_sd is None:
            slope_sds: Dict[str, Any] = {}
        elif isinstance(slope_sd, dict):
            slope_sds = dict(slope_sd)
        else:
            slope_sds = dict.fromkeys(slope_vars, slope_sd)

        result = _validate_cluster_config(
            grouping_var,
            n_clusters,
            cluster_size,
            intercept_sd,
            slope_sds,
            correlation,
            self._registry.random_effects,
        )
        for warning in result.warnings:
            self._print(f"Warning: {warning}")
        result.raise_if_invalid()

        self._pending_clusters[grouping_var] = {
            "n_clusters": n_clusters,
            "cluster_size": cluster_size,
            "intercept_sd": float(intercept_sd),
            "slope_sds": {var: float(sd) for var, sd in slope_sds.items()},
            "correlation": float(correlation),
        }
        self._applied = False
        return self

    # =========================================================================
    # Apply method (processes all pending settings)
    # =========================================================================

    def apply(self):
        """
        Apply all pending settings to the model.

        Processes settings in the correct order:
        1. Variable types (factor levels change the design columns)
        2. Cluster configuration (random effects)
        3. Effects (need the final design columns)

        Called automatically before ``simulate()`` and
        ``estimate_recovery()`` when settings changed since the last apply.

        Returns:
            self for method chaining
        """
        from .utils.parsers import _parser

        self._apply_variable_types(_parser)
        self._apply_clusters()
        self._apply_effects(_parser)

        _validate_model_ready(self).raise_if_invalid()

        self._applied = True
        self._print("Model settings applied successfully")
        return self

    def _apply_variable_types(self, _parser):
        """Apply pending variable types to the registry."""
        if self._pending_variable_types is None or not self._pending_variable_types.strip():
            return

        parsed_vars, errors = _parser._parse(self._pending_variable_types, "variable_type", self._registry.predictor_names)
        if errors:
            raise ValueError("Error setting variable types:\n" + "\n".join(f"- {e}" for e in errors))

        successful = []
        for var_name, var_data in parsed_vars.items():
            params = {k: v for k, v in var_data.items() if k != "type"}
            self._registry.set_variable_type(var_name, var_data["type"], **params)
            if var_data["type"] == "factor":
                successful.append(f"{var_name}=(factor, levels {', '.join(var_data['levels'])})")
            else:
                successful.append(f"{var_name}={var_data['type']}")

        if successful:
            self._print(f"Variable types: {'; '.join(successful)}")

    def _apply_clusters(self):
        """Register the pending cluster specification in the registry."""
        if not self._pending_clusters:
            return

        for grouping_var, config in self._pending_clusters.items():
            if config["intercept_sd"] == 0 and not any(config["slope_sds"].values()):
                self._print(f"Warning: all random-effect SDs are 0 for '{grouping_var}'. No variation between clusters.")
            self._registry.register_cluster(grouping_var=grouping_var, **config)

        self._print(f"Cluster variables configured: {', '.join(self._pending_clusters)}")

    def _apply_effects(self, _parser):
        """Parse and apply pending coefficient assignments to the registry."""
        if self._pending_effects is None:
            return

        available = self._registry.design_column_names()[1:]
        parsed, errors = _parser._parse(self._pending_effects, "effect", available)
        if errors:
            raise ValueError("Effect validation failed:\n" + "\n".join(f"- {e}" for e in errors))

        for name, value in parsed.items():
            self._registry.set_coefficient(name, value)
        if parsed:
            self._print(f"Effects: {', '.join(f'{name}={value}' for name, value in parsed.items())}")

    def _ensure_applied(self):
        if not self._applied:
            self.apply()

    # =========================================================================
    # Simulation and fitting
    # =========================================================================

    def _cluster_layout(self, sample_size: int):
        spec = self._registry.cluster_spec
        (k, size), result = _validate_cluster_layout(sample_size, spec.n_clusters, spec.cluster_size)
        result.raise_if_invalid()
        return k, size

    def _simulate(self, sample_size: int, rng: np.random.Generator):
        """Generate one dataset; returns ``(data, random_effects)`` without side effects."""
        registry = self._registry
        cluster_ids = None
        k = 0
        if registry.is_mixed:
            k, _ = self._cluster_layout(sample_size)
            cluster_ids = generate_cluster_ids(sample_size, k)

        data = generate_predictors(registry, sample_size, rng, cluster_ids)
        X = build_design(registry.terms, data, registry.factor_levels).matrix
        beta = np.array(list(self.coefficients.values()), dtype=np.float64)

        random_effects = None
        if registry.is_mixed:
            Z, re_names = build_random_design(registry.slope_vars, data)
            b = generate_random_effects(registry.cluster_spec, k, rng)
            y = generate_response(X, beta, self.residual_sd, rng, Z=Z, b=b, cluster_ids=cluster_ids)
            labels = cluster_labels(registry.grouping_var, k)
            data[registry.grouping_var] = np.asarray(labels, dtype=object)[cluster_ids]
            random_effects = pd.DataFrame(b, index=labels, columns=re_names)
        else:
            y = generate_response(X, beta, self.residual_sd, rng)

        data[registry.dependent] = y
        return data, random_effects

    def simulate(self, sample_size: int, seed: Optional[int] = None) -> pd.DataFrame:
        """Simulate a dataset from the generating model.

        Args:
            sample_size: Number of observations (a multiple of the cluster
                layout for mixed models).
            seed: Seed for this call; defaults to the model's seed, so
                repeated calls return the same data.

        Returns:
            Data frame with the predictors, the grouping column (labels
            ``<group>01``, ``<group>02``, ...) and the response.
        """
        self._ensure_applied()
        result = _validate_sample_size(sample_size, len(self._registry.design_column_names()))
        for warning in result.warnings:
            self._print(f"Warning: {warning}")
        result.raise_if_invalid()

        rng = np.random.default_rng(self.seed if seed is None else seed)
        data, random_effects = self._simulate(sample_size, rng)
        self.last_data = data
        self.true_random_effects = random_effects
        return data

    def _fit_data(self, data: pd.DataFrame, reml: bool = True):
        return _fit_registry(self._registry, data, reml=reml, factor_levels=self._registry.factor_levels)

    def fit(self, data: Optional[pd.DataFrame] = None, reml: bool = True):
        """Fit the model formula to data.

        Args:
            data: Data to fit; defaults to the last simulated dataset.
            reml: Use REML for mixed models.

        Returns:
            ``OLSResult`` or ``MixedResult``.

        Raises:
            ValueError: If there is no data to fit.
        """
        if data is None:
            if self.last_data is None:
                raise ValueError("No data to fit. Call simulate() first or pass data")
            data = self.last_data
        return self._fit_data(data, reml=reml)

    def estimate_recovery(
        self,
        target: str,
        sample_sizes: Union[int, List[int]],
        n_simulations: int = 200,
        parallel: bool = False,
        n_cores: Optional[int] = None,
        max_failed_simulations: float = 0.03,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
        print_results: bool = True,
    ) -> Dict[str, Any]:
        """Check that refitted estimates recover a generating coefficient.

        For every sample size, simulate *n_simulations* datasets, refit the
        model and summarise the estimates of *target*: mean, bias,
        empirical SD, mean standard error, RMSE and confidence-interval
        coverage at level ``1 - alpha``.

        Args:
            target: Design column name (e.g. ``"x"`` or ``"group[B]"``).
            sample_sizes: One sample size or a list of them.
            n_simulations: Iterations per sample size.
            parallel: Distribute sample sizes over joblib workers.
            n_cores: joblib workers (default: half the CPUs).
            max_failed_simulations: Tolerated share of failed fits (0-1).
            progress_callback: Optional ``(current, total)`` callback; a
                ``StageReporter`` also sees the sample size in progress.
            cancel_check: Optional callable returning ``True`` to abort.
            print_results: Print the recovery table.

        Returns:
            Dict with ``"model"`` settings and the ``"results"`` table
            indexed by sample size.
        """
        from .progress import ProgressReporter

        self._ensure_applied()
        coefficients = self.coefficients
        if target not in coefficients:
            raise ValueError(f"Target '{target}' not found. Available: {', '.join(coefficients)}")

        sizes, result = _validate_sample_sizes(sample_sizes)
        result.raise_if_invalid()
        n_coef = len(coefficients)
        for size in sizes:
            _validate_sample_size(size, n_coef).raise_if_invalid()
            if self._registry.is_mixed:
                self._cluster_layout(size)

        n_sims, result = _validate_simulations(n_simulations)
        for warning in result.warnings:
            self._print(f"Warning: {warning}")
        result.raise_if_invalid()

        (parallel, n_cores), result = _validate_parallel_settings(parallel, n_cores)
        result.raise_if_invalid()
        _validate_numeric_parameter(max_failed_simulations, "max_failed_simulations", min_val=0, max_val=1).raise_if_invalid()

        runner = SimulationRunner(
            n_simulations=n_sims,
            seed=self.seed,
            parallel=parallel,
            n_cores=n_cores,
            max_failed_simulations=max_failed_simulations,
        )
        simulate_fit = partial(_recovery_iteration, self, target, self.level)

        progress = None
        if progress_callback is not None:
            progress = ProgressReporter(total=n_sims * len(sizes), callback=progress_callback)
            progress.start()
        raw = runner.run(sizes, simulate_fit, progress=progress, cancel_check=cancel_check)
        if progress is not None:
            progress.finish()

        true_value = coefficients[target]
        table = ResultsProcessor(true_value, level=self.level).process_sample_size_results(raw)
        recovery = build_recovery_result(
            target=target,
            true_value=true_value,
            equation=self.formula,
            model_type=self.model_type,
            sample_sizes=sizes,
            n_simulations=n_sims,
            level=self.level,
            parallel=parallel,
            table=table,
        )

        if print_results and self.verbose:
            print(f"\n{'=' * 80}")
            print("PARAMETER RECOVERY RESULTS")
            print(f"{'=' * 80}")
            print(format_recovery(table, target, true_value))
        return recovery

    def __repr__(self):
        return f"LinearModel(formula='{self.formula}')"

