"""
Estimated marginal means, trends and pairwise contrasts (``emmeans``).

Every quantity here is a linear function ``L @ beta`` of the fixed
effects, so standard errors follow from ``sqrt(L V L')`` with ``V`` the
coefficient covariance. Means are averaged with equal weights over the
reference grid, as emmeans does by default.
"""

from dataclasses import dataclass
from itertools import combinations, product
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from ..utils.validators import _validate_level
from .design import build_design
from .distributions import CORRECTION_METHODS, adjust_pvalues, t_ppf, t_pvalue, tukey_pvalue


@dataclass
class MarginalMeans:
    """Marginal means (or trends) with everything needed for contrasts.

    Attributes:
        table: One row per mean with the grid values, estimate, ``SE``,
            ``df``, ``lower.CL`` and ``upper.CL``.
        L: ``(m, p)`` linear combinations of the coefficients.
        cov: ``(p, p)`` coefficient covariance.
        coef: ``(p,)`` coefficients.
        df: Degrees of freedom for inference (``inf`` for mixed fits).
        specs: Variables the means are computed for.
        by: Conditioning variables.
        level: Confidence level of the intervals.
        estimate_name: ``"emmean"`` or ``"<var>.trend"``.
    """

    table: pd.DataFrame
    L: np.ndarray
    cov: np.ndarray
    coef: np.ndarray
    df: float
    specs: List[str]
    by: List[str]
    level: float
    estimate_name: str = "emmean"

    @property
    def estimates(self) -> np.ndarray:
        return self.L @ self.coef

    def __len__(self):
        return len(self.table)


def _as_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _model_variables(fit) -> List[str]:
    names: List[str] = []
    for _, components in fit.design.terms:
        for var, _ in components:
            if var not in names:
                names.append(var)
    return names


def _grid_values(fit, at: Optional[Dict[str, Union[float, Sequence]]] = None) -> Dict[str, list]:
    at = dict(at or {})
    variables = _model_variables(fit)
    unknown = sorted(set(at) - set(variables))
    if unknown:
        raise ValueError(f"'at' names variables not in the model: {', '.join(unknown)}")

    levels = fit.design.factor_levels
    values: Dict[str, list] = {}
    for var in variables:
        if var in at:
            raw = at[var]
            chosen = [raw] if np.isscalar(raw) else list(raw)
            if not chosen:
                raise ValueError(f"'at' gives no values for '{var}'")
            if var in levels:
                bad = [str(v) for v in chosen if str(v) not in levels[var]]
                if bad:
                    raise ValueError(f"Unknown levels for factor '{var}': {', '.join(bad)}")
                values[var] = [str(v) for v in chosen]
            else:
                values[var] = [float(v) for v in chosen]
        elif var in levels:
            values[var] = list(levels[var])
        else:
            if fit.data is None or var not in fit.data.columns:
                raise ValueError(f"No data to average '{var}' over; pass it in 'at'")
            values[var] = [float(np.mean(fit.data[var].to_numpy(dtype=np.float64)))]
    return values


def reference_grid(fit, at: Optional[Dict[str, Union[float, Sequence]]] = None) -> pd.DataFrame:
    """The reference grid of a fitted model.

    Every factor level is crossed with every other; continuous predictors
    sit at their sample means unless *at* gives other values.

    Args:
        fit: ``OLSResult`` or ``MixedResult``.
        at: Optional ``{variable: value or list of values}`` overrides.

    Returns:
        Data frame with one row per grid point.
    """
    values = _grid_values(fit, at)
    names = list(values)
    rows = list(product(*(values[name] for name in names)))
    return pd.DataFrame(rows, columns=names)


def _check_grouping(grid: pd.DataFrame, specs: List[str], by: List[str]):
    if not specs:
        raise ValueError("specs must name at least one variable")
    for var in specs + by:
        if var not in grid.columns:
            raise ValueError(f"'{var}' is not a predictor in the model")
    overlap = set(specs) & set(by)
    if overlap:
        raise ValueError(f"Variables cannot be in both specs and by: {', '.join(sorted(overlap))}")


def _unique_in_order(series: pd.Series) -> list:
    return list(pd.unique(series))


def _summarise(fit, grid: pd.DataFrame, X_grid: np.ndarray, specs, by, level, estimate_name) -> MarginalMeans:
    """Average grid rows into one linear combination per (by, specs) cell."""
    spec_values = [_unique_in_order(grid[v]) for v in specs]
    by_values = [_unique_in_order(grid[v]) for v in by]

    keys = []
    rows = []
    for by_key in product(*by_values):
        for spec_key in product(*spec_values):
            mask = np.ones(len(grid), dtype=bool)
            for var, val in zip(by + specs, by_key + spec_key):
                mask &= (grid[var] == val).to_numpy()
            rows.append(X_grid[mask].mean(axis=0))
            keys.append(spec_key + by_key)

    L = np.vstack(rows)
    coef = np.asarray(fit.coef, dtype=np.float64)
    cov = fit.cov_params().to_numpy()
    estimates = L @ coef
    se = np.sqrt(np.einsum("ij,jk,ik->i", L, cov, L))
    df = fit.df
    crit = t_ppf(0.5 + level / 2, df) if df > 0 else np.nan

    table = pd.DataFrame(keys, columns=specs + by)
    table[estimate_name] = estimates
    table["SE"] = se
    table["df"] = df
    table["lower.CL"] = estimates - crit * se
    table["upper.CL"] = estimates + crit * se
    return MarginalMeans(
        table=table,
        L=L,
        cov=cov,
        coef=coef,
        df=df,
        specs=list(specs),
        by=list(by),
        level=level,
        estimate_name=estimate_name,
    )


def emmeans(fit, specs, by=None, at=None, level: float = 0.95) -> MarginalMeans:
    """Estimated marginal means.

    Args:
        fit: ``OLSResult`` or ``MixedResult``.
        specs: Variable name (or list) to compute means for.
        by: Optional conditioning variable(s); means are reported within
            each of their combinations.
        at: Optional reference-grid overrides (see ``reference_grid``).
        level: Confidence level.

    Returns:
        ``MarginalMeans`` with an ``emmean`` column.
    """
    _validate_level(level).raise_if_invalid()
    specs, by = _as_list(specs), _as_list(by)
    grid = reference_grid(fit, at)
    _check_grouping(grid, specs, by)
    X_grid = build_design(fit.design.terms, grid, fit.design.factor_levels).matrix
    return _summarise(fit, grid, X_grid, specs, by, level, "emmean")


def emtrends(fit, specs, var: str, by=None, at=None, level: float = 0.95) -> MarginalMeans:
    """Estimated marginal trends: the slope of *var* within each cell.

    The slope is a central finite difference of the model prediction,
    exact up to rounding for linear and quadratic terms.

    Args:
        fit: ``OLSResult`` or ``MixedResult``.
        specs: Variable(s) defining the cells (e.g. the factor *var*
            interacts with).
        var: Continuous predictor whose slope is estimated.
        by: Optional conditioning variable(s).
        at: Optional reference-grid overrides.
        level: Confidence level.

    Returns:
        ``MarginalMeans`` with a ``<var>.trend`` column.
    """
    if var in fit.design.factor_levels:
        raise ValueError(f"'{var}' is a factor; trends need a continuous variable")
    _validate_level(level).raise_if_invalid()
    specs, by = _as_list(specs), _as_list(by)
    grid = reference_grid(fit, at)
    if var not in grid.columns:
        raise ValueError(f"'{var}' is not a predictor in the model")
    _check_grouping(grid, specs, by)

    h = 1e-3
    if fit.data is not None and var in fit.data.columns:
        sd = float(np.std(fit.data[var].to_numpy(dtype=np.float64)))
        if sd > 0:
            h = 1e-3 * sd

    upper, lower = grid.copy(), grid.copy()
    upper[var] = upper[var] + h
    lower[var] = lower[var] - h
    X_up = build_design(fit.design.terms, upper, fit.design.factor_levels).matrix
    X_low = build_design(fit.design.terms, lower, fit.design.factor_levels).matrix
    return _summarise(fit, grid, (X_up - X_low) / (2 * h), specs, by, level, f"{var}.trend")


def _label(key) -> str:
    return " ".join(f"{v:g}" if isinstance(v, float) else str(v) for v in key)


def pairwise(emm: MarginalMeans, adjust: str = "tukey") -> pd.DataFrame:
    """All pairwise differences between marginal means (``pairs(emm)``).

    Contrasts are formed within each ``by`` group as ``a - b`` for every
    ``a`` listed before ``b``, and p-values are adjusted within the group.

    Args:
        emm: Result of ``emmeans`` or ``emtrends``.
        adjust: ``"tukey"``, ``"bonferroni"``, ``"holm"`` or ``"none"``.

    Returns:
        Data frame with ``contrast``, the ``by`` columns, ``estimate``,
        ``SE``, ``df``, ``t.ratio`` and ``p.value``.
    """
    if adjust not in CORRECTION_METHODS:
        raise ValueError(f"Unknown adjustment '{adjust}'. Valid: {', '.join(CORRECTION_METHODS)}")

    table = emm.table
    groups: Dict[tuple, List[int]] = {}
    for pos in range(len(table)):
        key = tuple(table.iloc[pos][var] for var in emm.by)
        groups.setdefault(key, []).append(pos)

    records = []
    for group, idx in groups.items():
        k = len(idx)
        group_rows = []
        for i, j in combinations(idx, 2):
            c = emm.L[i] - emm.L[j]
            estimate = float(c @ emm.coef)
            se = float(np.sqrt(c @ emm.cov @ c))
            t_ratio = estimate / se if se > 0 else np.nan
            label = f"{_label(table.iloc[i][emm.specs])} - {_label(table.iloc[j][emm.specs])}"
            group_rows.append([label, *group, estimate, se, emm.df, t_ratio])

        if not group_rows:
            continue
        t_ratios = np.array([row[-1] for row in group_rows])
        if adjust == "tukey":
            p_values = np.array([tukey_pvalue(t, k, emm.df) for t in t_ratios])
        else:
            p_values = adjust_pvalues(t_pvalue(t_ratios, emm.df), adjust)
        for row, p in zip(group_rows, p_values):
            records.append(row + [float(p)])

    return pd.DataFrame(records, columns=["contrast", *emm.by, "estimate", "SE", "df", "t.ratio", "p.value"])
