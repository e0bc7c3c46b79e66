"""
Design matrices for LMMTour.

Builds treatment-coded fixed-effect design matrices (the same columns R's
``model.matrix`` produces for the supported formulas) and random-effect
design matrices from a data frame.
"""

from dataclasses import dataclass, field
from itertools import product
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

INTERCEPT = "(Intercept)"

Term = Tuple[str, List[Tuple[str, int]]]


@dataclass
class DesignMatrix:
    """A fixed-effect design matrix with its bookkeeping.

    Attributes:
        matrix: ``(n, p)`` float array, intercept in column 0.
        column_names: Coefficient names in column order.
        term_columns: Map from term name to its column indices.
        factor_levels: Levels used for each factor, reference first.
        terms: The ``(name, components)`` terms the matrix was built from.
    """

    matrix: np.ndarray
    column_names: List[str]
    term_columns: Dict[str, List[int]] = field(default_factory=dict)
    factor_levels: Dict[str, List[str]] = field(default_factory=dict)
    terms: List[Term] = field(default_factory=list)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.matrix.shape


def _component_name(var: str, degree: int) -> str:
    return var if degree == 1 else f"I({var}^{degree})"


def term_column_names(components: Sequence[Tuple[str, int]], factor_levels: Dict[str, List[str]]) -> List[str]:
    """Expand one term into its design column names.

    Factors contribute one dummy per non-reference level; interactions
    take the cartesian product of their components' columns.
    """
    pieces = []
    for var, degree in components:
        if var in factor_levels:
            pieces.append([f"{var}[{lvl}]" for lvl in factor_levels[var][1:]])
        else:
            pieces.append([_component_name(var, degree)])
    return [":".join(combo) for combo in product(*pieces)]


def _is_categorical(series: pd.Series) -> bool:
    return (
        isinstance(series.dtype, pd.CategoricalDtype)
        or pd.api.types.is_object_dtype(series)
        or pd.api.types.is_string_dtype(series)
        or pd.api.types.is_bool_dtype(series)
    )


def resolve_factor_levels(
    data: pd.DataFrame,
    variables: Sequence[str],
    declared: Optional[Dict[str, List[str]]] = None,
) -> Dict[str, List[str]]:
    """Decide which variables are factors and in which level order.

    Declared levels win; otherwise a Categorical keeps its category order
    and other non-numeric columns use their sorted unique values, as R
    does when it converts character vectors to factors.
    """
    declared = declared or {}
    levels: Dict[str, List[str]] = {}
    for var in variables:
        if var in declared:
            levels[var] = [str(lvl) for lvl in declared[var]]
            continue
        if var not in data.columns:
            continue
        series = data[var]
        if isinstance(series.dtype, pd.CategoricalDtype):
            levels[var] = [str(c) for c in series.cat.categories]
        elif _is_categorical(series):
            levels[var] = sorted(str(v) for v in series.dropna().unique())
    return levels


def _column_values(data: pd.DataFrame, var: str) -> pd.Series:
    if var not in data.columns:
        raise ValueError(f"Variable '{var}' not found in data. Columns: {', '.join(map(str, data.columns))}")
    series = data[var]
    if series.isna().any():
        raise ValueError(f"Variable '{var}' contains missing values")
    return series


def build_design(terms: Sequence[Term], data: pd.DataFrame, factor_levels: Optional[Dict[str, List[str]]] = None) -> DesignMatrix:
    """Build the treatment-coded fixed-effect design matrix.

    Args:
        terms: ``(name, components)`` pairs in formula order.
        data: Data frame holding every variable used by *terms*.
        factor_levels: Known factor levels (reference level first).
            Variables not listed are auto-detected from *data*.

    Returns:
        The ``DesignMatrix``.

    Raises:
        ValueError: On missing variables, missing values, unknown factor
            levels or non-numeric values in a continuous variable.
    """
    variables = []
    for _, components in terms:
        for var, _ in components:
            if var not in variables:
                variables.append(var)
    levels = resolve_factor_levels(data, variables, factor_levels)

    n = len(data)
    indicators: Dict[Tuple[str, str], np.ndarray] = {}
    numeric: Dict[str, np.ndarray] = {}
    for var in variables:
        series = _column_values(data, var)
        if var in levels:
            values = series.astype(str).to_numpy()
            unknown = sorted(set(values) - set(levels[var]))
            if unknown:
                raise ValueError(f"Unknown levels for factor '{var}': {', '.join(unknown)}. Known: {', '.join(levels[var])}")
            for lvl in levels[var][1:]:
                indicators[(var, lvl)] = (values == lvl).astype(np.float64)
        else:
            try:
                numeric[var] = series.to_numpy(dtype=np.float64)
            except (TypeError, ValueError):
                raise ValueError(f"Variable '{var}' must be numeric or declared as a factor") from None

    columns = [np.ones(n)]
    names = [INTERCEPT]
    term_columns: Dict[str, List[int]] = {}
    for term_name, components in terms:
        pieces = []
        for var, degree in components:
            if var in levels:
                pieces.append([(f"{var}[{lvl}]", indicators[(var, lvl)]) for lvl in levels[var][1:]])
            else:
                pieces.append([(_component_name(var, degree), numeric[var] ** degree)])
        term_columns[term_name] = []
        for combo in product(*pieces):
            names.append(":".join(name for name, _ in combo))
            col = np.ones(n)
            for _, values in combo:
                col = col * values
            columns.append(col)
            term_columns[term_name].append(len(names) - 1)

    return DesignMatrix(
        matrix=np.column_stack(columns),
        column_names=names,
        term_columns=term_columns,
        factor_levels=levels,
        terms=list(terms),
    )


def build_random_design(slope_vars: Sequence[str], data: pd.DataFrame) -> Tuple[np.ndarray, List[str]]:
    """Build the random-effect design ``Z``: an intercept column plus slopes.

    Returns:
        Tuple of ``(Z, names)`` with ``Z`` of shape ``(n, 1 + len(slope_vars))``.
    """
    columns = [np.ones(len(data))]
    for var in slope_vars:
        series = _column_values(data, var)
        try:
            columns.append(series.to_numpy(dtype=np.float64))
        except (TypeError, ValueError):
            raise ValueError(f"Random slope variable '{var}' must be numeric") from None
    return np.column_stack(columns), [INTERCEPT] + list(slope_vars)
