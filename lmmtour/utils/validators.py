"""
Validation utilities for LMMTour.

This module provides validation functions for model inputs, simulation
parameters, and cluster layouts.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

__all__ = []


@dataclass
class _ValidationResult:
    """Outcome of a validation check, carrying errors and warnings.

    Attributes:
        is_valid: ``True`` if no errors were found.
        errors: List of error messages (empty when valid).
        warnings: List of non-fatal warning messages.
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]

    def raise_if_invalid(self):
        """Raise ``ValueError`` if the validation failed."""
        if not self.is_valid:
            error_msg = "Validation failed:\n" + "\n".join(f"• {err}" for err in self.errors)
            raise ValueError(error_msg)


class _Validator:
    """Static helpers for type and range checks used by all validators."""

    @staticmethod
    def _check_type(value: Any, expected_types: tuple, name: str) -> Optional[str]:
        """Check if value has expected type."""
        if isinstance(value, bool) or not isinstance(value, expected_types):
            actual_type = type(value).__name__
            expected = expected_types[0].__name__ if len(expected_types) == 1 else f"one of {[t.__name__ for t in expected_types]}"
            return f"{name} must be {expected}, got {actual_type}"
        return None

    @staticmethod
    def _check_range(
        value: Union[int, float],
        min_val: Optional[float],
        max_val: Optional[float],
        name: str,
    ) -> Optional[str]:
        """Check if value is within range."""
        if min_val is not None and value < min_val:
            return f"{name} must be >= {min_val}, got {value}"
        if max_val is not None and value > max_val:
            return f"{name} must be <= {max_val}, got {value}"
        return None


_validator = _Validator()


def _validate_numeric_parameter(
    value: Any,
    name: str,
    expected_types: tuple = (int, float),
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> _ValidationResult:
    """Generic validation for numeric parameters."""
    errors: List[str] = []

    type_error = _validator._check_type(value, expected_types, name)
    if type_error:
        return _ValidationResult(False, [type_error], [])

    range_error = _validator._check_range(value, min_val, max_val, name)
    if range_error:
        errors.append(range_error)

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_alpha(alpha: Any) -> _ValidationResult:
    """Validate alpha level parameter (strictly between 0 and 1)."""
    result = _validate_numeric_parameter(alpha, "Alpha")
    if result.is_valid and not 0 < alpha < 1:
        result = _ValidationResult(False, [f"Alpha must be between 0 and 1 (exclusive), got {alpha}"], [])
    return result


def _validate_seed(seed: Any) -> _ValidationResult:
    """Validate a random seed (``None`` or an integer in ``[0, 3e9)``)."""
    if seed is None:
        return _ValidationResult(True, [], [])
    return _validate_numeric_parameter(seed, "seed", expected_types=(int,), min_val=0, max_val=2999999999)


def _validate_positive(value: Any, name: str) -> _ValidationResult:
    """Validate a strictly positive number (standard deviations, scales)."""
    result = _validate_numeric_parameter(value, name)
    if result.is_valid and value <= 0:
        result = _ValidationResult(False, [f"{name} must be positive, got {value}"], [])
    return result


def _validate_non_negative(value: Any, name: str) -> _ValidationResult:
    """Validate a number that may be zero but not negative."""
    return _validate_numeric_parameter(value, name, min_val=0)


def _validate_correlation(value: Any, name: str = "correlation") -> _ValidationResult:
    """Validate a correlation coefficient in ``[-1, 1]``."""
    return _validate_numeric_parameter(value, name, min_val=-1, max_val=1)


def _validate_sample_size(sample_size: Any, n_coefficients: int = 1) -> _ValidationResult:
    """Validate sample size parameter.

    Requires an integer that leaves at least one residual degree of
    freedom for a model with *n_coefficients* coefficients (intercept
    included). Fewer than ten residual degrees of freedom only warns.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if isinstance(sample_size, bool) or not isinstance(sample_size, int):
        errors.append(f"sample_size must be an integer, got {type(sample_size).__name__}")
        return _ValidationResult(False, errors, warnings)

    if sample_size < 2:
        errors.append(f"sample_size must be at least 2, got {sample_size}")
    elif sample_size <= n_coefficients:
        errors.append(
            f"sample_size ({sample_size}) must exceed the number of coefficients ({n_coefficients}) "
            f"to leave residual degrees of freedom"
        )
    elif sample_size - n_coefficients < 10:
        warnings.append(
            f"Only {sample_size - n_coefficients} residual degrees of freedom; estimates will be very noisy"
        )
    elif sample_size > 1000000:
        errors.append(f"sample_size too large ({sample_size:,}). Maximum: 1,000,000")

    return _ValidationResult(len(errors) == 0, errors, warnings)


def _validate_sample_sizes(sample_sizes: Any) -> Tuple[List[int], _ValidationResult]:
    """Validate a list of sample sizes for Monte Carlo runs."""
    errors: List[str] = []

    if isinstance(sample_sizes, int) and not isinstance(sample_sizes, bool):
        sample_sizes = [sample_sizes]
    if not isinstance(sample_sizes, (list, tuple, range)) or len(sample_sizes) == 0:
        return [], _ValidationResult(False, ["sample_sizes must be a non-empty list of integers"], [])

    sizes = []
    for size in sample_sizes:
        if isinstance(size, bool) or not isinstance(size, int) or size < 2:
            errors.append(f"Invalid sample size {size!r}; expected an integer >= 2")
        else:
            sizes.append(size)

    if len(set(sizes)) != len(sizes):
        errors.append("sample_sizes must not contain duplicates")

    return sorted(sizes), _ValidationResult(len(errors) == 0, errors, [])


def _validate_simulations(n_simulations: Any) -> Tuple[int, _ValidationResult]:
    """Validate and process the number of Monte Carlo simulations."""
    result = _validate_numeric_parameter(n_simulations, "Number of simulations", expected_types=(int,), min_val=1)
    if result.is_valid and n_simulations < 100:
        result.warnings.append(
            f"Low simulation count ({n_simulations}). Bias and coverage estimates will be imprecise."
        )
    return (n_simulations if result.is_valid else 0), result


def _validate_parallel_settings(enable: Any, n_cores: Optional[int]) -> Tuple[Tuple[bool, int], _ValidationResult]:
    """Validate parallel processing settings."""
    import multiprocessing as mp

    errors: List[str] = []

    if not isinstance(enable, bool):
        errors.append(f"enable must be True or False, got {enable!r}")

    max_cores = mp.cpu_count() or 1
    if n_cores is None:
        n_cores = max(1, max_cores // 2)
    elif isinstance(n_cores, bool) or not isinstance(n_cores, int) or n_cores < 1:
        errors.append(f"n_cores must be a positive integer, got {n_cores}")
    else:
        n_cores = min(n_cores, max_cores)

    return (bool(enable), n_cores), _ValidationResult(len(errors) == 0, errors, [])


def _validate_cluster_config(
    grouping_var: str,
    n_clusters: Optional[int],
    cluster_size: Optional[int],
    intercept_sd: Any,
    slope_sd: Optional[Dict[str, float]],
    correlation: Any,
    random_effects: List[Dict],
) -> _ValidationResult:
    """Validate cluster configuration parameters against the parsed formula."""
    errors: List[str] = []
    warnings: List[str] = []

    matching = [re_ for re_ in random_effects if re_["grouping_var"] == grouping_var]
    if not matching:
        available = ", ".join(re_["grouping_var"] for re_ in random_effects) or "none"
        errors.append(f"Grouping variable '{grouping_var}' not found in formula random effects. Expected one of: {available}")
        return _ValidationResult(False, errors, warnings)
    slope_vars = matching[0]["slope_vars"]

    if n_clusters is not None and cluster_size is not None:
        errors.append("Specify either n_clusters OR cluster_size, not both")
    elif n_clusters is None and cluster_size is None:
        errors.append("Must specify either n_clusters or cluster_size")
    elif n_clusters is not None:
        if isinstance(n_clusters, bool) or not isinstance(n_clusters, int) or n_clusters < 2:
            errors.append(f"n_clusters must be an integer >= 2, got {n_clusters}")
        elif n_clusters < 5:
            warnings.append(f"Only {n_clusters} clusters; variance components will be poorly estimated")
    else:
        if isinstance(cluster_size, bool) or not isinstance(cluster_size, int) or cluster_size < 2:
            errors.append(f"cluster_size must be an integer >= 2, got {cluster_size}")

    for res in (
        _validate_non_negative(intercept_sd, "intercept_sd"),
        _validate_correlation(correlation),
    ):
        errors.extend(res.errors)

    if slope_sd:
        for var, sd in slope_sd.items():
            if var not in slope_vars:
                errors.append(
                    f"Random slope SD given for '{var}', but ({' + '.join(['1'] + slope_vars)}|{grouping_var}) "
                    f"has no slope for it"
                )
            errors.extend(_validate_non_negative(sd, f"slope_sd['{var}']").errors)

    return _ValidationResult(len(errors) == 0, errors, warnings)


def _validate_cluster_layout(sample_size: int, n_clusters: Optional[int], cluster_size: Optional[int]) -> Tuple[Tuple[int, int], _ValidationResult]:
    """Resolve and validate ``(n_clusters, cluster_size)`` for a sample size."""
    errors: List[str] = []
    if n_clusters is not None:
        size = sample_size // n_clusters
        k = n_clusters
    else:
        size = cluster_size
        k = sample_size // cluster_size

    if k * size != sample_size:
        errors.append(
            f"sample_size ({sample_size}) must be divisible by the cluster layout "
            f"({k} clusters of {size} observations)"
        )
    elif size < 2:
        errors.append(f"Each cluster needs at least 2 observations, got {size}")
    elif k < 2:
        errors.append(f"At least 2 clusters are required, got {k}")

    return (k, size), _ValidationResult(len(errors) == 0, errors, [])


def _validate_model_ready(model) -> _ValidationResult:
    """Check that a model has everything it needs to simulate data."""
    errors: List[str] = []
    registry = model._registry

    if registry.random_effects and not registry.cluster_specs:
        grouping = registry.random_effects[0]["grouping_var"]
        errors.append(f"Random effect for '{grouping}' found in formula but set_cluster('{grouping}', ...) not called")

    for name in ("seed", "alpha", "residual_sd", "intercept"):
        if not hasattr(model, name):
            errors.append(f"Model missing required attribute: {name}")

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_level(level: Any) -> _ValidationResult:
    """Validate a confidence level (strictly between 0 and 1)."""
    result = _validate_numeric_parameter(level, "level")
    if result.is_valid and not 0 < level < 1:
        result = _ValidationResult(False, [f"level must be between 0 and 1, got {level}"], [])
    return result


def _validate_choice(value: Any, choices: Sequence[str], name: str) -> _ValidationResult:
    """Validate that *value* is one of *choices*."""
    if value not in choices:
        return _ValidationResult(False, [f"{name} must be one of {list(choices)}, got {value!r}"], [])
    return _ValidationResult(True, [], [])
