"""
Data Generator for LMMTour.

Generates synthetic teaching datasets with:
- Continuous predictors (normal, uniform, evenly spaced grids)
- Balanced factors with a reference level
- Correlated per-cluster random intercepts and slopes
- Gaussian residuals around the linear predictor

All draws come from one ``numpy.random.Generator`` so that a seed fully
determines the dataset.
"""

from typing import List, Optional

import numpy as np
import pandas as pd

FLOAT_NEAR_ZERO = 1e-15


def generate_cluster_ids(sample_size: int, n_clusters: int) -> np.ndarray:
    """Generate a cluster-membership array ``[0,0,0, 1,1,1, ...]``.

    Args:
        sample_size: Total number of observations (a multiple of *n_clusters*).
        n_clusters: Number of clusters.

    Returns:
        1-D integer array of cluster IDs.
    """
    cluster_size = sample_size // n_clusters
    return np.repeat(np.arange(n_clusters), cluster_size)


def cluster_labels(grouping_var: str, n_clusters: int) -> List[str]:
    """Readable, sortable cluster labels (``subject01``, ``subject02``, ...)."""
    width = max(2, len(str(n_clusters)))
    return [f"{grouping_var}{i + 1:0{width}d}" for i in range(n_clusters)]


def _generate_factor(levels: List[str], n: int, rng: np.random.Generator) -> pd.Categorical:
    """Balanced factor: each level appears ``n / k`` times (up to rounding), shuffled."""
    values = np.resize(np.asarray(levels, dtype=object), n)
    return pd.Categorical(rng.permutation(values), categories=levels)


def _generate_grid(low: float, high: float, n: int, cluster_ids: Optional[np.ndarray]) -> np.ndarray:
    """Evenly spaced values, repeated within each cluster when clustered."""
    if cluster_ids is None:
        return np.linspace(low, high, n)
    values = np.empty(n)
    for cid in np.unique(cluster_ids):
        mask = cluster_ids == cid
        values[mask] = np.linspace(low, high, int(mask.sum()))
    return values


def generate_predictors(registry, sample_size: int, rng: np.random.Generator, cluster_ids: Optional[np.ndarray] = None) -> pd.DataFrame:
    """Simulate every predictor declared in the registry.

    Args:
        registry: ``VariableRegistry`` describing the predictors.
        sample_size: Number of rows.
        rng: Random generator.
        cluster_ids: Optional cluster membership (``grid`` variables
            restart in every cluster).

    Returns:
        Data frame with one column per predictor; factors are pandas
        Categoricals whose first category is the reference level.
    """
    columns = {}
    for name in registry.predictor_names:
        pred = registry.get_predictor(name)
        if pred.var_type == "factor":
            columns[name] = _generate_factor(pred.levels, sample_size, rng)
        elif pred.var_type == "uniform":
            columns[name] = rng.uniform(pred.low, pred.high, sample_size)
        elif pred.var_type == "grid":
            columns[name] = _generate_grid(pred.low, pred.high, sample_size, cluster_ids)
        else:
            columns[name] = rng.normal(pred.mean, pred.sd, sample_size)
    return pd.DataFrame(columns, index=pd.RangeIndex(sample_size))


def random_effects_covariance(sds: List[float], correlation: float) -> np.ndarray:
    """Covariance matrix of the random effects from SDs and one shared correlation."""
    sds_arr = np.asarray(sds, dtype=np.float64)
    q = len(sds_arr)
    corr = np.full((q, q), float(correlation))
    np.fill_diagonal(corr, 1.0)
    return corr * np.outer(sds_arr, sds_arr)


def generate_random_effects(cluster_spec, n_clusters: int, rng: np.random.Generator) -> np.ndarray:
    """Draw per-cluster random effects.

    Args:
        cluster_spec: ``ClusterSpec`` with SDs and the shared correlation.
        n_clusters: Number of clusters.
        rng: Random generator.

    Returns:
        Array of shape ``(n_clusters, 1 + n_slopes)``: intercept deviation
        first, then one column per slope variable.

    Raises:
        ValueError: If the implied covariance matrix is not positive
            semi-definite (e.g. a strongly negative correlation among
            three or more random effects).
    """
    cov = random_effects_covariance(cluster_spec.random_sds, cluster_spec.correlation)
    eigenvalues = np.linalg.eigvalsh(cov)
    if np.any(eigenvalues < -1e-10):
        raise ValueError("Random-effect covariance matrix is not positive semi-definite; reduce |correlation|")

    # Cholesky fails on zero-variance effects; an eigen decomposition does not
    eigenvalues, eigenvectors = np.linalg.eigh(cov)
    root = eigenvectors * np.sqrt(np.clip(eigenvalues, 0.0, None))
    z = rng.standard_normal((n_clusters, cov.shape[0]))
    return z @ root.T


def generate_response(
    X: np.ndarray,
    beta: np.ndarray,
    residual_sd: float,
    rng: np.random.Generator,
    Z: Optional[np.ndarray] = None,
    b: Optional[np.ndarray] = None,
    cluster_ids: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Generate ``y = X @ beta + rowsum(Z * b[cluster]) + e``.

    Args:
        X: Fixed-effect design matrix ``(n, p)`` including the intercept.
        beta: Coefficients ``(p,)``.
        residual_sd: Standard deviation of the Gaussian residuals.
        rng: Random generator.
        Z: Optional random-effect design ``(n, q)``.
        b: Optional random effects ``(n_clusters, q)``.
        cluster_ids: Cluster membership for each row (required with *Z*).

    Returns:
        Response vector of shape ``(n,)``.
    """
    linear_predictor = X @ beta
    if Z is not None and b is not None:
        linear_predictor = linear_predictor + np.sum(Z * b[cluster_ids], axis=1)
    if residual_sd < FLOAT_NEAR_ZERO:
        return linear_predictor
    return linear_predictor + rng.normal(0.0, residual_sd, X.shape[0])
