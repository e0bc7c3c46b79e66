"""
Variance-explained measures for fitted models (``r.squaredGLMM``).

Marginal and conditional R squared for linear mixed models follow
Nakagawa & Schielzeth (2013), with Johnson's (2014) extension for random
slopes: the random-effect variance is the mean over observations of
``z_i' Sigma z_i``.
"""

from typing import Dict

import numpy as np


def variance_components(fit) -> Dict[str, float]:
    """Decompose the response variance of a fitted model.

    Args:
        fit: ``OLSResult`` or ``MixedResult``.

    Returns:
        Dict with ``"fixed"`` (variance of the fixed-effect predictions),
        ``"random"`` (average random-effect variance, 0 for OLS) and
        ``"residual"``.
    """
    fixed_pred = fit.design.matrix @ fit.coef
    var_fixed = float(np.var(fixed_pred, ddof=1)) if len(fixed_pred) > 1 else 0.0

    if fit.kind == "mixed":
        var_random = float(np.mean(np.einsum("ij,jk,ik->i", fit.Z, fit.cov_re, fit.Z)))
    else:
        var_random = 0.0

    return {"fixed": var_fixed, "random": var_random, "residual": float(fit.sigma2)}


def r_squared_glmm(fit) -> Dict[str, float]:
    """Marginal and conditional R squared.

    For mixed models ``R2m = var_f / total`` and
    ``R2c = (var_f + var_r) / total`` with ``total = var_f + var_r + var_e``.
    For OLS fits both equal the ordinary R squared.

    Args:
        fit: ``OLSResult`` or ``MixedResult``.

    Returns:
        Dict with ``"R2m"`` and ``"R2c"``.
    """
    if fit.kind != "mixed":
        r2 = float(fit.r_squared)
        return {"R2m": r2, "R2c": r2}

    parts = variance_components(fit)
    total = parts["fixed"] + parts["random"] + parts["residual"]
    if total <= 0:
        return {"R2m": np.nan, "R2c": np.nan}
    return {
        "R2m": parts["fixed"] / total,
        "R2c": (parts["fixed"] + parts["random"]) / total,
    }
