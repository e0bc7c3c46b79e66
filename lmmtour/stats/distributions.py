"""Statistical distribution functions for LMMTour.

Thin wrappers over ``scipy.stats`` for the t, F, chi2, normal and
studentized range distributions, treating ``df = inf`` as the asymptotic
(normal) case, plus multiple-comparison p-value adjustments.

Usage:
    from lmmtour.stats.distributions import t_ppf, t_pvalue, adjust_pvalues
"""

import numpy as np
from scipy.stats import chi2 as _chi2_dist
from scipy.stats import f as _f_dist
from scipy.stats import norm as _norm_dist
from scipy.stats import studentized_range as _sr_dist
from scipy.stats import t as _t_dist

# Above this the studentized range is evaluated at its asymptotic limit
_SR_MAX_DF = 1e5

CORRECTION_METHODS = ("none", "bonferroni", "holm", "tukey")


def t_ppf(p, df):
    """Student's t quantile function (normal quantile for ``df = inf``)."""
    if np.isinf(df):
        return float(_norm_dist.ppf(p))
    return float(_t_dist.ppf(p, df))


def t_pvalue(stat, df):
    """Two-sided p-value(s) for t (or z when ``df = inf``) statistics."""
    stat = np.abs(np.asarray(stat, dtype=np.float64))
    if np.isinf(df):
        return 2.0 * _norm_dist.sf(stat)
    return 2.0 * _t_dist.sf(stat, df)


def f_pvalue(stat, dfn, dfd):
    """Upper-tail p-value of an F statistic."""
    if dfd <= 0 or dfn <= 0 or not np.isfinite(stat):
        return np.nan
    return float(_f_dist.sf(stat, dfn, dfd))


def chi2_pvalue(stat, df):
    """Upper-tail p-value of a chi-squared statistic."""
    if df <= 0:
        return np.nan
    return float(_chi2_dist.sf(max(stat, 0.0), df))


def tukey_pvalue(t_ratio, n_levels, df):
    """Tukey HSD p-value for a pairwise t ratio among *n_levels* means.

    Uses the studentized range distribution: ``P(Q > |t| * sqrt(2))``.
    """
    if n_levels < 2:
        return np.nan
    if n_levels == 2:
        return float(t_pvalue(t_ratio, df))
    df_eff = min(df, _SR_MAX_DF)
    return float(_sr_dist.sf(abs(t_ratio) * np.sqrt(2.0), n_levels, df_eff))


def adjust_pvalues(pvalues, method):
    """Adjust a family of p-values for multiple comparisons.

    Args:
        pvalues: Raw p-values.
        method: ``"none"``, ``"bonferroni"`` or ``"holm"`` (Tukey is
            handled on the statistic, see ``tukey_pvalue``).

    Returns:
        Array of adjusted p-values, capped at 1.
    """
    p = np.asarray(pvalues, dtype=np.float64)
    m = len(p)
    if m == 0 or method == "none":
        return p.copy()
    if method == "bonferroni":
        return np.minimum(p * m, 1.0)
    if method == "holm":
        order = np.argsort(p)
        stepped = np.maximum.accumulate((m - np.arange(m)) * p[order])
        adjusted = np.empty(m)
        adjusted[order] = np.minimum(stepped, 1.0)
        return adjusted
    raise ValueError(f"Unknown p-value adjustment '{method}'. Valid: none, bonferroni, holm")
