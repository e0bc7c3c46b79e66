"""Linear Mixed-Effects (LME) models for LMMTour (the ``lmer`` step).

Fits random-intercept and random-slope models with statsmodels
``MixedLM`` (REML by default), retrying with more robust optimizers when
a fit fails, and exposes lme4-style views of the result: fixed-effect
Wald tests, variance components, BLUPs, per-group coefficients, ICC and
likelihood-ratio comparisons.
"""

import warnings
from dataclasses import dataclass, field
from typing import Any, List, Optional

import numpy as np
import pandas as pd

from .design import DesignMatrix, build_design, build_random_design
from .distributions import chi2_pvalue, t_ppf, t_pvalue

# Optimizer ladder: fast default, then derivative-free fallbacks
_FIT_ATTEMPTS = [
    ("lbfgs", 200),
    ("powell", 1000),
    ("nm", 4000),
]


@dataclass
class MixedResult:
    """A fitted linear mixed model.

    Attributes:
        design: Fixed-effect ``DesignMatrix``.
        y: Response vector.
        groups: Group label of every observation.
        Z: Random-effect design ``(n, q)``.
        re_names: Names of the random-effect columns (``"(Intercept)"``
            first, then slope variables).
        result: The underlying statsmodels ``MixedLMResults``.
        reml: Whether the fit used REML.
        method: Optimizer that produced the accepted fit.
        converged: Optimizer convergence flag.
        fit_warnings: Messages statsmodels emitted during the accepted fit.
        response: Response name for display.
        formula: Formula string for display.
        grouping_var: Name of the grouping variable.
        data: Source data frame (reference grids for marginal means).
    """

    design: DesignMatrix
    y: np.ndarray
    groups: np.ndarray
    Z: np.ndarray
    re_names: List[str]
    result: Any
    reml: bool = True
    method: str = "lbfgs"
    converged: bool = True
    fit_warnings: List[str] = field(default_factory=list)
    response: str = "y"
    formula: str = ""
    grouping_var: str = "group"
    data: Optional[pd.DataFrame] = None

    kind = "mixed"

    # -------------------------------------------------------------------------
    # Fixed effects
    # -------------------------------------------------------------------------

    @property
    def nobs(self) -> int:
        return len(self.y)

    @property
    def column_names(self) -> List[str]:
        return self.design.column_names

    @property
    def coef(self) -> np.ndarray:
        return np.asarray(self.result.fe_params, dtype=np.float64)

    @property
    def params(self) -> pd.Series:
        return pd.Series(self.coef, index=self.column_names)

    @property
    def df(self) -> float:
        """Wald tests are asymptotic (z), so inference uses infinite df."""
        return np.inf

    def cov_params(self) -> pd.DataFrame:
        """Covariance matrix of the fixed-effect estimates."""
        k = len(self.column_names)
        cov = np.asarray(self.result.cov_params(), dtype=np.float64)[:k, :k]
        return pd.DataFrame(cov, index=self.column_names, columns=self.column_names)

    @property
    def bse(self) -> np.ndarray:
        return np.sqrt(np.diag(self.cov_params().to_numpy()))

    @property
    def coefficients(self) -> pd.DataFrame:
        """Fixed-effect table with Wald z-tests."""
        se = self.bse
        with np.errstate(divide="ignore", invalid="ignore"):
            z_values = self.coef / se
        return pd.DataFrame(
            {
                "Estimate": self.coef,
                "Std. Error": se,
                "z value": z_values,
                "Pr(>|z|)": t_pvalue(z_values, np.inf),
            },
            index=self.column_names,
        )

    def confint(self, level: float = 0.95) -> pd.DataFrame:
        """Wald confidence intervals for the fixed effects."""
        crit = t_ppf(0.5 + level / 2, np.inf)
        se = self.bse
        return pd.DataFrame(
            {
                f"{100 * (1 - level) / 2:g} %": self.coef - crit * se,
                f"{100 * (1 + level) / 2:g} %": self.coef + crit * se,
            },
            index=self.column_names,
        )

    # -------------------------------------------------------------------------
    # Random effects
    # -------------------------------------------------------------------------

    @property
    def cov_re(self) -> np.ndarray:
        """Covariance matrix of the random effects ``(q, q)``."""
        return np.atleast_2d(np.asarray(self.result.cov_re, dtype=np.float64))

    @property
    def sigma2(self) -> float:
        """Residual variance."""
        return float(self.result.scale)

    @property
    def sigma(self) -> float:
        return float(np.sqrt(self.sigma2))

    @property
    def re_correlation(self) -> np.ndarray:
        """Correlation matrix of the random effects (``nan`` for zero variances)."""
        sds = np.sqrt(np.clip(np.diag(self.cov_re), 0.0, None))
        with np.errstate(divide="ignore", invalid="ignore"):
            return self.cov_re / np.outer(sds, sds)

    def varcorr(self) -> pd.DataFrame:
        """Variance components table (lme4's ``VarCorr``)."""
        variances = np.diag(self.cov_re)
        rows = [(self.grouping_var, name, var, np.sqrt(max(var, 0.0))) for name, var in zip(self.re_names, variances)]
        rows.append(("Residual", "", self.sigma2, self.sigma))
        return pd.DataFrame(rows, columns=["Groups", "Name", "Variance", "Std.Dev."])

    @property
    def icc(self) -> float:
        """Intraclass correlation ``tau^2 / (tau^2 + sigma^2)``.

        Only defined for random-intercept models; ``nan`` with random slopes,
        where the share of between-group variance depends on the predictor.
        """
        if len(self.re_names) != 1:
            return np.nan
        tau2 = float(self.cov_re[0, 0])
        return tau2 / (tau2 + self.sigma2)

    @property
    def group_names(self) -> List[str]:
        return list(pd.unique(pd.Series(self.groups)))

    @property
    def n_groups(self) -> int:
        return len(self.group_names)

    def ranef(self) -> pd.DataFrame:
        """Predicted random effects (BLUPs), one row per group."""
        blups = self.result.random_effects
        rows = [np.asarray(blups[g], dtype=np.float64) for g in self.group_names]
        return pd.DataFrame(rows, index=self.group_names, columns=self.re_names)

    def coef_by_group(self) -> pd.DataFrame:
        """Per-group coefficients: fixed effects plus BLUPs (lme4's ``coef``)."""
        ranef = self.ranef()
        table = pd.DataFrame(np.tile(self.coef, (len(ranef), 1)), index=ranef.index, columns=self.column_names)
        for name in self.re_names:
            if name in table.columns:
                table[name] = table[name] + ranef[name]
        return table

    # -------------------------------------------------------------------------
    # Fit statistics and prediction
    # -------------------------------------------------------------------------

    @property
    def loglik(self) -> float:
        """Log-likelihood (restricted when the fit used REML)."""
        llf = float(self.result.llf)
        if not np.isfinite(llf):
            # statsmodels reports inf at the variance boundary; recompute directly
            llf = float(self.result.model.loglike(self.result.params))
        return llf

    @property
    def n_params(self) -> int:
        """Fixed effects, random-effect covariance parameters and the residual variance."""
        q = len(self.re_names)
        return len(self.column_names) + q * (q + 1) // 2 + 1

    @property
    def aic(self) -> float:
        return -2.0 * self.loglik + 2.0 * self.n_params

    @property
    def bic(self) -> float:
        return -2.0 * self.loglik + np.log(self.nobs) * self.n_params

    @property
    def fitted_fixed(self) -> np.ndarray:
        """Population-level (marginal) fitted values ``X beta``."""
        return self.design.matrix @ self.coef

    @property
    def fitted(self) -> np.ndarray:
        """Group-level (conditional) fitted values ``X beta + Z b``."""
        ranef = self.ranef()
        b = ranef.loc[list(self.groups)].to_numpy()
        return self.fitted_fixed + np.sum(self.Z * b, axis=1)

    @property
    def residuals(self) -> np.ndarray:
        return self.y - self.fitted

    def predict(self, newdata: Optional[pd.DataFrame] = None, include_random: bool = True) -> np.ndarray:
        """Predict the response.

        Args:
            newdata: Data frame with predictors (and the grouping column
                when *include_random* is set). ``None`` uses the fitted data.
            include_random: Add each row's group BLUPs. Groups not seen
                during fitting get population-level predictions.

        Returns:
            Array of predictions.
        """
        if newdata is None:
            return self.fitted if include_random else self.fitted_fixed

        X = build_design(self.design.terms, newdata, self.design.factor_levels).matrix
        pred = X @ self.coef
        if not include_random:
            return pred
        if self.grouping_var not in newdata.columns:
            raise ValueError(f"newdata needs the grouping column '{self.grouping_var}' when include_random=True")

        Z, _ = build_random_design(self.re_names[1:], newdata)
        ranef = self.ranef()
        labels = newdata[self.grouping_var].astype(str).to_numpy()
        known = ranef.reindex(labels).fillna(0.0).to_numpy()
        return pred + np.sum(Z * known, axis=1)

    def refit_ml(self) -> "MixedResult":
        """Refit the same model by maximum likelihood."""
        if not self.reml:
            return self
        return fit_mixed(
            self.design,
            self.y,
            self.groups,
            self.Z,
            self.re_names,
            reml=False,
            response=self.response,
            formula=self.formula,
            grouping_var=self.grouping_var,
            data=self.data,
        )

    def summary(self) -> str:
        """lme4-style text summary."""
        from ..utils.formatters import format_mixed_summary

        return format_mixed_summary(self)


def fit_mixed(
    design: DesignMatrix,
    y,
    groups,
    Z: np.ndarray,
    re_names: List[str],
    reml: bool = True,
    response: str = "y",
    formula: str = "",
    grouping_var: str = "group",
    data: Optional[pd.DataFrame] = None,
) -> MixedResult:
    """Fit a linear mixed model with statsmodels ``MixedLM``.

    Tries the optimizers in ``_FIT_ATTEMPTS`` in turn. The first converged
    fit is accepted; if none converges, the last successful but
    unconverged fit is returned with a warning.

    Args:
        design: Fixed-effect design matrix (intercept included).
        y: Response values.
        groups: Group label of every observation.
        Z: Random-effect design ``(n, q)`` (intercept column first).
        re_names: Names of the columns of ``Z``.
        reml: Use REML (default) or ML.
        response: Response name for display.
        formula: Formula string for display.
        grouping_var: Grouping variable name for display.
        data: Source data frame, kept for reference grids.

    Returns:
        ``MixedResult``.

    Raises:
        ImportError: If statsmodels is not installed.
        RuntimeError: If every optimizer attempt raised an error.
    """
    try:
        from statsmodels.regression.mixed_linear_model import MixedLM
    except ImportError as e:
        raise ImportError("statsmodels required for mixed models: pip install statsmodels") from e

    y = np.asarray(y, dtype=np.float64)
    groups = np.asarray(groups).astype(str)
    exog = pd.DataFrame(design.matrix, columns=design.column_names)
    exog_re = pd.DataFrame(Z, columns=re_names)

    model = MixedLM(endog=y, exog=exog, groups=groups, exog_re=exog_re)

    accepted = None
    accepted_method = None
    accepted_messages: List[str] = []
    failure_reason = None

    for method, max_iter in _FIT_ATTEMPTS:
        try:
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always")
                result = model.fit(reml=reml, method=method, maxiter=max_iter, full_output=False)
        except (np.linalg.LinAlgError, ValueError, FloatingPointError) as e:
            failure_reason = f"{type(e).__name__}: {e}"
            continue

        accepted, accepted_method = result, method
        accepted_messages = sorted({str(w.message) for w in caught})
        if getattr(result, "converged", True):
            break

    if accepted is None:
        raise RuntimeError(f"Mixed model fit failed with every optimizer. Last error: {failure_reason}")

    converged = bool(getattr(accepted, "converged", True))
    if not converged:
        warnings.warn(
            f"Mixed model did not converge (last optimizer: {accepted_method}); estimates may be unreliable",
            UserWarning,
            stacklevel=2,
        )
    elif accepted_messages:
        warnings.warn("Mixed model fit reported: " + "; ".join(accepted_messages), UserWarning, stacklevel=2)

    return MixedResult(
        design=design,
        y=y,
        groups=groups,
        Z=np.asarray(Z, dtype=np.float64),
        re_names=list(re_names),
        result=accepted,
        reml=reml,
        method=accepted_method,
        converged=converged,
        fit_warnings=accepted_messages,
        response=response,
        formula=formula,
        grouping_var=grouping_var,
        data=data,
    )


def likelihood_ratio_test(reduced: MixedResult, full: MixedResult, refit: Optional[bool] = None) -> pd.DataFrame:
    """Likelihood-ratio test between nested mixed models (lme4's ``anova(m0, m1)``).

    Models that differ in their fixed effects are only comparable by ML,
    so REML fits are refit by ML when *refit* is ``None`` and the fixed
    effects differ. Models that differ only in random effects are
    compared on the criterion they were fitted with.

    Args:
        reduced: The smaller model.
        full: The larger model.
        refit: Force (``True``) or forbid (``False``) ML refitting.

    Returns:
        Two-row table with ``npar``, ``AIC``, ``BIC``, ``logLik``,
        ``Chisq``, ``Df`` and ``Pr(>Chisq)``.

    Raises:
        ValueError: If the models use different data sizes or *full* has
            no extra parameters.
    """
    if reduced.nobs != full.nobs:
        raise ValueError(f"Models were fitted to different numbers of observations ({reduced.nobs} vs {full.nobs})")

    same_fixed = reduced.column_names == full.column_names
    if refit is None:
        refit = not same_fixed
    if not refit and not same_fixed and (reduced.reml or full.reml):
        raise ValueError("REML fits with different fixed effects are not comparable; use refit=True")
    if refit:
        reduced, full = reduced.refit_ml(), full.refit_ml()
    elif reduced.reml != full.reml:
        raise ValueError("Both models must use the same estimation method (REML or ML)")

    df = full.n_params - reduced.n_params
    if df <= 0:
        raise ValueError("The full model must have more parameters than the reduced model")

    chisq = max(2.0 * (full.loglik - reduced.loglik), 0.0)
    return pd.DataFrame(
        {
            "npar": [reduced.n_params, full.n_params],
            "AIC": [reduced.aic, full.aic],
            "BIC": [reduced.bic, full.bic],
            "logLik": [reduced.loglik, full.loglik],
            "Chisq": [np.nan, chisq],
            "Df": [np.nan, df],
            "Pr(>Chisq)": [np.nan, chi2_pvalue(chisq, df)],
        },
        index=["Model 1", "Model 2"],
    )
