"""
OLS regression for LMMTour (the ``lm`` step of each lesson).

Fits ordinary least squares by QR decomposition and exposes the pieces a
regression summary needs: coefficient t-tests, the overall F-test, R
squared, confidence intervals, predictions, the sequential (type I) ANOVA
table and nested-model F comparisons.
"""

import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from .design import DesignMatrix, build_design
from .distributions import f_pvalue, t_ppf, t_pvalue

FLOAT_NEAR_ZERO = 1e-15


def _ols_core(X, y):
    """Core least-squares solve via QR.

    Args:
        X: ``(n, p)`` design matrix including the intercept column.
        y: ``(n,)`` response vector.

    Returns:
        Tuple ``(beta, residuals, cov_unscaled)`` where *cov_unscaled* is
        ``(X'X)^{-1}``.

    Raises:
        ValueError: If ``X`` is rank deficient.
    """
    n, p = X.shape
    rank = np.linalg.matrix_rank(X)
    if rank < p:
        raise ValueError(
            f"Design matrix is rank deficient ({rank} of {p} coefficients estimable). "
            f"Check for constant predictors or empty factor cells."
        )

    Q, R = np.linalg.qr(X)
    QTy = np.ascontiguousarray(Q.T) @ np.ascontiguousarray(y)
    beta = np.linalg.solve(R, QTy)
    residuals = y - X @ beta

    R_inv = np.linalg.solve(R, np.eye(p))
    cov_unscaled = R_inv @ R_inv.T
    return beta, residuals, cov_unscaled


def _rss(X, y):
    """Residual sum of squares of the least-squares fit of ``y`` on ``X``."""
    if X.shape[1] == 0:
        return float(np.sum(y**2))
    beta, *_ = np.linalg.lstsq(X, y, rcond=None)
    resid = y - X @ beta
    return float(resid @ resid)


@dataclass
class OLSResult:
    """A fitted linear model.

    Attributes:
        design: The ``DesignMatrix`` the model was fitted on.
        y: Response vector.
        coef: Estimated coefficients, in ``design.column_names`` order.
        cov_unscaled: ``(X'X)^{-1}``.
        residuals: Raw residuals.
        df_resid: Residual degrees of freedom ``n - p``.
        sigma2: Residual variance estimate (``nan`` when ``df_resid == 0``).
        response: Name of the response variable.
        formula: Formula the model was fitted from, for display.
        data: Source data frame (reference grids for marginal means).
    """

    design: DesignMatrix
    y: np.ndarray
    coef: np.ndarray
    cov_unscaled: np.ndarray
    residuals: np.ndarray
    df_resid: int
    sigma2: float
    response: str = "y"
    formula: str = ""
    data: Optional[pd.DataFrame] = None

    kind = "ols"

    # -------------------------------------------------------------------------
    # Basic quantities
    # -------------------------------------------------------------------------

    @property
    def nobs(self) -> int:
        return len(self.y)

    @property
    def column_names(self):
        return self.design.column_names

    @property
    def params(self) -> pd.Series:
        return pd.Series(self.coef, index=self.column_names)

    @property
    def fitted(self) -> np.ndarray:
        return self.y - self.residuals

    @property
    def sigma(self) -> float:
        return float(np.sqrt(self.sigma2))

    @property
    def df(self) -> float:
        """Degrees of freedom used for inference on the coefficients."""
        return float(self.df_resid)

    @property
    def rss(self) -> float:
        return float(self.residuals @ self.residuals)

    @property
    def tss(self) -> float:
        centered = self.y - np.mean(self.y)
        return float(centered @ centered)

    def cov_params(self) -> pd.DataFrame:
        """Estimated covariance matrix of the coefficients."""
        return pd.DataFrame(self.sigma2 * self.cov_unscaled, index=self.column_names, columns=self.column_names)

    @property
    def bse(self) -> np.ndarray:
        return np.sqrt(np.diag(self.sigma2 * self.cov_unscaled))

    # -------------------------------------------------------------------------
    # Inference
    # -------------------------------------------------------------------------

    @property
    def coefficients(self) -> pd.DataFrame:
        """Coefficient table as printed by R's ``summary.lm``."""
        se = self.bse
        with np.errstate(divide="ignore", invalid="ignore"):
            t_values = self.coef / se
        return pd.DataFrame(
            {
                "Estimate": self.coef,
                "Std. Error": se,
                "t value": t_values,
                "Pr(>|t|)": t_pvalue(t_values, self.df_resid) if self.df_resid > 0 else np.full(len(se), np.nan),
            },
            index=self.column_names,
        )

    @property
    def r_squared(self) -> float:
        if self.tss < FLOAT_NEAR_ZERO:
            return np.nan
        return 1.0 - self.rss / self.tss

    @property
    def adj_r_squared(self) -> float:
        p = len(self.coef)
        if self.df_resid <= 0 or p < 2:
            return self.r_squared if p < 2 else np.nan
        return 1.0 - (1.0 - self.r_squared) * (self.nobs - 1) / self.df_resid

    @property
    def f_statistic(self):
        """Overall F-test against the intercept-only model: ``(F, dfn, dfd)``."""
        dfn = len(self.coef) - 1
        if dfn < 1 or self.df_resid <= 0 or self.sigma2 < FLOAT_NEAR_ZERO:
            return np.nan, dfn, self.df_resid
        f_stat = ((self.tss - self.rss) / dfn) / self.sigma2
        return float(f_stat), dfn, self.df_resid

    @property
    def f_pvalue(self) -> float:
        f_stat, dfn, dfd = self.f_statistic
        return f_pvalue(f_stat, dfn, dfd)

    @property
    def loglik(self) -> float:
        """Gaussian log-likelihood at the ML variance estimate (R's ``logLik.lm``)."""
        n = self.nobs
        return float(-0.5 * n * (np.log(2 * np.pi) + np.log(self.rss / n) + 1.0))

    @property
    def n_params(self) -> int:
        """Estimated parameters: coefficients plus the residual variance."""
        return len(self.coef) + 1

    @property
    def aic(self) -> float:
        return -2.0 * self.loglik + 2.0 * self.n_params

    @property
    def bic(self) -> float:
        return -2.0 * self.loglik + np.log(self.nobs) * self.n_params

    def confint(self, level: float = 0.95) -> pd.DataFrame:
        """Confidence intervals for the coefficients."""
        lower_name = f"{100 * (1 - level) / 2:g} %"
        upper_name = f"{100 * (1 + level) / 2:g} %"
        crit = t_ppf(0.5 + level / 2, self.df_resid) if self.df_resid > 0 else np.nan
        se = self.bse
        return pd.DataFrame(
            {lower_name: self.coef - crit * se, upper_name: self.coef + crit * se},
            index=self.column_names,
        )

    def predict(self, newdata: Optional[pd.DataFrame] = None, interval: Optional[str] = None, level: float = 0.95):
        """Predict the response for new data.

        Args:
            newdata: Data frame with the predictor columns. ``None``
                returns the fitted values.
            interval: ``None`` for point predictions, ``"confidence"`` for
                the mean response or ``"prediction"`` for new observations.
            level: Interval coverage.

        Returns:
            Array of predictions, or a data frame with ``fit``, ``lwr``
            and ``upr`` when *interval* is given.
        """
        if newdata is None:
            X = self.design.matrix
        else:
            X = build_design(self.design.terms, newdata, self.design.factor_levels).matrix
        fit = X @ self.coef
        if interval is None:
            return fit
        if interval not in ("confidence", "prediction"):
            raise ValueError(f"interval must be None, 'confidence' or 'prediction', got {interval!r}")

        var_mean = np.einsum("ij,jk,ik->i", X, self.cov_unscaled, X) * self.sigma2
        var = var_mean + self.sigma2 if interval == "prediction" else var_mean
        crit = t_ppf(0.5 + level / 2, self.df_resid)
        half = crit * np.sqrt(var)
        return pd.DataFrame({"fit": fit, "lwr": fit - half, "upr": fit + half})

    def anova(self) -> pd.DataFrame:
        """Sequential (type I) ANOVA table, one row per term plus residuals."""
        X, y = self.design.matrix, self.y
        rows = []
        used = [0]
        rss_prev = _rss(X[:, used], y)
        for term_name, _ in self.design.terms:
            cols = self.design.term_columns[term_name]
            used = used + cols
            rss_now = _rss(X[:, used], y)
            ss = max(rss_prev - rss_now, 0.0)
            df = len(cols)
            ms = ss / df
            if self.df_resid > 0 and self.sigma2 > FLOAT_NEAR_ZERO:
                f_val = ms / self.sigma2
                p_val = f_pvalue(f_val, df, self.df_resid)
            else:
                f_val, p_val = np.nan, np.nan
            rows.append((term_name, df, ss, ms, f_val, p_val))
            rss_prev = rss_now

        rows.append(("Residuals", self.df_resid, self.rss, self.sigma2, np.nan, np.nan))
        table = pd.DataFrame(rows, columns=["term", "Df", "Sum Sq", "Mean Sq", "F value", "Pr(>F)"])
        return table.set_index("term").rename_axis(None)

    def summary(self) -> str:
        """R-style text summary."""
        from ..utils.formatters import format_ols_summary

        return format_ols_summary(self)


def fit_ols(design: DesignMatrix, y, response: str = "y", formula: str = "", data: Optional[pd.DataFrame] = None) -> OLSResult:
    """Fit a linear model by ordinary least squares.

    Args:
        design: Fixed-effect design matrix (intercept included).
        y: Response values.
        response: Response name for display.
        formula: Formula string for display.
        data: Source data frame, kept for reference grids.

    Returns:
        ``OLSResult``.

    Raises:
        ValueError: If lengths disagree or the design is rank deficient.
    """
    y = np.asarray(y, dtype=np.float64)
    X = design.matrix
    if X.shape[0] != y.shape[0]:
        raise ValueError(f"Design has {X.shape[0]} rows but response has {y.shape[0]} values")

    beta, residuals, cov_unscaled = _ols_core(X, y)
    n, p = X.shape
    df_resid = n - p
    if df_resid > 0:
        sigma2 = float(residuals @ residuals) / df_resid
    else:
        warnings.warn(
            f"No residual degrees of freedom ({n} observations, {p} coefficients); standard errors are undefined",
            UserWarning,
            stacklevel=2,
        )
        sigma2 = np.nan

    return OLSResult(
        design=design,
        y=y,
        coef=beta,
        cov_unscaled=cov_unscaled,
        residuals=residuals,
        df_resid=df_resid,
        sigma2=sigma2,
        response=response,
        formula=formula,
        data=data,
    )


def compare_models(reduced: OLSResult, full: OLSResult) -> pd.DataFrame:
    """Nested-model F-test (R's ``anova(m1, m2)`` for linear models).

    Args:
        reduced: The smaller model.
        full: The larger model containing *reduced*.

    Returns:
        Two-row table with ``Res.Df``, ``RSS``, ``Df``, ``Sum of Sq``,
        ``F`` and ``Pr(>F)``.

    Raises:
        ValueError: If the models were fitted on different data sizes or
            *full* does not have more coefficients than *reduced*.
    """
    if reduced.nobs != full.nobs:
        raise ValueError(f"Models were fitted to different numbers of observations ({reduced.nobs} vs {full.nobs})")
    if full.df_resid >= reduced.df_resid:
        raise ValueError("The full model must have more coefficients than the reduced model")

    df = reduced.df_resid - full.df_resid
    ss = reduced.rss - full.rss
    if full.df_resid > 0 and full.sigma2 > FLOAT_NEAR_ZERO:
        f_val = (ss / df) / full.sigma2
        p_val = f_pvalue(f_val, df, full.df_resid)
    else:
        f_val, p_val = np.nan, np.nan

    return pd.DataFrame(
        {
            "Res.Df": [reduced.df_resid, full.df_resid],
            "RSS": [reduced.rss, full.rss],
            "Df": [np.nan, df],
            "Sum of Sq": [np.nan, ss],
            "F": [np.nan, f_val],
            "Pr(>F)": [np.nan, p_val],
        },
        index=["Model 1", "Model 2"],
    )
