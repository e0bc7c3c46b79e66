"""
Text formatting for LMMTour output.

Renders fitted models and result tables the way R prints them
(``summary.lm``, ``summary.merMod``, ``anova``, ``emmeans``) so the
walkthrough reads like the console session it teaches.
"""

from typing import Dict, Optional

import numpy as np
import pandas as pd

SIGNIF_LEGEND = "Signif. codes:  0 '***' 0.001 '**' 0.01 '*' 0.05 '.' 0.1 ' ' 1"

_P_FLOOR = 2.2e-16


def _significance_stars(p: float) -> str:
    if not np.isfinite(p):
        return ""
    if p < 0.001:
        return "***"
    if p < 0.01:
        return "**"
    if p < 0.05:
        return "*"
    if p < 0.1:
        return "."
    return ""


def _format_number(value, digits: int = 4) -> str:
    """Format a number with *digits* significant digits; blank for NaN."""
    if value is None:
        return ""
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    value = float(value)
    if np.isnan(value):
        return ""
    if np.isinf(value):
        return "Inf" if value > 0 else "-Inf"
    return f"{value:.{digits}g}"


def _format_pvalue(p) -> str:
    if p is None or not np.isfinite(p):
        return ""
    if p < _P_FLOOR:
        return "<2e-16"
    if p < 1e-4:
        return f"{p:.2e}"
    return f"{p:.4f}"


def format_table(table: pd.DataFrame, digits: int = 4, pvalue_columns=(), index: bool = True) -> str:
    """Format a data frame with R-like number formatting.

    Args:
        table: Table to format.
        digits: Significant digits for float columns.
        pvalue_columns: Columns printed as p-values.
        index: Print the row labels.

    Returns:
        The formatted table as a string.
    """
    shown = pd.DataFrame(index=table.index)
    for col in table.columns:
        series = table[col]
        if col in pvalue_columns:
            shown[col] = [_format_pvalue(v) for v in series]
        elif pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series):
            shown[col] = [_format_number(v, digits) for v in series]
        else:
            shown[col] = series.astype(str)
    return shown.to_string(index=index)


def format_coefficients(coefficients: pd.DataFrame, digits: int = 4) -> str:
    """Coefficient table with a trailing significance-stars column."""
    p_col = coefficients.columns[-1]
    shown = coefficients.copy()
    shown[""] = [_significance_stars(p) for p in coefficients[p_col]]
    return format_table(shown, digits, pvalue_columns=(p_col,))


def _residual_quantiles(values: np.ndarray, digits: int = 4) -> str:
    quantiles = np.quantile(values, [0.0, 0.25, 0.5, 0.75, 1.0])
    table = pd.DataFrame([quantiles], columns=["Min", "1Q", "Median", "3Q", "Max"])
    return format_table(table, digits, index=False)


def format_ols_summary(fit) -> str:
    """Text equivalent of R's ``summary(lm(...))``."""
    lines = ["Call:", f"lm(formula = {fit.formula or fit.response + ' ~ ...'})", ""]
    lines += ["Residuals:", _residual_quantiles(fit.residuals), ""]
    lines += ["Coefficients:", format_coefficients(fit.coefficients), "---", SIGNIF_LEGEND, ""]

    lines.append(f"Residual standard error: {_format_number(fit.sigma)} on {fit.df_resid} degrees of freedom")
    lines.append(
        f"Multiple R-squared:  {_format_number(fit.r_squared)},\tAdjusted R-squared:  {_format_number(fit.adj_r_squared)}"
    )
    f_stat, dfn, dfd = fit.f_statistic
    if np.isfinite(f_stat):
        p = fit.f_pvalue
        p_text = "< 2.2e-16" if p < _P_FLOOR else _format_number(p)
        lines.append(f"F-statistic: {_format_number(f_stat)} on {dfn} and {dfd} DF,  p-value: {p_text}")
    return "\n".join(lines)


def _format_random_effects(fit, digits: int = 4) -> str:
    varcorr = fit.varcorr()
    table = pd.DataFrame(
        {
            "Groups": varcorr["Groups"],
            "Name": varcorr["Name"],
            "Variance": [_format_number(v, digits) for v in varcorr["Variance"]],
            "Std.Dev.": [_format_number(v, digits) for v in varcorr["Std.Dev."]],
        }
    )
    # group name printed once per block
    table.loc[1 : len(fit.re_names) - 1, "Groups"] = ""

    q = len(fit.re_names)
    if q > 1:
        corr = fit.re_correlation
        corr_col = [""]
        for i in range(1, q):
            corr_col.append(" ".join(f"{corr[i, j]:.2f}" for j in range(i)))
        corr_col += [""] * (len(table) - q)
        table["Corr"] = corr_col
    return table.to_string(index=False)


def format_mixed_summary(fit) -> str:
    """Text equivalent of lme4's ``summary(lmer(...))``."""
    criterion = "REML" if fit.reml else "maximum likelihood"
    lines = [f"Linear mixed model fit by {criterion}", f"Formula: {fit.formula}"]
    if fit.reml:
        lines.append(f"REML criterion at convergence: {_format_number(-2.0 * fit.loglik, 5)}")
    else:
        lines.append(
            f"     AIC      BIC   logLik deviance\n"
            f"{_format_number(fit.aic, 5):>8} {_format_number(fit.bic, 5):>8} "
            f"{_format_number(fit.loglik, 5):>8} {_format_number(-2.0 * fit.loglik, 5):>8}"
        )
    lines.append("")

    scaled = fit.residuals / fit.sigma if fit.sigma > 0 else fit.residuals
    lines += ["Scaled residuals:", _residual_quantiles(scaled), ""]
    lines += ["Random effects:", _format_random_effects(fit)]
    lines.append(f"Number of obs: {fit.nobs}, groups:  {fit.grouping_var}, {fit.n_groups}")
    lines.append("")
    lines += ["Fixed effects:", format_coefficients(fit.coefficients), "---", SIGNIF_LEGEND]
    if not fit.converged:
        lines += ["", f"optimizer ({fit.method}) convergence code: model failed to converge"]
    elif fit.fit_warnings:
        lines += ["", *[f"fit warning: {msg}" for msg in fit.fit_warnings]]
    return "\n".join(lines)


def format_anova(table: pd.DataFrame) -> str:
    """Type I ANOVA or nested-model F table."""
    p_col = "Pr(>F)"
    shown = table.copy()
    shown[""] = [_significance_stars(p) for p in table[p_col]]
    text = format_table(shown, pvalue_columns=(p_col,))
    return "\n".join([text, "---", SIGNIF_LEGEND])


def format_lrt(table: pd.DataFrame) -> str:
    """Likelihood-ratio test table."""
    p_col = "Pr(>Chisq)"
    shown = table.copy()
    shown[""] = [_significance_stars(p) for p in table[p_col]]
    text = format_table(shown, pvalue_columns=(p_col,))
    return "\n".join([text, "---", SIGNIF_LEGEND])


def _df_note(df: float) -> Optional[str]:
    if np.isinf(df):
        return "Degrees-of-freedom method: asymptotic"
    return None


def format_emmeans(emm) -> str:
    """Marginal means (or trends) table with emmeans' footer lines."""
    blocks = []
    if emm.by:
        for key, part in emm.table.groupby(emm.by, sort=False):
            key = key if isinstance(key, tuple) else (key,)
            label = ", ".join(f"{var} = {val}" for var, val in zip(emm.by, key))
            blocks.append(f"{label}:\n" + format_table(part.drop(columns=emm.by), index=False))
    else:
        blocks.append(format_table(emm.table, index=False))

    lines = ["\n\n".join(blocks), ""]
    note = _df_note(emm.df)
    if note:
        lines.append(note)
    lines.append(f"Confidence level used: {emm.level:g}")
    return "\n".join(lines)


def format_contrasts(contrasts: pd.DataFrame, adjust: str, n_means: Optional[int] = None) -> str:
    """Pairwise-contrast table with the p-value adjustment footer."""
    lines = [format_table(contrasts, pvalue_columns=("p.value",)), ""]
    if len(contrasts):
        note = _df_note(float(contrasts["df"].iloc[0]))
        if note:
            lines.append(note)
    if adjust == "none" or len(contrasts) < 2:
        lines.append("P value adjustment: none")
    elif n_means is not None:
        lines.append(f"P value adjustment: {adjust} method for comparing a family of {n_means} estimates")
    else:
        lines.append(f"P value adjustment: {adjust} method for {len(contrasts)} tests")
    return "\n".join(lines)


def format_r_squared(r2: Dict[str, float]) -> str:
    """``r.squaredGLMM``-style one-row table."""
    return f"{'R2m':>10} {'R2c':>10}\n{r2['R2m']:>10.4f} {r2['R2c']:>10.4f}"


def format_recovery(table: pd.DataFrame, target: str, true_value: float) -> str:
    """Parameter-recovery table from ``ResultsProcessor``."""
    header = f"Recovery of '{target}' (true value {_format_number(true_value)})"
    return "\n".join([header, "=" * len(header), format_table(table)])
