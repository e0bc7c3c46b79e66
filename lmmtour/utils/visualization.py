"""
Visualization utilities for LMMTour.

Plotting functions for the walkthrough: fitted lines and curves, per-level
and per-cluster lines, marginal means, residual diagnostics and parameter
recovery. Every function returns the matplotlib ``Figure`` and leaves
showing or saving it to the caller.
"""

from typing import Dict, Optional

import numpy as np

__all__ = [
    "plot_fit",
    "plot_group_lines",
    "plot_simple_slopes",
    "plot_emmeans",
    "plot_cluster_lines",
    "plot_residuals",
    "plot_recovery",
]

_FOOTER = "made in LMMTour: linear and mixed models by simulation"


def _pyplot():
    try:
        import matplotlib.pyplot as plt
    except ImportError:
        raise ImportError("matplotlib required for plotting: pip install matplotlib") from None
    return plt


def _finish(fig, ax, title: str, xlabel: str, ylabel: str):
    ax.set_title(title, fontsize=13, fontweight="bold")
    ax.set_xlabel(xlabel, fontsize=11)
    ax.set_ylabel(ylabel, fontsize=11)
    ax.grid(True, alpha=0.3)
    fig.text(0.5, 0.01, _FOOTER, ha="center", fontsize=8, color="#888888")
    fig.tight_layout(rect=(0, 0.03, 1, 1))
    return fig


def _prediction_curve(fit, x: str, xs: np.ndarray, at: Optional[Dict] = None) -> np.ndarray:
    """Population-level prediction along *xs*, averaged over the other factors."""
    from ..stats.design import build_design
    from ..stats.emmeans import reference_grid

    grid_at = dict(at or {})
    grid_at[x] = xs
    grid = reference_grid(fit, grid_at)
    pred = build_design(fit.design.terms, grid, fit.design.factor_levels).matrix @ fit.coef
    return grid.assign(_pred=pred).groupby(x, sort=True)["_pred"].mean().to_numpy()


def plot_fit(data, x: str, y: str, fits: Dict[str, object], title: str = "Fitted model"):
    """Scatter of *y* against *x* with one fitted curve per model.

    Args:
        data: Data frame holding *x* and *y*.
        x: Predictor on the horizontal axis.
        y: Response.
        fits: ``{label: fitted model}``; each is drawn at the means of
            its other predictors.
        title: Plot title.

    Returns:
        The matplotlib ``Figure``.
    """
    plt = _pyplot()
    fig, ax = plt.subplots(figsize=(8, 5.5))
    ax.scatter(data[x], data[y], s=14, alpha=0.5, color="#555555", label="observed")

    xs = np.linspace(float(data[x].min()), float(data[x].max()), 100)
    colors = plt.get_cmap("Set1")(np.linspace(0, 1, max(len(fits), 2)))
    for color, (label, fit) in zip(colors, fits.items()):
        ax.plot(xs, _prediction_curve(fit, x, xs), color=color, linewidth=2, label=label)

    ax.legend(loc="best")
    return _finish(fig, ax, title, x, y)


def plot_group_lines(data, x: str, y: str, group: str, fit, title: str = "Fitted lines by level"):
    """Scatter coloured by a factor with one fitted line per level."""
    plt = _pyplot()
    fig, ax = plt.subplots(figsize=(8, 5.5))
    levels = fit.design.factor_levels[group]
    colors = plt.get_cmap("Set1")(np.linspace(0, 1, max(len(levels), 2)))

    xs = np.linspace(float(data[x].min()), float(data[x].max()), 50)
    labels = data[group].astype(str)
    for color, level in zip(colors, levels):
        mask = (labels == level).to_numpy()
        ax.scatter(data.loc[mask, x], data.loc[mask, y], s=14, alpha=0.45, color=color)
        ax.plot(xs, _prediction_curve(fit, x, xs, at={group: [level]}), color=color, linewidth=2, label=f"{group} = {level}")

    ax.legend(loc="best")
    return _finish(fig, ax, title, x, y)


def plot_simple_slopes(data, x: str, y: str, moderator: str, values, fit, title: str = "Simple slopes"):
    """Fitted lines of *y* on *x* at chosen values of a continuous moderator."""
    plt = _pyplot()
    fig, ax = plt.subplots(figsize=(8, 5.5))
    ax.scatter(data[x], data[y], s=14, alpha=0.35, color="#555555")

    xs = np.linspace(float(data[x].min()), float(data[x].max()), 50)
    colors = plt.get_cmap("viridis")(np.linspace(0.1, 0.9, max(len(values), 2)))
    for color, value in zip(colors, values):
        curve = _prediction_curve(fit, x, xs, at={moderator: [value]})
        ax.plot(xs, curve, color=color, linewidth=2, label=f"{moderator} = {value:.2f}")

    ax.legend(loc="best")
    return _finish(fig, ax, title, x, y)


def plot_emmeans(emm, title: str = "Estimated marginal means"):
    """Marginal means with confidence intervals, one point per cell."""
    plt = _pyplot()
    fig, ax = plt.subplots(figsize=(8, 5.5))
    table = emm.table
    labels = [" ".join(str(v) for v in row) for row in table[emm.specs + emm.by].itertuples(index=False)]
    positions = np.arange(len(table))
    estimates = table[emm.estimate_name].to_numpy()
    lower = estimates - table["lower.CL"].to_numpy()
    upper = table["upper.CL"].to_numpy() - estimates

    ax.errorbar(positions, estimates, yerr=[lower, upper], fmt="o", color="#1f77b4", capsize=6, markersize=8, linewidth=2)
    ax.set_xticks(positions)
    ax.set_xticklabels(labels, rotation=30 if len(labels) > 6 else 0)
    return _finish(fig, ax, title, " x ".join(emm.specs + emm.by), emm.estimate_name)


def plot_cluster_lines(data, x: str, y: str, fit, title: str = "Per-cluster fitted lines", max_groups: Optional[int] = None):
    """Observed points and group-level fitted lines of a mixed model.

    The thick black line is the population-level (fixed-effects) fit.
    """
    plt = _pyplot()
    fig, ax = plt.subplots(figsize=(8, 5.5))
    groups = np.asarray(fit.groups)
    names = fit.group_names if max_groups is None else fit.group_names[:max_groups]
    colors = plt.get_cmap("tab20")(np.linspace(0, 1, max(len(names), 2)))
    xv = data[x].to_numpy(dtype=np.float64)
    conditional = fit.fitted

    for color, name in zip(colors, names):
        mask = groups == name
        order = np.argsort(xv[mask])
        ax.scatter(xv[mask], data[y].to_numpy()[mask], s=10, alpha=0.4, color=color)
        ax.plot(xv[mask][order], conditional[mask][order], color=color, linewidth=1, alpha=0.9)

    xs = np.linspace(float(xv.min()), float(xv.max()), 50)
    ax.plot(xs, _prediction_curve(fit, x, xs), color="black", linewidth=3, label="population (fixed effects)")
    ax.legend(loc="best")
    return _finish(fig, ax, title, x, y)


def plot_residuals(fit, title: str = "Residual diagnostics"):
    """Residuals against fitted values and a normal Q-Q plot."""
    from scipy import stats

    plt = _pyplot()
    fig, (ax_fit, ax_qq) = plt.subplots(1, 2, figsize=(11, 4.5))
    fitted, residuals = fit.fitted, fit.residuals

    ax_fit.scatter(fitted, residuals, s=12, alpha=0.5, color="#555555")
    ax_fit.axhline(0.0, color="red", linestyle="--", linewidth=1.5)
    ax_fit.set_xlabel("Fitted values")
    ax_fit.set_ylabel("Residuals")
    ax_fit.grid(True, alpha=0.3)

    (theoretical, ordered), (slope, intercept, _) = stats.probplot(residuals, dist="norm")
    ax_qq.scatter(theoretical, ordered, s=12, alpha=0.5, color="#555555")
    ax_qq.plot(theoretical, slope * theoretical + intercept, color="red", linewidth=1.5)
    ax_qq.set_xlabel("Theoretical quantiles")
    ax_qq.set_ylabel("Sample quantiles")
    ax_qq.grid(True, alpha=0.3)

    fig.suptitle(title, fontsize=13, fontweight="bold")
    fig.text(0.5, 0.01, _FOOTER, ha="center", fontsize=8, color="#888888")
    fig.tight_layout(rect=(0, 0.03, 1, 0.95))
    return fig


def plot_recovery(table, true_value: float, target: str, level: float = 0.95, title: Optional[str] = None):
    """Estimates across sample sizes converging on the generating value.

    Args:
        table: ``ResultsProcessor.process_sample_size_results`` output.
        true_value: Generating value of the coefficient.
        target: Coefficient name.
        level: Nominal confidence level, drawn on the coverage panel.
        title: Plot title.

    Returns:
        The matplotlib ``Figure``.
    """
    plt = _pyplot()
    fig, (ax_est, ax_cov) = plt.subplots(1, 2, figsize=(11, 4.5))
    sizes = table.index.to_numpy()

    ax_est.errorbar(
        sizes,
        table["mean_estimate"],
        yerr=table["empirical_sd"],
        fmt="o-",
        color="#1f77b4",
        capsize=5,
        linewidth=2,
        label="mean estimate +/- SD",
    )
    ax_est.axhline(true_value, color="red", linestyle="--", linewidth=2, label=f"true value ({true_value:g})")
    ax_est.set_xlabel("Sample size")
    ax_est.set_ylabel(f"Estimate of {target}")
    ax_est.legend(loc="best")
    ax_est.grid(True, alpha=0.3)

    ax_cov.plot(sizes, 100 * table["coverage"], "s-", color="#2ca02c", linewidth=2)
    ax_cov.axhline(100 * level, color="red", linestyle="--", linewidth=1.5)
    ax_cov.set_ylim(0, 105)
    ax_cov.set_xlabel("Sample size")
    ax_cov.set_ylabel("CI coverage (%)")
    ax_cov.grid(True, alpha=0.3)

    fig.suptitle(title or f"Recovery of {target}", fontsize=13, fontweight="bold")
    fig.text(0.5, 0.01, _FOOTER, ha="center", fontsize=8, color="#888888")
    fig.tight_layout(rect=(0, 0.03, 1, 0.95))
    return fig
