"""
Lessons of the LMMTour walkthrough.

Each lesson simulates a teaching dataset with ``LinearModel``, fits it and
records what a reader should see: narrative paragraphs, printed model
output, figures and any warnings the fits raised. Lessons are independent
and run in the order of ``LESSONS``.
"""

import warnings
from contextlib import contextmanager
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from ..model import LinearModel, lm, lmer
from ..stats.emmeans import emmeans, emtrends, pairwise
from ..stats.mixed_models import likelihood_ratio_test
from ..stats.ols import compare_models
from ..stats.r_squared import r_squared_glmm
from ..utils import visualization as viz
from ..utils.formatters import (
    format_anova,
    format_contrasts,
    format_emmeans,
    format_lrt,
    format_r_squared,
    format_recovery,
    format_table,
)

# Default lesson settings. Tour.set_lesson_config() merges user overrides
# into these per lesson; unknown keys are rejected.
DEFAULT_LESSON_CONFIG = {
    "simple": {
        "n": 100,
        "intercept": 2.0,
        "slope": 0.5,
        "residual_sd": 1.0,
    },
    "polynomial": {
        "n": 150,
        "x_range": (-3.0, 3.0),
        "intercept": 1.0,
        "linear": 0.5,
        "quadratic": -0.4,
        "residual_sd": 1.0,
    },
    "factorial": {
        "n": 120,
        "intercept": 5.0,
        "dose_low": 0.5,
        "dose_high": 1.2,
        "sex_male": 0.3,
        "residual_sd": 1.0,
        "adjust": "tukey",
    },
    "interaction": {
        "n": 150,
        "slope": 0.5,
        "group_B": 1.0,
        "group_C": -0.5,
        "slope_B": 0.7,
        "slope_C": -0.4,
        "residual_sd": 1.0,
        "adjust": "tukey",
    },
    "continuous_interaction": {
        "n": 200,
        "x_effect": 0.4,
        "z_effect": 0.3,
        "interaction": 0.25,
        "residual_sd": 1.0,
    },
    "random_intercept": {
        "n_clusters": 20,
        "cluster_size": 10,
        "intercept": 50.0,
        "slope": 0.5,
        "intercept_sd": 1.5,
        "residual_sd": 1.0,
    },
    "random_slope": {
        "n_subjects": 15,
        "n_times": 10,
        "intercept": 10.0,
        "slope": 0.8,
        "intercept_sd": 2.0,
        "slope_sd": 0.4,
        "correlation": 0.3,
        "residual_sd": 1.0,
    },
    "recovery": {
        "slope": 0.5,
        "sample_sizes": [20, 50, 100, 200],
        "n_simulations": 100,
        "parallel": False,
    },
}


@dataclass
class Block:
    """One piece of lesson output.

    Attributes:
        kind: ``"text"``, ``"code"`` (printed output), ``"figure"``
            (PNG bytes) or ``"warning"``.
        content: Paragraph, printed text or PNG bytes.
        title: Heading of a code or figure block.
    """

    kind: str
    content: Any
    title: str = ""


@dataclass
class LessonResult:
    """Everything one lesson produced."""

    key: str
    title: str
    blocks: List[Block] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=dict)
    data: Optional[pd.DataFrame] = None
    fits: Dict[str, Any] = field(default_factory=dict)

    @property
    def figures(self) -> List[Block]:
        return [b for b in self.blocks if b.kind == "figure"]

    @property
    def warnings(self) -> List[str]:
        return [b.content for b in self.blocks if b.kind == "warning"]


class LessonRecorder:
    """Appends blocks to a ``LessonResult`` while a lesson runs."""

    def __init__(self, result: LessonResult, figures: bool = True):
        self.result = result
        self.include_figures = figures

    def text(self, paragraph: str):
        self.result.blocks.append(Block("text", paragraph))

    def output(self, title: str, printed: str):
        self.result.blocks.append(Block("code", printed, title))

    def figure(self, title: str, make_figure: Callable[[], Any]):
        """Render a figure to PNG and close it; skipped when figures are off."""
        if not self.include_figures:
            return
        import matplotlib.pyplot as plt

        fig = make_figure()
        buffer = BytesIO()
        try:
            fig.savefig(buffer, format="png", dpi=96)
        finally:
            plt.close(fig)
        self.result.blocks.append(Block("figure", buffer.getvalue(), title))

    @contextmanager
    def capture_warnings(self):
        """Record warnings raised inside the block as warning blocks."""
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            yield
        seen = set()
        for w in caught:
            message = f"{w.category.__name__}: {w.message}"
            if message not in seen:
                seen.add(message)
                self.result.blocks.append(Block("warning", message))


@dataclass
class Lesson:
    """A lesson: key, title, one-paragraph summary and the function that runs it."""

    key: str
    title: str
    summary: str
    body: Callable[[LessonRecorder, Dict[str, Any], int], None]

    def run(self, config: Optional[Dict[str, Any]] = None, seed: int = 2137, figures: bool = True) -> LessonResult:
        """Run the lesson with *config* merged over its defaults."""
        settings = merge_lesson_config(self.key, config)
        result = LessonResult(key=self.key, title=self.title, config=settings)
        recorder = LessonRecorder(result, figures=figures)
        recorder.text(self.summary)
        self.body(recorder, settings, seed)
        return result


def merge_lesson_config(key: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge *overrides* into the defaults of lesson *key*.

    Raises:
        ValueError: If the lesson or a setting name is unknown.
    """
    if key not in DEFAULT_LESSON_CONFIG:
        raise ValueError(f"Unknown lesson '{key}'. Available: {', '.join(DEFAULT_LESSON_CONFIG)}")
    settings = dict(DEFAULT_LESSON_CONFIG[key])
    overrides = overrides or {}
    unknown = sorted(set(overrides) - set(settings))
    if unknown:
        raise ValueError(f"Unknown settings for lesson '{key}': {', '.join(unknown)}. Valid: {', '.join(settings)}")
    settings.update(overrides)
    return settings


def _head(data: pd.DataFrame, n: int = 6) -> str:
    return data.head(n).to_string(index=False, float_format=lambda v: f"{v:.3f}")


# =============================================================================
# Linear models
# =============================================================================


def _lesson_simple(rec: LessonRecorder, cfg: Dict[str, Any], seed: int):
    model = LinearModel("y ~ x", verbose=False).set_seed(seed)
    model.set_intercept(cfg["intercept"]).set_residual_sd(cfg["residual_sd"])
    model.set_effects(f"x={cfg['slope']}")
    data = model.simulate(cfg["n"])
    rec.result.data = data

    rec.text(
        f"We simulate {cfg['n']} observations from y = {cfg['intercept']} + {cfg['slope']} * x + e, "
        f"with x ~ N(0, 1) and e ~ N(0, {cfg['residual_sd']}^2)."
    )
    rec.output("head(data)", _head(data))

    with rec.capture_warnings():
        fit = model.fit()
    rec.result.fits["lm"] = fit
    rec.output("summary(lm(y ~ x))", fit.summary())
    rec.output("confint(fit)", format_table(fit.confint(model.level)))

    slope = fit.params["x"]
    rec.text(
        f"The estimated slope {slope:.3f} is close to the generating value {cfg['slope']}: one unit more of x "
        f"raises the expected y by about {slope:.2f}. The intercept {fit.params.iloc[0]:.3f} is the expected y "
        f"at x = 0, and R squared = {fit.r_squared:.3f} is the share of the variance of y explained by x."
    )
    rec.figure(
        "Data and fitted regression line",
        lambda: viz.plot_fit(data, "x", "y", {"lm(y ~ x)": fit}, title="Simple linear regression"),
    )
    rec.figure("Residual diagnostics", lambda: viz.plot_residuals(fit))


def _lesson_polynomial(rec: LessonRecorder, cfg: Dict[str, Any], seed: int):
    low, high = cfg["x_range"]
    model = LinearModel("y ~ x + I(x^2)", verbose=False).set_seed(seed)
    model.set_variable_type(f"x=uniform({low}, {high})")
    model.set_intercept(cfg["intercept"]).set_residual_sd(cfg["residual_sd"])
    model.set_effects(f"x={cfg['linear']}, I(x^2)={cfg['quadratic']}")
    data = model.simulate(cfg["n"])
    rec.result.data = data

    rec.text(
        f"The response bends: y = {cfg['intercept']} + {cfg['linear']} * x + {cfg['quadratic']} * x^2 + e. "
        f"A straight line cannot follow the curve; adding the squared term I(x^2) can."
    )
    with rec.capture_warnings():
        linear = lm("y ~ x", data)
        quadratic = model.fit()
    rec.result.fits.update({"linear": linear, "quadratic": quadratic})

    rec.output("summary(lm(y ~ x))", linear.summary())
    rec.output("summary(lm(y ~ x + I(x^2)))", quadratic.summary())
    rec.output("anova(linear, quadratic)", format_anova(compare_models(linear, quadratic)))
    rec.text(
        f"R squared rises from {linear.r_squared:.3f} to {quadratic.r_squared:.3f}. The nested F test asks "
        f"whether the extra term explains more than chance would; the quadratic coefficient "
        f"{quadratic.params['I(x^2)']:.3f} recovers the generating {cfg['quadratic']}."
    )
    rec.figure(
        "Linear and quadratic fits",
        lambda: viz.plot_fit(data, "x", "y", {"linear": linear, "quadratic": quadratic}, title="Polynomial regression"),
    )


def _lesson_factorial(rec: LessonRecorder, cfg: Dict[str, Any], seed: int):
    model = LinearModel("y ~ dose + sex", verbose=False).set_seed(seed)
    model.set_variable_type("dose=factor(placebo, low, high), sex=factor(female, male)")
    model.set_intercept(cfg["intercept"]).set_residual_sd(cfg["residual_sd"])
    model.set_effects(f"dose[low]={cfg['dose_low']}, dose[high]={cfg['dose_high']}, sex[male]={cfg['sex_male']}")
    data = model.simulate(cfg["n"])
    rec.result.data = data

    rec.text(
        "Factors enter the model through treatment (dummy) coding: the first level of each factor is the "
        "reference, absorbed into the intercept, and every other level gets a coefficient measuring its "
        "difference from the reference."
    )
    with rec.capture_warnings():
        fit = model.fit()
    rec.result.fits["lm"] = fit
    rec.output("summary(lm(y ~ dose + sex))", fit.summary())
    rec.text(
        f"The intercept {fit.params.iloc[0]:.3f} is the expected y for the reference cell (dose = placebo, "
        f"sex = female; true value {cfg['intercept']}). dose[high] = {fit.params['dose[high]']:.3f} is the "
        f"high-dose difference from placebo at either sex."
    )
    rec.output("anova(fit)", format_anova(fit.anova()))
    rec.text("The type I (sequential) ANOVA tests each term after the terms listed before it.")

    adjust = cfg["adjust"]
    emm = emmeans(fit, "dose", level=model.level)
    contrasts = pairwise(emm, adjust=adjust)
    rec.output("emmeans(fit, ~ dose)", format_emmeans(emm))
    rec.output(f'pairs(emmeans(fit, ~ dose), adjust = "{adjust}")', format_contrasts(contrasts, adjust, n_means=len(emm)))
    rec.text(
        "Marginal means average the predictions over the levels of sex with equal weights, so each dose "
        "level gets one mean. Pairwise comparisons are adjusted for testing several differences at once."
    )
    rec.figure("Estimated marginal means of dose", lambda: viz.plot_emmeans(emm, title="Marginal means by dose"))


def _lesson_interaction(rec: LessonRecorder, cfg: Dict[str, Any], seed: int):
    model = LinearModel("y ~ x * group", verbose=False).set_seed(seed)
    model.set_variable_type("group=factor(A, B, C)")
    model.set_residual_sd(cfg["residual_sd"])
    model.set_effects(
        f"x={cfg['slope']}, group[B]={cfg['group_B']}, group[C]={cfg['group_C']}, "
        f"x:group[B]={cfg['slope_B']}, x:group[C]={cfg['slope_C']}"
    )
    data = model.simulate(cfg["n"])
    rec.result.data = data

    true_slopes = {
        "A": cfg["slope"],
        "B": cfg["slope"] + cfg["slope_B"],
        "C": cfg["slope"] + cfg["slope_C"],
    }
    rec.text(
        "x * group expands to x + group + x:group, letting every group have its own slope. True slopes: "
        + ", ".join(f"{level} = {value:g}" for level, value in true_slopes.items())
        + "."
    )
    with rec.capture_warnings():
        fit = model.fit()
    rec.result.fits["lm"] = fit
    rec.output("summary(lm(y ~ x * group))", fit.summary())
    rec.text(
        "x is the slope in the reference group A; x:group[B] and x:group[C] are how much steeper or flatter "
        "the slope is in groups B and C."
    )

    adjust = cfg["adjust"]
    trends = emtrends(fit, "group", "x", level=model.level)
    rec.output('emtrends(fit, ~ group, var = "x")', format_emmeans(trends))
    rec.output(
        f'pairs(emtrends(fit, ~ group, var = "x"), adjust = "{adjust}")',
        format_contrasts(pairwise(trends, adjust=adjust), adjust, n_means=len(trends)),
    )
    rec.figure("Fitted lines per group", lambda: viz.plot_group_lines(data, "x", "y", "group", fit, title="Slopes differ by group"))


def _lesson_continuous_interaction(rec: LessonRecorder, cfg: Dict[str, Any], seed: int):
    model = LinearModel("y ~ x * z", verbose=False).set_seed(seed)
    model.set_residual_sd(cfg["residual_sd"])
    model.set_effects(f"x={cfg['x_effect']}, z={cfg['z_effect']}, x:z={cfg['interaction']}")
    data = model.simulate(cfg["n"])
    rec.result.data = data

    rec.text(
        "With two continuous predictors, the interaction x:z means the slope of x changes linearly with z: "
        f"slope(x) = {cfg['x_effect']} + {cfg['interaction']} * z."
    )
    with rec.capture_warnings():
        fit = model.fit()
    rec.result.fits["lm"] = fit
    rec.output("summary(lm(y ~ x * z))", fit.summary())

    z_mean, z_sd = float(data["z"].mean()), float(data["z"].std(ddof=1))
    values = [z_mean - z_sd, z_mean, z_mean + z_sd]
    slopes = emtrends(fit, "z", "x", at={"z": values}, level=model.level)
    rec.output('emtrends(fit, ~ z, var = "x", at = list(z = mean +/- 1 SD))', format_emmeans(slopes))
    rec.text(
        "Simple slopes: the effect of x one SD below the mean of z, at the mean and one SD above. "
        f"They differ by about {fit.params['x:z'] * z_sd:.3f} per SD of z."
    )
    rec.figure(
        "Simple slopes of x",
        lambda: viz.plot_simple_slopes(data, "x", "y", "z", values, fit, title="Slope of x at three values of z"),
    )


# =============================================================================
# Linear mixed models
# =============================================================================


def _lesson_random_intercept(rec: LessonRecorder, cfg: Dict[str, Any], seed: int):
    n = cfg["n_clusters"] * cfg["cluster_size"]
    model = LinearModel("score ~ x + (1 | school)", verbose=False).set_seed(seed)
    model.set_intercept(cfg["intercept"]).set_residual_sd(cfg["residual_sd"])
    model.set_effects(f"x={cfg['slope']}")
    model.set_cluster("school", n_clusters=cfg["n_clusters"], intercept_sd=cfg["intercept_sd"])
    data = model.simulate(n)
    rec.result.data = data

    tau2, sigma2 = cfg["intercept_sd"] ** 2, cfg["residual_sd"] ** 2
    true_icc = tau2 / (tau2 + sigma2)
    rec.text(
        f"{cfg['cluster_size']} pupils in each of {cfg['n_clusters']} schools. Each school shifts all of its "
        f"scores by its own random intercept (SD {cfg['intercept_sd']}), so observations within a school are "
        f"correlated (true ICC {true_icc:.3f})."
    )
    rec.output("head(data)", _head(data))

    with rec.capture_warnings():
        null = lmer("score ~ 1 + (1 | school)", data)
    rec.output("VarCorr(lmer(score ~ 1 + (1 | school)))", format_table(null.varcorr(), index=False))
    rec.text(
        f"The null model has no predictors, only the grand mean and the school intercepts. Its ICC of "
        f"{null.icc:.3f} is the share of the score variance that lies between schools before x explains any of it."
    )

    with rec.capture_warnings():
        ols = lm("score ~ x", data)
        mixed = model.fit()
    rec.result.fits.update({"null": null, "lm": ols, "lmer": mixed})

    rec.output("summary(lm(score ~ x))", ols.summary())
    rec.output("summary(lmer(score ~ x + (1 | school)))", mixed.summary())
    rec.output("VarCorr(fit)", format_table(mixed.varcorr(), index=False))
    rec.text(
        f"The mixed model splits the variance into a between-school part and a within-school part; the "
        f"estimated ICC is {mixed.icc:.3f}. Ignoring the clustering, lm() reports an intercept SE of "
        f"{ols.bse[0]:.3f}, while the mixed model, which knows the schools differ, reports {mixed.bse[0]:.3f}."
    )

    r2 = r_squared_glmm(mixed)
    rec.output("r.squaredGLMM(fit)", format_r_squared(r2))
    rec.text(
        f"Marginal R squared ({r2['R2m']:.3f}) counts the fixed effects only; conditional R squared "
        f"({r2['R2c']:.3f}) adds the school intercepts."
    )
    rec.figure("Per-school fitted lines", lambda: viz.plot_cluster_lines(data, "x", "score", mixed, title="Random intercepts"))


def _lesson_random_slope(rec: LessonRecorder, cfg: Dict[str, Any], seed: int):
    n = cfg["n_subjects"] * cfg["n_times"]
    model = LinearModel("y ~ time + (1 + time | subject)", verbose=False).set_seed(seed)
    model.set_variable_type(f"time=grid(0, {cfg['n_times'] - 1})")
    model.set_intercept(cfg["intercept"]).set_residual_sd(cfg["residual_sd"])
    model.set_effects(f"time={cfg['slope']}")
    model.set_cluster(
        "subject",
        n_clusters=cfg["n_subjects"],
        intercept_sd=cfg["intercept_sd"],
        slope_sd=cfg["slope_sd"],
        correlation=cfg["correlation"],
    )
    data = model.simulate(n)
    rec.result.data = data

    rec.text(
        f"{cfg['n_subjects']} subjects measured at {cfg['n_times']} time points. Every subject has their own "
        f"starting level (SD {cfg['intercept_sd']}) and their own rate of change (SD {cfg['slope_sd']}), "
        f"correlated at {cfg['correlation']}."
    )
    with rec.capture_warnings():
        full = model.fit()
        reduced = lmer("y ~ time + (1 | subject)", data)
    rec.result.fits.update({"random_slope": full, "random_intercept": reduced})

    rec.output("summary(lmer(y ~ time + (1 + time | subject)))", full.summary())
    rec.output("VarCorr(fit)", format_table(full.varcorr(), index=False))
    rec.output("head(coef(fit)$subject)", format_table(full.coef_by_group().head(6)))
    rec.text(
        f"The fixed slope {full.params['time']:.3f} is the average rate of change (true {cfg['slope']}); "
        "coef() adds each subject's predicted deviation to the fixed effects."
    )

    rec.output("anova(intercept_only, random_slope)", format_lrt(likelihood_ratio_test(reduced, full)))
    rec.text(
        "The likelihood-ratio test compares the models on their REML likelihood because they share the same "
        "fixed effects. The p-value is conservative: a variance cannot be negative, so the null value sits "
        "on the boundary of the parameter space."
    )

    r2 = r_squared_glmm(full)
    rec.output("r.squaredGLMM(fit)", format_r_squared(r2))
    rec.figure("Per-subject trajectories", lambda: viz.plot_cluster_lines(data, "time", "y", full, title="Random slopes"))


def _lesson_recovery(rec: LessonRecorder, cfg: Dict[str, Any], seed: int):
    model = LinearModel("y ~ x", verbose=False).set_seed(seed)
    model.set_effects(f"x={cfg['slope']}")

    rec.text(
        "A single dataset shows one estimate. Repeating the simulate-and-fit cycle many times shows how "
        "estimates behave: they should centre on the generating value, scatter less as the sample grows, and "
        f"their {100 * model.level:g}% intervals should cover the true value about {100 * model.level:g}% of the time."
    )
    with rec.capture_warnings():
        recovery = model.estimate_recovery(
            "x",
            list(cfg["sample_sizes"]),
            n_simulations=cfg["n_simulations"],
            parallel=cfg["parallel"],
            print_results=False,
        )
    table = recovery["results"]
    rec.result.fits["recovery"] = recovery

    rec.output("recovery of x", format_recovery(table, "x", cfg["slope"]))
    first, last = table.iloc[0], table.iloc[-1]
    rec.text(
        f"From n = {table.index[0]} to n = {table.index[-1]} the empirical SD of the slope falls from "
        f"{first['empirical_sd']:.3f} to {last['empirical_sd']:.3f}, roughly as 1 / sqrt(n), while the bias "
        "stays near zero and the mean standard error tracks the empirical SD."
    )
    rec.figure("Recovery across sample sizes", lambda: viz.plot_recovery(table, cfg["slope"], "x", level=model.level))


LESSONS: Dict[str, Lesson] = {
    lesson.key: lesson
    for lesson in [
        Lesson(
            "simple",
            "Simple linear regression",
            "One continuous predictor: what lm() estimates and how to read its summary.",
            _lesson_simple,
        ),
        Lesson(
            "polynomial",
            "Polynomial regression",
            "Curved relationships with a squared term, and a nested F test against the straight line.",
            _lesson_polynomial,
        ),
        Lesson(
            "factorial",
            "Categorical predictors and marginal means",
            "Treatment coding, the reference cell, type I ANOVA and Tukey-adjusted comparisons of marginal means.",
            _lesson_factorial,
        ),
        Lesson(
            "interaction",
            "Continuous-by-factor interaction",
            "Different slopes per group, estimated marginal trends and their pairwise comparison.",
            _lesson_interaction,
        ),
        Lesson(
            "continuous_interaction",
            "Continuous-by-continuous interaction",
            "A slope that depends on a second continuous predictor, read through simple slopes.",
            _lesson_continuous_interaction,
        ),
        Lesson(
            "random_intercept",
            "Random-intercept mixed model",
            "Clustered observations: OLS against a linear mixed model, variance components, ICC and R2m/R2c.",
            _lesson_random_intercept,
        ),
        Lesson(
            "random_slope",
            "Random-slope mixed model",
            "Repeated measures with subject-specific slopes and a likelihood-ratio test for the random slope.",
            _lesson_random_slope,
        ),
        Lesson(
            "recovery",
            "Do estimates recover the truth?",
            "Monte Carlo check of bias, precision and interval coverage across sample sizes.",
            _lesson_recovery,
        ),
    ]
}


def run_lesson(key: str, config: Optional[Dict[str, Any]] = None, seed: int = 2137, figures: bool = True) -> LessonResult:
    """Run one lesson by key."""
    if key not in LESSONS:
        raise ValueError(f"Unknown lesson '{key}'. Available: {', '.join(LESSONS)}")
    return LESSONS[key].run(config, seed=seed, figures=figures)
