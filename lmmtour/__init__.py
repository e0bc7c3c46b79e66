"""LMMTour - linear and mixed models by simulation.

A guided tour of linear regression and linear mixed-effects models: every
lesson simulates data from a known model, fits it and explains the output,
so estimates can always be compared against the truth.

Example:
    >>> from lmmtour import LinearModel
    >>>
    >>> model = LinearModel("y ~ x + (1 | school)")
    >>> model.set_effects("x=0.5")
    >>> model.set_cluster("school", n_clusters=20, intercept_sd=1.5)
    >>> data = model.simulate(200)
    >>> print(model.fit(data).summary())
    >>>
    >>> from lmmtour import Tour
    >>> Tour().render("tour.html")
"""

from importlib.metadata import version as _get_version

from .model import LinearModel, fit_formula, lm, lmer
from .progress import LessonCancelled, PrintReporter, ProgressReporter, StageReporter, TqdmReporter
from .tour import Tour

__version__ = _get_version("LMMTour")

__all__ = [
    "LinearModel",
    "Tour",
    "lm",
    "lmer",
    "fit_formula",
    "LessonCancelled",
    "ProgressReporter",
    "PrintReporter",
    "StageReporter",
    "TqdmReporter",
]
