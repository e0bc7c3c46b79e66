"""
Progress reporting for LMMTour.

Long runs (the lessons of a tour, the simulations of a recovery check)
count their steps with a ``ProgressReporter``. Any ``(current, total)``
callable can listen. Reporters derived from ``StageReporter`` are also
told which part of the run is in progress: the lesson being run
(``"factorial: Categorical predictors and marginal means"``) or the
sample size being simulated (``"n = 100"``).
"""

import sys
from typing import Callable, Optional


class LessonCancelled(Exception):
    """Raised when a tour or recovery run is stopped through ``cancel_check``."""


class StageReporter:
    """Base class for reporters that display the current stage.

    Subclasses implement ``__call__(current, total, stage)``.

    Args:
        unit: Name of the counted steps (``"lessons"``, ``"simulations"``).
    """

    def __init__(self, unit: str = "steps"):
        self.unit = unit

    def __call__(self, current: int, total: int, stage: str = ""):
        raise NotImplementedError


class ProgressReporter:
    """Counts the steps of a run and forwards them to a callback.

    Plain callbacks are called as ``callback(current, total)``: once by
    ``start()``, then at most once per *update_every* steps, and always on
    the last step. ``StageReporter`` callbacks receive the stage label as
    a third argument and are called again whenever ``enter()`` changes it.

    Args:
        total: Number of steps in the run.
        callback: ``(current, total)`` callable or a ``StageReporter``.
        update_every: Steps between callback calls. Defaults to
            ``max(1, total // 200)``.

    Attributes:
        stage: Label of the part of the run in progress (empty before the
            first ``enter()``).
    """

    def __init__(self, total: int, callback: Callable[..., None], update_every: Optional[int] = None):
        self.total = total
        self.stage = ""
        self.update_every = update_every if update_every is not None else max(1, total // 200)
        self._callback = callback
        self._done = 0

    @property
    def shows_stage(self) -> bool:
        return isinstance(self._callback, StageReporter)

    def _notify(self):
        if self.shows_stage:
            self._callback(self._done, self.total, self.stage)
        else:
            self._callback(self._done, self.total)

    def start(self, stage: str = ""):
        """Reset the count and report ``0 / total``."""
        self._done = 0
        self.stage = stage
        self._notify()

    def enter(self, stage: str):
        """Name the part of the run that begins now."""
        self.stage = stage
        if self.shows_stage:
            self._notify()

    def advance(self, n: int = 1):
        """Count *n* finished steps."""
        before = self._done
        self._done = min(self._done + n, self.total)
        crossed = self._done // self.update_every > before // self.update_every
        if self._done == self.total or crossed:
            self._notify()

    def finish(self):
        """Report completion if the steps did not already get there."""
        if self._done < self.total:
            self._done = self.total
            self._notify()


class PrintReporter(StageReporter):
    """Single-line console progress on stderr.

    ``[3/8 lessons]  37.5%  random_intercept: Random-intercept mixed model``
    """

    def __init__(self, unit: str = "steps"):
        super().__init__(unit)
        self._width = 0

    def __call__(self, current: int, total: int, stage: str = ""):
        if total <= 0:
            return
        line = f"[{current}/{total} {self.unit}] {100.0 * current / total:5.1f}%"
        finished = current >= total
        if stage and not finished:
            line += f"  {stage}"
        # Overwrite leftovers of a longer previous line
        sys.stderr.write("\r" + line.ljust(self._width))
        self._width = len(line)
        if finished:
            sys.stderr.write("\n")
            self._width = 0
        sys.stderr.flush()


class TqdmReporter(StageReporter):
    """tqdm progress bar with the stage as its description.

    tqdm is an optional dependency; it is imported when the reporter is
    created so that a missing install fails before the run starts.

    Args:
        unit: Name of the counted steps.
        **tqdm_kwargs: Passed to ``tqdm`` (e.g. ``leave=False``).

    Raises:
        ImportError: If tqdm is not installed.
    """

    def __init__(self, unit: str = "steps", **tqdm_kwargs):
        super().__init__(unit)
        try:
            from tqdm import tqdm
        except ImportError as e:
            raise ImportError("tqdm required for progress bars: pip install tqdm") from e
        self._tqdm = tqdm
        self._tqdm_kwargs = tqdm_kwargs
        self._bar = None

    def __call__(self, current: int, total: int, stage: str = ""):
        if self._bar is None:
            self._bar = self._tqdm(total=total, unit=self.unit, **self._tqdm_kwargs)
        if stage:
            self._bar.set_description_str(stage, refresh=False)
        if current > self._bar.n:
            self._bar.update(current - self._bar.n)
        if current >= total:
            self._bar.close()
            self._bar = None


def make_reporter(kind: str, unit: str = "lessons") -> Optional[StageReporter]:
    """Build a reporter by name: ``"print"``, ``"tqdm"`` or ``"none"``.

    Raises:
        ValueError: For an unknown name.
        ImportError: For ``"tqdm"`` when tqdm is not installed.
    """
    if kind == "none":
        return None
    if kind == "print":
        return PrintReporter(unit=unit)
    if kind == "tqdm":
        return TqdmReporter(unit=unit)
    raise ValueError(f"Unknown progress reporter '{kind}'. Valid: print, tqdm, none")
