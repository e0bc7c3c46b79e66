"""
The LMMTour walkthrough: runs lessons in order and renders the document.
"""

from typing import Any, Callable, Dict, List, Optional, Union

from .core.lessons import DEFAULT_LESSON_CONFIG, LESSONS, LessonResult
from .progress import LessonCancelled, ProgressReporter, make_reporter
from .utils.validators import _validate_choice, _validate_seed


class Tour:
    """
    Guided tour of linear and mixed models by simulation.

    Configuration is chainable; ``run()`` executes the selected lessons and
    ``render()`` writes them as one HTML or text document.

    Example:
        >>> tour = Tour(seed=42).set_lessons("simple, random_intercept")
        >>> tour.set_lesson_config({"simple": {"n": 50}})
        >>> tour.render("tour.html")
    """

    def __init__(self, seed: Optional[int] = 2137, verbose: bool = True):
        _validate_seed(seed).raise_if_invalid()
        self.seed = seed
        self.verbose = verbose
        self.lessons: List[str] = list(LESSONS)
        self.figures = True
        self._lesson_config: Dict[str, Dict[str, Any]] = {}
        self._progress_callback: Optional[Callable[[int, int], None]] = None
        self.results: List[LessonResult] = []

    def _print(self, message: str):
        if self.verbose:
            print(message)

    # =========================================================================
    # Configuration methods
    # =========================================================================

    def set_seed(self, seed: Optional[int]):
        """Set the seed passed to every lesson."""
        _validate_seed(seed).raise_if_invalid()
        self.seed = seed
        return self

    def set_lessons(self, lessons: Union[str, List[str]]):
        """Select lessons by key, as ``"simple, factorial"`` or a list.

        Lessons always run in tour order, whatever order they are given in.
        """
        if isinstance(lessons, str):
            keys = [k.strip() for k in lessons.split(",") if k.strip()]
        else:
            keys = [str(k).strip() for k in lessons]
        if not keys:
            raise ValueError("At least one lesson must be selected")
        unknown = [k for k in keys if k not in LESSONS]
        if unknown:
            raise ValueError(f"Unknown lessons: {', '.join(unknown)}. Available: {', '.join(LESSONS)}")
        self.lessons = [k for k in LESSONS if k in keys]
        return self

    def set_lesson_config(self, config: Dict[str, Dict[str, Any]]):
        """Override lesson settings, e.g. ``{"simple": {"n": 50}}``.

        Repeated calls accumulate; keys must exist in ``DEFAULT_LESSON_CONFIG``.
        """
        if not isinstance(config, dict):
            raise TypeError("config must be a dictionary")
        merged = {k: dict(v) for k, v in self._lesson_config.items()}
        for lesson, overrides in config.items():
            if lesson not in DEFAULT_LESSON_CONFIG:
                raise ValueError(f"Unknown lesson '{lesson}'. Available: {', '.join(DEFAULT_LESSON_CONFIG)}")
            if not isinstance(overrides, dict):
                raise TypeError(f"Settings for lesson '{lesson}' must be a dictionary")
            unknown = sorted(set(overrides) - set(DEFAULT_LESSON_CONFIG[lesson]))
            if unknown:
                raise ValueError(
                    f"Unknown settings for lesson '{lesson}': {', '.join(unknown)}. "
                    f"Valid: {', '.join(DEFAULT_LESSON_CONFIG[lesson])}"
                )
            merged.setdefault(lesson, {}).update(overrides)
        self._lesson_config = merged
        return self

    def set_figures(self, enabled: bool = True):
        """Include figures in the results (off speeds up text-only runs)."""
        self.figures = bool(enabled)
        return self

    def set_progress(self, progress: Union[str, Callable[[int, int], None], None]):
        """Set the lesson progress listener.

        Accepts a ``(current, total)`` callback, a ``StageReporter`` (also
        told which lesson is running), a reporter name (``"print"``,
        ``"tqdm"``, ``"none"``) or ``None``.
        """
        if isinstance(progress, str):
            progress = make_reporter(progress)
        elif progress is not None and not callable(progress):
            raise TypeError("progress must be a callable, a reporter name or None")
        self._progress_callback = progress
        return self

    @property
    def config(self) -> Dict[str, Dict[str, Any]]:
        """Effective settings of every selected lesson."""
        config = {}
        for key in self.lessons:
            settings = dict(DEFAULT_LESSON_CONFIG[key])
            settings.update(self._lesson_config.get(key, {}))
            config[key] = settings
        return config

    # =========================================================================
    # Running
    # =========================================================================

    def run(self, cancel_check: Optional[Callable[[], bool]] = None) -> List[LessonResult]:
        """Run the selected lessons in order.

        Args:
            cancel_check: Optional callable checked before every lesson;
                returning ``True`` raises ``LessonCancelled``.

        Returns:
            One ``LessonResult`` per lesson.
        """
        progress = None
        if self._progress_callback is not None:
            progress = ProgressReporter(total=len(self.lessons), callback=self._progress_callback, update_every=1)
            progress.start()

        results = []
        for key in self.lessons:
            if cancel_check is not None and cancel_check():
                raise LessonCancelled(f"Tour cancelled before lesson '{key}'")
            lesson = LESSONS[key]
            if progress is not None:
                progress.enter(f"{key}: {lesson.title}")
            self._print(f"Running lesson: {lesson.title}")
            results.append(lesson.run(self._lesson_config.get(key), seed=self.seed, figures=self.figures))
            if progress is not None:
                progress.advance(1)

        if progress is not None:
            progress.finish()
        self.results = results
        return results

    def render(self, path: str, fmt: str = "html", title: str = "LMMTour: linear and mixed models by simulation") -> str:
        """Run the tour (unless already run) and write the document to *path*."""
        from .report import REPORT_FORMATS, save_report

        _validate_choice(fmt, REPORT_FORMATS, "format").raise_if_invalid()
        if not self.results:
            self.run()
        written = save_report(self.results, path, fmt=fmt, title=title)
        self._print(f"Report written to {written}")
        return written

    def __repr__(self):
        return f"Tour(lessons={self.lessons}, seed={self.seed}, figures={self.figures})"
