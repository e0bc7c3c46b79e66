"""
Simulation execution for LMMTour.

Runs the Monte Carlo loop behind parameter-recovery checks: for each
sample size, simulate a dataset from the generating model, refit it and
keep the estimate of one coefficient with its standard error and
confidence interval.
"""

import warnings
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

# Fit failures that count as a failed iteration rather than a crash
_FIT_ERRORS = (ValueError, RuntimeError, np.linalg.LinAlgError, FloatingPointError)


class SimulationRunner:
    """Executes Monte Carlo simulate-and-fit iterations.

    Each iteration calls ``simulate_fit(sample_size, sim_seed)``, which
    returns ``(estimate, se, lower, upper)`` for the target coefficient.
    Iterations that raise a fit error are dropped and counted; the run
    aborts when the failure rate exceeds the configured threshold.
    """

    def __init__(
        self,
        n_simulations: int,
        seed: Optional[int] = 2137,
        parallel: bool = False,
        n_cores: int = 1,
        max_failed_simulations: float = 0.03,
    ):
        """Initialise the simulation runner.

        Args:
            n_simulations: Iterations per sample size.
            seed: Base random seed. Iteration ``sim_id`` uses
                ``seed + 4 * sim_id``; ``None`` draws fresh entropy.
            parallel: Run sample sizes in parallel with joblib.
            n_cores: Number of joblib workers.
            max_failed_simulations: Maximum acceptable proportion of
                failed iterations (0-1).
        """
        self.n_simulations = n_simulations
        self.seed = seed
        self.parallel = parallel
        self.n_cores = n_cores
        self.max_failed_simulations = max_failed_simulations

    def run_sample_size(
        self,
        sample_size: int,
        simulate_fit: Callable[[int, Optional[int]], Tuple[float, float, float, float]],
        progress=None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> Dict[str, Any]:
        """Run every iteration for one sample size.

        Args:
            sample_size: Observations per simulated dataset.
            simulate_fit: Callback returning ``(estimate, se, lower, upper)``.
            progress: Optional ``ProgressReporter`` (advanced by 1 per iteration).
            cancel_check: Optional callable returning ``True`` to abort.

        Returns:
            Dict with arrays ``"estimates"``, ``"standard_errors"``,
            ``"lower"`` and ``"upper"``, plus ``"n_simulations_used"``,
            ``"n_simulations_failed"`` and ``"failure_reasons"``.

        Raises:
            RuntimeError: If every iteration fails or the failure rate
                exceeds ``max_failed_simulations``.
            LessonCancelled: If *cancel_check* requests a stop.
        """
        rows: List[Tuple[float, float, float, float]] = []
        failure_reasons: Dict[str, int] = {}

        for sim_id in range(self.n_simulations):
            if cancel_check is not None and cancel_check():
                from ..progress import LessonCancelled

                raise LessonCancelled("Simulation cancelled by user")

            sim_seed = self.seed + 4 * sim_id if self.seed is not None else None
            try:
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore")
                    rows.append(tuple(float(v) for v in simulate_fit(sample_size, sim_seed)))
            except _FIT_ERRORS as e:
                reason = type(e).__name__
                failure_reasons[reason] = failure_reasons.get(reason, 0) + 1

            if progress is not None:
                progress.advance(1)

        if not rows:
            raise RuntimeError(f"All simulations failed at sample size {sample_size}: {failure_reasons}")

        n_failed = self.n_simulations - len(rows)
        failed_pct = n_failed / self.n_simulations
        if failed_pct > self.max_failed_simulations:
            raise RuntimeError(
                f"Too many failed simulations at sample size {sample_size}: {n_failed}/{self.n_simulations} "
                f"({failed_pct:.1%}), threshold: {self.max_failed_simulations:.1%}"
            )
        if n_failed > 0:
            warnings.warn(f"{n_failed} simulations failed at sample size {sample_size} ({failed_pct:.1%})", UserWarning, stacklevel=2)

        values = np.asarray(rows, dtype=np.float64)
        return {
            "estimates": values[:, 0],
            "standard_errors": values[:, 1],
            "lower": values[:, 2],
            "upper": values[:, 3],
            "n_simulations_used": len(rows),
            "n_simulations_failed": n_failed,
            "failure_reasons": failure_reasons,
        }

    def run(
        self,
        sample_sizes: Sequence[int],
        simulate_fit: Callable[[int, Optional[int]], Tuple[float, float, float, float]],
        progress=None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> List[Tuple[int, Dict[str, Any]]]:
        """Run the loop for every sample size.

        With ``parallel`` enabled the sample sizes are distributed over
        joblib workers; if joblib is missing or the parallel run fails,
        the loop falls back to sequential execution with a printed warning.
        *progress* enters the stage ``"n = <size>"`` for each sample size.

        Returns:
            List of ``(sample_size, run_sample_size result)`` pairs in
            the order of *sample_sizes*.
        """
        from ..progress import LessonCancelled

        if self.parallel:
            try:
                from joblib import Parallel, delayed
            except ImportError:
                print("Warning: joblib not available. Install with: pip install joblib")
                print("Warning: Continuing with sequential processing.")
            else:
                try:
                    outputs = Parallel(
                        n_jobs=self.n_cores,
                        backend="loky",
                        verbose=0,
                        return_as="generator",
                    )(delayed(self.run_sample_size)(ss, simulate_fit) for ss in sample_sizes)
                    results = []
                    for ss, output in zip(sample_sizes, outputs):
                        if cancel_check is not None and cancel_check():
                            raise LessonCancelled("Simulation cancelled by user")
                        results.append((ss, output))
                        if progress is not None:
                            progress.enter(f"n = {ss}")
                            progress.advance(self.n_simulations)
                    return results
                except LessonCancelled:
                    raise
                except Exception as e:
                    print(f"Warning: Parallel execution failed ({e}). Falling back to sequential.")
                    if progress is not None:
                        progress.start()

        results = []
        for ss in sample_sizes:
            if cancel_check is not None and cancel_check():
                raise LessonCancelled("Simulation cancelled by user")
            if progress is not None:
                progress.enter(f"n = {ss}")
            results.append((ss, self.run_sample_size(ss, simulate_fit, progress=progress, cancel_check=cancel_check)))
        return results
