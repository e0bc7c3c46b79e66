"""
Results processing for LMMTour.

Turns raw Monte Carlo output into parameter-recovery statistics: how close
the estimates of a coefficient get to its generating value as the sample
size grows.
"""

from typing import Any, Dict, List, Tuple

import numpy as np
import pandas as pd

RECOVERY_COLUMNS = ["mean_estimate", "bias", "empirical_sd", "mean_se", "rmse", "coverage", "n_used", "n_failed"]


class ResultsProcessor:
    """Aggregates simulated estimates of one coefficient.

    Args:
        true_value: Generating value of the coefficient.
        level: Confidence level of the per-simulation intervals.
    """

    def __init__(self, true_value: float, level: float = 0.95):
        self.true_value = float(true_value)
        self.level = level

    def calculate_recovery(self, run_result: Dict[str, Any]) -> Dict[str, float]:
        """Recovery statistics for one sample size.

        Args:
            run_result: Output of ``SimulationRunner.run_sample_size``.

        Returns:
            Dict with ``mean_estimate``, ``bias``, ``empirical_sd``,
            ``mean_se``, ``rmse``, ``coverage``, ``n_used`` and ``n_failed``.
        """
        estimates = np.asarray(run_result["estimates"], dtype=np.float64)
        errors = estimates - self.true_value
        covered = (run_result["lower"] <= self.true_value) & (self.true_value <= run_result["upper"])
        return {
            "mean_estimate": float(np.mean(estimates)),
            "bias": float(np.mean(errors)),
            "empirical_sd": float(np.std(estimates, ddof=1)) if len(estimates) > 1 else np.nan,
            "mean_se": float(np.nanmean(run_result["standard_errors"])),
            "rmse": float(np.sqrt(np.mean(errors**2))),
            "coverage": float(np.mean(covered)),
            "n_used": int(run_result["n_simulations_used"]),
            "n_failed": int(run_result["n_simulations_failed"]),
        }

    def process_sample_size_results(self, results: List[Tuple[int, Dict[str, Any]]]) -> pd.DataFrame:
        """Recovery table indexed by sample size."""
        rows = [self.calculate_recovery(result) for _, result in results]
        index = pd.Index([ss for ss, _ in results], name="sample_size")
        return pd.DataFrame(rows, index=index, columns=RECOVERY_COLUMNS)


def build_recovery_result(
    target: str,
    true_value: float,
    equation: str,
    model_type: str,
    sample_sizes: List[int],
    n_simulations: int,
    level: float,
    parallel: bool,
    table: pd.DataFrame,
) -> Dict[str, Any]:
    """
    Build the complete parameter-recovery result dictionary.

    Args:
        target: Coefficient whose recovery was checked
        true_value: Generating value of the coefficient
        equation: Model formula
        model_type: ``"linear regression"`` or ``"linear mixed model"``
        sample_sizes: Sample sizes tested
        n_simulations: Simulations per sample size
        level: Confidence level of the intervals
        parallel: Whether parallel processing was used
        table: Output of ``ResultsProcessor.process_sample_size_results``

    Returns:
        Complete result dictionary
    """
    return {
        "model": {
            "model_type": model_type,
            "target": target,
            "true_value": true_value,
            "data_formula": equation,
            "sample_sizes": list(sample_sizes),
            "n_simulations": n_simulations,
            "level": level,
            "parallel": parallel,
        },
        "results": table,
    }
