"""
Unit tests for the Monte Carlo SimulationRunner.
"""

from unittest.mock import MagicMock, call

import numpy as np
import pytest

from lmmtour.core.simulation import SimulationRunner
from lmmtour.progress import LessonCancelled, ProgressReporter, StageReporter
from tests.config import SEED


def _exact_fit(sample_size, sim_seed):
    """Estimate equal to the sample size, unit SE, interval of +/- 1."""
    return float(sample_size), 1.0, sample_size - 1.0, sample_size + 1.0


class TestRunSampleSize:
    def test_seeds_step_by_four(self):
        seen = []

        def fit(sample_size, sim_seed):
            seen.append(sim_seed)
            return _exact_fit(sample_size, sim_seed)

        SimulationRunner(n_simulations=5, seed=SEED).run_sample_size(30, fit)
        assert seen == [SEED + 4 * i for i in range(5)]

    def test_no_seed(self):
        seen = []

        def fit(sample_size, sim_seed):
            seen.append(sim_seed)
            return _exact_fit(sample_size, sim_seed)

        SimulationRunner(n_simulations=3, seed=None).run_sample_size(30, fit)
        assert seen == [None, None, None]

    def test_output_arrays(self):
        out = SimulationRunner(n_simulations=4).run_sample_size(30, _exact_fit)
        np.testing.assert_array_equal(out["estimates"], [30.0] * 4)
        np.testing.assert_array_equal(out["lower"], [29.0] * 4)
        assert out["n_simulations_used"] == 4
        assert out["n_simulations_failed"] == 0
        assert out["failure_reasons"] == {}

    def test_failures_counted_and_warned(self):
        def fit(sample_size, sim_seed):
            if sim_seed == SEED:
                raise np.linalg.LinAlgError("singular")
            return _exact_fit(sample_size, sim_seed)

        runner = SimulationRunner(n_simulations=4, seed=SEED, max_failed_simulations=0.5)
        with pytest.warns(UserWarning, match="1 simulations failed"):
            out = runner.run_sample_size(30, fit)
        assert out["n_simulations_used"] == 3
        assert out["n_simulations_failed"] == 1
        assert out["failure_reasons"] == {"LinAlgError": 1}

    def test_too_many_failures(self):
        def fit(sample_size, sim_seed):
            if sim_seed % 8 == SEED % 8:
                raise ValueError("bad fit")
            return _exact_fit(sample_size, sim_seed)

        runner = SimulationRunner(n_simulations=10, seed=SEED, max_failed_simulations=0.1)
        with pytest.raises(RuntimeError, match="Too many failed simulations"):
            runner.run_sample_size(30, fit)

    def test_all_failed(self):
        def fit(sample_size, sim_seed):
            raise RuntimeError("never converges")

        with pytest.raises(RuntimeError, match="All simulations failed"):
            SimulationRunner(n_simulations=3, max_failed_simulations=1.0).run_sample_size(30, fit)

    def test_unexpected_errors_propagate(self):
        def fit(sample_size, sim_seed):
            raise KeyError("bug")

        with pytest.raises(KeyError):
            SimulationRunner(n_simulations=3).run_sample_size(30, fit)

    def test_fit_warnings_silenced(self, recwarn):
        import warnings

        def fit(sample_size, sim_seed):
            warnings.warn("optimizer noise", RuntimeWarning)
            return _exact_fit(sample_size, sim_seed)

        SimulationRunner(n_simulations=3).run_sample_size(30, fit)
        assert len(recwarn) == 0

    def test_progress_and_cancel(self):
        cb = MagicMock()
        progress = ProgressReporter(5, cb, update_every=1)
        SimulationRunner(n_simulations=5).run_sample_size(30, _exact_fit, progress=progress)
        assert cb.call_count == 5
        assert cb.call_args == call(5, 5)

        with pytest.raises(LessonCancelled):
            SimulationRunner(n_simulations=5).run_sample_size(30, _exact_fit, cancel_check=lambda: True)


class TestRun:
    def test_sequential_order(self):
        results = SimulationRunner(n_simulations=3).run([20, 50, 100], _exact_fit)
        assert [ss for ss, _ in results] == [20, 50, 100]
        assert results[1][1]["estimates"][0] == 50.0

    def test_stage_per_sample_size(self):
        class Stages(StageReporter):
            def __init__(self):
                super().__init__(unit="simulations")
                self.calls = []

            def __call__(self, current, total, stage=""):
                self.calls.append((current, total, stage))

        reporter = Stages()
        progress = ProgressReporter(6, reporter, update_every=3)
        SimulationRunner(n_simulations=3).run([20, 50], _exact_fit, progress=progress)
        assert reporter.calls == [(0, 6, "n = 20"), (3, 6, "n = 20"), (3, 6, "n = 50"), (6, 6, "n = 50")]

    def test_cancel_between_sample_sizes(self):
        with pytest.raises(LessonCancelled):
            SimulationRunner(n_simulations=3).run([20, 50], _exact_fit, cancel_check=lambda: True)

    def test_parallel_matches_sequential(self):
        pytest.importorskip("joblib")
        sequential = SimulationRunner(n_simulations=4, seed=SEED).run([20, 50], _exact_fit)
        parallel = SimulationRunner(n_simulations=4, seed=SEED, parallel=True, n_cores=2).run([20, 50], _exact_fit)

        assert [ss for ss, _ in parallel] == [20, 50]
        for (_, a), (_, b) in zip(sequential, parallel):
            np.testing.assert_array_equal(a["estimates"], b["estimates"])

    def test_parallel_progress(self):
        pytest.importorskip("joblib")
        cb = MagicMock()
        progress = ProgressReporter(8, cb, update_every=1)
        SimulationRunner(n_simulations=4, parallel=True, n_cores=2).run([20, 50], _exact_fit, progress=progress)
        assert call(4, 8) in cb.call_args_list
        assert cb.call_args == call(8, 8)
