"""Core components for the LMMTour framework.

Re-exports the foundational building blocks:

- ``VariableRegistry``, ``PredictorVar``, ``Effect``, ``ClusterSpec``:
  variable, effect and grouping management.
- ``SimulationRunner``: Monte Carlo simulate-and-fit execution.
- ``ResultsProcessor``, ``build_recovery_result``: parameter-recovery
  summaries.
"""

from .results import ResultsProcessor, build_recovery_result
from .simulation import SimulationRunner
from .variables import ClusterSpec, Effect, PredictorVar, VariableRegistry

__all__ = [
    # Variables
    "VariableRegistry",
    "PredictorVar",
    "Effect",
    "ClusterSpec",
    # Simulation
    "SimulationRunner",
    # Results
    "ResultsProcessor",
    "build_recovery_result",
]
