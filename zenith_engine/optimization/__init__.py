"""
Parameter Optimization Module for Zenith Engine.

This module sweeps strategy parameters and validates the winners out of sample:
- Grid Search: Exhaustive parameter space exploration with filtering and scoring
- Walk-Forward Analysis: Tiled in-sample/out-of-sample windows with a composite report

Example:
    from zenith_engine.optimization import SweepScheduler, enumerate_parameter_space

    space = {
        'fast': {'start': 5, 'end': 20, 'step': 5},
        'slow': [50, 100, 200],
    }
    print(len(enumerate_parameter_space(space)))  # 12

    outcome = SweepScheduler(store, runner).run_sweep(job)
    print(f"Best parameters: {outcome.best.assignment}")
    print(f"Best score: {outcome.best.score}")
"""

from zenith_engine.optimization.base import BacktestRunnerAdapter
from zenith_engine.optimization.parameters import (
    ParameterSpaceEnumerator,
    enumerate_parameter_space,
)
from zenith_engine.optimization.scoring import AnalysisConfig, ScoringEngine
from zenith_engine.optimization.parallel import CancellationToken, ParallelExecutor
from zenith_engine.optimization.grid_search import SweepScheduler
from zenith_engine.optimization.walk_forward import WalkForwardController, partition_windows
from zenith_engine.optimization.results import CompositeWfoReport, build_composite_report

__all__ = [
    'BacktestRunnerAdapter',
    'ParameterSpaceEnumerator',
    'enumerate_parameter_space',
    'AnalysisConfig',
    'ScoringEngine',
    'CancellationToken',
    'ParallelExecutor',
    'SweepScheduler',
    'WalkForwardController',
    'partition_windows',
    'CompositeWfoReport',
    'build_composite_report',
]
