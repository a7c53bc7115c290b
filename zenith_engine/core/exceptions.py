"""
Error taxonomy for the optimization and walk-forward engine.

Configuration errors are raised before any work starts. Execution errors are
local to one parameter assignment and are recorded, not propagated, by the
sweep. Job-level failures end up as a terminal status on the owning job.
Persistence errors always reach the caller.
"""
from typing import Any, Optional


class ZenithError(Exception):
    """Base class for every error raised by zenith_engine."""
    pass


class InvalidParameterSpace(ZenithError, ValueError):
    """
    Parameter space cannot be enumerated.

    Raised for malformed specs (non-positive step, start > end, empty
    discrete set), axes yielding zero values, or a cartesian product larger
    than the configured cap.
    """
    pass


class InvalidWalkForwardConfig(ZenithError, ValueError):
    """Walk-forward window lengths or date range are unusable."""
    pass


class ExecutionError(ZenithError):
    """
    A single backtest failed.

    Attributes:
        assignment: Parameter assignment being evaluated, when known
    """

    error_type = 'ExecutionError'

    def __init__(self, message: str, assignment: Optional[Any] = None):
        super().__init__(message)
        self.assignment = assignment


class DataUnavailable(ExecutionError):
    """No market data for the requested symbol, interval and range."""

    error_type = 'DataUnavailable'


class SimulationError(ExecutionError):
    """The strategy or simulation engine raised an internal fault."""

    error_type = 'SimulationError'


class BacktestTimeout(ExecutionError):
    """A backtest exceeded its deadline."""

    error_type = 'Timeout'


class NoViableParameters(ZenithError):
    """
    Every in-sample candidate of a walk-forward window failed or was filtered.

    Attributes:
        window_index: Zero-based index of the window that produced no candidate
    """

    def __init__(self, message: str, window_index: Optional[int] = None):
        super().__init__(message)
        self.window_index = window_index


class PersistenceError(ZenithError):
    """The persistence store is unavailable or rejected a write."""
    pass


class JobNotFound(ZenithError, LookupError):
    """No optimization or walk-forward job exists with the given id."""
    pass
