"""
Backtest runner adapter contract.

The single-backtest simulation engine is an external collaborator. The
optimizer only consumes this narrow interface:

    run(strategy_id, symbol, interval, date_range, parameters) -> PerformanceReport

Implementations raise DataUnavailable, SimulationError or BacktestTimeout.
They must be safe to call concurrently: no mutable state may be shared
between calls other than read-only market data.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from zenith_engine.core.exceptions import ExecutionError, SimulationError
from zenith_engine.core.parameters import ParameterAssignment
from zenith_engine.core.reports import DateRange, PerformanceReport
from zenith_engine.utils.logging_config import setup_logger

logger = setup_logger('APP.OPTIMIZATION.RUNNER')


class BacktestRunnerAdapter(ABC):
    """
    Abstract adapter to the external backtest engine.

    Example:
        class EngineAdapter(BacktestRunnerAdapter):
            def run(self, strategy_id, symbol, interval, date_range, parameters):
                result = engine.simulate(strategy_id, symbol, interval,
                                         date_range.start, date_range.end,
                                         parameters.to_dict())
                return calculate_performance(result.trades, result.equity,
                                             result.initial_capital)
    """

    @abstractmethod
    def run(
        self,
        strategy_id: str,
        symbol: str,
        interval: str,
        date_range: DateRange,
        parameters: ParameterAssignment,
    ) -> PerformanceReport:
        """
        Run one backtest.

        Args:
            strategy_id: Strategy identifier
            symbol: Target symbol
            interval: Candle interval
            date_range: Half-open backtest range
            parameters: Concrete parameter values

        Returns:
            PerformanceReport for the run

        Raises:
            DataUnavailable: No market data for symbol/range
            SimulationError: Strategy or engine fault
            BacktestTimeout: Run exceeded its own deadline
        """
        raise NotImplementedError("Subclasses must implement run()")


@dataclass(frozen=True)
class BacktestTask:
    """Everything needed to run one backtest; picklable for process pools."""
    strategy_id: str
    symbol: str
    interval: str
    date_range: DateRange
    assignment: ParameterAssignment


@dataclass(frozen=True)
class BacktestOutcome:
    """
    Result of one backtest call.

    Attributes:
        assignment: Parameter assignment evaluated
        report: Report on success
        error_type: Error class tag on failure ('DataUnavailable', 'SimulationError', 'Timeout')
        error_message: Error description on failure
    """
    assignment: ParameterAssignment
    report: Optional[PerformanceReport] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.report is not None

    @classmethod
    def failure(
        cls, assignment: ParameterAssignment, error: ExecutionError
    ) -> 'BacktestOutcome':
        return cls(
            assignment=assignment,
            error_type=error.error_type,
            error_message=str(error),
        )


def run_backtest_task(runner: BacktestRunnerAdapter, task: BacktestTask) -> BacktestOutcome:
    """
    Call the adapter for one task and capture the outcome.

    Module-level so it can be pickled and executed in a worker process.
    Execution errors become failed outcomes. Any other exception escaping the
    adapter is treated as a SimulationError.

    Args:
        runner: Backtest runner adapter
        task: Backtest to run

    Returns:
        BacktestOutcome with either a report or error details
    """
    try:
        report = runner.run(
            task.strategy_id,
            task.symbol,
            task.interval,
            task.date_range,
            task.assignment,
        )
    except ExecutionError as e:
        return BacktestOutcome.failure(task.assignment, e)
    except Exception as e:
        logger.warning(
            f"Runner raised unexpected {type(e).__name__} for {task.assignment}; "
            f"recording as SimulationError"
        )
        wrapped = SimulationError(f"{type(e).__name__}: {e}", assignment=task.assignment)
        return BacktestOutcome.failure(task.assignment, wrapped)

    if not isinstance(report, PerformanceReport):
        wrapped = SimulationError(
            f"Runner returned {type(report).__name__}, expected PerformanceReport",
            assignment=task.assignment,
        )
        return BacktestOutcome.failure(task.assignment, wrapped)

    return BacktestOutcome(assignment=task.assignment, report=report)
