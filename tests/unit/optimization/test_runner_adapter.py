"""
Unit tests for the backtest runner adapter contract and task wrapper.
"""
import pickle
from datetime import datetime
from unittest.mock import Mock

import pytest

from zenith_engine.core.exceptions import BacktestTimeout, DataUnavailable
from zenith_engine.core.parameters import ParameterAssignment
from zenith_engine.core.reports import DateRange
from zenith_engine.optimization.base import (
    BacktestOutcome,
    BacktestRunnerAdapter,
    BacktestTask,
    run_backtest_task,
)


@pytest.fixture
def task():
    return BacktestTask(
        strategy_id='ma_crossover',
        symbol='BTCUSDT',
        interval='1h',
        date_range=DateRange(datetime(2024, 1, 1), datetime(2024, 2, 1)),
        assignment=ParameterAssignment({'fast': 10, 'slow': 50}),
    )


class TestRunnerAdapterContract:
    """Test the abstract adapter."""

    def test_cannot_instantiate_abstract_adapter(self):
        with pytest.raises(TypeError):
            BacktestRunnerAdapter()

    def test_task_is_picklable(self, task):
        assert pickle.loads(pickle.dumps(task)) == task


class TestRunBacktestTask:
    """Test outcome capture around one adapter call."""

    def test_success(self, task, report_factory):
        report = report_factory()
        runner = Mock(spec=BacktestRunnerAdapter)
        runner.run.return_value = report

        outcome = run_backtest_task(runner, task)

        runner.run.assert_called_once_with(
            'ma_crossover', 'BTCUSDT', '1h', task.date_range, task.assignment
        )
        assert outcome.succeeded
        assert outcome.report is report
        assert outcome.error_type is None

    @pytest.mark.parametrize('error,error_type', [
        (DataUnavailable("no candles"), 'DataUnavailable'),
        (BacktestTimeout("too slow"), 'Timeout'),
    ])
    def test_execution_errors_become_failures(self, task, error, error_type):
        runner = Mock(spec=BacktestRunnerAdapter)
        runner.run.side_effect = error

        outcome = run_backtest_task(runner, task)

        assert not outcome.succeeded
        assert outcome.error_type == error_type
        assert outcome.error_message == str(error)
        assert outcome.assignment == task.assignment

    def test_unexpected_exception_wrapped_as_simulation_error(self, task):
        runner = Mock(spec=BacktestRunnerAdapter)
        runner.run.side_effect = ZeroDivisionError("division by zero")

        outcome = run_backtest_task(runner, task)

        assert outcome.error_type == 'SimulationError'
        assert 'ZeroDivisionError' in outcome.error_message

    def test_wrong_return_type_is_simulation_error(self, task):
        runner = Mock(spec=BacktestRunnerAdapter)
        runner.run.return_value = {'net_profit': 10}

        outcome = run_backtest_task(runner, task)

        assert outcome.error_type == 'SimulationError'
        assert 'expected PerformanceReport' in outcome.error_message

    def test_failure_factory(self, task):
        outcome = BacktestOutcome.failure(task.assignment, DataUnavailable("gap"))

        assert outcome.report is None
        assert outcome.error_type == 'DataUnavailable'
        assert outcome.error_message == 'gap'
