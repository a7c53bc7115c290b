"""
Global pytest fixtures for the Zenith Engine test suite.

Provides an in-memory SQLite store, a scripted backtest runner standing in
for the external simulation engine, and report factories.
"""
import threading
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

import pytest

from zenith_engine.core.exceptions import SimulationError
from zenith_engine.core.parameters import ParameterAssignment
from zenith_engine.core.reports import DateRange, EquityPoint, PerformanceReport, Trade
from zenith_engine.data.repository import OptimizationStore
from zenith_engine.optimization.base import BacktestRunnerAdapter
from zenith_engine.utils.config import OptimizerSettings


def _dec(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def build_report(
    profit_factor='1.5',
    calmar_ratio='1',
    payoff_ratio='1',
    sharpe_ratio=None,
    win_rate_pct='50',
    max_drawdown_pct='10',
    net_profit='500',
    initial_capital='10000',
    total_trades=10,
    date_range: Optional[DateRange] = None,
    trades=(),
) -> PerformanceReport:
    """
    PerformanceReport with explicit metrics.

    When date_range is given, the equity curve runs from initial_capital at
    the range start to initial_capital + net_profit one day before its end.
    """
    initial = _dec(initial_capital)
    profit = _dec(net_profit)

    equity_curve = ()
    if date_range is not None:
        equity_curve = (
            EquityPoint(date_range.start, initial),
            EquityPoint(date_range.end - timedelta(days=1), initial + profit),
        )

    return PerformanceReport(
        initial_capital=initial,
        net_profit=profit,
        profit_factor=_dec(profit_factor),
        total_return_pct=profit / initial * Decimal('100'),
        max_drawdown=initial * _dec(max_drawdown_pct) / Decimal('100'),
        max_drawdown_pct=_dec(max_drawdown_pct),
        sharpe_ratio=_dec(sharpe_ratio),
        calmar_ratio=_dec(calmar_ratio),
        total_trades=total_trades,
        winning_trades=total_trades // 2,
        losing_trades=total_trades - total_trades // 2,
        win_rate_pct=_dec(win_rate_pct),
        payoff_ratio=_dec(payoff_ratio),
        trades=trades,
        equity_curve=equity_curve,
    )


def default_script(assignment: ParameterAssignment, date_range: DateRange) -> PerformanceReport:
    """Report whose quality increases with parameter 'p' (default 1)."""
    p = Decimal(str(assignment.get('p', 1)))
    return build_report(
        profit_factor=p / 2,
        calmar_ratio=p,
        payoff_ratio='1',
        net_profit=p * 100,
        date_range=date_range,
        trades=(
            Trade(
                symbol='BTCUSDT',
                entry_time=date_range.start,
                exit_time=date_range.start + timedelta(hours=6),
                entry_price=Decimal('100'),
                exit_price=Decimal('100') + p,
                quantity=Decimal('1'),
                pnl=p,
            ),
        ),
    )


class ScriptedRunner(BacktestRunnerAdapter):
    """
    Fake backtest engine driven by a script.

    The script receives (assignment, date_range) and returns a report or
    raises. Every call is recorded.

    Attributes:
        calls: (assignment, date_range) per call, in call order
        max_concurrent: Highest number of overlapping calls observed
    """

    def __init__(
        self,
        script: Optional[Callable[[ParameterAssignment, DateRange], PerformanceReport]] = None,
        delay: float = 0.0,
    ):
        self.script = script or default_script
        self.delay = delay
        self.calls: List[Tuple[ParameterAssignment, DateRange]] = []
        self.max_concurrent = 0
        self._active = 0
        self._lock = threading.Lock()

    def run(self, strategy_id, symbol, interval, date_range, parameters):
        with self._lock:
            self.calls.append((parameters, date_range))
            self._active += 1
            self.max_concurrent = max(self.max_concurrent, self._active)
        try:
            if self.delay:
                time.sleep(self.delay)
            return self.script(parameters, date_range)
        finally:
            with self._lock:
                self._active -= 1


def failing_on(*values, key='p', error=SimulationError):
    """Script that raises for the given parameter values and uses default_script otherwise."""

    def script(assignment, date_range):
        if assignment.get(key) in values:
            raise error(f"Strategy crashed for {key}={assignment.get(key)}")
        return default_script(assignment, date_range)

    return script


@pytest.fixture
def store():
    """
    Fresh in-memory SQLite store per test.

    One shared connection (StaticPool), so worker threads see the same data.
    """
    store = OptimizationStore.from_url('sqlite:///:memory:')
    store.create_schema()
    yield store
    store.engine.dispose()


@pytest.fixture
def settings():
    """Small, quiet optimizer settings for tests."""
    return OptimizerSettings(
        max_combinations=1000,
        max_workers=2,
        backtest_timeout_seconds=10.0,
        executor_type='thread',
        show_progress=False,
    )


@pytest.fixture
def report_factory():
    """Build PerformanceReports with explicit metrics."""
    return build_report


@pytest.fixture
def runner_factory():
    """Build ScriptedRunner instances: runner_factory(script=None, delay=0.0)."""
    return ScriptedRunner


@pytest.fixture
def failing_script():
    """failing_script(*values, key='p', error=SimulationError) -> script."""
    return failing_on


@pytest.fixture
def runner():
    """ScriptedRunner with the default script (quality grows with 'p')."""
    return ScriptedRunner()


@pytest.fixture
def six_months():
    return DateRange(datetime(2024, 1, 1), datetime(2024, 7, 1))
