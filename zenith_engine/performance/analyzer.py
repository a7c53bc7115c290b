"""
Performance analysis for backtest results.

Derives a PerformanceReport from closed trades and an equity curve using
fixed-precision decimal arithmetic, so that identical inputs always produce
identical stored metrics.

Example:
    from zenith_engine.performance.analyzer import PerformanceAnalyzer

    analyzer = PerformanceAnalyzer(
        trades=closed_trades,
        equity_curve=equity_points,
        initial_capital=Decimal('10000')
    )

    report = analyzer.calculate_report()
    print(f"Return: {report.total_return_pct}%  MaxDD: {report.max_drawdown_pct}%")
"""
import decimal
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from zenith_engine.core.reports import EquityPoint, PerformanceReport, Trade
from zenith_engine.utils.logging_config import get_logger

logger = get_logger('PERFORMANCE.ANALYZER')

ZERO = Decimal('0')
HUNDRED = Decimal('100')

# 28 significant digits, banker's rounding
METRICS_CONTEXT = decimal.Context(prec=28, rounding=decimal.ROUND_HALF_EVEN)


def calculate_max_drawdown(equity: Sequence[Decimal]) -> Tuple[Decimal, Decimal]:
    """
    Largest peak-to-trough decline measured against the running peak.

    Args:
        equity: Equity values in time order

    Returns:
        (max_drawdown, max_drawdown_pct). The percentage is relative to the
        peak at which the worst decline started; it is 0 when the peak is not
        positive.

    Example:
        calculate_max_drawdown([Decimal('100'), Decimal('120'), Decimal('90')])
        # (Decimal('30'), Decimal('25'))
    """
    with decimal.localcontext(METRICS_CONTEXT):
        peak: Optional[Decimal] = None
        max_dd = ZERO
        max_dd_pct = ZERO

        for value in equity:
            if peak is None or value > peak:
                peak = value
                continue

            drawdown = peak - value
            if drawdown > max_dd:
                max_dd = drawdown
                max_dd_pct = drawdown / peak * HUNDRED if peak > 0 else ZERO

        return +max_dd, +max_dd_pct


def calculate_total_return_pct(start_equity: Decimal, end_equity: Decimal) -> Decimal:
    """Return (end - start) / start * 100, or 0 when start is not positive."""
    if start_equity <= 0:
        return ZERO
    with decimal.localcontext(METRICS_CONTEXT):
        return (end_equity - start_equity) / start_equity * HUNDRED


def calculate_calmar_ratio(
    total_return_pct: Decimal, max_drawdown_pct: Decimal
) -> Optional[Decimal]:
    """Calmar ratio as return % over drawdown %; undefined without drawdown."""
    if max_drawdown_pct <= 0:
        return None
    with decimal.localcontext(METRICS_CONTEXT):
        return total_return_pct / max_drawdown_pct


def calculate_sharpe_ratio(equity: Sequence[Decimal]) -> Optional[Decimal]:
    """
    Mean over sample standard deviation of point-to-point returns.

    Not annualized: the interval between points is whatever the equity curve
    was sampled at. Undefined with fewer than two returns or zero variance.
    """
    with decimal.localcontext(METRICS_CONTEXT):
        returns: List[Decimal] = []
        for previous, current in zip(equity, equity[1:]):
            if previous != 0:
                returns.append((current - previous) / previous)

        if len(returns) < 2:
            return None

        count = Decimal(len(returns))
        mean = sum(returns, ZERO) / count
        variance = sum(((r - mean) ** 2 for r in returns), ZERO) / (count - 1)
        if variance == 0:
            return None

        return mean / variance.sqrt()


class PerformanceAnalyzer:
    """
    Calculates the report metrics for one backtest.

    Attributes:
        trades: Closed trades
        equity_curve: Equity points in time order
        initial_capital: Starting capital
    """

    def __init__(
        self,
        trades: Sequence[Trade],
        equity_curve: Sequence[EquityPoint],
        initial_capital: Decimal,
    ):
        self.trades = list(trades)
        self.equity_curve = sorted(equity_curve, key=lambda point: point.timestamp)
        self.initial_capital = initial_capital

        logger.debug(
            f"PerformanceAnalyzer initialized: "
            f"{len(self.trades)} trades, {len(self.equity_curve)} equity points"
        )

    def calculate_report(self) -> PerformanceReport:
        """
        Calculate the full metric set.

        Returns:
            PerformanceReport owning the trades and equity curve
        """
        values = [point.equity for point in self.equity_curve]
        if not values:
            values = [self.initial_capital]

        with decimal.localcontext(METRICS_CONTEXT):
            end_equity = values[-1]
            net_profit = end_equity - self.initial_capital
            total_return_pct = calculate_total_return_pct(self.initial_capital, end_equity)

            max_dd, max_dd_pct = calculate_max_drawdown([self.initial_capital] + values)

            wins = [t.pnl for t in self.trades if t.is_win]
            losses = [-t.pnl for t in self.trades if t.is_loss]
            gross_profit = sum(wins, ZERO)
            gross_loss = sum(losses, ZERO)

            average_win = gross_profit / len(wins) if wins else ZERO
            average_loss = gross_loss / len(losses) if losses else ZERO

            total_trades = len(self.trades)
            win_rate_pct = (
                Decimal(len(wins)) / Decimal(total_trades) * HUNDRED
                if total_trades else None
            )

            report = PerformanceReport(
                initial_capital=self.initial_capital,
                net_profit=net_profit,
                gross_profit=gross_profit,
                gross_loss=gross_loss,
                profit_factor=gross_profit / gross_loss if gross_loss > 0 else None,
                total_return_pct=total_return_pct,
                max_drawdown=max_dd,
                max_drawdown_pct=max_dd_pct,
                sharpe_ratio=calculate_sharpe_ratio(values),
                calmar_ratio=calculate_calmar_ratio(total_return_pct, max_dd_pct),
                total_trades=total_trades,
                winning_trades=len(wins),
                losing_trades=len(losses),
                win_rate_pct=win_rate_pct,
                average_win=average_win,
                average_loss=average_loss,
                payoff_ratio=(
                    average_win / average_loss if wins and losses else None
                ),
                average_holding_period=self._average_holding_period(),
                trades=tuple(self.trades),
                equity_curve=tuple(self.equity_curve),
            )

        logger.debug(
            f"Performance: Return={report.total_return_pct:.2f}%, "
            f"MaxDD={report.max_drawdown_pct:.2f}%, Trades={report.total_trades}"
        )
        return report

    def _average_holding_period(self) -> Optional[timedelta]:
        """Mean trade duration, None without trades."""
        if not self.trades:
            return None
        total = sum((t.holding_period for t in self.trades), timedelta(0))
        return total / len(self.trades)


def calculate_performance(
    trades: Sequence[Trade],
    equity_curve: Sequence[EquityPoint],
    initial_capital: Decimal,
) -> PerformanceReport:
    """
    Build a PerformanceReport from trades and equity.

    Convenience wrapper around PerformanceAnalyzer for runner adapters.
    """
    return PerformanceAnalyzer(trades, equity_curve, initial_capital).calculate_report()
