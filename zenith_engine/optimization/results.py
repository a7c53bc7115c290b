"""
Result assembly and tabular exports.

The composite walk-forward report is derived on read: out-of-sample equity
curves are stitched in window order, each window rebased to continue from
the previous window's ending equity, and drawdown/return metrics are
recomputed over the stitched series. Ranked sweep results and composite
series can be exported as pandas DataFrames.
"""
import decimal
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from zenith_engine.core.jobs import RankedReport, WfoRun
from zenith_engine.core.reports import EquityPoint, Trade
from zenith_engine.performance.analyzer import (
    METRICS_CONTEXT,
    calculate_calmar_ratio,
    calculate_max_drawdown,
    calculate_total_return_pct,
)
from zenith_engine.utils.logging_config import setup_logger

logger = setup_logger('APP.OPTIMIZATION.RESULTS')

ZERO = Decimal('0')


@dataclass
class CompositeWfoReport:
    """
    Continuous out-of-sample performance across all completed windows.

    Attributes:
        window_count: Number of windows stitched
        equity_curve: Rebased equity points in time order
        trades: All out-of-sample trades, tagged with their window index
        starting_equity: Equity before the first window
        ending_equity: Last stitched equity value
        net_profit: ending_equity - starting_equity
        total_return_pct: Return over the whole stitched series
        max_drawdown: Largest peak-to-trough decline of the stitched series
        max_drawdown_pct: Same, as a percentage of the running peak
        total_trades: Trade count over all windows
        winning_trades: Trades with positive pnl
        losing_trades: Trades with negative pnl
        calmar_ratio: total_return_pct / max_drawdown_pct (None without drawdown)
    """
    window_count: int
    equity_curve: List[EquityPoint] = field(default_factory=list)
    trades: List[Trade] = field(default_factory=list)
    starting_equity: Decimal = ZERO
    ending_equity: Decimal = ZERO
    net_profit: Decimal = ZERO
    total_return_pct: Decimal = ZERO
    max_drawdown: Decimal = ZERO
    max_drawdown_pct: Decimal = ZERO
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    calmar_ratio: Optional[Decimal] = None

    def summary(self) -> Dict[str, Any]:
        """Scalar metrics only."""
        return {
            'window_count': self.window_count,
            'starting_equity': self.starting_equity,
            'ending_equity': self.ending_equity,
            'net_profit': self.net_profit,
            'total_return_pct': self.total_return_pct,
            'max_drawdown': self.max_drawdown,
            'max_drawdown_pct': self.max_drawdown_pct,
            'total_trades': self.total_trades,
            'winning_trades': self.winning_trades,
            'losing_trades': self.losing_trades,
            'calmar_ratio': self.calmar_ratio,
        }

    def equity_frame(self) -> pd.DataFrame:
        """Stitched equity curve indexed by timestamp."""
        df = pd.DataFrame(
            [(p.timestamp, p.equity) for p in self.equity_curve],
            columns=['timestamp', 'equity'],
        )
        df['equity'] = df['equity'].astype(float)
        df['timestamp'] = pd.to_datetime(df['timestamp'])
        return df.set_index('timestamp')

    def trades_frame(self) -> pd.DataFrame:
        """One row per out-of-sample trade."""
        columns = ['window_index', 'symbol', 'side', 'entry_time', 'exit_time',
                   'entry_price', 'exit_price', 'quantity', 'pnl']
        rows = [{name: getattr(t, name) for name in columns} for t in self.trades]
        df = pd.DataFrame(rows, columns=columns)
        for name in ('entry_price', 'exit_price', 'quantity', 'pnl'):
            df[name] = df[name].astype(float)
        return df


def _window_points(run: WfoRun) -> List[EquityPoint]:
    """Equity points of one window, synthesized from the report when empty."""
    report = run.oos_run.report
    if report.equity_curve:
        return list(report.equity_curve)
    return [
        EquityPoint(run.oos_range.start, report.initial_capital),
        EquityPoint(run.oos_range.end, report.final_equity),
    ]


def _rebase(points: List[EquityPoint], prior_end: Decimal) -> List[EquityPoint]:
    """
    Continue a window's curve from prior_end.

    Scales multiplicatively by prior_end / first equity; shifts additively
    when the window starts at zero. The first point equals prior_end exactly.
    """
    first = points[0].equity
    with decimal.localcontext(METRICS_CONTEXT):
        if first == 0:
            delta = prior_end - first
            rebased = [EquityPoint(p.timestamp, p.equity + delta) for p in points]
        else:
            factor = prior_end / first
            rebased = [EquityPoint(p.timestamp, p.equity * factor) for p in points]
    rebased[0] = EquityPoint(points[0].timestamp, prior_end)
    return rebased


def build_composite_report(wfo_runs: Sequence[WfoRun]) -> CompositeWfoReport:
    """
    Stitch the out-of-sample runs of a walk-forward job.

    Args:
        wfo_runs: Runs with oos_run (and its report) loaded

    Returns:
        CompositeWfoReport; empty when no window completed

    Example:
        composite = build_composite_report(store.list_wfo_runs(wfo_job_id))
        print(composite.total_return_pct, composite.max_drawdown_pct)
    """
    runs = sorted(
        (r for r in wfo_runs if r.oos_run is not None and r.oos_run.report is not None),
        key=lambda r: r.window_index,
    )
    if not runs:
        return CompositeWfoReport(window_count=0)

    curve: List[EquityPoint] = []
    trades: List[Trade] = []
    starting_equity = runs[0].oos_run.report.initial_capital

    for run in runs:
        points = _window_points(run)
        if curve:
            points = _rebase(points, curve[-1].equity)
        curve.extend(points)
        trades.extend(replace(t, window_index=run.window_index) for t in run.oos_run.report.trades)

    ending_equity = curve[-1].equity
    max_dd, max_dd_pct = calculate_max_drawdown([starting_equity] + [p.equity for p in curve])
    total_return_pct = calculate_total_return_pct(starting_equity, ending_equity)

    with decimal.localcontext(METRICS_CONTEXT):
        net_profit = ending_equity - starting_equity

    composite = CompositeWfoReport(
        window_count=len(runs),
        equity_curve=curve,
        trades=trades,
        starting_equity=starting_equity,
        ending_equity=ending_equity,
        net_profit=net_profit,
        total_return_pct=total_return_pct,
        max_drawdown=max_dd,
        max_drawdown_pct=max_dd_pct,
        total_trades=len(trades),
        winning_trades=sum(1 for t in trades if t.is_win),
        losing_trades=sum(1 for t in trades if t.is_loss),
        calmar_ratio=calculate_calmar_ratio(total_return_pct, max_dd_pct),
    )

    logger.debug(
        f"Composite report: {composite.window_count} windows, "
        f"return {composite.total_return_pct:.2f}%, max DD {composite.max_drawdown_pct:.2f}%"
    )
    return composite


def ranked_reports_frame(ranked: Sequence[RankedReport]) -> pd.DataFrame:
    """
    Ranking as a DataFrame: rank, run id, score, one column per parameter,
    then the metric columns.

    Example:
        df = ranked_reports_frame(service.get_job_results(job_id))
        print(df.head(10)[['rank', 'score', 'profit_factor']])
    """
    rows = []
    for position, item in enumerate(ranked, start=1):
        row: Dict[str, Any] = {
            'rank': position,
            'run_id': item.run_id,
            'score': float(item.score),
        }
        row.update({f"param_{name}": value for name, value in item.assignment.items()})
        for name, value in item.report.metrics_dict().items():
            row[name] = float(value) if isinstance(value, Decimal) else value
        rows.append(row)
    return pd.DataFrame(rows)
