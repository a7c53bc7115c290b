"""
Unit tests for the composite walk-forward report and tabular exports.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pandas as pd
import pytest

from zenith_engine.core.jobs import BacktestRun, RankedReport, RunKind, RunStatus, WfoRun
from zenith_engine.core.parameters import ParameterAssignment
from zenith_engine.core.reports import DateRange, EquityPoint, Trade
from zenith_engine.optimization.results import build_composite_report, ranked_reports_frame

OOS_0 = DateRange(datetime(2023, 9, 1), datetime(2023, 11, 1))
OOS_1 = DateRange(datetime(2024, 7, 1), datetime(2024, 9, 1))


def make_trade(date_range, pnl):
    return Trade(
        symbol='BTCUSDT',
        entry_time=date_range.start,
        exit_time=date_range.start + timedelta(days=1),
        entry_price=Decimal('100'),
        exit_price=Decimal('100') + Decimal(pnl),
        quantity=Decimal('1'),
        pnl=Decimal(pnl),
    )


def make_wfo_run(index, oos_range, report):
    run = BacktestRun(
        run_id=f"oos-{index}",
        assignment=ParameterAssignment({'p': 3}),
        date_range=oos_range,
        status=RunStatus.COMPLETED,
        kind=RunKind.VALIDATION,
        report=report,
    )
    return WfoRun(
        wfo_run_id=f"wfo-{index}",
        wfo_job_id='wfo',
        window_index=index,
        oos_run_id=run.run_id,
        best_parameters=run.assignment,
        oos_range=oos_range,
        oos_run=run,
    )


class TestBuildCompositeReport:
    """Test stitching of out-of-sample windows."""

    def test_no_windows(self):
        composite = build_composite_report([])

        assert composite.window_count == 0
        assert composite.equity_curve == []
        assert composite.total_trades == 0

    def test_single_window_unchanged(self, report_factory):
        report = report_factory(net_profit='100', date_range=OOS_0)

        composite = build_composite_report([make_wfo_run(0, OOS_0, report)])

        assert composite.equity_curve == list(report.equity_curve)
        assert composite.ending_equity == Decimal('10100')
        assert composite.total_return_pct == Decimal('1')

    def test_windows_rebased_multiplicatively(self, report_factory):
        runs = [
            make_wfo_run(0, OOS_0, report_factory(net_profit='100', date_range=OOS_0)),
            make_wfo_run(1, OOS_1, report_factory(net_profit='200', date_range=OOS_1)),
        ]

        composite = build_composite_report(runs)

        assert composite.window_count == 2
        assert [p.equity for p in composite.equity_curve] == [
            Decimal('10000'), Decimal('10100'), Decimal('10100'), Decimal('10302'),
        ]
        assert composite.starting_equity == Decimal('10000')
        assert composite.net_profit == Decimal('302')
        assert composite.total_return_pct == Decimal('3.02')

    def test_each_window_continues_from_previous_end(self, report_factory):
        runs = [
            make_wfo_run(i, r, report_factory(net_profit=profit, date_range=r))
            for i, (r, profit) in enumerate([
                (OOS_0, '250'),
                (OOS_1, '-400'),
                (DateRange(datetime(2025, 5, 1), datetime(2025, 7, 1)), '75'),
            ])
        ]

        composite = build_composite_report(runs)

        curve = composite.equity_curve
        for window_end in (1, 3):
            assert curve[window_end + 1].equity == curve[window_end].equity
        assert [p.timestamp for p in curve] == sorted(p.timestamp for p in curve)

    def test_zero_start_window_shifted_additively(self, report_factory):
        first = report_factory(net_profit='100', date_range=OOS_0)
        zero_start = report_factory().with_series(
            trades=(),
            equity_curve=(
                EquityPoint(OOS_1.start, Decimal('0')),
                EquityPoint(OOS_1.start + timedelta(days=10), Decimal('50')),
            ),
        )

        composite = build_composite_report([
            make_wfo_run(0, OOS_0, first), make_wfo_run(1, OOS_1, zero_start),
        ])

        assert [p.equity for p in composite.equity_curve[2:]] == [
            Decimal('10100'), Decimal('10150')
        ]

    def test_drawdown_measured_across_windows(self, report_factory):
        runs = [
            make_wfo_run(0, OOS_0, report_factory(net_profit='500', date_range=OOS_0)),
            make_wfo_run(1, OOS_1, report_factory(net_profit='-1000', date_range=OOS_1)),
        ]

        composite = build_composite_report(runs)

        # 10500 -> 10500 * 0.9 = 9450
        assert composite.ending_equity == Decimal('9450')
        assert composite.max_drawdown == Decimal('1050')
        assert composite.max_drawdown_pct == Decimal('10')
        assert composite.calmar_ratio == Decimal('-0.55')

    def test_windows_sorted_by_index(self, report_factory):
        runs = [
            make_wfo_run(1, OOS_1, report_factory(net_profit='200', date_range=OOS_1)),
            make_wfo_run(0, OOS_0, report_factory(net_profit='100', date_range=OOS_0)),
        ]

        composite = build_composite_report(runs)

        assert composite.equity_curve[0].timestamp == OOS_0.start
        assert composite.ending_equity == Decimal('10302')

    def test_missing_equity_curve_synthesized(self, report_factory):
        report = report_factory(net_profit='100')

        composite = build_composite_report([make_wfo_run(0, OOS_0, report)])

        assert composite.equity_curve == [
            EquityPoint(OOS_0.start, Decimal('10000')),
            EquityPoint(OOS_0.end, Decimal('10100')),
        ]

    def test_windows_without_report_skipped(self, report_factory):
        failed = make_wfo_run(1, OOS_1, None)
        composite = build_composite_report([
            make_wfo_run(0, OOS_0, report_factory(date_range=OOS_0)), failed,
        ])
        assert composite.window_count == 1

    def test_trades_tagged_with_window(self, report_factory):
        runs = [
            make_wfo_run(0, OOS_0, report_factory(
                date_range=OOS_0, trades=(make_trade(OOS_0, '5'), make_trade(OOS_0, '-2')),
            )),
            make_wfo_run(1, OOS_1, report_factory(
                date_range=OOS_1, trades=(make_trade(OOS_1, '3'),),
            )),
        ]

        composite = build_composite_report(runs)

        assert [t.window_index for t in composite.trades] == [0, 0, 1]
        assert composite.total_trades == 3
        assert composite.winning_trades == 2
        assert composite.losing_trades == 1


class TestCompositeFrames:
    """Test pandas exports of the composite report."""

    @pytest.fixture
    def composite(self, report_factory):
        return build_composite_report([
            make_wfo_run(0, OOS_0, report_factory(
                net_profit='100', date_range=OOS_0, trades=(make_trade(OOS_0, '5'),),
            )),
            make_wfo_run(1, OOS_1, report_factory(net_profit='200', date_range=OOS_1)),
        ])

    def test_equity_frame(self, composite):
        df = composite.equity_frame()

        assert isinstance(df.index, pd.DatetimeIndex)
        assert list(df.columns) == ['equity']
        assert len(df) == 4
        assert df['equity'].iloc[-1] == pytest.approx(10302.0)

    def test_trades_frame(self, composite):
        df = composite.trades_frame()

        assert len(df) == 1
        assert df['window_index'].tolist() == [0]
        assert df['pnl'].tolist() == [5.0]

    def test_summary_has_scalars_only(self, composite):
        summary = composite.summary()

        assert summary['window_count'] == 2
        assert 'equity_curve' not in summary


class TestRankedReportsFrame:
    """Test the ranking export."""

    def test_columns_and_order(self, report_factory):
        ranked = [
            RankedReport(
                BacktestRun(
                    run_id=f"run-{p}",
                    assignment=ParameterAssignment({'fast': p, 'mode': 'trend'}),
                    date_range=OOS_0,
                    status=RunStatus.COMPLETED,
                    report=report_factory(profit_factor=str(p)),
                ),
                Decimal(p) / 10,
            )
            for p in (3, 1)
        ]

        df = ranked_reports_frame(ranked)

        assert df['rank'].tolist() == [1, 2]
        assert df['run_id'].tolist() == ['run-3', 'run-1']
        assert df['score'].tolist() == [0.3, 0.1]
        assert df['param_fast'].tolist() == [3, 1]
        assert df['param_mode'].tolist() == ['trend', 'trend']
        assert df['profit_factor'].tolist() == [3.0, 1.0]

    def test_empty_ranking(self):
        assert ranked_reports_frame([]).empty
