"""
Unit tests for OptimizationStore against in-memory SQLite.
"""
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from zenith_engine.core.exceptions import JobNotFound, PersistenceError
from zenith_engine.core.jobs import (
    BacktestRun,
    JobStatus,
    OptimizationJob,
    RunKind,
    RunStatus,
    WfoJob,
    WfoRun,
    new_id,
)
from zenith_engine.core.parameters import ParameterAssignment
from zenith_engine.core.reports import DateRange, Trade

SPAN = DateRange(datetime(2024, 1, 1), datetime(2024, 3, 1))


def make_job(**overrides):
    fields = dict(
        job_id=new_id(),
        strategy_id='ma_crossover',
        symbol='BTCUSDT',
        interval='1h',
        date_range=SPAN,
        parameter_space={'fast': {'start': 5, 'end': 20, 'step': 5}, 'mode': ['a', 'b']},
        analysis_config={'normalization': 'fixed'},
    )
    fields.update(overrides)
    return OptimizationJob(**fields)


def make_run(job_id, report=None, status=RunStatus.COMPLETED, score=None, **overrides):
    fields = dict(
        run_id=new_id(),
        job_id=job_id,
        assignment=ParameterAssignment({'fast': 5, 'band': Decimal('0.1'), 'mode': 'a',
                                        'flag': True}),
        date_range=SPAN,
        status=status,
        report=report,
        score=score,
        created_at=datetime(2024, 5, 1, 12, 0, 0),
    )
    fields.update(overrides)
    return BacktestRun(**fields)


def make_wfo_job(**overrides):
    fields = dict(
        wfo_job_id=new_id(),
        strategy_id='ma_crossover',
        symbol='BTCUSDT',
        interval='1d',
        date_range=DateRange(datetime(2023, 1, 1), datetime(2024, 9, 1)),
        in_sample_len=8,
        out_of_sample_len=2,
        period_unit='months',
        parameter_space={'p': [1, 2]},
        analysis_config={},
    )
    fields.update(overrides)
    return WfoJob(**fields)


class TestJobs:
    """Test optimization job records."""

    def test_create_and_get(self, store):
        job = store.create_job(make_job())

        loaded = store.get_job(job.job_id)

        assert loaded.strategy_id == 'ma_crossover'
        assert loaded.date_range == SPAN
        assert loaded.parameter_space == job.parameter_space
        assert loaded.status == JobStatus.RUNNING
        assert loaded.created_at is not None
        assert loaded.finished_at is None

    def test_unknown_job(self, store):
        with pytest.raises(JobNotFound):
            store.get_job('missing')

    def test_duplicate_id_is_persistence_error(self, store):
        job = store.create_job(make_job())
        with pytest.raises(PersistenceError):
            store.create_job(make_job(job_id=job.job_id))

    def test_terminal_status_stamps_finish(self, store):
        job = store.create_job(make_job())

        updated = store.update_job_status(job.job_id, JobStatus.FAILED, "All 3 assignments failed")

        assert updated.status == JobStatus.FAILED
        assert updated.error_message == "All 3 assignments failed"
        assert updated.finished_at is not None

    def test_update_unknown_job(self, store):
        with pytest.raises(JobNotFound):
            store.update_job_status('missing', JobStatus.COMPLETED)

    def test_delete_job_removes_runs(self, store, report_factory):
        job = store.create_job(make_job())
        run = make_run(job.job_id, report_factory(date_range=SPAN), score=Decimal('1'))
        store.save_run(run)

        store.delete_job(job.job_id)

        with pytest.raises(JobNotFound):
            store.get_run(run.run_id)
        with pytest.raises(JobNotFound):
            store.delete_job(job.job_id)


class TestRuns:
    """Test backtest run records."""

    def test_report_round_trip_is_exact(self, store, report_factory):
        job = store.create_job(make_job())
        report = report_factory(
            profit_factor='1.234567890123456789012345',
            sharpe_ratio='-0.1',
            date_range=SPAN,
            trades=(Trade(
                symbol='BTCUSDT',
                entry_time=datetime(2024, 1, 2),
                exit_time=datetime(2024, 1, 3),
                entry_price=Decimal('42000.15'),
                exit_price=Decimal('42100.35'),
                quantity=Decimal('0.001'),
                pnl=Decimal('0.1002'),
                side='short',
            ),),
        )
        run = make_run(job.job_id, report, score=Decimal('0.3333333333'))
        store.save_run(run)

        loaded = store.get_run(run.run_id)

        assert loaded.report.metrics_dict() == report.metrics_dict()
        assert loaded.report.profit_factor == Decimal('1.234567890123456789012345')
        assert loaded.report.trades == report.trades
        assert loaded.report.equity_curve == report.equity_curve
        assert loaded.score == Decimal('0.3333333333')
        assert loaded.assignment == run.assignment
        assert isinstance(loaded.assignment['flag'], bool)
        assert loaded.assignment['band'] == Decimal('0.1')

    def test_holding_period_round_trip(self, store, report_factory):
        job = store.create_job(make_job())
        report = replace(report_factory(), average_holding_period=timedelta(hours=5, microseconds=7))
        run = make_run(job.job_id, report)
        store.save_run(run)

        assert store.get_run(run.run_id).report.average_holding_period == \
            timedelta(hours=5, microseconds=7)

    def test_series_loaded_on_request(self, store, report_factory):
        job = store.create_job(make_job())
        run = make_run(job.job_id, report_factory(date_range=SPAN))
        store.save_run(run)

        assert store.get_run(run.run_id, load_series=False).report.equity_curve == ()
        assert len(store.list_runs(job.job_id, load_series=True)[0].report.equity_curve) == 2

    def test_failed_run_has_no_report(self, store):
        job = store.create_job(make_job())
        run = make_run(job.job_id, status=RunStatus.FAILED, error_type='Timeout',
                       error_message="Backtest exceeded 10s deadline")
        store.save_run(run)

        loaded = store.get_run(run.run_id)

        assert loaded.report is None
        assert loaded.error_type == 'Timeout'
        assert loaded.kind == RunKind.SWEEP

    def test_run_for_unknown_job_rejected(self, store, report_factory):
        with pytest.raises(PersistenceError):
            store.save_run(make_run('no-such-job', report_factory()))

    def test_list_runs_by_status(self, store, report_factory):
        job = store.create_job(make_job())
        store.save_run(make_run(job.job_id, report_factory(), score=Decimal('1')))
        store.save_run(make_run(job.job_id, report_factory(), status=RunStatus.FILTERED))
        store.save_run(make_run(job.job_id, status=RunStatus.FAILED, error_type='DataUnavailable'))

        assert len(store.list_runs(job.job_id)) == 3
        assert len(store.list_runs(job.job_id, status=RunStatus.FILTERED)) == 1
        assert len(store.list_runs(job.job_id, status=RunStatus.FAILED)) == 1

    def test_ranked_reports_exclude_unscored(self, store, report_factory):
        job = store.create_job(make_job())
        low = make_run(job.job_id, report_factory(), score=Decimal('0.2'))
        high = make_run(job.job_id, report_factory(), score=Decimal('0.9'))
        filtered = make_run(job.job_id, report_factory(), status=RunStatus.FILTERED)
        for run in (low, high, filtered):
            store.save_run(run)

        ranked = store.get_ranked_reports(job.job_id)

        assert [r.run_id for r in ranked] == [high.run_id, low.run_id]

    def test_update_run_scores(self, store, report_factory):
        job = store.create_job(make_job())
        runs = [make_run(job.job_id, report_factory()) for _ in range(2)]
        for run in runs:
            store.save_run(run)

        store.update_run_scores({runs[0].run_id: Decimal('0.25'), runs[1].run_id: Decimal('1')})

        assert [r.score for r in store.get_ranked_reports(job.job_id)] == \
            [Decimal('1'), Decimal('0.25')]

    def test_delete_run(self, store, report_factory):
        job = store.create_job(make_job())
        run = make_run(job.job_id, report_factory(date_range=SPAN))
        store.save_run(run)

        store.delete_run(run.run_id)

        assert store.list_runs(job.job_id) == []
        with pytest.raises(JobNotFound):
            store.delete_run(run.run_id)


class TestWalkForwardRecords:
    """Test walk-forward job and window records."""

    def save_window(self, store, wfo_job, report_factory, index, oos_range):
        is_job = store.create_job(make_job(wfo_job_id=wfo_job.wfo_job_id, window_index=index))
        oos_run = make_run(None, report_factory(date_range=oos_range), kind=RunKind.VALIDATION,
                           date_range=oos_range, assignment=ParameterAssignment({'p': 2}))
        store.save_run(oos_run)
        store.save_wfo_run(WfoRun(
            wfo_run_id=new_id(),
            wfo_job_id=wfo_job.wfo_job_id,
            window_index=index,
            oos_run_id=oos_run.run_id,
            best_parameters=oos_run.assignment,
            oos_range=oos_range,
            in_sample_job_id=is_job.job_id,
            in_sample_score=Decimal('1.5'),
        ))
        return is_job, oos_run

    def test_create_and_update(self, store):
        wfo_job = store.create_wfo_job(make_wfo_job())

        updated = store.update_wfo_job_status(
            wfo_job.wfo_job_id, JobStatus.FAILED, failed_window=1, error_message="No viable"
        )

        loaded = store.get_wfo_job(wfo_job.wfo_job_id)
        assert updated.status == loaded.status == JobStatus.FAILED
        assert loaded.failed_window == 1
        assert loaded.in_sample_len == 8
        assert loaded.period_unit == 'months'

    def test_unknown_wfo_job(self, store):
        with pytest.raises(JobNotFound):
            store.get_wfo_job('missing')

    def test_windows_listed_in_time_order(self, store, report_factory):
        wfo_job = store.create_wfo_job(make_wfo_job())
        late = DateRange(datetime(2024, 7, 1), datetime(2024, 9, 1))
        early = DateRange(datetime(2023, 9, 1), datetime(2023, 11, 1))
        self.save_window(store, wfo_job, report_factory, 1, late)
        self.save_window(store, wfo_job, report_factory, 0, early)

        runs = store.list_wfo_runs(wfo_job.wfo_job_id)

        assert [r.window_index for r in runs] == [0, 1]
        assert runs[0].best_parameters == {'p': 2}
        assert runs[0].in_sample_score == Decimal('1.5')
        assert runs[0].oos_run.kind == RunKind.VALIDATION
        assert runs[0].oos_run.job_id is None
        assert len(runs[0].oos_run.report.equity_curve) == 2
        assert store.list_wfo_runs(wfo_job.wfo_job_id, load_runs=False)[0].oos_run is None

    def test_validation_runs_selected_without_job(self, store, report_factory):
        wfo_job = store.create_wfo_job(make_wfo_job())
        _, oos_run = self.save_window(store, wfo_job, report_factory, 0, SPAN)

        assert [r.run_id for r in store.list_runs(None)] == [oos_run.run_id]

    def test_delete_wfo_job_removes_everything(self, store, report_factory):
        wfo_job = store.create_wfo_job(make_wfo_job())
        is_job, oos_run = self.save_window(store, wfo_job, report_factory, 0, SPAN)
        store.save_run(make_run(is_job.job_id, report_factory(), score=Decimal('1')))

        store.delete_wfo_job(wfo_job.wfo_job_id)

        with pytest.raises(JobNotFound):
            store.get_wfo_job(wfo_job.wfo_job_id)
        with pytest.raises(JobNotFound):
            store.get_run(oos_run.run_id)
        with pytest.raises(JobNotFound):
            store.get_job(is_job.job_id)
        assert store.list_runs(is_job.job_id) == []

    def test_deleting_validation_run_removes_window(self, store, report_factory):
        wfo_job = store.create_wfo_job(make_wfo_job())
        _, oos_run = self.save_window(store, wfo_job, report_factory, 0, SPAN)

        store.delete_run(oos_run.run_id)

        assert store.list_wfo_runs(wfo_job.wfo_job_id) == []
