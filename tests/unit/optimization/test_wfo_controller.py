"""
Unit tests for walk-forward window partitioning and the WFO controller.
"""
from datetime import datetime

import pytest

from zenith_engine.core.exceptions import InvalidWalkForwardConfig, SimulationError
from zenith_engine.core.jobs import JobStatus, RunKind, RunStatus, WfoJob, new_id, utc_now
from zenith_engine.core.reports import DateRange
from zenith_engine.optimization.parallel import CancellationToken
from zenith_engine.optimization.walk_forward import (
    WalkForwardController,
    WfoPhase,
    partition_windows,
)

TWENTY_MONTHS = DateRange(datetime(2023, 1, 1), datetime(2024, 9, 1))


def create_wfo_job(store, date_range=TWENTY_MONTHS, in_sample_len=8, out_of_sample_len=2,
                   period_unit='months', parameter_space=None):
    return store.create_wfo_job(WfoJob(
        wfo_job_id=new_id(),
        strategy_id='ma_crossover',
        symbol='BTCUSDT',
        interval='1d',
        date_range=date_range,
        in_sample_len=in_sample_len,
        out_of_sample_len=out_of_sample_len,
        period_unit=period_unit,
        parameter_space=parameter_space or {'p': [1, 2, 3]},
        analysis_config={},
        status=JobStatus.RUNNING,
        created_at=utc_now(),
    ))


class TestPartitionWindows:
    """Test window layout."""

    def test_twenty_months_gives_two_windows(self):
        windows = partition_windows(TWENTY_MONTHS, 8, 2)

        assert len(windows) == 2
        assert windows[0].in_sample == DateRange(datetime(2023, 1, 1), datetime(2023, 9, 1))
        assert windows[0].out_of_sample == DateRange(datetime(2023, 9, 1), datetime(2023, 11, 1))
        assert windows[1].in_sample == DateRange(datetime(2023, 11, 1), datetime(2024, 7, 1))
        assert windows[1].out_of_sample == DateRange(datetime(2024, 7, 1), datetime(2024, 9, 1))

    @pytest.mark.parametrize('months,expected', [(10, 1), (19, 1), (25, 2), (30, 3)])
    def test_trailing_partial_window_dropped(self, months, expected):
        end = datetime(2020 + (months // 12), 1 + months % 12, 1)
        windows = partition_windows(DateRange(datetime(2020, 1, 1), end), 8, 2)
        assert len(windows) == expected

    def test_windows_tile_the_series_without_gaps(self):
        windows = partition_windows(DateRange(datetime(2020, 1, 1), datetime(2023, 1, 1)), 4, 2)

        for window in windows:
            assert window.in_sample.end == window.out_of_sample.start
        for previous, current in zip(windows, windows[1:]):
            assert previous.out_of_sample.end == current.in_sample.start
        assert [w.index for w in windows] == list(range(len(windows)))

    def test_day_unit(self):
        windows = partition_windows(
            DateRange(datetime(2024, 1, 1), datetime(2024, 2, 1)), 10, 5, period_unit='days'
        )

        assert len(windows) == 2
        assert windows[1].out_of_sample == DateRange(datetime(2024, 1, 26), datetime(2024, 1, 31))

    def test_week_unit(self):
        windows = partition_windows(
            DateRange(datetime(2024, 1, 1), datetime(2024, 3, 1)), 3, 1, period_unit='weeks'
        )
        assert len(windows) == 2

    def test_month_end_anchor_does_not_drift(self):
        windows = partition_windows(
            DateRange(datetime(2024, 1, 31), datetime(2024, 6, 1)), 1, 1
        )

        assert windows[0].out_of_sample.start == datetime(2024, 2, 29)
        assert windows[1].in_sample.start == datetime(2024, 3, 31)
        assert windows[1].out_of_sample.start == datetime(2024, 4, 30)

    @pytest.mark.parametrize('is_len,oos_len,unit', [
        (0, 2, 'months'),
        (8, -1, 'months'),
        (8, 2, 'years'),
        (8.0, 2, 'months'),
        (True, 2, 'months'),
    ])
    def test_invalid_configuration(self, is_len, oos_len, unit):
        with pytest.raises(InvalidWalkForwardConfig):
            partition_windows(TWENTY_MONTHS, is_len, oos_len, unit)

    def test_range_too_short(self):
        with pytest.raises(InvalidWalkForwardConfig, match="too short"):
            partition_windows(DateRange(datetime(2024, 1, 1), datetime(2024, 9, 1)), 8, 2)


class TestWalkForwardController:
    """Test window execution against the in-memory store."""

    def test_every_window_validated(self, store, runner, settings):
        wfo_job = create_wfo_job(store)
        controller = WalkForwardController(store, runner, settings)

        result = controller.run(wfo_job)

        wfo_runs = store.list_wfo_runs(wfo_job.wfo_job_id)
        assert result.status == JobStatus.COMPLETED
        assert result.failed_window is None
        assert controller.phase == WfoPhase.COMPLETED
        assert [r.window_index for r in wfo_runs] == [0, 1]
        assert all(r.best_parameters == {'p': 3} for r in wfo_runs)
        assert [r.oos_range.start for r in wfo_runs] == [
            datetime(2023, 9, 1), datetime(2024, 7, 1)
        ]

    def test_in_sample_jobs_linked_to_windows(self, store, runner, settings):
        wfo_job = create_wfo_job(store)

        WalkForwardController(store, runner, settings).run(wfo_job)

        window_jobs = store.list_window_jobs(wfo_job.wfo_job_id)
        wfo_runs = store.list_wfo_runs(wfo_job.wfo_job_id)
        assert [j.window_index for j in window_jobs] == [0, 1]
        assert all(j.status == JobStatus.COMPLETED for j in window_jobs)
        assert [r.in_sample_job_id for r in wfo_runs] == [j.job_id for j in window_jobs]
        assert wfo_runs[0].in_sample_score == \
            store.get_ranked_reports(window_jobs[0].job_id)[0].score

    def test_out_of_sample_never_seen_in_sample(self, store, runner, settings):
        wfo_job = create_wfo_job(store)
        windows = partition_windows(TWENTY_MONTHS, 8, 2)

        WalkForwardController(store, runner, settings).run(wfo_job)

        ranges = [date_range for _, date_range in runner.calls]
        for window in windows:
            assert ranges.count(window.in_sample) == 3
            assert ranges.count(window.out_of_sample) == 1
        assert len(ranges) == 8
        in_sample = [w.in_sample for w in windows]
        for window in windows:
            oos = window.out_of_sample
            for is_range in in_sample[window.index:]:
                assert oos.end <= is_range.start or is_range.end <= oos.start

    def test_validation_run_has_no_job(self, store, runner, settings):
        wfo_job = create_wfo_job(store)

        WalkForwardController(store, runner, settings).run(wfo_job)

        oos_run = store.list_wfo_runs(wfo_job.wfo_job_id)[0].oos_run
        assert oos_run.job_id is None
        assert oos_run.kind == RunKind.VALIDATION
        assert oos_run.status == RunStatus.COMPLETED
        assert oos_run.report.equity_curve
        for job in store.list_window_jobs(wfo_job.wfo_job_id):
            assert oos_run.run_id not in {r.run_id for r in store.list_runs(job.job_id)}

    def test_no_viable_parameters_fails_window_keeps_earlier(self, store, runner_factory,
                                                            failing_script, settings):
        fallback = failing_script()

        def script(assignment, date_range):
            if date_range.start == datetime(2023, 11, 1):
                raise SimulationError("bad data in second window")
            return fallback(assignment, date_range)

        wfo_job = create_wfo_job(store)

        result = WalkForwardController(store, runner_factory(script), settings).run(wfo_job)

        assert result.status == JobStatus.FAILED
        assert result.failed_window == 1
        assert "No viable parameters in window 1" in result.error_message
        assert [r.window_index for r in store.list_wfo_runs(wfo_job.wfo_job_id)] == [0]
        assert store.get_wfo_job(wfo_job.wfo_job_id).failed_window == 1

    def test_filtered_window_has_no_viable_parameters(self, store, runner, settings):
        wfo_job = store.create_wfo_job(WfoJob(
            wfo_job_id=new_id(),
            strategy_id='ma_crossover',
            symbol='BTCUSDT',
            interval='1d',
            date_range=TWENTY_MONTHS,
            in_sample_len=8,
            out_of_sample_len=2,
            period_unit='months',
            parameter_space={'p': [1, 2]},
            analysis_config={'filters': {'min_total_trades': 100}},
        ))

        result = WalkForwardController(store, runner, settings).run(wfo_job)

        assert result.status == JobStatus.FAILED
        assert result.failed_window == 0
        assert store.list_wfo_runs(wfo_job.wfo_job_id) == []

    def test_out_of_sample_failure_stored_and_fails_window(self, store, runner_factory,
                                                          failing_script, settings):
        fallback = failing_script()

        def script(assignment, date_range):
            if date_range.start == datetime(2023, 9, 1):
                raise SimulationError("engine crashed")
            return fallback(assignment, date_range)

        wfo_job = create_wfo_job(store)

        result = WalkForwardController(store, runner_factory(script), settings).run(wfo_job)

        validations = store.list_runs(None)
        assert result.status == JobStatus.FAILED
        assert result.failed_window == 0
        assert "Out-of-sample validation failed" in result.error_message
        assert [(r.kind, r.status, r.error_type) for r in validations] == [
            (RunKind.VALIDATION, RunStatus.FAILED, 'SimulationError')
        ]
        assert store.list_wfo_runs(wfo_job.wfo_job_id) == []

    def test_cancelled_before_first_window(self, store, runner, settings):
        token = CancellationToken()
        token.cancel("Cancelled by user")
        wfo_job = create_wfo_job(store)

        result = WalkForwardController(store, runner, settings).run(wfo_job, cancel_token=token)

        assert result.status == JobStatus.FAILED
        assert result.failed_window == 0
        assert result.error_message == "Cancelled by user"
        assert runner.calls == []

    def test_invalid_windows_raise(self, store, runner, settings):
        wfo_job = create_wfo_job(store, in_sample_len=30)

        with pytest.raises(InvalidWalkForwardConfig):
            WalkForwardController(store, runner, settings).run(wfo_job)
