"""
Walk-forward optimization for out-of-sample validation.

Partitions a historical range into consecutive windows. Each window runs a
full parameter sweep on its in-sample part, picks the top-ranked assignment,
and validates it with exactly one backtest on the out-of-sample part that
immediately follows. Windows tile the series, so no out-of-sample data can
reach the in-sample optimization of the same or a later window.
"""
import enum
from dataclasses import dataclass
from functools import partial
from typing import List, Optional

from dateutil.relativedelta import relativedelta

from zenith_engine.core.exceptions import (
    InvalidWalkForwardConfig,
    NoViableParameters,
    PersistenceError,
)
from zenith_engine.core.jobs import (
    BacktestRun,
    JobStatus,
    OptimizationJob,
    RankedReport,
    RunKind,
    RunStatus,
    WfoJob,
    WfoRun,
    new_id,
    utc_now,
)
from zenith_engine.core.reports import DateRange
from zenith_engine.optimization.base import (
    BacktestOutcome,
    BacktestRunnerAdapter,
    BacktestTask,
    run_backtest_task,
)
from zenith_engine.optimization.grid_search import SweepScheduler
from zenith_engine.optimization.parallel import CancellationToken, ParallelExecutor
from zenith_engine.optimization.scoring import ScoringEngine
from zenith_engine.utils.config import PERIOD_UNITS, OptimizerSettings
from zenith_engine.utils.logging_config import setup_logger

logger = setup_logger('APP.OPTIMIZATION.WFO')


class WfoPhase(str, enum.Enum):
    """Controller state while a walk-forward job runs."""
    INITIALIZED = 'Initialized'
    OPTIMIZING = 'Optimizing'
    SELECTING_BEST = 'SelectingBest'
    VALIDATING_OOS = 'ValidatingOOS'
    COMPLETED = 'Completed'
    FAILED = 'Failed'


@dataclass(frozen=True)
class WfoWindow:
    """
    One walk-forward window.

    Attributes:
        index: Zero-based position
        in_sample: Optimization range [start, start+IS)
        out_of_sample: Validation range [start+IS, start+IS+OOS)
    """
    index: int
    in_sample: DateRange
    out_of_sample: DateRange


def period_offset(period_unit: str, count: int) -> relativedelta:
    """Calendar offset of count periods."""
    if period_unit not in PERIOD_UNITS:
        raise InvalidWalkForwardConfig(
            f"period_unit must be one of {PERIOD_UNITS}, got {period_unit!r}"
        )
    return relativedelta(**{period_unit: count})


def partition_windows(
    date_range: DateRange,
    in_sample_len: int,
    out_of_sample_len: int,
    period_unit: str = 'months',
) -> List[WfoWindow]:
    """
    Split a series into consecutive in-sample/out-of-sample windows.

    Window k spans [start + k*(IS+OOS), start + (k+1)*(IS+OOS)). Every
    boundary is computed from the series start, never by repeated addition,
    so month-end anchors do not drift. A trailing window shorter than IS+OOS
    is dropped.

    Args:
        date_range: Full series [series_start, series_end)
        in_sample_len: In-sample length in period_unit
        out_of_sample_len: Out-of-sample length in period_unit
        period_unit: 'days', 'weeks' or 'months'

    Returns:
        Windows in time order

    Raises:
        InvalidWalkForwardConfig: On non-positive lengths, an unknown unit,
            or a range too short for a single window

    Example:
        windows = partition_windows(
            DateRange(datetime(2023, 1, 1), datetime(2024, 9, 1)), 8, 2
        )
        # 2 windows: months 0-10 and 10-20
    """
    for name, value in (('in_sample_len', in_sample_len), ('out_of_sample_len', out_of_sample_len)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise InvalidWalkForwardConfig(f"{name} must be a positive integer, got {value!r}")

    period_offset(period_unit, 0)

    start = date_range.start
    window_len = in_sample_len + out_of_sample_len
    windows = []

    k = 0
    while True:
        window_start = start + period_offset(period_unit, k * window_len)
        is_end = start + period_offset(period_unit, k * window_len + in_sample_len)
        oos_end = start + period_offset(period_unit, (k + 1) * window_len)
        if oos_end > date_range.end:
            break
        windows.append(WfoWindow(
            index=k,
            in_sample=DateRange(window_start, is_end),
            out_of_sample=DateRange(is_end, oos_end),
        ))
        k += 1

    if not windows:
        raise InvalidWalkForwardConfig(
            f"Date range {date_range} is too short for one window of "
            f"{in_sample_len}+{out_of_sample_len} {period_unit}"
        )

    return windows


class _WindowFailed(Exception):
    """Internal signal: the current window cannot complete."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class WalkForwardController:
    """
    Drives one WfoJob through its windows.

    Windows run strictly one after another; the sweep inside a window is
    parallel. A failing window ends the job as Failed with the window index
    recorded, and earlier windows stay valid.

    Attributes:
        store: Persistence store
        runner: Backtest runner adapter
        settings: Optimizer settings
        phase: Current WfoPhase
        current_window: Index of the window being processed

    Example:
        controller = WalkForwardController(store, runner, settings)
        wfo_job = controller.run(wfo_job)
        print(wfo_job.status, wfo_job.failed_window)
    """

    def __init__(
        self,
        store,
        runner: BacktestRunnerAdapter,
        settings: Optional[OptimizerSettings] = None,
        scoring: Optional[ScoringEngine] = None,
    ):
        self.store = store
        self.runner = runner
        self.settings = settings or OptimizerSettings()
        self.scheduler = SweepScheduler(store, runner, self.settings, scoring)
        self.phase = WfoPhase.INITIALIZED
        self.current_window: Optional[int] = None

    def _enter(self, phase: WfoPhase) -> None:
        self.phase = phase
        window = f" (window {self.current_window})" if self.current_window is not None else ""
        logger.info(f"WFO phase -> {phase.value}{window}")

    def run(
        self,
        wfo_job: WfoJob,
        cancel_token: Optional[CancellationToken] = None,
    ) -> WfoJob:
        """
        Run every window of a persisted WfoJob.

        Returns:
            WfoJob with its terminal status

        Raises:
            InvalidWalkForwardConfig: If the job's windows cannot be partitioned
            PersistenceError: If the store fails; the job is marked Failed when
                the store still accepts that write
        """
        windows = partition_windows(
            wfo_job.date_range,
            wfo_job.in_sample_len,
            wfo_job.out_of_sample_len,
            wfo_job.period_unit,
        )

        logger.info(
            f"Walk-forward {wfo_job.wfo_job_id}: {wfo_job.strategy_id} {wfo_job.symbol} "
            f"{wfo_job.date_range}, IS={wfo_job.in_sample_len} OOS={wfo_job.out_of_sample_len} "
            f"{wfo_job.period_unit}, {len(windows)} windows"
        )

        try:
            for window in windows:
                self.current_window = window.index
                logger.info(
                    f"Window {window.index + 1}/{len(windows)}: "
                    f"IS {window.in_sample}, OOS {window.out_of_sample}"
                )
                try:
                    self._run_window(wfo_job, window, cancel_token)
                except _WindowFailed as e:
                    self._enter(WfoPhase.FAILED)
                    logger.error(f"Walk-forward {wfo_job.wfo_job_id} failed at window {window.index}: {e.message}")
                    return self.store.update_wfo_job_status(
                        wfo_job.wfo_job_id,
                        JobStatus.FAILED,
                        failed_window=window.index,
                        error_message=e.message,
                    )

            self.current_window = None
            self._enter(WfoPhase.COMPLETED)
            return self.store.update_wfo_job_status(wfo_job.wfo_job_id, JobStatus.COMPLETED)

        except PersistenceError as e:
            self.phase = WfoPhase.FAILED
            logger.exception(f"Walk-forward {wfo_job.wfo_job_id} aborted by persistence failure: {e}")
            try:
                self.store.update_wfo_job_status(
                    wfo_job.wfo_job_id,
                    JobStatus.FAILED,
                    failed_window=self.current_window,
                    error_message=f"Persistence failure: {e}",
                )
            except PersistenceError as inner:
                logger.error(f"Could not mark walk-forward {wfo_job.wfo_job_id} as failed: {inner}")
            raise

    def _run_window(
        self,
        wfo_job: WfoJob,
        window: WfoWindow,
        cancel_token: Optional[CancellationToken],
    ) -> WfoRun:
        if cancel_token is not None and cancel_token.is_cancelled:
            raise _WindowFailed(cancel_token.reason or "Cancelled")

        self._enter(WfoPhase.OPTIMIZING)
        is_job = self.store.create_job(OptimizationJob(
            job_id=new_id(),
            strategy_id=wfo_job.strategy_id,
            symbol=wfo_job.symbol,
            interval=wfo_job.interval,
            date_range=window.in_sample,
            parameter_space=wfo_job.parameter_space,
            analysis_config=wfo_job.analysis_config,
            status=JobStatus.RUNNING,
            created_at=utc_now(),
            wfo_job_id=wfo_job.wfo_job_id,
            window_index=window.index,
        ))
        outcome = self.scheduler.run_sweep(is_job, cancel_token=cancel_token)
        if outcome.cancelled:
            raise _WindowFailed(outcome.job.error_message or "Cancelled")

        self._enter(WfoPhase.SELECTING_BEST)
        try:
            best = self._select_best(outcome.ranked, window.index)
        except NoViableParameters as e:
            raise _WindowFailed(str(e)) from e

        logger.info(
            f"Window {window.index}: best {best.assignment} score={best.score} "
            f"(run {best.run_id})"
        )

        self._enter(WfoPhase.VALIDATING_OOS)
        oos_run = self._validate(wfo_job, window, best)

        wfo_run = WfoRun(
            wfo_run_id=new_id(),
            wfo_job_id=wfo_job.wfo_job_id,
            window_index=window.index,
            oos_run_id=oos_run.run_id,
            best_parameters=best.assignment,
            oos_range=window.out_of_sample,
            in_sample_job_id=is_job.job_id,
            in_sample_score=best.score,
        )
        self.store.save_wfo_run(wfo_run)
        wfo_run.oos_run = oos_run

        logger.info(
            f"Window {window.index}: OOS return {oos_run.report.total_return_pct:.2f}%, "
            f"max DD {oos_run.report.max_drawdown_pct:.2f}%"
        )
        return wfo_run

    @staticmethod
    def _select_best(ranked: List[RankedReport], window_index: int) -> RankedReport:
        """
        Top of the ranking.

        Raises:
            NoViableParameters: If nothing in the window was rankable
        """
        if not ranked:
            raise NoViableParameters(
                f"No viable parameters in window {window_index}: "
                f"every candidate failed or was filtered",
                window_index=window_index,
            )
        return ranked[0]

    def _validate(
        self, wfo_job: WfoJob, window: WfoWindow, best: RankedReport
    ) -> BacktestRun:
        """
        Run the single out-of-sample backtest under the same deadline as sweeps.

        The run is stored with kind 'validation' and no owning job, so it never
        enters a sweep ranking. A failure is stored too, then fails the window.
        """
        task = BacktestTask(
            strategy_id=wfo_job.strategy_id,
            symbol=wfo_job.symbol,
            interval=wfo_job.interval,
            date_range=window.out_of_sample,
            assignment=best.assignment,
        )
        holder = {}

        def on_result(_, outcome: BacktestOutcome) -> None:
            holder['outcome'] = outcome

        def on_error(_, error: Exception) -> None:
            holder['outcome'] = BacktestOutcome(
                assignment=task.assignment,
                error_type=getattr(error, 'error_type', 'SimulationError'),
                error_message=str(error),
            )

        ParallelExecutor(
            max_workers=1,
            executor_type=self.settings.executor_type,
            timeout=self.settings.backtest_timeout_seconds,
            show_progress=False,
        ).execute(partial(run_backtest_task, self.runner), [task], on_result, on_error)

        outcome = holder['outcome']
        run = BacktestRun(
            run_id=new_id(),
            job_id=None,
            kind=RunKind.VALIDATION,
            assignment=task.assignment,
            date_range=task.date_range,
            status=RunStatus.COMPLETED if outcome.succeeded else RunStatus.FAILED,
            report=outcome.report,
            error_type=outcome.error_type,
            error_message=outcome.error_message,
            created_at=utc_now(),
        )
        self.store.save_run(run)

        if not outcome.succeeded:
            raise _WindowFailed(
                f"Out-of-sample validation failed ({outcome.error_type}): {outcome.error_message}"
            )
        return run
