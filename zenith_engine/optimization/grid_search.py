"""
Sweep scheduler: exhaustive grid search over a parameter space.

Enumerates every parameter assignment of a job, runs the backtests on a
bounded worker pool, scores each report and persists every outcome as soon
as it arrives. A failing assignment is recorded and skipped; the job only
fails if every assignment failed or the sweep was cancelled.
"""
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Dict, Iterator, List, Optional

from zenith_engine.core.exceptions import ExecutionError, PersistenceError
from zenith_engine.core.jobs import (
    BacktestRun,
    JobStatus,
    OptimizationJob,
    RankedReport,
    RunStatus,
    new_id,
    utc_now,
)
from zenith_engine.optimization.base import (
    BacktestOutcome,
    BacktestRunnerAdapter,
    BacktestTask,
    run_backtest_task,
)
from zenith_engine.optimization.parallel import CancellationToken, ParallelExecutor
from zenith_engine.optimization.parameters import enumerate_parameter_space
from zenith_engine.optimization.scoring import (
    AnalysisConfig,
    Filtered,
    ScoringEngine,
    rank_reports,
)
from zenith_engine.utils.config import OptimizerSettings
from zenith_engine.utils.logging_config import setup_logger

logger = setup_logger('APP.OPTIMIZATION.SWEEP')


class SweepProgress:
    """
    Live counters for one sweep, safe to read from other threads.

    Attributes:
        total: Number of assignments in the space
        dispatched: Assignments handed to the worker pool
        succeeded: Runs that scored and entered the ranking
        filtered: Runs that executed but failed a hard filter
        failed: Runs that raised an execution error or timed out
    """

    def __init__(self, total: int = 0):
        self._lock = threading.Lock()
        self.total = total
        self.dispatched = 0
        self.succeeded = 0
        self.filtered = 0
        self.failed = 0

    def start(self, total: int) -> None:
        with self._lock:
            self.total = total

    def mark_dispatched(self) -> None:
        with self._lock:
            self.dispatched += 1

    def mark_succeeded(self) -> None:
        with self._lock:
            self.succeeded += 1

    def mark_filtered(self) -> None:
        with self._lock:
            self.filtered += 1

    def mark_failed(self) -> None:
        with self._lock:
            self.failed += 1

    @property
    def finished(self) -> int:
        with self._lock:
            return self.succeeded + self.filtered + self.failed

    def snapshot(self) -> Dict[str, int]:
        """Consistent copy of all counters."""
        with self._lock:
            return {
                'total': self.total,
                'dispatched': self.dispatched,
                'succeeded': self.succeeded,
                'filtered': self.filtered,
                'failed': self.failed,
            }


@dataclass
class SweepOutcome:
    """
    Result of one sweep.

    Attributes:
        job: The job with its terminal status
        ranked: Ranked reports in rank order
        filtered_count: Runs excluded by hard filters
        failed_count: Runs that failed execution
        cancelled: Whether the sweep stopped early on cancellation
    """
    job: OptimizationJob
    ranked: List[RankedReport] = field(default_factory=list)
    filtered_count: int = 0
    failed_count: int = 0
    cancelled: bool = False

    @property
    def best(self) -> Optional[RankedReport]:
        return self.ranked[0] if self.ranked else None


class SweepScheduler:
    """
    Runs a full parameter sweep for an OptimizationJob.

    Attributes:
        store: Persistence store (see zenith_engine.data.repository)
        runner: Backtest runner adapter
        settings: Optimizer settings (pool size, timeout, cap)
        scoring: Scoring engine

    Example:
        scheduler = SweepScheduler(store, runner, settings)
        outcome = scheduler.run_sweep(job)
        print(outcome.job.status, len(outcome.ranked))
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
        self.scoring = scoring or ScoringEngine()

    def run_sweep(
        self,
        job: OptimizationJob,
        cancel_token: Optional[CancellationToken] = None,
        progress: Optional[SweepProgress] = None,
    ) -> SweepOutcome:
        """
        Run every assignment of the job's parameter space.

        The job's terminal status is written once, after the last outstanding
        backtest has produced an outcome.

        Args:
            job: Persisted job in Running state
            cancel_token: Cooperative cancellation
            progress: Counters to update while running

        Returns:
            SweepOutcome with ranked reports in rank order

        Raises:
            InvalidParameterSpace: If the job's parameter space is invalid
            PersistenceError: If the store fails; the job is marked Failed
                when the store still accepts that write
        """
        config = AnalysisConfig.model_validate(job.analysis_config)
        enumerator = enumerate_parameter_space(
            job.parameter_space, max_combinations=self.settings.max_combinations
        )
        progress = progress or SweepProgress()
        progress.start(len(enumerator))

        logger.info(
            f"Sweep {job.job_id} started: {job.strategy_id} {job.symbol} {job.interval} "
            f"{job.date_range}, {len(enumerator)} combinations, "
            f"normalization={config.normalization}"
        )

        ranked: List[RankedReport] = []
        pending: List[BacktestRun] = []
        counts = {'filtered': 0, 'failed': 0}

        def tasks() -> Iterator[BacktestTask]:
            for assignment in enumerator:
                progress.mark_dispatched()
                yield BacktestTask(
                    strategy_id=job.strategy_id,
                    symbol=job.symbol,
                    interval=job.interval,
                    date_range=job.date_range,
                    assignment=assignment,
                )

        def record_failure(task: BacktestTask, error_type: str, message: str) -> None:
            logger.error(f"Assignment {task.assignment} failed ({error_type}): {message}")
            self.store.save_run(BacktestRun(
                run_id=new_id(),
                job_id=job.job_id,
                assignment=task.assignment,
                date_range=task.date_range,
                status=RunStatus.FAILED,
                error_type=error_type,
                error_message=message,
                created_at=utc_now(),
            ))
            counts['failed'] += 1
            progress.mark_failed()

        def on_result(task: BacktestTask, outcome: BacktestOutcome) -> None:
            if not outcome.succeeded:
                record_failure(task, outcome.error_type, outcome.error_message)
                return

            run = BacktestRun(
                run_id=new_id(),
                job_id=job.job_id,
                assignment=task.assignment,
                date_range=task.date_range,
                status=RunStatus.COMPLETED,
                report=outcome.report,
                created_at=utc_now(),
            )

            if config.is_batch_relative:
                # Scores need the whole batch; filter now, score after the sweep
                if self.scoring.passes_filters(run.report, config):
                    pending.append(run)
                    progress.mark_succeeded()
                else:
                    run.status = RunStatus.FILTERED
                    counts['filtered'] += 1
                    progress.mark_filtered()
                self.store.save_run(run)
                return

            evaluation = self.scoring.evaluate(run, config)
            if isinstance(evaluation, Filtered):
                run.status = RunStatus.FILTERED
                counts['filtered'] += 1
                progress.mark_filtered()
            else:
                run.score = evaluation.score
                ranked.append(evaluation)
                progress.mark_succeeded()
            self.store.save_run(run)

        def on_error(task: BacktestTask, error: Exception) -> None:
            if isinstance(error, ExecutionError):
                record_failure(task, error.error_type, str(error))
            else:
                # Worker-level failure (e.g. broken process pool)
                record_failure(task, 'SimulationError', f"{type(error).__name__}: {error}")

        executor = ParallelExecutor(
            max_workers=self.settings.max_workers,
            executor_type=self.settings.executor_type,
            timeout=self.settings.backtest_timeout_seconds,
            show_progress=self.settings.show_progress,
        )

        try:
            summary = executor.execute(
                partial(run_backtest_task, self.runner),
                tasks(),
                on_result=on_result,
                on_error=on_error,
                cancel_token=cancel_token,
                total=len(enumerator),
                task_description=f"Sweep {job.symbol}",
            )

            if pending:
                ranked, _ = self.scoring.score_batch(pending, config)
                self.store.update_run_scores({r.run_id: r.score for r in ranked})
                for r in ranked:
                    r.run.score = r.score

            status, message = self._terminal_status(
                len(enumerator), summary.dispatched, len(ranked) + counts['filtered'],
                counts['failed'], summary.cancelled,
                cancel_token.reason if cancel_token else None,
            )
            job = self.store.update_job_status(job.job_id, status, error_message=message)

        except PersistenceError as e:
            logger.exception(f"Sweep {job.job_id} aborted by persistence failure: {e}")
            self._try_mark_failed(job.job_id, f"Persistence failure: {e}")
            raise

        logger.info(
            f"Sweep {job.job_id} {status.value}: {len(ranked)} ranked, "
            f"{counts['filtered']} filtered, {counts['failed']} failed"
        )

        return SweepOutcome(
            job=job,
            ranked=rank_reports(ranked),
            filtered_count=counts['filtered'],
            failed_count=counts['failed'],
            cancelled=summary.cancelled,
        )

    @staticmethod
    def _terminal_status(
        total: int,
        dispatched: int,
        executed: int,
        failed: int,
        cancelled: bool,
        reason: Optional[str],
    ):
        """
        Decide the job's terminal status.

        Returns:
            (JobStatus, error_message or None)
        """
        if cancelled:
            return JobStatus.FAILED, (
                f"{reason or 'Cancelled'}: {dispatched} of {total} assignments dispatched, "
                f"{executed} executed, {failed} failed"
            )
        if executed == 0:
            return JobStatus.FAILED, f"All {total} assignments failed"
        if failed:
            return JobStatus.COMPLETED, f"{failed} of {total} assignments failed"
        return JobStatus.COMPLETED, None

    def _try_mark_failed(self, job_id: str, message: str) -> None:
        try:
            self.store.update_job_status(job_id, JobStatus.FAILED, error_message=message)
        except PersistenceError as e:
            logger.error(f"Could not mark job {job_id} as failed: {e}")
