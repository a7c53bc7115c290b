"""
Optimization service.

The surface a presentation layer talks to: submit sweeps and walk-forward
jobs, read ranked results and composite reports, follow progress and cancel.

Configuration errors (bad parameter space, unusable walk-forward windows)
are raised before any job is created. Job-level failures end up as a
terminal status on the job. Persistence errors reach the caller.

Example:
    from zenith_engine.application.optimization_service import OptimizationService
    from zenith_engine.data.repository import OptimizationStore

    store = OptimizationStore.from_url(get_database_url())
    store.create_schema()
    service = OptimizationService(store, runner=EngineAdapter())

    job_id = service.submit_optimization(
        strategy_id='ma_crossover',
        symbol='BTCUSDT',
        interval='1h',
        date_range=DateRange(datetime(2024, 1, 1), datetime(2024, 7, 1)),
        parameter_space={'fast': {'start': 5, 'end': 20, 'step': 5},
                         'slow': [50, 100, 200]},
        analysis_config={'filters': {'min_total_trades': 10}},
    )
    for ranked in service.get_job_results(job_id)[:5]:
        print(ranked.score, ranked.assignment)
"""
import threading
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import pandas as pd

from zenith_engine.core.exceptions import DataUnavailable
from zenith_engine.core.jobs import (
    JobStatus,
    OptimizationJob,
    RankedReport,
    WfoJob,
    WfoRun,
    new_id,
    utc_now,
)
from zenith_engine.core.reports import DateRange
from zenith_engine.data.handlers.base import MarketDataProvider, require_candles
from zenith_engine.data.repository import OptimizationStore
from zenith_engine.optimization.base import BacktestRunnerAdapter
from zenith_engine.optimization.grid_search import SweepProgress, SweepScheduler
from zenith_engine.optimization.parallel import CancellationToken
from zenith_engine.optimization.parameters import (
    enumerate_parameter_space,
    parameter_space_to_json,
)
from zenith_engine.optimization.results import (
    CompositeWfoReport,
    build_composite_report,
    ranked_reports_frame,
)
from zenith_engine.optimization.scoring import AnalysisConfig, ScoringEngine
from zenith_engine.optimization.walk_forward import WalkForwardController, partition_windows
from zenith_engine.utils.config import Config, OptimizerSettings, get_config
from zenith_engine.utils.logging_config import setup_logger

logger = setup_logger('APPLICATION.OPTIMIZATION')

# Final progress snapshots kept for finished jobs, oldest evicted first
FINISHED_PROGRESS_LIMIT = 1000


@dataclass
class WfoResults:
    """
    Walk-forward job with its windows and the stitched composite report.

    Attributes:
        job: Walk-forward job (status, failed_window, error_message)
        runs: Completed windows ordered by out-of-sample start
        composite: Report derived from runs
    """
    job: WfoJob
    runs: List[WfoRun]
    composite: CompositeWfoReport


class OptimizationService:
    """
    Entry point for sweeps and walk-forward validation.

    Attributes:
        store: Persistence store
        runner: Backtest runner adapter
        settings: Optimizer settings
        background: Run jobs on a single background worker instead of inline
        market_data: Optional provider used to check data before running
        analysis_defaults: Analysis config used when a submission names none
    """

    def __init__(
        self,
        store: OptimizationStore,
        runner: BacktestRunnerAdapter,
        settings: Optional[OptimizerSettings] = None,
        background: bool = False,
        market_data: Optional[MarketDataProvider] = None,
        scoring: Optional[ScoringEngine] = None,
        analysis_defaults: Optional[Mapping[str, Any]] = None,
    ):
        self.store = store
        self.runner = runner
        self.settings = settings or OptimizerSettings()
        self.background = background
        self.market_data = market_data
        self.scoring = scoring or ScoringEngine()
        self.analysis_defaults = dict(analysis_defaults or {})

        self._lock = threading.Lock()
        self._tokens: Dict[str, CancellationToken] = {}
        self._progress: Dict[str, SweepProgress] = {}
        self._controllers: Dict[str, WalkForwardController] = {}
        self._futures: Dict[str, Future] = {}
        self._finished_progress: OrderedDict[str, Dict[str, Any]] = OrderedDict()
        self._job_executor = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix='zenith-job')
            if background else None
        )

        logger.info(
            f"OptimizationService ready: workers={self.settings.max_workers} "
            f"({self.settings.executor_type}), timeout={self.settings.backtest_timeout_seconds}, "
            f"background={background}"
        )

    @classmethod
    def from_config(
        cls,
        runner: BacktestRunnerAdapter,
        config: Optional[Config] = None,
        **kwargs,
    ) -> 'OptimizationService':
        """
        Build a service from .env/YAML configuration.

        Opens the store at get_database_url(), creates the schema if missing and
        reads optimizer settings and analysis defaults from config.

        Args:
            runner: Backtest runner adapter
            config: Config instance (defaults to the global one)
            **kwargs: Passed through to the constructor (background, market_data, ...)
        """
        config = config or get_config()
        store = OptimizationStore.from_url(config.database_url)
        store.create_schema()
        return cls(
            store,
            runner,
            settings=config.optimizer_settings,
            analysis_defaults=config.analysis_defaults,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def submit_optimization(
        self,
        strategy_id: str,
        symbol: str,
        interval: str,
        date_range: DateRange,
        parameter_space: Mapping[str, Any],
        analysis_config: Union[AnalysisConfig, Mapping[str, Any], None] = None,
    ) -> str:
        """
        Create and run a parameter sweep.

        Args:
            strategy_id: Strategy identifier for the runner adapter
            symbol: Target symbol
            interval: Candle interval
            date_range: Backtest range
            parameter_space: Mapping of parameter name to range or discrete values
            analysis_config: AnalysisConfig or a mapping accepted by it

        Returns:
            job_id

        Raises:
            InvalidParameterSpace: Before any job is created
            pydantic.ValidationError: If analysis_config is malformed
            PersistenceError: If the store fails
        """
        config = self._analysis_config(analysis_config)
        space = parameter_space_to_json(parameter_space)
        enumerate_parameter_space(space, max_combinations=self.settings.max_combinations)

        job = self.store.create_job(OptimizationJob(
            job_id=new_id(),
            strategy_id=strategy_id,
            symbol=symbol,
            interval=interval,
            date_range=date_range,
            parameter_space=space,
            analysis_config=config.to_dict(),
            status=JobStatus.RUNNING,
            created_at=utc_now(),
        ))
        logger.info(f"Submitted optimization job {job.job_id}: {strategy_id} {symbol} {interval}")

        try:
            self._check_market_data(symbol, interval, date_range)
        except DataUnavailable as e:
            logger.error(f"Job {job.job_id} failed pre-flight: {e}")
            self.store.update_job_status(job.job_id, JobStatus.FAILED, error_message=str(e))
            return job.job_id

        token = CancellationToken()
        progress = SweepProgress()
        with self._lock:
            self._tokens[job.job_id] = token
            self._progress[job.job_id] = progress

        scheduler = SweepScheduler(self.store, self.runner, self.settings, self.scoring)
        self._dispatch(
            job.job_id,
            lambda: scheduler.run_sweep(job, cancel_token=token, progress=progress),
        )
        return job.job_id

    def get_job(self, job_id: str) -> OptimizationJob:
        """
        Raises:
            JobNotFound: Unknown job id
        """
        return self.store.get_job(job_id)

    def get_job_results(self, job_id: str) -> List[RankedReport]:
        """
        Ranked reports of a job: score descending, then lower drawdown, then
        earlier creation. Filtered and failed runs are excluded.

        Raises:
            JobNotFound: Unknown job id
        """
        self.store.get_job(job_id)
        return self.store.get_ranked_reports(job_id)

    def ranked_results_frame(self, job_id: str) -> pd.DataFrame:
        """Ranking of a job as a DataFrame."""
        return ranked_reports_frame(self.get_job_results(job_id))

    # ------------------------------------------------------------------
    # Walk-forward
    # ------------------------------------------------------------------

    def submit_wfo(
        self,
        strategy_id: str,
        symbol: str,
        date_range: DateRange,
        in_sample_len: int,
        out_of_sample_len: int,
        parameter_space: Mapping[str, Any],
        analysis_config: Union[AnalysisConfig, Mapping[str, Any], None] = None,
        interval: Optional[str] = None,
        period_unit: Optional[str] = None,
    ) -> str:
        """
        Create and run a walk-forward optimization.

        Args:
            strategy_id: Strategy identifier
            symbol: Target symbol
            date_range: Full series to partition
            in_sample_len: In-sample length in period_unit
            out_of_sample_len: Out-of-sample length in period_unit
            parameter_space: Space swept in every in-sample window
            analysis_config: AnalysisConfig or a mapping accepted by it
            interval: Candle interval (defaults to settings.default_interval)
            period_unit: 'days', 'weeks' or 'months' (defaults to settings.period_unit)

        Returns:
            wfo_job_id

        Raises:
            InvalidWalkForwardConfig: Before any job is created
            InvalidParameterSpace: Before any job is created
            PersistenceError: If the store fails
        """
        interval = interval or self.settings.default_interval
        period_unit = period_unit or self.settings.period_unit
        config = self._analysis_config(analysis_config)
        space = parameter_space_to_json(parameter_space)
        enumerate_parameter_space(space, max_combinations=self.settings.max_combinations)
        windows = partition_windows(date_range, in_sample_len, out_of_sample_len, period_unit)

        wfo_job = self.store.create_wfo_job(WfoJob(
            wfo_job_id=new_id(),
            strategy_id=strategy_id,
            symbol=symbol,
            interval=interval,
            date_range=date_range,
            in_sample_len=in_sample_len,
            out_of_sample_len=out_of_sample_len,
            period_unit=period_unit,
            parameter_space=space,
            analysis_config=config.to_dict(),
            status=JobStatus.RUNNING,
            created_at=utc_now(),
        ))
        logger.info(
            f"Submitted walk-forward job {wfo_job.wfo_job_id}: {strategy_id} {symbol} "
            f"{interval}, {len(windows)} windows"
        )

        try:
            self._check_market_data(symbol, interval, date_range)
        except DataUnavailable as e:
            logger.error(f"Walk-forward job {wfo_job.wfo_job_id} failed pre-flight: {e}")
            self.store.update_wfo_job_status(
                wfo_job.wfo_job_id, JobStatus.FAILED, error_message=str(e)
            )
            return wfo_job.wfo_job_id

        token = CancellationToken()
        controller = WalkForwardController(self.store, self.runner, self.settings, self.scoring)
        with self._lock:
            self._tokens[wfo_job.wfo_job_id] = token
            self._controllers[wfo_job.wfo_job_id] = controller

        self._dispatch(
            wfo_job.wfo_job_id,
            lambda: controller.run(wfo_job, cancel_token=token),
        )
        return wfo_job.wfo_job_id

    def get_wfo_job(self, wfo_job_id: str) -> WfoJob:
        """
        Raises:
            JobNotFound: Unknown walk-forward job id
        """
        return self.store.get_wfo_job(wfo_job_id)

    def get_wfo_results(self, wfo_job_id: str) -> WfoResults:
        """
        Windows in out-of-sample order plus the composite report.

        A failed job still returns the windows that completed before the failure.

        Raises:
            JobNotFound: Unknown walk-forward job id
        """
        job = self.store.get_wfo_job(wfo_job_id)
        runs = self.store.list_wfo_runs(wfo_job_id)
        return WfoResults(job=job, runs=runs, composite=build_composite_report(runs))

    # ------------------------------------------------------------------
    # Progress, cancellation, lifecycle
    # ------------------------------------------------------------------

    def get_progress(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Live progress of a job submitted through this service.

        Returns:
            Counters for sweeps, phase and window for walk-forward jobs, or
            None when the job was not run by this service instance
        """
        with self._lock:
            progress = self._progress.get(job_id)
            controller = self._controllers.get(job_id)
            finished = self._finished_progress.get(job_id)

        if progress is not None or controller is not None:
            return self._snapshot(progress, controller)
        if finished is not None:
            return dict(finished)
        return None

    def cancel_job(self, job_id: str, reason: str = "Cancelled by user") -> bool:
        """
        Request cooperative cancellation of a sweep or walk-forward job.

        In-flight backtests finish; nothing new is dispatched and the job ends
        as Failed.

        Returns:
            True if a running job received the request
        """
        with self._lock:
            token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.info(f"Cancellation requested for {job_id}: {reason}")
        return True

    def wait(self, job_id: str, timeout: Optional[float] = None) -> None:
        """
        Block until a background job finishes. Returns at once for inline
        execution and for jobs that have already finished.

        Raises:
            PersistenceError: If the job aborted on a store failure
            concurrent.futures.TimeoutError: If timeout elapses first
        """
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the background job worker."""
        if self._job_executor is not None:
            self._job_executor.shutdown(wait=wait)

    def _dispatch(self, job_id: str, work: Callable[[], Any]) -> None:
        def run() -> Any:
            try:
                return work()
            finally:
                self._release(job_id)

        if self._job_executor is None:
            run()
            return

        future = self._job_executor.submit(run)
        with self._lock:
            self._futures[job_id] = future
        future.add_done_callback(lambda done: self._forget_future(job_id, done))

    def _release(self, job_id: str) -> None:
        """Drop live tracking of a finished job, keeping its final progress."""
        with self._lock:
            self._tokens.pop(job_id, None)
            progress = self._progress.pop(job_id, None)
            controller = self._controllers.pop(job_id, None)
            if progress is None and controller is None:
                return
            self._finished_progress[job_id] = self._snapshot(progress, controller)
            while len(self._finished_progress) > FINISHED_PROGRESS_LIMIT:
                self._finished_progress.popitem(last=False)

    def _forget_future(self, job_id: str, future: Future) -> None:
        with self._lock:
            if self._futures.get(job_id) is future:
                del self._futures[job_id]
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Job {job_id} aborted: {future.exception()}")

    @staticmethod
    def _snapshot(
        progress: Optional[SweepProgress], controller: Optional[WalkForwardController]
    ) -> Dict[str, Any]:
        if progress is not None:
            return progress.snapshot()
        return {'phase': controller.phase.value, 'window': controller.current_window}

    def _check_market_data(self, symbol: str, interval: str, date_range: DateRange) -> None:
        if self.market_data is not None:
            require_candles(self.market_data, symbol, interval, date_range)

    def _analysis_config(
        self, analysis_config: Union[AnalysisConfig, Mapping[str, Any], None]
    ) -> AnalysisConfig:
        if analysis_config is None:
            return AnalysisConfig.model_validate(self.analysis_defaults)
        if isinstance(analysis_config, AnalysisConfig):
            return analysis_config
        return AnalysisConfig.model_validate(dict(analysis_config))
