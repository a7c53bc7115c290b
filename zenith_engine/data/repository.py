"""
Persistence store for optimization and walk-forward entities.

Converts between the domain records in zenith_engine.core.jobs and the ORM
models. Every public method opens its own short-lived session, so the store
can be shared across threads; identities are application-generated UUIDs,
so concurrent appends need no global lock. Any SQLAlchemy failure surfaces
as PersistenceError.

Example:
    engine = DatabaseFactory.create_engine('sqlite', {'database': ':memory:'})
    store = OptimizationStore(engine)
    store.create_schema()

    job = store.create_job(job)
    store.save_run(run)
    ranked = store.get_ranked_reports(job.job_id)
"""
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Iterator, List, Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from zenith_engine.core.exceptions import JobNotFound, PersistenceError
from zenith_engine.core.jobs import (
    BacktestRun,
    JobStatus,
    OptimizationJob,
    RankedReport,
    RunStatus,
    WfoJob,
    WfoRun,
    utc_now,
)
from zenith_engine.core.parameters import ParameterAssignment
from zenith_engine.core.reports import (
    METRIC_FIELDS,
    DateRange,
    EquityPoint,
    PerformanceReport,
    Trade,
)
from zenith_engine.data.database_factory import DatabaseFactory
from zenith_engine.data.models import (
    Base,
    BacktestRunModel,
    OptimizationJobModel,
    RunEquityPointModel,
    RunTradeModel,
    WfoJobModel,
    WfoRunModel,
)
from zenith_engine.optimization.scoring import rank_reports
from zenith_engine.utils.logging_config import get_data_logger

logger = get_data_logger('STORE')


class OptimizationStore:
    """
    Create/read/update/delete over jobs, runs and walk-forward windows.

    Attributes:
        engine: SQLAlchemy engine
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = DatabaseFactory.create_session_maker(engine)

    @classmethod
    def from_url(cls, url: str) -> 'OptimizationStore':
        """Store over an engine built from a database URL."""
        return cls(DatabaseFactory.create_engine_from_url(url))

    def create_schema(self) -> None:
        """Create all tables (tests and local SQLite; use alembic elsewhere)."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create schema: {e}") from e

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Store operation failed: {e}")
            raise PersistenceError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Optimization jobs
    # ------------------------------------------------------------------

    def create_job(self, job: OptimizationJob) -> OptimizationJob:
        """Insert a new optimization job and return it as stored."""
        with self._session() as session:
            model = OptimizationJobModel(
                job_id=job.job_id,
                strategy_id=job.strategy_id,
                symbol=job.symbol,
                interval=job.interval,
                start_date=job.date_range.start,
                end_date=job.date_range.end,
                parameter_space=job.parameter_space,
                analysis_config=job.analysis_config,
                status=job.status,
                created_at=job.created_at or utc_now(),
                error_message=job.error_message,
                wfo_job_id=job.wfo_job_id,
                window_index=job.window_index,
            )
            session.add(model)
            session.flush()
            logger.debug(f"Created job {job.job_id}")
            return self._job_from_model(model)

    def get_job(self, job_id: str) -> OptimizationJob:
        """
        Raises:
            JobNotFound: If no job has this id
        """
        with self._session() as session:
            model = session.get(OptimizationJobModel, job_id)
            if model is None:
                raise JobNotFound(f"Optimization job not found: {job_id}")
            return self._job_from_model(model)

    def update_job_status(
        self, job_id: str, status: JobStatus, error_message: Optional[str] = None
    ) -> OptimizationJob:
        """Set a job's status; terminal statuses also stamp finished_at."""
        with self._session() as session:
            model = session.get(OptimizationJobModel, job_id)
            if model is None:
                raise JobNotFound(f"Optimization job not found: {job_id}")
            model.status = status
            model.error_message = error_message
            if status.is_terminal:
                model.finished_at = utc_now()
            logger.info(f"Job {job_id} -> {status.value}")
            return self._job_from_model(model)

    def list_window_jobs(self, wfo_job_id: str) -> List[OptimizationJob]:
        """In-sample jobs of a walk-forward job, by window index."""
        with self._session() as session:
            models = session.scalars(
                select(OptimizationJobModel)
                .where(OptimizationJobModel.wfo_job_id == wfo_job_id)
                .order_by(OptimizationJobModel.window_index)
            ).all()
            return [self._job_from_model(m) for m in models]

    def delete_job(self, job_id: str) -> None:
        """Delete a job with all its runs (and any wfo_run wrapping them)."""
        with self._session() as session:
            model = session.get(OptimizationJobModel, job_id)
            if model is None:
                raise JobNotFound(f"Optimization job not found: {job_id}")
            session.delete(model)

    # ------------------------------------------------------------------
    # Backtest runs
    # ------------------------------------------------------------------

    def save_run(self, run: BacktestRun) -> None:
        """Insert one run with its trades and equity curve."""
        with self._session() as session:
            session.add(self._run_to_model(run))

    def update_run_scores(self, scores: Dict[str, Decimal]) -> None:
        """Write back batch-normalized scores in one transaction."""
        if not scores:
            return
        with self._session() as session:
            for run_id, score in scores.items():
                session.execute(
                    update(BacktestRunModel)
                    .where(BacktestRunModel.run_id == run_id)
                    .values(score=score)
                )

    def get_run(self, run_id: str, load_series: bool = True) -> BacktestRun:
        """
        Raises:
            JobNotFound: If no run has this id
        """
        with self._session() as session:
            query = select(BacktestRunModel).where(BacktestRunModel.run_id == run_id)
            if load_series:
                query = query.options(
                    selectinload(BacktestRunModel.trades),
                    selectinload(BacktestRunModel.equity_points),
                )
            model = session.scalars(query).first()
            if model is None:
                raise JobNotFound(f"Backtest run not found: {run_id}")
            return self._run_from_model(model, load_series)

    def list_runs(
        self,
        job_id: Optional[str],
        status: Optional[RunStatus] = None,
        load_series: bool = False,
    ) -> List[BacktestRun]:
        """
        Runs of a job in creation order, optionally by status.

        job_id None selects the runs owned by no job (out-of-sample validations).
        """
        with self._session() as session:
            query = select(BacktestRunModel).where(BacktestRunModel.job_id == job_id)
            if status is not None:
                query = query.where(BacktestRunModel.status == status)
            if load_series:
                query = query.options(
                    selectinload(BacktestRunModel.trades),
                    selectinload(BacktestRunModel.equity_points),
                )
            query = query.order_by(BacktestRunModel.created_at, BacktestRunModel.run_id)
            return [self._run_from_model(m, load_series) for m in session.scalars(query).all()]

    def get_ranked_reports(self, job_id: str, load_series: bool = False) -> List[RankedReport]:
        """
        Scored runs of a job in rank order.

        Filtered and failed runs never appear here.
        """
        runs = self.list_runs(job_id, status=RunStatus.COMPLETED, load_series=load_series)
        return rank_reports(
            RankedReport(run=run, score=run.score) for run in runs if run.score is not None
        )

    def delete_run(self, run_id: str) -> None:
        """Delete a run; its trades, equity and wrapping wfo_run go with it."""
        with self._session() as session:
            model = session.get(BacktestRunModel, run_id)
            if model is None:
                raise JobNotFound(f"Backtest run not found: {run_id}")
            session.delete(model)

    # ------------------------------------------------------------------
    # Walk-forward jobs and runs
    # ------------------------------------------------------------------

    def create_wfo_job(self, wfo_job: WfoJob) -> WfoJob:
        with self._session() as session:
            model = WfoJobModel(
                wfo_job_id=wfo_job.wfo_job_id,
                strategy_id=wfo_job.strategy_id,
                symbol=wfo_job.symbol,
                interval=wfo_job.interval,
                start_date=wfo_job.date_range.start,
                end_date=wfo_job.date_range.end,
                in_sample_period=wfo_job.in_sample_len,
                out_of_sample_period=wfo_job.out_of_sample_len,
                period_unit=wfo_job.period_unit,
                parameter_space=wfo_job.parameter_space,
                analysis_config=wfo_job.analysis_config,
                wfo_status=wfo_job.status,
                created_at=wfo_job.created_at or utc_now(),
                failed_window=wfo_job.failed_window,
                error_message=wfo_job.error_message,
            )
            session.add(model)
            session.flush()
            logger.debug(f"Created walk-forward job {wfo_job.wfo_job_id}")
            return self._wfo_job_from_model(model)

    def get_wfo_job(self, wfo_job_id: str) -> WfoJob:
        """
        Raises:
            JobNotFound: If no walk-forward job has this id
        """
        with self._session() as session:
            model = session.get(WfoJobModel, wfo_job_id)
            if model is None:
                raise JobNotFound(f"Walk-forward job not found: {wfo_job_id}")
            return self._wfo_job_from_model(model)

    def update_wfo_job_status(
        self,
        wfo_job_id: str,
        status: JobStatus,
        failed_window: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> WfoJob:
        with self._session() as session:
            model = session.get(WfoJobModel, wfo_job_id)
            if model is None:
                raise JobNotFound(f"Walk-forward job not found: {wfo_job_id}")
            model.wfo_status = status
            model.failed_window = failed_window
            model.error_message = error_message
            if status.is_terminal:
                model.finished_at = utc_now()
            logger.info(
                f"Walk-forward job {wfo_job_id} -> {status.value}"
                + (f" (window {failed_window})" if failed_window is not None else "")
            )
            return self._wfo_job_from_model(model)

    def save_wfo_run(self, wfo_run: WfoRun) -> None:
        with self._session() as session:
            session.add(WfoRunModel(
                wfo_run_id=wfo_run.wfo_run_id,
                wfo_job_id=wfo_run.wfo_job_id,
                window_index=wfo_run.window_index,
                oos_run_id=wfo_run.oos_run_id,
                best_in_sample_parameters=wfo_run.best_parameters.to_json(),
                oos_start_date=wfo_run.oos_range.start,
                oos_end_date=wfo_run.oos_range.end,
                in_sample_job_id=wfo_run.in_sample_job_id,
                in_sample_score=wfo_run.in_sample_score,
            ))

    def list_wfo_runs(self, wfo_job_id: str, load_runs: bool = True) -> List[WfoRun]:
        """Windows of a walk-forward job ordered by out-of-sample start."""
        with self._session() as session:
            query = (
                select(WfoRunModel)
                .where(WfoRunModel.wfo_job_id == wfo_job_id)
                .order_by(WfoRunModel.oos_start_date)
            )
            if load_runs:
                query = query.options(
                    selectinload(WfoRunModel.oos_run).selectinload(BacktestRunModel.trades),
                    selectinload(WfoRunModel.oos_run).selectinload(BacktestRunModel.equity_points),
                )
            runs = []
            for model in session.scalars(query).all():
                wfo_run = self._wfo_run_from_model(model)
                if load_runs:
                    wfo_run.oos_run = self._run_from_model(model.oos_run, load_series=True)
                runs.append(wfo_run)
            return runs

    def delete_wfo_job(self, wfo_job_id: str) -> None:
        """
        Delete a walk-forward job, its windows, its in-sample jobs and its
        out-of-sample validation runs.
        """
        with self._session() as session:
            model = session.get(WfoJobModel, wfo_job_id)
            if model is None:
                raise JobNotFound(f"Walk-forward job not found: {wfo_job_id}")
            oos_run_ids = [run.oos_run_id for run in model.runs]
            session.delete(model)
            session.flush()
            for run_id in oos_run_ids:
                run = session.get(BacktestRunModel, run_id)
                if run is not None:
                    session.delete(run)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _job_from_model(model: OptimizationJobModel) -> OptimizationJob:
        return OptimizationJob(
            job_id=model.job_id,
            strategy_id=model.strategy_id,
            symbol=model.symbol,
            interval=model.interval,
            date_range=DateRange(model.start_date, model.end_date),
            parameter_space=model.parameter_space,
            analysis_config=model.analysis_config,
            status=JobStatus(model.status),
            created_at=model.created_at,
            finished_at=model.finished_at,
            error_message=model.error_message,
            wfo_job_id=model.wfo_job_id,
            window_index=model.window_index,
        )

    @staticmethod
    def _wfo_job_from_model(model: WfoJobModel) -> WfoJob:
        return WfoJob(
            wfo_job_id=model.wfo_job_id,
            strategy_id=model.strategy_id,
            symbol=model.symbol,
            interval=model.interval,
            date_range=DateRange(model.start_date, model.end_date),
            in_sample_len=model.in_sample_period,
            out_of_sample_len=model.out_of_sample_period,
            period_unit=model.period_unit,
            parameter_space=model.parameter_space,
            analysis_config=model.analysis_config,
            status=JobStatus(model.wfo_status),
            created_at=model.created_at,
            failed_window=model.failed_window,
            error_message=model.error_message,
        )

    @staticmethod
    def _wfo_run_from_model(model: WfoRunModel) -> WfoRun:
        return WfoRun(
            wfo_run_id=model.wfo_run_id,
            wfo_job_id=model.wfo_job_id,
            window_index=model.window_index,
            oos_run_id=model.oos_run_id,
            best_parameters=ParameterAssignment.from_json(model.best_in_sample_parameters),
            oos_range=DateRange(model.oos_start_date, model.oos_end_date),
            in_sample_job_id=model.in_sample_job_id,
            in_sample_score=model.in_sample_score,
        )

    @staticmethod
    def _run_to_model(run: BacktestRun) -> BacktestRunModel:
        model = BacktestRunModel(
            run_id=run.run_id,
            job_id=run.job_id,
            kind=run.kind,
            parameters=run.assignment.to_json(),
            start_date=run.date_range.start,
            end_date=run.date_range.end,
            status=run.status,
            score=run.score,
            error_type=run.error_type,
            error_message=run.error_message,
            created_at=run.created_at or utc_now(),
        )

        report = run.report
        if report is None:
            return model

        for name in METRIC_FIELDS:
            setattr(model, name, getattr(report, name))
        if report.average_holding_period is not None:
            model.average_holding_us = report.average_holding_period // timedelta(microseconds=1)

        model.trades = [
            RunTradeModel(
                seq=seq,
                symbol=t.symbol,
                side=t.side,
                entry_time=t.entry_time,
                exit_time=t.exit_time,
                entry_price=t.entry_price,
                exit_price=t.exit_price,
                quantity=t.quantity,
                pnl=t.pnl,
            )
            for seq, t in enumerate(report.trades)
        ]
        model.equity_points = [
            RunEquityPointModel(seq=seq, timestamp=p.timestamp, equity=p.equity)
            for seq, p in enumerate(report.equity_curve)
        ]
        return model

    @staticmethod
    def _run_from_model(model: BacktestRunModel, load_series: bool) -> BacktestRun:
        report = None
        if model.status != RunStatus.FAILED and model.net_profit is not None:
            trades = ()
            equity = ()
            if load_series:
                trades = tuple(
                    Trade(
                        symbol=t.symbol,
                        side=t.side,
                        entry_time=t.entry_time,
                        exit_time=t.exit_time,
                        entry_price=t.entry_price,
                        exit_price=t.exit_price,
                        quantity=t.quantity,
                        pnl=t.pnl,
                    )
                    for t in model.trades
                )
                equity = tuple(
                    EquityPoint(timestamp=p.timestamp, equity=p.equity)
                    for p in model.equity_points
                )
            holding = None
            if model.average_holding_us is not None:
                holding = timedelta(microseconds=model.average_holding_us)
            report = PerformanceReport(
                **{name: getattr(model, name) for name in METRIC_FIELDS},
                average_holding_period=holding,
                trades=trades,
                equity_curve=equity,
            )

        return BacktestRun(
            run_id=model.run_id,
            job_id=model.job_id,
            kind=model.kind,
            assignment=ParameterAssignment.from_json(model.parameters),
            date_range=DateRange(model.start_date, model.end_date),
            status=RunStatus(model.status),
            report=report,
            score=model.score,
            error_type=model.error_type,
            error_message=model.error_message,
            created_at=model.created_at,
        )
