"""
Job and run records for sweeps and walk-forward validation.

These are the domain-side views of the persisted entities. The persistence
store converts between them and the ORM models in zenith_engine.data.models.
"""
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from zenith_engine.core.parameters import ParameterAssignment
from zenith_engine.core.reports import DateRange, PerformanceReport


def utc_now() -> datetime:
    """Naive UTC timestamp, the form stored in every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class JobStatus(str, enum.Enum):
    """Lifecycle of an optimization job or walk-forward job."""
    RUNNING = 'Running'
    COMPLETED = 'Completed'
    FAILED = 'Failed'

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


class RunStatus(str, enum.Enum):
    """Outcome of a single backtest run."""
    COMPLETED = 'Completed'
    FILTERED = 'Filtered'
    FAILED = 'Failed'


class RunKind(str, enum.Enum):
    """Whether a run belongs to a sweep or is a walk-forward validation run."""
    SWEEP = 'sweep'
    VALIDATION = 'validation'


@dataclass
class OptimizationJob:
    """
    One parameter sweep request.

    Attributes:
        job_id: Generated unique id
        strategy_id: Strategy identifier understood by the runner adapter
        symbol: Target symbol
        interval: Candle interval (e.g. '1h', '1d')
        date_range: Backtest range
        parameter_space: Raw parameter space as submitted
        analysis_config: Filters, weights and normalization as a plain dict
        status: Running, Completed or Failed
        created_at: Creation timestamp (UTC)
        finished_at: Time the job reached a terminal status
        error_message: Why the job failed or what was skipped
        wfo_job_id: Owning walk-forward job, for in-sample sweeps
        window_index: Walk-forward window this sweep optimizes
    """
    job_id: str
    strategy_id: str
    symbol: str
    interval: str
    date_range: DateRange
    parameter_space: Dict[str, Any]
    analysis_config: Dict[str, Any]
    status: JobStatus = JobStatus.RUNNING
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None
    wfo_job_id: Optional[str] = None
    window_index: Optional[int] = None


@dataclass
class BacktestRun:
    """
    Stored result of one backtest for one parameter assignment.

    Exactly one of report / error_type is meaningful: successful and filtered
    runs carry a report, failed runs carry the error type and message.
    """
    run_id: str
    assignment: ParameterAssignment
    date_range: DateRange
    status: RunStatus
    job_id: Optional[str] = None
    kind: RunKind = RunKind.SWEEP
    report: Optional[PerformanceReport] = None
    score: Optional[Decimal] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class RankedReport:
    """
    A scored report together with the run and assignment that produced it.

    Attributes:
        run: Stored backtest run (status Completed)
        score: Composite score in [0, sum(weights)]
    """
    run: BacktestRun
    score: Decimal

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def assignment(self) -> ParameterAssignment:
        return self.run.assignment

    @property
    def report(self) -> PerformanceReport:
        return self.run.report


@dataclass
class WfoJob:
    """
    Walk-forward optimization request.

    Attributes:
        wfo_job_id: Generated unique id
        strategy_id: Strategy identifier
        symbol: Target symbol
        interval: Candle interval used for every window
        date_range: Full series range to partition
        in_sample_len: In-sample length in period_unit
        out_of_sample_len: Out-of-sample length in period_unit
        period_unit: 'days', 'weeks' or 'months'
        parameter_space: Raw parameter space swept in every window
        analysis_config: Filters, weights and normalization as a plain dict
        status: Running, Completed or Failed
        created_at: Creation timestamp (UTC)
        failed_window: Zero-based index of the window that failed
        error_message: Failure description
    """
    wfo_job_id: str
    strategy_id: str
    symbol: str
    interval: str
    date_range: DateRange
    in_sample_len: int
    out_of_sample_len: int
    period_unit: str
    parameter_space: Dict[str, Any]
    analysis_config: Dict[str, Any]
    status: JobStatus = JobStatus.RUNNING
    created_at: Optional[datetime] = None
    failed_window: Optional[int] = None
    error_message: Optional[str] = None


@dataclass
class WfoRun:
    """
    One validated walk-forward window.

    Attributes:
        wfo_run_id: Generated unique id
        wfo_job_id: Owning walk-forward job
        window_index: Zero-based window position
        oos_run_id: The single out-of-sample BacktestRun this window wraps
        best_parameters: Winning assignment of the in-sample sweep
        oos_range: Out-of-sample range [oos_start, oos_end)
        in_sample_job_id: The in-sample OptimizationJob
        in_sample_score: Score of the winning in-sample report
        oos_run: Loaded out-of-sample run (populated on read)
    """
    wfo_run_id: str
    wfo_job_id: str
    window_index: int
    oos_run_id: str
    best_parameters: ParameterAssignment
    oos_range: DateRange
    in_sample_job_id: Optional[str] = None
    in_sample_score: Optional[Decimal] = None
    oos_run: Optional[BacktestRun] = field(default=None, compare=False)
