"""
Database models for the Zenith optimization engine.

Defines SQLAlchemy ORM models for:
- Optimization jobs and their backtest runs (with owned trades and equity)
- Walk-forward jobs and their validated windows

Models use:
- Exact decimal text for every money/ratio value, so stored scores are
  bit-for-bit identical on SQLite and PostgreSQL
- UUID4 string primary keys generated by the application (safe concurrent appends)
- Naive UTC timestamps

Design decisions:
- wfo_runs.oos_run_id is unique: one window wraps exactly one validation run
- Deleting a run cascades to its trades, equity points and wrapping wfo_run
- Deleting a walk-forward job cascades to its wfo_runs and in-sample jobs
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON, BigInteger, Column, DateTime, Enum, ForeignKey, Index, Integer, String, Text,
)
from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy.types import TypeDecorator

from zenith_engine.core.jobs import JobStatus, RunKind, RunStatus


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class DecimalText(TypeDecorator):
    """
    Decimal stored as its exact string form.

    Avoids float affinity on SQLite and scale truncation on NUMERIC columns.
    """

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


def _enum(enum_cls, name: str) -> Enum:
    # Store enum values ('Running'), not member names, as plain VARCHAR
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=16,
        values_callable=lambda members: [m.value for m in members],
    )


# ==============================================================================
# OPTIMIZATION MODELS
# ==============================================================================

class OptimizationJobModel(Base):
    """
    One parameter sweep.

    In-sample sweeps of a walk-forward job carry wfo_job_id and window_index.
    """

    __tablename__ = 'optimization_jobs'

    job_id = Column(String(36), primary_key=True)
    strategy_id = Column(String(100), nullable=False)
    symbol = Column(String(20), nullable=False)
    interval = Column(String(10), nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    parameter_space = Column(JSON, nullable=False)
    analysis_config = Column(JSON, nullable=False)
    status = Column(_enum(JobStatus, 'job_status'), nullable=False, default=JobStatus.RUNNING)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    finished_at = Column(DateTime)
    error_message = Column(Text)
    wfo_job_id = Column(String(36), ForeignKey('wfo_jobs.wfo_job_id', ondelete='CASCADE'))
    window_index = Column(Integer)

    runs = relationship(
        'BacktestRunModel',
        back_populates='job',
        cascade='all, delete-orphan',
        passive_deletes=True,
    )

    __table_args__ = (
        Index('idx_optimization_jobs_wfo', 'wfo_job_id', 'window_index'),
    )

    def __repr__(self):
        return f"<OptimizationJobModel(job_id={self.job_id}, symbol={self.symbol}, status={self.status})>"


class BacktestRunModel(Base):
    """
    One backtest outcome with its flattened performance report.

    Failed runs have no metrics; Filtered runs have metrics but no score.
    Validation (out-of-sample) runs have no owning job.
    """

    __tablename__ = 'backtest_runs'

    run_id = Column(String(36), primary_key=True)
    job_id = Column(String(36), ForeignKey('optimization_jobs.job_id', ondelete='CASCADE'))
    kind = Column(_enum(RunKind, 'run_kind'), nullable=False, default=RunKind.SWEEP)
    parameters = Column(JSON, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    status = Column(_enum(RunStatus, 'run_status'), nullable=False)
    score = Column(DecimalText)
    error_type = Column(String(50))
    error_message = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Performance report
    initial_capital = Column(DecimalText)
    net_profit = Column(DecimalText)
    gross_profit = Column(DecimalText)
    gross_loss = Column(DecimalText)
    profit_factor = Column(DecimalText)
    total_return_pct = Column(DecimalText)
    max_drawdown = Column(DecimalText)
    max_drawdown_pct = Column(DecimalText)
    sharpe_ratio = Column(DecimalText)
    calmar_ratio = Column(DecimalText)
    total_trades = Column(Integer)
    winning_trades = Column(Integer)
    losing_trades = Column(Integer)
    win_rate_pct = Column(DecimalText)
    average_win = Column(DecimalText)
    average_loss = Column(DecimalText)
    payoff_ratio = Column(DecimalText)
    average_holding_us = Column(BigInteger)  # microseconds

    job = relationship('OptimizationJobModel', back_populates='runs')
    trades = relationship(
        'RunTradeModel',
        order_by='RunTradeModel.seq',
        cascade='all, delete-orphan',
        passive_deletes=True,
    )
    equity_points = relationship(
        'RunEquityPointModel',
        order_by='RunEquityPointModel.seq',
        cascade='all, delete-orphan',
        passive_deletes=True,
    )

    __table_args__ = (
        Index('idx_backtest_runs_job_status', 'job_id', 'status'),
    )

    def __repr__(self):
        return f"<BacktestRunModel(run_id={self.run_id}, status={self.status}, score={self.score})>"


class RunTradeModel(Base):
    """Closed trade owned by a backtest run."""

    __tablename__ = 'run_trades'

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(
        String(36), ForeignKey('backtest_runs.run_id', ondelete='CASCADE'), nullable=False, index=True
    )
    seq = Column(Integer, nullable=False)
    symbol = Column(String(20), nullable=False)
    side = Column(String(5), nullable=False, default='long')
    entry_time = Column(DateTime, nullable=False)
    exit_time = Column(DateTime, nullable=False)
    entry_price = Column(DecimalText, nullable=False)
    exit_price = Column(DecimalText, nullable=False)
    quantity = Column(DecimalText, nullable=False)
    pnl = Column(DecimalText, nullable=False)


class RunEquityPointModel(Base):
    """Equity curve point owned by a backtest run."""

    __tablename__ = 'run_equity_points'

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(
        String(36), ForeignKey('backtest_runs.run_id', ondelete='CASCADE'), nullable=False, index=True
    )
    seq = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    equity = Column(DecimalText, nullable=False)


# ==============================================================================
# WALK-FORWARD MODELS
# ==============================================================================

class WfoJobModel(Base):
    """Walk-forward optimization job."""

    __tablename__ = 'wfo_jobs'

    wfo_job_id = Column(String(36), primary_key=True)
    strategy_id = Column(String(100), nullable=False)
    symbol = Column(String(20), nullable=False)
    interval = Column(String(10), nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    in_sample_period = Column(Integer, nullable=False)
    out_of_sample_period = Column(Integer, nullable=False)
    period_unit = Column(String(10), nullable=False, default='months')
    parameter_space = Column(JSON, nullable=False)
    analysis_config = Column(JSON, nullable=False)
    wfo_status = Column(_enum(JobStatus, 'wfo_status'), nullable=False, default=JobStatus.RUNNING)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    finished_at = Column(DateTime)
    failed_window = Column(Integer)
    error_message = Column(Text)

    runs = relationship(
        'WfoRunModel',
        back_populates='wfo_job',
        order_by='WfoRunModel.oos_start_date',
        cascade='all, delete-orphan',
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<WfoJobModel(wfo_job_id={self.wfo_job_id}, symbol={self.symbol}, status={self.wfo_status})>"


class WfoRunModel(Base):
    """One validated walk-forward window wrapping a single out-of-sample run."""

    __tablename__ = 'wfo_runs'

    wfo_run_id = Column(String(36), primary_key=True)
    wfo_job_id = Column(
        String(36), ForeignKey('wfo_jobs.wfo_job_id', ondelete='CASCADE'), nullable=False
    )
    window_index = Column(Integer, nullable=False)
    oos_run_id = Column(
        String(36),
        ForeignKey('backtest_runs.run_id', ondelete='CASCADE'),
        nullable=False,
        unique=True,
    )
    best_in_sample_parameters = Column(JSON, nullable=False)
    oos_start_date = Column(DateTime, nullable=False)
    oos_end_date = Column(DateTime, nullable=False)
    in_sample_job_id = Column(
        String(36), ForeignKey('optimization_jobs.job_id', ondelete='SET NULL')
    )
    in_sample_score = Column(DecimalText)

    wfo_job = relationship('WfoJobModel', back_populates='runs')
    oos_run = relationship('BacktestRunModel')

    __table_args__ = (
        Index('idx_wfo_runs_job_oos_start', 'wfo_job_id', 'oos_start_date'),
    )

    def __repr__(self):
        return f"<WfoRunModel(wfo_run_id={self.wfo_run_id}, window={self.window_index})>"
