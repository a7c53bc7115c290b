"""create_optimization_tables

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 09:00:00.000000+00:00

Creates the optimization schema:
1. optimization_jobs / backtest_runs - parameter sweeps and their outcomes
2. run_trades / run_equity_points - series owned by a backtest run
3. wfo_jobs / wfo_runs - walk-forward jobs and their validated windows

Money and ratio columns are exact decimal strings (VARCHAR(64)).
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(inspector, table_name):
    """Check if a table exists."""
    return table_name in inspector.get_table_names()


def _decimal():
    return sa.String(64)


def upgrade() -> None:
    """
    Create all optimization tables.

    Safely checks for existing tables to be idempotent.
    """
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    # ========================================================================
    # wfo_jobs table
    # ========================================================================
    if not _table_exists(inspector, 'wfo_jobs'):
        op.create_table(
            'wfo_jobs',
            sa.Column('wfo_job_id', sa.String(36), primary_key=True),
            sa.Column('strategy_id', sa.String(100), nullable=False),
            sa.Column('symbol', sa.String(20), nullable=False),
            sa.Column('interval', sa.String(10), nullable=False),
            sa.Column('start_date', sa.DateTime(), nullable=False),
            sa.Column('end_date', sa.DateTime(), nullable=False),
            sa.Column('in_sample_period', sa.Integer(), nullable=False),
            sa.Column('out_of_sample_period', sa.Integer(), nullable=False),
            sa.Column('period_unit', sa.String(10), nullable=False, server_default='months'),
            sa.Column('parameter_space', sa.JSON(), nullable=False),
            sa.Column('analysis_config', sa.JSON(), nullable=False),
            sa.Column('wfo_status', sa.String(16), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('finished_at', sa.DateTime(), nullable=True),
            sa.Column('failed_window', sa.Integer(), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
        )

    # ========================================================================
    # optimization_jobs table
    # ========================================================================
    if not _table_exists(inspector, 'optimization_jobs'):
        op.create_table(
            'optimization_jobs',
            sa.Column('job_id', sa.String(36), primary_key=True),
            sa.Column('strategy_id', sa.String(100), nullable=False),
            sa.Column('symbol', sa.String(20), nullable=False),
            sa.Column('interval', sa.String(10), nullable=False),
            sa.Column('start_date', sa.DateTime(), nullable=False),
            sa.Column('end_date', sa.DateTime(), nullable=False),
            sa.Column('parameter_space', sa.JSON(), nullable=False),
            sa.Column('analysis_config', sa.JSON(), nullable=False),
            sa.Column('status', sa.String(16), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('finished_at', sa.DateTime(), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column(
                'wfo_job_id', sa.String(36),
                sa.ForeignKey('wfo_jobs.wfo_job_id', ondelete='CASCADE'),
                nullable=True,
            ),
            sa.Column('window_index', sa.Integer(), nullable=True),
        )
        op.create_index(
            'idx_optimization_jobs_wfo', 'optimization_jobs', ['wfo_job_id', 'window_index']
        )

    # ========================================================================
    # backtest_runs table
    # ========================================================================
    if not _table_exists(inspector, 'backtest_runs'):
        op.create_table(
            'backtest_runs',
            sa.Column('run_id', sa.String(36), primary_key=True),
            sa.Column(
                'job_id', sa.String(36),
                sa.ForeignKey('optimization_jobs.job_id', ondelete='CASCADE'),
                nullable=True,
            ),
            sa.Column('kind', sa.String(16), nullable=False),
            sa.Column('parameters', sa.JSON(), nullable=False),
            sa.Column('start_date', sa.DateTime(), nullable=False),
            sa.Column('end_date', sa.DateTime(), nullable=False),
            sa.Column('status', sa.String(16), nullable=False),
            sa.Column('score', _decimal(), nullable=True),
            sa.Column('error_type', sa.String(50), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),

            # Performance report
            sa.Column('initial_capital', _decimal(), nullable=True),
            sa.Column('net_profit', _decimal(), nullable=True),
            sa.Column('gross_profit', _decimal(), nullable=True),
            sa.Column('gross_loss', _decimal(), nullable=True),
            sa.Column('profit_factor', _decimal(), nullable=True),
            sa.Column('total_return_pct', _decimal(), nullable=True),
            sa.Column('max_drawdown', _decimal(), nullable=True),
            sa.Column('max_drawdown_pct', _decimal(), nullable=True),
            sa.Column('sharpe_ratio', _decimal(), nullable=True),
            sa.Column('calmar_ratio', _decimal(), nullable=True),
            sa.Column('total_trades', sa.Integer(), nullable=True),
            sa.Column('winning_trades', sa.Integer(), nullable=True),
            sa.Column('losing_trades', sa.Integer(), nullable=True),
            sa.Column('win_rate_pct', _decimal(), nullable=True),
            sa.Column('average_win', _decimal(), nullable=True),
            sa.Column('average_loss', _decimal(), nullable=True),
            sa.Column('payoff_ratio', _decimal(), nullable=True),
            sa.Column('average_holding_us', sa.BigInteger(), nullable=True),
        )
        op.create_index('idx_backtest_runs_job_status', 'backtest_runs', ['job_id', 'status'])

    # ========================================================================
    # run_trades / run_equity_points tables
    # ========================================================================
    if not _table_exists(inspector, 'run_trades'):
        op.create_table(
            'run_trades',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column(
                'run_id', sa.String(36),
                sa.ForeignKey('backtest_runs.run_id', ondelete='CASCADE'),
                nullable=False,
            ),
            sa.Column('seq', sa.Integer(), nullable=False),
            sa.Column('symbol', sa.String(20), nullable=False),
            sa.Column('side', sa.String(5), nullable=False, server_default='long'),
            sa.Column('entry_time', sa.DateTime(), nullable=False),
            sa.Column('exit_time', sa.DateTime(), nullable=False),
            sa.Column('entry_price', _decimal(), nullable=False),
            sa.Column('exit_price', _decimal(), nullable=False),
            sa.Column('quantity', _decimal(), nullable=False),
            sa.Column('pnl', _decimal(), nullable=False),
        )
        op.create_index('ix_run_trades_run_id', 'run_trades', ['run_id'])

    if not _table_exists(inspector, 'run_equity_points'):
        op.create_table(
            'run_equity_points',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column(
                'run_id', sa.String(36),
                sa.ForeignKey('backtest_runs.run_id', ondelete='CASCADE'),
                nullable=False,
            ),
            sa.Column('seq', sa.Integer(), nullable=False),
            sa.Column('timestamp', sa.DateTime(), nullable=False),
            sa.Column('equity', _decimal(), nullable=False),
        )
        op.create_index('ix_run_equity_points_run_id', 'run_equity_points', ['run_id'])

    # ========================================================================
    # wfo_runs table
    # ========================================================================
    if not _table_exists(inspector, 'wfo_runs'):
        op.create_table(
            'wfo_runs',
            sa.Column('wfo_run_id', sa.String(36), primary_key=True),
            sa.Column(
                'wfo_job_id', sa.String(36),
                sa.ForeignKey('wfo_jobs.wfo_job_id', ondelete='CASCADE'),
                nullable=False,
            ),
            sa.Column('window_index', sa.Integer(), nullable=False),
            sa.Column(
                'oos_run_id', sa.String(36),
                sa.ForeignKey('backtest_runs.run_id', ondelete='CASCADE'),
                nullable=False,
                unique=True,
            ),
            sa.Column('best_in_sample_parameters', sa.JSON(), nullable=False),
            sa.Column('oos_start_date', sa.DateTime(), nullable=False),
            sa.Column('oos_end_date', sa.DateTime(), nullable=False),
            sa.Column(
                'in_sample_job_id', sa.String(36),
                sa.ForeignKey('optimization_jobs.job_id', ondelete='SET NULL'),
                nullable=True,
            ),
            sa.Column('in_sample_score', _decimal(), nullable=True),
        )
        op.create_index(
            'idx_wfo_runs_job_oos_start', 'wfo_runs', ['wfo_job_id', 'oos_start_date']
        )


def downgrade() -> None:
    """Drop all optimization tables in dependency order."""
    op.drop_table('wfo_runs')
    op.drop_table('run_equity_points')
    op.drop_table('run_trades')
    op.drop_table('backtest_runs')
    op.drop_table('optimization_jobs')
    op.drop_table('wfo_jobs')
