"""
Backtest report value types.

A PerformanceReport is produced exactly once per backtest by the runner
adapter and never mutated afterwards. It owns its trade list and equity
curve. All money and ratio values are Decimal.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

# Metric columns shared by the ORM model, ranking exports and scoring.
METRIC_FIELDS = (
    'initial_capital',
    'net_profit',
    'gross_profit',
    'gross_loss',
    'profit_factor',
    'total_return_pct',
    'max_drawdown',
    'max_drawdown_pct',
    'sharpe_ratio',
    'calmar_ratio',
    'total_trades',
    'winning_trades',
    'losing_trades',
    'win_rate_pct',
    'average_win',
    'average_loss',
    'payoff_ratio',
)


@dataclass(frozen=True)
class DateRange:
    """
    Half-open time range [start, end).

    Attributes:
        start: Inclusive start
        end: Exclusive end
    """
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(
                f"DateRange start must be before end: {self.start} >= {self.end}"
            )

    def contains(self, moment: datetime) -> bool:
        """True when start <= moment < end."""
        return self.start <= moment < self.end

    def overlaps(self, other: 'DateRange') -> bool:
        return self.start < other.end and other.start < self.end

    def __str__(self) -> str:
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"


@dataclass(frozen=True)
class Trade:
    """
    One closed round-trip trade.

    Attributes:
        symbol: Instrument traded
        entry_time: Time the position was opened
        exit_time: Time the position was closed
        entry_price: Average entry price
        exit_price: Average exit price
        quantity: Position size (positive)
        pnl: Realized profit or loss after costs
        side: 'long' or 'short'
        window_index: Walk-forward window the trade came from (composite reports only)
    """
    symbol: str
    entry_time: datetime
    exit_time: datetime
    entry_price: Decimal
    exit_price: Decimal
    quantity: Decimal
    pnl: Decimal
    side: str = 'long'
    window_index: Optional[int] = None

    @property
    def holding_period(self) -> timedelta:
        return self.exit_time - self.entry_time

    @property
    def is_win(self) -> bool:
        return self.pnl > 0

    @property
    def is_loss(self) -> bool:
        return self.pnl < 0


@dataclass(frozen=True)
class EquityPoint:
    """Portfolio equity at a point in time."""
    timestamp: datetime
    equity: Decimal


@dataclass(frozen=True)
class PerformanceReport:
    """
    Fixed set of performance metrics for one backtest.

    Ratios that are mathematically undefined for a given run (profit factor
    without losing trades, Sharpe with zero variance, Calmar without drawdown,
    win rate without trades, payoff ratio without wins or losses) are None.

    Attributes:
        initial_capital: Starting equity
        net_profit: Ending equity minus starting equity
        gross_profit: Sum of winning trade pnl
        gross_loss: Absolute sum of losing trade pnl
        profit_factor: gross_profit / gross_loss
        total_return_pct: Net profit as a percentage of initial capital
        max_drawdown: Largest peak-to-trough equity decline (absolute)
        max_drawdown_pct: Same decline as a percentage of the running peak
        sharpe_ratio: Mean / standard deviation of per-point returns (not annualized)
        calmar_ratio: total_return_pct / max_drawdown_pct
        total_trades: Number of closed trades
        winning_trades: Trades with positive pnl
        losing_trades: Trades with negative pnl
        win_rate_pct: winning_trades / total_trades * 100
        average_win: Mean pnl of winning trades
        average_loss: Mean absolute pnl of losing trades
        payoff_ratio: average_win / average_loss
        average_holding_period: Mean trade duration
        trades: Closed trades in exit order
        equity_curve: Equity points in time order
    """
    initial_capital: Decimal
    net_profit: Decimal
    gross_profit: Decimal = Decimal('0')
    gross_loss: Decimal = Decimal('0')
    profit_factor: Optional[Decimal] = None
    total_return_pct: Decimal = Decimal('0')
    max_drawdown: Decimal = Decimal('0')
    max_drawdown_pct: Decimal = Decimal('0')
    sharpe_ratio: Optional[Decimal] = None
    calmar_ratio: Optional[Decimal] = None
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate_pct: Optional[Decimal] = None
    average_win: Decimal = Decimal('0')
    average_loss: Decimal = Decimal('0')
    payoff_ratio: Optional[Decimal] = None
    average_holding_period: Optional[timedelta] = None
    trades: Tuple[Trade, ...] = field(default_factory=tuple)
    equity_curve: Tuple[EquityPoint, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # Accept lists from adapters but store immutable tuples
        object.__setattr__(self, 'trades', tuple(self.trades))
        object.__setattr__(self, 'equity_curve', tuple(self.equity_curve))

    @property
    def final_equity(self) -> Decimal:
        if self.equity_curve:
            return self.equity_curve[-1].equity
        return self.initial_capital + self.net_profit

    def metric(self, name: str) -> Any:
        """Look up a metric by column name."""
        if name not in METRIC_FIELDS:
            raise KeyError(f"Unknown metric: {name}")
        return getattr(self, name)

    def metrics_dict(self) -> Dict[str, Any]:
        """Metric columns only, without trades or equity."""
        return {name: getattr(self, name) for name in METRIC_FIELDS}

    def with_series(self, trades, equity_curve) -> 'PerformanceReport':
        """Copy of this report owning a different trade list and equity curve."""
        return replace(self, trades=tuple(trades), equity_curve=tuple(equity_curve))
