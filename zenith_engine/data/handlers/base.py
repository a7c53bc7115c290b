"""
Base interface for market data providers.

Market data retrieval and storage live outside the optimizer. The optimizer
only needs a read-only view to check that data exists for a requested range
before committing a sweep to it. Implementations must be safe to share across
worker threads.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Sequence

from zenith_engine.core.exceptions import DataUnavailable
from zenith_engine.core.reports import DateRange


@dataclass(frozen=True)
class Candle:
    """
    One OHLCV bar.

    Attributes:
        symbol: Instrument
        interval: Bar interval (e.g. '1h')
        open_time: Bar open timestamp (UTC)
        open, high, low, close: Prices
        volume: Traded volume
    """
    symbol: str
    interval: str
    open_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


class MarketDataProvider(ABC):
    """
    Abstract read-only market data source.

    Example:
        class DatabaseProvider(MarketDataProvider):
            def get_ohlc(self, symbol, interval, date_range):
                rows = session.query(Kline).filter(...).order_by(Kline.open_time)
                return [Candle(...) for row in rows]
    """

    @abstractmethod
    def get_ohlc(self, symbol: str, interval: str, date_range: DateRange) -> List[Candle]:
        """
        Candles with open_time in [date_range.start, date_range.end), oldest first.

        Raises:
            DataUnavailable: If the source has no data for the symbol/range
        """
        pass


def require_candles(
    provider: MarketDataProvider, symbol: str, interval: str, date_range: DateRange
) -> Sequence[Candle]:
    """
    Fetch candles and insist on at least one.

    Raises:
        DataUnavailable: If the provider raises it or returns nothing
    """
    candles = provider.get_ohlc(symbol, interval, date_range)
    if not candles:
        raise DataUnavailable(f"No market data for {symbol} {interval} in {date_range}")
    return candles
