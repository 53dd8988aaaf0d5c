"""
Candle Series - Shared OHLCV Data Model
=======================================

Every component of the decision engine consumes the same ordered OHLCV
series. This module holds the immutable ``Candle`` record, the engine's
error types, and the helpers that turn caller data (lists of dicts,
pandas DataFrames, CSV files) into validated candle lists.

Conventions:
- Candles are ordered oldest first
- ``time`` is a Unix epoch timestamp in milliseconds
- Timestamps are strictly increasing (no duplicates)
- A candle is never mutated after it is produced
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd
import pytz

logger = logging.getLogger(__name__)


# =============================================================================
# ERRORS
# =============================================================================

class EngineError(Exception):
    """Base class for decision engine errors"""


class InsufficientDataError(EngineError, ValueError):
    """Raised when an operation receives fewer candles than it needs"""

    def __init__(self, operation: str, required: int, actual: int):
        self.operation = operation
        self.required = required
        self.actual = actual
        super().__init__(
            f"Need at least {required} candles for {operation} (got {actual})"
        )


class CandleSeriesError(EngineError, ValueError):
    """Raised when a candle series breaks ordering or price invariants"""


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Candle:
    """One OHLCV bar"""
    time: int           # epoch milliseconds
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def datetime(self) -> datetime:
        """Bar open time as an aware UTC datetime"""
        return datetime.fromtimestamp(self.time / 1000.0, tz=pytz.utc)

    @property
    def body(self) -> float:
        """Signed body size (positive for up-close candles)"""
        return self.close - self.open

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open

    def to_dict(self) -> Dict[str, float]:
        return {
            'time': self.time,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }


CandleInput = Union[Sequence[Candle], Sequence[Mapping[str, Any]], pd.DataFrame]


# =============================================================================
# CONVERSION
# =============================================================================

def to_epoch_ms(value: Any) -> int:
    """
    Convert a timestamp-like value to epoch milliseconds.

    Accepts ints/floats (already milliseconds), datetimes (naive values are
    taken as UTC) and pandas Timestamps.
    """
    if isinstance(value, (int, np.integer)):
        return int(value)
    if isinstance(value, (float, np.floating)):
        return int(round(float(value)))
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = pytz.utc.localize(value)
        return int(round(value.timestamp() * 1000))
    raise CandleSeriesError(f"Unsupported timestamp value: {value!r}")


def _candle_from_mapping(row: Mapping[str, Any]) -> Candle:
    time_value = row.get('time', row.get('timestamp'))
    if time_value is None:
        raise CandleSeriesError("Candle mapping needs a 'time' or 'timestamp' key")
    return Candle(
        time=to_epoch_ms(time_value),
        open=float(row['open']),
        high=float(row['high']),
        low=float(row['low']),
        close=float(row['close']),
        volume=float(row.get('volume', 0.0) or 0.0),
    )


def candles_from_dataframe(df: pd.DataFrame) -> List[Candle]:
    """
    Build candles from a DataFrame.

    The frame needs 'open', 'high', 'low', 'close' columns ('volume' is
    optional). Times come from a 'time' or 'timestamp' column, or from a
    DatetimeIndex.
    """
    frame = df.rename(columns=str.lower)
    missing = [col for col in ('open', 'high', 'low', 'close') if col not in frame.columns]
    if missing:
        raise CandleSeriesError(f"DataFrame is missing columns: {missing}")

    if 'time' in frame.columns:
        times = frame['time']
    elif 'timestamp' in frame.columns:
        times = frame['timestamp']
    elif isinstance(frame.index, pd.DatetimeIndex):
        times = pd.Series(frame.index, index=frame.index)
    else:
        raise CandleSeriesError("DataFrame needs a 'time' column or a DatetimeIndex")

    volumes = frame['volume'] if 'volume' in frame.columns else pd.Series(0.0, index=frame.index)

    return [
        Candle(
            time=to_epoch_ms(t),
            open=float(o),
            high=float(h),
            low=float(l),
            close=float(c),
            volume=float(v),
        )
        for t, o, h, l, c, v in zip(
            times, frame['open'], frame['high'], frame['low'], frame['close'], volumes
        )
    ]


def candles_to_dataframe(candles: Sequence[Candle]) -> pd.DataFrame:
    """Candles as a DataFrame indexed by UTC bar time"""
    df = pd.DataFrame([c.to_dict() for c in candles],
                      columns=['time', 'open', 'high', 'low', 'close', 'volume'])
    df.index = pd.to_datetime(df['time'], unit='ms', utc=True)
    df.index.name = 'datetime'
    return df


def as_candles(data: CandleInput) -> List[Candle]:
    """Normalise any supported candle input to a list of Candle"""
    if isinstance(data, pd.DataFrame):
        return candles_from_dataframe(data)

    candles = []
    for item in data:
        if isinstance(item, Candle):
            candles.append(item)
        elif isinstance(item, Mapping):
            candles.append(_candle_from_mapping(item))
        else:
            raise CandleSeriesError(f"Unsupported candle value: {item!r}")
    return candles


def load_candles_csv(path: str) -> List[Candle]:
    """Read candles from a CSV file with pandas and validate them"""
    df = pd.read_csv(path)
    if 'time' not in df.columns and 'timestamp' not in df.columns:
        # first column as datetime index, the usual OHLCV export layout
        df = pd.read_csv(path, index_col=0, parse_dates=True)
    candles = candles_from_dataframe(df)
    validate_candles(candles)
    logger.info(f"Loaded {len(candles)} candles from {path}")
    return candles


# =============================================================================
# VALIDATION
# =============================================================================

def validate_candles(candles: Sequence[Candle]) -> None:
    """Check ordering, uniqueness and high/low sanity"""
    previous: Optional[Candle] = None
    for index, candle in enumerate(candles):
        if candle.high < candle.low:
            raise CandleSeriesError(
                f"Candle {index} has high {candle.high} below low {candle.low}"
            )
        if previous is not None and candle.time <= previous.time:
            raise CandleSeriesError(
                f"Candle {index} time {candle.time} is not after {previous.time}"
            )
        previous = candle


def require_candles(candles: Sequence[Any], minimum: int, operation: str) -> None:
    """Fail fast when fewer than ``minimum`` candles are available"""
    if len(candles) < minimum:
        raise InsufficientDataError(operation, minimum, len(candles))


def closes(candles: Iterable[Candle]) -> np.ndarray:
    return np.array([c.close for c in candles], dtype=float)


def volumes(candles: Iterable[Candle]) -> np.ndarray:
    return np.array([c.volume for c in candles], dtype=float)


# =============================================================================
# SYNTHETIC DATA
# =============================================================================

def generate_synthetic_candles(
    count: int,
    start_price: float = 100.0,
    drift: float = 0.0,
    volatility: float = 0.01,
    seed: Optional[int] = None,
    interval_minutes: int = 60,
    start_time: Optional[datetime] = None,
) -> List[Candle]:
    """
    Generate a seeded random-walk OHLCV series.

    Args:
        count: Number of candles
        start_price: Opening price of the first candle
        drift: Mean per-bar return (0.005 = +0.5% per bar)
        volatility: Standard deviation of per-bar returns
        seed: Seed for numpy's random generator
        interval_minutes: Bar spacing
        start_time: Time of the first bar (defaults to 2024-01-01 UTC)

    Returns:
        List of candles, oldest first
    """
    rng = np.random.default_rng(seed)
    if start_time is None:
        start_time = datetime(2024, 1, 1, tzinfo=pytz.utc)
    start_ms = to_epoch_ms(start_time)
    step_ms = int(timedelta(minutes=interval_minutes).total_seconds() * 1000)

    candles = []
    price = start_price
    for i in range(count):
        open_price = price
        close_price = open_price * (1 + rng.normal(drift, volatility))
        wick = abs(rng.normal(0, volatility * 0.5))
        high_price = max(open_price, close_price) * (1 + wick)
        low_price = min(open_price, close_price) * (1 - wick)
        candles.append(Candle(
            time=start_ms + i * step_ms,
            open=float(open_price),
            high=float(high_price),
            low=float(low_price),
            close=float(close_price),
            volume=float(rng.integers(100, 1000)),
        ))
        price = close_price

    return candles
