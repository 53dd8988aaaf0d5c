"""
Technical Indicator Library
===========================

Stateless indicator functions shared by the RL agent and the backtester.

Indicators:
- SMA / EMA            - moving averages (EMA seeded with the SMA)
- RSI                  - average gain / average loss over the last N deltas
- MACD                 - EMA(fast) - EMA(slow), signal line, histogram
- Volatility           - std-dev of one-bar returns x 100
- Trend Strength       - % deviation of the close from its SMA

Short histories are not errors. Every function returns a neutral
fallback during warm-up:
- SMA / EMA -> last price (0.0 for an empty series)
- RSI       -> 50
- MACD      -> 0 / 0 / 0
- Volatility and Trend Strength -> 0
"""

from dataclasses import dataclass, asdict
from typing import Dict, Sequence

import numpy as np

from candle_series import CandleInput, as_candles, closes


# =============================================================================
# MOVING AVERAGES
# =============================================================================

def sma(prices: Sequence[float], period: int) -> float:
    """Simple moving average of the last ``period`` prices"""
    values = np.asarray(prices, dtype=float)
    if len(values) == 0:
        return 0.0
    if len(values) < period:
        return float(values[-1])
    return float(np.mean(values[-period:]))


def ema(prices: Sequence[float], period: int) -> float:
    """
    Exponential moving average over the whole series.

    Seeded with the SMA of the first ``period`` prices, then updated bar by
    bar with k = 2 / (period + 1).
    """
    values = np.asarray(prices, dtype=float)
    if len(values) == 0:
        return 0.0
    if len(values) < period:
        return float(values[-1])

    k = 2.0 / (period + 1)
    value = float(np.mean(values[:period]))
    for price in values[period:]:
        value = price * k + value * (1 - k)
    return float(value)


# =============================================================================
# OSCILLATORS
# =============================================================================

def rsi(prices: Sequence[float], period: int = 14) -> float:
    """
    Relative Strength Index over the most recent ``period`` deltas.

    Returns 50 with fewer than ``period + 1`` prices and exactly 100 when
    the average loss is zero.
    """
    values = np.asarray(prices, dtype=float)
    if len(values) < period + 1:
        return 50.0

    deltas = np.diff(values[-(period + 1):])
    avg_gain = float(np.sum(deltas[deltas > 0])) / period
    avg_loss = float(-np.sum(deltas[deltas < 0])) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


@dataclass(frozen=True)
class MACDResult:
    """MACD line, signal line and histogram for the latest bar"""
    macd: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0

    @property
    def direction(self) -> int:
        """Sign of the histogram: 1, -1 or 0"""
        if self.histogram > 0:
            return 1
        if self.histogram < 0:
            return -1
        return 0


def macd(prices: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
    """
    MACD with a signal line built from the full MACD history.

    Both EMAs are seeded with their SMA and advanced bar by bar so that one
    MACD point exists for every bar from index ``slow`` onward; the signal
    line is the EMA of that series.
    """
    values = np.asarray(prices, dtype=float)
    if len(values) < slow:
        return MACDResult()

    macd_value = ema(values, fast) - ema(values, slow)

    k_fast = 2.0 / (fast + 1)
    k_slow = 2.0 / (slow + 1)
    fast_value = float(np.mean(values[:fast]))
    slow_value = float(np.mean(values[:slow]))
    macd_line = []

    for i, price in enumerate(values):
        if i >= fast:
            fast_value = price * k_fast + fast_value * (1 - k_fast)
        if i >= slow:
            slow_value = price * k_slow + slow_value * (1 - k_slow)
            macd_line.append(fast_value - slow_value)

    signal_value = ema(macd_line, signal) if len(macd_line) >= signal else 0.0

    return MACDResult(
        macd=float(macd_value),
        signal=float(signal_value),
        histogram=float(macd_value - signal_value),
    )


# =============================================================================
# CANDLE-BASED MEASURES
# =============================================================================

def volatility(candles: CandleInput, period: int = 14) -> float:
    """Population std-dev of the trailing ``period`` one-bar returns, x100"""
    prices = closes(as_candles(candles))
    if len(prices) < period + 1:
        return 0.0

    window = prices[-(period + 1):]
    returns = np.diff(window) / window[:-1]
    return float(np.std(returns) * 100)


def trend_strength(candles: CandleInput, period: int = 20) -> float:
    """Percentage distance of the last close from its ``period`` SMA"""
    prices = closes(as_candles(candles))
    if len(prices) < period:
        return 0.0

    average = float(np.mean(prices[-period:]))
    if average == 0:
        return 0.0
    return (float(prices[-1]) - average) / average * 100


# =============================================================================
# SNAPSHOT
# =============================================================================

@dataclass(frozen=True)
class IndicatorSnapshot:
    """All indicators for the latest bar of a series"""
    price: float
    sma: float
    ema: float
    rsi: float
    macd: MACDResult
    volatility: float
    trend_strength: float

    def to_dict(self) -> Dict:
        return asdict(self)


def compute_indicators(
    candles: CandleInput,
    sma_period: int = 20,
    ema_period: int = 20,
    rsi_period: int = 14,
    macd_fast: int = 12,
    macd_slow: int = 26,
    macd_signal: int = 9,
    volatility_period: int = 14,
    trend_period: int = 20,
) -> IndicatorSnapshot:
    """Compute every indicator for the latest bar of ``candles``"""
    series = as_candles(candles)
    prices = closes(series)

    return IndicatorSnapshot(
        price=float(prices[-1]) if len(prices) else 0.0,
        sma=sma(prices, sma_period),
        ema=ema(prices, ema_period),
        rsi=rsi(prices, rsi_period),
        macd=macd(prices, macd_fast, macd_slow, macd_signal),
        volatility=volatility(series, volatility_period),
        trend_strength=trend_strength(series, trend_period),
    )
