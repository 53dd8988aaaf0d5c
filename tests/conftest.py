import logging
from datetime import datetime

import pytest
import pytz

from candle_series import Candle, generate_synthetic_candles, to_epoch_ms
from logger import remove_engine_handlers

HOUR_MS = 3600 * 1000
START_MS = to_epoch_ms(datetime(2024, 1, 1, tzinfo=pytz.utc))


def candles_from_closes(closes, wick=0.005, volume=1000.0, start_ms=START_MS, step_ms=HOUR_MS):
    """Candles whose open is the previous close, with symmetric percentage wicks"""
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        open_price = prev
        candles.append(Candle(
            time=start_ms + i * step_ms,
            open=open_price,
            high=max(open_price, close) * (1 + wick),
            low=min(open_price, close) * (1 - wick),
            close=close,
            volume=volume,
        ))
        prev = close
    return candles


def bar(index, open_, high, low, close, volume=1000.0):
    return Candle(time=START_MS + index * HOUR_MS, open=open_, high=high, low=low,
                  close=close, volume=volume)


@pytest.fixture
def build_candles():
    return candles_from_closes


@pytest.fixture
def seeded_candles():
    """Fixed 100-candle random walk"""
    return generate_synthetic_candles(100, start_price=100.0, drift=0.001, volatility=0.015, seed=42)


@pytest.fixture
def pullback_uptrend():
    """
    60-candle uptrend: 0.5%/bar drift with a 2% noise term that is negative
    for bars 1-29 and positive for bars 30-59.

    The noise is fixed rather than random so the SMA strategy crosses at a
    known bar (34) and takes profit at bar 36. With random 2% noise many
    seeds never produce a winning SMA trade on a 60-bar uptrend.
    """
    closes = [100.0]
    for i in range(1, 60):
        noise = -0.02 if i < 30 else 0.02
        closes.append(closes[-1] * (1 + 0.005 + noise))
    return candles_from_closes(closes)


@pytest.fixture
def flat_candles():
    return [bar(i, 100.0, 100.0, 100.0, 100.0) for i in range(60)]


@pytest.fixture
def rising_candles():
    """Close +0.05% per bar, 0.2% wicks: no gaps between non-adjacent candles"""
    closes = [100.0 * 1.0005 ** i for i in range(60)]
    return candles_from_closes(closes, wick=0.002)


@pytest.fixture(autouse=True)
def _restore_logging():
    level = logging.getLogger().level
    yield
    remove_engine_handlers()
    logging.getLogger().setLevel(level)
