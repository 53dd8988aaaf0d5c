"""
Market Structure Handler
Higher-high / lower-low counting over a trailing window

Key Concepts Implemented:
- Bullish structure: higher highs and higher lows dominate
- Bearish structure: lower highs and lower lows dominate
- Ranging: neither side dominates by the required margin
"""

from enum import Enum
import logging

from candle_series import CandleInput, as_candles

logger = logging.getLogger(__name__)


class MarketStructure(Enum):
    """Market structure classification"""
    BULLISH = "bullish"
    BEARISH = "bearish"
    RANGING = "ranging"


class MarketStructureHandler:
    """
    Market structure classifier

    Each candle in the trailing ``window`` is compared with the candle
    ``stride`` bars before it. A side wins only when its score exceeds the
    other side's by the ``dominance`` factor.
    """

    def __init__(self,
                 window: int = 20,
                 stride: int = 4,
                 dominance: float = 1.3,
                 min_candles: int = 10):
        self.window = window
        self.stride = stride
        self.dominance = dominance
        self.min_candles = min_candles

    def score(self, data: CandleInput):
        """Return (bullish_score, bearish_score) for the trailing window"""
        candles = as_candles(data)[-self.window:]

        higher_highs = higher_lows = lower_highs = lower_lows = 0
        for i in range(self.stride, len(candles)):
            curr = candles[i]
            prev = candles[i - self.stride]

            if curr.high > prev.high:
                higher_highs += 1
            if curr.low < prev.low:
                lower_lows += 1
            if curr.low > prev.low:
                higher_lows += 1
            if curr.high < prev.high:
                lower_highs += 1

        return higher_highs + higher_lows, lower_lows + lower_highs

    def classify(self, data: CandleInput) -> MarketStructure:
        """Classify the trailing window as bullish, bearish or ranging"""
        candles = as_candles(data)
        if len(candles) < self.min_candles:
            return MarketStructure.RANGING

        bullish, bearish = self.score(candles)

        if bullish > bearish * self.dominance:
            structure = MarketStructure.BULLISH
        elif bearish > bullish * self.dominance:
            structure = MarketStructure.BEARISH
        else:
            structure = MarketStructure.RANGING

        logger.debug(f"Structure {structure.value}: bullish={bullish} bearish={bearish}")
        return structure
