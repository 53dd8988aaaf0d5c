"""
Fair Value Gap (FVG) Handler
Three-candle imbalance detection for the market-structure analyzer

Key Concepts Implemented:
- Bullish FVG - candle 3's low above candle 1's high (price skipped upward)
- Bearish FVG - candle 1's low above candle 3's high (price skipped downward)
- Minimum size filter - gap must exceed 0.1% of the middle candle's close
- Fill check - evaluated once, against the candle right after the pattern
- Sliding window - only the most recent gaps are kept
"""

from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Sequence
import logging

from candle_series import Candle, CandleInput, as_candles

logger = logging.getLogger(__name__)


# ==================== DATA CLASSES ====================

@dataclass(frozen=True)
class FairValueGap:
    """
    A price range skipped between two non-adjacent candles.

    start_price is the lower bound and end_price the upper bound of the
    gap for both directions.
    """
    gap_type: str           # 'bullish' or 'bearish'
    start_price: float
    end_price: float
    gap_size: float
    gap_percent: float      # gap size as % of the middle candle's close
    timestamp: int          # middle (impulse) candle time
    filled: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)

    def __str__(self):
        status = "FILLED" if self.filled else "OPEN"
        return (f"{self.gap_type.upper()} FVG [{status}]: "
                f"{self.start_price:.5f} - {self.end_price:.5f} ({self.gap_percent:.2f}%)")


# ==================== MAIN HANDLER ====================

class FVGHandler:
    """
    Fair Value Gap detector

    A gap is recorded for window (i-2, i-1, i) when the outer candles do not
    overlap and the gap is larger than ``min_gap_percent`` of the middle
    candle's close.
    """

    def __init__(self, min_gap_percent: float = 0.1, max_tracked: int = 10):
        """
        Initialize FVG Handler

        Args:
            min_gap_percent: Minimum gap size as a percentage of the middle close
            max_tracked: Number of most recent gaps to keep
        """
        self.min_gap_percent = min_gap_percent
        self.max_tracked = max_tracked

        self.detected_fvgs: List[FairValueGap] = []

    # ==================== CORE FVG DETECTION ====================

    def detect_fair_value_gaps(self, data: CandleInput) -> List[FairValueGap]:
        """
        Detect Fair Value Gaps

        Args:
            data: Candle series, oldest first

        Returns:
            Most recent ``max_tracked`` gaps, oldest first
        """
        candles = as_candles(data)
        gaps: List[FairValueGap] = []

        for i in range(2, len(candles)):
            candle_1 = candles[i - 2]
            candle_2 = candles[i - 1]   # impulse candle
            candle_3 = candles[i]
            next_candle = candles[i + 1] if i + 1 < len(candles) else None

            if candle_2.close <= 0:
                continue

            # Bearish: candle 1's low sits above candle 3's high
            if candle_1.low > candle_3.high:
                gap = self._create_gap('bearish', candle_3.high, candle_1.low,
                                       candle_2, next_candle)
                if gap is not None:
                    gaps.append(gap)

            # Bullish: candle 3's low sits above candle 1's high
            if candle_3.low > candle_1.high:
                gap = self._create_gap('bullish', candle_1.high, candle_3.low,
                                       candle_2, next_candle)
                if gap is not None:
                    gaps.append(gap)

        self.detected_fvgs = gaps[-self.max_tracked:]
        logger.debug(f"Detected {len(gaps)} FVGs, keeping {len(self.detected_fvgs)}")
        return list(self.detected_fvgs)

    def _create_gap(self, gap_type: str, low: float, high: float,
                    impulse: Candle, next_candle: Optional[Candle]) -> Optional[FairValueGap]:
        size = high - low
        percent = size / impulse.close * 100
        if percent <= self.min_gap_percent:
            return None

        return FairValueGap(
            gap_type=gap_type,
            start_price=low,
            end_price=high,
            gap_size=size,
            gap_percent=percent,
            timestamp=impulse.time,
            filled=self._is_filled(gap_type, low, high, next_candle),
        )

    @staticmethod
    def _is_filled(gap_type: str, low: float, high: float,
                   next_candle: Optional[Candle]) -> bool:
        """A gap is filled when the following candle trades through it"""
        if next_candle is None:
            return False
        if gap_type == 'bullish':
            return next_candle.low <= low
        return next_candle.high >= high

    # ==================== QUERIES ====================

    def get_active_fvgs(self, gap_type: Optional[str] = None) -> List[FairValueGap]:
        """Unfilled gaps, optionally filtered by direction"""
        return [g for g in self.detected_fvgs
                if not g.filled and (gap_type is None or g.gap_type == gap_type)]


def latest_unfilled(gaps: Sequence[FairValueGap], gap_type: str) -> Optional[FairValueGap]:
    """Most recent unfilled gap of the given direction"""
    for gap in reversed(gaps):
        if gap.gap_type == gap_type and not gap.filled:
            return gap
    return None
