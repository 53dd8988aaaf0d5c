"""
Liquidity Handler
Swing-level sweeps ("stop hunts") for the market-structure analyzer

Key Concepts Implemented:
- Buy-Side Liquidity: stops resting above swing highs
- Sell-Side Liquidity: stops resting below swing lows
- Swing points: a candle higher/lower than both neighbours
- Liquidity Sweep: a later candle pierces the swing level by more than 0.1%
- Reversal: the candle after the sweep closes back on the other side
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from candle_series import Candle, CandleInput, as_candles

logger = logging.getLogger(__name__)


# ==================== ENUMS ====================

class LiquiditySide(Enum):
    """Side of liquidity (where stops are resting)"""
    BUY_SIDE = "buy_side"       # Above swing highs
    SELL_SIDE = "sell_side"     # Below swing lows


# ==================== DATA CLASSES ====================

@dataclass(frozen=True)
class SwingPoint:
    """Local swing high or low"""
    index: int
    price: float


@dataclass(frozen=True)
class LiquiditySweep:
    """A swing level taken out by a later candle"""
    sweep_type: str             # 'buy_side' or 'sell_side'
    level: float                # swept swing price
    swept_at: int               # time of the sweeping candle
    price_after_sweep: float    # close of the candle after the sweep
    reversal: bool

    def to_dict(self) -> Dict:
        return asdict(self)

    def __str__(self):
        rev = " -> REVERSAL" if self.reversal else ""
        return f"{self.sweep_type} sweep @ {self.level:.5f}{rev}"


# ==================== MAIN HANDLER ====================

class LiquidityHandler:
    """
    Liquidity sweep detector

    Swing highs and lows are collected first; every candle from
    ``scan_start`` onward is then checked against every swing formed more
    than ``min_separation`` bars before it.
    """

    def __init__(self,
                 pierce_percent: float = 0.1,
                 min_separation: int = 3,
                 scan_start: int = 5,
                 max_tracked: int = 10):
        """
        Initialize Liquidity Handler

        Args:
            pierce_percent: How far past the level (in %) price must trade
            min_separation: Bars between the swing and the sweeping candle
            scan_start: First candle index scanned for sweeps
            max_tracked: Number of most recent sweeps to keep
        """
        self.pierce_percent = pierce_percent
        self.min_separation = min_separation
        self.scan_start = scan_start
        self.max_tracked = max_tracked

        self.swing_highs: List[SwingPoint] = []
        self.swing_lows: List[SwingPoint] = []
        self.sweeps: List[LiquiditySweep] = []

    # ==================== SWING POINTS ====================

    def find_swing_points(self, candles: Sequence[Candle]) -> Tuple[List[SwingPoint], List[SwingPoint]]:
        """Swing highs and lows, scanned from index 2 to n - 2"""
        highs: List[SwingPoint] = []
        lows: List[SwingPoint] = []

        for i in range(2, len(candles) - 1):
            prev, curr, nxt = candles[i - 1], candles[i], candles[i + 1]

            if prev.high < curr.high and nxt.high < curr.high:
                highs.append(SwingPoint(index=i, price=curr.high))

            if prev.low > curr.low and nxt.low > curr.low:
                lows.append(SwingPoint(index=i, price=curr.low))

        return highs, lows

    # ==================== SWEEPS ====================

    def detect_liquidity_sweeps(self, data: CandleInput) -> List[LiquiditySweep]:
        """
        Detect liquidity sweeps

        Args:
            data: Candle series, oldest first

        Returns:
            Most recent ``max_tracked`` sweeps, in scan order
        """
        candles = as_candles(data)
        self.swing_highs, self.swing_lows = self.find_swing_points(candles)

        upper = 1 + self.pierce_percent / 100
        lower = 1 - self.pierce_percent / 100
        sweeps: List[LiquiditySweep] = []

        for i in range(self.scan_start, len(candles)):
            candle = candles[i]
            after = candles[i + 1] if i + 1 < len(candles) else candle

            for swing in self.swing_highs:
                if swing.index < i - self.min_separation and candle.high > swing.price * upper:
                    sweeps.append(LiquiditySweep(
                        sweep_type=LiquiditySide.BUY_SIDE.value,
                        level=swing.price,
                        swept_at=candle.time,
                        price_after_sweep=after.close,
                        reversal=after.close < swing.price,
                    ))

            for swing in self.swing_lows:
                if swing.index < i - self.min_separation and candle.low < swing.price * lower:
                    sweeps.append(LiquiditySweep(
                        sweep_type=LiquiditySide.SELL_SIDE.value,
                        level=swing.price,
                        swept_at=candle.time,
                        price_after_sweep=after.close,
                        reversal=after.close > swing.price,
                    ))

        self.sweeps = sweeps[-self.max_tracked:]
        logger.debug(f"Found {len(self.swing_highs)} swing highs, {len(self.swing_lows)} swing lows, "
                     f"{len(sweeps)} sweeps")
        return list(self.sweeps)


def latest_reversal(sweeps: Sequence[LiquiditySweep], side: LiquiditySide) -> Optional[LiquiditySweep]:
    """Most recent sweep on ``side`` that reversed"""
    for sweep in reversed(sweeps):
        if sweep.sweep_type == side.value and sweep.reversal:
            return sweep
    return None
