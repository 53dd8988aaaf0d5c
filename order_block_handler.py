"""
Order Block Handler
Strong-bodied candles printed against the prior short-term trend

Key Concepts Implemented:
- Bullish Order Block: up-close candle after a net down-close run
- Bearish Order Block: down-close candle after a net up-close run
- Strength: body as a percentage of the candle's full range (> 50% required)
- Tested flag: evaluated once, against the single next candle
- Sliding window: only the most recent blocks are kept
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, List, Optional, Sequence
import logging

from candle_series import Candle, CandleInput, as_candles

logger = logging.getLogger(__name__)


# ==================== ENUMS ====================

class OrderBlockType(Enum):
    """Order block classification"""
    BULLISH = "bullish"     # Up-close candle after a down-close run
    BEARISH = "bearish"     # Down-close candle after an up-close run


# ==================== DATA CLASSES ====================

@dataclass(frozen=True)
class OrderBlock:
    """Order block bounded by the candle body"""
    block_type: str         # 'bullish' or 'bearish'
    price_high: float       # top of body
    price_low: float        # bottom of body
    strength: float         # body / range x 100, capped at 100
    timestamp: int
    tested: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)

    def __str__(self):
        status = "TESTED" if self.tested else "UNTESTED"
        return (f"{self.block_type.upper()} OB [{status}] {self.price_low:.5f} - "
                f"{self.price_high:.5f} (strength {self.strength:.0f})")


# ==================== MAIN HANDLER ====================

class OrderBlockHandler:
    """
    Order block detector

    For every candle with two predecessors and one successor, the signed
    bodies of the two preceding candles give a coarse prior trend. A candle
    that closes against that trend with a dominant body becomes a block.
    """

    def __init__(self,
                 min_strength: float = 50.0,
                 trend_lookback: int = 2,
                 max_tracked: int = 10):
        """
        Initialize Order Block Handler

        Args:
            min_strength: Minimum body/range percentage
            trend_lookback: Number of preceding candles summed for the prior trend
            max_tracked: Number of most recent blocks to keep
        """
        self.min_strength = min_strength
        self.trend_lookback = trend_lookback
        self.max_tracked = max_tracked

        self.order_blocks: List[OrderBlock] = []

    def detect_order_blocks(self, data: CandleInput) -> List[OrderBlock]:
        """
        Detect order blocks

        Args:
            data: Candle series, oldest first

        Returns:
            Most recent ``max_tracked`` blocks, oldest first
        """
        candles = as_candles(data)
        blocks: List[OrderBlock] = []

        for i in range(self.trend_lookback + 1, len(candles)):
            candle = candles[i - 1]
            next_candle = candles[i]
            prior = candles[i - 1 - self.trend_lookback:i - 1]
            prior_trend = sum(c.body for c in prior)

            if candle.range <= 0:
                continue

            if candle.is_bullish and prior_trend < 0:
                block = self._create_block(OrderBlockType.BULLISH, candle,
                                           tested=next_candle.low <= candle.high)
                if block is not None:
                    blocks.append(block)

            elif candle.is_bearish and prior_trend > 0:
                block = self._create_block(OrderBlockType.BEARISH, candle,
                                           tested=next_candle.high >= candle.low)
                if block is not None:
                    blocks.append(block)

        self.order_blocks = blocks[-self.max_tracked:]
        logger.debug(f"Detected {len(blocks)} order blocks, keeping {len(self.order_blocks)}")
        return list(self.order_blocks)

    def _create_block(self, block_type: OrderBlockType, candle: Candle,
                      tested: bool) -> Optional[OrderBlock]:
        strength = abs(candle.body) / candle.range * 100
        if strength <= self.min_strength:
            return None

        return OrderBlock(
            block_type=block_type.value,
            price_high=max(candle.open, candle.close),
            price_low=min(candle.open, candle.close),
            strength=min(strength, 100.0),
            timestamp=candle.time,
            tested=tested,
        )


def latest_untested(blocks: Sequence[OrderBlock], block_type: str) -> Optional[OrderBlock]:
    """Most recent untested block of the given type"""
    for block in reversed(blocks):
        if block.block_type == block_type and not block.tested:
            return block
    return None
