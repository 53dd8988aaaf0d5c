"""
SMC Analyzer - Market Structure Aggregation
===========================================

Single component that coordinates the structure handlers and turns their
output into a directional bias and a buy/sell/hold signal.

Components:
- timeframe_handler.py        kill zone clock
- market_structure_handler.py bullish / bearish / ranging
- order_block_handler.py      untested order blocks
- fvg_handler.py              unfilled fair value gaps
- liquidity_handler.py        swing sweeps with reversal

Bias scoring (recent 5 OBs, 5 FVGs, 3 sweeps):
- Market structure            30 points
- Untested order block        10 points each
- Unfilled fair value gap      8 points each
- Reversal sweep              15 points each (sell-side = bullish)

A side wins only when it beats the other by 20%. Signals need a bias
confidence of 60, boosted by 20% (max 95) inside an active kill zone.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import math

from candle_series import CandleInput, as_candles, require_candles, to_epoch_ms
from fvg_handler import FVGHandler, FairValueGap, latest_unfilled
from liquidity_handler import LiquidityHandler, LiquiditySide, LiquiditySweep, latest_reversal
from logger import LogCategory, get_category_logger
from market_structure_handler import MarketStructure, MarketStructureHandler
from order_block_handler import OrderBlock, OrderBlockHandler, latest_untested
from reinforcement_learning_agent import Action
from timeframe_handler import KillZone, TimeframeHandler, TimeInput

logger = get_category_logger(LogCategory.SIGNAL)

MIN_ANALYSIS_CANDLES = 10

STRUCTURE_POINTS = 30
ORDER_BLOCK_POINTS = 10
FVG_POINTS = 8
SWEEP_POINTS = 15
MAX_SCORE = 100
BIAS_MARGIN = 1.2

SIGNAL_THRESHOLD = 60
KILL_ZONE_BOOST = 1.2
MAX_CONFIDENCE = 95
NEUTRAL_CAP = 50
HOLD_CAP = 40


def round_half_up(value: float) -> int:
    """Round x.5 toward +infinity (Python's round() is banker's rounding)"""
    return int(math.floor(value + 0.5))


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class SMCAnalysis:
    """Complete market-structure analysis result"""
    symbol: str
    timestamp: int
    kill_zones: List[KillZone]
    active_kill_zone: Optional[KillZone]
    fair_value_gaps: List[FairValueGap]
    order_blocks: List[OrderBlock]
    liquidity_sweeps: List[LiquiditySweep]
    market_structure: str           # 'bullish' | 'bearish' | 'ranging'
    bias: str                       # 'long' | 'short' | 'neutral'
    confidence_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'timestamp': self.timestamp,
            'kill_zones': [kz.to_dict() for kz in self.kill_zones],
            'active_kill_zone': self.active_kill_zone.to_dict() if self.active_kill_zone else None,
            'fair_value_gaps': [g.to_dict() for g in self.fair_value_gaps],
            'order_blocks': [ob.to_dict() for ob in self.order_blocks],
            'liquidity_sweeps': [s.to_dict() for s in self.liquidity_sweeps],
            'market_structure': self.market_structure,
            'bias': self.bias,
            'confidence_score': self.confidence_score,
        }


@dataclass(frozen=True)
class SMCSignal:
    """Trading signal derived from an analysis"""
    action: Action
    reason: str
    confidence: int
    kill_zone_bonus: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'reason': self.reason,
            'confidence': self.confidence,
            'kill_zone_bonus': self.kill_zone_bonus,
        }


# =============================================================================
# ANALYZER
# =============================================================================

class SMCAnalyzer:
    """
    Coordinates the structure handlers

    Integrates:
    - TimeframeHandler
    - MarketStructureHandler
    - OrderBlockHandler
    - FVGHandler
    - LiquidityHandler
    """

    def __init__(self, timeframe_handler: Optional[TimeframeHandler] = None):
        self.timeframe_handler = timeframe_handler or TimeframeHandler()
        self.structure_handler = MarketStructureHandler()
        self.ob_handler = OrderBlockHandler()
        self.fvg_handler = FVGHandler()
        self.liq_handler = LiquidityHandler()

    def analyze_structure(self, candles: CandleInput, symbol: str = "",
                          at: TimeInput = None) -> SMCAnalysis:
        """
        Perform the full structure analysis

        Args:
            candles: Candle series, oldest first (at least 10)
            symbol: Instrument label carried into the result
            at: Instant for the kill zone clock (datetime or epoch ms);
                defaults to the handler's clock

        Returns:
            SMCAnalysis
        """
        series = as_candles(candles)
        require_candles(series, MIN_ANALYSIS_CANDLES, "SMC analysis")

        instant = self.timeframe_handler.now_provider() if at is None else at
        kill_zones = self.timeframe_handler.get_kill_zones(instant)
        active = next((kz for kz in kill_zones if kz.is_active), None)

        fvgs = self.fvg_handler.detect_fair_value_gaps(series)
        obs = self.ob_handler.detect_order_blocks(series)
        sweeps = self.liq_handler.detect_liquidity_sweeps(series)
        structure = self.structure_handler.classify(series)

        bias, confidence = determine_bias(structure, obs, fvgs, sweeps)

        logger.debug(f"{symbol or 'series'}: structure={structure.value} bias={bias} "
                     f"conf={confidence:.1f} fvgs={len(fvgs)} obs={len(obs)} sweeps={len(sweeps)}")

        return SMCAnalysis(
            symbol=symbol,
            timestamp=_timestamp_ms(instant),
            kill_zones=kill_zones,
            active_kill_zone=active,
            fair_value_gaps=fvgs,
            order_blocks=obs,
            liquidity_sweeps=sweeps,
            market_structure=structure.value,
            bias=bias,
            confidence_score=confidence,
        )

    def generate_signal(self, analysis: SMCAnalysis) -> SMCSignal:
        """Turn an analysis into buy / sell / hold"""
        in_kill_zone = analysis.active_kill_zone is not None
        confidence = analysis.confidence_score
        if in_kill_zone:
            confidence = min(confidence * KILL_ZONE_BOOST, MAX_CONFIDENCE)

        action = Action.HOLD
        reason = ""
        structure = analysis.market_structure

        if analysis.bias == 'long' and confidence >= SIGNAL_THRESHOLD:
            action, reason = _pick_setup(analysis, 'bullish', LiquiditySide.SELL_SIDE, Action.BUY)
        elif analysis.bias == 'short' and confidence >= SIGNAL_THRESHOLD:
            action, reason = _pick_setup(analysis, 'bearish', LiquiditySide.BUY_SIDE, Action.SELL)

        if action is Action.HOLD:
            reason = f"No clear SMC setup. Market structure is {structure}. Waiting for confluence."
            confidence = min(confidence, HOLD_CAP)
        elif in_kill_zone:
            reason += f" Active during {analysis.active_kill_zone.name} - higher probability setup."

        return SMCSignal(
            action=action,
            reason=reason,
            confidence=round_half_up(confidence),
            kill_zone_bonus=in_kill_zone,
        )


# =============================================================================
# SCORING
# =============================================================================

def determine_bias(structure: MarketStructure,
                   order_blocks: List[OrderBlock],
                   fvgs: List[FairValueGap],
                   sweeps: List[LiquiditySweep]) -> Tuple[str, float]:
    """Return (bias, confidence) from the detector output"""
    bullish = 0
    bearish = 0

    if structure is MarketStructure.BULLISH:
        bullish += STRUCTURE_POINTS
    elif structure is MarketStructure.BEARISH:
        bearish += STRUCTURE_POINTS

    for ob in order_blocks[-5:]:
        if ob.tested:
            continue
        if ob.block_type == 'bullish':
            bullish += ORDER_BLOCK_POINTS
        elif ob.block_type == 'bearish':
            bearish += ORDER_BLOCK_POINTS

    for fvg in fvgs[-5:]:
        if fvg.filled:
            continue
        if fvg.gap_type == 'bullish':
            bullish += FVG_POINTS
        elif fvg.gap_type == 'bearish':
            bearish += FVG_POINTS

    for sweep in sweeps[-3:]:
        if not sweep.reversal:
            continue
        if sweep.sweep_type == LiquiditySide.SELL_SIDE.value:
            bullish += SWEEP_POINTS
        elif sweep.sweep_type == LiquiditySide.BUY_SIDE.value:
            bearish += SWEEP_POINTS

    if bullish > bearish * BIAS_MARGIN:
        return 'long', min(bullish / MAX_SCORE * 100, MAX_CONFIDENCE)
    if bearish > bullish * BIAS_MARGIN:
        return 'short', min(bearish / MAX_SCORE * 100, MAX_CONFIDENCE)
    return 'neutral', min(max(bullish, bearish) / MAX_SCORE * 100, NEUTRAL_CAP)


def _pick_setup(analysis: SMCAnalysis, direction: str, swept_side: LiquiditySide,
                action: Action) -> Tuple[Action, str]:
    """Highest-priority setup for one direction: sweep, OB + FVG, then OB alone"""
    structure = analysis.market_structure
    sweep = latest_reversal(analysis.liquidity_sweeps, swept_side)
    block = latest_untested(analysis.order_blocks, direction)
    gap = latest_unfilled(analysis.fair_value_gaps, direction)
    side_label = "Sell-side" if swept_side is LiquiditySide.SELL_SIDE else "Buy-side"

    if sweep is not None:
        return action, (f"{side_label} liquidity swept with reversal confirmation. "
                        f"Market structure is {structure}.")
    if block is not None and gap is not None:
        return action, (f"{direction.capitalize()} order block and FVG confluence. "
                        f"Price expected to fill the gap.")
    if block is not None:
        return action, f"Untested {direction} order block in {structure} market structure."
    return Action.HOLD, ""


def _timestamp_ms(instant: Any) -> int:
    if isinstance(instant, datetime):
        return to_epoch_ms(instant)
    return int(instant)


# =============================================================================
# MODULE-LEVEL API
# =============================================================================

def analyze_structure(candles: CandleInput, symbol: str = "",
                      at: TimeInput = None) -> SMCAnalysis:
    """Analyze ``candles`` with a default analyzer"""
    return SMCAnalyzer().analyze_structure(candles, symbol=symbol, at=at)


def generate_signal(analysis: SMCAnalysis) -> SMCSignal:
    return SMCAnalyzer().generate_signal(analysis)
