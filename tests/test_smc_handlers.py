from datetime import datetime

import pytest
import pytz

from conftest import HOUR_MS, START_MS, bar, candles_from_closes
from fvg_handler import FVGHandler
from liquidity_handler import LiquidityHandler, LiquiditySide
from market_structure_handler import MarketStructure, MarketStructureHandler
from order_block_handler import OrderBlockHandler, OrderBlockType
from timeframe_handler import TimeframeHandler, utc_hour


def bullish_gap_window():
    return [
        bar(0, 100.0, 101.0, 99.0, 100.5),
        bar(1, 100.5, 106.0, 100.4, 105.5),
        bar(2, 105.5, 107.0, 103.0, 106.0),
    ]


class TestFVGHandler:
    def test_bullish_gap(self):
        gaps = FVGHandler().detect_fair_value_gaps(bullish_gap_window())
        assert len(gaps) == 1
        gap = gaps[0]
        assert gap.gap_type == 'bullish'
        assert (gap.start_price, gap.end_price) == (101.0, 103.0)
        assert gap.gap_size == pytest.approx(2.0)
        assert gap.gap_percent == pytest.approx(2.0 / 105.5 * 100)
        assert gap.timestamp == START_MS + HOUR_MS
        assert gap.filled is False

    def test_bullish_gap_filled_by_next_candle(self):
        candles = bullish_gap_window() + [bar(3, 106.0, 106.5, 100.8, 101.5)]
        assert FVGHandler().detect_fair_value_gaps(candles)[0].filled is True

    def test_bullish_gap_not_filled_when_next_candle_holds(self):
        candles = bullish_gap_window() + [bar(3, 106.0, 108.0, 104.0, 107.5)]
        assert FVGHandler().detect_fair_value_gaps(candles)[0].filled is False

    def test_bearish_gap(self):
        candles = [
            bar(0, 106.0, 107.0, 105.0, 105.5),
            bar(1, 105.5, 105.6, 100.0, 100.5),
            bar(2, 100.5, 103.0, 99.0, 99.5),
            bar(3, 99.5, 105.2, 99.0, 104.0),
        ]
        gaps = FVGHandler().detect_fair_value_gaps(candles)
        assert [g.gap_type for g in gaps] == ['bearish']
        assert (gaps[0].start_price, gaps[0].end_price) == (103.0, 105.0)
        assert gaps[0].filled is True

    def test_small_gap_ignored(self):
        candles = [
            bar(0, 100.0, 100.0, 99.0, 99.9),
            bar(1, 99.9, 100.2, 99.8, 100.1),
            bar(2, 100.1, 100.3, 100.05, 100.2),
        ]
        assert FVGHandler().detect_fair_value_gaps(candles) == []

    def test_monotonic_rise_without_retracement_has_no_gaps(self, rising_candles):
        assert FVGHandler().detect_fair_value_gaps(rising_candles) == []

    def test_keeps_most_recent_ten(self):
        closes = [100 * 1.05 ** i for i in range(20)]
        candles = candles_from_closes(closes, wick=0.001)
        handler = FVGHandler()
        gaps = handler.detect_fair_value_gaps(candles)
        assert len(gaps) == 10
        assert gaps[-1].timestamp == candles[-2].time
        assert gaps[0].timestamp == candles[9].time
        assert len(handler.get_active_fvgs('bullish')) == 10


def order_block_candles(next_low):
    return [
        bar(0, 105.0, 105.5, 102.5, 103.0),
        bar(1, 103.0, 103.5, 100.5, 101.0),
        bar(2, 101.0, 104.5, 100.5, 104.0),
        bar(3, 104.5, 107.5, next_low, 107.0),
    ]


class TestOrderBlockHandler:
    def test_bullish_block_after_down_run(self):
        blocks = OrderBlockHandler().detect_order_blocks(order_block_candles(next_low=104.6))
        assert len(blocks) == 1
        block = blocks[0]
        assert block.block_type == OrderBlockType.BULLISH.value
        assert (block.price_low, block.price_high) == (101.0, 104.0)
        assert block.strength == pytest.approx(75.0)
        assert block.timestamp == START_MS + 2 * HOUR_MS
        assert block.tested is False

    def test_tested_by_next_candle(self):
        blocks = OrderBlockHandler().detect_order_blocks(order_block_candles(next_low=103.8))
        assert blocks[0].tested is True

    def test_bearish_block_after_up_run(self):
        candles = [
            bar(0, 100.0, 102.2, 99.8, 102.0),
            bar(1, 102.0, 104.2, 101.8, 104.0),
            bar(2, 104.0, 104.5, 100.5, 101.0),
            bar(3, 100.0, 100.4, 98.0, 98.5),
        ]
        blocks = OrderBlockHandler().detect_order_blocks(candles)
        assert [b.block_type for b in blocks] == ['bearish']
        assert blocks[0].tested is False

    def test_weak_body_ignored(self):
        candles = order_block_candles(next_low=104.6)
        candles[2] = bar(2, 101.0, 103.5, 99.5, 102.0)
        assert OrderBlockHandler().detect_order_blocks(candles) == []

    def test_zero_range_candle_skipped(self):
        candles = order_block_candles(next_low=104.6)
        candles[2] = bar(2, 101.0, 101.0, 101.0, 101.0)
        assert OrderBlockHandler().detect_order_blocks(candles) == []

    def test_needs_predecessors_and_successor(self):
        assert OrderBlockHandler().detect_order_blocks(order_block_candles(104.6)[:3]) == []


def sweep_candles(after_close, after_high):
    return [
        bar(0, 99.0, 100.0, 98.0, 99.0),
        bar(1, 99.0, 101.0, 99.0, 100.0),
        bar(2, 100.0, 105.0, 100.0, 102.0),
        bar(3, 101.0, 101.0, 99.0, 100.0),
        bar(4, 100.0, 100.5, 98.5, 99.5),
        bar(5, 99.5, 100.6, 98.6, 99.6),
        bar(6, 99.6, 105.2, 99.0, 104.0),
        bar(7, 104.0, after_high, 100.0, after_close),
        bar(8, 103.5, 104.0, 103.0, 103.5),
    ]


class TestLiquidityHandler:
    def test_swing_points(self):
        highs, lows = LiquidityHandler().find_swing_points(sweep_candles(104.5, 104.5))
        assert [(s.index, s.price) for s in highs] == [(2, 105.0), (6, 105.2)]
        assert [(s.index, s.price) for s in lows] == [(4, 98.5)]

    def test_buy_side_sweep_with_reversal(self):
        sweeps = LiquidityHandler().detect_liquidity_sweeps(sweep_candles(104.5, 104.5))
        assert len(sweeps) == 1
        sweep = sweeps[0]
        assert sweep.sweep_type == LiquiditySide.BUY_SIDE.value
        assert sweep.level == 105.0
        assert sweep.swept_at == START_MS + 6 * HOUR_MS
        assert sweep.price_after_sweep == 104.5
        assert sweep.reversal is True

    def test_sweep_without_reversal(self):
        sweeps = LiquidityHandler().detect_liquidity_sweeps(sweep_candles(106.0, 106.5))
        assert sweeps[0].swept_at == START_MS + 6 * HOUR_MS
        assert sweeps[0].reversal is False

    def test_pierce_must_exceed_threshold(self):
        candles = sweep_candles(104.5, 104.5)
        candles[6] = bar(6, 99.6, 105.1, 99.0, 104.0)
        assert LiquidityHandler().detect_liquidity_sweeps(candles) == []

    def test_sell_side_sweep(self):
        closes = [100, 99, 98, 99, 100, 100.5, 100.2, 99.5, 96.5, 99.0]
        candles = [bar(i, c, c + 0.5, c - 0.5, c) for i, c in enumerate(closes)]
        sweeps = LiquidityHandler().detect_liquidity_sweeps(candles)
        sell_side = [s for s in sweeps if s.sweep_type == 'sell_side']
        assert len(sell_side) == 1
        assert sell_side[0].level == 97.5
        assert sell_side[0].reversal is True


class TestMarketStructureHandler:
    def test_too_few_candles_is_ranging(self):
        candles = candles_from_closes([100 * 1.01 ** i for i in range(9)])
        assert MarketStructureHandler().classify(candles) is MarketStructure.RANGING

    def test_rising_series_is_bullish(self):
        candles = candles_from_closes([100 * 1.01 ** i for i in range(30)])
        assert MarketStructureHandler().classify(candles) is MarketStructure.BULLISH

    def test_falling_series_is_bearish(self):
        candles = candles_from_closes([100 * 0.99 ** i for i in range(30)])
        assert MarketStructureHandler().classify(candles) is MarketStructure.BEARISH

    def test_flat_series_is_ranging(self, flat_candles):
        assert MarketStructureHandler().classify(flat_candles) is MarketStructure.RANGING


class TestTimeframeHandler:
    @pytest.mark.parametrize("hour, expected", [
        (0, "Asian Session"),
        (7, "Asian Session"),
        (8, "London Session"),
        (11, "London Session"),
        (12, None),
        (13, "NY AM Session"),
        (16, None),
        (19, "NY PM Session"),
        (21, None),
    ])
    def test_active_kill_zone_by_hour(self, hour, expected):
        at = datetime(2024, 1, 1, hour, 30, tzinfo=pytz.utc)
        active = TimeframeHandler().get_active_kill_zone(at)
        assert (active.name if active else None) == expected

    def test_all_zones_returned_with_one_active(self):
        zones = TimeframeHandler().get_kill_zones(datetime(2024, 1, 1, 9, tzinfo=pytz.utc))
        assert [z.name for z in zones] == ["Asian Session", "London Session", "NY AM Session", "NY PM Session"]
        assert [z.is_active for z in zones] == [False, True, False, False]
        assert zones[1].description == "High volatility, major moves initiate here"

    def test_epoch_milliseconds_and_timezones(self):
        eastern = pytz.timezone('US/Eastern').localize(datetime(2024, 1, 1, 4))
        assert utc_hour(eastern) == 9
        assert utc_hour(START_MS + 14 * HOUR_MS) == 14
        assert utc_hour(datetime(2024, 1, 1, 20)) == 20

    def test_clock_is_injectable(self):
        handler = TimeframeHandler(now_provider=lambda: datetime(2024, 1, 1, 14, tzinfo=pytz.utc))
        assert handler.get_active_kill_zone().name == "NY AM Session"
