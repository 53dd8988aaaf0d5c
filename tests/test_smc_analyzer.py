import json
import logging
from datetime import datetime

import pytest
import pytz

import smc_analyzer
from candle_series import InsufficientDataError
from conftest import HOUR_MS, START_MS, candles_from_closes
from fvg_handler import FairValueGap
from liquidity_handler import LiquiditySweep
from market_structure_handler import MarketStructure
from order_block_handler import OrderBlock
from reinforcement_learning_agent import Action
from smc_analyzer import SMCAnalysis, SMCAnalyzer, determine_bias, round_half_up
from timeframe_handler import TimeframeHandler

LONDON = datetime(2024, 1, 1, 9, tzinfo=pytz.utc)
QUIET = datetime(2024, 1, 1, 17, tzinfo=pytz.utc)


def block(block_type='bullish', tested=False):
    return OrderBlock(block_type, 104.0, 101.0, 75.0, START_MS, tested)


def gap(gap_type='bullish', filled=False):
    return FairValueGap(gap_type, 101.0, 103.0, 2.0, 1.9, START_MS, filled)


def sweep(sweep_type='sell_side', reversal=True):
    return LiquiditySweep(sweep_type, 98.5, START_MS, 99.0, reversal)


def make_analysis(bias, confidence, structure='bullish', order_blocks=(), fvgs=(),
                  sweeps=(), at=QUIET):
    kill_zones = TimeframeHandler().get_kill_zones(at)
    return SMCAnalysis(
        symbol='BTCUSDT',
        timestamp=0,
        kill_zones=kill_zones,
        active_kill_zone=next((kz for kz in kill_zones if kz.is_active), None),
        fair_value_gaps=list(fvgs),
        order_blocks=list(order_blocks),
        liquidity_sweeps=list(sweeps),
        market_structure=structure,
        bias=bias,
        confidence_score=confidence,
    )


def test_round_half_up():
    assert round_half_up(62.5) == 63
    assert round_half_up(40.4) == 40
    assert round_half_up(0.5) == 1


class TestDetermineBias:
    def test_structure_blocks_and_gaps_add_up(self):
        bias, confidence = determine_bias(MarketStructure.BULLISH, [block(), block()], [gap()], [])
        assert bias == 'long'
        assert confidence == pytest.approx(58.0)

    def test_tested_and_filled_items_do_not_score(self):
        bias, confidence = determine_bias(MarketStructure.RANGING, [block(tested=True)],
                                          [gap(filled=True)], [sweep(reversal=False)])
        assert (bias, confidence) == ('neutral', 0.0)

    def test_only_recent_items_count(self):
        _, from_blocks = determine_bias(MarketStructure.BULLISH, [block()] * 7, [], [])
        assert from_blocks == pytest.approx(80.0)
        _, from_sweeps = determine_bias(MarketStructure.RANGING, [], [], [sweep()] * 4)
        assert from_sweeps == pytest.approx(45.0)

    def test_buy_side_reversal_is_bearish(self):
        bias, confidence = determine_bias(MarketStructure.BEARISH, [], [],
                                          [sweep('buy_side')])
        assert bias == 'short'
        assert confidence == pytest.approx(45.0)

    def test_margin_required_for_a_side(self):
        bias, confidence = determine_bias(MarketStructure.BULLISH,
                                          [block('bearish'), block('bearish')], [],
                                          [sweep('buy_side')])
        assert bias == 'neutral'
        assert confidence == pytest.approx(35.0)

    def test_confidence_caps(self):
        _, capped = determine_bias(MarketStructure.BULLISH, [block()] * 5, [gap()] * 5,
                                   [sweep()] * 3)
        assert capped == 95
        bias, neutral = determine_bias(
            MarketStructure.BULLISH,
            [block()] * 5,
            [gap('bearish')] * 5,
            [sweep('buy_side')] * 3,
        )
        assert bias == 'neutral'
        assert neutral == 50


class TestGenerateSignal:
    def test_sweep_setup_outside_kill_zone(self):
        signal = SMCAnalyzer().generate_signal(make_analysis('long', 70.0, sweeps=[sweep()]))
        assert signal.action is Action.BUY
        assert signal.reason == ("Sell-side liquidity swept with reversal confirmation. "
                                 "Market structure is bullish.")
        assert signal.confidence == 70
        assert signal.kill_zone_bonus is False

    def test_confluence_setup_inside_kill_zone(self):
        analysis = make_analysis('long', 70.0, order_blocks=[block()], fvgs=[gap()], at=LONDON)
        signal = SMCAnalyzer().generate_signal(analysis)
        assert signal.action is Action.BUY
        assert signal.confidence == 84
        assert signal.kill_zone_bonus is True
        assert signal.reason == ("Bullish order block and FVG confluence. Price expected to fill the gap."
                                 " Active during London Session - higher probability setup.")

    def test_kill_zone_boost_lifts_signal_over_threshold(self):
        analysis = make_analysis('long', 55.0, order_blocks=[block()], at=LONDON)
        signal = SMCAnalyzer().generate_signal(analysis)
        assert signal.action is Action.BUY
        assert signal.confidence == 66
        assert signal.reason.startswith("Untested bullish order block in bullish market structure.")

    def test_below_threshold_holds(self):
        signal = SMCAnalyzer().generate_signal(make_analysis('long', 55.0, order_blocks=[block()]))
        assert signal.action is Action.HOLD
        assert signal.confidence == 40
        assert signal.reason == "No clear SMC setup. Market structure is bullish. Waiting for confluence."

    def test_bias_without_setup_holds(self):
        analysis = make_analysis('long', 70.0, order_blocks=[block(tested=True)], fvgs=[gap()])
        signal = SMCAnalyzer().generate_signal(analysis)
        assert signal.action is Action.HOLD
        assert signal.confidence == 40

    def test_short_setup_rounds_half_up(self):
        analysis = make_analysis('short', 62.5, structure='bearish',
                                 order_blocks=[block('bearish')])
        signal = SMCAnalyzer().generate_signal(analysis)
        assert signal.action is Action.SELL
        assert signal.confidence == 63
        assert signal.reason == "Untested bearish order block in bearish market structure."

    def test_hold_in_kill_zone_has_no_suffix(self):
        signal = SMCAnalyzer().generate_signal(make_analysis('neutral', 50.0, structure='ranging',
                                                             at=LONDON))
        assert signal.action is Action.HOLD
        assert signal.kill_zone_bonus is True
        assert signal.confidence == 40
        assert "Active during" not in signal.reason

    def test_boost_is_capped(self):
        analysis = make_analysis('long', 90.0, sweeps=[sweep()], at=LONDON)
        assert SMCAnalyzer().generate_signal(analysis).confidence == 95

    def test_signal_to_dict(self):
        data = SMCAnalyzer().generate_signal(make_analysis('neutral', 10.0)).to_dict()
        assert data['action'] == 'hold'
        assert data['confidence'] == 10


class TestAnalyzeStructure:
    def test_requires_ten_candles(self):
        candles = candles_from_closes([100.0 + i for i in range(9)])
        with pytest.raises(InsufficientDataError):
            SMCAnalyzer().analyze_structure(candles)

    def test_kill_zone_pinned_to_given_instant(self, seeded_candles):
        at = START_MS + 9 * HOUR_MS
        analysis = SMCAnalyzer().analyze_structure(seeded_candles, symbol='ETHUSDT', at=at)
        assert analysis.symbol == 'ETHUSDT'
        assert analysis.timestamp == at
        assert analysis.active_kill_zone.name == "London Session"
        assert len(analysis.kill_zones) == 4
        assert analysis.market_structure in {'bullish', 'bearish', 'ranging'}
        assert analysis.bias in {'long', 'short', 'neutral'}
        assert len(analysis.fair_value_gaps) <= 10
        assert len(analysis.order_blocks) <= 10
        assert len(analysis.liquidity_sweeps) <= 10

    def test_injected_clock(self, seeded_candles):
        handler = TimeframeHandler(now_provider=lambda: QUIET)
        analysis = SMCAnalyzer(timeframe_handler=handler).analyze_structure(seeded_candles)
        assert analysis.active_kill_zone is None
        assert analysis.timestamp == int(QUIET.timestamp() * 1000)

    def test_rising_series_is_long_biased(self):
        candles = candles_from_closes([100 * 1.01 ** i for i in range(30)])
        analysis = SMCAnalyzer().analyze_structure(candles, at=QUIET)
        assert analysis.market_structure == 'bullish'
        assert analysis.bias == 'long'

    def test_analysis_is_deterministic_and_serialisable(self, seeded_candles):
        first = smc_analyzer.analyze_structure(seeded_candles, at=LONDON)
        second = smc_analyzer.analyze_structure(seeded_candles, at=LONDON)
        assert first == second
        data = json.loads(json.dumps(first.to_dict()))
        assert data['active_kill_zone']['name'] == "London Session"
        signal = smc_analyzer.generate_signal(first)
        assert signal.action in (Action.BUY, Action.SELL, Action.HOLD)

    def test_analysis_logged_under_signal_category(self, seeded_candles, caplog):
        with caplog.at_level(logging.DEBUG, logger="engine.signal"):
            SMCAnalyzer().analyze_structure(seeded_candles, symbol='BTCUSDT', at=QUIET)
        assert [r.name for r in caplog.records if r.getMessage().startswith("BTCUSDT: structure=")] \
            == ["engine.signal"]
