"""
Decision Engine Command Line
============================

Run the engine over a local OHLCV CSV file or a generated random walk and
print the result as JSON.

Usage:
    algot-engine indicators --csv btc_1h.csv
    algot-engine smc --synthetic 200 --symbol BTCUSDT
    algot-engine backtest --csv btc_1h.csv --strategy combined
    algot-engine backtest --synthetic 300 --strategy all
    algot-engine train --csv btc_1h.csv --episodes 20 --save agent.json
    algot-engine predict --csv btc_1h.csv --load agent.json
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from backtester import StrategyType, compare_strategies, run_backtest
from candle_series import Candle, EngineError, generate_synthetic_candles, load_candles_csv
from engine_config import EngineSettings
from logger import LogCategory, get_category_logger, setup_logging
from reinforcement_learning_agent import RLTradingAgent
from smc_analyzer import SMCAnalyzer
from technical_indicators import compute_indicators

logger = get_category_logger(LogCategory.SYSTEM)


# =============================================================================
# ARGUMENTS
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="algot-engine",
                                     description="Algorithmic trading decision engine")
    parser.add_argument('--log-level', type=str, default=None, help='Log level (default from ALGOT_LOG_LEVEL)')
    parser.add_argument('--log-json', action='store_true', help='JSON log lines')
    parser.add_argument('--log-file', type=str, default=None, help='Rotating log file path')

    common = argparse.ArgumentParser(add_help=False)
    source = common.add_mutually_exclusive_group(required=True)
    source.add_argument('--csv', type=str, help='OHLCV CSV file')
    source.add_argument('--synthetic', type=int, metavar='N', help='Generate N random-walk candles')
    common.add_argument('--symbol', type=str, default='', help='Instrument label')
    common.add_argument('--seed', type=int, default=None, help='Random seed')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('indicators', parents=[common], help='Indicator snapshot for the last bar')

    smc = sub.add_parser('smc', parents=[common], help='Market-structure analysis and signal')
    smc.add_argument('--at-last-bar', action='store_true',
                     help='Evaluate kill zones at the last candle time instead of now')

    backtest = sub.add_parser('backtest', parents=[common], help='Backtest a strategy')
    backtest.add_argument('--strategy', type=str, default='sma',
                          choices=[s.value for s in StrategyType] + ['all'])
    backtest.add_argument('--capital', type=float, default=None, help='Initial capital')
    backtest.add_argument('--stop-loss', type=float, default=2.0, help='Stop loss %%')
    backtest.add_argument('--take-profit', type=float, default=5.0, help='Take profit %%')
    backtest.add_argument('--sma-period', type=int, default=20)
    backtest.add_argument('--rsi-period', type=int, default=14)
    backtest.add_argument('--trades', action='store_true', help='Include trades and equity curve')

    train = sub.add_parser('train', parents=[common], help='Train the RL agent')
    train.add_argument('--episodes', type=int, default=1)
    train.add_argument('--capital', type=float, default=None, help='Initial capital')
    train.add_argument('--load', type=str, default=None, help='Checkpoint to continue from')
    train.add_argument('--save', type=str, default=None, help='Write checkpoint JSON here')

    predict = sub.add_parser('predict', parents=[common], help='Greedy prediction for the last bar')
    predict.add_argument('--load', type=str, default=None, help='Checkpoint JSON')

    return parser


# =============================================================================
# COMMANDS
# =============================================================================

def _load_candles(args) -> List[Candle]:
    if args.csv:
        return load_candles_csv(args.csv)
    return generate_synthetic_candles(args.synthetic, seed=args.seed)


def _load_agent(path: Optional[str], settings: EngineSettings, seed: Optional[int]) -> RLTradingAgent:
    if path:
        state = json.loads(Path(path).read_text())
        logger.info(f"Loaded agent checkpoint from {path}")
        return RLTradingAgent.from_state(state, seed=seed)
    return RLTradingAgent(settings.agent, seed=seed)


def cmd_indicators(args, settings: EngineSettings) -> Dict[str, Any]:
    snapshot = compute_indicators(_load_candles(args))
    return snapshot.to_dict()


def cmd_smc(args, settings: EngineSettings) -> Dict[str, Any]:
    candles = _load_candles(args)
    analyzer = SMCAnalyzer()
    at = candles[-1].time if args.at_last_bar else None
    analysis = analyzer.analyze_structure(candles, symbol=args.symbol, at=at)
    signal = analyzer.generate_signal(analysis)
    return {'analysis': analysis.to_dict(), 'signal': signal.to_dict()}


def cmd_backtest(args, settings: EngineSettings) -> Dict[str, Any]:
    candles = _load_candles(args)
    capital = args.capital if args.capital is not None else settings.initial_capital
    options = dict(stop_loss_percent=args.stop_loss, take_profit_percent=args.take_profit,
                   sma_period=args.sma_period, rsi_period=args.rsi_period)

    if args.strategy == 'all':
        results = compare_strategies(candles, symbol=args.symbol, initial_capital=capital, **options)
    else:
        results = {args.strategy: run_backtest(candles, args.strategy, args.symbol, capital, **options)}

    output = {}
    for key, result in results.items():
        data = result.to_dict()
        if not args.trades:
            data.pop('trades')
            data.pop('equity_curve')
        output[key] = data
    return output


def cmd_train(args, settings: EngineSettings) -> Dict[str, Any]:
    candles = _load_candles(args)
    capital = args.capital if args.capital is not None else settings.initial_capital
    agent = _load_agent(args.load, settings, args.seed)

    results = agent.train_episodes(candles, episodes=args.episodes, initial_capital=capital)

    if args.save:
        Path(args.save).write_text(json.dumps(agent.export_state()))
        logger.info(f"Saved agent checkpoint to {args.save}")

    return {
        'episodes': [r.to_dict() for r in results],
        'stats': agent.get_stats().to_dict(),
    }


def cmd_predict(args, settings: EngineSettings) -> Dict[str, Any]:
    candles = _load_candles(args)
    agent = _load_agent(args.load, settings, args.seed)
    return agent.predict(candles).to_dict()


COMMANDS = {
    'indicators': cmd_indicators,
    'smc': cmd_smc,
    'backtest': cmd_backtest,
    'train': cmd_train,
    'predict': cmd_predict,
}


# =============================================================================
# MAIN
# =============================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings.from_env()
    except ValueError as e:
        print(f"Invalid environment configuration: {e}", file=sys.stderr)
        return 2

    if args.seed is None:
        args.seed = settings.seed

    setup_logging(level=args.log_level or settings.log_level,
                  json_format=args.log_json or settings.log_json,
                  log_file=args.log_file or settings.log_file)
    logger.info(f"Running {args.command}")

    try:
        output = COMMANDS[args.command](args, settings)
    except (EngineError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
