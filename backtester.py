"""
Backtesting Framework
=====================

Deterministic bar-by-bar replay of a rule-based strategy over a candle
series, with stop-loss / take-profit exits and summary statistics.

Strategies:
- RSI       buy below the buy threshold, sell above the sell threshold
- MACD      histogram sign flip between the previous and current bar
- SMA       close crossing its moving average
- COMBINED  at least 2 of the RSI / MACD / SMA votes agree
- SMC       market-structure analyzer signal over the trailing 20 candles,
            hold while fewer than 20 are available

Bar loop (from bar 30):
1. Strategy signal from history up to and including the bar
2. When long: stop-loss, then take-profit, then sell signal
3. When flat: buy signal enters with all capital
4. Equity and drawdown every bar, equity curve sample every 5th bar

Metrics:
- Win rate and profit factor over exit trades
- Max drawdown at full bar resolution
- Sharpe ratio over the sampled equity curve (sharpe_ratio) and over
  every bar (sharpe_ratio_precise)
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
import logging
import math

import numpy as np
import pandas as pd

from candle_series import Candle, CandleInput, as_candles, closes, require_candles
from logger import LogCategory, get_category_logger
from reinforcement_learning_agent import Action
from smc_analyzer import SMCAnalyzer
import technical_indicators as ti

logger = get_category_logger(LogCategory.BACKTEST)

MIN_BACKTEST_CANDLES = 50
SMC_WINDOW = 20
TRADING_DAYS = 252


# =============================================================================
# ENUMS
# =============================================================================

class StrategyType(Enum):
    """Built-in strategies"""
    RSI = "rsi"
    MACD = "macd"
    SMA = "sma"
    COMBINED = "combined"
    SMC = "smc"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def signal_label(self) -> str:
        """Prefix for trade reasons"""
        return _SIGNAL_LABELS[self]

    @classmethod
    def parse(cls, value: Union['StrategyType', str]) -> 'StrategyType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValueError(f"Unknown strategy {value!r} (expected one of: {valid})") from None


_DISPLAY_NAMES = {
    StrategyType.RSI: "RSI Strategy",
    StrategyType.MACD: "MACD Strategy",
    StrategyType.SMA: "SMA Crossover",
    StrategyType.COMBINED: "Combined Strategy",
    StrategyType.SMC: "Smart Money Concepts",
}

_SIGNAL_LABELS = {
    StrategyType.RSI: "RSI",
    StrategyType.MACD: "MACD",
    StrategyType.SMA: "SMA Crossover",
    StrategyType.COMBINED: "Combined Strategy",
    StrategyType.SMC: "Smart Money Concepts",
}


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class BacktestConfig:
    """Backtest configuration"""
    strategy: StrategyType = StrategyType.SMA
    symbol: str = ""
    initial_capital: float = 10000.0

    # Strategy parameters
    rsi_period: int = 14
    rsi_buy_threshold: float = 30.0
    rsi_sell_threshold: float = 70.0
    macd_fast_period: int = 12
    macd_slow_period: int = 26
    macd_signal_period: int = 9
    sma_period: int = 20

    # Risk parameters (percent from entry)
    stop_loss_percent: float = 2.0
    take_profit_percent: float = 5.0

    # Simulation
    warmup_bars: int = 30
    equity_sample_interval: int = 5

    def __post_init__(self):
        object.__setattr__(self, 'strategy', StrategyType.parse(self.strategy))

        if self.initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got {self.initial_capital}")
        for name in ('rsi_period', 'macd_fast_period', 'macd_slow_period',
                     'macd_signal_period', 'sma_period', 'equity_sample_interval'):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1, got {getattr(self, name)}")
        if not 0 <= self.rsi_buy_threshold < self.rsi_sell_threshold <= 100:
            raise ValueError(
                f"RSI thresholds must satisfy 0 <= buy < sell <= 100, "
                f"got {self.rsi_buy_threshold} / {self.rsi_sell_threshold}"
            )
        if self.macd_fast_period >= self.macd_slow_period:
            raise ValueError("macd_fast_period must be below macd_slow_period")
        if self.stop_loss_percent <= 0 or self.take_profit_percent <= 0:
            raise ValueError("stop_loss_percent and take_profit_percent must be positive")
        if not 1 <= self.warmup_bars < MIN_BACKTEST_CANDLES:
            raise ValueError(f"warmup_bars must be in [1, {MIN_BACKTEST_CANDLES}), got {self.warmup_bars}")

    def parameters(self) -> Dict[str, Any]:
        return {
            'strategy': self.strategy.value,
            'rsi_period': self.rsi_period,
            'rsi_buy_threshold': self.rsi_buy_threshold,
            'rsi_sell_threshold': self.rsi_sell_threshold,
            'macd_fast_period': self.macd_fast_period,
            'macd_slow_period': self.macd_slow_period,
            'macd_signal_period': self.macd_signal_period,
            'sma_period': self.sma_period,
            'stop_loss_percent': self.stop_loss_percent,
            'take_profit_percent': self.take_profit_percent,
        }


@dataclass(frozen=True)
class BacktestTrade:
    """Single fill"""
    timestamp: int
    trade_type: str         # 'buy' or 'sell'
    price: float
    quantity: float
    value: float
    pnl: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EquityPoint:
    timestamp: int
    equity: float
    drawdown: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BacktestResult:
    """Complete backtest result"""
    strategy_name: str
    symbol: str
    start_date: datetime
    end_date: datetime
    initial_capital: float
    final_capital: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    profit_factor: float
    max_drawdown: float
    sharpe_ratio: float
    sharpe_ratio_precise: float
    total_return: float
    total_return_percent: float
    trades: List[BacktestTrade] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'strategy_name': self.strategy_name,
            'symbol': self.symbol,
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'initial_capital': self.initial_capital,
            'final_capital': self.final_capital,
            'total_trades': self.total_trades,
            'winning_trades': self.winning_trades,
            'losing_trades': self.losing_trades,
            'win_rate': self.win_rate,
            'profit_factor': self.profit_factor,
            'max_drawdown': self.max_drawdown,
            'sharpe_ratio': self.sharpe_ratio,
            'sharpe_ratio_precise': self.sharpe_ratio_precise,
            'total_return': self.total_return,
            'total_return_percent': self.total_return_percent,
            'trades': [t.to_dict() for t in self.trades],
            'equity_curve': [p.to_dict() for p in self.equity_curve],
            'parameters': dict(self.parameters),
        }

    def trades_frame(self) -> pd.DataFrame:
        """Trades as a DataFrame indexed by UTC fill time"""
        df = pd.DataFrame([t.to_dict() for t in self.trades],
                          columns=['timestamp', 'trade_type', 'price', 'quantity',
                                   'value', 'pnl', 'reason'])
        df.index = pd.to_datetime(df['timestamp'], unit='ms', utc=True)
        df.index.name = 'datetime'
        return df

    def equity_frame(self) -> pd.DataFrame:
        """Sampled equity curve as a DataFrame indexed by UTC time"""
        df = pd.DataFrame([p.to_dict() for p in self.equity_curve],
                          columns=['timestamp', 'equity', 'drawdown'])
        df.index = pd.to_datetime(df['timestamp'], unit='ms', utc=True)
        df.index.name = 'datetime'
        return df


# =============================================================================
# PERFORMANCE CALCULATOR
# =============================================================================

def sharpe_ratio(equity: Sequence[float], periods: int = TRADING_DAYS) -> float:
    """
    Annualised Sharpe ratio of consecutive equity returns.

    Population standard deviation; 0 when there are no returns or the
    deviation is zero.
    """
    values = np.asarray(equity, dtype=float)
    if len(values) < 2:
        return 0.0
    returns = np.diff(values) / values[:-1]
    std = float(np.std(returns))
    if std == 0:
        return 0.0
    return float(np.mean(returns)) / std * math.sqrt(periods)


def profit_factor(pnls: Iterable[float]) -> float:
    """Gross profit / gross loss, 0 when there is no loss"""
    gross_profit = 0.0
    gross_loss = 0.0
    for pnl in pnls:
        if pnl > 0:
            gross_profit += pnl
        else:
            gross_loss += -pnl
    if gross_loss > 0:
        return gross_profit / gross_loss
    return 0.0


# =============================================================================
# BACKTEST ENGINE
# =============================================================================

class BacktestEngine:
    """
    Bar-by-bar backtest engine

    Long-only, all-in position sizing. Signals see only candles up to and
    including the current bar.
    """

    def __init__(self, config: BacktestConfig, smc_analyzer: Optional[SMCAnalyzer] = None):
        self.config = config
        self.smc_analyzer = smc_analyzer or SMCAnalyzer()
        self.reset()

    def reset(self):
        """Reset run state"""
        self.capital = self.config.initial_capital
        self.position = 0.0
        self.entry_price = 0.0
        self.max_equity = self.config.initial_capital
        self.max_drawdown = 0.0
        self.trades: List[BacktestTrade] = []
        self.equity_curve: List[EquityPoint] = []
        self.bar_equity: List[float] = []

    def run(self, candles: CandleInput) -> BacktestResult:
        """
        Run the backtest

        Args:
            candles: At least 50 candles, oldest first

        Returns:
            BacktestResult
        """
        series = as_candles(candles)
        require_candles(series, MIN_BACKTEST_CANDLES, "backtesting")
        self.reset()

        cfg = self.config
        prices = closes(series)
        last_index = len(series) - 1

        logger.info(f"Backtest {cfg.strategy.display_name} on {cfg.symbol or 'series'}: "
                    f"{len(series)} bars, capital {cfg.initial_capital:,.2f}")

        for i in range(cfg.warmup_bars, len(series)):
            bar = series[i]
            signal = self.get_signal(prices[:i + 1], series[:i + 1])

            if self.position > 0:
                pnl_percent = (bar.close - self.entry_price) / self.entry_price * 100
                if pnl_percent <= -cfg.stop_loss_percent:
                    self._close_position(bar, "Stop Loss")
                elif pnl_percent >= cfg.take_profit_percent:
                    self._close_position(bar, "Take Profit")
                elif signal is Action.SELL:
                    self._close_position(bar, f"{cfg.strategy.signal_label} Sell Signal")
            elif signal is Action.BUY and self.capital > 0:
                self._open_position(bar)

            self._update_equity(bar, sample=(i % cfg.equity_sample_interval == 0 or i == last_index))

        if self.position > 0:
            self._close_position(series[-1], "End of Backtest")

        result = self._build_result(series)
        logger.info(f"Backtest finished: final {result.final_capital:,.2f} "
                    f"({result.total_return_percent:+.2f}%), {result.total_trades} trades, "
                    f"max DD {result.max_drawdown:.2f}%")
        return result

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------

    def get_signal(self, prices: np.ndarray, history: Sequence[Candle]) -> Action:
        strategy = self.config.strategy
        if strategy is StrategyType.RSI:
            return self.rsi_signal(prices)
        if strategy is StrategyType.MACD:
            return self.macd_signal(prices)
        if strategy is StrategyType.SMA:
            return self.sma_signal(prices)
        if strategy is StrategyType.COMBINED:
            return self.combined_signal(prices)
        return self.smc_signal(history)

    def rsi_signal(self, prices: np.ndarray) -> Action:
        value = ti.rsi(prices, self.config.rsi_period)
        if value < self.config.rsi_buy_threshold:
            return Action.BUY
        if value > self.config.rsi_sell_threshold:
            return Action.SELL
        return Action.HOLD

    def macd_signal(self, prices: np.ndarray) -> Action:
        cfg = self.config
        if len(prices) < cfg.macd_slow_period + 2:
            return Action.HOLD

        current = ti.macd(prices, cfg.macd_fast_period, cfg.macd_slow_period, cfg.macd_signal_period)
        previous = ti.macd(prices[:-1], cfg.macd_fast_period, cfg.macd_slow_period, cfg.macd_signal_period)

        if previous.histogram < 0 < current.histogram:
            return Action.BUY
        if previous.histogram > 0 > current.histogram:
            return Action.SELL
        return Action.HOLD

    def sma_signal(self, prices: np.ndarray) -> Action:
        period = self.config.sma_period
        price, prev_price = prices[-1], prices[-2]
        average = ti.sma(prices, period)
        prev_average = ti.sma(prices[:-1], period)

        if prev_price < prev_average and price > average:
            return Action.BUY
        if prev_price > prev_average and price < average:
            return Action.SELL
        return Action.HOLD

    def combined_signal(self, prices: np.ndarray) -> Action:
        votes = [self.rsi_signal(prices), self.macd_signal(prices), self.sma_signal(prices)]
        if votes.count(Action.BUY) >= 2:
            return Action.BUY
        if votes.count(Action.SELL) >= 2:
            return Action.SELL
        return Action.HOLD

    def smc_signal(self, history: Sequence[Candle]) -> Action:
        """Analyzer signal with the kill zone clock pinned to the bar time"""
        if len(history) < SMC_WINDOW:
            return Action.HOLD
        window = list(history[-SMC_WINDOW:])
        analysis = self.smc_analyzer.analyze_structure(window, symbol=self.config.symbol,
                                                       at=window[-1].time)
        return self.smc_analyzer.generate_signal(analysis).action

    # -------------------------------------------------------------------------
    # Position handling
    # -------------------------------------------------------------------------

    def _open_position(self, bar: Candle):
        self.position = self.capital / bar.close
        self.entry_price = bar.close
        self.trades.append(BacktestTrade(
            timestamp=bar.time,
            trade_type='buy',
            price=bar.close,
            quantity=self.position,
            value=self.capital,
            pnl=0.0,
            reason=f"{self.config.strategy.signal_label} Buy Signal",
        ))
        logger.debug(f"BUY {self.position:.6f} @ {bar.close:.5f}")
        self.capital = 0.0

    def _close_position(self, bar: Candle, reason: str):
        value = self.position * bar.close
        pnl = value - self.position * self.entry_price
        self.trades.append(BacktestTrade(
            timestamp=bar.time,
            trade_type='sell',
            price=bar.close,
            quantity=self.position,
            value=value,
            pnl=pnl,
            reason=reason,
        ))
        logger.debug(f"SELL {self.position:.6f} @ {bar.close:.5f} pnl={pnl:+.2f} ({reason})")
        self.capital = value
        self.position = 0.0
        self.entry_price = 0.0

    def _update_equity(self, bar: Candle, sample: bool):
        equity = self.capital + self.position * bar.close
        self.max_equity = max(self.max_equity, equity)
        drawdown = (self.max_equity - equity) / self.max_equity * 100
        self.max_drawdown = max(self.max_drawdown, drawdown)
        self.bar_equity.append(equity)
        if sample:
            self.equity_curve.append(EquityPoint(timestamp=bar.time, equity=equity, drawdown=drawdown))

    def _build_result(self, series: Sequence[Candle]) -> BacktestResult:
        cfg = self.config
        exits = [t for t in self.trades if t.trade_type == 'sell']
        winners = [t for t in exits if t.pnl > 0]
        total_return = self.capital - cfg.initial_capital

        return BacktestResult(
            strategy_name=cfg.strategy.display_name,
            symbol=cfg.symbol,
            start_date=series[0].datetime,
            end_date=series[-1].datetime,
            initial_capital=cfg.initial_capital,
            final_capital=self.capital,
            total_trades=len(self.trades),
            winning_trades=len(winners),
            losing_trades=len(exits) - len(winners),
            win_rate=len(winners) / len(exits) * 100 if exits else 0.0,
            profit_factor=profit_factor(t.pnl for t in exits),
            max_drawdown=self.max_drawdown,
            sharpe_ratio=sharpe_ratio([p.equity for p in self.equity_curve]),
            sharpe_ratio_precise=sharpe_ratio(self.bar_equity),
            total_return=total_return,
            total_return_percent=total_return / cfg.initial_capital * 100,
            trades=list(self.trades),
            equity_curve=list(self.equity_curve),
            parameters=cfg.parameters(),
        )


# =============================================================================
# MODULE-LEVEL API
# =============================================================================

def run_backtest(candles: CandleInput,
                 strategy: Union[StrategyType, str] = StrategyType.SMA,
                 symbol: str = "",
                 initial_capital: float = 10000.0,
                 **options) -> BacktestResult:
    """
    Build a config from keyword options and run one backtest

    Example:
        run_backtest(candles, "sma", "BTCUSDT", 10000, sma_period=20)
    """
    config = BacktestConfig(strategy=StrategyType.parse(strategy), symbol=symbol,
                            initial_capital=initial_capital, **options)
    return BacktestEngine(config).run(candles)


def compare_strategies(candles: CandleInput,
                       strategies: Optional[Iterable[Union[StrategyType, str]]] = None,
                       symbol: str = "",
                       initial_capital: float = 10000.0,
                       **options) -> Dict[str, BacktestResult]:
    """Run several strategies on the same candles, keyed by strategy id"""
    series = as_candles(candles)
    chosen = [StrategyType.parse(s) for s in (strategies or list(StrategyType))]
    results = {}
    for strategy in chosen:
        results[strategy.value] = run_backtest(series, strategy, symbol, initial_capital, **options)
    return results


if __name__ == "__main__":
    from candle_series import generate_synthetic_candles

    logging.basicConfig(level=logging.INFO)
    data = generate_synthetic_candles(300, drift=0.001, volatility=0.012, seed=42)

    print(f"{'Strategy':<24}{'Return %':>10}{'Trades':>8}{'Win %':>8}{'Max DD %':>10}{'Sharpe':>8}")
    for name, res in compare_strategies(data, symbol="DEMO").items():
        print(f"{res.strategy_name:<24}{res.total_return_percent:>10.2f}{res.total_trades:>8}"
              f"{res.win_rate:>8.1f}{res.max_drawdown:>10.2f}{res.sharpe_ratio:>8.2f}")
