"""
Reinforcement Learning Agent - Tabular Q-Learning
=================================================

Learns a buy / sell / hold policy by simulated trading over a candle
series. Continuous indicator features are bucketed into a small discrete
state key and action values are kept in a sparse Q-table.

RL Training Loop (one episode):
1. Slide a 30-bar window across the series
2. Observe state (price change, RSI, MACD direction, volume change,
   trend strength, volatility)
3. Select action (epsilon-greedy)
4. Simulate capital / position and receive reward
5. Store experience in the bounded replay buffer
6. Replay a random batch through the Q-learning update
7. Force-close at the last close, decay exploration

Rewards:
- buy:  forward one-bar return x100 while in a position
- sell: realised profit / exit value x100, -0.1 when flat
- hold: forward one-bar return x50 in a position, -0.05 when flat

Q update:
    Q(s,a) += alpha * (r + gamma * max_a' Q(s',a') - Q(s,a))
"""

from collections import deque
from dataclasses import dataclass, asdict, replace
from enum import Enum
from typing import Any, Deque, Dict, List, Mapping, NamedTuple, Optional, Union
import logging
import math

import numpy as np

from candle_series import CandleInput, as_candles, require_candles
from logger import LogCategory, get_category_logger
import technical_indicators as ti

logger = get_category_logger(LogCategory.TRAINING)

MIN_TRAIN_CANDLES = 50
MIN_PREDICT_CANDLES = 30
MIN_STATE_CANDLES = 27


# =============================================================================
# ENUMERATIONS
# =============================================================================

class Action(Enum):
    """Trading decision for one step"""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


# Tie-break order for greedy selection
ACTIONS = (Action.BUY, Action.SELL, Action.HOLD)


# =============================================================================
# STATE REPRESENTATION
# =============================================================================

def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class MarketState:
    """Clamped feature vector for the latest bar of a window"""
    price_change: float = 0.0       # % close change, [-10, 10]
    rsi: float = 50.0               # [0, 100]
    macd_signal: int = 0            # histogram sign, -1 / 0 / 1
    volume_change: float = 0.0      # % volume change, [-100, 100]
    trend_strength: float = 0.0     # % from SMA(20), [-10, 10]
    volatility: float = 0.0         # [0, 10]

    @classmethod
    def neutral(cls) -> 'MarketState':
        return cls()

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


class StateKey(NamedTuple):
    """Discretised state used as the Q-table key"""
    price_level: int
    rsi_level: int
    macd_level: int
    volume_level: int
    trend_level: int
    volatility_level: int

    def to_string(self) -> str:
        return "_".join(str(level) for level in self)

    @classmethod
    def from_string(cls, key: str) -> 'StateKey':
        parts = key.split("_")
        if len(parts) != len(cls._fields):
            raise ValueError(f"Malformed state key: {key!r}")
        return cls(*(int(p) for p in parts))


@dataclass(frozen=True)
class QValues:
    """Action values for one state"""
    buy: float = 0.0
    sell: float = 0.0
    hold: float = 0.0

    def get(self, action: Action) -> float:
        return getattr(self, action.value)

    def with_value(self, action: Action, value: float) -> 'QValues':
        return replace(self, **{action.value: value})

    def best_action(self) -> Action:
        """Greedy action, ties broken buy >= sell >= hold"""
        if self.buy >= self.sell and self.buy >= self.hold:
            return Action.BUY
        if self.sell >= self.buy and self.sell >= self.hold:
            return Action.SELL
        return Action.HOLD

    def max_value(self) -> float:
        return max(self.buy, self.sell, self.hold)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


class QTable:
    """
    Sparse map from StateKey to QValues.

    Lookups of unseen states return zeros without creating an entry; only
    ``set`` adds states.
    """

    def __init__(self, entries: Optional[Mapping[StateKey, QValues]] = None):
        self._entries: Dict[StateKey, QValues] = dict(entries or {})

    def get(self, key: StateKey) -> QValues:
        return self._entries.get(key, QValues())

    def set(self, key: StateKey, values: QValues):
        self._entries[key] = values

    def items(self):
        return self._entries.items()

    def copy(self) -> 'QTable':
        return QTable(self._entries)

    def __contains__(self, key: StateKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        return {key.to_string(): values.to_dict() for key, values in self._entries.items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Mapping[str, float]]) -> 'QTable':
        table = cls()
        for key, values in data.items():
            table.set(StateKey.from_string(key), QValues(
                buy=float(values.get('buy', 0.0)),
                sell=float(values.get('sell', 0.0)),
                hold=float(values.get('hold', 0.0)),
            ))
        return table


# =============================================================================
# EXPERIENCE REPLAY
# =============================================================================

@dataclass(frozen=True)
class Experience:
    """Single transition for the replay buffer"""
    state: StateKey
    action: Action
    reward: float
    next_state: StateKey
    done: bool


class ReplayBuffer:
    """Bounded FIFO experience buffer with uniform sampling"""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self.buffer: Deque[Experience] = deque(maxlen=capacity)

    def add(self, experience: Experience):
        self.buffer.append(experience)

    def sample(self, batch_size: int, rng: np.random.Generator) -> List[Experience]:
        """Uniform sample with replacement"""
        if not self.buffer:
            return []
        indices = rng.integers(0, len(self.buffer), size=batch_size)
        return [self.buffer[i] for i in indices]

    def clear(self):
        self.buffer.clear()

    def __len__(self) -> int:
        return len(self.buffer)


# =============================================================================
# CONFIGURATION AND RESULTS
# =============================================================================

@dataclass(frozen=True)
class AgentConfig:
    """RL hyperparameters"""
    learning_rate: float = 0.001
    discount_factor: float = 0.95
    exploration_rate: float = 0.1       # starting epsilon
    exploration_decay: float = 0.995
    min_exploration: float = 0.01
    batch_size: int = 32
    memory_size: int = 10000
    window_size: int = 30

    def __post_init__(self):
        if not 0 < self.learning_rate <= 1:
            raise ValueError(f"learning_rate must be in (0, 1], got {self.learning_rate}")
        if not 0 <= self.discount_factor <= 1:
            raise ValueError(f"discount_factor must be in [0, 1], got {self.discount_factor}")
        if not 0 <= self.exploration_rate <= 1:
            raise ValueError(f"exploration_rate must be in [0, 1], got {self.exploration_rate}")
        if not 0 < self.exploration_decay <= 1:
            raise ValueError(f"exploration_decay must be in (0, 1], got {self.exploration_decay}")
        if not 0 <= self.min_exploration <= 1:
            raise ValueError(f"min_exploration must be in [0, 1], got {self.min_exploration}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.memory_size < 1:
            raise ValueError(f"memory_size must be positive, got {self.memory_size}")
        if not MIN_STATE_CANDLES - 1 <= self.window_size < MIN_TRAIN_CANDLES - 1:
            raise ValueError(
                f"window_size must be in [{MIN_STATE_CANDLES - 1}, {MIN_TRAIN_CANDLES - 1}), "
                f"got {self.window_size}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TrainingResult:
    """Statistics for one training episode"""
    episode_number: int
    total_reward: float
    total_actions: int
    buy_actions: int
    sell_actions: int
    hold_actions: int
    starting_capital: float
    ending_capital: float
    profit_loss: float
    profit_loss_percent: float
    max_drawdown: float
    win_rate: float
    exploration_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Prediction:
    """Greedy decision for the latest bar"""
    action: Action
    confidence: float
    q_values: QValues
    state_features: MarketState

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'confidence': self.confidence,
            'q_values': self.q_values.to_dict(),
            'state_features': self.state_features.to_dict(),
        }


@dataclass(frozen=True)
class AgentStats:
    total_episodes: int
    total_reward: float
    avg_reward: float
    exploration_rate: float
    states_learned: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# AGENT
# =============================================================================

class RLTradingAgent:
    """
    Tabular Q-learning trading agent

    One instance owns its Q-table, replay buffer and hyperparameters. The
    configuration is an immutable value; ``set_config`` swaps in a new one.
    """

    def __init__(self, config: Optional[AgentConfig] = None,
                 q_table: Optional[Union[QTable, Mapping[str, Mapping[str, float]]]] = None,
                 seed: Optional[int] = None):
        """
        Initialize agent

        Args:
            config: Hyperparameters (defaults when omitted)
            q_table: Existing Q-table or its plain-dict export
            seed: Seed for the exploration / replay random generator
        """
        self.config = config or AgentConfig()
        self.q_table = QTable()
        if q_table is not None:
            self.load_q_table(q_table)
        self.replay_buffer = ReplayBuffer(self.config.memory_size)
        self.exploration_rate = self.config.exploration_rate
        self.rng = np.random.default_rng(seed)

        self.total_episodes = 0
        self.total_reward = 0.0

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def extract_state(self, candles: CandleInput) -> MarketState:
        """Feature vector for the last bar; neutral below 27 candles"""
        series = as_candles(candles)
        if len(series) < MIN_STATE_CANDLES:
            return MarketState.neutral()

        last, prev = series[-1], series[-2]
        prices = [c.close for c in series]

        price_change = (last.close - prev.close) / prev.close * 100 if prev.close else 0.0
        volume_change = (last.volume - prev.volume) / prev.volume * 100 if prev.volume > 0 else 0.0

        return MarketState(
            price_change=_clamp(price_change, -10, 10),
            rsi=ti.rsi(prices, 14),
            macd_signal=ti.macd(prices).direction,
            volume_change=_clamp(volume_change, -100, 100),
            trend_strength=_clamp(ti.trend_strength(series, 20), -10, 10),
            volatility=min(10.0, ti.volatility(series, 14)),
        )

    @staticmethod
    def discretize(state: MarketState) -> StateKey:
        """Bucket each feature into a small integer level"""
        if state.volume_change > 50:
            volume_level = 2
        elif state.volume_change > -50:
            volume_level = 1
        else:
            volume_level = 0

        if state.trend_strength > 2:
            trend_level = 2
        elif state.trend_strength > -2:
            trend_level = 1
        else:
            trend_level = 0

        if state.volatility > 5:
            volatility_level = 2
        elif state.volatility > 2:
            volatility_level = 1
        else:
            volatility_level = 0

        return StateKey(
            price_level=math.floor(state.price_change / 2),
            rsi_level=math.floor(state.rsi / 20),
            macd_level=int(state.macd_signal),
            volume_level=volume_level,
            trend_level=trend_level,
            volatility_level=volatility_level,
        )

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    def select_action(self, state: MarketState, explore: bool = True) -> Action:
        """Epsilon-greedy when ``explore``, greedy otherwise"""
        if explore and self.rng.random() < self.exploration_rate:
            return ACTIONS[int(self.rng.integers(len(ACTIONS)))]
        return self.q_table.get(self.discretize(state)).best_action()

    def predict(self, candles: CandleInput) -> Prediction:
        """
        Greedy decision for the latest bar

        Args:
            candles: At least 30 candles, oldest first

        Returns:
            Prediction with confidence |Q(a)| / sum |Q|
        """
        series = as_candles(candles)
        require_candles(series, MIN_PREDICT_CANDLES, "prediction")

        state = self.extract_state(series)
        q_values = self.q_table.get(self.discretize(state))
        action = q_values.best_action()

        total = abs(q_values.buy) + abs(q_values.sell) + abs(q_values.hold)
        confidence = abs(q_values.get(action)) / total if total > 0 else 1 / 3

        return Prediction(action=action, confidence=confidence,
                          q_values=q_values, state_features=state)

    # -------------------------------------------------------------------------
    # Learning
    # -------------------------------------------------------------------------

    def _update_q_value(self, experience: Experience):
        current = self.q_table.get(experience.state)
        max_next = self.q_table.get(experience.next_state).max_value()
        old = current.get(experience.action)
        new = old + self.config.learning_rate * (
            experience.reward + self.config.discount_factor * max_next - old
        )
        self.q_table.set(experience.state, current.with_value(experience.action, new))

    def _replay(self):
        if len(self.replay_buffer) < self.config.batch_size:
            return
        for experience in self.replay_buffer.sample(self.config.batch_size, self.rng):
            self._update_q_value(experience)

    def train(self, candles: CandleInput, initial_capital: float = 10000.0) -> TrainingResult:
        """
        Run one training episode

        Args:
            candles: At least 50 candles, oldest first
            initial_capital: Simulated starting capital

        Returns:
            TrainingResult for the episode
        """
        series = as_candles(candles)
        require_candles(series, MIN_TRAIN_CANDLES, "training")
        if initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got {initial_capital}")
        return self._run_episode(series, initial_capital)

    def train_episodes(self, candles: CandleInput, episodes: int = 1,
                       initial_capital: float = 10000.0) -> List[TrainingResult]:
        """Run several episodes over the same candles"""
        series = as_candles(candles)
        require_candles(series, MIN_TRAIN_CANDLES, "training")
        if episodes < 1:
            raise ValueError(f"episodes must be at least 1, got {episodes}")
        if initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got {initial_capital}")
        return [self._run_episode(series, initial_capital) for _ in range(episodes)]

    def _run_episode(self, series, initial_capital: float) -> TrainingResult:
        window = self.config.window_size
        last_step = len(series) - 2

        capital = initial_capital
        position = 0.0
        entry_price = 0.0
        total_reward = 0.0
        max_capital = initial_capital
        max_drawdown = 0.0
        counts = {action: 0 for action in ACTIONS}
        wins = 0
        trades = 0

        for i in range(window, len(series) - 1):
            state = self.extract_state(series[i - window:i + 1])
            action = self.select_action(state, explore=True)
            price = series[i].close
            next_price = series[i + 1].close
            counts[action] += 1
            reward = 0.0

            if action is Action.BUY:
                if position == 0:
                    position = capital / price
                    entry_price = price
                    capital = 0.0
                if position > 0:
                    reward = (next_price - price) / price * 100

            elif action is Action.SELL:
                if position > 0:
                    exit_value = position * price
                    profit = exit_value - position * entry_price
                    capital = exit_value
                    trades += 1
                    if profit > 0:
                        wins += 1
                    position = 0.0
                    entry_price = 0.0
                    reward = profit / exit_value * 100 if exit_value else 0.0
                else:
                    reward = -0.1

            else:
                if position > 0:
                    reward = (next_price - price) / price * 50
                else:
                    reward = -0.05

            equity = capital + position * price
            max_capital = max(max_capital, equity)
            max_drawdown = max(max_drawdown, (max_capital - equity) / max_capital * 100)
            total_reward += reward

            next_state = self.extract_state(series[i - window + 1:i + 2])
            self.replay_buffer.add(Experience(
                state=self.discretize(state),
                action=action,
                reward=reward,
                next_state=self.discretize(next_state),
                done=i == last_step,
            ))
            self._replay()

        if position > 0:
            capital = position * series[-1].close
            position = 0.0

        self.exploration_rate = max(self.config.min_exploration,
                                    self.exploration_rate * self.config.exploration_decay)
        self.total_episodes += 1
        self.total_reward += total_reward

        profit_loss = capital - initial_capital
        result = TrainingResult(
            episode_number=self.total_episodes,
            total_reward=total_reward,
            total_actions=sum(counts.values()),
            buy_actions=counts[Action.BUY],
            sell_actions=counts[Action.SELL],
            hold_actions=counts[Action.HOLD],
            starting_capital=initial_capital,
            ending_capital=capital,
            profit_loss=profit_loss,
            profit_loss_percent=profit_loss / initial_capital * 100,
            max_drawdown=max_drawdown,
            win_rate=wins / trades * 100 if trades > 0 else 0.0,
            exploration_rate=self.exploration_rate,
        )

        logger.info(f"Episode {result.episode_number}: reward={total_reward:.2f} "
                    f"P&L={result.profit_loss_percent:+.2f}% trades={trades} "
                    f"epsilon={self.exploration_rate:.4f} states={len(self.q_table)}")
        return result

    # -------------------------------------------------------------------------
    # Introspection and checkpoints
    # -------------------------------------------------------------------------

    def get_stats(self) -> AgentStats:
        return AgentStats(
            total_episodes=self.total_episodes,
            total_reward=self.total_reward,
            avg_reward=self.total_reward / self.total_episodes if self.total_episodes else 0.0,
            exploration_rate=self.exploration_rate,
            states_learned=len(self.q_table),
        )

    def get_q_table(self) -> Dict[str, Dict[str, float]]:
        """Plain-dict copy of the Q-table"""
        return self.q_table.to_dict()

    def load_q_table(self, q_table: Union[QTable, Mapping[str, Mapping[str, float]]]):
        if isinstance(q_table, QTable):
            self.q_table = q_table.copy()
        else:
            self.q_table = QTable.from_dict(q_table)

    def get_config(self) -> AgentConfig:
        return self.config

    def set_config(self, **changes) -> AgentConfig:
        """
        Swap in a new configuration with ``changes`` applied

        Changing ``exploration_rate`` also resets the current rate;
        changing ``memory_size`` rebuilds the replay buffer keeping the
        newest experiences.
        """
        new_config = replace(self.config, **changes)
        if new_config.memory_size != self.config.memory_size:
            buffer = ReplayBuffer(new_config.memory_size)
            for experience in self.replay_buffer.buffer:
                buffer.add(experience)
            self.replay_buffer = buffer
        if 'exploration_rate' in changes:
            self.exploration_rate = new_config.exploration_rate
        self.config = new_config
        return self.config

    def export_state(self) -> Dict[str, Any]:
        """Checkpoint as plain values"""
        return {
            'config': self.config.to_dict(),
            'exploration_rate': self.exploration_rate,
            'total_episodes': self.total_episodes,
            'total_reward': self.total_reward,
            'q_table': self.get_q_table(),
        }

    @classmethod
    def from_state(cls, state: Mapping[str, Any], seed: Optional[int] = None) -> 'RLTradingAgent':
        """Restore an agent from ``export_state`` output"""
        agent = cls(config=AgentConfig(**state.get('config', {})),
                    q_table=state.get('q_table', {}), seed=seed)
        agent.exploration_rate = float(state.get('exploration_rate', agent.config.exploration_rate))
        agent.total_episodes = int(state.get('total_episodes', 0))
        agent.total_reward = float(state.get('total_reward', 0.0))
        return agent

    def reset(self):
        """Clear learning state and restore the starting exploration rate"""
        self.q_table = QTable()
        self.replay_buffer.clear()
        self.total_episodes = 0
        self.total_reward = 0.0
        self.exploration_rate = self.config.exploration_rate
        logger.info("Agent reset")


# =============================================================================
# EXAMPLE
# =============================================================================

if __name__ == "__main__":
    from candle_series import generate_synthetic_candles

    logging.basicConfig(level=logging.INFO)

    candles = generate_synthetic_candles(200, drift=0.001, volatility=0.01, seed=7)
    agent = RLTradingAgent(seed=7)

    for result in agent.train_episodes(candles, episodes=5):
        print(f"Episode {result.episode_number}: P&L {result.profit_loss_percent:+.2f}% "
              f"win rate {result.win_rate:.1f}%")

    prediction = agent.predict(candles[-60:])
    print(f"Prediction: {prediction.action.value} ({prediction.confidence:.2f})")
    print(agent.get_stats())
