"""
Agent Registry
Per-symbol RL agents owned by the caller

Each symbol (case and whitespace normalised) maps to its own
RLTradingAgent with a private Q-table and replay buffer. Creation is
serialised so two threads asking for a new symbol get the same agent.
"""

from threading import Lock
from typing import Dict, List, Mapping, Optional, Union
import logging

from reinforcement_learning_agent import AgentConfig, QTable, RLTradingAgent

logger = logging.getLogger(__name__)


def normalize_symbol(symbol: str) -> str:
    key = symbol.strip().upper()
    if not key:
        raise ValueError("Symbol must not be empty")
    return key


class AgentRegistry:
    """Keyed store of trading agents"""

    def __init__(self, default_config: Optional[AgentConfig] = None, seed: Optional[int] = None):
        """
        Args:
            default_config: Config for agents created without one
            seed: Base seed; each new agent gets seed + creation index
        """
        self.default_config = default_config or AgentConfig()
        self.seed = seed
        self._agents: Dict[str, RLTradingAgent] = {}
        self._lock = Lock()

    def get_or_create(self, symbol: str, config: Optional[AgentConfig] = None,
                      q_table: Optional[Union[QTable, Mapping]] = None) -> RLTradingAgent:
        """Existing agent for ``symbol`` or a new one; config and q_table apply only on creation"""
        key = normalize_symbol(symbol)
        with self._lock:
            agent = self._agents.get(key)
            if agent is None:
                seed = None if self.seed is None else self.seed + len(self._agents)
                agent = RLTradingAgent(config or self.default_config, q_table=q_table, seed=seed)
                self._agents[key] = agent
                logger.info(f"Created agent for {key}")
            return agent

    def get(self, symbol: str) -> Optional[RLTradingAgent]:
        with self._lock:
            return self._agents.get(normalize_symbol(symbol))

    def reset(self, symbol: str) -> bool:
        """Reset the agent for ``symbol``; False when there is none"""
        agent = self.get(symbol)
        if agent is None:
            return False
        agent.reset()
        return True

    def remove(self, symbol: str) -> Optional[RLTradingAgent]:
        with self._lock:
            return self._agents.pop(normalize_symbol(symbol), None)

    def symbols(self) -> List[str]:
        with self._lock:
            return sorted(self._agents)

    def __contains__(self, symbol: str) -> bool:
        return self.get(symbol) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._agents)
