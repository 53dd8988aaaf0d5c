"""
Engine Settings
Defaults for logging, simulation capital, agent hyperparameters and seeding,
overridable from ALGOT_* environment variables.
"""

from dataclasses import dataclass, field, replace
from typing import Mapping, Optional
import os

from reinforcement_learning_agent import AgentConfig

ENV_PREFIX = "ALGOT_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _parse_number(name: str, raw: str, kind=float):
    try:
        return kind(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be {kind.__name__}, got {raw!r}") from None


@dataclass(frozen=True)
class EngineSettings:
    """Process-level settings"""
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None
    initial_capital: float = 10000.0
    seed: Optional[int] = None
    agent: AgentConfig = field(default_factory=AgentConfig)

    def __post_init__(self):
        if self.initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got {self.initial_capital}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'EngineSettings':
        """
        Build settings from the environment

        Recognised variables: ALGOT_LOG_LEVEL, ALGOT_LOG_JSON, ALGOT_LOG_FILE,
        ALGOT_INITIAL_CAPITAL, ALGOT_SEED, ALGOT_LEARNING_RATE,
        ALGOT_DISCOUNT_FACTOR, ALGOT_EXPLORATION_RATE.
        """
        if environ is None:
            getenv = os.getenv
        else:
            getenv = environ.get

        defaults = cls()
        agent_changes = {}

        for key, attr in (("LEARNING_RATE", "learning_rate"),
                          ("DISCOUNT_FACTOR", "discount_factor"),
                          ("EXPLORATION_RATE", "exploration_rate")):
            raw = getenv(ENV_PREFIX + key)
            if raw is not None:
                agent_changes[attr] = _parse_number(ENV_PREFIX + key, raw)

        raw_capital = getenv(ENV_PREFIX + "INITIAL_CAPITAL")
        raw_seed = getenv(ENV_PREFIX + "SEED")
        raw_json = getenv(ENV_PREFIX + "LOG_JSON")

        return cls(
            log_level=(getenv(ENV_PREFIX + "LOG_LEVEL") or defaults.log_level).upper(),
            log_json=_parse_bool(ENV_PREFIX + "LOG_JSON", raw_json) if raw_json is not None else defaults.log_json,
            log_file=getenv(ENV_PREFIX + "LOG_FILE") or None,
            initial_capital=(_parse_number(ENV_PREFIX + "INITIAL_CAPITAL", raw_capital)
                             if raw_capital is not None else defaults.initial_capital),
            seed=_parse_number(ENV_PREFIX + "SEED", raw_seed, int) if raw_seed else None,
            agent=replace(defaults.agent, **agent_changes),
        )
