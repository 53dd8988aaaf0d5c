import pytest

from engine_config import EngineSettings
from reinforcement_learning_agent import AgentConfig


def test_defaults_from_empty_environment():
    settings = EngineSettings.from_env({})
    assert settings == EngineSettings()
    assert settings.agent == AgentConfig()
    assert settings.seed is None


def test_overrides():
    settings = EngineSettings.from_env({
        "ALGOT_LOG_LEVEL": "debug",
        "ALGOT_LOG_JSON": "yes",
        "ALGOT_LOG_FILE": "logs/engine.log",
        "ALGOT_INITIAL_CAPITAL": "2500",
        "ALGOT_SEED": "42",
        "ALGOT_LEARNING_RATE": "0.2",
        "ALGOT_EXPLORATION_RATE": "0.3",
    })
    assert settings.log_level == "DEBUG"
    assert settings.log_json is True
    assert settings.log_file == "logs/engine.log"
    assert settings.initial_capital == 2500.0
    assert settings.seed == 42
    assert settings.agent.learning_rate == 0.2
    assert settings.agent.exploration_rate == 0.3
    assert settings.agent.discount_factor == AgentConfig().discount_factor


@pytest.mark.parametrize("environ", [
    {"ALGOT_LOG_JSON": "maybe"},
    {"ALGOT_SEED": "abc"},
    {"ALGOT_INITIAL_CAPITAL": "-5"},
    {"ALGOT_LEARNING_RATE": "2"},
])
def test_invalid_values(environ):
    with pytest.raises(ValueError):
        EngineSettings.from_env(environ)


def test_reads_process_environment(monkeypatch):
    monkeypatch.setenv("ALGOT_INITIAL_CAPITAL", "750")
    assert EngineSettings.from_env().initial_capital == 750.0
