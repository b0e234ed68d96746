"""Shared test fixtures."""

import pytest

from rally_core import MatchConfig, Settings, default_state
from rally_core.set_config import apply_set_configuration
from rally_core.validation import SetConfigurationInput


def build_config(**overrides) -> MatchConfig:
    data = {
        "id": "match-1",
        "teamA": {"name": "Areia Norte", "players": [{"name": "Ana", "number": 7}, {"name": "Bia", "number": 9}]},
        "teamB": {"name": "Duna Sul", "players": [{"name": "Caio", "number": 4}, {"name": "Davi", "number": 11}]},
    }
    data.update(overrides)
    return MatchConfig(**data)


def configure(state, config, **draft):
    """Run the pre-set ceremony with sensible defaults (A wins the toss and serves)."""
    payload = {"firstChoiceOption": "serve", "sideSelection": "left"}
    if state["currentSet"] == 1 or state["currentSet"] == config.total_sets:
        payload["coinTossWinner"] = "A"
    payload.update(draft)
    return apply_set_configuration(state, config, SetConfigurationInput(**payload)).state


@pytest.fixture
def config():
    return build_config()


@pytest.fixture
def configured_state(config):
    return configure(default_state(config), config)


@pytest.fixture
def fast_settings():
    return Settings(timer_poll_interval_sec=0.01, undo_history_limit=5)
