"""Pytest fixtures for martin_bot tests."""

import json

import pytest

from martin_bot.strategy.models import StrategyConfig, StrategyParams
from tests.fakes import PARAMS, FakeGateway, Recorder


@pytest.fixture(autouse=True)
def no_delays(monkeypatch):
    """Remove pauses between exchange calls."""
    monkeypatch.setattr("martin_bot.strategy.engine.CANCEL_DELAY", 0)
    monkeypatch.setattr("martin_bot.strategy.orchestrator.CHECK_DELAY", 0)
    monkeypatch.setattr("martin_bot.strategy.orchestrator.START_DELAY", 0)
    monkeypatch.setattr("martin_bot.strategy.orchestrator.STOP_DELAY", 0)


@pytest.fixture
def params() -> StrategyParams:
    return StrategyParams.from_dict(PARAMS)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def strategy_config() -> StrategyConfig:
    return StrategyConfig(id=1, symbol="SOLUSDT", parameters=dict(PARAMS), name="sol")


@pytest.fixture
def strategies_file(tmp_path):
    path = tmp_path / "strategies.json"
    path.write_text(
        json.dumps(
            [
                {"id": 1, "name": "sol", "symbol": "SOLUSDT", "isActive": True, "parameters": PARAMS},
                {"id": 2, "name": "off", "symbol": "SOLUSDT", "isActive": False, "parameters": PARAMS},
            ]
        ),
        encoding="utf-8",
    )
    return path
