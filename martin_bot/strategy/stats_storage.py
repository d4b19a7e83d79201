import copy
import json
import os
from pathlib import Path

from martin_bot.config import STATE_FILE, STRATEGIES_FILE
from martin_bot.logger import get_logger
from martin_bot.strategy.errors import ConfigError
from martin_bot.strategy.intents import StateUpdate
from martin_bot.strategy.models import StrategyConfig

log = get_logger(__name__)


class JsonStateStore:
    """
    Снапшоты стратегий в одном JSON файле: {"<strategy_id>": {...}}.
    update() пишет только переданные поля, остальные не трогает.
    """

    def __init__(self, path=STATE_FILE):
        self.path = Path(path)
        self._data: dict[str, dict] = self._read()

    def _read(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}  # файла нет - состояний нет
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid state file {self.path}: {e}") from e

    def _save(self) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=4, ensure_ascii=False)
        os.replace(tmp, self.path)

    def load(self, strategy_id: int) -> dict | None:
        snapshot = self._data.get(str(strategy_id))
        return copy.deepcopy(snapshot) if snapshot is not None else None

    def all(self) -> dict[str, dict]:
        return copy.deepcopy(self._data)

    def update(self, update: StateUpdate) -> None:
        changes = update.changes()
        if not changes:
            return
        log.debug("Updating state of strategy %s: %s", update.strategy_id, list(changes))
        self._data.setdefault(str(update.strategy_id), {}).update(copy.deepcopy(changes))
        self._save()

    def mark_stopped(self, strategy_id: int, error: str | None = None) -> None:
        self.update(StateUpdate(strategy_id, is_running=False, last_error=error))


class StrategyRepository:
    """
    strategies.json:
    [{"id": 1, "name": "m2", "symbol": "SOLUSDT", "account": null, "isActive": true,
      "parameters": {"initialPrice": 109, "initialAmount": 10, ...}}]
    """

    def __init__(self, path=STRATEGIES_FILE):
        self.path = Path(path)

    def load_all(self) -> list[StrategyConfig]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            log.warning("Strategies file %s not found", self.path)
            return []
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid strategies file {self.path}: {e}") from e

        if isinstance(raw, dict):
            raw = raw.get("strategies", [])
        try:
            return [StrategyConfig.from_dict(item) for item in raw]
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid strategy entry in {self.path}: {e}") from e

    def get(self, strategy_id: int) -> StrategyConfig | None:
        for config in self.load_all():
            if config.id == strategy_id:
                return config
        return None
