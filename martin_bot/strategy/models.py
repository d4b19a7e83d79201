from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from martin_bot.config import CHECK_INTERVAL_MS
from martin_bot.strategy.errors import ConfigError

# === ТЕГИ ОРДЕРОВ ===
TAKE_PROFIT = "takeProfit"
STOP_LOSS_SELL = "stop_loss_sell"
STOP_SELL = "stop_sell"

# номер уровня (int) или один из тегов выше
OrderTag = Union[int, str]


class EngineStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    STOPPED = "stopped"
    STOPPED_ON_STOP_LOSS = "stopped_on_stop_loss"


class OrderStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    CANCELED = "canceled"
    REJECTED = "rejected"


# camelCase имена из записей strategy_parameters -> поля StrategyParams
_PARAM_ALIASES = {
    "initialPrice": "initial_price",
    "initialAmount": "initial_amount",
    "priceDropPercent": "price_drop_percent",
    "amountMultiplier": "amount_multiplier",
    "takeProfit": "take_profit_percent",
    "takeProfitPercent": "take_profit_percent",
    "stopLoss": "stop_loss_percent",
    "stopLossPercent": "stop_loss_percent",
    "checkInterval": "check_interval_ms",
    "checkIntervalMs": "check_interval_ms",
}

_REQUIRED_PARAMS = (
    "initial_price",
    "initial_amount",
    "levels",
    "price_drop_percent",
    "amount_multiplier",
    "take_profit_percent",
    "stop_loss_percent",
)


@dataclass(frozen=True)
class StrategyParams:
    initial_price: float
    initial_amount: float
    levels: int
    price_drop_percent: float
    amount_multiplier: float
    take_profit_percent: float
    stop_loss_percent: float
    check_interval_ms: int = CHECK_INTERVAL_MS

    def __post_init__(self):
        if self.levels < 1:
            raise ConfigError(f"levels must be >= 1, got {self.levels}")
        if not 0 <= self.price_drop_percent <= 100:
            raise ConfigError(f"priceDropPercent must be within 0..100, got {self.price_drop_percent}")
        if self.amount_multiplier <= 0:
            raise ConfigError(f"amountMultiplier must be > 0, got {self.amount_multiplier}")
        if self.initial_price <= 0 or self.initial_amount <= 0:
            raise ConfigError("initialPrice and initialAmount must be > 0")
        if self.take_profit_percent < 0 or not 0 <= self.stop_loss_percent <= 100:
            raise ConfigError("takeProfit must be >= 0 and stopLoss within 0..100")
        if self.check_interval_ms <= 0:
            raise ConfigError(f"checkInterval must be > 0, got {self.check_interval_ms}")

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> StrategyParams:
        if not isinstance(raw, dict):
            raise ConfigError(f"Strategy parameters must be an object, got {type(raw).__name__}")
        data = {_PARAM_ALIASES.get(k, k): v for k, v in raw.items() if v is not None}

        missing = [name for name in _REQUIRED_PARAMS if name not in data]
        if missing:
            raise ConfigError(f"Missing strategy parameters: {', '.join(missing)}")

        try:
            return cls(
                initial_price=float(data["initial_price"]),
                initial_amount=float(data["initial_amount"]),
                levels=int(data["levels"]),
                price_drop_percent=float(data["price_drop_percent"]),
                amount_multiplier=float(data["amount_multiplier"]),
                take_profit_percent=float(data["take_profit_percent"]),
                stop_loss_percent=float(data["stop_loss_percent"]),
                check_interval_ms=int(data.get("check_interval_ms", CHECK_INTERVAL_MS)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid strategy parameters: {e}") from e


@dataclass
class StrategyConfig:
    """Запись из strategies.json."""

    id: int
    symbol: str
    parameters: dict[str, Any] | None
    name: str = ""
    account: str | None = None
    is_active: bool = True

    @property
    def params(self) -> StrategyParams:
        if not self.symbol or not self.parameters:
            raise ConfigError(f"Strategy {self.id}: missing symbol or parameters")
        return StrategyParams.from_dict(self.parameters)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> StrategyConfig:
        return cls(
            id=int(raw["id"]),
            symbol=raw.get("symbol", ""),
            parameters=raw.get("parameters"),
            name=raw.get("name", ""),
            account=raw.get("account"),
            is_active=bool(raw.get("isActive", True)),
        )


@dataclass(frozen=True)
class MarketSnapshot:
    """Точность и лимиты одного символа."""

    symbol: str
    base: str
    quote: str
    amount_step: float
    price_tick: float
    min_amount: float
    min_cost: float
    active: bool = True


@dataclass
class Position:
    price: float
    amount: float
    level: int

    def to_dict(self) -> dict[str, Any]:
        return {"price": self.price, "amount": self.amount, "level": self.level}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Position:
        return cls(price=float(raw["price"]), amount=float(raw["amount"]), level=int(raw["level"]))


@dataclass(frozen=True)
class OrderUpdate:
    id: str
    status: OrderStatus
    side: str | None = None
    filled: float = 0.0
    price: float = 0.0
    symbol: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
