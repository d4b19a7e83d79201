"""
Сообщения движка -> оркестратор.

Движок ничего не делает с биржей сам: он отдаёт намерения (intents),
оркестратор их исполняет по порядку и возвращает результат через
handle_order_update / track_order.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Union

from martin_bot.strategy.models import OrderTag


class _Unset:
    """Поле StateUpdate отсутствует = значение в снапшоте не меняется."""

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class PlaceOrder:
    strategy_id: int
    symbol: str
    type: str           # limit | market
    side: str           # buy | sell
    amount: float
    tag: OrderTag
    price: float | None = None


@dataclass(frozen=True)
class CancelOrder:
    strategy_id: int
    order_id: str
    symbol: str


@dataclass(frozen=True)
class CheckOrders:
    strategy_id: int
    order_ids: tuple[str, ...]
    symbol: str


# поле dataclass -> ключ снапшота
SNAPSHOT_KEYS = {
    "is_running": "isRunning",
    "open_orders": "openOrders",
    "positions": "positions",
    "martin_levels": "martinLevels",
    "martin_amounts": "martinAmounts",
    "total_invested": "totalInvested",
    "total_amount": "totalAmount",
    "average_cost": "averageCost",
    "take_profit_price": "takeProfitPrice",
    "stop_loss_price": "stopLossPrice",
    "take_profit_order_id": "takeProfitOrderId",
    "last_error": "lastError",
}


@dataclass(frozen=True)
class StateUpdate:
    strategy_id: int
    is_running: bool = UNSET
    open_orders: dict[str, OrderTag] = UNSET
    positions: list[dict[str, Any]] = UNSET
    martin_levels: list[float] = UNSET
    martin_amounts: list[float] = UNSET
    total_invested: float = UNSET
    total_amount: float = UNSET
    average_cost: float = UNSET
    take_profit_price: float = UNSET
    stop_loss_price: float = UNSET
    take_profit_order_id: str | None = UNSET
    last_error: str | None = UNSET

    def changes(self) -> dict[str, Any]:
        """Только заданные поля, с ключами снапшота."""
        result = {}
        for f in fields(self):
            if f.name == "strategy_id":
                continue
            value = getattr(self, f.name)
            if value is not UNSET:
                result[SNAPSHOT_KEYS[f.name]] = value
        return result


@dataclass(frozen=True)
class EngineError:
    strategy_id: int
    message: str
    detail: str | None = None
    critical: bool = False


Intent = Union[PlaceOrder, CancelOrder, CheckOrders, StateUpdate, EngineError]
