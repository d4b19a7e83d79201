from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from martin_bot.strategy.errors import ConfigError
from martin_bot.strategy.models import OrderTag, Position, TAKE_PROFIT


def _num(val: Any) -> float:
    try:
        return float(val)
    except (TypeError, ValueError):
        return 0.0


def _tag(val: Any) -> OrderTag:
    # в JSON номер уровня может прийти строкой
    if isinstance(val, str) and val.isdigit():
        return int(val)
    return val


# === СОСТОЯНИЕ ОДНОЙ СТРАТЕГИИ ===
@dataclass
class EngineState:
    open_orders: dict[str, OrderTag] = field(default_factory=dict)   # {order_id: уровень | "takeProfit"}
    positions: list[Position] = field(default_factory=list)
    martin_levels: list[float] = field(default_factory=list)
    martin_amounts: list[float] = field(default_factory=list)

    total_invested: float = 0.0
    total_amount: float = 0.0
    average_cost: float = 0.0
    take_profit_price: float = 0.0
    stop_loss_price: float = 0.0

    take_profit_order_id: str | None = None
    is_running: bool = False
    last_error: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any] | None) -> EngineState:
        """Восстановление из сохранённого снапшота (или пустое состояние)."""
        snapshot = snapshot or {}
        try:
            open_orders = {str(k): _tag(v) for k, v in (snapshot.get("openOrders") or {}).items()}
            positions = [Position.from_dict(p) for p in snapshot.get("positions") or []]
            martin_levels = [float(p) for p in snapshot.get("martinLevels") or []]
            martin_amounts = [float(a) for a in snapshot.get("martinAmounts") or []]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ConfigError(f"Corrupted state snapshot: {e!r}") from e

        tp_order_id = snapshot.get("takeProfitOrderId") or None
        if tp_order_id is not None and open_orders.get(tp_order_id) != TAKE_PROFIT:
            tp_order_id = None

        return cls(
            open_orders=open_orders,
            positions=positions,
            martin_levels=martin_levels,
            martin_amounts=martin_amounts,
            total_invested=_num(snapshot.get("totalInvested")),
            total_amount=_num(snapshot.get("totalAmount")),
            average_cost=_num(snapshot.get("averageCost")),
            take_profit_price=_num(snapshot.get("takeProfitPrice")),
            stop_loss_price=_num(snapshot.get("stopLossPrice")),
            take_profit_order_id=tp_order_id,
            last_error=snapshot.get("lastError"),
        )

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "openOrders": dict(self.open_orders),
            "positions": [p.to_dict() for p in self.positions],
            "martinLevels": list(self.martin_levels),
            "martinAmounts": list(self.martin_amounts),
            "totalInvested": self.total_invested,
            "totalAmount": self.total_amount,
            "averageCost": self.average_cost,
            "takeProfitPrice": self.take_profit_price,
            "stopLossPrice": self.stop_loss_price,
            "takeProfitOrderId": self.take_profit_order_id,
            "lastError": self.last_error,
        }

    def positions_payload(self) -> list[dict[str, Any]]:
        return [p.to_dict() for p in self.positions]

    def has_order_for(self, tag: OrderTag) -> bool:
        return tag in self.open_orders.values()

    def highest_level(self) -> int:
        if not self.positions:
            return -1
        return max(p.level for p in self.positions)
