from __future__ import annotations

import asyncio
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from pybit import exceptions

from martin_bot.config import BYBIT_CATEGORY, REQUEST_MIN_INTERVAL, REQUEST_TIMEOUT
from martin_bot.logger import get_logger
from martin_bot.strategy.errors import (
    InsufficientFunds,
    MarketDataError,
    MarketNotFound,
    MartinBotError,
    OrderError,
    OrderNotFound,
)
from martin_bot.strategy.models import MarketSnapshot, OrderStatus, OrderUpdate

log = get_logger(__name__)

# retCode Bybit v5
INSUFFICIENT_FUNDS_CODES = {110004, 110007, 110012, 170131}
ORDER_NOT_FOUND_CODES = {110001, 110008, 170213}

# запас сверх таймаута HTTP запроса pybit (сек)
TIMEOUT_MARGIN = 1.0

ORDER_STATUS_MAP = {
    "New": OrderStatus.OPEN,
    "PartiallyFilled": OrderStatus.OPEN,
    "Untriggered": OrderStatus.OPEN,
    "Triggered": OrderStatus.OPEN,
    "Filled": OrderStatus.CLOSED,
    "Cancelled": OrderStatus.CANCELED,
    "PartiallyFilledCanceled": OrderStatus.CANCELED,
    "Deactivated": OrderStatus.CANCELED,
    "Rejected": OrderStatus.REJECTED,
}


def _to_float(val: Any, default: float = 0.0) -> float:
    try:
        if val is None or str(val).strip() == "":
            return default
        return float(val)
    except (TypeError, ValueError):
        return default


def _result_list(resp: dict | None) -> list[dict]:
    if not resp:
        return []
    return resp.get("result", {}).get("list", []) or []


def _fmt(value: Decimal) -> str:
    return format(value.normalize(), "f")


def map_bybit_error(e: Exception, default: type[MartinBotError]) -> MartinBotError:
    """pybit исключение -> наша ошибка (по retCode)."""
    message = getattr(e, "message", None) or str(e)
    if isinstance(e, exceptions.InvalidRequestError):
        code = getattr(e, "status_code", None)
        if code in INSUFFICIENT_FUNDS_CODES:
            return InsufficientFunds(f"retCode={code}: {message}")
        if code in ORDER_NOT_FOUND_CODES:
            return OrderNotFound(f"retCode={code}: {message}")
        return default(f"retCode={code}: {message}")
    return default(message)


def to_order_update(row: dict) -> OrderUpdate:
    status = ORDER_STATUS_MAP.get(row.get("orderStatus"), OrderStatus.OPEN)
    avg_price = _to_float(row.get("avgPrice"))
    return OrderUpdate(
        id=str(row.get("orderId")),
        status=status,
        side=(row.get("side") or "").lower() or None,
        filled=_to_float(row.get("cumExecQty")),
        price=avg_price if avg_price > 0 else _to_float(row.get("price")),
        symbol=row.get("symbol"),
        raw=row,
    )


class BybitGateway:
    """
    Биржевая сессия одного аккаунта.

    Все запросы аккаунта идут по очереди (asyncio.Lock) с паузой
    min_interval между ними и ограничены timeout. pybit синхронный,
    поэтому вызовы уходят в отдельный поток.
    """

    def __init__(
        self,
        client,
        category: str = BYBIT_CATEGORY,
        timeout: float = REQUEST_TIMEOUT,
        min_interval: float = REQUEST_MIN_INTERVAL,
        timeout_margin: float = TIMEOUT_MARGIN,
    ) -> None:
        self.client = client
        self.category = category
        self.timeout = timeout
        self.timeout_margin = timeout_margin
        self.min_interval = min_interval
        self._lock = asyncio.Lock()
        self._last_call = 0.0
        self._markets: dict[str, MarketSnapshot] = {}

    async def _call(self, method_name: str, error_cls: type[MartinBotError], **kwargs) -> dict:
        method = getattr(self.client, method_name)
        async with self._lock:
            pause = self.min_interval - (time.monotonic() - self._last_call)
            if pause > 0:
                await asyncio.sleep(pause)
            call = asyncio.ensure_future(asyncio.to_thread(method, **kwargs))
            try:
                # у pybit свой таймаут на HTTP запрос, здесь ждём чуть дольше него
                return await asyncio.wait_for(asyncio.shield(call), timeout=self.timeout + self.timeout_margin)
            except asyncio.TimeoutError as e:
                # поток ещё внутри requests: очередь аккаунта держим до его конца.
                # ордер, выставленный таким запросом, может остаться на бирже неотслеживаемым
                log.warning("Bybit call %s timed out, waiting for the request thread to finish", method_name)
                await asyncio.gather(call, return_exceptions=True)
                raise error_cls(f"{method_name} timed out after {self.timeout}s") from e
            except (exceptions.InvalidRequestError, exceptions.FailedRequestError) as e:
                log.warning("Bybit API error (%s): %s", method_name, e)
                raise map_bybit_error(e, error_cls) from e
            except Exception as e:
                raise error_cls(f"{method_name} failed: {e}") from e
            finally:
                self._last_call = time.monotonic()

    # === РЫНОК ===
    async def load_market_metadata(self, symbol: str) -> MarketSnapshot:
        resp = await self._call("get_instruments_info", MarketDataError, category=self.category, symbol=symbol)
        items = _result_list(resp)
        if not items:
            raise MarketNotFound(f"Market {symbol} not found on Bybit ({self.category})")

        item = items[0]
        lot = item.get("lotSizeFilter", {}) or {}
        price_filter = item.get("priceFilter", {}) or {}
        market = MarketSnapshot(
            symbol=symbol,
            base=item.get("baseCoin", ""),
            quote=item.get("quoteCoin", ""),
            amount_step=_to_float(lot.get("basePrecision") or lot.get("qtyStep")),
            price_tick=_to_float(price_filter.get("tickSize")),
            min_amount=_to_float(lot.get("minOrderQty")),
            min_cost=_to_float(lot.get("minOrderAmt") or lot.get("minNotionalValue")),
            active=item.get("status", "Trading") == "Trading",
        )
        self._markets[symbol] = market
        return market

    def market(self, symbol: str) -> MarketSnapshot | None:
        return self._markets.get(symbol)

    async def fetch_last_price(self, symbol: str) -> float:
        resp = await self._call("get_tickers", MarketDataError, category=self.category, symbol=symbol)
        items = _result_list(resp)
        price = _to_float(items[0].get("lastPrice")) if items else 0.0
        if price <= 0:
            raise MarketDataError(f"No last price for {symbol}")
        return price

    # === ТОЧНОСТЬ ===
    def _round_amount(self, symbol: str, amount: float) -> Decimal:
        value = Decimal(str(amount))
        market = self._markets.get(symbol)
        if market is None or market.amount_step <= 0:
            return value
        step = Decimal(str(market.amount_step))
        return (value // step) * step

    def _round_price(self, symbol: str, price: float) -> Decimal:
        value = Decimal(str(price))
        market = self._markets.get(symbol)
        if market is None or market.price_tick <= 0:
            return value
        tick = Decimal(str(market.price_tick))
        return (value / tick).to_integral_value(rounding=ROUND_HALF_UP) * tick

    def amount_to_precision(self, symbol: str, amount: float) -> float:
        # количество всегда вниз, чтобы не упереться в баланс
        return float(self._round_amount(symbol, amount))

    def price_to_precision(self, symbol: str, price: float) -> float:
        return float(self._round_price(symbol, price))

    # === ОРДЕРА ===
    async def _place(self, symbol: str, side: str, order_type: str, amount: float, **extra) -> str:
        resp = await self._call(
            "place_order",
            OrderError,
            category=self.category,
            symbol=symbol,
            side=side.capitalize(),
            orderType=order_type,
            qty=_fmt(self._round_amount(symbol, amount)),
            **extra,
        )
        order_id = (resp or {}).get("result", {}).get("orderId")
        if not order_id:
            raise OrderError(f"place_order returned no orderId: {resp}")
        return str(order_id)

    async def place_limit_order(self, symbol: str, side: str, amount: float, price: float) -> str:
        return await self._place(
            symbol,
            side,
            "Limit",
            amount,
            price=_fmt(self._round_price(symbol, price)),
            timeInForce="GTC",
        )

    async def place_market_order(self, symbol: str, side: str, amount: float) -> str:
        extra = {"marketUnit": "baseCoin"} if self.category == "spot" else {}
        return await self._place(symbol, side, "Market", amount, **extra)

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        await self._call("cancel_order", OrderError, category=self.category, symbol=symbol, orderId=order_id)

    async def fetch_order_status(self, order_id: str, symbol: str) -> OrderUpdate:
        resp = await self._call("get_open_orders", OrderError, category=self.category, symbol=symbol, orderId=order_id)
        items = _result_list(resp)
        if not items:
            # уже не активен - ищем в истории
            resp = await self._call(
                "get_order_history", OrderError, category=self.category, symbol=symbol, orderId=order_id
            )
            items = _result_list(resp)
        if not items:
            raise OrderNotFound(f"Order {order_id} not found")
        return to_order_update(items[0])
