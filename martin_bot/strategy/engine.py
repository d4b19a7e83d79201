"""
Мартингейл-движок одной стратегии.

BUY уровня 0 -> TP на всю позицию -> при падении BUY следующего уровня
-> TP пересчитывается по средней цене -> ... -> TP исполнен -> заново.
Пробой стоп-лосса: отменяем всё, продаём позицию по рынку, стоп.

Движок сам не ходит на биржу за ордерами: он отдаёт намерения через emit()
и получает результаты через handle_order_update() / track_order().
"""
from __future__ import annotations

import asyncio
from contextvars import ContextVar
from typing import Awaitable, Callable

import numpy as np

from martin_bot.config import CANCEL_DELAY
from martin_bot.logger import get_logger
from martin_bot.strategy.errors import CriticalEngineError, LevelValidationError, MarketDataError, MarketNotFound
from martin_bot.strategy.intents import (
    CancelOrder,
    CheckOrders,
    EngineError,
    Intent,
    PlaceOrder,
    StateUpdate,
)
from martin_bot.strategy.models import (
    EngineStatus,
    OrderStatus,
    OrderTag,
    OrderUpdate,
    Position,
    STOP_LOSS_SELL,
    STOP_SELL,
    StrategyParams,
    TAKE_PROFIT,
)
from martin_bot.strategy.state import EngineState

log = get_logger(__name__)

# Допуск над ценой уровня 0 для первой покупки (защита от всплесков)
INITIAL_BUY_TOLERANCE = 1.01

TERMINAL_STATUSES = (EngineStatus.STOPPED, EngineStatus.STOPPED_ON_STOP_LOSS)

# движок, чей цикл проверки выполняется в текущем контексте
_cycle_owner: ContextVar[MartingaleEngine | None] = ContextVar("_cycle_owner", default=None)

Emit = Callable[[Intent], Awaitable[None]]


class MartingaleEngine:
    def __init__(
        self,
        strategy_id: int,
        symbol: str,
        params: StrategyParams,
        gateway,
        emit: Emit,
        snapshot: dict | None = None,
    ) -> None:
        self.strategy_id = strategy_id
        self.symbol = symbol
        self.params = params
        self.gateway = gateway
        self._emit = emit

        self.state = EngineState.from_snapshot(snapshot)
        self.status = EngineStatus.UNINITIALIZED
        self.market = None
        self.cancel_delay = CANCEL_DELAY

        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

        self.log_prefix = f"[Strategy {strategy_id} ({symbol})]"
        log.info("%s Engine created.", self.log_prefix)

    # ===================== ИНИЦИАЛИЗАЦИЯ =====================
    async def initialize(self) -> bool:
        log.info("%s Initializing...", self.log_prefix)
        self.status = EngineStatus.INITIALIZING
        try:
            self.market = await self.gateway.load_market_metadata(self.symbol)
            if self.market is None:
                raise MarketNotFound(f"Market {self.symbol} not found")
            log.info(
                "%s Market loaded: base=%s quote=%s step=%s tick=%s min amount=%s min cost=%s",
                self.log_prefix, self.market.base, self.market.quote, self.market.amount_step,
                self.market.price_tick, self.market.min_amount, self.market.min_cost,
            )

            if not self.state.martin_levels or len(self.state.martin_levels) != len(self.state.martin_amounts):
                self._calculate_martin_levels()
                await self._emit(StateUpdate(
                    self.strategy_id,
                    martin_levels=list(self.state.martin_levels),
                    martin_amounts=list(self.state.martin_amounts),
                ))
            else:
                log.info("%s Using martingale levels restored from state", self.log_prefix)

            for i, (price, amount) in enumerate(zip(self.state.martin_levels, self.state.martin_amounts)):
                log.debug("%s Level %d: price=%.4f amount=%.4f", self.log_prefix, i, price, amount)

            self._validate_amounts()

            if self.state.positions:
                log.info("%s Recalculating position from restored state", self.log_prefix)
                await self._recalculate_position()
            else:
                self.state.stop_loss_price = self.params.initial_price * (1 - self.params.stop_loss_percent / 100)
                log.info("%s Initial stop loss price: %.4f", self.log_prefix, self.state.stop_loss_price)
                await self._emit(StateUpdate(self.strategy_id, stop_loss_price=self.state.stop_loss_price))

        except (MarketNotFound, LevelValidationError, MarketDataError) as e:
            self.status = EngineStatus.UNINITIALIZED
            self.market = None
            log.error("%s Initialization failed: %s", self.log_prefix, e)
            await self._report_error(f"Initialization failed: {e}", detail=type(e).__name__)
            return False
        except Exception as e:
            self.status = EngineStatus.UNINITIALIZED
            self.market = None
            log.exception("%s Initialization failed", self.log_prefix)
            await self._report_error(f"Initialization failed: {e}", detail=type(e).__name__)
            return False

        self.status = EngineStatus.READY
        log.info("%s Initialized", self.log_prefix)
        return True

    def _calculate_martin_levels(self) -> None:
        steps = np.arange(self.params.levels)
        prices = self.params.initial_price * (1 - self.params.price_drop_percent / 100) ** steps
        amounts = self.params.initial_amount * self.params.amount_multiplier ** steps

        self.state.martin_levels = [float(p) for p in prices]
        self.state.martin_amounts = [float(a) for a in amounts]
        log.info("%s Calculated %d martingale levels", self.log_prefix, len(self.state.martin_levels))

    def _validate_amounts(self) -> None:
        min_amount = self.market.min_amount or 0
        for i, amount in enumerate(self.state.martin_amounts):
            precise = self.gateway.amount_to_precision(self.symbol, amount)
            if precise < min_amount:
                raise LevelValidationError(
                    f"Level {i} amount {precise} is less than minimum {min_amount}. "
                    f"Adjust initialAmount or amountMultiplier."
                )

    # ===================== ЗАПУСК / ОСТАНОВКА =====================
    @property
    def is_running(self) -> bool:
        return self.state.is_running

    @property
    def halted(self) -> bool:
        return self.status in TERMINAL_STATUSES

    async def start(self) -> None:
        if self.status is EngineStatus.RUNNING:
            log.warning("%s Engine already running", self.log_prefix)
            return
        if self.status is not EngineStatus.READY or self.market is None:
            log.warning("%s Engine not initialized (status=%s), call initialize() first",
                        self.log_prefix, self.status.value)
            error = CriticalEngineError(f"Engine not initialized (status={self.status.value})")
            await self._report_error(str(error), detail=type(error).__name__, critical=True)
            return

        log.info("%s Starting check loop, interval %d ms...", self.log_prefix, self.params.check_interval_ms)
        self.status = EngineStatus.RUNNING
        self.state.is_running = True
        self._stop_event.clear()
        await self._emit(StateUpdate(self.strategy_id, is_running=True))

        # первая проверка сразу, дальше по таймеру
        await self._run_cycle()

        # stop() мог прийти во время первой проверки
        if self.status is EngineStatus.RUNNING and not self._stop_event.is_set():
            self._task = asyncio.create_task(self._schedule_loop(), name=f"martin-{self.strategy_id}")
            log.info("%s Engine started", self.log_prefix)

    async def _schedule_loop(self) -> None:
        interval = self.params.check_interval_ms / 1000
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            await self._run_cycle()

    async def _run_cycle(self) -> None:
        # один цикл за раз для этой стратегии
        async with self._lock:
            if self.status is not EngineStatus.RUNNING:
                return
            token = _cycle_owner.set(self)
            try:
                await self._check_cycle()
            except Exception as e:
                log.exception("%s Error during check cycle", self.log_prefix)
                await self._report_error(str(e) or "Unknown error during check", detail=type(e).__name__)
            finally:
                _cycle_owner.reset(token)

    async def stop(self, cancel_orders: bool = True, sell_position: bool = False) -> None:
        if not self.state.is_running and self._task is None:
            log.warning("%s Engine not running", self.log_prefix)
            return

        self._stop_event.set()
        task, self._task = self._task, None

        if _cycle_owner.get() is self:
            # остановка изнутри собственного цикла (например, нет средств)
            await self._shutdown(cancel_orders, sell_position)
            return

        # дождаться цикла, который уже идёт
        async with self._lock:
            if self.halted and not self.state.is_running:
                # цикл уже остановил движок сам (нет средств, стоп-лосс)
                log.info("%s Engine already stopped by its check cycle", self.log_prefix)
            else:
                await self._shutdown(cancel_orders, sell_position)
        if task is not None:
            await asyncio.wait({task})

    async def _shutdown(self, cancel_orders: bool, sell_position: bool) -> None:
        log.info("%s Stopping engine... cancel orders: %s, sell position: %s",
                 self.log_prefix, cancel_orders, sell_position)
        self.state.is_running = False
        if not self.halted:
            self.status = EngineStatus.STOPPED

        if cancel_orders and self.state.open_orders:
            log.info("%s Cancelling %d open order(s)...", self.log_prefix, len(self.state.open_orders))
            for order_id in list(self.state.open_orders):
                await self._emit(CancelOrder(self.strategy_id, order_id, self.symbol))
                # снимаем с учёта сразу, результат отмены не ждём
                del self.state.open_orders[order_id]
                if order_id == self.state.take_profit_order_id:
                    self.state.take_profit_order_id = None
                await asyncio.sleep(self.cancel_delay)

        if sell_position and self.state.total_amount > 0:
            log.info("%s Requesting market sell of remaining position: %s %s",
                     self.log_prefix, self.state.total_amount, self.market.base if self.market else "")
            await self._emit_market_sell(STOP_SELL)
            self.state.positions = []
            await self._recalculate_position()

        await self._emit(StateUpdate(
            self.strategy_id,
            is_running=False,
            open_orders=dict(self.state.open_orders),
            take_profit_order_id=self.state.take_profit_order_id,
            positions=self.state.positions_payload(),
            total_invested=self.state.total_invested,
            total_amount=self.state.total_amount,
            average_cost=self.state.average_cost,
            take_profit_price=self.state.take_profit_price,
        ))
        log.info("%s Engine stopped", self.log_prefix)

    # ===================== ЦИКЛ ПРОВЕРКИ =====================
    async def _check_cycle(self) -> None:
        log.debug("%s Running check...", self.log_prefix)

        try:
            current_price = await self.gateway.fetch_last_price(self.symbol)
            if not current_price:
                raise MarketDataError("Failed to fetch current price.")
        except MarketDataError as e:
            log.error("%s Failed to fetch ticker: %s", self.log_prefix, e)
            await self._report_error(f"Failed to fetch ticker: {e}", detail=type(e).__name__)
            return
        log.debug("%s Current price: %s", self.log_prefix, current_price)

        # 1) стоп-лосс
        if self.state.positions and current_price <= self.state.stop_loss_price:
            await self._trigger_stop_loss(current_price)
            return

        # 2) статусы открытых ордеров
        if self.state.open_orders:
            log.debug("%s Requesting status check for %d open order(s).",
                      self.log_prefix, len(self.state.open_orders))
            await self._emit(CheckOrders(self.strategy_id, tuple(self.state.open_orders), self.symbol))

        if self.halted:
            return

        # 3) первая покупка
        if not self.state.positions and not self.state.open_orders:
            await self._place_initial_buy_if_needed(current_price)

        # 4) следующий уровень: только когда TP уже стоит (или ордеров нет вообще),
        # иначе средняя цена ещё не пересчитана
        elif self.state.positions:
            if self.state.take_profit_order_id or not self.state.open_orders:
                await self._check_and_place_martin_orders(current_price)
            else:
                log.debug("%s Waiting for take profit order before next level", self.log_prefix)

        log.debug("%s Check finished.", self.log_prefix)

    async def _place_initial_buy_if_needed(self, current_price: float) -> None:
        if self.state.has_order_for(0):
            log.debug("%s Initial buy order (level 0) already open.", self.log_prefix)
            return
        if not self.state.martin_levels:
            return

        initial_level_price = self.state.martin_levels[0]
        if current_price > initial_level_price * INITIAL_BUY_TOLERANCE:
            log.info("%s Current price %s too high for initial buy at %s. Waiting.",
                     self.log_prefix, current_price, initial_level_price)
            return

        await self._request_place_limit_order("buy", self.state.martin_amounts[0], initial_level_price, 0)

    async def _check_and_place_martin_orders(self, current_price: float) -> None:
        target_level = self.state.highest_level() + 1
        levels = self.state.martin_levels

        if target_level < len(levels) and current_price <= levels[target_level]:
            if self.state.has_order_for(target_level):
                log.debug("%s Order for level %d already open.", self.log_prefix, target_level)
                return
            log.info("%s Price %s triggered buy for next level %d.", self.log_prefix, current_price, target_level)
            await self._request_place_limit_order(
                "buy", self.state.martin_amounts[target_level], levels[target_level], target_level
            )
        else:
            log.debug("%s Price %s has not triggered level %d.", self.log_prefix, current_price, target_level)

    async def _trigger_stop_loss(self, current_price: float) -> None:
        log.warning("%s STOP LOSS TRIGGERED! Price %s <= SL price %s",
                    self.log_prefix, current_price, self.state.stop_loss_price)

        # больше никаких тиков
        self.status = EngineStatus.STOPPED_ON_STOP_LOSS
        self.state.is_running = False
        self._stop_event.set()
        self._task = None

        order_ids = list(self.state.open_orders)
        log.warning("%s Cancelling %d order(s) due to stop loss.", self.log_prefix, len(order_ids))
        for order_id in order_ids:
            await self._emit(CancelOrder(self.strategy_id, order_id, self.symbol))
        self.state.open_orders = {}
        self.state.take_profit_order_id = None

        if self.state.total_amount > 0:
            log.warning("%s Requesting market sell of %s %s due to stop loss.",
                        self.log_prefix, self.state.total_amount, self.market.base)
            await self._emit_market_sell(STOP_LOSS_SELL)
            self.state.positions = []
            await self._recalculate_position()

        self.state.last_error = f"Stop Loss Triggered at price {current_price}"
        await self._emit(StateUpdate(
            self.strategy_id,
            is_running=False,
            open_orders={},
            take_profit_order_id=None,
            positions=[],
            total_invested=0.0,
            total_amount=0.0,
            average_cost=0.0,
            last_error=self.state.last_error,
        ))
        log.warning("%s Stop loss processing finished. Engine stopped.", self.log_prefix)

    # ===================== ОБНОВЛЕНИЯ ОРДЕРОВ =====================
    async def handle_order_update(self, update: OrderUpdate) -> None:
        """Статус ордера от оркестратора (исполнен, отменён, ...)."""
        if update is None or not update.id:
            return

        order_id = update.id
        tag = self.state.open_orders.get(order_id)
        if tag is None:
            log.warning("%s Update for unknown or already processed order %s, ignoring",
                        self.log_prefix, order_id)
            return
        log.info("%s Order %s update, status: %s", self.log_prefix, order_id, update.status.value)

        changed = False

        if update.status is OrderStatus.CLOSED:
            log.info("%s Order %s (%s) closed. Side: %s, filled: %s, price: %s",
                     self.log_prefix, order_id, tag, update.side, update.filled, update.price)
            del self.state.open_orders[order_id]
            changed = True

            if update.side == "buy" and isinstance(tag, int):
                self.state.positions.append(Position(price=update.price, amount=update.filled, level=tag))
                await self._recalculate_position()
                await self._request_place_take_profit_order()

            elif update.side == "sell" and tag == TAKE_PROFIT:
                log.info("%s Take profit order %s filled! Resetting cycle", self.log_prefix, order_id)
                self.state.take_profit_order_id = None
                self.state.positions = []
                await self._recalculate_position()
                # цена исполнения TP как текущая цена
                await self._place_initial_buy_if_needed(update.price)

        elif update.status in (OrderStatus.CANCELED, OrderStatus.REJECTED):
            log.warning("%s Order %s (%s) is %s. Removing from open orders",
                        self.log_prefix, order_id, tag, update.status.value)
            del self.state.open_orders[order_id]
            if order_id == self.state.take_profit_order_id:
                self.state.take_profit_order_id = None
                # TODO: re-place the take profit here instead of waiting for the next buy fill
                log.warning("%s Take profit order %s is %s. It is replaced only on the next buy fill",
                            self.log_prefix, order_id, update.status.value)
            changed = True

        if changed:
            await self._emit(StateUpdate(
                self.strategy_id,
                open_orders=dict(self.state.open_orders),
                take_profit_order_id=self.state.take_profit_order_id,
            ))

    async def track_order(self, order_id: str, tag: OrderTag) -> None:
        """Ордер выставлен на бирже - запоминаем его id с тегом."""
        self.state.open_orders[str(order_id)] = tag
        if tag == TAKE_PROFIT:
            self.state.take_profit_order_id = str(order_id)
        await self._emit(StateUpdate(
            self.strategy_id,
            open_orders=dict(self.state.open_orders),
            take_profit_order_id=self.state.take_profit_order_id,
        ))

    async def record_error(self, message: str) -> None:
        """Ошибка исполнения (ордер не выставлен / не отменён), стратегия работает дальше."""
        self.state.last_error = message
        await self._emit(StateUpdate(self.strategy_id, last_error=message))

    # ===================== ПОЗИЦИЯ =====================
    async def _recalculate_position(self) -> bool:
        st = self.state
        before = (st.total_invested, st.total_amount, st.average_cost, st.take_profit_price, st.stop_loss_price)

        if not st.positions:
            st.total_invested = 0.0
            st.total_amount = 0.0
            st.average_cost = 0.0
            st.take_profit_price = 0.0
        else:
            st.total_invested = sum(p.price * p.amount for p in st.positions)
            st.total_amount = sum(p.amount for p in st.positions)
            st.average_cost = st.total_invested / st.total_amount if st.total_amount > 0 else 0.0
            st.take_profit_price = st.average_cost * (1 + self.params.take_profit_percent / 100)

        # SL считается от первой покупки цикла
        entry_price = st.positions[0].price if st.positions else self.params.initial_price
        st.stop_loss_price = entry_price * (1 - self.params.stop_loss_percent / 100)

        after = (st.total_invested, st.total_amount, st.average_cost, st.take_profit_price, st.stop_loss_price)
        if before == after:
            return False

        log.info("%s Position recalculated: invested=%.4f amount=%s avg=%.4f TP=%.4f SL=%.4f",
                 self.log_prefix, st.total_invested, st.total_amount, st.average_cost,
                 st.take_profit_price, st.stop_loss_price)
        await self._emit(StateUpdate(
            self.strategy_id,
            total_invested=st.total_invested,
            total_amount=st.total_amount,
            average_cost=st.average_cost,
            take_profit_price=st.take_profit_price,
            stop_loss_price=st.stop_loss_price,
            positions=st.positions_payload(),
        ))
        return True

    # ===================== НАМЕРЕНИЯ =====================
    async def _request_place_take_profit_order(self) -> None:
        # 1) старый TP - на отмену
        if self.state.take_profit_order_id:
            log.info("%s Requesting cancellation of old TP order %s",
                     self.log_prefix, self.state.take_profit_order_id)
            await self._emit(CancelOrder(self.strategy_id, self.state.take_profit_order_id, self.symbol))
            self.state.take_profit_order_id = None
            await self._emit(StateUpdate(self.strategy_id, take_profit_order_id=None))

        # 2) новый TP на всю позицию
        if self.state.total_amount > 0 and self.state.take_profit_price > 0:
            log.info("%s Requesting new TP order: %s @ %s",
                     self.log_prefix, self.state.total_amount, self.state.take_profit_price)
            await self._request_place_limit_order(
                "sell", self.state.total_amount, self.state.take_profit_price, TAKE_PROFIT
            )
        else:
            log.warning("%s Cannot place TP order - amount: %s, TP price: %s",
                        self.log_prefix, self.state.total_amount, self.state.take_profit_price)

    async def _request_place_limit_order(self, side: str, amount: float, price: float, tag: OrderTag) -> None:
        if self.halted:
            log.debug("%s Engine stopped, skipping %s order (tag %s)", self.log_prefix, side, tag)
            return

        precise_amount = self.gateway.amount_to_precision(self.symbol, amount)
        precise_price = self.gateway.price_to_precision(self.symbol, price)

        min_amount = self.market.min_amount or 0
        if precise_amount < min_amount:
            log.warning("%s Order amount %s below minimum %s. Skipping. Tag: %s",
                        self.log_prefix, precise_amount, min_amount, tag)
            return
        min_cost = self.market.min_cost or 0
        if min_cost > 0 and precise_amount * precise_price < min_cost:
            log.warning("%s Order cost (%s * %s) below minimum %s. Skipping. Tag: %s",
                        self.log_prefix, precise_amount, precise_price, min_cost, tag)
            return

        log.info("%s Requesting %s limit order: %s @ %s. Tag: %s",
                 self.log_prefix, side, precise_amount, precise_price, tag)
        await self._emit(PlaceOrder(
            self.strategy_id,
            symbol=self.symbol,
            type="limit",
            side=side,
            amount=precise_amount,
            price=precise_price,
            tag=tag,
        ))

    async def _emit_market_sell(self, tag: str) -> None:
        await self._emit(PlaceOrder(
            self.strategy_id,
            symbol=self.symbol,
            type="market",
            side="sell",
            amount=self.gateway.amount_to_precision(self.symbol, self.state.total_amount),
            tag=tag,
        ))

    async def _report_error(self, message: str, detail: str | None = None, critical: bool = False) -> None:
        self.state.last_error = message
        await self._emit(EngineError(self.strategy_id, message, detail=detail, critical=critical))
