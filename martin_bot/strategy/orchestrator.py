"""
Оркестратор стратегий: реестр активных движков + исполнение их намерений.

Каждому движку - свой IntentDispatcher. Намерения исполняются сразу
(await внутри emit), поэтому события одной стратегии применяются строго
по порядку.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass

from martin_bot.config import CHECK_DELAY, START_DELAY, STOP_DELAY, get_credentials
from martin_bot.logger import get_logger
from martin_bot.strategy.engine import MartingaleEngine, TERMINAL_STATUSES
from martin_bot.strategy.errors import (
    ConfigError,
    InsufficientFunds,
    MartinBotError,
    OrderError,
    OrderNotFound,
    StrategyAlreadyActive,
)
from martin_bot.strategy.intents import CancelOrder, CheckOrders, EngineError, Intent, PlaceOrder, StateUpdate
from martin_bot.strategy.models import EngineStatus, OrderStatus, OrderUpdate, StrategyConfig, TAKE_PROFIT

log = get_logger(__name__)


def open_bybit_session(account: str | None):
    from martin_bot.bybit_api.client import make_client
    from martin_bot.bybit_api.gateway import BybitGateway

    api_key, api_secret = get_credentials(account)
    return BybitGateway(make_client(api_key, api_secret))


@dataclass
class ActiveStrategy:
    engine: MartingaleEngine
    gateway: object
    config: StrategyConfig


class IntentDispatcher:
    """Исполняет намерения одного движка через биржевую сессию."""

    def __init__(self, orchestrator: StrategyOrchestrator, strategy_id: int, gateway) -> None:
        self.orchestrator = orchestrator
        self.strategy_id = strategy_id
        self.gateway = gateway
        self.engine: MartingaleEngine | None = None
        self.check_delay = CHECK_DELAY
        self._handlers = {
            PlaceOrder: self._on_place_order,
            CancelOrder: self._on_cancel_order,
            CheckOrders: self._on_check_orders,
            StateUpdate: self._on_state_update,
            EngineError: self._on_error,
        }

    async def __call__(self, intent: Intent) -> None:
        if intent.strategy_id != self.strategy_id:
            log.warning("Dispatcher of strategy %s got intent of strategy %s, ignoring",
                        self.strategy_id, intent.strategy_id)
            return
        await self._handlers[type(intent)](intent)

    @property
    def store(self):
        return self.orchestrator.store

    # === PLACE ===
    async def _on_place_order(self, intent: PlaceOrder) -> None:
        sid = self.strategy_id
        log.info("Placing order for strategy %s: %s %s %s @ %s (tag %s)",
                 sid, intent.type, intent.side, intent.amount, intent.price, intent.tag)
        try:
            if not intent.symbol or not intent.side or not intent.amount or not intent.type:
                raise OrderError("Place order request is missing required fields")

            market = self.gateway.market(intent.symbol)
            if market is not None and not market.active:
                raise OrderError(f"Market {intent.symbol} is not active")

            if intent.type == "limit":
                if not intent.price:
                    raise OrderError("Limit order without price")
                order_id = await self.gateway.place_limit_order(intent.symbol, intent.side, intent.amount, intent.price)
            elif intent.type == "market":
                order_id = await self.gateway.place_market_order(intent.symbol, intent.side, intent.amount)
            else:
                raise OrderError(f"Unsupported order type: {intent.type}")

        except InsufficientFunds as e:
            log.error("Strategy %s: insufficient funds, stopping engine. %s", sid, e)
            await self.engine.record_error(f"Order placement failed: {e}")
            await self.orchestrator.stop_instance(sid, cancel_orders=True, sell_position=False)
            return
        except MartinBotError as e:
            log.error("Strategy %s: order placement failed: %s", sid, e)
            await self.engine.record_error(f"Order placement failed: {e}")
            return

        log.info("Strategy %s: order placed, id %s", sid, order_id)

        # ликвидационные продажи не отслеживаем
        if isinstance(intent.tag, int) or intent.tag == TAKE_PROFIT:
            await self.engine.track_order(order_id, intent.tag)

    # === CANCEL ===
    async def _on_cancel_order(self, intent: CancelOrder) -> None:
        log.info("Cancelling order %s of strategy %s", intent.order_id, self.strategy_id)
        try:
            await self.gateway.cancel_order(intent.order_id, intent.symbol)
        except OrderNotFound:
            log.warning("Order %s (strategy %s) not found on cancel. Already closed or cancelled?",
                        intent.order_id, self.strategy_id)
            return
        except MartinBotError as e:
            log.error("Strategy %s: failed to cancel order %s: %s", self.strategy_id, intent.order_id, e)
            await self.engine.record_error(f"Order cancellation failed: {e}")
            return
        log.info("Order %s of strategy %s cancelled", intent.order_id, self.strategy_id)

    # === CHECK ===
    async def _on_check_orders(self, intent: CheckOrders) -> None:
        log.debug("Checking %d order(s) of strategy %s", len(intent.order_ids), self.strategy_id)
        for i, order_id in enumerate(intent.order_ids):
            if i:
                # пауза между запросами, чтобы не упереться в лимиты
                await asyncio.sleep(self.check_delay)

            try:
                update = await self.gateway.fetch_order_status(order_id, intent.symbol)
            except OrderNotFound:
                log.warning("Order %s (strategy %s) not found during check. Treating as canceled.",
                            order_id, self.strategy_id)
                update = OrderUpdate(id=order_id, status=OrderStatus.CANCELED, symbol=intent.symbol)
            except MartinBotError as e:
                log.error("Strategy %s: failed to fetch order %s: %s", self.strategy_id, order_id, e)
                await self.engine.record_error(f"Order status check failed: {e}")
                continue

            await self.engine.handle_order_update(update)

    # === STATE ===
    async def _on_state_update(self, intent: StateUpdate) -> None:
        log.debug("State update of strategy %s: %s", self.strategy_id, list(intent.changes()))
        self.store.update(intent)

        # стоп-лосс остановил движок сам - убираем из реестра
        if intent.is_running is False and self.engine is not None and self.engine.status in TERMINAL_STATUSES:
            self.orchestrator._forget(self.strategy_id, self.engine)

    # === ERROR ===
    async def _on_error(self, intent: EngineError) -> None:
        log.error("Engine error in strategy %s: %s (%s)", self.strategy_id, intent.message, intent.detail)
        self.store.mark_stopped(self.strategy_id, f"Engine error: {intent.message}")
        if intent.critical:
            await self.orchestrator.stop_instance(self.strategy_id, cancel_orders=True, sell_position=False)


class StrategyOrchestrator:
    def __init__(self, store, repository=None, session_factory=open_bybit_session) -> None:
        self.store = store
        self.repository = repository
        self._session_factory = session_factory
        # {strategy_id: ActiveStrategy} - единственное место, где живут движки
        self._active: dict[int, ActiveStrategy] = {}
        # одна биржевая сессия на аккаунт
        self._sessions: dict[str | None, object] = {}

    # === РЕЕСТР ===
    def get(self, strategy_id: int) -> ActiveStrategy | None:
        return self._active.get(strategy_id)

    def active_ids(self) -> list[int]:
        return list(self._active)

    def snapshot(self, strategy_id: int) -> dict | None:
        instance = self._active.get(strategy_id)
        if instance is not None:
            return instance.engine.state.to_snapshot()
        return self.store.load(strategy_id)

    def _forget(self, strategy_id: int, engine: MartingaleEngine) -> None:
        instance = self._active.get(strategy_id)
        if instance is not None and instance.engine is engine:
            del self._active[strategy_id]
            log.info("Strategy %s removed from active instances", strategy_id)

    def _session_for(self, account: str | None):
        if account not in self._sessions:
            self._sessions[account] = self._session_factory(account)
        return self._sessions[account]

    # === ЖИЗНЕННЫЙ ЦИКЛ ===
    async def start_instance(self, config: StrategyConfig) -> bool:
        sid = config.id
        if sid in self._active:
            log.warning("Strategy %s (%s) is already running.", sid, config.symbol)
            raise StrategyAlreadyActive(f"Strategy {sid} is already running")

        log.info("Starting strategy %s (%s)...", sid, config.symbol)
        try:
            params = config.params
            gateway = self._session_for(config.account)
            dispatcher = IntentDispatcher(self, sid, gateway)
            engine = MartingaleEngine(sid, config.symbol, params, gateway, emit=dispatcher, snapshot=self.store.load(sid))
        except ConfigError as e:
            log.error("Cannot start strategy %s: %s", sid, e)
            self.store.mark_stopped(sid, str(e))
            raise
        dispatcher.engine = engine

        if not await engine.initialize():
            log.error("Strategy %s failed to initialize.", sid)
            return False

        self._active[sid] = ActiveStrategy(engine=engine, gateway=gateway, config=config)
        await engine.start()

        if engine.status is EngineStatus.RUNNING:
            log.info("Strategy %s (%s) started.", sid, config.symbol)
        else:
            log.warning("Strategy %s (%s) stopped during its first check (status=%s).",
                        sid, config.symbol, engine.status.value)
        return True

    async def stop_instance(self, strategy_id: int, cancel_orders: bool = True, sell_position: bool = False) -> bool:
        instance = self._active.get(strategy_id)
        if instance is None:
            log.warning("Strategy %s is not running or not found.", strategy_id)
            self.store.update(StateUpdate(strategy_id, is_running=False))
            return False

        log.info("Stopping strategy %s...", strategy_id)
        await instance.engine.stop(cancel_orders, sell_position)
        self._forget(strategy_id, instance.engine)
        log.info("Strategy %s stopped.", strategy_id)
        return True

    async def start_all(self) -> None:
        log.info("Starting all active strategies...")
        try:
            strategies = [s for s in self.repository.load_all() if s.is_active]
        except MartinBotError as e:
            log.error("Failed to load strategies: %s", e)
            return

        log.info("Found %d active strategies to start.", len(strategies))
        for i, config in enumerate(strategies):
            if i:
                # не бьём по API биржи пачкой
                await asyncio.sleep(START_DELAY)
            try:
                await self.start_instance(config)
            except MartinBotError as e:
                log.error("Strategy %s not started: %s", config.id, e)
            except Exception:
                log.exception("Strategy %s not started", config.id)

    async def stop_all(self) -> None:
        log.info("Stopping all active strategy engines...")
        for i, strategy_id in enumerate(list(self._active)):
            if i:
                await asyncio.sleep(STOP_DELAY)
            await self.stop_instance(strategy_id, cancel_orders=True, sell_position=False)
        log.info("All active engines stopped.")
