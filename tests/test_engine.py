"""Unit tests for MartingaleEngine (fake gateway, recorded intents)."""

import asyncio

import pytest

from martin_bot.strategy.engine import MartingaleEngine
from martin_bot.strategy.intents import CancelOrder, CheckOrders, EngineError, PlaceOrder, StateUpdate
from martin_bot.strategy.models import (
    EngineStatus,
    OrderStatus,
    OrderUpdate,
    STOP_LOSS_SELL,
    STOP_SELL,
    StrategyParams,
    TAKE_PROFIT,
)

from tests.fakes import PARAMS, BlockingGateway, FakeGateway

HOLDING = {
    "positions": [{"price": 100, "amount": 10, "level": 0}],
    "openOrders": {"tp": TAKE_PROFIT},
    "takeProfitOrderId": "tp",
}


def make_engine(params, gateway, recorder, snapshot=None) -> MartingaleEngine:
    return MartingaleEngine(1, "SOLUSDT", params, gateway, emit=recorder, snapshot=snapshot)


class TestInitialize:
    """Tests for level generation and startup validation."""

    @pytest.mark.asyncio
    async def test_levels_and_amounts(self, params, gateway, recorder) -> None:
        engine = make_engine(params, gateway, recorder)

        assert await engine.initialize() is True

        assert engine.status is EngineStatus.READY
        assert engine.state.martin_levels == pytest.approx([100, 90, 81])
        assert engine.state.martin_amounts == pytest.approx([10, 20, 40])
        assert engine.state.stop_loss_price == pytest.approx(70)

        levels_update = recorder.of_type(StateUpdate)[0]
        assert levels_update.martin_levels == pytest.approx([100, 90, 81])
        assert levels_update.martin_amounts == pytest.approx([10, 20, 40])

    @pytest.mark.asyncio
    async def test_restored_levels_are_kept(self, params, gateway, recorder) -> None:
        snapshot = {"martinLevels": [50, 40, 30], "martinAmounts": [1, 2, 3]}
        engine = make_engine(params, gateway, recorder, snapshot)

        assert await engine.initialize() is True

        assert engine.state.martin_levels == [50, 40, 30]
        assert not any(u.martin_levels for u in recorder.of_type(StateUpdate))

    @pytest.mark.asyncio
    async def test_missing_market_fails(self, params, gateway, recorder) -> None:
        gateway.missing = True
        engine = make_engine(params, gateway, recorder)

        assert await engine.initialize() is False

        assert engine.status is EngineStatus.UNINITIALIZED
        errors = recorder.of_type(EngineError)
        assert len(errors) == 1
        assert "Initialization failed" in errors[0].message
        assert errors[0].detail == "MarketNotFound"

    @pytest.mark.asyncio
    async def test_level_below_min_amount_fails(self, params, recorder) -> None:
        engine = make_engine(params, FakeGateway(min_amount=50), recorder)

        assert await engine.initialize() is False

        assert recorder.of_type(EngineError)[0].detail == "LevelValidationError"
        assert engine.market is None

    @pytest.mark.asyncio
    async def test_start_without_initialize_is_critical(self, params, gateway, recorder) -> None:
        engine = make_engine(params, gateway, recorder)

        await engine.start()

        errors = recorder.of_type(EngineError)
        assert len(errors) == 1
        assert errors[0].critical is True
        assert errors[0].detail == "CriticalEngineError"
        assert engine.status is EngineStatus.UNINITIALIZED
        assert recorder.of_type(PlaceOrder) == []


class TestCheckCycle:
    """Tests for the periodic check run by start()."""

    @pytest.mark.asyncio
    async def test_initial_buy_on_start(self, params, gateway, recorder) -> None:
        engine = make_engine(params, gateway, recorder)
        await engine.initialize()

        await engine.start()
        try:
            assert engine.status is EngineStatus.RUNNING
            assert engine.is_running is True
            orders = recorder.of_type(PlaceOrder)
            assert len(orders) == 1
            assert orders[0].type == "limit"
            assert orders[0].side == "buy"
            assert orders[0].tag == 0
            assert orders[0].amount == pytest.approx(10)
            assert orders[0].price == pytest.approx(100)
        finally:
            await engine.stop(cancel_orders=False)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price, expected", [(100.9, 1), (101.5, 0)])
    async def test_initial_buy_tolerance(self, params, recorder, price, expected) -> None:
        engine = make_engine(params, FakeGateway(price=price), recorder)
        await engine.initialize()

        await engine.start()
        try:
            assert len(recorder.of_type(PlaceOrder)) == expected
        finally:
            await engine.stop(cancel_orders=False)

    @pytest.mark.asyncio
    async def test_open_entry_order_is_not_duplicated(self, params, recorder) -> None:
        engine = make_engine(params, FakeGateway(price=99), recorder, {"openOrders": {"b0": 0}})
        await engine.initialize()

        await engine.start()
        try:
            checks = recorder.of_type(CheckOrders)
            assert checks[0].order_ids == ("b0",)
            assert recorder.of_type(PlaceOrder) == []
        finally:
            await engine.stop(cancel_orders=False)

    @pytest.mark.asyncio
    async def test_next_level_placed_when_price_drops(self, params, recorder) -> None:
        engine = make_engine(params, FakeGateway(price=89), recorder, HOLDING)
        await engine.initialize()

        await engine.start()
        try:
            orders = recorder.of_type(PlaceOrder)
            assert len(orders) == 1
            assert orders[0].tag == 1
            assert orders[0].side == "buy"
            assert orders[0].amount == pytest.approx(20)
            assert orders[0].price == pytest.approx(90)
        finally:
            await engine.stop(cancel_orders=False)

    @pytest.mark.asyncio
    async def test_next_level_waits_for_take_profit(self, params, recorder) -> None:
        snapshot = {
            "positions": [{"price": 100, "amount": 10, "level": 0}],
            "openOrders": {"b1": 1},
        }
        engine = make_engine(params, FakeGateway(price=80), recorder, snapshot)
        await engine.initialize()

        await engine.start()
        try:
            assert recorder.of_type(PlaceOrder) == []
        finally:
            await engine.stop(cancel_orders=False)

    @pytest.mark.asyncio
    async def test_open_level_order_is_not_duplicated(self, params, recorder) -> None:
        snapshot = {**HOLDING, "openOrders": {"tp": TAKE_PROFIT, "b1": 1}}
        engine = make_engine(params, FakeGateway(price=89), recorder, snapshot)
        await engine.initialize()

        await engine.start()
        try:
            await engine._run_cycle()

            assert len(recorder.of_type(CheckOrders)) == 2
            assert recorder.of_type(PlaceOrder) == []
        finally:
            await engine.stop(cancel_orders=False)

    @pytest.mark.asyncio
    async def test_ticker_failure_reported_and_engine_keeps_running(self, params, recorder) -> None:
        engine = make_engine(params, FakeGateway(price=None), recorder)
        await engine.initialize()

        await engine.start()
        try:
            errors = recorder.of_type(EngineError)
            assert len(errors) == 1
            assert "Failed to fetch ticker" in errors[0].message
            assert engine.status is EngineStatus.RUNNING
        finally:
            await engine.stop(cancel_orders=False)

    @pytest.mark.asyncio
    async def test_stop_loss(self, params, recorder) -> None:
        engine = make_engine(params, FakeGateway(price=69.0), recorder, HOLDING)
        await engine.initialize()

        await engine.start()

        assert engine.status is EngineStatus.STOPPED_ON_STOP_LOSS
        assert engine.is_running is False
        assert [c.order_id for c in recorder.of_type(CancelOrder)] == ["tp"]

        sells = recorder.of_type(PlaceOrder)
        assert len(sells) == 1
        assert sells[0].type == "market"
        assert sells[0].side == "sell"
        assert sells[0].tag == STOP_LOSS_SELL
        assert sells[0].amount == pytest.approx(10)

        assert engine.state.positions == []
        assert engine.state.open_orders == {}
        assert engine.state.take_profit_order_id is None
        assert engine.state.total_amount == 0
        assert engine.state.last_error == "Stop Loss Triggered at price 69.0"

        final = recorder.of_type(StateUpdate)[-1]
        assert final.is_running is False
        assert final.last_error == engine.state.last_error

        # после стоп-лосса stop() ничего не делает
        count = len(recorder.intents)
        await engine.stop()
        assert len(recorder.intents) == count

        # новые тики ничего не выставляют
        recorder.intents.clear()
        engine.gateway.price = 50
        await engine._run_cycle()
        assert recorder.intents == []
        assert engine._task is None


class TestOrderUpdates:
    """Tests for fills, cancellations and take profit handling."""

    @pytest.mark.asyncio
    async def test_buy_fill_places_take_profit(self, params, gateway, recorder) -> None:
        engine = make_engine(params, gateway, recorder)
        await engine.initialize()
        await engine.track_order("b0", 0)
        recorder.intents.clear()

        await engine.handle_order_update(
            OrderUpdate(id="b0", status=OrderStatus.CLOSED, side="buy", filled=10, price=100)
        )

        st = engine.state
        assert st.open_orders == {}
        assert len(st.positions) == 1
        assert st.total_invested == pytest.approx(1000)
        assert st.average_cost == pytest.approx(100)
        assert st.take_profit_price == pytest.approx(100.5)
        assert st.stop_loss_price == pytest.approx(70)

        tp = recorder.of_type(PlaceOrder)
        assert len(tp) == 1
        assert tp[0].side == "sell"
        assert tp[0].tag == TAKE_PROFIT
        assert tp[0].amount == pytest.approx(10)
        assert tp[0].price == pytest.approx(100.5)

    @pytest.mark.asyncio
    async def test_second_fill_replaces_take_profit(self, params, gateway, recorder) -> None:
        engine = make_engine(params, gateway, recorder, HOLDING)
        await engine.initialize()
        await engine.track_order("b1", 1)
        recorder.intents.clear()

        await engine.handle_order_update(
            OrderUpdate(id="b1", status=OrderStatus.CLOSED, side="buy", filled=20, price=90)
        )

        st = engine.state
        assert st.total_amount == pytest.approx(30)
        assert st.average_cost == pytest.approx(2800 / 30)
        assert st.take_profit_price == pytest.approx(2800 / 30 * 1.005)
        # SL считается от первой покупки
        assert st.stop_loss_price == pytest.approx(70)

        assert [c.order_id for c in recorder.of_type(CancelOrder)] == ["tp"]
        assert st.take_profit_order_id is None
        new_tp = recorder.of_type(PlaceOrder)[0]
        assert new_tp.tag == TAKE_PROFIT
        assert new_tp.amount == pytest.approx(30)

    @pytest.mark.asyncio
    async def test_take_profit_fill_restarts_cycle(self, params, gateway, recorder) -> None:
        engine = make_engine(params, gateway, recorder, HOLDING)
        await engine.initialize()
        recorder.intents.clear()

        await engine.handle_order_update(
            OrderUpdate(id="tp", status=OrderStatus.CLOSED, side="sell", filled=10, price=100.5)
        )

        st = engine.state
        assert st.positions == []
        assert st.total_amount == 0
        assert st.take_profit_order_id is None
        assert st.open_orders == {}

        entry = recorder.of_type(PlaceOrder)
        assert len(entry) == 1
        assert entry[0].side == "buy"
        assert entry[0].tag == 0
        assert entry[0].price == pytest.approx(100)

    @pytest.mark.asyncio
    async def test_cancelled_take_profit_is_not_replaced(self, params, gateway, recorder) -> None:
        engine = make_engine(params, gateway, recorder, HOLDING)
        await engine.initialize()
        recorder.intents.clear()

        await engine.handle_order_update(OrderUpdate(id="tp", status=OrderStatus.CANCELED))

        assert engine.state.take_profit_order_id is None
        assert engine.state.open_orders == {}
        assert len(engine.state.positions) == 1
        assert recorder.of_type(PlaceOrder) == []
        update = recorder.of_type(StateUpdate)[-1]
        assert update.open_orders == {}
        assert update.take_profit_order_id is None

    @pytest.mark.asyncio
    async def test_unknown_order_is_ignored(self, params, gateway, recorder) -> None:
        engine = make_engine(params, gateway, recorder, HOLDING)
        await engine.initialize()
        recorder.intents.clear()

        await engine.handle_order_update(
            OrderUpdate(id="zzz", status=OrderStatus.CLOSED, side="buy", filled=5, price=90)
        )

        assert recorder.intents == []
        assert len(engine.state.positions) == 1

    @pytest.mark.asyncio
    async def test_open_status_changes_nothing(self, params, gateway, recorder) -> None:
        engine = make_engine(params, gateway, recorder, HOLDING)
        await engine.initialize()
        recorder.intents.clear()

        await engine.handle_order_update(OrderUpdate(id="tp", status=OrderStatus.OPEN))

        assert recorder.intents == []
        assert engine.state.open_orders == {"tp": TAKE_PROFIT}


class TestPosition:
    """Tests for aggregate recalculation."""

    @pytest.mark.asyncio
    async def test_aggregates(self, params, gateway, recorder) -> None:
        snapshot = {
            "positions": [
                {"price": 100, "amount": 10, "level": 0},
                {"price": 90, "amount": 20, "level": 1},
                {"price": 81, "amount": 40, "level": 2},
            ]
        }
        engine = make_engine(params, gateway, recorder, snapshot)
        await engine.initialize()

        st = engine.state
        invested = 100 * 10 + 90 * 20 + 81 * 40
        assert st.total_invested == pytest.approx(invested)
        assert st.total_amount == pytest.approx(70)
        assert st.average_cost * st.total_amount == pytest.approx(st.total_invested)
        assert st.take_profit_price == pytest.approx(invested / 70 * 1.005)
        assert st.highest_level() == 2

    @pytest.mark.asyncio
    async def test_recalculation_is_idempotent(self, params, gateway, recorder) -> None:
        engine = make_engine(params, gateway, recorder, HOLDING)
        await engine.initialize()
        recorder.intents.clear()

        assert await engine._recalculate_position() is False
        assert recorder.intents == []


class TestStop:
    """Tests for stop() options."""

    @pytest.mark.asyncio
    async def test_stop_cancels_orders(self, params, recorder) -> None:
        engine = make_engine(params, FakeGateway(price=95), recorder, {"openOrders": {"a": 0, "b": 1}})
        engine.cancel_delay = 0
        await engine.initialize()
        await engine.start()
        recorder.intents.clear()

        await engine.stop(cancel_orders=True)

        assert engine.status is EngineStatus.STOPPED
        assert engine.is_running is False
        assert sorted(c.order_id for c in recorder.of_type(CancelOrder)) == ["a", "b"]
        assert engine.state.open_orders == {}
        final = recorder.of_type(StateUpdate)[-1]
        assert final.is_running is False
        assert final.open_orders == {}

        count = len(recorder.intents)
        await engine.stop()
        assert len(recorder.intents) == count

    @pytest.mark.asyncio
    async def test_stop_keeps_orders_without_cancel(self, params, recorder) -> None:
        engine = make_engine(params, FakeGateway(price=95), recorder, {"openOrders": {"a": 0}})
        await engine.initialize()
        await engine.start()

        await engine.stop(cancel_orders=False)

        assert recorder.of_type(CancelOrder) == []
        assert engine.state.open_orders == {"a": 0}

    @pytest.mark.asyncio
    async def test_stop_sells_position(self, params, recorder) -> None:
        engine = make_engine(params, FakeGateway(price=95), recorder, HOLDING)
        engine.cancel_delay = 0
        await engine.initialize()
        await engine.start()
        recorder.intents.clear()

        await engine.stop(cancel_orders=True, sell_position=True)

        assert [c.order_id for c in recorder.of_type(CancelOrder)] == ["tp"]
        sells = recorder.of_type(PlaceOrder)
        assert len(sells) == 1
        assert sells[0].type == "market"
        assert sells[0].tag == STOP_SELL
        assert sells[0].amount == pytest.approx(10)
        assert engine.state.positions == []
        assert engine.state.total_amount == 0


class TestScheduling:
    """Tests for the timer loop and overlapping checks."""

    @pytest.fixture
    def fast_params(self) -> StrategyParams:
        return StrategyParams.from_dict({**PARAMS, "checkInterval": 10})

    @pytest.mark.asyncio
    async def test_one_check_at_a_time(self, fast_params, recorder) -> None:
        gateway = BlockingGateway(price=101.5)
        engine = make_engine(fast_params, gateway, recorder)
        await engine.initialize()
        await engine.start()
        try:
            gateway.blocking = True
            await asyncio.wait_for(gateway.entered.wait(), timeout=1)

            extra = asyncio.create_task(engine._run_cycle())
            await asyncio.sleep(0.05)
            assert gateway.max_active == 1

            gateway.release.set()
            await extra
            assert gateway.max_active == 1
        finally:
            await engine.stop(cancel_orders=False)

    @pytest.mark.asyncio
    async def test_stop_waits_for_running_check(self, fast_params, recorder) -> None:
        gateway = BlockingGateway(price=101.5)
        engine = make_engine(fast_params, gateway, recorder)
        await engine.initialize()
        await engine.start()

        gateway.blocking = True
        await asyncio.wait_for(gateway.entered.wait(), timeout=1)
        stopping = asyncio.create_task(engine.stop(cancel_orders=False))
        await asyncio.sleep(0.02)
        assert not stopping.done()

        gateway.release.set()
        await stopping

        calls = gateway.calls
        await asyncio.sleep(0.05)
        assert gateway.calls == calls
        assert engine.status is EngineStatus.STOPPED
        assert engine._task is None
        assert recorder.of_type(StateUpdate)[-1].is_running is False
