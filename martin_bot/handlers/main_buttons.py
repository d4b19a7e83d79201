from aiogram import Router, F, types
from aiogram.filters import CommandStart, Command, CommandObject

from martin_bot.keyboards import main_kb, stop_strategy_kb, BTN_STRATEGIES, BTN_ACTIVE, BTN_STOP_ALL
from martin_bot.strategy.errors import MartinBotError
from martin_bot.strategy.orchestrator import StrategyOrchestrator

router = Router()


def _parse_id(command: CommandObject) -> int | None:
    try:
        return int((command.args or "").strip())
    except ValueError:
        return None


def format_status(strategy_id: int, snapshot: dict | None) -> str:
    if not snapshot:
        return f"📭 Нет данных по стратегии *{strategy_id}*"

    running = "🟢 работает" if snapshot.get("isRunning") else "🔴 остановлена"
    positions = snapshot.get("positions") or []
    open_orders = snapshot.get("openOrders") or {}

    lines = [
        f"📊 *Стратегия {strategy_id}* : {running}\n",
        f"Позиций : *{len(positions)}*",
        f"Количество : *{round(snapshot.get('totalAmount') or 0, 6)}*",
        f"Вложено : *{round(snapshot.get('totalInvested') or 0, 4)}*",
        f"Средняя цена : *{round(snapshot.get('averageCost') or 0, 4)}*",
        f"Take Profit : *{round(snapshot.get('takeProfitPrice') or 0, 4)}*",
        f"Stop Loss : *{round(snapshot.get('stopLossPrice') or 0, 4)}*",
        f"Открытых ордеров : *{len(open_orders)}*",
    ]
    for order_id, tag in open_orders.items():
        lines.append(f"  `{order_id}` → {tag}")
    if snapshot.get("lastError"):
        lines.append(f"\n⚠ Последняя ошибка : {snapshot['lastError']}")
    return "\n".join(lines)


# START КОМАНДА
@router.message(CommandStart())
async def cmd_start(message: types.Message):
    await message.answer(
        "Привет 👋 я мартингейл-бот для Bybit 🤖\n\n"
        "Стратегия : BUY уровня → TP на всю позицию → откуп ниже по уровням\n"
        "Стоп-лосс : продажа всей позиции и остановка.\n\n"
        "/status <id> — состояние стратегии\n"
        "/run <id> — запустить\n"
        "/stop <id> — остановить\n\n"
        "Выбери действие ⬇️",
        reply_markup=main_kb
    )


# 📋 Все стратегии из strategies.json
@router.message(Command("strategies"))
@router.message(F.text == BTN_STRATEGIES)
async def btn_strategies(message: types.Message, orchestrator: StrategyOrchestrator):
    try:
        strategies = orchestrator.repository.load_all()
    except MartinBotError as e:
        await message.answer(f"⚠ Ошибка чтения стратегий : {e}")
        return

    if not strategies:
        await message.answer("📭 Стратегий нет.")
        return

    active = set(orchestrator.active_ids())
    lines = ["📋 *Стратегии*\n"]
    for s in strategies:
        mark = "🟢" if s.id in active else ("⚪" if s.is_active else "⚫")
        lines.append(f"{mark} *{s.id}* {s.name} — {s.symbol}")
    await message.answer("\n".join(lines), parse_mode="Markdown")


# 🟢 Активные стратегии
@router.message(F.text == BTN_ACTIVE)
async def btn_active(message: types.Message, orchestrator: StrategyOrchestrator):
    ids = orchestrator.active_ids()
    if not ids:
        await message.answer("📭 Активных стратегий нет.")
        return
    for strategy_id in ids:
        await message.answer(format_status(strategy_id, orchestrator.snapshot(strategy_id)), parse_mode="Markdown")


@router.message(Command("status"))
async def cmd_status(message: types.Message, command: CommandObject, orchestrator: StrategyOrchestrator):
    strategy_id = _parse_id(command)
    if strategy_id is None:
        await message.answer("Использование : /status <id>")
        return
    await message.answer(format_status(strategy_id, orchestrator.snapshot(strategy_id)), parse_mode="Markdown")


@router.message(Command("run"))
async def cmd_run(message: types.Message, command: CommandObject, orchestrator: StrategyOrchestrator):
    strategy_id = _parse_id(command)
    if strategy_id is None:
        await message.answer("Использование : /run <id>")
        return

    try:
        config = orchestrator.repository.get(strategy_id)
        if config is None:
            await message.answer(f"❌ Стратегия *{strategy_id}* не найдена", parse_mode="Markdown")
            return
        started = await orchestrator.start_instance(config)
    except MartinBotError as e:
        await message.answer(f"⚠ Не удалось запустить : {e}")
        return

    if started:
        await message.answer(f"🚀 Стратегия *{strategy_id}* запущена ({config.symbol})", parse_mode="Markdown")
    else:
        await message.answer(
            f"❌ Стратегия *{strategy_id}* не прошла инициализацию\n"
            f"Подробности : /status {strategy_id}",
            parse_mode="Markdown"
        )


@router.message(Command("stop"))
async def cmd_stop(message: types.Message, command: CommandObject, orchestrator: StrategyOrchestrator):
    strategy_id = _parse_id(command)
    if strategy_id is None:
        await message.answer("Использование : /stop <id>")
        return
    if orchestrator.get(strategy_id) is None:
        await message.answer(f"Стратегия *{strategy_id}* : ❌ не активна", parse_mode="Markdown")
        return
    await message.answer(
        f"⏹ Как остановить стратегию *{strategy_id}*?",
        reply_markup=stop_strategy_kb(strategy_id),
        parse_mode="Markdown"
    )


# ⏹ Полный стоп всех стратегий (ордера отменяются, позиции остаются)
@router.message(F.text == BTN_STOP_ALL)
async def btn_stop_all(message: types.Message, orchestrator: StrategyOrchestrator):
    await orchestrator.stop_all()
    await message.answer("⏹ Все стратегии остановлены.")
