from aiogram import Router, F, types

from martin_bot.strategy.orchestrator import StrategyOrchestrator

router = Router()


@router.callback_query(F.data.startswith("stop:"))
async def stop_strategy_callback(callback: types.CallbackQuery, orchestrator: StrategyOrchestrator):
    try:
        _, strategy_id, cancel_orders, sell_position = callback.data.split(":")
        strategy_id = int(strategy_id)
    except ValueError:
        await callback.answer("⚠ Неверная кнопка")
        return

    stopped = await orchestrator.stop_instance(
        strategy_id,
        cancel_orders=cancel_orders == "1",
        sell_position=sell_position == "1",
    )

    if stopped:
        await callback.message.answer(f"⏹ Стратегия *{strategy_id}* остановлена", parse_mode="Markdown")
    else:
        await callback.message.answer(f"Стратегия *{strategy_id}* уже не активна", parse_mode="Markdown")
    await callback.answer()
