from aiogram.types import ReplyKeyboardMarkup, KeyboardButton, InlineKeyboardMarkup, InlineKeyboardButton

BTN_STRATEGIES = "📋 Стратегии"
BTN_ACTIVE = "🟢 Активные"
BTN_STOP_ALL = "⏹ Остановить все"


main_kb = ReplyKeyboardMarkup(
    keyboard=[
        [KeyboardButton(text=BTN_STRATEGIES), KeyboardButton(text=BTN_ACTIVE)],
        [KeyboardButton(text=BTN_STOP_ALL)],
    ],
    resize_keyboard=True
)


def stop_strategy_kb(strategy_id: int) -> InlineKeyboardMarkup:
    """Варианты остановки: callback_data = stop:<id>:<cancel_orders>:<sell_position>."""
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="⏸ Только стоп", callback_data=f"stop:{strategy_id}:0:0")],
            [InlineKeyboardButton(text="❌ Стоп + отмена ордеров", callback_data=f"stop:{strategy_id}:1:0")],
            [InlineKeyboardButton(text="💸 Стоп + отмена + продать всё", callback_data=f"stop:{strategy_id}:1:1")],
        ]
    )
