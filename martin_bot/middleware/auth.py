from aiogram import BaseMiddleware
from aiogram.types import Message, CallbackQuery

from martin_bot.config import ALLOWED_USERS

DENIED_TEXT = (
    "⛔ *Доступ запрещён*\n"
    "Этот бот является приватным и недоступен для использования."
)


class AllowOnlyWhitelistMiddleware(BaseMiddleware):
    def __init__(self, allowed_users: set[int] | None = None):
        self.allowed_users = ALLOWED_USERS if allowed_users is None else allowed_users

    async def __call__(self, handler, event, data):

        user_id = None

        # Сообщения и кнопки (callback)
        if isinstance(event, (Message, CallbackQuery)) and event.from_user:
            user_id = event.from_user.id

        # Если что-то другое, пропускаем
        if user_id is None:
            return await handler(event, data)

        # 🔒 Если пользователь НЕ в whitelist
        if user_id not in self.allowed_users:
            if isinstance(event, Message):
                await event.answer(DENIED_TEXT, parse_mode="Markdown")
            elif isinstance(event, CallbackQuery):
                await event.answer("⛔ Доступ запрещён", show_alert=True)
            return  # полностью блокируем дальнейшие хендлеры

        return await handler(event, data)
