import asyncio
from aiogram import Bot, Dispatcher

from martin_bot.config import BOT_TOKEN, STATE_FILE, STRATEGIES_FILE
from martin_bot.logger import get_logger
from martin_bot.middleware.auth import AllowOnlyWhitelistMiddleware
# Импортируем роутеры с кнопками
from martin_bot.handlers.main_buttons import router as buttons_router
from martin_bot.handlers.stop_strategy import router as stop_router
from martin_bot.strategy.orchestrator import StrategyOrchestrator
from martin_bot.strategy.stats_storage import JsonStateStore, StrategyRepository

log = get_logger("martin_bot")


# === SUPPRESS TRANSPORT ERRORS (SSL EOF, connection reset, etc.) ===
def ignore_transport_errors(loop, context):
    msg = context.get("message", "")
    exc = context.get("exception")

    if (
            "SSL error" in msg
            or "transport" in msg.lower()
            or "connection lost" in msg.lower()
            or isinstance(exc, ConnectionResetError)
    ):
        log.debug("Ignored transport error: %s", msg)
        return

    # всё остальное по дефолту
    loop.default_exception_handler(context)


async def on_startup(orchestrator: StrategyOrchestrator):
    # поднимаем все активные стратегии до старта поллинга
    await orchestrator.start_all()


async def on_shutdown(orchestrator: StrategyOrchestrator):
    await orchestrator.stop_all()


async def main():
    log.info("Бот запущен ...")
    asyncio.get_running_loop().set_exception_handler(ignore_transport_errors)

    orchestrator = StrategyOrchestrator(
        store=JsonStateStore(STATE_FILE),
        repository=StrategyRepository(STRATEGIES_FILE),
    )

    bot = Bot(token=BOT_TOKEN)
    dp = Dispatcher(orchestrator=orchestrator)

    whitelist = AllowOnlyWhitelistMiddleware()
    dp.message.middleware(whitelist)
    dp.callback_query.middleware(whitelist)

    # Регистрируем роутеры
    dp.include_router(buttons_router)
    dp.include_router(stop_router)

    dp.startup.register(on_startup)
    dp.shutdown.register(on_shutdown)

    await bot.delete_webhook(drop_pending_updates=True)

    # Стартуем
    await dp.start_polling(bot)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
