class MartinBotError(Exception):
    """Базовая ошибка бота."""


class ConfigError(MartinBotError):
    """Нет или неверные параметры стратегии / API ключи."""


class StrategyAlreadyActive(MartinBotError):
    pass


class MarketNotFound(MartinBotError):
    pass


class LevelValidationError(MartinBotError):
    """Сумма уровня после округления меньше минимального ордера."""


class MarketDataError(MartinBotError):
    """Не удалось получить тикер / данные рынка. Цикл пропускается."""


class OrderError(MartinBotError):
    """Ошибка выставления, отмены или проверки ордера."""


class InsufficientFunds(OrderError):
    pass


class OrderNotFound(OrderError):
    pass


class CriticalEngineError(MartinBotError):
    pass
