import os
from dotenv import load_dotenv

from martin_bot.strategy.errors import ConfigError

# Загружаем переменные окружения из .env файла
load_dotenv()

# === TELEGRAM ===
BOT_TOKEN = os.getenv("BOT_TOKEN_MARTIN")

# ID пользователей через запятую: ALLOWED_USERS=1678086777,123456789
def _parse_user_ids(raw: str) -> set[int]:
    try:
        return {int(uid) for uid in raw.replace(" ", "").split(",") if uid}
    except ValueError as e:
        raise ConfigError(f"ALLOWED_USERS must be comma-separated numeric ids, got {raw!r}") from e


ALLOWED_USERS = _parse_user_ids(os.getenv("ALLOWED_USERS", ""))

# === BYBIT ===
BYBIT_ENV = os.getenv("BYBIT_ENV", "testnet").strip().lower()
BYBIT_RECV_WINDOW = int(os.getenv("BYBIT_RECV_WINDOW", "60000"))
BYBIT_CATEGORY = os.getenv("BYBIT_CATEGORY", "spot")

# Таймаут одного запроса к бирже (сек) и пауза между запросами одного аккаунта
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "10"))
REQUEST_MIN_INTERVAL = float(os.getenv("REQUEST_MIN_INTERVAL", "0.1"))

# === Настройки стратегий ===
CHECK_INTERVAL_MS = int(os.getenv("CHECK_INTERVAL_MS", "60000"))

START_DELAY = 1.0    # пауза между запусками стратегий при старте
STOP_DELAY = 0.3     # пауза между остановками при выключении
CHECK_DELAY = 0.2    # пауза между запросами статуса ордеров
CANCEL_DELAY = 0.3   # пауза между запросами отмены при stop()

# === Файлы ===
STRATEGIES_FILE = os.getenv("STRATEGIES_FILE", "strategies.json")
STATE_FILE = os.getenv("STATE_FILE", "state.json")

LOG_LEVEL = os.getenv("MARTIN_LOG_LEVEL", "INFO").upper()

if BYBIT_ENV not in {"testnet", "mainnet"}:
    raise RuntimeError("BYBIT_ENV must be 'testnet' or 'mainnet'")

if not BOT_TOKEN:
    print("⚠ WARNING: BOT_TOKEN_MARTIN NOT LOADED FROM .env")


def get_credentials(account: str | None = None) -> tuple[str, str]:
    """
    Ключи аккаунта: BYBIT_API_KEY / BYBIT_API_SECRET
    или BYBIT_API_KEY_<ACCOUNT> / BYBIT_API_SECRET_<ACCOUNT>.
    """
    suffix = f"_{account.upper()}" if account else ""
    api_key = os.getenv(f"BYBIT_API_KEY{suffix}")
    api_secret = os.getenv(f"BYBIT_API_SECRET{suffix}")

    if not api_key or not api_secret:
        raise ConfigError(f"BYBIT API keys not configured for account '{account or 'default'}'")
    return api_key, api_secret
