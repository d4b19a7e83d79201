from pybit.unified_trading import HTTP

from martin_bot.config import BYBIT_ENV, BYBIT_RECV_WINDOW, REQUEST_TIMEOUT


def make_client(api_key: str, api_secret: str) -> HTTP:
    """Одна HTTP-сессия pybit на аккаунт."""
    return HTTP(
        testnet=BYBIT_ENV == "testnet",
        api_key=api_key,
        api_secret=api_secret,
        recv_window=BYBIT_RECV_WINDOW,
        timeout=int(REQUEST_TIMEOUT),
        # time_sync=True  # можно включить, если разъедутся часы
    )
