"""NEXUS — application configuration.

Loads .env variables into a typed config object.
Every variable is optional; out-of-range values are rejected on startup.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

_MODES = ("STOP", "SIMULATION")
_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    twelvedata_api_key: str
    telegram_bot_token: str
    telegram_chat_id: str
    default_pair: str
    default_timeframe: str
    default_mode: str  # "STOP" or "SIMULATION"
    starting_balance: float
    lot_size: float
    stop_loss_pct: float
    take_profit_pct: float
    enable_market_hours: bool
    daily_summary_hour: int
    tick_interval_seconds: float
    db_path: str
    log_level: str
    port: int

    @property
    def twelvedata_enabled(self) -> bool:
        """Live candles are fetched only when an API key is configured."""
        return bool(self.twelvedata_api_key)

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


def _float_in_range(name: str, default: str, low: float, high: float) -> float:
    raw = os.environ.get(name, default)
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if not low <= value <= high:
        raise ValueError(f"{name} must be between {low} and {high}, got {value}")
    return value


def _int_in_range(name: str, default: str, low: int, high: int) -> int:
    raw = os.environ.get(name, default)
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if not low <= value <= high:
        raise ValueError(f"{name} must be between {low} and {high}, got {value}")
    return value


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the offending variable
    when a value is malformed or out of range.
    """
    load_dotenv(dotenv_path=env_path)

    mode = os.environ.get("DEFAULT_MODE", "STOP").upper()
    if mode not in _MODES:
        raise ValueError(f"DEFAULT_MODE must be one of {', '.join(_MODES)}, got {mode!r}")

    return Config(
        twelvedata_api_key=os.environ.get("TWELVEDATA_API_KEY", ""),
        telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN", ""),
        telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID", ""),
        default_pair=os.environ.get("DEFAULT_PAIR", "XAU/USD"),
        default_timeframe=os.environ.get("DEFAULT_TIMEFRAME", "5min"),
        default_mode=mode,
        starting_balance=_float_in_range("STARTING_BALANCE", "10000", 100, 1_000_000),
        lot_size=_float_in_range("LOT_SIZE", "0.1", 0.01, 1.0),
        stop_loss_pct=_float_in_range("STOP_LOSS_PCT", "0.002", 0.0001, 0.5),
        take_profit_pct=_float_in_range("TAKE_PROFIT_PCT", "0.004", 0.0001, 0.5),
        enable_market_hours=(
            os.environ.get("ENABLE_MARKET_HOURS", "true").lower() in _TRUE_VALUES
        ),
        daily_summary_hour=_int_in_range("DAILY_SUMMARY_HOUR", "23", 0, 23),
        tick_interval_seconds=_float_in_range("TICK_INTERVAL_SECONDS", "2", 0.1, 3600),
        db_path=os.environ.get("DB_PATH", "data/nexus.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        port=int(os.environ.get("PORT", "3001")),
    )
