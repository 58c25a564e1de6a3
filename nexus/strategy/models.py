"""Strategy data models — typed representations for candles, levels, and signals."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Side(str, Enum):
    """Trade / signal direction."""

    BUY = "BUY"
    SELL = "SELL"


class LevelType(str, Enum):
    """Role of a horizontal price level."""

    SUPPORT = "support"
    RESISTANCE = "resistance"


@dataclass(frozen=True)
class Candle:
    """A single OHLCV bar.  ``time`` is the bar start in epoch milliseconds."""

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: int = 0


@dataclass(frozen=True)
class Tick:
    """A single price update for one symbol."""

    symbol: str
    price: float
    timestamp: int  # epoch ms
    volume: int = 0


@dataclass(frozen=True)
class EnrichedCandle:
    """A candle plus its indicator values.

    ``None`` means the indicator has not enough lookback at this index.
    """

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: int = 0
    sma20: Optional[float] = None
    sma50: Optional[float] = None
    rsi: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    histogram: Optional[float] = None


@dataclass(frozen=True)
class SRLevel:
    """A clustered support or resistance level."""

    level_type: LevelType
    price: float
    strength: int  # number of pivots in the cluster


@dataclass(frozen=True)
class Signal:
    """A BUY/SELL decision produced by the confluence generator."""

    index: int
    time: int
    side: Side
    price: float
    confidence: float
    reasons: tuple[str, ...]
    rsi: float
    macd: float
    macd_signal: float
    score: float


# ── Instrument metadata ──────────────────────────────────────────────────


@dataclass(frozen=True)
class InstrumentSpec:
    """Static per-symbol settings used for pricing and P&L."""

    symbol: str
    reference_price: float
    volatility: float  # typical absolute move per bar
    pip: float
    digits: int
    contract_size: int


INSTRUMENTS: dict[str, InstrumentSpec] = {
    "EUR/USD": InstrumentSpec("EUR/USD", 1.182, 0.0008, 0.0001, 4, 100_000),
    "GBP/USD": InstrumentSpec("GBP/USD", 1.361, 0.001, 0.0001, 4, 100_000),
    "USD/JPY": InstrumentSpec("USD/JPY", 157.2, 0.15, 0.01, 2, 100_000),
    "XAU/USD": InstrumentSpec("XAU/USD", 4963.0, 6.0, 0.01, 2, 100),
    "USD/CAD": InstrumentSpec("USD/CAD", 1.368, 0.0008, 0.0001, 4, 100_000),
    "AUD/USD": InstrumentSpec("AUD/USD", 0.702, 0.0007, 0.0001, 4, 100_000),
}

SUPPORTED_SYMBOLS: tuple[str, ...] = tuple(INSTRUMENTS)

_DEFAULT_CONTRACT_SIZE = 100_000
_DEFAULT_DIGITS = 4


def contract_size(symbol: str) -> int:
    """Units per lot: 100 oz for gold, 100,000 for currency pairs."""
    spec = INSTRUMENTS.get(symbol)
    return spec.contract_size if spec else _DEFAULT_CONTRACT_SIZE


def price_digits(symbol: str) -> int:
    """Decimal places used when displaying prices of *symbol*."""
    spec = INSTRUMENTS.get(symbol)
    return spec.digits if spec else _DEFAULT_DIGITS


def normalize_symbol(raw: str) -> str:
    """Accept ``eurusd``, ``EURUSD`` or ``EUR/USD`` and return ``EUR/USD``."""
    value = raw.strip().upper()
    if "/" in value:
        return value
    if len(value) == 6:
        return f"{value[:3]}/{value[3:]}"
    return value
