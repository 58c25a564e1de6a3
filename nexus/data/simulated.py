"""Simulated market data — synthetic candles and ticks for offline use.

Prices follow a percentage random walk shaped by two sine waves (a slow
trend and a faster momentum term) so the indicator pipeline sees both
trending and ranging stretches.  All randomness comes from a caller
supplied ``numpy.random.Generator``.
"""

import math

import numpy as np

from nexus.strategy.models import INSTRUMENTS, Candle, InstrumentSpec, Tick

_CANDLE_SPACING_MS = 60_000


def _spec(symbol: str) -> InstrumentSpec:
    return INSTRUMENTS.get(symbol, INSTRUMENTS["EUR/USD"])


def generate_candles(
    symbol: str,
    count: int,
    rng: np.random.Generator,
    end_ms: int,
) -> list[Candle]:
    """Generate *count* one-minute candles ending just before *end_ms*.

    Args:
        symbol: Instrument; unknown symbols use EUR/USD settings.
        count: Number of candles.
        rng: Seeded generator.
        end_ms: Epoch ms; the last candle starts one minute earlier.

    Returns:
        Chronological list of ``Candle``.
    """
    spec = _spec(symbol)
    vol_pct = spec.volatility / spec.reference_price
    price = spec.reference_price
    candles: list[Candle] = []

    for i in range(count):
        trend = math.sin(i / 30) * vol_pct * 3
        noise = (rng.random() - 0.5) * vol_pct * 2
        momentum = math.sin(i / 15) * vol_pct
        price *= 1 + trend + noise + momentum

        spread = price * vol_pct
        high = price + rng.random() * spread
        low = price - rng.random() * spread
        close = low + rng.random() * (high - low)

        candles.append(
            Candle(
                time=end_ms - (count - i) * _CANDLE_SPACING_MS,
                open=price,
                high=high,
                low=low,
                close=close,
                volume=int(rng.integers(500, 1500)),
            )
        )
        price = close

    return candles


def next_tick(
    symbol: str,
    last_price: float,
    rng: np.random.Generator,
    now_ms: int,
) -> Tick:
    """One synthetic tick, a small percentage step away from *last_price*."""
    spec = _spec(symbol)
    vol_pct = spec.volatility / spec.reference_price
    change = (rng.random() - 0.5) * vol_pct * 0.5
    return Tick(
        symbol=symbol,
        price=last_price * (1 + change),
        timestamp=now_ms,
        volume=int(rng.integers(50, 150)),
    )
