"""Technical indicators — SMA, EMA, RSI, MACD. Pure functions, no I/O.

Every function returns one value per input candle.  Positions without
enough lookback hold ``None``.
"""

from typing import Optional, Sequence

from nexus.strategy.models import Candle, EnrichedCandle, SRLevel
from nexus.strategy.sr_levels import detect_sr_levels


def calculate_sma(candles: Sequence[Candle], period: int) -> list[Optional[float]]:
    """Simple Moving Average of closes.

    ``None`` for the first ``period - 1`` candles.
    """
    closes = [c.close for c in candles]
    sma: list[Optional[float]] = [None] * len(closes)
    for i in range(period - 1, len(closes)):
        window = closes[i - period + 1 : i + 1]
        sma[i] = sum(window) / period
    return sma


def _ema_of(values: Sequence[Optional[float]], period: int) -> list[Optional[float]]:
    """EMA over a series that may start with unavailable values.

    Seeded with the SMA of the first *period* available values, placed at
    the index of the last of them.  A ``None`` predecessor propagates.
    """
    result: list[Optional[float]] = [None] * len(values)
    start = next((i for i, v in enumerate(values) if v is not None), None)
    if start is None:
        return result

    seed_index = start + period - 1
    if seed_index >= len(values):
        return result

    seed_window = values[start : seed_index + 1]
    if any(v is None for v in seed_window):
        return result
    result[seed_index] = sum(seed_window) / period

    k = 2.0 / (period + 1)
    for i in range(seed_index + 1, len(values)):
        prev = result[i - 1]
        value = values[i]
        if prev is None or value is None:
            continue
        result[i] = value * k + prev * (1 - k)
    return result


def calculate_ema(candles: Sequence[Candle], period: int) -> list[Optional[float]]:
    """Calculate an Exponential Moving Average series.

    Uses the standard EMA formula:
        ``EMA_today = close × k + EMA_yesterday × (1 - k)``
    where ``k = 2 / (period + 1)``.

    The first EMA value sits at index ``period - 1`` and is seeded with
    the SMA of the first *period* closes.
    """
    return _ema_of([c.close for c in candles], period)


# ── RSI ──────────────────────────────────────────────────────────────────


def calculate_rsi(candles: Sequence[Candle], period: int = 14) -> list[Optional[float]]:
    """Calculate Wilder's Relative Strength Index.

    Algorithm (Wilder-smoothed):
        1. delta = close[i] - close[i-1]
        2. Separate gains (positive) and losses (|negative|).
        3. Seed average gain/loss = mean of deltas 1..period.
        4. Subsequent: avg = (prev_avg × (period-1) + current) / period
        5. RSI = 100 when avg_loss is zero, else 100 - 100 / (1 + RS)

    The first value is emitted at index *period*.  With fewer than
    ``period + 1`` candles every entry is ``None``.
    """
    rsi: list[Optional[float]] = [None] * len(candles)
    if len(candles) < period + 1:
        return rsi

    closes = [c.close for c in candles]
    deltas = [closes[i] - closes[i - 1] for i in range(1, len(closes))]
    gains = [max(d, 0.0) for d in deltas]
    losses = [abs(min(d, 0.0)) for d in deltas]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period

    def _rsi_from_avgs(ag: float, al: float) -> float:
        if al == 0:
            return 100.0
        rs = ag / al
        return 100.0 - 100.0 / (1.0 + rs)

    rsi[period] = _rsi_from_avgs(avg_gain, avg_loss)

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        # deltas are offset by one against candles
        rsi[i + 1] = _rsi_from_avgs(avg_gain, avg_loss)

    return rsi


# ── MACD ─────────────────────────────────────────────────────────────────


def calculate_macd(
    candles: Sequence[Candle],
    fast: int = 12,
    slow: int = 26,
    signal_period: int = 9,
) -> tuple[list[Optional[float]], list[Optional[float]], list[Optional[float]]]:
    """Calculate MACD line, signal line and histogram.

    macd      = EMA(fast) − EMA(slow)
    signal    = EMA(signal_period) of the macd line, seeded from the
                first *signal_period* available macd values
    histogram = macd − signal

    Returns ``(macd, signal, histogram)`` — each the length of *candles*.
    """
    ema_fast = calculate_ema(candles, fast)
    ema_slow = calculate_ema(candles, slow)

    macd_line: list[Optional[float]] = [
        f - s if f is not None and s is not None else None
        for f, s in zip(ema_fast, ema_slow)
    ]
    signal_line = _ema_of(macd_line, signal_period)
    histogram: list[Optional[float]] = [
        m - s if m is not None and s is not None else None
        for m, s in zip(macd_line, signal_line)
    ]
    return macd_line, signal_line, histogram


# ── Enrichment ───────────────────────────────────────────────────────────


def enrich_candles(
    candles: Sequence[Candle],
) -> tuple[list[EnrichedCandle], list[SRLevel]]:
    """Attach SMA20/50, RSI14 and MACD(12,26,9) to every candle.

    Also returns the support/resistance levels of the same window, so
    callers get everything the signal generator needs in one pass.
    """
    sma20 = calculate_sma(candles, 20)
    sma50 = calculate_sma(candles, 50)
    rsi = calculate_rsi(candles, 14)
    macd, signal, histogram = calculate_macd(candles)

    enriched = [
        EnrichedCandle(
            time=c.time,
            open=c.open,
            high=c.high,
            low=c.low,
            close=c.close,
            volume=c.volume,
            sma20=sma20[i],
            sma50=sma50[i],
            rsi=rsi[i],
            macd=macd[i],
            macd_signal=signal[i],
            histogram=histogram[i],
        )
        for i, c in enumerate(candles)
    ]
    return enriched, detect_sr_levels(candles)
