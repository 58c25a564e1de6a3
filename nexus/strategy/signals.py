"""Confluence signal generation — pure functions, no I/O.

Each candle is scored from three independent sources:

* **Structure** — proximity to clustered support/resistance levels.
* **Momentum** — RSI bands.
* **Trend** — MACD crossovers and histogram expansion.

A signal fires when the combined score clears ±3.  The same function
drives the live engine and the backtest replayer.
"""

from typing import Optional, Sequence

from nexus.strategy.models import (
    EnrichedCandle,
    LevelType,
    Side,
    Signal,
    SRLevel,
    price_digits,
)

START_INDEX = 30  # all indicators are warm from here on
COOLDOWN_CANDLES = 5
SR_PROXIMITY = 0.003  # relative distance, 0.3 %
SCORE_THRESHOLD = 3.0
MIN_CONFIDENCE = 40.0


def _score_levels(
    candle: EnrichedCandle, levels: Sequence[SRLevel], digits: int
) -> tuple[float, list[str]]:
    score = 0.0
    reasons: list[str] = []
    for level in levels:
        distance = abs(candle.close - level.price) / candle.close
        if distance >= SR_PROXIMITY:
            continue
        if level.level_type is LevelType.SUPPORT and candle.close >= level.price:
            score += level.strength
            reasons.append(
                f"Near support {level.price:.{digits}f} (strength: {level.strength})"
            )
        if level.level_type is LevelType.RESISTANCE and candle.close <= level.price:
            score -= level.strength
            reasons.append(
                f"Near resistance {level.price:.{digits}f} (strength: {level.strength})"
            )
    return score, reasons


def _score_rsi(rsi: float) -> tuple[float, list[str]]:
    if rsi < 30:
        return 2.0, [f"RSI oversold ({rsi:.1f})"]
    if rsi < 40:
        return 1.0, [f"RSI mildly oversold ({rsi:.1f})"]
    if rsi > 70:
        return -2.0, [f"RSI overbought ({rsi:.1f})"]
    if rsi > 60:
        return -1.0, [f"RSI mildly overbought ({rsi:.1f})"]
    return 0.0, []


def _score_macd(
    candle: EnrichedCandle, prev: EnrichedCandle
) -> tuple[float, list[str]]:
    score = 0.0
    reasons: list[str] = []

    if prev.macd is not None and prev.macd_signal is not None:
        prev_diff = prev.macd - prev.macd_signal
        curr_diff = candle.macd - candle.macd_signal
        if prev_diff <= 0 and curr_diff > 0:
            score = 2.0
            reasons.append("MACD bullish crossover")
        elif prev_diff >= 0 and curr_diff < 0:
            score = -2.0
            reasons.append("MACD bearish crossover")

    if candle.histogram is not None and prev.histogram is not None:
        if abs(candle.histogram) > abs(prev.histogram):
            if candle.histogram > 0:
                score += 0.5
                reasons.append("MACD histogram growing (bullish)")
            else:
                score -= 0.5
                reasons.append("MACD histogram growing (bearish)")

    return score, reasons


def score_candle(
    candles: Sequence[EnrichedCandle],
    index: int,
    sr_levels: Sequence[SRLevel],
    symbol: str,
) -> Optional[tuple[float, list[str]]]:
    """Return ``(total_score, reasons)`` for ``candles[index]``.

    ``None`` when RSI or MACD are not yet available at *index*.
    """
    candle = candles[index]
    if candle.rsi is None or candle.macd is None or candle.macd_signal is None:
        return None

    sr_score, sr_reasons = _score_levels(candle, sr_levels, price_digits(symbol))
    rsi_score, rsi_reasons = _score_rsi(candle.rsi)
    macd_score, macd_reasons = _score_macd(candle, candles[index - 1])

    total = sr_score + rsi_score + macd_score
    return total, sr_reasons + rsi_reasons + macd_reasons


def confidence_for(score: float) -> float:
    """Map a combined score to a 0–100 confidence."""
    return min(100.0, abs(score) * 20)


def generate_signals(
    candles: Sequence[EnrichedCandle],
    sr_levels: Sequence[SRLevel],
    symbol: str,
    start_index: int = START_INDEX,
    cooldown: int = COOLDOWN_CANDLES,
) -> list[Signal]:
    """Scan enriched candles and return every confluence signal, oldest first.

    A signal of the same side as the last emitted one is suppressed when
    fewer than *cooldown* candles separate them.  The opposite side is
    never suppressed.  Cooldown state lives only for this call.

    Args:
        candles: Output of ``enrich_candles``.
        sr_levels: Levels detected over the same window.
        symbol: Instrument symbol, used for price formatting in reasons.
        start_index: First index evaluated.
        cooldown: Minimum index gap between same-side signals.

    Returns:
        List of ``Signal`` objects.
    """
    signals: list[Signal] = []
    last_index: Optional[int] = None
    last_side: Optional[Side] = None

    for i in range(max(start_index, 1), len(candles)):
        scored = score_candle(candles, i, sr_levels, symbol)
        if scored is None:
            continue
        total, reasons = scored
        confidence = confidence_for(total)

        side: Optional[Side] = None
        if total >= SCORE_THRESHOLD and confidence >= MIN_CONFIDENCE:
            side = Side.BUY
        elif total <= -SCORE_THRESHOLD and confidence >= MIN_CONFIDENCE:
            side = Side.SELL
        if side is None:
            continue

        if side is last_side and last_index is not None and i - last_index < cooldown:
            continue

        candle = candles[i]
        signals.append(
            Signal(
                index=i,
                time=candle.time,
                side=side,
                price=candle.close,
                confidence=confidence,
                reasons=tuple(reasons),
                rsi=candle.rsi,
                macd=candle.macd,
                macd_signal=candle.macd_signal,
                score=total,
            )
        )
        last_index = i
        last_side = side

    return signals
