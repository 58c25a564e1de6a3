"""Candle aggregator — folds price ticks into fixed-interval OHLCV candles."""

from dataclasses import replace
from typing import Optional, Sequence

from nexus.strategy.models import Candle, Tick

TIMEFRAME_MS: dict[str, int] = {
    "1min": 60_000,
    "5min": 300_000,
    "15min": 900_000,
    "30min": 1_800_000,
    "1h": 3_600_000,
    "4h": 14_400_000,
    "1day": 86_400_000,
}

_DEFAULT_INTERVAL_MS = 60_000


def timeframe_to_ms(timeframe: str) -> int:
    """Interval length of *timeframe*; unknown names map to one minute."""
    return TIMEFRAME_MS.get(timeframe, _DEFAULT_INTERVAL_MS)


class CandleAggregator:
    """Builds candles for one (symbol, interval) stream.

    Completed candles are never modified.  The in-progress candle is
    replaced on every tick that falls inside its bucket.

    Args:
        interval_ms: Candle length in milliseconds.
    """

    def __init__(self, interval_ms: int) -> None:
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")
        self._interval_ms = interval_ms
        self._completed: list[Candle] = []
        self._current: Optional[Candle] = None

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    @property
    def current(self) -> Optional[Candle]:
        """The in-progress candle, if any."""
        return self._current

    def __len__(self) -> int:
        return len(self._completed) + (1 if self._current is not None else 0)

    def add_tick(self, tick: Tick) -> Candle:
        """Fold *tick* in and return the (new) in-progress candle."""
        bucket = (tick.timestamp // self._interval_ms) * self._interval_ms

        if self._current is None or self._current.time != bucket:
            if self._current is not None:
                self._completed.append(self._current)
            self._current = Candle(
                time=bucket,
                open=tick.price,
                high=tick.price,
                low=tick.price,
                close=tick.price,
                volume=tick.volume,
            )
        else:
            cur = self._current
            self._current = replace(
                cur,
                high=max(cur.high, tick.price),
                low=min(cur.low, tick.price),
                close=tick.price,
                volume=cur.volume + tick.volume,
            )
        return self._current

    def get_candles(self, count: int = 200) -> list[Candle]:
        """Last *count* candles, the in-progress one included, oldest first."""
        candles = list(self._completed)
        if self._current is not None:
            candles.append(self._current)
        if count <= 0:
            return []
        return candles[-count:]

    def load_history(self, candles: Sequence[Candle]) -> None:
        """Replace state with *candles*; the last one becomes in-progress."""
        self._completed = list(candles)
        self._current = self._completed.pop() if self._completed else None
