"""Market data feed — Twelve Data when configured, simulated otherwise.

Vendor failures never stop the engine: they are logged and the feed
falls back to simulated data for that request.
"""

import logging
import time
from typing import Callable, Optional

import httpx
import numpy as np

from nexus.data.simulated import generate_candles, next_tick
from nexus.data.twelvedata_client import TwelveDataClient, TwelveDataError
from nexus.data.twelvedata_stream import TwelveDataStream
from nexus.strategy.models import INSTRUMENTS, Candle, Tick

logger = logging.getLogger("nexus.data")

SOURCE_TWELVEDATA = "twelvedata"
SOURCE_SIMULATED = "simulated"


class MarketDataFeed:
    """Candle and tick supplier for the live engine.

    Args:
        client: Twelve Data client, or ``None`` to always simulate.
        rng: Generator for simulated data; seeded from entropy if omitted.
        clock: Returns the current time in epoch milliseconds.
        stream: Streaming price source preferred over REST quotes, or ``None``.
    """

    def __init__(
        self,
        client: Optional[TwelveDataClient] = None,
        rng: Optional[np.random.Generator] = None,
        clock: Callable[[], int] = lambda: int(time.time() * 1000),
        stream: Optional[TwelveDataStream] = None,
    ) -> None:
        self._client = client
        self._stream = stream
        self._rng = rng if rng is not None else np.random.default_rng()
        self._clock = clock
        self.last_source = SOURCE_TWELVEDATA if client is not None else SOURCE_SIMULATED

    @property
    def live_enabled(self) -> bool:
        return self._client is not None

    @property
    def stream_connected(self) -> bool:
        return self._stream is not None and self._stream.connected

    async def watch(self, symbol: str) -> None:
        """Point the price stream at *symbol*, dropping other symbols."""
        if self._stream is None:
            return
        for old in self._stream.symbols - {symbol}:
            await self._stream.unsubscribe(old)
        await self._stream.subscribe(symbol)

    async def get_market_data(
        self,
        symbol: str,
        timeframe: str,
        count: int = 200,
    ) -> tuple[str, list[Candle]]:
        """Return ``(source, candles)`` for *symbol* / *timeframe*."""
        if self._client is None:
            logger.debug("No Twelve Data key — using simulated data for %s", symbol)
            return self._simulated(symbol, count)

        try:
            candles = await self._client.fetch_candles(symbol, timeframe, count)
        except (TwelveDataError, httpx.HTTPError) as exc:
            logger.warning(
                "Twelve Data candles for %s failed (%s) — falling back to simulation",
                symbol, exc,
            )
            return self._simulated(symbol, count)

        self.last_source = SOURCE_TWELVEDATA
        return SOURCE_TWELVEDATA, candles

    async def next_tick(self, symbol: str, last_price: Optional[float]) -> Tick:
        """Latest price as a tick.

        A fresh streamed price wins, then a REST quote; synthetic when the
        vendor is unavailable.
        """
        now_ms = self._clock()
        if self._stream is not None:
            streamed = self._stream.pop_latest(symbol)
            if streamed is not None:
                return streamed
        if self._client is not None:
            try:
                price = await self._client.fetch_price(symbol)
                return Tick(symbol=symbol, price=price, timestamp=now_ms)
            except (TwelveDataError, httpx.HTTPError) as exc:
                logger.warning(
                    "Twelve Data price for %s failed (%s) — simulating tick",
                    symbol, exc,
                )

        if last_price is None:
            spec = INSTRUMENTS.get(symbol, INSTRUMENTS["EUR/USD"])
            last_price = spec.reference_price
        return next_tick(symbol, last_price, self._rng, now_ms)

    def _simulated(self, symbol: str, count: int) -> tuple[str, list[Candle]]:
        self.last_source = SOURCE_SIMULATED
        return SOURCE_SIMULATED, generate_candles(symbol, count, self._rng, self._clock())
