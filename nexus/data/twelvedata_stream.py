"""Twelve Data WebSocket price stream.

Keeps one connection to the quotes endpoint, subscribes the watched
symbols and remembers the newest price per symbol.  Dropped connections
are retried with exponential backoff up to ``max_reconnects`` times in a
row; every reconnect re-subscribes all watched symbols.
"""

import asyncio
import json
import logging
from typing import Callable, Optional

import websockets
from websockets.exceptions import WebSocketException

from nexus.strategy.models import Tick

logger = logging.getLogger("nexus.data")

TWELVEDATA_WS_URL = "wss://ws.twelvedata.com/v1/quotes/price"

MAX_RECONNECTS = 10
_RECONNECT_BASE_DELAY = 1.0  # seconds; doubles each attempt
_MAX_RECONNECT_DELAY = 30.0


def parse_price_event(message: dict) -> Optional[Tick]:
    """Turn a ``price`` event into a ``Tick``; ``None`` for other events."""
    if message.get("event") != "price":
        return None
    try:
        return Tick(
            symbol=message["symbol"],
            price=float(message["price"]),
            timestamp=int(float(message["timestamp"]) * 1000),
            volume=int(float(message.get("day_volume") or 0)),
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Twelve Data stream: malformed price event %s", message)
        return None


class TwelveDataStream:
    """Streaming tick source backed by the Twelve Data WebSocket API.

    Args:
        api_key: Twelve Data API key.
        url: Endpoint, overridable for tests.
        max_reconnects: Consecutive failed connections before giving up.
        connect: Connection factory; ``websockets.connect`` by default.
    """

    def __init__(
        self,
        api_key: str,
        url: str = TWELVEDATA_WS_URL,
        max_reconnects: int = MAX_RECONNECTS,
        connect: Optional[Callable] = None,
    ) -> None:
        self._api_key = api_key
        self._url = url
        self._max_reconnects = max_reconnects
        self._connect = connect or websockets.connect
        self._ws = None
        self._closed = False
        self._symbols: set[str] = set()
        self._latest: dict[str, Tick] = {}
        self.reconnect_attempts = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def symbols(self) -> set[str]:
        return set(self._symbols)

    async def _send(self, action: str, symbol: str) -> None:
        if self._ws is None:
            return
        await self._ws.send(json.dumps({"action": action, "params": {"symbols": symbol}}))

    async def subscribe(self, symbol: str) -> None:
        """Watch *symbol*; sent now if connected, otherwise on connect."""
        if symbol in self._symbols:
            return
        self._symbols.add(symbol)
        await self._send("subscribe", symbol)

    async def unsubscribe(self, symbol: str) -> None:
        if symbol not in self._symbols:
            return
        self._symbols.discard(symbol)
        self._latest.pop(symbol, None)
        await self._send("unsubscribe", symbol)

    def pop_latest(self, symbol: str) -> Optional[Tick]:
        """Newest streamed tick for *symbol* not handed out yet."""
        return self._latest.pop(symbol, None)

    def handle_message(self, raw) -> Optional[Tick]:
        """Decode one frame and remember it when it is a watched price."""
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Twelve Data stream: undecodable frame %r", raw)
            return None
        if not isinstance(message, dict):
            return None
        if message.get("event") == "subscribe-status":
            logger.info(
                "Twelve Data subscription %s: %s",
                message.get("status"), message.get("success") or [],
            )
            return None

        tick = parse_price_event(message)
        if tick is None or tick.symbol not in self._symbols:
            return None
        self._latest[tick.symbol] = tick
        return tick

    async def run(self) -> None:
        """Stream until ``close()`` or until reconnects are exhausted."""
        while not self._closed:
            try:
                async with self._connect(f"{self._url}?apikey={self._api_key}") as ws:
                    self._ws = ws
                    self.reconnect_attempts = 0
                    logger.info("Twelve Data stream connected")
                    for symbol in sorted(self._symbols):
                        await self._send("subscribe", symbol)
                    async for raw in ws:
                        self.handle_message(raw)
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.warning("Twelve Data stream error: %s", exc)
            finally:
                self._ws = None

            if self._closed:
                break
            if self.reconnect_attempts >= self._max_reconnects:
                logger.error("Twelve Data stream: max reconnect attempts reached")
                break
            delay = min(
                _MAX_RECONNECT_DELAY, _RECONNECT_BASE_DELAY * (2 ** self.reconnect_attempts)
            )
            self.reconnect_attempts += 1
            logger.info(
                "Twelve Data stream closed — reconnect %d/%d in %.1fs",
                self.reconnect_attempts, self._max_reconnects, delay,
            )
            await asyncio.sleep(delay)

    async def close(self) -> None:
        """Stop reconnecting and close the current connection."""
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
