"""Twelve Data REST API async client.

Fetches historical candles and latest prices.  Rate limits (429) and
transient gateway errors are retried with exponential backoff.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from nexus.strategy.models import Candle

logger = logging.getLogger("nexus.data")

TWELVEDATA_BASE_URL = "https://api.twelvedata.com"

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 1.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


class TwelveDataError(Exception):
    """The vendor answered with an error payload or an unexpected shape."""


def parse_datetime_ms(value: str) -> int:
    """Parse a Twelve Data ``datetime`` (UTC) into epoch milliseconds.

    Accepts ``YYYY-MM-DD HH:MM:SS`` and plain ``YYYY-MM-DD`` (daily bars).
    """
    fmt = "%Y-%m-%d %H:%M:%S" if " " in value else "%Y-%m-%d"
    dt = datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


class TwelveDataClient:
    """Async client wrapping the Twelve Data REST API.

    Args:
        api_key: Twelve Data API key.
        base_url: API root, overridable for tests.
    """

    def __init__(self, api_key: str, base_url: str = TWELVEDATA_BASE_URL) -> None:
        self._api_key = api_key
        self._base_url = base_url

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _get_with_retry(self, path: str, params: dict) -> dict:
        """GET *path* and return the decoded JSON body.

        Retries on rate limits and gateway errors; raises the last
        error once retries are exhausted.
        """
        url = f"{self._base_url}{path}"
        query = {**params, "apikey": self._api_key}
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            try:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(url, params=query, timeout=30.0)

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Twelve Data GET %s returned %d — retry %d/%d in %.1fs",
                        path, resp.status_code, attempt + 1, _MAX_RETRIES, delay,
                    )
                    last_exc = httpx.HTTPStatusError(
                        f"Rate limited or unavailable '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    await asyncio.sleep(delay)
                    continue

                resp.raise_for_status()
                try:
                    body = resp.json()
                except ValueError as exc:
                    raise TwelveDataError(f"Twelve Data GET {path}: body is not JSON") from exc
                if not isinstance(body, dict):
                    raise TwelveDataError(f"Twelve Data GET {path}: unexpected response format")
                return body

            except httpx.TransportError as exc:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Twelve Data GET %s transport error (%s) — retry %d/%d in %.1fs",
                    path, exc, attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    # ── Candle data ──────────────────────────────────────────────────────

    async def fetch_candles(
        self,
        symbol: str,
        interval: str,
        outputsize: int = 200,
    ) -> list[Candle]:
        """Fetch OHLCV candles.

        Args:
            symbol: e.g. ``"EUR/USD"``
            interval: e.g. ``"5min"``, ``"1h"``, ``"1day"``
            outputsize: number of candles (max 5000)

        Returns:
            List of ``Candle`` objects ordered oldest-first.

        Raises:
            TwelveDataError: On an error payload or missing ``values``.
        """
        data = await self._get_with_retry(
            "/time_series",
            {
                "symbol": symbol,
                "interval": interval,
                "outputsize": outputsize,
                "timezone": "UTC",
                "format": "JSON",
            },
        )
        if data.get("status") == "error":
            raise TwelveDataError(f"Twelve Data error: {data.get('message', 'unknown')}")
        values = data.get("values")
        if not isinstance(values, list):
            raise TwelveDataError("Twelve Data: unexpected response format")

        # newest first on the wire
        try:
            return [
                Candle(
                    time=parse_datetime_ms(v["datetime"]),
                    open=float(v["open"]),
                    high=float(v["high"]),
                    low=float(v["low"]),
                    close=float(v["close"]),
                    volume=int(float(v.get("volume") or 0)),
                )
                for v in reversed(values)
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise TwelveDataError(f"Twelve Data: malformed candle ({exc})") from exc

    # ── Quotes ───────────────────────────────────────────────────────────

    async def fetch_price(self, symbol: str) -> float:
        """Latest traded price of *symbol*."""
        data = await self._get_with_retry("/price", {"symbol": symbol})
        if data.get("status") == "error" or "price" not in data:
            raise TwelveDataError(
                f"Twelve Data price error: {data.get('message', 'missing price')}"
            )
        try:
            return float(data["price"])
        except (TypeError, ValueError) as exc:
            raise TwelveDataError(f"Twelve Data: malformed price {data['price']!r}") from exc
