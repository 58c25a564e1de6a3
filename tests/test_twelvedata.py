"""Tests for the Twelve Data client — uses mock HTTP responses, no real API calls."""

import httpx
import pytest

from nexus.data import twelvedata_client
from nexus.data.twelvedata_client import TwelveDataClient, TwelveDataError, parse_datetime_ms
from nexus.strategy.models import Candle

# ── Mock response fixtures ───────────────────────────────────────────────

MOCK_TIME_SERIES_RESPONSE = {
    "meta": {"symbol": "EUR/USD", "interval": "5min"},
    "values": [
        {
            "datetime": "2025-01-10 10:05:00",
            "open": "1.0930",
            "high": "1.0950",
            "low": "1.0920",
            "close": "1.0940",
        },
        {
            "datetime": "2025-01-10 10:00:00",
            "open": "1.0910",
            "high": "1.0950",
            "low": "1.0890",
            "close": "1.0930",
            "volume": "1234",
        },
    ],
    "status": "ok",
}

MOCK_ERROR_RESPONSE = {
    "code": 400,
    "message": "**symbol** not found: FOO/BAR",
    "status": "error",
}


def _mock_get_returning(payload, status=200, calls=None):
    async def _mock_get(self, url, *, params=None, timeout=None):
        if calls is not None:
            calls.append((url, params))
        return httpx.Response(status, json=payload, request=httpx.Request("GET", url))

    return _mock_get


# ── Tests ────────────────────────────────────────────────────────────────


def test_parse_datetime_ms():
    assert parse_datetime_ms("2025-01-10 10:00:00") == 1_736_503_200_000
    assert parse_datetime_ms("2025-01-10") == 1_736_467_200_000


@pytest.mark.asyncio
async def test_fetch_candles_oldest_first(monkeypatch):
    """Values arrive newest first and come back chronological."""
    calls = []
    monkeypatch.setattr(
        httpx.AsyncClient, "get", _mock_get_returning(MOCK_TIME_SERIES_RESPONSE, calls=calls)
    )
    client = TwelveDataClient("test-key", base_url="https://td.test")

    candles = await client.fetch_candles("EUR/USD", "5min", outputsize=2)

    assert len(candles) == 2
    c = candles[0]
    assert isinstance(c, Candle)
    assert c.time == parse_datetime_ms("2025-01-10 10:00:00")
    assert c.open == pytest.approx(1.091)
    assert c.high == pytest.approx(1.095)
    assert c.low == pytest.approx(1.089)
    assert c.close == pytest.approx(1.093)
    assert c.volume == 1234
    assert candles[1].volume == 0
    assert candles[0].time < candles[1].time

    url, params = calls[0]
    assert url == "https://td.test/time_series"
    assert params["symbol"] == "EUR/USD"
    assert params["interval"] == "5min"
    assert params["outputsize"] == 2
    assert params["apikey"] == "test-key"


@pytest.mark.asyncio
async def test_fetch_candles_error_payload(monkeypatch):
    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get_returning(MOCK_ERROR_RESPONSE))
    client = TwelveDataClient("test-key")
    with pytest.raises(TwelveDataError, match="symbol"):
        await client.fetch_candles("FOO/BAR", "5min")


@pytest.mark.asyncio
async def test_fetch_candles_missing_values(monkeypatch):
    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get_returning({"meta": {}}))
    client = TwelveDataClient("test-key")
    with pytest.raises(TwelveDataError, match="unexpected"):
        await client.fetch_candles("EUR/USD", "5min")


@pytest.mark.asyncio
async def test_fetch_price(monkeypatch):
    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get_returning({"price": "1.18250"}))
    client = TwelveDataClient("test-key")
    assert await client.fetch_price("EUR/USD") == pytest.approx(1.1825)


@pytest.mark.asyncio
async def test_fetch_price_missing(monkeypatch):
    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get_returning({"status": "ok"}))
    client = TwelveDataClient("test-key")
    with pytest.raises(TwelveDataError):
        await client.fetch_price("EUR/USD")


@pytest.mark.asyncio
async def test_rate_limit_retried(monkeypatch):
    """A 429 is retried and the following success is returned."""
    monkeypatch.setattr(twelvedata_client, "_RETRY_BASE_DELAY", 0.0)
    responses = [429, 200]

    async def _mock_get(self, url, *, params=None, timeout=None):
        status = responses.pop(0)
        payload = {"price": "1.1"} if status == 200 else {"message": "limit"}
        return httpx.Response(status, json=payload, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
    client = TwelveDataClient("test-key")
    assert await client.fetch_price("EUR/USD") == pytest.approx(1.1)
    assert responses == []


@pytest.mark.asyncio
async def test_retries_exhausted(monkeypatch):
    monkeypatch.setattr(twelvedata_client, "_RETRY_BASE_DELAY", 0.0)
    calls = []
    monkeypatch.setattr(
        httpx.AsyncClient, "get", _mock_get_returning({"message": "busy"}, 503, calls)
    )
    client = TwelveDataClient("test-key")
    with pytest.raises(httpx.HTTPStatusError):
        await client.fetch_price("EUR/USD")
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_transport_error_retried(monkeypatch):
    monkeypatch.setattr(twelvedata_client, "_RETRY_BASE_DELAY", 0.0)
    attempts = []

    async def _mock_get(self, url, *, params=None, timeout=None):
        attempts.append(url)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused")
        return httpx.Response(200, json={"price": "157.2"}, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
    client = TwelveDataClient("test-key")
    assert await client.fetch_price("USD/JPY") == pytest.approx(157.2)
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_client_error_not_retried(monkeypatch):
    calls = []
    monkeypatch.setattr(
        httpx.AsyncClient, "get", _mock_get_returning({"message": "bad key"}, 401, calls)
    )
    client = TwelveDataClient("bad-key")
    with pytest.raises(httpx.HTTPStatusError):
        await client.fetch_price("EUR/USD")
    assert len(calls) == 1


def _mock_get_text(text, status=200):
    async def _mock_get(self, url, *, params=None, timeout=None):
        return httpx.Response(status, text=text, request=httpx.Request("GET", url))

    return _mock_get


@pytest.mark.asyncio
async def test_non_json_body_is_vendor_error(monkeypatch):
    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get_text("<html>Bad Gateway</html>"))
    client = TwelveDataClient("test-key")
    with pytest.raises(TwelveDataError, match="not JSON"):
        await client.fetch_price("EUR/USD")


@pytest.mark.asyncio
async def test_non_object_body_is_vendor_error(monkeypatch):
    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get_returning([1, 2, 3]))
    client = TwelveDataClient("test-key")
    with pytest.raises(TwelveDataError, match="unexpected"):
        await client.fetch_candles("EUR/USD", "5min")


@pytest.mark.asyncio
async def test_malformed_values_are_vendor_errors(monkeypatch):
    bad_candle = {"values": [{"datetime": "2025-01-10 10:00:00", "open": "n/a"}]}
    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get_returning(bad_candle))
    client = TwelveDataClient("test-key")
    with pytest.raises(TwelveDataError, match="malformed candle"):
        await client.fetch_candles("EUR/USD", "5min")

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get_returning({"price": "n/a"}))
    with pytest.raises(TwelveDataError, match="malformed price"):
        await client.fetch_price("EUR/USD")
