"""Tests for the HTTP API — routes are mounted under /api."""

import asyncio
from unittest.mock import MagicMock

import numpy as np
import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from nexus.api.routers import configure_routers, tick_event
from nexus.data.feed import MarketDataFeed
from nexus.engine import EngineMode, LiveEngine, TickResult
from nexus.ledger.ledger import PositionLedger
from nexus.main import app
from nexus.strategy.models import Side, Tick

client = TestClient(app)


# ── Helpers ──────────────────────────────────────────────────────────────


def _make_engine() -> LiveEngine:
    feed = MarketDataFeed(rng=np.random.default_rng(5), clock=lambda: 1_736_510_400_000)
    return LiveEngine(feed, PositionLedger(10_000.0), symbol="EUR/USD", timeframe="5min")


def _configure(backtest_repo=None) -> LiveEngine:
    engine = _make_engine()
    configure_routers(engine, backtest_repo=backtest_repo)
    return engine


def _open(side="BUY", **extra):
    body = {"side": side, "pair": "EUR/USD", "lot_size": 0.1, "price": 1.1, **extra}
    return client.post("/api/trade/open", json=body)


# ── Tests ────────────────────────────────────────────────────────────────


def test_health():
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_engine_not_configured():
    configure_routers(None)
    assert client.get("/api/positions").status_code == 503


class TestMarketData:
    def test_candles(self):
        _configure()
        resp = client.get("/api/candles", params={"pair": "gbpusd", "tf": "1h", "count": 120})
        assert resp.status_code == 200
        data = resp.json()
        assert data["pair"] == "GBP/USD"
        assert data["timeframe"] == "1h"
        assert data["source"] == "simulated"
        assert len(data["candles"]) == 120
        assert {"time", "close", "rsi", "macd"} <= set(data["candles"][-1])
        assert isinstance(data["sr_levels"], list)

    def test_candles_count_validated(self):
        _configure()
        assert client.get("/api/candles", params={"count": 10}).status_code == 422

    def test_signals(self):
        _configure()
        data = client.get("/api/signals").json()
        assert data["pair"] == "EUR/USD"
        assert data["history"] == []
        assert data["daily_count"] == 0


class TestTrading:
    def test_open_and_list(self):
        engine = _configure()
        resp = _open()
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["position"]["id"] == 1
        assert data["position"]["side"] == "BUY"
        assert abs(data["position"]["stop_loss"] - 1.0978) < 1e-9

        positions = client.get("/api/positions").json()
        assert len(positions["positions"]) == 1
        assert positions["stats"]["open_positions"] == 1
        assert len(engine.ledger.open_positions) == 1

    def test_open_accepts_type_alias(self):
        _configure()
        resp = client.post(
            "/api/trade/open", json={"type": "sell", "pair": "XAUUSD", "price": 2000.0}
        )
        assert resp.status_code == 200
        assert resp.json()["position"]["symbol"] == "XAU/USD"

    def test_open_invalid_side(self):
        _configure()
        assert _open(side="HOLD").status_code == 400

    def test_open_invalid_lot(self):
        _configure()
        resp = _open(lot_size=3)
        assert resp.status_code == 400
        assert "Lot size" in resp.json()["detail"]

    def test_open_without_price(self):
        _configure()
        resp = client.post("/api/trade/open", json={"side": "BUY", "pair": "EUR/USD"})
        assert resp.status_code == 400
        assert "No price" in resp.json()["detail"]

    def test_close(self):
        engine = _configure()
        _open()
        resp = client.post("/api/trade/close", json={"position_id": 1, "price": 1.101})
        assert resp.status_code == 200
        data = resp.json()
        assert abs(data["trade"]["realized_pnl"] - 10.0) < 1e-6
        assert data["trade"]["exit_reason"] == "manual_close"
        assert abs(data["balance"] - 10_010.0) < 1e-6
        assert engine.ledger.open_positions == []

    def test_close_unknown_is_404(self):
        _configure()
        resp = client.post("/api/trade/close", json={"position_id": 99})
        assert resp.status_code == 404

    def test_close_requires_id(self):
        _configure()
        assert client.post("/api/trade/close", json={}).status_code == 400

    def test_reset(self):
        engine = _configure()
        _open()
        resp = client.post("/api/reset", json={"starting_balance": 5_000})
        assert resp.status_code == 200
        assert resp.json()["balance"] == 5_000.0
        assert engine.ledger.open_positions == []

    def test_reset_out_of_range(self):
        _configure()
        assert client.post("/api/reset", json={"starting_balance": 50}).status_code == 400

    def test_reset_rejects_non_number(self):
        _configure()
        resp = client.post("/api/reset", json={"starting_balance": "abc"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "starting_balance must be a number"


class TestBacktest:
    def test_backtest_run(self):
        repo = MagicMock()
        repo.insert_run.return_value = 7
        _configure(backtest_repo=repo)

        resp = client.post("/api/backtest", json={"pair": "EURUSD", "count": 300})
        assert resp.status_code == 200
        data = resp.json()
        assert data["run_id"] == 7
        assert data["pair"] == "EUR/USD"
        assert data["candles"] == 300
        stats = data["stats"]
        assert stats["start_balance"] == 10_000.0
        assert stats["total_trades"] == len(data["trades"])
        assert len(data["equity_curve"]) == stats["total_trades"] + 1
        repo.insert_run.assert_called_once()

    def test_backtest_runs(self):
        repo = MagicMock()
        repo.get_runs.return_value = [{"id": 1, "symbol": "EUR/USD"}]
        _configure(backtest_repo=repo)
        assert client.get("/api/backtest/runs").json() == {
            "runs": [{"id": 1, "symbol": "EUR/USD"}]
        }

    def test_backtest_runs_without_repo(self):
        _configure()
        assert client.get("/api/backtest/runs").json() == {"runs": []}

    @pytest.mark.parametrize("count", [10, 10_000])
    def test_backtest_count_out_of_range(self, count):
        _configure()
        resp = client.post("/api/backtest", json={"count": count})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "count must be between 50 and 5000"

    @pytest.mark.parametrize("field", ["count", "stop_loss_pct", "lot_size"])
    def test_backtest_non_numeric_parameter(self, field):
        _configure()
        resp = client.post("/api/backtest", json={field: "abc"})
        assert resp.status_code == 400
        assert resp.json()["detail"].startswith("Invalid backtest parameter")


class TestModeControl:
    def test_start_rejects_live(self):
        _configure()
        assert client.post("/api/mode/start", json={"mode": "LIVE"}).status_code == 400

    def test_start_rejects_unknown_pair(self):
        _configure()
        resp = client.post("/api/mode/start", json={"pair": "ABC/DEF"})
        assert resp.status_code == 400

    def test_start_and_stop(self, monkeypatch):
        engine = _configure()
        start_loop = MagicMock()
        monkeypatch.setattr(engine, "start_loop", start_loop)

        resp = client.post("/api/mode/start", json={"mode": "simulation", "pair": "USDJPY"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["mode"] == "SIMULATION"
        assert data["pair"] == "USD/JPY"
        assert engine.mode is EngineMode.SIMULATION
        start_loop.assert_called_once_with(2.0)

        resp = client.post("/api/mode/stop")
        assert resp.json() == {"success": True, "mode": "STOP"}
        assert engine.mode is EngineMode.STOP

    def test_repeated_start_leaves_loop_to_engine(self, monkeypatch):
        engine = _configure()
        start_loop = MagicMock()
        monkeypatch.setattr(engine, "start_loop", start_loop)

        client.post("/api/mode/start", json={"mode": "SIMULATION"})
        client.post("/api/mode/start", json={"mode": "SIMULATION", "pair": "GBPUSD"})

        assert start_loop.call_count == 2
        assert engine.symbol == "GBP/USD"


def _tick_result(engine: LiveEngine, price: float = 1.1) -> TickResult:
    tick = Tick(symbol=engine.symbol, price=price, timestamp=1_736_510_460_000)
    return TickResult(tick=tick, candle=None, blocked_reason="Market closed")


class TestLiveStream:
    def test_rejected_without_engine(self):
        configure_routers(None)
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/api/live"):
                pass

    def test_init_message(self):
        _configure()
        with client.websocket_connect("/api/live") as ws:
            message = ws.receive_json()
        assert message["type"] == "init"
        assert message["data"]["pair"] == "EUR/USD"
        assert message["data"]["timeframe"] == "5min"
        assert message["data"]["mode"] == "STOP"
        assert message["data"]["balance"] == 10_000.0

    def test_tick_is_pushed(self, monkeypatch):
        engine = _configure()
        queue = asyncio.Queue()
        queue.put_nowait(_tick_result(engine, price=1.1234))
        monkeypatch.setattr(engine, "subscribe", lambda: queue)
        unsubscribe = MagicMock()
        monkeypatch.setattr(engine, "unsubscribe", unsubscribe)

        with client.websocket_connect("/api/live") as ws:
            assert ws.receive_json()["type"] == "init"
            message = ws.receive_json()

        assert message["type"] == "tick"
        assert message["data"]["pair"] == "EUR/USD"
        assert message["data"]["price"] == 1.1234
        assert message["data"]["blocked_reason"] == "Market closed"
        unsubscribe.assert_called_once_with(queue)

    def test_tick_event_shape(self):
        engine = _make_engine()
        engine.ledger.open(Side.BUY, "EUR/USD", 1.1)
        event = tick_event(_tick_result(engine), engine)
        assert event["type"] == "tick"
        data = event["data"]
        assert data["candle"] is None
        assert data["signals"] == [] and data["closed"] == []
        assert data["balance"] == 10_000.0
        assert len(data["open_positions"]) == 1
        assert data["open_positions"][0]["side"] == "BUY"


class TestStatus:
    def test_status(self):
        _configure()
        data = client.get("/api/status").json()
        assert data["mode"] == "STOP"
        assert data["pair"] == "EUR/USD"
        assert data["balance"] == 10_000.0
        assert "open" in data["market"]
        assert "next_event_time" in data["market"]

    def test_config(self):
        _configure()
        data = client.get("/api/config").json()
        assert "XAU/USD" in data["pairs"]
        assert "5min" in data["timeframes"]
        assert data["twelvedata_enabled"] is False
