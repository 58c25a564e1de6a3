"""Tests for the live engine — tick processing, auto-execution, trade validation."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from nexus import engine as engine_module
from nexus.config import Config
from nexus.data.feed import MarketDataFeed
from nexus.engine import EngineMode, LiveEngine, TickResult, TradeRejected
from nexus.ledger.ledger import PositionLedger
from nexus.ledger.models import ExitReason
from nexus.notify.scheduler import DailySummaryScheduler
from nexus.strategy.models import Side, Signal, Tick

# Friday 2025-01-10 12:00 UTC, London / New York overlap
NOW_MS = 1_736_510_400_000
FRIDAY_NOON = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)
SATURDAY = datetime(2025, 1, 11, 12, 0, tzinfo=timezone.utc)


# ── Helpers ──────────────────────────────────────────────────────────────


def _signal_on_last_candle(side=Side.BUY):
    """Stand-in for generate_signals: one signal on the newest candle."""

    def _generate(candles, levels, symbol, *args, **kwargs):
        last = candles[-1]
        return [
            Signal(
                index=len(candles) - 1,
                time=last.time,
                side=side,
                price=last.close,
                confidence=60.0,
                reasons=("MACD bullish crossover",),
                rsi=35.0,
                macd=0.001,
                macd_signal=0.0,
                score=3.0,
            )
        ]

    return _generate


def _no_signals(candles, levels, symbol, *args, **kwargs):
    return []


def _make_engine(mode=EngineMode.STOP, balance=10_000.0, **kwargs) -> LiveEngine:
    feed = MarketDataFeed(rng=np.random.default_rng(1), clock=lambda: NOW_MS)
    return LiveEngine(
        feed,
        PositionLedger(balance),
        symbol="EUR/USD",
        timeframe="1min",
        mode=mode,
        clock=lambda: FRIDAY_NOON,
        **kwargs,
    )


async def _loaded(monkeypatch, generator=_no_signals, **kwargs) -> LiveEngine:
    monkeypatch.setattr(engine_module, "generate_signals", generator)
    engine = _make_engine(**kwargs)
    await engine.load(count=100)
    return engine


def _tick(price, ts=NOW_MS, symbol="EUR/USD") -> Tick:
    return Tick(symbol=symbol, price=price, timestamp=ts)


# ── Loading ──────────────────────────────────────────────────────────────


class TestLoad:
    @pytest.mark.asyncio
    async def test_load_window(self, monkeypatch):
        engine = await _loaded(monkeypatch, _signal_on_last_candle())
        assert len(engine.candles) == 100
        assert engine.source == "simulated"
        assert len(engine.signals) == 1
        # historical signals are display only
        assert engine.signal_history == []
        assert engine.daily_signal_count == 0
        assert engine.current_price() == engine.candles[-1].close

    @pytest.mark.asyncio
    async def test_load_switches_symbol(self, monkeypatch):
        engine = await _loaded(monkeypatch)
        await engine.load(symbol="XAU/USD", timeframe="5min", count=60)
        assert engine.symbol == "XAU/USD"
        assert engine.timeframe == "5min"
        assert len(engine.candles) == 60

    @pytest.mark.asyncio
    async def test_start_and_stop(self, monkeypatch):
        engine = await _loaded(monkeypatch)
        await engine.start(EngineMode.SIMULATION, "GBP/USD")
        assert engine.mode is EngineMode.SIMULATION
        assert engine.symbol == "GBP/USD"
        engine.stop()
        assert engine.mode is EngineMode.STOP
        assert engine.running is False


# ── Tick processing ──────────────────────────────────────────────────────


class TestHandleTick:
    @pytest.mark.asyncio
    async def test_stop_mode_tracks_signals_only(self, monkeypatch):
        engine = await _loaded(monkeypatch, _signal_on_last_candle())
        result = engine.handle_tick(_tick(1.19))

        assert len(engine.candles) == 101
        assert result.candle.time == NOW_MS
        assert [s.time for s in result.new_signals] == [NOW_MS]
        assert result.opened == []
        assert engine.signal_history == result.new_signals
        assert engine.daily_signal_count == 1

    @pytest.mark.asyncio
    async def test_signal_reported_once_per_candle(self, monkeypatch):
        engine = await _loaded(monkeypatch, _signal_on_last_candle())
        engine.handle_tick(_tick(1.19))
        again = engine.handle_tick(_tick(1.191, ts=NOW_MS + 5_000))
        assert again.new_signals == []
        assert engine.daily_signal_count == 1
        assert engine.candles[-1].close == 1.191

    @pytest.mark.asyncio
    async def test_simulation_auto_opens(self, monkeypatch):
        engine = await _loaded(
            monkeypatch, _signal_on_last_candle(), mode=EngineMode.SIMULATION
        )
        result = engine.handle_tick(_tick(1.19))

        assert len(result.opened) == 1
        pos = result.opened[0]
        assert pos.side is Side.BUY
        assert pos.symbol == "EUR/USD"
        assert pos.entry_price == 1.19
        assert pos.stop_loss == pytest.approx(1.19 * 0.998)
        assert engine.dirty is True

    @pytest.mark.asyncio
    async def test_one_position_per_symbol(self, monkeypatch):
        engine = await _loaded(
            monkeypatch, _signal_on_last_candle(Side.SELL), mode=EngineMode.SIMULATION
        )
        engine.open_manual(Side.BUY, "EUR/USD", 0.1, 1.19)
        result = engine.handle_tick(_tick(1.19))
        assert len(result.new_signals) == 1
        assert result.opened == []
        assert len(engine.ledger.open_positions) == 1

    @pytest.mark.asyncio
    async def test_market_closed_blocks_execution(self, monkeypatch):
        engine = await _loaded(
            monkeypatch, _signal_on_last_candle(), mode=EngineMode.SIMULATION
        )
        result = engine.handle_tick(_tick(1.19), now=SATURDAY)
        assert result.blocked_reason == "market_closed"
        assert result.opened == []
        assert len(result.new_signals) == 1

    @pytest.mark.asyncio
    async def test_market_hours_disabled(self, monkeypatch):
        engine = await _loaded(
            monkeypatch,
            _signal_on_last_candle(),
            mode=EngineMode.SIMULATION,
            market_hours_enabled=False,
        )
        result = engine.handle_tick(_tick(1.19), now=SATURDAY)
        assert result.blocked_reason is None
        assert len(result.opened) == 1

    @pytest.mark.asyncio
    async def test_tick_closes_at_take_profit(self, monkeypatch):
        engine = await _loaded(monkeypatch)
        pos = engine.open_manual(Side.BUY, "EUR/USD", 0.1, 1.19)
        result = engine.handle_tick(_tick(pos.take_profit + 0.0001))
        assert len(result.closed) == 1
        assert result.closed[0].exit_reason is ExitReason.TAKE_PROFIT
        assert engine.ledger.open_positions == []


# ── Manual trading ───────────────────────────────────────────────────────


class TestManualTrading:
    def test_unsupported_pair(self):
        with pytest.raises(TradeRejected, match="Unsupported pair"):
            _make_engine().validate_trade("FOO/BAR", 0.1)

    @pytest.mark.parametrize("lot", [0.001, 1.5])
    def test_lot_bounds(self, lot):
        with pytest.raises(TradeRejected, match="Lot size"):
            _make_engine().validate_trade("EUR/USD", lot)

    def test_insufficient_balance(self):
        with pytest.raises(TradeRejected, match="Insufficient balance"):
            _make_engine(balance=500.0).validate_trade("EUR/USD", 1.0)

    def test_no_price_available(self):
        with pytest.raises(TradeRejected, match="No price"):
            _make_engine().open_manual(Side.BUY, "EUR/USD", 0.1)

    @pytest.mark.asyncio
    async def test_open_at_current_price(self, monkeypatch):
        engine = await _loaded(monkeypatch)
        pos = engine.open_manual(Side.SELL, "EUR/USD")
        assert pos.entry_price == engine.candles[-1].close
        assert pos.lot_size == 0.1

    def test_close_manual(self):
        engine = _make_engine()
        pos = engine.open_manual(Side.BUY, "EUR/USD", 0.1, 1.1)
        trade = engine.close_manual(pos.id, 1.101)
        assert trade.realized_pnl == pytest.approx(10.0)
        assert engine.close_manual(pos.id) is None

    def test_close_manual_defaults_to_last_price(self):
        engine = _make_engine()
        pos = engine.open_manual(Side.BUY, "GBP/USD", 0.1, 1.36)
        assert engine.close_manual(pos.id).exit_price == 1.36

    def test_close_matching(self):
        engine = _make_engine()
        engine.open_manual(Side.BUY, "EUR/USD", 0.1, 1.1)
        engine.open_manual(Side.SELL, "EUR/USD", 0.1, 1.1)
        engine.open_manual(Side.BUY, "XAU/USD", 0.1, 2000.0)

        closed = engine.close_matching("EUR/USD", Side.SELL)
        assert [t.side for t in closed] == [Side.SELL]
        closed = engine.close_matching("EUR/USD")
        assert len(closed) == 1
        assert [p.symbol for p in engine.ledger.open_positions] == ["XAU/USD"]

    def test_reset(self):
        engine = _make_engine()
        engine.open_manual(Side.BUY, "EUR/USD", 0.1, 1.1)
        engine.reset(2_000.0)
        assert engine.ledger.balance == 2_000.0
        assert engine.ledger.open_positions == []
        assert engine.signal_history == []


# ── Side effects ─────────────────────────────────────────────────────────


class TestSideEffects:
    def test_persist_only_when_dirty(self):
        repo = MagicMock()
        engine = _make_engine(ledger_repo=repo)
        assert engine.persist() is False
        engine.open_manual(Side.BUY, "EUR/USD", 0.1, 1.1)
        assert engine.persist() is True
        assert engine.persist() is False
        repo.save.assert_called_once()
        snapshot = repo.save.call_args[0][0]
        assert len(snapshot["open_positions"]) == 1

    @pytest.mark.asyncio
    async def test_publish_alerts(self, monkeypatch):
        bot = AsyncMock()
        bot.enabled = True
        engine = await _loaded(
            monkeypatch, _signal_on_last_candle(), mode=EngineMode.SIMULATION, notifier=bot
        )
        await engine.publish(engine.handle_tick(_tick(1.19)))

        texts = [call.args[0] for call in bot.send_message.await_args_list]
        assert len(texts) == 2
        assert "NEXUS SIGNAL: BUY" in texts[0]
        assert "TRADE OPENED" in texts[1]

    @pytest.mark.asyncio
    async def test_alerts_disabled(self, monkeypatch):
        bot = AsyncMock()
        bot.enabled = True
        engine = await _loaded(monkeypatch, _signal_on_last_candle(), notifier=bot)
        engine.alerts_enabled = False
        await engine.publish(engine.handle_tick(_tick(1.19)))
        bot.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_blocked_execution_is_announced(self, monkeypatch):
        bot = AsyncMock()
        bot.enabled = True
        engine = await _loaded(
            monkeypatch, _signal_on_last_candle(), mode=EngineMode.SIMULATION, notifier=bot
        )
        engine.alerts_enabled = False
        await engine.publish(engine.handle_tick(_tick(1.19), now=SATURDAY))
        text = bot.send_message.await_args.args[0]
        assert "Auto-Execution Blocked" in text

    @pytest.mark.asyncio
    async def test_daily_summary(self, monkeypatch):
        bot = AsyncMock()
        bot.enabled = True
        engine = await _loaded(
            monkeypatch,
            _signal_on_last_candle(),
            notifier=bot,
            scheduler=DailySummaryScheduler(hour=0),
        )
        engine.handle_tick(_tick(1.19))
        assert engine.daily_signal_count == 1

        assert await engine.maybe_send_daily_summary() is True
        assert "DAILY SUMMARY" in bot.send_message.await_args.args[0]
        assert engine.daily_signal_count == 0
        assert await engine.maybe_send_daily_summary() is False


# ── Polling loop ─────────────────────────────────────────────────────────


class TestRun:
    @pytest.mark.asyncio
    async def test_run_max_cycles(self, monkeypatch):
        engine = await _loaded(monkeypatch, _signal_on_last_candle())
        results = await engine.run(poll_interval=0, max_cycles=2)
        assert len(results) == 2
        assert len(results[0].new_signals) == 1
        # both ticks fall into the same candle
        assert results[1].new_signals == []
        assert engine.running is False

    @pytest.mark.asyncio
    async def test_run_persists(self, monkeypatch):
        repo = MagicMock()
        engine = await _loaded(
            monkeypatch,
            _signal_on_last_candle(),
            mode=EngineMode.SIMULATION,
            ledger_repo=repo,
        )
        await engine.run(poll_interval=0, max_cycles=1)
        repo.save.assert_called_once()

    @pytest.mark.asyncio
    async def test_restart_while_sleeping_resumes_the_same_loop(self, monkeypatch):
        engine = await _loaded(monkeypatch, mode=EngineMode.SIMULATION)
        task = engine.start_loop(poll_interval=0.05)
        await asyncio.sleep(0.01)  # first tick done, loop sleeping

        engine.stop()
        await engine.start(EngineMode.SIMULATION)
        assert engine.start_loop(poll_interval=0.05) is task

        await asyncio.sleep(0.12)
        assert engine.mode is EngineMode.SIMULATION
        assert engine.running is True
        assert not task.done()

        await engine.shutdown()
        assert task.done()
        assert engine.running is False

    @pytest.mark.asyncio
    async def test_second_start_does_not_double_tick(self, monkeypatch):
        engine = await _loaded(monkeypatch, mode=EngineMode.SIMULATION)
        ticks = []
        real_next_tick = engine.feed.next_tick

        async def _counting_next_tick(symbol, last_price):
            ticks.append(symbol)
            return await real_next_tick(symbol, last_price)

        monkeypatch.setattr(engine.feed, "next_tick", _counting_next_tick)

        first = engine.start_loop(poll_interval=0.05)
        await engine.start(EngineMode.SIMULATION)
        assert engine.start_loop(poll_interval=0.05) is first

        await asyncio.sleep(0.01)
        assert len(ticks) == 1
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_without_loop_persists(self):
        repo = MagicMock()
        engine = _make_engine(ledger_repo=repo)
        engine.reset()
        await engine.shutdown()
        repo.save.assert_called_once()


class TestLiveListeners:
    @pytest.mark.asyncio
    async def test_run_broadcasts_each_tick(self, monkeypatch):
        engine = await _loaded(monkeypatch, _signal_on_last_candle())
        queue = engine.subscribe()
        results = await engine.run(poll_interval=0, max_cycles=2)
        assert [queue.get_nowait() for _ in range(2)] == results

        engine.unsubscribe(queue)
        await engine.run(poll_interval=0, max_cycles=1)
        assert queue.empty()

    def test_lagging_listener_drops_ticks(self):
        engine = _make_engine()
        queue = engine.subscribe()
        result = TickResult(tick=_tick(1.1), candle=None)
        for _ in range(engine_module.LISTENER_QUEUE_SIZE + 5):
            engine.broadcast(result)
        assert queue.qsize() == engine_module.LISTENER_QUEUE_SIZE

    @pytest.mark.asyncio
    async def test_load_points_stream_at_symbol(self, monkeypatch):
        engine = await _loaded(monkeypatch)
        watched = []

        async def _watch(symbol):
            watched.append(symbol)

        monkeypatch.setattr(engine.feed, "watch", _watch)
        await engine.load(symbol="XAU/USD", count=60)
        assert watched == ["XAU/USD"]


def test_from_config():
    config = Config(
        twelvedata_api_key="",
        telegram_bot_token="",
        telegram_chat_id="",
        default_pair="GBP/USD",
        default_timeframe="15min",
        default_mode="SIMULATION",
        starting_balance=2_500.0,
        lot_size=0.2,
        stop_loss_pct=0.003,
        take_profit_pct=0.006,
        enable_market_hours=False,
        daily_summary_hour=20,
        tick_interval_seconds=1.0,
        db_path=":memory:",
        log_level="INFO",
        port=3001,
    )
    engine = LiveEngine.from_config(config, MarketDataFeed())
    assert engine.symbol == "GBP/USD"
    assert engine.timeframe == "15min"
    assert engine.mode is EngineMode.SIMULATION
    assert engine.ledger.balance == 2_500.0
    assert engine.lot_size == 0.2
    assert engine.market_hours_enabled is False
