"""HTTP API routers — candles, signals, positions, trading, backtest, mode control.

/live pushes each processed tick to WebSocket clients.  No business logic,
no SQL.  Delegates to the live engine, the market data
feed and the backtest repository injected at startup.
"""

import logging
import math
from dataclasses import asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect

from nexus.backtest.engine import BacktestParams, run_backtest
from nexus.data.candle_aggregator import TIMEFRAME_MS
from nexus.engine import EngineMode, LiveEngine, TickResult, TradeRejected
from nexus.strategy.market_hours import market_status
from nexus.strategy.models import SUPPORTED_SYMBOLS, Side, normalize_symbol

logger = logging.getLogger("nexus.api")
router = APIRouter()

MIN_BACKTEST_CANDLES = 50
MAX_BACKTEST_CANDLES = 5000

# ── Shared state (set during app startup) ────────────────────────────────

_engine: Optional[LiveEngine] = None  # Set via configure_routers()
_backtest_repo = None  # Set via configure_routers()
_poll_interval: float = 2.0


def configure_routers(
    engine: LiveEngine,
    backtest_repo=None,
    poll_interval: float = 2.0,
) -> None:
    """Inject dependencies from the application startup.

    Args:
        engine: The ``LiveEngine`` session served by the API.
        backtest_repo: A ``BacktestRepo`` (or duck-type for tests), optional.
        poll_interval: Seconds between ticks once a mode is started.
    """
    global _engine, _backtest_repo, _poll_interval  # noqa: PLW0603
    _engine = engine
    _backtest_repo = backtest_repo
    _poll_interval = poll_interval


def _require_engine() -> LiveEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Engine not configured")
    return _engine


def _finite(value: Optional[float]) -> Optional[float]:
    """JSON has no infinity; report it as null."""
    if value is None or math.isinf(value) or math.isnan(value):
        return None
    return value


def _record(obj) -> dict:
    """Dataclass → JSON-ready dict with enum values and finite floats."""
    out = {}
    for key, value in asdict(obj).items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, float):
            value = _finite(value)
        elif isinstance(value, tuple):
            value = list(value)
        out[key] = value
    return out


def _stats(stats: dict) -> dict:
    return {k: _finite(v) if isinstance(v, float) else v for k, v in stats.items()}


def _parse_side(raw) -> Side:
    try:
        return Side(str(raw).upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid side: {raw}") from None


# ── Market data ──────────────────────────────────────────────────────────


@router.get("/candles")
async def get_candles(
    pair: Optional[str] = Query(default=None),
    tf: Optional[str] = Query(default=None),
    count: int = Query(default=200, ge=MIN_BACKTEST_CANDLES, le=MAX_BACKTEST_CANDLES),
):
    """Fetch and enrich a fresh candle window; makes it the active window."""
    engine = _require_engine()
    symbol = normalize_symbol(pair) if pair else None
    await engine.load(symbol=symbol, timeframe=tf, count=count)
    return {
        "source": engine.source,
        "pair": engine.symbol,
        "timeframe": engine.timeframe,
        "candles": [_record(c) for c in engine.candles],
        "sr_levels": [_record(lv) for lv in engine.sr_levels],
        "signals": [_record(s) for s in engine.signals],
    }


@router.get("/signals")
async def get_signals(limit: int = Query(default=50, ge=1, le=500)):
    """Signals of the active window plus the live signal history."""
    engine = _require_engine()
    return {
        "pair": engine.symbol,
        "signals": [_record(s) for s in engine.signals],
        "history": [_record(s) for s in engine.signal_history[-limit:]],
        "daily_count": engine.daily_signal_count,
    }


# ── Positions & trading ──────────────────────────────────────────────────


@router.get("/positions")
async def get_positions():
    """Open positions, closed-trade history and ledger statistics."""
    ledger = _require_engine().ledger
    return {
        "balance": ledger.balance,
        "positions": [_record(p) for p in ledger.open_positions],
        "history": [_record(t) for t in ledger.trade_history],
        "stats": _stats(ledger.stats()),
    }


@router.post("/trade/open")
async def open_trade(body: dict):
    """Open a manual position.  Invalid parameters map to HTTP 400."""
    engine = _require_engine()
    side = _parse_side(body.get("side") or body.get("type"))
    symbol = normalize_symbol(body.get("pair") or engine.symbol)
    try:
        lot_size = float(body.get("lot_size", engine.lot_size))
        price = float(body["price"]) if body.get("price") is not None else None
        position = engine.open_manual(side, symbol, lot_size, price)
    except (TradeRejected, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None

    await engine.announce(position, "opened")
    engine.persist()
    return {"success": True, "position": _record(position), "balance": engine.ledger.balance}


@router.post("/trade/close")
async def close_trade(body: dict):
    """Close a position by id.  Unknown ids map to HTTP 404."""
    engine = _require_engine()
    try:
        position_id = int(body["position_id"])
        price = float(body["price"]) if body.get("price") is not None else None
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=400, detail="position_id is required") from None

    trade = engine.close_manual(position_id, price)
    if trade is None:
        raise HTTPException(status_code=404, detail=f"Position #{position_id} not found")

    await engine.announce(trade, "closed_win" if trade.realized_pnl >= 0 else "closed_loss")
    engine.persist()
    return {"success": True, "trade": _record(trade), "balance": engine.ledger.balance}


@router.post("/reset")
async def reset(body: Optional[dict] = None):
    """Clear positions, history and the signal log."""
    engine = _require_engine()
    body = body or {}
    starting = body.get("starting_balance")
    if starting is not None:
        try:
            starting = float(starting)
        except (TypeError, ValueError):
            raise HTTPException(
                status_code=400, detail="starting_balance must be a number"
            ) from None
        if not 100 <= starting <= 1_000_000:
            raise HTTPException(
                status_code=400, detail="starting_balance must be between 100 and 1000000"
            )
    engine.reset(starting)
    engine.persist()
    return {"success": True, "balance": engine.ledger.balance}


# ── Backtest ─────────────────────────────────────────────────────────────


@router.post("/backtest")
async def backtest(body: Optional[dict] = None):
    """Replay a fetched window through the signal pipeline."""
    engine = _require_engine()
    body = body or {}
    symbol = normalize_symbol(body.get("pair") or engine.symbol)
    timeframe = body.get("timeframe") or engine.timeframe
    try:
        count = int(body.get("count", 500))
        params = BacktestParams(
            stop_loss_pct=float(body.get("stop_loss_pct", engine.sl_pct)),
            take_profit_pct=float(body.get("take_profit_pct", engine.tp_pct)),
            lot_size=float(body.get("lot_size", engine.lot_size)),
            starting_balance=float(
                body.get("starting_balance", engine.ledger.starting_balance)
            ),
        )
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid backtest parameter: {exc}") from None
    if not MIN_BACKTEST_CANDLES <= count <= MAX_BACKTEST_CANDLES:
        raise HTTPException(
            status_code=400,
            detail=f"count must be between {MIN_BACKTEST_CANDLES} and {MAX_BACKTEST_CANDLES}",
        )

    source, candles = await engine.feed.get_market_data(symbol, timeframe, count)
    result = run_backtest(candles, params, symbol)
    run_id = None
    if _backtest_repo is not None:
        run_id = _backtest_repo.insert_run(
            symbol, timeframe, source, result, candle_count=len(candles)
        )

    logger.info(
        "Backtest %s %s: %d trades, PnL %.2f, win rate %.1f%%",
        symbol, timeframe, result.total_trades, result.total_pnl, result.win_rate,
    )
    return {
        "run_id": run_id,
        "source": source,
        "pair": symbol,
        "timeframe": timeframe,
        "candles": len(candles),
        "signals": len(result.signals),
        "trades": [_record(t) for t in result.trades],
        "stats": {
            "total_trades": result.total_trades,
            "wins": result.wins,
            "losses": result.losses,
            "win_rate": result.win_rate,
            "total_pnl": result.total_pnl,
            "avg_win": result.avg_win,
            "avg_loss": result.avg_loss,
            "profit_factor": _finite(result.profit_factor),
            "max_drawdown": result.max_drawdown,
            "start_balance": result.start_balance,
            "final_balance": result.final_balance,
        },
        "equity_curve": result.equity_curve,
    }


@router.get("/backtest/runs")
async def backtest_runs(limit: int = Query(default=10, ge=1, le=100)):
    if _backtest_repo is None:
        return {"runs": []}
    return {"runs": _backtest_repo.get_runs(limit)}


# ── Mode control ─────────────────────────────────────────────────────────


@router.post("/mode/start")
async def mode_start(body: Optional[dict] = None):
    """Load the requested window and start the tick loop."""
    engine = _require_engine()
    body = body or {}
    raw_mode = str(body.get("mode", EngineMode.SIMULATION.value)).upper()
    if raw_mode != EngineMode.SIMULATION.value:
        raise HTTPException(status_code=400, detail="Invalid mode. Use SIMULATION.")

    symbol = normalize_symbol(body["pair"]) if body.get("pair") else None
    if symbol is not None and symbol not in SUPPORTED_SYMBOLS:
        raise HTTPException(status_code=400, detail=f"Unsupported pair {symbol}")
    await engine.start(EngineMode.SIMULATION, symbol, body.get("timeframe"))
    engine.start_loop(_poll_interval)
    return {
        "success": True,
        "mode": engine.mode.value,
        "pair": engine.symbol,
        "timeframe": engine.timeframe,
        "data_source": engine.source,
    }


@router.post("/mode/stop")
async def mode_stop():
    engine = _require_engine()
    engine.stop()
    engine.persist()
    return {"success": True, "mode": engine.mode.value}


# ── Live stream ──────────────────────────────────────────────────────────


def tick_event(result: TickResult, engine: LiveEngine) -> dict:
    """Message pushed to live clients for one processed tick."""
    return {
        "type": "tick",
        "data": {
            "pair": result.tick.symbol,
            "price": result.tick.price,
            "timestamp": result.tick.timestamp,
            "candle": _record(result.candle) if result.candle is not None else None,
            "sr_levels": [_record(lv) for lv in engine.sr_levels],
            "signals": [_record(s) for s in result.new_signals],
            "opened": [_record(p) for p in result.opened],
            "closed": [_record(t) for t in result.closed],
            "blocked_reason": result.blocked_reason,
            "balance": engine.ledger.balance,
            "open_positions": [_record(p) for p in engine.ledger.open_positions],
        },
    }


@router.websocket("/live")
async def live(websocket: WebSocket):
    """Send an ``init`` message, then one ``tick`` message per processed tick."""
    engine = _engine
    if engine is None:
        await websocket.close(code=1013)
        return

    await websocket.accept()
    queue = engine.subscribe()
    logger.info("Live client connected")
    try:
        await websocket.send_json(
            {
                "type": "init",
                "data": {
                    "pair": engine.symbol,
                    "timeframe": engine.timeframe,
                    "mode": engine.mode.value,
                    "data_source": engine.source,
                    "balance": engine.ledger.balance,
                },
            }
        )
        while True:
            result = await queue.get()
            await websocket.send_json(tick_event(result, engine))
    except WebSocketDisconnect:
        logger.info("Live client disconnected")
    finally:
        engine.unsubscribe(queue)


# ── Status & config ──────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    engine = _require_engine()
    now = datetime.now(timezone.utc)
    market = market_status(now)
    return {
        "mode": engine.mode.value,
        "running": engine.running,
        "pair": engine.symbol,
        "timeframe": engine.timeframe,
        "data_source": engine.source,
        "stream_connected": engine.feed.stream_connected,
        "balance": engine.ledger.balance,
        "open_positions": len(engine.ledger.open_positions),
        "signals_today": engine.daily_signal_count,
        "alerts_enabled": engine.alerts_enabled,
        "market": {
            "open": market.open,
            "weekend": market.weekend,
            "active_sessions": list(market.active_sessions),
            "next_event": market.next_event,
            "next_event_time": market.next_event_time.isoformat(),
        },
    }


@router.get("/config")
async def get_config():
    engine = _require_engine()
    return {
        "pairs": list(SUPPORTED_SYMBOLS),
        "timeframes": list(TIMEFRAME_MS),
        "lot_size": engine.lot_size,
        "stop_loss_pct": engine.sl_pct,
        "take_profit_pct": engine.tp_pct,
        "market_hours_enabled": engine.market_hours_enabled,
        "twelvedata_enabled": engine.feed.live_enabled,
    }
