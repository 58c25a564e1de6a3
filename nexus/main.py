"""NEXUS — application entry point.

Boots the FastAPI server and provides the CLI entry point for the live
service (``serve``) and one-off backtests (``backtest``).
"""

import logging

from fastapi import FastAPI

from nexus.api.routers import router

app = FastAPI(title="NEXUS Signal API", version="0.1.0")
app.include_router(router, prefix="/api")

logger = logging.getLogger("nexus")


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


# ── CLI ──────────────────────────────────────────────────────────────────


def _build_parser():
    import argparse

    parser = argparse.ArgumentParser(description="NEXUS signal assistant")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the API server and live engine")
    serve.add_argument("--port", type=int, default=None, help="Override PORT")

    bt = sub.add_parser("backtest", help="Replay historical candles")
    bt.add_argument("--pair", default=None, help="Instrument (default: DEFAULT_PAIR)")
    bt.add_argument("--timeframe", default=None, help="Candle timeframe")
    bt.add_argument("--count", type=int, default=500, help="Candles to replay")
    bt.add_argument("--seed", type=int, default=None, help="Seed for simulated data")
    return parser


def _run_cli(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command."""
    import asyncio

    from nexus.config import load_config
    from nexus.repos.db import init_db

    args = _build_parser().parse_args(argv)
    config = load_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    init_db(config.db_path)

    if args.command == "backtest":
        asyncio.run(_run_backtest(config, args.pair, args.timeframe, args.count, args.seed))
    else:
        port = getattr(args, "port", None) or config.port
        asyncio.run(_serve(config, port))


def _build_feed(config, seed: int | None = None, stream=None):
    import numpy as np

    from nexus.data.feed import MarketDataFeed
    from nexus.data.twelvedata_client import TwelveDataClient

    client = TwelveDataClient(config.twelvedata_api_key) if config.twelvedata_enabled else None
    return MarketDataFeed(client, rng=np.random.default_rng(seed), stream=stream)


async def _serve(config, port: int) -> None:
    """Start the API server, the Telegram poller and (optionally) the engine."""
    import asyncio
    import contextlib

    import uvicorn

    from nexus.api.routers import configure_routers
    from nexus.data.twelvedata_stream import TwelveDataStream
    from nexus.engine import EngineMode, LiveEngine
    from nexus.ledger.ledger import PositionLedger
    from nexus.notify.commands import CommandHandler
    from nexus.notify.telegram import TelegramBot
    from nexus.repos.backtest_repo import BacktestRepo
    from nexus.repos.ledger_repo import LedgerRepo

    ledger_repo = LedgerRepo(config.db_path)
    snapshot = ledger_repo.load()
    if snapshot is not None:
        ledger = PositionLedger.from_snapshot(snapshot)
        logger.info(
            "Restored ledger: balance=%.2f, %d open, %d closed",
            ledger.balance, len(ledger.open_positions), len(ledger.trade_history),
        )
    else:
        ledger = PositionLedger(config.starting_balance)

    bot = TelegramBot(config.telegram_bot_token, config.telegram_chat_id)
    stream = TwelveDataStream(config.twelvedata_api_key) if config.twelvedata_enabled else None
    engine = LiveEngine.from_config(
        config,
        _build_feed(config, stream=stream),
        ledger=ledger,
        notifier=bot,
        ledger_repo=ledger_repo,
    )
    configure_routers(
        engine,
        backtest_repo=BacktestRepo(config.db_path),
        poll_interval=config.tick_interval_seconds,
    )

    logger.info(
        "Starting NEXUS: pair=%s timeframe=%s mode=%s twelvedata=%s telegram=%s",
        config.default_pair, config.default_timeframe, config.default_mode,
        config.twelvedata_enabled, config.telegram_enabled,
    )
    await engine.load()

    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info"))

    async def _poll_commands():
        if not bot.enabled:
            logger.info("Telegram not configured — command polling disabled")
            return
        await bot.register_commands()
        handler = CommandHandler(engine)
        offset = None
        while not server.should_exit:
            offset = await handler.poll_once(bot, offset)
            engine.persist()
            await asyncio.sleep(2)

    stream_task = asyncio.create_task(stream.run()) if stream is not None else None
    if engine.mode is EngineMode.SIMULATION:
        engine.start_loop(config.tick_interval_seconds)

    logger.info("API available at http://localhost:%d/api", port)
    results = await asyncio.gather(
        server.serve(),
        _poll_commands(),
        return_exceptions=True,
    )
    await engine.shutdown()
    if stream_task is not None:
        await stream.close()
        stream_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await stream_task
    logger.info("NEXUS stopped. Results: %s", results)


async def _run_backtest(config, pair, timeframe, count: int, seed) -> None:
    """Fetch candles, replay them and store the run summary."""
    from nexus.backtest.engine import BacktestParams, run_backtest
    from nexus.repos.backtest_repo import BacktestRepo
    from nexus.strategy.models import normalize_symbol

    symbol = normalize_symbol(pair or config.default_pair)
    timeframe = timeframe or config.default_timeframe
    feed = _build_feed(config, seed)

    source, candles = await feed.get_market_data(symbol, timeframe, count)
    params = BacktestParams(
        stop_loss_pct=config.stop_loss_pct,
        take_profit_pct=config.take_profit_pct,
        lot_size=config.lot_size,
        starting_balance=config.starting_balance,
    )
    result = run_backtest(candles, params, symbol)
    BacktestRepo(config.db_path).insert_run(
        symbol, timeframe, source, result, candle_count=len(candles)
    )
    logger.info(
        "Backtest complete (%s, %d candles): %d signals, %d trades, PnL: $%.2f, "
        "Win rate: %.1f%%, final balance: $%.2f",
        source, len(candles), len(result.signals), result.total_trades,
        result.total_pnl, result.win_rate, result.final_balance,
    )


if __name__ == "__main__":
    _run_cli()
