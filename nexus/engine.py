"""NEXUS — live engine (orchestration).

Owns one explicit trading session: the active symbol and timeframe, the
retained candle window, current signals, tick aggregators and the
position ledger.  Ticks are processed synchronously, one at a time;
network I/O (data fetch, notifications, persistence) happens around the
tick transition, never inside it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from nexus.config import Config
from nexus.data.candle_aggregator import CandleAggregator, timeframe_to_ms
from nexus.data.feed import MarketDataFeed
from nexus.ledger.ledger import PositionLedger
from nexus.ledger.models import ClosedTrade, Position
from nexus.notify.formatting import (
    format_daily_summary,
    format_signal_alert,
    format_trade_update,
    trade_event,
)
from nexus.notify.scheduler import DailySummaryScheduler
from nexus.notify.telegram import TelegramBot
from nexus.repos.ledger_repo import LedgerRepo
from nexus.risk.sl_tp import calculate_sl, calculate_tp
from nexus.strategy.indicators import enrich_candles
from nexus.strategy.market_hours import is_market_open, market_status
from nexus.strategy.models import (
    SUPPORTED_SYMBOLS,
    Candle,
    EnrichedCandle,
    Side,
    Signal,
    SRLevel,
    Tick,
)
from nexus.strategy.signals import generate_signals

logger = logging.getLogger("nexus.engine")

WINDOW_SIZE = 200
MIN_LOT = 0.01
MAX_LOT = 1.0
MARGIN_PER_LOT = 1000.0
LISTENER_QUEUE_SIZE = 100


class EngineMode(str, Enum):
    STOP = "STOP"
    SIMULATION = "SIMULATION"


class TradeRejected(ValueError):
    """A trade request failed validation at the orchestration boundary."""


@dataclass
class TickResult:
    """Everything one tick changed."""

    tick: Tick
    candle: Optional[EnrichedCandle]
    new_signals: list[Signal] = field(default_factory=list)
    opened: list[Position] = field(default_factory=list)
    closed: list[ClosedTrade] = field(default_factory=list)
    blocked_reason: Optional[str] = None  # set when auto-execution was skipped


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LiveEngine:
    """Live signal and simulated-execution session.

    Args:
        feed: Candle and tick supplier.
        ledger: Position ledger owned by this session.
        symbol: Active instrument.
        timeframe: Active candle timeframe (e.g. ``"5min"``).
        mode: ``STOP`` only tracks signals; ``SIMULATION`` auto-executes.
        lot_size: Lots per auto-executed trade.
        sl_pct: Stop-loss distance as a fraction of entry.
        tp_pct: Take-profit distance as a fraction of entry.
        market_hours_enabled: Refuse auto-execution while markets are closed.
        notifier: Telegram bot for alerts, or ``None``.
        ledger_repo: Snapshot persistence, or ``None``.
        scheduler: Daily summary scheduler, or ``None``.
        clock: Returns the current UTC ``datetime``.
    """

    def __init__(
        self,
        feed: MarketDataFeed,
        ledger: PositionLedger,
        symbol: str = "XAU/USD",
        timeframe: str = "5min",
        mode: EngineMode = EngineMode.STOP,
        lot_size: float = 0.1,
        sl_pct: float = 0.002,
        tp_pct: float = 0.004,
        market_hours_enabled: bool = True,
        notifier: Optional[TelegramBot] = None,
        ledger_repo: Optional[LedgerRepo] = None,
        scheduler: Optional[DailySummaryScheduler] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._feed = feed
        self._ledger = ledger
        self._symbol = symbol
        self._timeframe = timeframe
        self._mode = mode
        self.lot_size = lot_size
        self.sl_pct = sl_pct
        self.tp_pct = tp_pct
        self.market_hours_enabled = market_hours_enabled
        self.alerts_enabled = True
        self._notifier = notifier
        self._ledger_repo = ledger_repo
        self._scheduler = scheduler
        self._clock = clock

        self._source = feed.last_source
        self._candles: list[EnrichedCandle] = []
        self._sr_levels: list[SRLevel] = []
        self._signals: list[Signal] = []
        self._signal_history: list[Signal] = []
        self._aggregators: dict[tuple[str, str], CandleAggregator] = {}
        self._daily_signal_count = 0
        self._dirty = False
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._listeners: set[asyncio.Queue] = set()

    @classmethod
    def from_config(
        cls,
        config: Config,
        feed: MarketDataFeed,
        ledger: Optional[PositionLedger] = None,
        notifier: Optional[TelegramBot] = None,
        ledger_repo: Optional[LedgerRepo] = None,
    ) -> "LiveEngine":
        """Build an engine from application configuration."""
        return cls(
            feed=feed,
            ledger=ledger or PositionLedger(config.starting_balance),
            symbol=config.default_pair,
            timeframe=config.default_timeframe,
            mode=EngineMode(config.default_mode),
            lot_size=config.lot_size,
            sl_pct=config.stop_loss_pct,
            tp_pct=config.take_profit_pct,
            market_hours_enabled=config.enable_market_hours,
            notifier=notifier,
            ledger_repo=ledger_repo,
            scheduler=DailySummaryScheduler(config.daily_summary_hour),
        )

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def ledger(self) -> PositionLedger:
        return self._ledger

    @property
    def feed(self) -> MarketDataFeed:
        return self._feed

    @property
    def symbol(self) -> str:
        return self._symbol

    @property
    def timeframe(self) -> str:
        return self._timeframe

    @property
    def mode(self) -> EngineMode:
        return self._mode

    @property
    def source(self) -> str:
        """Where the current candle window came from."""
        return self._source

    @property
    def candles(self) -> list[EnrichedCandle]:
        return list(self._candles)

    @property
    def sr_levels(self) -> list[SRLevel]:
        return list(self._sr_levels)

    @property
    def signals(self) -> list[Signal]:
        """Signals of the current window (including historical ones)."""
        return list(self._signals)

    @property
    def signal_history(self) -> list[Signal]:
        """Signals first seen live, oldest first."""
        return list(self._signal_history)

    @property
    def daily_signal_count(self) -> int:
        return self._daily_signal_count

    @property
    def dirty(self) -> bool:
        """True when the ledger changed since the last persist."""
        return self._dirty

    @property
    def running(self) -> bool:
        return self._running

    def current_price(self, symbol: Optional[str] = None) -> Optional[float]:
        """Last tick price of *symbol*, or the last close of its window."""
        symbol = symbol or self._symbol
        price = self._ledger.last_price(symbol)
        if price is not None:
            return price
        if symbol == self._symbol and self._candles:
            return self._candles[-1].close
        return None

    def market_open(self, now: Optional[datetime] = None) -> bool:
        """Market gate used for trading; always open when hours are disabled."""
        if not self.market_hours_enabled:
            return True
        return is_market_open(now or self._clock())

    # ── Data loading ─────────────────────────────────────────────────────

    def process(self, candles: list[Candle], symbol: Optional[str] = None) -> list[Signal]:
        """Enrich *candles*, refresh levels and signals, return the signals."""
        enriched, levels = enrich_candles(candles)
        signals = generate_signals(enriched, levels, symbol or self._symbol)
        self._candles = enriched
        self._sr_levels = levels
        self._signals = signals
        return signals

    async def load(
        self,
        symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
        count: int = WINDOW_SIZE,
    ) -> list[EnrichedCandle]:
        """Fetch a fresh window for *symbol* / *timeframe* and process it.

        Historical signals are kept for display only; they never enter
        the live signal history or trigger alerts.
        """
        if symbol is not None:
            self._symbol = symbol
        if timeframe is not None:
            self._timeframe = timeframe

        source, candles = await self._feed.get_market_data(
            self._symbol, self._timeframe, count
        )
        self._source = source
        await self._feed.watch(self._symbol)
        self._aggregators.pop((self._symbol, self._timeframe), None)
        self.process(candles)
        logger.info(
            "Loaded %d %s %s candles from %s (%d signals)",
            len(candles), self._symbol, self._timeframe, source, len(self._signals),
        )
        return self.candles

    # ── Mode control ─────────────────────────────────────────────────────

    async def start(
        self,
        mode: EngineMode = EngineMode.SIMULATION,
        symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
    ) -> None:
        """Switch to *mode* after loading the requested window."""
        await self.load(symbol, timeframe)
        self._mode = mode
        logger.info("%s mode started: %s %s", mode.value, self._symbol, self._timeframe)

    def stop(self) -> None:
        """Stop auto-execution and ask the polling loop to exit."""
        self._mode = EngineMode.STOP
        self._running = False
        logger.info("Monitoring stopped")

    def reset(self, starting_balance: Optional[float] = None) -> None:
        """Clear the ledger, signal history and daily counter."""
        self._ledger.reset(starting_balance)
        self._signal_history = []
        self._daily_signal_count = 0
        self._dirty = True

    def reset_daily_count(self) -> None:
        self._daily_signal_count = 0

    # ── Tick processing ──────────────────────────────────────────────────

    def _aggregator_for(self, symbol: str) -> CandleAggregator:
        key = (symbol, self._timeframe)
        aggregator = self._aggregators.get(key)
        if aggregator is None:
            aggregator = CandleAggregator(timeframe_to_ms(self._timeframe))
            if symbol == self._symbol and self._candles:
                aggregator.load_history(
                    [
                        Candle(c.time, c.open, c.high, c.low, c.close, c.volume)
                        for c in self._candles
                    ]
                )
            self._aggregators[key] = aggregator
        return aggregator

    def handle_tick(self, tick: Tick, now: Optional[datetime] = None) -> TickResult:
        """Process one tick end to end.

        1. Fold the tick into the (symbol, timeframe) candle aggregator.
        2. Re-enrich the last ``WINDOW_SIZE`` candles and scan for signals.
        3. Keep signals at the last two indices not seen before.
        4. In SIMULATION mode, auto-open one position per new signal
           unless the symbol already has one (market hours permitting).
        5. Revalue the ledger and apply SL/TP.
        """
        now = now or self._clock()
        aggregator = self._aggregator_for(tick.symbol)
        aggregator.add_tick(tick)

        previous = self._signals
        signals = self.process(aggregator.get_candles(WINDOW_SIZE), tick.symbol)
        last = len(self._candles) - 1
        seen = {(s.time, s.side) for s in previous}
        seen.update((s.time, s.side) for s in self._signal_history)
        fresh = [
            s for s in signals
            if s.index >= last - 1 and (s.time, s.side) not in seen
        ]

        result = TickResult(
            tick=tick,
            candle=self._candles[-1] if self._candles else None,
            new_signals=fresh,
        )

        if fresh:
            self._signal_history.extend(fresh)
            self._daily_signal_count += len(fresh)
            for s in fresh:
                logger.info(
                    "Signal %s %s @ %s (confidence %.0f%%)",
                    s.side.value, tick.symbol, s.price, s.confidence,
                )

        if fresh and self._mode is EngineMode.SIMULATION:
            if not self.market_open(now):
                result.blocked_reason = "market_closed"
                logger.info("Auto-execution skipped: markets closed")
            else:
                for s in fresh:
                    if self._ledger.has_open_position(tick.symbol):
                        logger.info(
                            "Signal skipped: position already open for %s", tick.symbol
                        )
                        continue
                    position = self._ledger.open(
                        s.side, tick.symbol, s.price,
                        self.lot_size, self.sl_pct, self.tp_pct,
                    )
                    result.opened.append(position)
                    self._dirty = True

        result.closed = self._ledger.update_on_tick(tick.symbol, tick.price)
        if result.closed:
            self._dirty = True
        return result

    # ── Manual trading ───────────────────────────────────────────────────

    def validate_trade(self, symbol: str, lot_size: float) -> None:
        """Raise ``TradeRejected`` unless a manual trade may be opened."""
        if symbol not in SUPPORTED_SYMBOLS:
            raise TradeRejected(
                f"Unsupported pair {symbol}. Supported: {', '.join(SUPPORTED_SYMBOLS)}"
            )
        if not MIN_LOT <= lot_size <= MAX_LOT:
            raise TradeRejected(
                f"Lot size must be between {MIN_LOT} and {MAX_LOT}, got {lot_size}"
            )
        required = lot_size * MARGIN_PER_LOT
        if self._ledger.balance < required:
            raise TradeRejected(
                f"Insufficient balance: ${self._ledger.balance:.2f} "
                f"(need ${required:.2f})"
            )

    def open_manual(
        self,
        side: Side,
        symbol: str,
        lot_size: Optional[float] = None,
        price: Optional[float] = None,
    ) -> Position:
        """Validate and open a position at *price* or the current price."""
        lot_size = self.lot_size if lot_size is None else lot_size
        self.validate_trade(symbol, lot_size)
        if price is None:
            price = self.current_price(symbol)
        if price is None or price <= 0:
            raise TradeRejected(f"No price available for {symbol}")
        position = self._ledger.open(side, symbol, price, lot_size, self.sl_pct, self.tp_pct)
        self._dirty = True
        return position

    def close_manual(
        self, position_id: int, price: Optional[float] = None
    ) -> Optional[ClosedTrade]:
        """Close *position_id* at *price* or its symbol's current price."""
        position = self._ledger.get_position(position_id)
        if position is None:
            return None
        if price is None:
            price = self.current_price(position.symbol) or position.current_price
        trade = self._ledger.close(position_id, price)
        self._dirty = True
        return trade

    def close_matching(
        self, symbol: Optional[str] = None, side: Optional[Side] = None
    ) -> list[ClosedTrade]:
        """Close every open position filtered by *symbol* and *side*."""
        closed: list[ClosedTrade] = []
        for pos in self._ledger.open_positions:
            if symbol is not None and pos.symbol != symbol:
                continue
            if side is not None and pos.side is not side:
                continue
            trade = self.close_manual(pos.id)
            if trade is not None:
                closed.append(trade)
        return closed

    # ── Side effects ─────────────────────────────────────────────────────

    async def publish(self, result: TickResult) -> None:
        """Send alerts for a processed tick.  No-op without a notifier."""
        if self._notifier is None or not self._notifier.enabled:
            return
        if self.alerts_enabled:
            for s in result.new_signals:
                await self._notifier.send_message(
                    format_signal_alert(
                        s,
                        result.tick.symbol,
                        calculate_sl(s.price, s.side, self.sl_pct),
                        calculate_tp(s.price, s.side, self.tp_pct),
                    )
                )
        if result.blocked_reason == "market_closed":
            status = market_status(self._clock())
            await self._notifier.send_message(
                "⏸️ <b>Auto-Execution Blocked</b>\n\n"
                "Signal generated but markets are closed.\n"
                f"{'🔴 Weekend' if status.weekend else '🟡 Between sessions'}\n\n"
                f"Next Open: {status.next_event_time:%a %d %b %Y %H:%M UTC}"
            )
        for position in result.opened:
            await self.announce(position, "opened")
        for trade in result.closed:
            await self.announce(trade, trade_event(trade))

    async def announce(self, trade, event: str) -> None:
        """Send a trade update for a position or closed trade."""
        if self._notifier is None or not self._notifier.enabled:
            return
        await self._notifier.send_message(format_trade_update(trade, event))

    def persist(self) -> bool:
        """Save the ledger snapshot when dirty.  Returns True if saved."""
        if not self._dirty or self._ledger_repo is None:
            return False
        self._ledger_repo.save(self._ledger.to_snapshot())
        self._dirty = False
        return True

    async def maybe_send_daily_summary(self, now: Optional[datetime] = None) -> bool:
        """Send the daily summary when the scheduler says it is due."""
        if self._scheduler is None or not self._scheduler.due(now or self._clock()):
            return False
        if self._notifier is not None and self._notifier.enabled:
            await self._notifier.send_message(
                format_daily_summary(self._ledger.stats(), self._daily_signal_count)
            )
            logger.info("Daily summary sent")
        self.reset_daily_count()
        return True

    # ── Polling loop ─────────────────────────────────────────────────────

    async def run(
        self,
        poll_interval: float = 2.0,
        max_cycles: int = 0,
        collect: bool = True,
    ) -> list[TickResult]:
        """Pull ticks from the feed until stopped.

        Args:
            poll_interval: Seconds between ticks.
            max_cycles: Stop after this many ticks (0 = unlimited).
            collect: Keep every result for the return value.

        Returns:
            List of per-tick results (empty when *collect* is False).
        """
        self._running = True
        results: list[TickResult] = []
        cycle = 0

        while self._running:
            cycle += 1
            tick = await self._feed.next_tick(self._symbol, self.current_price())
            result = self.handle_tick(tick)
            if collect:
                results.append(result)
            self.broadcast(result)
            await self.publish(result)
            await self.maybe_send_daily_summary()
            self.persist()

            if max_cycles > 0 and cycle >= max_cycles:
                break
            await asyncio.sleep(poll_interval)

        self._running = False
        return results

    def start_loop(self, poll_interval: float = 2.0) -> asyncio.Task:
        """Run the polling loop in the background; at most one loop is alive.

        A loop still sleeping after ``stop()`` is resumed instead of
        being replaced.
        """
        self._running = True
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(poll_interval, collect=False))
            logger.info("Tick loop started (every %.1fs)", poll_interval)
        return self._task

    async def shutdown(self) -> None:
        """Stop the loop, wait for it to exit and persist the ledger."""
        self.stop()
        if self._task is not None:
            await self._task
            self._task = None
        self.persist()

    # ── Live listeners ───────────────────────────────────────────────────

    def subscribe(self) -> asyncio.Queue:
        """Register a listener that receives every ``TickResult`` of the loop."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=LISTENER_QUEUE_SIZE)
        self._listeners.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._listeners.discard(queue)

    def broadcast(self, result: TickResult) -> None:
        for queue in list(self._listeners):
            try:
                queue.put_nowait(result)
            except asyncio.QueueFull:
                logger.warning("Live listener is lagging; tick %d dropped", result.tick.timestamp)
