"""Chat command handler — turns ``/command args`` text into engine actions.

Replies are returned as text; the caller decides where to send them.
Trade validation happens in the engine and surfaces here as
``TradeRejected`` messages.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from nexus.engine import LiveEngine, TradeRejected
from nexus.notify.formatting import (
    format_performance,
    format_positions,
    format_signals,
    format_status,
    signed_money,
)
from nexus.notify.telegram import TelegramBot, extract_command
from nexus.strategy.market_hours import market_status, market_status_report
from nexus.strategy.models import (
    INSTRUMENTS,
    SUPPORTED_SYMBOLS,
    Side,
    normalize_symbol,
    price_digits,
)

logger = logging.getLogger("nexus.commands")

HELP_TEXT = "\n".join(
    [
        "🤖 <b>NEXUS COMMANDS</b>",
        "━" * 18,
        "",
        "<b>Info & Monitoring</b>",
        "/start - Welcome message & bot info",
        "/status - Balance & system status",
        "/marketstatus - Check if markets are open",
        "",
        "<b>Trading & Signals</b>",
        "/signals - Last 5 trade signals",
        "/positions - Open positions & live P&L",
        "/performance - Win rate & metrics",
        "",
        "<b>Remote Trading</b>",
        "/buy [PAIR] [LOT] - Open BUY position",
        "/sell [PAIR] [LOT] - Open SELL position",
        "/close [ID] - Close position by ID",
        "/closeall [PAIR] - Close all positions for pair",
        "/closetype [BUY|SELL] [PAIR] - Close by type",
        "/list - List all open positions with IDs",
        "/price [PAIR] - Get current market price",
        "",
        "<b>Settings</b>",
        "/pair - Show active pair",
        "/pair EUR/USD - Switch active pair",
        "/alerts - Toggle signal notifications",
        "/alerts on|off - Set alert state",
        "",
        "/help - This menu",
    ]
)


class CommandHandler:
    """Dispatches chat commands against a live engine.

    Args:
        engine: The session commands act on.
        clock: Returns the current UTC ``datetime``.
    """

    def __init__(
        self,
        engine: LiveEngine,
        clock=lambda: datetime.now(timezone.utc),
    ) -> None:
        self._engine = engine
        self._clock = clock
        self._commands = {
            "/start": self._start,
            "/help": self._help,
            "/status": self._status,
            "/signals": self._signals,
            "/positions": self._positions,
            "/list": self._list,
            "/performance": self._performance,
            "/marketstatus": self._marketstatus,
            "/pair": self._pair,
            "/alerts": self._alerts,
            "/buy": self._buy,
            "/sell": self._sell,
            "/close": self._close,
            "/closeall": self._closeall,
            "/closetype": self._closetype,
            "/price": self._price,
        }

    async def handle(self, text: str, now: Optional[datetime] = None) -> str:
        """Execute one command line and return the reply text."""
        parts = text.strip().split()
        if not parts:
            return "Type /help for available commands."
        # "/status@NexusBot" in group chats
        cmd = parts[0].lower().split("@", 1)[0]
        handler = self._commands.get(cmd)
        if handler is None:
            return f"Unknown command: {cmd}\nType /help for available commands."
        return await handler(parts[1:], now or self._clock())

    async def poll_once(self, bot: TelegramBot, offset: Optional[int] = None) -> Optional[int]:
        """Answer pending chat commands.  Returns the next update offset."""
        for update in await bot.get_updates(offset):
            offset = update["update_id"] + 1
            text = extract_command(update, bot.chat_id)
            if text is None:
                continue
            reply = await self.handle(text)
            await bot.send_message(reply)
        return offset

    # ── Info ─────────────────────────────────────────────────────────────

    async def _start(self, args: list[str], now: datetime) -> str:
        return "\n".join(
            [
                "🚀 <b>Welcome to NEXUS Trading Bot!</b>",
                "",
                "Your personal Forex & Commodities signal assistant.",
                "",
                "📊 <b>What I do:</b>",
                "  • Generate BUY/SELL signals using confluence analysis",
                "  • Track virtual trades with auto SL/TP",
                "  • Send you real-time alerts when signals fire",
                "  • Provide performance reports on demand",
                "",
                f"🎯 <b>Active Pair:</b> {self._engine.symbol}",
                f"🔔 <b>Alerts:</b> {'ON' if self._engine.alerts_enabled else 'OFF'}",
                "",
                "Type /help to see all commands.",
            ]
        )

    async def _help(self, args: list[str], now: datetime) -> str:
        return HELP_TEXT

    async def _status(self, args: list[str], now: datetime) -> str:
        engine = self._engine
        return format_status(
            engine.ledger.stats(),
            engine.mode.value,
            engine.symbol,
            engine.timeframe,
            engine.source,
            engine.market_open(now),
        )

    async def _signals(self, args: list[str], now: datetime) -> str:
        return format_signals(self._engine.signal_history, self._engine.symbol)

    async def _positions(self, args: list[str], now: datetime) -> str:
        return format_positions(self._engine.ledger.open_positions)

    async def _list(self, args: list[str], now: datetime) -> str:
        positions = sorted(
            self._engine.ledger.open_positions,
            key=lambda p: p.unrealized_pnl,
            reverse=True,
        )
        if not positions:
            return "No open positions."
        now_ms = int(now.timestamp() * 1000)
        lines = ["📊 <b>OPEN POSITIONS</b>", ""]
        for p in positions:
            digits = price_digits(p.symbol)
            minutes = max(0, (now_ms - p.opened_at) // 60_000)
            lines.append(
                f"<b>ID:</b> <code>{p.id}</code> | {p.side.value} {p.symbol}"
                f" | Entry: {p.entry_price:.{digits}f} → {p.current_price:.{digits}f}"
                f" | P&L: {signed_money(p.unrealized_pnl)} ({p.unrealized_pnl_pct:+.2f}%)"
                f" | Duration: {minutes}m"
            )
        lines += ["", "<i>Use /close [ID] to close a position</i>"]
        return "\n".join(lines)

    async def _performance(self, args: list[str], now: datetime) -> str:
        return format_performance(self._engine.ledger.stats())

    async def _marketstatus(self, args: list[str], now: datetime) -> str:
        return f"<b>📊 FOREX MARKET STATUS</b>\n\n<pre>{market_status_report(now)}</pre>"

    async def _price(self, args: list[str], now: datetime) -> str:
        symbol = normalize_symbol(args[0]) if args else self._engine.symbol
        if symbol not in SUPPORTED_SYMBOLS:
            return f"❌ Unknown pair: {symbol}\n\nSupported pairs:\n{', '.join(SUPPORTED_SYMBOLS)}"
        price = self._engine.current_price(symbol) or INSTRUMENTS[symbol].reference_price
        return f"💱 <b>{symbol}</b>\n\n<b>Price:</b> {price:.{price_digits(symbol)}f}"

    # ── Settings ─────────────────────────────────────────────────────────

    async def _pair(self, args: list[str], now: datetime) -> str:
        if not args:
            pair_list = "\n".join(
                f"{'▶ ' if s == self._engine.symbol else '  '}{s}" for s in SUPPORTED_SYMBOLS
            )
            return "\n".join(
                [
                    f"💱 <b>ACTIVE PAIR:</b> {self._engine.symbol}",
                    "",
                    "<b>Available pairs:</b>",
                    f"<pre>{pair_list}</pre>",
                    "",
                    "<i>Switch with: /pair EUR/USD</i>",
                ]
            )
        symbol = normalize_symbol(args[0])
        if symbol not in SUPPORTED_SYMBOLS:
            return f"❌ Unknown pair: {symbol}\nSupported: {', '.join(SUPPORTED_SYMBOLS)}"
        await self._engine.load(symbol=symbol)
        return f"✅ Active pair switched to <b>{symbol}</b>"

    async def _alerts(self, args: list[str], now: datetime) -> str:
        engine = self._engine
        if not args:
            engine.alerts_enabled = not engine.alerts_enabled
        elif args[0].lower() == "on":
            engine.alerts_enabled = True
        elif args[0].lower() == "off":
            engine.alerts_enabled = False
        state = "ON" if engine.alerts_enabled else "OFF"
        emoji = "🔔" if engine.alerts_enabled else "🔕"
        return f"{emoji} Signal alerts are now <b>{state}</b>"

    # ── Remote trading ───────────────────────────────────────────────────

    def _market_closed_reply(self, now: datetime) -> Optional[str]:
        if self._engine.market_open(now):
            return None
        status = market_status(now)
        reason = "Weekend" if status.weekend else "Between sessions"
        return (
            "⏸️ <b>Markets Closed</b>\n\n"
            f"Cannot execute trade: {reason}\n\n"
            f"Next Open: {status.next_event_time:%a %d %b %Y %H:%M UTC}"
        )

    async def _open(self, side: Side, args: list[str], now: datetime) -> str:
        if len(args) < 2:
            example = "EUR/USD" if side is Side.BUY else "GBP/USD"
            return (
                f"Usage: /{side.value.lower()} [PAIR] [LOTSIZE]\n"
                f"Example: /{side.value.lower()} {example} 0.1"
            )
        symbol = normalize_symbol(args[0])
        try:
            lot_size = float(args[1])
        except ValueError:
            return f"❌ Invalid lot size: {args[1]}"

        closed = self._market_closed_reply(now)
        if closed is not None:
            return closed

        price = self._engine.current_price(symbol)
        if price is None and symbol in INSTRUMENTS:
            price = INSTRUMENTS[symbol].reference_price
        try:
            position = self._engine.open_manual(side, symbol, lot_size, price)
        except TradeRejected as exc:
            return f"❌ {exc}"

        await self._engine.announce(position, "opened")
        digits = price_digits(symbol)
        return "\n".join(
            [
                f"✅ <b>{side.value} Order Placed</b>",
                "",
                f"<b>{symbol}</b>",
                f"Entry: {position.entry_price:.{digits}f}",
                f"Lot Size: {lot_size}",
                f"SL: {position.stop_loss:.{digits}f} | TP: {position.take_profit:.{digits}f}",
                "",
                f"ID: <code>{position.id}</code>",
                f"Balance: ${self._engine.ledger.balance:.2f}",
            ]
        )

    async def _buy(self, args: list[str], now: datetime) -> str:
        return await self._open(Side.BUY, args, now)

    async def _sell(self, args: list[str], now: datetime) -> str:
        return await self._open(Side.SELL, args, now)

    async def _close(self, args: list[str], now: datetime) -> str:
        if not args:
            return "Usage: /close [POSITION_ID]\nExample: /close 3\n\nUse /list to see all position IDs."
        try:
            position_id = int(args[0])
        except ValueError:
            return f"❌ Invalid position id: {args[0]}"

        trade = self._engine.close_manual(position_id)
        if trade is None:
            return f"❌ Position #{position_id} not found.\n\nUse /list to see open positions."

        digits = price_digits(trade.symbol)
        return "\n".join(
            [
                f"{'✅' if trade.realized_pnl >= 0 else '❌'} <b>Position Closed</b>",
                "",
                f"<b>{trade.side.value} {trade.symbol}</b>",
                f"Entry: {trade.entry_price:.{digits}f}",
                f"Exit: {trade.exit_price:.{digits}f}",
                "",
                f"P&L: {signed_money(trade.realized_pnl)} ({trade.realized_pnl_pct:.2f}%)",
                f"Result: {trade.result.value.upper()}",
                f"Reason: {trade.exit_reason.value}",
                "",
                f"Balance: ${trade.balance_after_close:.2f}",
            ]
        )

    def _bulk_close_reply(self, label: str, symbol: str, side: Optional[Side]) -> str:
        closed = self._engine.close_matching(symbol, side)
        if not closed:
            kind = f"{side.value} " if side else ""
            return f"No open {kind}positions found for {symbol}"
        total = sum(t.realized_pnl for t in closed)
        return "\n".join(
            [
                f"{'✅' if total >= 0 else '❌'} <b>Closed All {label} Positions</b>",
                "",
                f"Positions Closed: {len(closed)}",
                f"Total P&L: {signed_money(total)}",
                f"Balance: ${self._engine.ledger.balance:.2f}",
            ]
        )

    async def _closeall(self, args: list[str], now: datetime) -> str:
        if not args:
            return (
                "Usage: /closeall [PAIR]\nExample: /closeall EUR/USD\n\n"
                "Closes all positions for the specified pair."
            )
        symbol = normalize_symbol(args[0])
        return self._bulk_close_reply(symbol, symbol, None)

    async def _closetype(self, args: list[str], now: datetime) -> str:
        if len(args) < 2:
            return (
                "Usage: /closetype [BUY|SELL] [PAIR]\nExample: /closetype BUY EUR/USD\n\n"
                "Closes all BUY or SELL positions for the specified pair."
            )
        kind = args[0].upper()
        if kind not in (Side.BUY.value, Side.SELL.value):
            return "❌ Type must be BUY or SELL"
        symbol = normalize_symbol(args[1])
        side = Side(kind)
        return self._bulk_close_reply(f"{kind} {symbol}", symbol, side)
