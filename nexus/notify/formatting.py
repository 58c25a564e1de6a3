"""Message formatters — render signals, trades and ledger stats as chat text.

All functions are pure and return Telegram-flavoured HTML.
"""

import math
from datetime import datetime, timezone
from typing import Optional, Sequence, Union

from nexus.ledger.models import ClosedTrade, ExitReason, Position, TradeResult
from nexus.strategy.models import Side, Signal, price_digits

_RULE = "━" * 18

TRADE_EVENTS = ("opened", "sl_hit", "tp_hit", "closed_win", "closed_loss")

_EVENT_EMOJI = {
    "opened": "📖",
    "closed_win": "✅",
    "closed_loss": "❌",
    "sl_hit": "🛑",
    "tp_hit": "🎯",
}


def signed_money(value: float) -> str:
    """``+$12.50`` / ``-$3.20``."""
    sign = "+" if value >= 0 else "-"
    return f"{sign}${abs(value):.2f}"


def format_profit_factor(value: float) -> str:
    return "∞" if math.isinf(value) else f"{value:.2f}"


def _hhmm(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).strftime("%H:%M UTC")


def trade_event(trade: ClosedTrade) -> str:
    """Event name used in trade update messages for a closed trade."""
    if trade.exit_reason is ExitReason.STOP_LOSS:
        return "sl_hit"
    if trade.exit_reason is ExitReason.TAKE_PROFIT:
        return "tp_hit"
    return "closed_win" if trade.result is TradeResult.WIN else "closed_loss"


def format_signal_alert(
    signal: Signal,
    symbol: str,
    stop_loss: Optional[float] = None,
    take_profit: Optional[float] = None,
) -> str:
    digits = price_digits(symbol)
    emoji, arrow = ("🟢", "⬆️") if signal.side is Side.BUY else ("🔴", "⬇️")
    sl = f"{stop_loss:.{digits}f}" if stop_loss is not None else "—"
    tp = f"{take_profit:.{digits}f}" if take_profit is not None else "—"
    lines = [
        f"{emoji} <b>NEXUS SIGNAL: {signal.side.value}</b> {arrow}",
        "",
        f"<b>Pair:</b>    {symbol}",
        f"<b>Price:</b>   {signal.price:.{digits}f}",
        f"<b>Confidence:</b> {signal.confidence:.0f}%",
        f"<b>Time:</b>    {_hhmm(signal.time)}",
        "",
        "<b>Confluence Reasons:</b>",
        *[f"  ✓ {r}" for r in signal.reasons],
        "",
        "<b>Indicators:</b>",
        f"  RSI: {signal.rsi:.1f}",
        f"  MACD: {signal.macd:.6f}",
        "",
        f"<i>SL: {sl} | TP: {tp}</i>",
    ]
    return "\n".join(lines)


def format_trade_update(trade: Union[Position, ClosedTrade], event: str) -> str:
    """Trade lifecycle message; *event* is one of ``TRADE_EVENTS``."""
    digits = price_digits(trade.symbol)
    emoji = _EVENT_EMOJI.get(event, "📊")
    lines = [
        f"{emoji} <b>TRADE {event.upper().replace('_', ' ', 1)}</b>",
        "",
        f"<b>#{trade.id} {trade.side.value} {trade.symbol}</b>",
        f"Entry: {trade.entry_price:.{digits}f}",
    ]
    if isinstance(trade, ClosedTrade):
        lines.append(f"Exit:  {trade.exit_price:.{digits}f}")
        lines.append(
            f"P&L:   {signed_money(trade.realized_pnl)} ({trade.realized_pnl_pct:.2f}%)"
        )
        lines.append(f"Balance: ${trade.balance_after_close:.2f}")
    else:
        lines.append(f"Lot:   {trade.lot_size}")
        lines.append(
            f"SL: {trade.stop_loss:.{digits}f} | TP: {trade.take_profit:.{digits}f}"
        )
    return "\n".join(lines)


def format_status(
    stats: dict,
    mode: str,
    symbol: str,
    timeframe: str,
    source: str,
    market_open: bool,
) -> str:
    return "\n".join(
        [
            "<b>NEXUS STATUS</b>",
            "",
            f"Mode: {mode}",
            f"Pair: {symbol} ({timeframe})",
            f"Data: {source}",
            f"Market: {'🟢 OPEN' if market_open else '🔴 CLOSED'}",
            "",
            f"Balance: ${stats['balance']:.2f}",
            f"Open Positions: {stats['open_positions']}",
            f"Total Trades: {stats['total_trades']}",
            f"Win Rate: {stats['win_rate']:.1f}%",
            f"Net P&L: {signed_money(stats['total_pnl'])}",
        ]
    )


def format_positions(positions: Sequence[Position]) -> str:
    if not positions:
        return "No open positions."
    lines = ["<b>OPEN POSITIONS</b>", ""]
    for p in positions:
        digits = price_digits(p.symbol)
        lines.append(
            f"#{p.id} {p.side.value} {p.symbol} @ {p.entry_price:.{digits}f}"
            f" | Lot: {p.lot_size}"
            f" | P&L: {signed_money(p.unrealized_pnl)} ({p.unrealized_pnl_pct:.2f}%)"
        )
    return "\n".join(lines)


def format_performance(stats: dict) -> str:
    return "\n".join(
        [
            "<b>PERFORMANCE</b>",
            "",
            f"Trades: {stats['total_trades']}",
            f"Wins: {stats['wins']} | Losses: {stats['losses']}",
            f"Win Rate: {stats['win_rate']:.1f}%",
            f"Profit Factor: {format_profit_factor(stats['profit_factor'])}",
            f"Best: {signed_money(stats['best_trade'])}",
            f"Worst: {signed_money(stats['worst_trade'])}",
            f"Net P&L: {signed_money(stats['total_pnl'])}",
            f"Balance: ${stats['balance']:.2f}",
        ]
    )


def format_signals(signals: Sequence[Signal], symbol: str, limit: int = 5) -> str:
    if not signals:
        return "No signals yet."
    digits = price_digits(symbol)
    lines = [f"<b>LAST {min(limit, len(signals))} SIGNALS</b>", ""]
    for s in list(signals)[-limit:]:
        lines.append(
            f"{_hhmm(s.time)} {s.side.value} @ {s.price:.{digits}f}"
            f" ({s.confidence:.0f}%)"
        )
    return "\n".join(lines)


def format_daily_summary(stats: dict, signals_generated: int) -> str:
    emoji = "📈" if stats["total_pnl"] >= 0 else "📉"
    return "\n".join(
        [
            f"{emoji} <b>NEXUS DAILY SUMMARY</b>",
            _RULE,
            "",
            f"<b>Net P&L:</b>     {signed_money(stats['total_pnl'])}",
            f"<b>Trades:</b>      {stats['total_trades']}",
            f"<b>Win Rate:</b>    {stats['win_rate']:.1f}%",
            f"<b>Wins/Losses:</b> {stats['wins']}/{stats['losses']}",
            f"<b>Best Trade:</b>  {signed_money(stats['best_trade'])}",
            f"<b>Worst Trade:</b> {signed_money(stats['worst_trade'])}",
            "",
            f"<b>Balance:</b>     ${stats['balance']:.2f}",
            f"<b>Open Positions:</b> {stats['open_positions']}",
            "",
            f"<i>{signals_generated} signals generated today</i>",
        ]
    )
