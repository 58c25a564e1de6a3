"""Backtest replayer — walks historical candles with one synthetic position.

Signals come from the same ``enrich_candles`` → ``generate_signals`` path
the live engine uses, computed once over the whole window.  The live
ledger is never touched.
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence

from nexus.backtest.stats import calculate_stats
from nexus.ledger.models import ClosedTrade, ExitReason, TradeResult
from nexus.risk.sl_tp import (
    calculate_pnl,
    calculate_pnl_pct,
    calculate_sl,
    calculate_tp,
)
from nexus.strategy.indicators import enrich_candles
from nexus.strategy.models import Candle, Side, Signal, contract_size
from nexus.strategy.signals import generate_signals


@dataclass(frozen=True)
class BacktestParams:
    stop_loss_pct: float = 0.002
    take_profit_pct: float = 0.004
    lot_size: float = 0.1
    starting_balance: float = 10_000.0


@dataclass
class BacktestResult:
    """Trades, signals and summary statistics of one replay."""

    symbol: str
    start_balance: float
    final_balance: float
    trades: list[ClosedTrade] = field(default_factory=list)
    signals: list[Signal] = field(default_factory=list)
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    equity_curve: list[float] = field(default_factory=list)

    @property
    def total_trades(self) -> int:
        return len(self.trades)



@dataclass(frozen=True)
class _OpenTrade:
    """The single synthetic position held during a replay."""

    id: int
    side: Side
    entry_price: float
    stop_loss: float
    take_profit: float
    opened_at: int  # epoch ms of the entry bar

    @classmethod
    def from_signal(
        cls, trade_id: int, signal: Signal, params: BacktestParams, opened_at: int
    ) -> "_OpenTrade":
        return cls(
            id=trade_id,
            side=signal.side,
            entry_price=signal.price,
            stop_loss=calculate_sl(signal.price, signal.side, params.stop_loss_pct),
            take_profit=calculate_tp(signal.price, signal.side, params.take_profit_pct),
            opened_at=opened_at,
        )


def _check_exit(
    trade: _OpenTrade, candle: Candle
) -> Optional[tuple[float, ExitReason]]:
    """Return ``(exit_price, reason)`` when *candle* reaches SL or TP.

    When both are reached inside one bar, SL is assumed first.
    """
    if trade.side is Side.BUY:
        if candle.low <= trade.stop_loss:
            return trade.stop_loss, ExitReason.STOP_LOSS
        if candle.high >= trade.take_profit:
            return trade.take_profit, ExitReason.TAKE_PROFIT
    else:
        if candle.high >= trade.stop_loss:
            return trade.stop_loss, ExitReason.STOP_LOSS
        if candle.low <= trade.take_profit:
            return trade.take_profit, ExitReason.TAKE_PROFIT
    return None


def run_backtest(
    candles: Sequence[Candle],
    params: BacktestParams = BacktestParams(),
    symbol: str = "EUR/USD",
) -> BacktestResult:
    """Replay *candles* and simulate every signal the live path would emit.

    At most one position is open at a time.  A position still open at
    the end of the data is not realised and does not appear in the
    results.

    Args:
        candles: Chronological candles.
        params: SL/TP percentages, lot size and starting balance.
        symbol: Instrument, used for contract size and price formatting.

    Returns:
        A ``BacktestResult`` with trades, signals and statistics.
    """
    result = BacktestResult(
        symbol=symbol,
        start_balance=params.starting_balance,
        final_balance=params.starting_balance,
        equity_curve=[params.starting_balance],
    )
    if not candles:
        return result

    enriched, levels = enrich_candles(candles)
    signals = generate_signals(enriched, levels, symbol)
    result.signals = signals
    signals_by_index = {s.index: s for s in signals}

    units = contract_size(symbol)
    balance = params.starting_balance
    open_trade: Optional[_OpenTrade] = None
    next_id = 1

    for i, candle in enumerate(candles):
        # 1 — Check the open trade for SL / TP exit
        if open_trade is not None:
            hit = _check_exit(open_trade, candle)
            if hit is not None:
                exit_price, reason = hit
                side = open_trade.side
                entry = open_trade.entry_price
                pnl = calculate_pnl(side, entry, exit_price, params.lot_size, units)
                balance += pnl
                result.trades.append(
                    ClosedTrade(
                        id=open_trade.id,
                        side=side,
                        symbol=symbol,
                        entry_price=entry,
                        lot_size=params.lot_size,
                        stop_loss=open_trade.stop_loss,
                        take_profit=open_trade.take_profit,
                        opened_at=open_trade.opened_at,
                        exit_price=exit_price,
                        exit_reason=reason,
                        realized_pnl=pnl,
                        realized_pnl_pct=calculate_pnl_pct(side, entry, exit_price),
                        result=TradeResult.WIN if pnl >= 0 else TradeResult.LOSS,
                        balance_after_close=balance,
                        closed_at=candle.time,
                    )
                )
                result.equity_curve.append(balance)
                open_trade = None

        # 2 — Enter only when flat and a signal fired on this bar
        if open_trade is not None:
            continue
        signal = signals_by_index.get(i)
        if signal is None:
            continue

        open_trade = _OpenTrade.from_signal(next_id, signal, params, candle.time)
        next_id += 1

    stats = calculate_stats([t.realized_pnl for t in result.trades])
    result.final_balance = balance
    result.wins = stats["wins"]
    result.losses = stats["losses"]
    result.total_pnl = stats["total_pnl"]
    result.win_rate = stats["win_rate"]
    result.avg_win = stats["avg_win"]
    result.avg_loss = stats["avg_loss"]
    result.profit_factor = stats["profit_factor"]
    result.max_drawdown = stats["max_drawdown"]
    return result
