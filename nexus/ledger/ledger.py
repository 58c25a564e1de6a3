"""Position ledger — virtual positions, SL/TP state machine, balance.

The ledger performs no validation: the orchestration layer decides
whether a trade may be opened.  Every close updates the balance exactly
once and appends exactly one ``ClosedTrade`` to the history.
"""

import logging
import time
from dataclasses import asdict
from enum import Enum
from typing import Callable, Optional

from nexus.backtest.stats import calculate_stats
from nexus.ledger.models import ClosedTrade, ExitReason, Position, TradeResult
from nexus.risk.sl_tp import (
    calculate_pnl,
    calculate_pnl_pct,
    calculate_sl,
    calculate_tp,
    stop_loss_hit,
    take_profit_hit,
)
from nexus.strategy.models import Side, contract_size

logger = logging.getLogger("nexus.ledger")


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class PositionLedger:
    """Holds open positions, closed-trade history and the running balance.

    Args:
        starting_balance: Initial virtual balance.
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        starting_balance: float = 10_000.0,
        clock: Callable[[], int] = _epoch_ms,
    ) -> None:
        self._clock = clock
        self._starting_balance = starting_balance
        self._balance = starting_balance
        self._open: list[Position] = []
        self._history: list[ClosedTrade] = []
        self._next_id = 1
        self._last_prices: dict[str, float] = {}

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def starting_balance(self) -> float:
        return self._starting_balance

    @property
    def open_positions(self) -> list[Position]:
        """Open positions in opening order (a copy of the list)."""
        return list(self._open)

    @property
    def trade_history(self) -> list[ClosedTrade]:
        return list(self._history)

    def last_price(self, symbol: str) -> Optional[float]:
        """Most recent tick price seen for *symbol*, if any."""
        return self._last_prices.get(symbol)

    def get_position(self, position_id: int) -> Optional[Position]:
        return next((p for p in self._open if p.id == position_id), None)

    def has_open_position(self, symbol: str) -> bool:
        return any(p.symbol == symbol for p in self._open)

    # ── Mutation ─────────────────────────────────────────────────────────

    def open(
        self,
        side: Side,
        symbol: str,
        price: float,
        lot_size: float = 0.1,
        sl_pct: float = 0.002,
        tp_pct: float = 0.004,
    ) -> Position:
        """Open a position at *price* with percentage SL/TP."""
        position = Position(
            id=self._next_id,
            side=side,
            symbol=symbol,
            entry_price=price,
            lot_size=lot_size,
            stop_loss=calculate_sl(price, side, sl_pct),
            take_profit=calculate_tp(price, side, tp_pct),
            current_price=price,
            opened_at=self._clock(),
        )
        self._next_id += 1
        self._open.append(position)
        logger.info(
            "Opened #%d %s %s @ %s lot=%s (SL=%s TP=%s)",
            position.id, side.value, symbol, price, lot_size,
            position.stop_loss, position.take_profit,
        )
        return position

    def update_on_tick(self, symbol: str, price: float) -> list[ClosedTrade]:
        """Revalue every open position and close those whose SL/TP is hit.

        Positions of other symbols are revalued at their own last-known
        price (or left at their current price) but never closed here.
        Stop-loss is evaluated before take-profit; triggered positions
        close at *price*.

        Returns:
            Trades closed by this tick, in opening order.
        """
        self._last_prices[symbol] = price
        closed: list[ClosedTrade] = []
        still_open: list[Position] = []

        for pos in self._open:
            mark = price if pos.symbol == symbol else self._last_prices.get(
                pos.symbol, pos.current_price
            )
            self._revalue(pos, mark)

            if pos.symbol != symbol:
                still_open.append(pos)
            elif stop_loss_hit(pos.side, pos.stop_loss, price):
                closed.append(self._close(pos, price, ExitReason.STOP_LOSS))
            elif take_profit_hit(pos.side, pos.take_profit, price):
                closed.append(self._close(pos, price, ExitReason.TAKE_PROFIT))
            else:
                still_open.append(pos)

        self._open = still_open
        return closed

    def close(self, position_id: int, price: float) -> Optional[ClosedTrade]:
        """Manually close an open position.  ``None`` when *position_id* is not open."""
        pos = self.get_position(position_id)
        if pos is None:
            return None
        self._open.remove(pos)
        return self._close(pos, price, ExitReason.MANUAL_CLOSE)

    def reset(self, starting_balance: Optional[float] = None) -> None:
        """Drop all positions and history and restart ids from 1."""
        if starting_balance is not None:
            self._starting_balance = starting_balance
        self._balance = self._starting_balance
        self._open = []
        self._history = []
        self._next_id = 1
        self._last_prices = {}
        logger.info("Ledger reset (balance=%.2f)", self._balance)

    # ── Statistics ───────────────────────────────────────────────────────

    def stats(self) -> dict:
        """Performance summary over the closed-trade history."""
        result = calculate_stats([t.realized_pnl for t in self._history])
        result["balance"] = self._balance
        result["start_balance"] = self._starting_balance
        result["open_positions"] = len(self._open)
        return result

    # ── Snapshot ─────────────────────────────────────────────────────────

    def to_snapshot(self) -> dict:
        """Plain-dict state suitable for JSON or SQLite persistence."""
        return {
            "balance": self._balance,
            "starting_balance": self._starting_balance,
            "next_id": self._next_id,
            "open_positions": [_plain(asdict(p)) for p in self._open],
            "trade_history": [_plain(asdict(t)) for t in self._history],
        }

    @classmethod
    def from_snapshot(
        cls,
        snapshot: dict,
        clock: Callable[[], int] = _epoch_ms,
    ) -> "PositionLedger":
        """Rebuild a ledger from :meth:`to_snapshot` output.

        The next id never reuses a known id even if the stored counter
        is stale.
        """
        ledger = cls(float(snapshot["starting_balance"]), clock=clock)
        ledger._balance = float(snapshot["balance"])
        ledger._open = [
            Position(**{**p, "side": Side(p["side"])})
            for p in snapshot.get("open_positions", [])
        ]
        ledger._history = [
            ClosedTrade(
                **{
                    **t,
                    "side": Side(t["side"]),
                    "exit_reason": ExitReason(t["exit_reason"]),
                    "result": TradeResult(t["result"]),
                }
            )
            for t in snapshot.get("trade_history", [])
        ]
        known_ids = [p.id for p in ledger._open] + [t.id for t in ledger._history]
        ledger._next_id = max(
            int(snapshot.get("next_id", 1)), max(known_ids, default=0) + 1
        )
        for pos in ledger._open:
            ledger._last_prices.setdefault(pos.symbol, pos.current_price)
        return ledger

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _revalue(pos: Position, price: float) -> None:
        pos.current_price = price
        pos.unrealized_pnl = calculate_pnl(
            pos.side, pos.entry_price, price, pos.lot_size, contract_size(pos.symbol)
        )
        pos.unrealized_pnl_pct = calculate_pnl_pct(pos.side, pos.entry_price, price)

    def _close(self, pos: Position, price: float, reason: ExitReason) -> ClosedTrade:
        pnl = calculate_pnl(
            pos.side, pos.entry_price, price, pos.lot_size, contract_size(pos.symbol)
        )
        self._balance += pnl
        trade = ClosedTrade(
            id=pos.id,
            side=pos.side,
            symbol=pos.symbol,
            entry_price=pos.entry_price,
            lot_size=pos.lot_size,
            stop_loss=pos.stop_loss,
            take_profit=pos.take_profit,
            opened_at=pos.opened_at,
            exit_price=price,
            exit_reason=reason,
            realized_pnl=pnl,
            realized_pnl_pct=calculate_pnl_pct(pos.side, pos.entry_price, price),
            result=TradeResult.WIN if pnl >= 0 else TradeResult.LOSS,
            balance_after_close=self._balance,
            closed_at=self._clock(),
        )
        self._history.append(trade)
        logger.info(
            "Closed #%d %s %s @ %s (%s) pnl=%.2f balance=%.2f",
            trade.id, trade.side.value, trade.symbol, price, reason.value,
            pnl, self._balance,
        )
        return trade


def _plain(record: dict) -> dict:
    """Replace enum members by their values."""
    return {k: v.value if isinstance(v, Enum) else v for k, v in record.items()}
