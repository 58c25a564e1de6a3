"""Ledger data models — open positions and closed-trade records."""

from dataclasses import dataclass
from enum import Enum

from nexus.strategy.models import Side


class ExitReason(str, Enum):
    """Why a position was closed."""

    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    MANUAL_CLOSE = "manual_close"


class TradeResult(str, Enum):
    WIN = "win"
    LOSS = "loss"


@dataclass
class Position:
    """An open virtual position.  Owned and mutated only by the ledger.

    ``stop_loss`` and ``take_profit`` are fixed at open time.
    """

    id: int
    side: Side
    symbol: str
    entry_price: float
    lot_size: float
    stop_loss: float
    take_profit: float
    current_price: float
    opened_at: int  # epoch ms
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0


@dataclass(frozen=True)
class ClosedTrade:
    """Immutable record of a closed position."""

    id: int
    side: Side
    symbol: str
    entry_price: float
    lot_size: float
    stop_loss: float
    take_profit: float
    opened_at: int
    exit_price: float
    exit_reason: ExitReason
    realized_pnl: float
    realized_pnl_pct: float
    result: TradeResult
    balance_after_close: float
    closed_at: int
