"""Stop-loss, take-profit and P&L math — pure functions, no I/O.

Percentage-based levels are fixed at entry:

    BUY   SL = entry × (1 − sl_pct)   TP = entry × (1 + tp_pct)
    SELL  SL = entry × (1 + sl_pct)   TP = entry × (1 − tp_pct)

P&L is quoted in account currency: ``delta × lot_size × contract_size``.
"""

from nexus.strategy.models import Side


def calculate_sl(entry_price: float, side: Side, sl_pct: float) -> float:
    """Stop-loss price for a position opened at *entry_price*."""
    if side is Side.BUY:
        return entry_price * (1 - sl_pct)
    return entry_price * (1 + sl_pct)


def calculate_tp(entry_price: float, side: Side, tp_pct: float) -> float:
    """Take-profit price for a position opened at *entry_price*."""
    if side is Side.BUY:
        return entry_price * (1 + tp_pct)
    return entry_price * (1 - tp_pct)


def calculate_pnl(
    side: Side,
    entry_price: float,
    price: float,
    lot_size: float,
    contract_size: int,
) -> float:
    """Profit or loss of a position valued at *price*.

    Args:
        side: Position direction.
        entry_price: Fill price at open.
        price: Current or exit price.
        lot_size: Lots held (e.g. 0.1).
        contract_size: Units per lot for the instrument.
    """
    delta = price - entry_price if side is Side.BUY else entry_price - price
    return delta * lot_size * contract_size


def calculate_pnl_pct(side: Side, entry_price: float, price: float) -> float:
    """Relative price move in the position's favour, in percent."""
    delta = price - entry_price if side is Side.BUY else entry_price - price
    return delta / entry_price * 100


def stop_loss_hit(side: Side, stop_loss: float, price: float) -> bool:
    if side is Side.BUY:
        return price <= stop_loss
    return price >= stop_loss


def take_profit_hit(side: Side, take_profit: float, price: float) -> bool:
    if side is Side.BUY:
        return price >= take_profit
    return price <= take_profit
