"""Trade statistics — pure functions over realised P&L series.

Shared by the backtest replayer and the live position ledger so both
report identical numbers for identical trades.
"""

import math
from typing import Sequence


def profit_factor(pnls: Sequence[float]) -> float:
    """``|Σ wins / Σ losses|``.

    ``inf`` when there are wins but no losses, ``0.0`` when there are
    neither.  A trade with pnl ≥ 0 counts as a win.
    """
    gross_win = sum(p for p in pnls if p >= 0)
    gross_loss = sum(p for p in pnls if p < 0)
    if gross_loss != 0:
        return abs(gross_win / gross_loss)
    if any(p >= 0 for p in pnls):
        return math.inf
    return 0.0


def calculate_stats(pnls: Sequence[float]) -> dict:
    """Compute summary statistics from realised trade P&Ls.

    Returns:
        Dict with ``total_trades``, ``wins``, ``losses``, ``win_rate``
        (percent), ``total_pnl``, ``net_pnl``, ``best_trade``,
        ``worst_trade``, ``avg_win``, ``avg_loss``, ``profit_factor`` and
        ``max_drawdown`` (the worst single trade P&L).
    """
    if not pnls:
        return {
            "total_trades": 0,
            "wins": 0,
            "losses": 0,
            "win_rate": 0.0,
            "total_pnl": 0.0,
            "net_pnl": 0.0,
            "best_trade": 0.0,
            "worst_trade": 0.0,
            "avg_win": 0.0,
            "avg_loss": 0.0,
            "profit_factor": 0.0,
            "max_drawdown": 0.0,
        }

    winners = [p for p in pnls if p >= 0]
    losers = [p for p in pnls if p < 0]
    total_pnl = sum(pnls)
    worst = min(pnls)

    return {
        "total_trades": len(pnls),
        "wins": len(winners),
        "losses": len(losers),
        "win_rate": len(winners) / len(pnls) * 100,
        "total_pnl": total_pnl,
        "net_pnl": total_pnl,
        "best_trade": max(pnls),
        "worst_trade": worst,
        "avg_win": sum(winners) / len(winners) if winners else 0.0,
        "avg_loss": sum(losers) / len(losers) if losers else 0.0,
        "profit_factor": profit_factor(pnls),
        "max_drawdown": worst,
    }
