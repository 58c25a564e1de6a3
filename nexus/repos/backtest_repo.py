"""Backtest run repository — persists backtest summaries to SQLite."""

import math

from nexus.backtest.engine import BacktestResult
from nexus.repos.db import get_connection


class BacktestRepo:
    """Data access layer for the ``backtest_runs`` table.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def insert_run(
        self,
        symbol: str,
        timeframe: str,
        source: str,
        result: BacktestResult,
        candle_count: int = 0,
    ) -> int:
        """Persist a backtest run summary.  Returns the row id.

        An infinite profit factor is stored as NULL.
        """
        profit_factor = None if math.isinf(result.profit_factor) else result.profit_factor
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO backtest_runs
                    (symbol, timeframe, source, candle_count, signal_count,
                     total_trades, wins, losses, win_rate, total_pnl,
                     avg_win, avg_loss, profit_factor, max_drawdown,
                     start_balance, final_balance)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    symbol,
                    timeframe,
                    source,
                    candle_count,
                    len(result.signals),
                    result.total_trades,
                    result.wins,
                    result.losses,
                    result.win_rate,
                    result.total_pnl,
                    result.avg_win,
                    result.avg_loss,
                    profit_factor,
                    result.max_drawdown,
                    result.start_balance,
                    result.final_balance,
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def get_runs(self, limit: int = 10) -> list[dict]:
        """Return recent backtest run summaries, newest first."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM backtest_runs ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()
