"""Ledger repository — persists ledger snapshots to SQLite.

A save replaces the whole stored state in one transaction, so a crash
never leaves positions from one snapshot next to history from another.
"""

from typing import Optional

from nexus.repos.db import get_connection

_POSITION_COLUMNS = (
    "id", "side", "symbol", "entry_price", "lot_size", "stop_loss",
    "take_profit", "current_price", "unrealized_pnl", "unrealized_pnl_pct",
    "opened_at",
)

_TRADE_COLUMNS = (
    "id", "side", "symbol", "entry_price", "lot_size", "stop_loss",
    "take_profit", "opened_at", "exit_price", "exit_reason", "realized_pnl",
    "realized_pnl_pct", "result", "balance_after_close", "closed_at",
)


def _insert_sql(table: str, columns: tuple[str, ...]) -> str:
    placeholders = ", ".join("?" for _ in columns)
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


class LedgerRepo:
    """Data access layer for ``ledger_state``, ``positions`` and ``closed_trades``.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def save(self, snapshot: dict) -> None:
        """Replace the stored ledger with *snapshot* (``to_snapshot`` output)."""
        conn = get_connection(self._db_path)
        try:
            with conn:
                conn.execute("DELETE FROM positions")
                conn.execute("DELETE FROM closed_trades")
                conn.execute(
                    """
                    INSERT OR REPLACE INTO ledger_state
                        (id, balance, starting_balance, next_id, updated_at)
                    VALUES (1, ?, ?, ?, datetime('now'))
                    """,
                    (
                        snapshot["balance"],
                        snapshot["starting_balance"],
                        snapshot["next_id"],
                    ),
                )
                conn.executemany(
                    _insert_sql("positions", _POSITION_COLUMNS),
                    [
                        tuple(p[c] for c in _POSITION_COLUMNS)
                        for p in snapshot["open_positions"]
                    ],
                )
                conn.executemany(
                    _insert_sql("closed_trades", _TRADE_COLUMNS),
                    [
                        tuple(t[c] for c in _TRADE_COLUMNS)
                        for t in snapshot["trade_history"]
                    ],
                )
        finally:
            conn.close()

    def load(self) -> Optional[dict]:
        """Return the stored snapshot, or ``None`` if nothing was saved yet."""
        conn = get_connection(self._db_path)
        try:
            state = conn.execute(
                "SELECT balance, starting_balance, next_id FROM ledger_state WHERE id = 1"
            ).fetchone()
            if state is None:
                return None
            positions = conn.execute(
                f"SELECT {', '.join(_POSITION_COLUMNS)} FROM positions ORDER BY id"
            ).fetchall()
            trades = conn.execute(
                f"SELECT {', '.join(_TRADE_COLUMNS)} FROM closed_trades ORDER BY id"
            ).fetchall()
            return {
                "balance": state["balance"],
                "starting_balance": state["starting_balance"],
                "next_id": state["next_id"],
                "open_positions": [dict(r) for r in positions],
                "trade_history": [dict(r) for r in trades],
            }
        finally:
            conn.close()
