"""Daily summary scheduler — fires once per UTC day at a fixed time."""

from datetime import date, datetime
from typing import Optional


class DailySummaryScheduler:
    """Decides when the daily summary is due.

    The summary fires the first time :meth:`due` is polled at or after
    ``hour:minute`` UTC on a given date, and then not again that day.

    Args:
        hour: UTC hour (0–23).
        minute: UTC minute (0–59).
    """

    def __init__(self, hour: int = 23, minute: int = 0) -> None:
        if not 0 <= hour <= 23:
            raise ValueError(f"hour must be within 0–23, got {hour}")
        if not 0 <= minute <= 59:
            raise ValueError(f"minute must be within 0–59, got {minute}")
        self._hour = hour
        self._minute = minute
        self._last_sent: Optional[date] = None

    @property
    def last_sent(self) -> Optional[date]:
        return self._last_sent

    def due(self, now: datetime) -> bool:
        """True when the summary should be sent at *now*; marks it sent."""
        today = now.date()
        if self._last_sent == today:
            return False
        if (now.hour, now.minute) < (self._hour, self._minute):
            return False
        self._last_sent = today
        return True
