"""Forex market hours — pure functions over a UTC ``datetime``.

Sessions (UTC):
    Sydney   22:00–07:00 (wraps midnight)
    Tokyo    00:00–09:00
    London   08:00–17:00
    New York 13:00–22:00

The market is closed from Friday 22:00 UTC until Sunday 22:00 UTC.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

SESSIONS: dict[str, tuple[int, int]] = {
    "Sydney": (22, 7),
    "Tokyo": (0, 9),
    "London": (8, 17),
    "New York": (13, 22),
}

_WEEKLY_BOUNDARY_HOUR = 22
_FRIDAY = 4
_SATURDAY = 5
_SUNDAY = 6


@dataclass(frozen=True)
class MarketStatus:
    """Snapshot of the forex calendar at one instant."""

    open: bool
    weekend: bool
    active_sessions: tuple[str, ...]
    next_event: str
    next_event_time: datetime


def is_in_session(utc_hour: int, session_start: int, session_end: int) -> bool:
    """Return True if *utc_hour* falls within ``[session_start, session_end)``.

    A window whose start is after its end wraps midnight.
    """
    if session_start > session_end:
        return utc_hour >= session_start or utc_hour < session_end
    return session_start <= utc_hour < session_end


def is_weekend(now: datetime) -> bool:
    """Saturday, Sunday before 22:00 and Friday from 22:00 count as weekend."""
    day = now.weekday()
    if day == _SATURDAY:
        return True
    if day == _SUNDAY and now.hour < _WEEKLY_BOUNDARY_HOUR:
        return True
    if day == _FRIDAY and now.hour >= _WEEKLY_BOUNDARY_HOUR:
        return True
    return False


def active_sessions(now: datetime) -> list[str]:
    """Names of the sessions trading at *now*, empty over the weekend."""
    if is_weekend(now):
        return []
    return [
        name
        for name, (start, end) in SESSIONS.items()
        if is_in_session(now.hour, start, end)
    ]


def is_market_open(now: datetime) -> bool:
    """True when at least one session is active and it is not the weekend."""
    return bool(active_sessions(now))


def _at_hour(now: datetime, days: int, hour: int) -> datetime:
    shifted = now + timedelta(days=days)
    return shifted.replace(hour=hour, minute=0, second=0, microsecond=0)


def next_market_open(now: datetime) -> datetime:
    """Next time the market opens; *now* itself when it is already open."""
    day = now.weekday()
    if day == _SUNDAY and now.hour < _WEEKLY_BOUNDARY_HOUR:
        return _at_hour(now, 0, _WEEKLY_BOUNDARY_HOUR)
    if day == _SATURDAY:
        return _at_hour(now, 1, _WEEKLY_BOUNDARY_HOUR)
    if day == _FRIDAY and now.hour >= _WEEKLY_BOUNDARY_HOUR:
        return _at_hour(now, 2, _WEEKLY_BOUNDARY_HOUR)
    if not is_market_open(now):
        return _at_hour(now, 1, 0)
    return now


def next_market_close(now: datetime) -> datetime:
    """Next Friday 22:00 UTC strictly after the current one's start."""
    day = now.weekday()
    if day == _FRIDAY and now.hour < _WEEKLY_BOUNDARY_HOUR:
        return _at_hour(now, 0, _WEEKLY_BOUNDARY_HOUR)
    days_until_friday = (_FRIDAY - day) % 7 or 7
    return _at_hour(now, days_until_friday, _WEEKLY_BOUNDARY_HOUR)


def market_status(now: datetime) -> MarketStatus:
    """Open flag, active sessions and the next open/close event."""
    weekend = is_weekend(now)
    sessions = active_sessions(now)
    is_open = bool(sessions)
    if is_open:
        event, event_time = "Market Closes", next_market_close(now)
    else:
        event, event_time = "Market Opens", next_market_open(now)
    return MarketStatus(
        open=is_open,
        weekend=weekend,
        active_sessions=tuple(sessions),
        next_event=event,
        next_event_time=event_time,
    )


def format_time_until(event_time: datetime, now: Optional[datetime] = None) -> str:
    """Human-readable countdown: ``now``, ``45m``, ``2h 15m`` or ``3d 4h``."""
    if now is None:
        now = datetime.now(event_time.tzinfo)
    seconds = (event_time - now).total_seconds()
    if seconds <= 0:
        return "now"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    if hours > 24:
        return f"{hours // 24}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def market_status_report(now: datetime) -> str:
    """Multi-line market status for chat replies."""
    status = market_status(now)
    when = status.next_event_time.strftime("%a %d %b %Y %H:%M UTC")
    countdown = format_time_until(status.next_event_time, now)

    if status.weekend:
        lines = [
            "🔴 Markets CLOSED (Weekend)",
            "",
            f"Opens: {when}",
            f"Time until open: {countdown}",
        ]
    elif status.open:
        lines = [
            "🟢 Markets OPEN",
            "",
            f"Active Sessions: {', '.join(status.active_sessions)}",
            "",
            f"Closes: {when}",
            f"Time until close: {countdown}",
        ]
    else:
        lines = [
            "🟡 Markets Between Sessions",
            "",
            f"Next Open: {when}",
            f"Time until open: {countdown}",
        ]
    return "\n".join(lines)
