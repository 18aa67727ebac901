"""Utility helpers for dealing with time and market sessions.

``market_is_open`` is a plain weekday/regular-hours check in
exchange local time.  There is no holiday calendar: a holiday weekday is
treated as a trading day.
"""

from datetime import datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

# Eastern Time zone used by the New York Stock Exchange
TZ = ZoneInfo("America/New_York")

# Regular trading hours (local exchange time)
OPEN_TIME = time(9, 30)
CLOSE_TIME = time(16, 0)


def now_et() -> datetime:
    """Return the current time in Eastern Time."""
    return datetime.now(timezone.utc).astimezone(TZ)


def to_et(ts: datetime) -> datetime:
    """Convert ``ts`` to Eastern Time, treating naive values as UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(TZ)


def market_is_open(ts: Optional[datetime] = None) -> bool:
    """Return ``True`` if ``ts`` falls within regular trading hours.

    Closed on Saturday and Sunday.  Open from 09:30 inclusive until 16:00
    exclusive.
    """

    ts = to_et(ts or now_et())

    if ts.weekday() >= 5:  # 5 = Saturday, 6 = Sunday
        return False

    local = ts.time()
    return OPEN_TIME <= local < CLOSE_TIME


def isoformat_utc(ts: datetime) -> str:
    """Render ``ts`` as an ISO-8601 UTC string with a ``Z`` suffix."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    utc = ts.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")
