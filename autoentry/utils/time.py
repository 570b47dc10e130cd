"""
Time semantics utilities for market vs wall-clock time handling.

Market timestamps carried by snapshots are authoritative; wall-clock time is
only used when a snapshot has none and for scheduling decisions such as
whether the market is currently open.
"""

from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

DEFAULT_MARKET_TIMEZONE = "Asia/Kolkata"


def now_utc() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def get_market_time(market_ts: Optional[datetime] = None) -> datetime:
    """
    Get the current market time, preferring market timestamp over wall-clock time.

    Args:
        market_ts: Optional market timestamp from the snapshot

    Returns:
        Aware datetime, falling back to wall-clock UTC time if unavailable
    """
    if market_ts is not None:
        return ensure_aware(market_ts)

    return now_utc()


def ensure_aware(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse a timestamp from a datetime, ISO8601 string or epoch seconds/millis.

    Returns None for values that cannot be interpreted.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return ensure_aware(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def trading_date(ts: datetime, tz_name: str = DEFAULT_MARKET_TIMEZONE) -> date:
    """Calendar date of ``ts`` in the market timezone."""
    return ensure_aware(ts).astimezone(ZoneInfo(tz_name)).date()


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def is_market_open(
    ts: Optional[datetime] = None,
    tz_name: str = DEFAULT_MARKET_TIMEZONE,
    open_at: str = "09:15",
    close_at: str = "15:30",
) -> bool:
    """
    Check whether the market is open at ``ts``.

    Args:
        ts: Moment to check, defaults to now
        tz_name: Market timezone
        open_at: Session open as HH:MM local time
        close_at: Session close as HH:MM local time

    Returns:
        True on weekdays between open (inclusive) and close (exclusive)
    """
    local = get_market_time(ts).astimezone(ZoneInfo(tz_name))
    if local.weekday() >= 5:
        return False
    return _parse_hhmm(open_at) <= local.time() < _parse_hhmm(close_at)


def time_elapsed_seconds(start_time: datetime, end_time: Optional[datetime] = None) -> float:
    """
    Calculate elapsed time in seconds between two timestamps.

    Args:
        start_time: Start timestamp
        end_time: End timestamp, defaults to current wall-clock time

    Returns:
        Elapsed time in seconds
    """
    if end_time is None:
        end_time = now_utc()

    return (ensure_aware(end_time) - ensure_aware(start_time)).total_seconds()


def format_market_time(market_ts: datetime) -> str:
    """Format a timestamp as ISO8601 for persistence and notifications."""
    return ensure_aware(market_ts).isoformat()
