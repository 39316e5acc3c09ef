from datetime import datetime, timedelta, timezone
import time


def get_current_timestamp() -> int:
    """Get current time as millisecond timestamp"""
    return int(time.time() * 1000)

def get_current_datetime() -> datetime:
    """Get current time as UTC datetime"""
    return datetime.now(timezone.utc)

def from_unix_seconds(seconds: int | float) -> datetime:
    """Convert a unix timestamp in seconds (ledger block time) to UTC datetime"""
    return datetime.fromtimestamp(float(seconds), tz=timezone.utc)

def lookback_cutoff(days: int, now: datetime | None = None) -> int:
    """
    Unix timestamp in seconds marking the start of a lookback window.

    Args:
        days (int): Size of the window in days.
        now (datetime): Reference time, defaults to the current UTC time.

    Returns:
        int: Seconds since epoch; anything strictly older is outside the window.
    """
    now = now or get_current_datetime()
    return int((now - timedelta(days=days)).timestamp())

def format_time_difference(time_difference_ms: int) -> str:
    """
    Format a time difference in milliseconds to a human-readable string.

    Args:
        time_difference_ms (int): Time difference in milliseconds.

    Returns:
        str: Formatted time difference string.
    """
    seconds = time_difference_ms // 1000
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)

    if days > 0:
        return f"{days}d {hours}h"
    elif hours > 0:
        return f"{hours}h {minutes}m"
    elif minutes > 0:
        return f"{minutes}m {seconds}s"
    else:
        return f"{seconds}s"
