"""Calendar-day bounds in a configurable timezone."""

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo


def day_window(day: date | str, tz: str = "UTC") -> tuple[int, int]:
    """Inclusive millisecond bounds of one calendar day.

    Args:
        day: The day, as a date or an ISO ``YYYY-MM-DD`` string.
        tz: IANA timezone name the day is interpreted in.

    Returns:
        (start_ms, end_ms) where end_ms is the last millisecond of the day.
    """
    if isinstance(day, str):
        day = date.fromisoformat(day)

    zone = ZoneInfo(tz)
    start = datetime.combine(day, time.min, tzinfo=zone)
    next_start = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)

    start_ms = int(start.timestamp() * 1000)
    end_ms = int(next_start.timestamp() * 1000) - 1
    return start_ms, end_ms
