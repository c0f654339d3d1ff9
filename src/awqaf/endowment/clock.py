"""Time handling for the engine.

Every instant inside the engine is a timezone-aware UTC ``datetime``.
``to_utc`` is the only place other representations are accepted: ISO-8601
strings, naive datetimes (assumed UTC), and integer epochs in seconds,
milliseconds, microseconds, or nanoseconds, told apart by magnitude.
"""

from __future__ import annotations

import calendar
from datetime import UTC, date, datetime, timedelta

from ..core.exceptions import NormalizationError

AVERAGE_DAYS_PER_MONTH = 365.25 / 12

# Epoch magnitudes: anything at or above these is treated as the finer unit.
# 1e11 seconds is the year 5138, so millisecond epochs cannot be confused with
# plausible second epochs.
_MS_THRESHOLD = 1e11
_US_THRESHOLD = 1e14
_NS_THRESHOLD = 1e17


def utc_now() -> datetime:
    return datetime.now(UTC)


def resolve_now(now: datetime | None = None) -> datetime:
    """*now* as an aware UTC datetime; naive values are taken to be UTC. Defaults to the current time."""
    return to_utc(now) if now is not None else utc_now()



def from_epoch(value: int | float) -> datetime:
    """Interpret an integer epoch of unknown unit."""
    magnitude = abs(value)
    if magnitude >= _NS_THRESHOLD:
        seconds = value / 1_000_000_000
    elif magnitude >= _US_THRESHOLD:
        seconds = value / 1_000_000
    elif magnitude >= _MS_THRESHOLD:
        seconds = value / 1_000
    else:
        seconds = value
    return datetime.fromtimestamp(seconds, tz=UTC)


def to_utc(value: datetime | date | str | int | float) -> datetime:
    """Convert any accepted time representation into an aware UTC datetime."""
    if isinstance(value, bool):
        raise NormalizationError(f"Not a timestamp: {value!r}")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, (int, float)):
        return from_epoch(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return from_epoch(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_utc(datetime.fromisoformat(text))
        except ValueError as e:
            raise NormalizationError(f"Unparseable timestamp: {value!r}") from e
    raise NormalizationError(f"Unsupported timestamp type: {type(value).__name__}")


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's end.

    >>> add_months(datetime(2024, 1, 31, tzinfo=UTC), 1).day
    29
    """
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_fractional_months(moment: datetime, months: float) -> datetime:
    """Whole months by calendar, the fractional remainder by average month length."""
    whole = int(months)
    result = add_months(moment, whole)
    remainder = months - whole
    if remainder:
        result += timedelta(days=remainder * AVERAGE_DAYS_PER_MONTH)
    return result


def months_between(start: datetime, end: datetime) -> float:
    """Approximate number of months from *start* to *end* (negative if reversed)."""
    return (end - start).total_seconds() / (AVERAGE_DAYS_PER_MONTH * 86400)
