"""Timestamp parsing, canonical formatting and date-range labels."""

import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

import pytz
from timezonefinder import TimezoneFinder

# Postgres and the auth service disagree on separators, fraction width and
# offset style, so reads accept all of them.
_TIMESTAMP_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[T ](?P<time>\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d{1,9}))?"
    r"(?P<offset>Z|[+-]\d{2}(?::?\d{2})?)?$"
)

CANONICAL_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@lru_cache(maxsize=1)
def _get_timezone_finder() -> TimezoneFinder:
    """Return a shared TimezoneFinder; loading its boundary data is slow."""
    return TimezoneFinder()


def parse_timestamp(value: str) -> datetime:
    """Parse a backend timestamp into an aware UTC datetime.

    Accepted shapes include ``2025-09-08T01:19:02.374887+00:00``,
    ``2025-09-08 00:56:16+00`` and ``2025-09-08T01:19:02.374Z``.
    Values without an offset are taken as UTC.

    Raises:
        ValueError: If the string matches none of the accepted shapes.
    """
    match = _TIMESTAMP_RE.match(value.strip())
    if not match:
        raise ValueError(f"Cannot parse timestamp: {value!r}")

    fraction = (match.group("fraction") or "0")[:6].ljust(6, "0")
    offset = match.group("offset") or "Z"
    if offset == "Z":
        offset = "+00:00"
    elif len(offset) == 3:
        offset += ":00"
    elif ":" not in offset:
        offset = f"{offset[:3]}:{offset[3:]}"

    dt = datetime.fromisoformat(f"{match.group('date')}T{match.group('time')}.{fraction}{offset}")
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format a datetime in the single canonical write format (UTC, whole seconds)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(CANONICAL_FORMAT)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def localize_to_location(dt: datetime, latitude: float, longitude: float) -> datetime:
    """Convert a datetime to the local time zone of the place it was captured.

    Falls back to the datetime unchanged when no zone covers the point
    (open ocean).
    """
    tz_name = _get_timezone_finder().timezone_at(lat=latitude, lng=longitude)
    if not tz_name:
        return dt
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(pytz.timezone(tz_name))


def _short_date(dt: datetime) -> str:
    return f"{dt:%b} {dt.day}"


def _full_date(dt: datetime) -> str:
    return f"{dt:%b} {dt.day}, {dt.year}"


def format_date_range(start: datetime, end: datetime) -> str:
    """Label a date range: "Jun 1", "Jun 1 - Jun 3" or "Dec 30, 2024 - Jan 2, 2025"."""
    if start.date() == end.date():
        return _short_date(start)
    if start.year == end.year:
        return f"{_short_date(start)} - {_short_date(end)}"
    return f"{_full_date(start)} - {_full_date(end)}"


def parse_optional_timestamp(value) -> Optional[datetime]:
    """Validator helper: pass datetimes through, parse strings, keep None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return parse_timestamp(str(value))


def attach_local_timezone(naive: datetime, latitude: float, longitude: float) -> datetime:
    """Read a wall-clock time (e.g. EXIF DateTimeOriginal) as local to the point.

    Returns an aware UTC datetime; the time is taken as UTC when no zone
    covers the point.
    """
    tz_name = _get_timezone_finder().timezone_at(lat=latitude, lng=longitude)
    if not tz_name:
        return naive.replace(tzinfo=timezone.utc)
    return pytz.timezone(tz_name).localize(naive).astimezone(timezone.utc)
