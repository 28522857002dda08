"""
Timestamp encoding for persisted usage records.

Records are stored as UTC RFC 3339 strings with a variable-length
fractional second of up to nine digits, trailing zeros trimmed. Python
datetimes stop at microseconds, so the remaining three digits travel
alongside the datetime as a separate nanosecond count (0-999).
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

_RFC3339_NANO = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d{1,9}))?"
    r"([Zz]|[+-]\d{2}:\d{2})$"
)

# Second-precision layouts tried when the primary format does not match.
_FALLBACK_FORMATS = (
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S",
)


def to_utc(value: datetime) -> datetime:
    """Return value in UTC; naive datetimes are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime, nanosecond: int = 0) -> str:
    """Format a datetime as a UTC RFC 3339 string with trimmed fraction.

    Args:
        value: The instant; naive values are taken to be UTC
        nanosecond: Digits below the microsecond (0-999)

    Example:
        >>> format_timestamp(datetime(2024, 1, 1, 12, 0, 0, 250000))
        '2024-01-01T12:00:00.25Z'
    """
    value = to_utc(value)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    fraction = value.microsecond * 1000 + nanosecond
    if fraction:
        text += "." + f"{fraction:09d}".rstrip("0")
    return text + "Z"


def _in_utc(value: datetime, text: str) -> datetime:
    try:
        return to_utc(value)
    except OverflowError as e:
        raise ValueError(f"timestamp out of range: {text!r}") from e


def _parse_rfc3339_nano(value: str) -> Tuple[datetime, int]:
    match = _RFC3339_NANO.match(value)
    if not match:
        raise ValueError(f"not an RFC 3339 timestamp: {value!r}")

    year, month, day, hour, minute, second, fraction, zone = match.groups()
    digits = (fraction or "").ljust(9, "0")

    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))

    parsed = datetime(
        int(year), int(month), int(day),
        int(hour), int(minute), int(second),
        int(digits[:6]), tzinfo=tz
    )
    return _in_utc(parsed, value), int(digits[6:])


def _parse_fallback(value: str) -> Optional[datetime]:
    for layout in _FALLBACK_FORMATS:
        try:
            parsed = datetime.strptime(value, layout)
        except ValueError:
            continue
        return _in_utc(parsed, value)
    return None


def parse_timestamp(value: str) -> Tuple[datetime, int]:
    """Parse a stored timestamp.

    Tries the fractional-second RFC 3339 layout first, then the
    second-precision layouts.

    Returns:
        Tuple of (aware UTC datetime, nanoseconds below the microsecond)

    Raises:
        ValueError: If no layout matches or the instant is out of range
    """
    try:
        return _parse_rfc3339_nano(value)
    except ValueError:
        parsed = _parse_fallback(value)
        if parsed is None:
            raise
        return parsed, 0
