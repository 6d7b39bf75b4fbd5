"""Time bucketing and first/last-by-time helpers.

``time_bucket`` truncates a timestamp down to a multiple of a fixed width
measured from the PostgreSQL epoch (2000-01-01 UTC). The partition engine
uses it to anchor partition boundaries, so bucket edges never depend on the
exact value of "now".

``first_by_time`` / ``last_by_time`` reduce ``(value, timestamp)`` rows to
the value carried by the earliest / latest timestamp. Rows whose timestamp
is ``None`` are ignored.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Tuple, Union

from errors import ErrorCode, PolicyValidationError

EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)

_ZERO = timedelta(0)

_UNIT_SECONDS = {
    "us": 1e-6, "usec": 1e-6, "microsecond": 1e-6, "microseconds": 1e-6,
    "ms": 1e-3, "msec": 1e-3, "millisecond": 1e-3, "milliseconds": 1e-3,
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
    "d": 86400, "day": 86400, "days": 86400,
    "w": 604800, "week": 604800, "weeks": 604800,
}
_CALENDAR_UNITS = {"mon", "mons", "month", "months", "y", "yr", "yrs", "year", "years"}

_TERM_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([a-zA-Z]+)")

Row = Tuple[Any, Optional[datetime]]


def parse_interval(value: Union[str, int, float, timedelta]) -> timedelta:
    """Turn a duration given as text, seconds or timedelta into a timedelta.

    Accepts strings such as ``"1 day"``, ``"6 hours"``, ``"1h30m"`` or
    ``"90 seconds"``. Month and year units are rejected: they have no fixed
    length and cannot anchor stable partition boundaries.

    Raises:
        PolicyValidationError: If the value is unparsable or calendar-relative.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise PolicyValidationError(f"Invalid interval: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    text = value.strip().lower()
    if not text:
        raise PolicyValidationError("Interval must not be empty")

    total = 0.0
    consumed = 0
    for match in _TERM_RE.finditer(text):
        if text[consumed:match.start()].strip():
            raise PolicyValidationError(f"Invalid interval: {value!r}")
        amount, unit = float(match.group(1)), match.group(2)
        if unit in _CALENDAR_UNITS:
            raise PolicyValidationError(
                f"Calendar-relative interval {value!r} is not supported",
                ErrorCode.CALENDAR_INTERVAL,
            )
        if unit not in _UNIT_SECONDS:
            raise PolicyValidationError(f"Unknown interval unit {unit!r} in {value!r}")
        total += amount * _UNIT_SECONDS[unit]
        consumed = match.end()

    if consumed == 0 or text[consumed:].strip():
        raise PolicyValidationError(f"Invalid interval: {value!r}")
    return timedelta(seconds=total)


def as_utc(ts: datetime) -> datetime:
    """Attach UTC to naive timestamps."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def time_bucket(width: timedelta, ts: datetime) -> datetime:
    """Truncate ``ts`` down to the nearest multiple of ``width`` from the epoch.

    Naive timestamps are taken to be UTC. The result always satisfies
    ``bucket <= ts < bucket + width``, also for timestamps before the epoch.

    Raises:
        ValueError: If ``width`` is not positive.
    """
    if width <= _ZERO:
        raise ValueError("bucket width must be greater than zero")

    ts = as_utc(ts)
    # Integer microseconds keep the arithmetic exact
    width_us = width // timedelta(microseconds=1)
    offset_us = (ts - EPOCH) // timedelta(microseconds=1)
    bucket_us = (offset_us // width_us) * width_us
    return EPOCH + timedelta(microseconds=bucket_us)


def first_by_time(rows: Iterable[Row]) -> Any:
    """Return the value whose timestamp is the smallest non-null one."""
    found = False
    best_ts: Optional[datetime] = None
    best_value: Any = None
    for value, ts in rows:
        if ts is None:
            continue
        if not found or ts < best_ts:
            found = True
            best_ts, best_value = ts, value
    return best_value


def last_by_time(rows: Iterable[Row]) -> Any:
    """Return the value whose timestamp is the largest non-null one."""
    found = False
    best_ts: Optional[datetime] = None
    best_value: Any = None
    for value, ts in rows:
        if ts is None:
            continue
        if not found or ts > best_ts:
            found = True
            best_ts, best_value = ts, value
    return best_value
