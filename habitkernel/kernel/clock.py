"""Clock source and timezone helpers.

All instants inside the engine are timezone-aware UTC datetimes. Local
calendar dates are always derived from an explicit IANA identifier, never
from the host locale.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from habitkernel.kernel.errors import InvalidTimezone

END_OF_DAY = time(23, 59, 59, 999000)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock pinned to an instant; tests move it with ``set``/``advance``."""

    def __init__(self, instant: datetime) -> None:
        self._now = to_utc(instant)

    def now(self) -> datetime:
        return self._now

    def set(self, instant: datetime) -> None:
        self._now = to_utc(instant)

    def advance(self, **kwargs: float) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


def resolve_tz(tz_name: str | None) -> ZoneInfo:
    """Return the ZoneInfo for an IANA name, raising InvalidTimezone otherwise."""
    if not tz_name or not isinstance(tz_name, str):
        raise InvalidTimezone(tz_name)
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise InvalidTimezone(tz_name)


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        raise ValueError("naive datetime; an aware instant is required")
    return dt.astimezone(timezone.utc)


def local_date(instant: datetime, tz_name: str) -> date:
    return to_utc(instant).astimezone(resolve_tz(tz_name)).date()


def end_of_local_day(day: date, tz_name: str) -> datetime:
    """23:59:59.999 on ``day`` in ``tz_name``, as a UTC instant."""
    return to_utc(datetime.combine(day, END_OF_DAY, tzinfo=resolve_tz(tz_name)))


def same_local_date(a: datetime, b: datetime, tz_name: str) -> bool:
    return local_date(a, tz_name) == local_date(b, tz_name)
