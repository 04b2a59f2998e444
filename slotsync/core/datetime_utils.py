"""Date parsing and formatting for slotsync.

Every date that enters the system goes through this module. Calendar values
come in three shapes:

- ``YYYYMMDD``          date-only, local midnight in the business timezone
- ``YYYYMMDDTHHMMSS``   local wall-clock time (TZID zone when given)
- ``YYYYMMDDTHHMMSSZ``  UTC

and every instant that leaves the system is rendered by :func:`format_utc_iso`
as ``YYYY-MM-DDTHH:MM:SS.000Z``.
"""

from __future__ import annotations

import datetime
import logging
import os
import re
import zoneinfo
from functools import lru_cache
from typing import Optional

from dateutil import parser as date_parser
from icalendar.prop import vDuration

from slotsync.exceptions import DateParseError

logger = logging.getLogger(__name__)

UTC = datetime.timezone.utc

DEFAULT_BUSINESS_TIMEZONE = "America/Denver"

_ICAL_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})(?:T(\d{2})(\d{2})(\d{2})(Z)?)?$")
_QUERY_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FIXED_OFFSET_RE = re.compile(r"^(?:UTC)?([+-])(\d{2}):?(\d{2})$")


@lru_cache(maxsize=32)
def get_business_timezone(name: Optional[str] = None) -> datetime.tzinfo:
    """Resolve the configured business timezone.

    Accepts an IANA name (``America/Denver``) or a fixed offset
    (``-07:00``, ``UTC+02:00``). Invalid names fall back to the default.

    Args:
        name: Timezone name or offset; None selects the default

    Returns:
        tzinfo for the business timezone
    """
    tz_name = (name or DEFAULT_BUSINESS_TIMEZONE).strip()
    offset = _FIXED_OFFSET_RE.match(tz_name)
    if offset:
        sign = -1 if offset.group(1) == "-" else 1
        delta = datetime.timedelta(hours=int(offset.group(2)), minutes=int(offset.group(3)))
        return datetime.timezone(sign * delta)
    if tz_name.upper() in ("UTC", "Z"):
        return UTC
    try:
        return zoneinfo.ZoneInfo(tz_name)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError):
        logger.warning(
            "Invalid business timezone %r, falling back to %s", tz_name, DEFAULT_BUSINESS_TIMEZONE
        )
        return zoneinfo.ZoneInfo(DEFAULT_BUSINESS_TIMEZONE)


def resolve_tzid(tzid: Optional[str], default_tz: datetime.tzinfo) -> datetime.tzinfo:
    """Return the zone named by a TZID parameter, or ``default_tz`` when unknown."""
    if not tzid:
        return default_tz
    try:
        return zoneinfo.ZoneInfo(tzid.strip().strip('"'))
    except (zoneinfo.ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown TZID %r, using business timezone", tzid)
        return default_tz


def now_utc() -> datetime.datetime:
    """Return the current UTC time.

    Can be overridden for testing via the SLOTSYNC_TEST_TIME environment
    variable (ISO 8601, e.g. ``2025-03-10T09:00:00-06:00``).
    """
    test_time = os.environ.get("SLOTSYNC_TEST_TIME")
    if test_time:
        try:
            return ensure_utc(date_parser.isoparse(test_time))
        except ValueError as e:
            logger.warning("Failed to parse SLOTSYNC_TEST_TIME=%r: %s", test_time, e)
    return datetime.datetime.now(UTC)


def ensure_utc(dt: datetime.datetime, tz: Optional[datetime.tzinfo] = None) -> datetime.datetime:
    """Convert ``dt`` to an aware UTC datetime.

    Naive values are interpreted in ``tz`` (UTC when not given).
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz or UTC)
    return dt.astimezone(UTC)


def is_date_only(value: str) -> bool:
    """Return True for a ``YYYYMMDD`` calendar value."""
    return len(value.strip()) == 8 and value.strip().isdigit()


def parse_ical_datetime(
    value: str,
    tz: Optional[datetime.tzinfo] = None,
    tzid: Optional[str] = None,
) -> datetime.datetime:
    """Parse one calendar date value into an aware UTC datetime.

    Args:
        value: ``YYYYMMDD``, ``YYYYMMDDTHHMMSS`` or ``YYYYMMDDTHHMMSSZ``
        tz: Business timezone for local values (default business timezone)
        tzid: Optional TZID parameter taking precedence for local values

    Returns:
        Aware datetime in UTC

    Raises:
        DateParseError: If the value matches none of the three forms
    """
    text = (value or "").strip()
    match = _ICAL_DATE_RE.match(text)
    if not match:
        raise DateParseError(f"Unrecognized calendar date value: {value!r}")

    year, month, day, hour, minute, second, zulu = match.groups()
    local_tz = resolve_tzid(tzid, tz or get_business_timezone())
    try:
        if hour is None:
            naive = datetime.datetime(int(year), int(month), int(day))
            return ensure_utc(naive, local_tz)
        naive = datetime.datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second)
        )
    except ValueError as e:
        raise DateParseError(f"Invalid calendar date value {value!r}: {e}") from e

    if zulu:
        return naive.replace(tzinfo=UTC)
    return ensure_utc(naive, local_tz)


def parse_ical_duration(value: str) -> datetime.timedelta:
    """Parse an iCalendar DURATION such as ``PT1H30M`` or ``P1D``.

    Raises:
        DateParseError: If the value is not a valid duration
    """
    try:
        return vDuration.from_ical(value.strip())
    except (ValueError, AttributeError) as e:
        raise DateParseError(f"Invalid duration {value!r}") from e


def parse_iso_datetime(value: str) -> datetime.datetime:
    """Parse an ISO 8601 string (``Z``, offset or naive-as-UTC) to aware UTC.

    Raises:
        DateParseError: If the value is not ISO 8601
    """
    if not isinstance(value, str) or not value.strip():
        raise DateParseError("Empty datetime value")
    try:
        return ensure_utc(date_parser.isoparse(value.strip()))
    except (ValueError, OverflowError) as e:
        raise DateParseError(f"Invalid ISO datetime {value!r}") from e


def parse_query_date(value: Optional[str]) -> datetime.date:
    """Parse a strict ``YYYY-MM-DD`` query parameter.

    Raises:
        DateParseError: If missing or malformed
    """
    if not value or not _QUERY_DATE_RE.match(value.strip()):
        raise DateParseError(f"Expected YYYY-MM-DD, got {value!r}")
    try:
        return datetime.date.fromisoformat(value.strip())
    except ValueError as e:
        raise DateParseError(f"Invalid date {value!r}") from e


def format_utc_iso(dt: datetime.datetime) -> str:
    """Render an instant in the canonical ``YYYY-MM-DDTHH:MM:SS.000Z`` form."""
    utc = ensure_utc(dt)
    return utc.strftime("%Y-%m-%dT%H:%M:%S") + f".{utc.microsecond // 1000:03d}Z"


def to_local(dt: datetime.datetime, tz: datetime.tzinfo) -> datetime.datetime:
    """Convert an instant to wall-clock time in ``tz``."""
    return ensure_utc(dt).astimezone(tz)


def localize(naive: datetime.datetime, tz: datetime.tzinfo) -> datetime.datetime:
    """Attach ``tz`` to a naive wall-clock datetime and return it in UTC."""
    return ensure_utc(naive.replace(tzinfo=None), tz)


def local_midnight(day: datetime.date, tz: datetime.tzinfo) -> datetime.datetime:
    """Return the UTC instant of local midnight for ``day``."""
    return localize(datetime.datetime(day.year, day.month, day.day), tz)


def local_day_bounds(
    day: datetime.date, tz: datetime.tzinfo
) -> tuple[datetime.datetime, datetime.datetime]:
    """Return the half-open UTC window covering local ``day``."""
    return local_midnight(day, tz), local_midnight(day + datetime.timedelta(days=1), tz)
