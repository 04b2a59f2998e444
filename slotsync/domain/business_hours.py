"""Business hours parsing and the per-weekday store."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping
from typing import Optional

from slotsync.exceptions import ConfigurationError, ValidationError
from slotsync.models import BusinessHours
from slotsync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

DEFAULT_BUSINESS_HOURS: dict[str, str] = {
    "monday": "7am - 5pm",
    "tuesday": "9am - 5pm",
    "wednesday": "7am - 5pm",
    "thursday": "9am - 6pm",
    "friday": "8am - 5pm",
    "saturday": "9am - 5pm",
    "sunday": "9am - 5pm",
}

_TIME_RE = re.compile(r"^\s*(\d{1,2})(?::(\d{2}))?\s*([ap]\.?m\.?)?\s*$", re.IGNORECASE)
_CLOSED_WORDS = {"closed", "off", "none", ""}


def parse_time_of_day(text: str) -> int:
    """Parse ``9am``, ``12:30pm`` or ``17:30`` into minutes after midnight.

    12am is midnight; pm adds twelve hours except for 12pm.

    Raises:
        ConfigurationError: If the text is not a time of day
    """
    match = _TIME_RE.match(text or "")
    if not match:
        raise ConfigurationError(f"Unrecognized time of day: {text!r}")
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = (match.group(3) or "").lower().replace(".", "")
    if meridiem:
        if not 1 <= hour <= 12:
            raise ConfigurationError(f"Hour out of range in {text!r}")
        if hour == 12:
            hour = 0
        if meridiem == "pm":
            hour += 12
    if hour > 23 or minute > 59:
        raise ConfigurationError(f"Time out of range: {text!r}")
    return hour * 60 + minute


def parse_business_hours(span: str) -> tuple[int, int]:
    """Parse a span like ``"9am - 5pm"`` or ``"09:00 - 17:30"``.

    Returns:
        (open_minutes, close_minutes) with close after open

    Raises:
        ConfigurationError: If the span is malformed or empty
    """
    parts = re.split(r"\s*(?:-|–|to)\s*", (span or "").strip(), maxsplit=1)
    if len(parts) != 2:
        raise ConfigurationError(f"Business hours must look like '9am - 5pm': {span!r}")
    open_minutes = parse_time_of_day(parts[0])
    close_minutes = parse_time_of_day(parts[1])
    if close_minutes <= open_minutes:
        raise ConfigurationError(f"Closing time must follow opening time: {span!r}")
    return open_minutes, close_minutes


def normalize_weekday(day: str) -> str:
    """Map ``Mon`` / ``monday`` / ``MONDAY`` to ``monday``.

    Raises:
        ValidationError: ``invalid_day`` for anything else
    """
    key = (day or "").strip().lower()
    for name in WEEKDAYS:
        if key == name or (len(key) >= 3 and name.startswith(key)):
            return name
    raise ValidationError("invalid_day", f"Unknown weekday {day!r}")


def build_business_hours(day: str, display_format: str, is_closed: bool = False) -> BusinessHours:
    """Build a BusinessHours record, leaving minutes empty when closed or unparseable."""
    hours = BusinessHours(day_of_week=day, display_format=display_format, is_closed=is_closed)
    if is_closed or display_format.strip().lower() in _CLOSED_WORDS:
        return hours.model_copy(update={"is_closed": True})
    try:
        open_minutes, close_minutes = parse_business_hours(display_format)
    except ConfigurationError as e:
        logger.warning("Business hours for %s unusable: %s", day, e)
        return hours
    return hours.model_copy(update={"open_minutes": open_minutes, "close_minutes": close_minutes})


class BusinessHoursStore:
    """Weekday opening hours persisted in the database.

    Rows are seeded from configuration the first time the table is read empty.
    """

    def __init__(
        self, database: DatabaseManager, defaults: Optional[Mapping[str, str]] = None
    ) -> None:
        self._database = database
        self._defaults = dict(DEFAULT_BUSINESS_HOURS if defaults is None else defaults)
        self._seed_lock = asyncio.Lock()
        self._seeded = False

    async def _ensure_seeded(self) -> list[dict]:
        rows = await self._database.get_business_hours()
        if rows or self._seeded:
            return rows
        async with self._seed_lock:
            rows = await self._database.get_business_hours()
            if rows:
                return rows
            for raw_day, span in self._defaults.items():
                try:
                    day = normalize_weekday(raw_day)
                except ValidationError:
                    logger.warning("Ignoring business hours for unknown day %r", raw_day)
                    continue
                await self._database.upsert_business_hours(
                    build_business_hours(day, str(span or "")).model_dump()
                )
            self._seeded = True
            logger.info("Seeded business hours for %d weekdays", len(self._defaults))
            return await self._database.get_business_hours()

    async def get_all(self) -> list[BusinessHours]:
        """Return every configured weekday in Monday..Sunday order."""
        by_day = {row["day_of_week"]: BusinessHours.model_validate(row)
                  for row in await self._ensure_seeded()}
        return [by_day[d] for d in WEEKDAYS if d in by_day]

    async def get_for_weekday(self, day: str) -> Optional[BusinessHours]:
        """Return hours for one weekday, or None when that day was never configured."""
        name = normalize_weekday(day)
        for hours in await self.get_all():
            if hours.day_of_week == name:
                return hours
        return None

    async def update(
        self,
        day: str,
        display_format: Optional[str] = None,
        is_closed: Optional[bool] = None,
    ) -> BusinessHours:
        """Change one weekday's span and/or closed flag.

        Raises:
            ValidationError: ``invalid_day`` or ``invalid_hours``
        """
        name = normalize_weekday(day)
        current = await self.get_for_weekday(name)
        new_format = display_format if display_format is not None else (
            current.display_format if current else ""
        )
        closed = is_closed if is_closed is not None else (current.is_closed if current else False)

        if not closed and display_format is not None:
            try:
                parse_business_hours(display_format)
            except ConfigurationError as e:
                raise ValidationError("invalid_hours", str(e)) from e

        hours = build_business_hours(name, new_format, closed)
        if not await self._database.upsert_business_hours(hours.model_dump()):
            logger.warning("Business hours update for %s kept in memory only", name)
        logger.info("Business hours for %s set to %r (closed=%s)", name, new_format, closed)
        return hours
