"""Bookable slot computation.

A day is walked from opening to closing time in slot-length steps. A slot is
unavailable when it overlaps (half-open) any scheduled meeting or blocking
occurrence of that day, each widened by the buffer on both sides. All-day
occurrences block the whole local day they cover.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Optional

from slotsync.core.datetime_utils import (
    format_utc_iso,
    get_business_timezone,
    local_day_bounds,
    localize,
)
from slotsync.models import AvailabilitySlot, Occurrence

from .business_hours import WEEKDAYS, BusinessHoursStore
from .calendar_service import CalendarService
from .meetings import MeetingStore

logger = logging.getLogger(__name__)

MIN_SLOT_MINUTES = 15
MAX_SLOT_MINUTES = 240
MIN_BUFFER_MINUTES = 0
MAX_BUFFER_MINUTES = 60
DEFAULT_SLOT_MINUTES = 30

Interval = tuple[datetime.datetime, datetime.datetime]


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass
class AvailabilityResult:
    """Slots for one date plus the opening hours they were computed from."""

    date: datetime.date
    slots: list[AvailabilitySlot] = field(default_factory=list)
    open_minutes: Optional[int] = None
    close_minutes: Optional[int] = None

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "slots": [
                {"start": format_utc_iso(s.start), "end": format_utc_iso(s.end),
                 "available": s.available}
                for s in self.slots
            ],
            "openMinutes": self.open_minutes,
            "closeMinutes": self.close_minutes,
        }


def blocking_intervals(
    occurrences: Iterable[Occurrence],
    meetings: Iterable[Interval],
    buffer_minutes: int,
) -> list[Interval]:
    """Busy intervals widened by the buffer; non-blocking events ignored."""
    pad = datetime.timedelta(minutes=buffer_minutes)
    intervals = [(start - pad, end + pad) for start, end in meetings]
    intervals.extend(
        (occ.start - pad, occ.end + pad)
        for occ in occurrences
        if occ.is_blocking
    )
    return intervals


def compute_slots(
    day: datetime.date,
    open_minutes: int,
    close_minutes: int,
    slot_minutes: int,
    busy: list[Interval],
    tz: datetime.tzinfo,
) -> list[AvailabilitySlot]:
    """Walk ``[open, close]`` in ``slot_minutes`` steps, marking overlaps busy."""
    midnight = datetime.datetime.combine(day, datetime.time())
    step = datetime.timedelta(minutes=slot_minutes)
    slots = []
    offset = open_minutes
    while offset + slot_minutes <= close_minutes:
        start = localize(midnight + datetime.timedelta(minutes=offset), tz)
        end = start + step
        available = not any(start < b_end and end > b_start for b_start, b_end in busy)
        slots.append(AvailabilitySlot(start=start, end=end, available=available))
        offset += slot_minutes
    return slots


class AvailabilityEngine:
    """Computes availability for a date from hours, meetings and calendars."""

    def __init__(
        self,
        hours: BusinessHoursStore,
        meetings: MeetingStore,
        calendar_service: Optional[CalendarService] = None,
        tz: Optional[datetime.tzinfo] = None,
    ) -> None:
        """Initialize availability engine.

        Args:
            hours: Weekday business hours
            meetings: Internally booked meetings
            calendar_service: Source of classified external occurrences
            tz: Business timezone defining the day
        """
        self.hours = hours
        self.meetings = meetings
        self.calendar_service = calendar_service
        self.tz = tz or get_business_timezone()

    async def slots(
        self,
        day: datetime.date,
        slot_length_minutes: int = DEFAULT_SLOT_MINUTES,
        buffer_minutes: int = 0,
    ) -> AvailabilityResult:
        """Compute slots for ``day``.

        Slot length is clamped to [15, 240] and buffer to [0, 60]. A day
        without usable business hours yields an empty slot list.
        """
        slot_minutes = clamp(slot_length_minutes, MIN_SLOT_MINUTES, MAX_SLOT_MINUTES)
        buffer = clamp(buffer_minutes, MIN_BUFFER_MINUTES, MAX_BUFFER_MINUTES)

        hours = await self.hours.get_for_weekday(WEEKDAYS[day.weekday()])
        if hours is None or not hours.is_open:
            logger.debug("No business hours for %s; no slots", day)
            return AvailabilityResult(date=day)

        day_start, day_end = local_day_bounds(day, self.tz)
        meetings = [
            (m.start, m.end) for m in await self.meetings.scheduled_between(day_start, day_end)
        ]
        occurrences: list[Occurrence] = []
        if self.calendar_service is not None:
            view = await self.calendar_service.view(day_start, day_end)
            occurrences = view.occurrences

        busy = blocking_intervals(occurrences, meetings, buffer)
        slots = compute_slots(
            day, hours.open_minutes, hours.close_minutes, slot_minutes, busy, self.tz
        )
        logger.debug(
            "%s: %d slots, %d available (%d busy intervals)",
            day,
            len(slots),
            sum(1 for s in slots if s.available),
            len(busy),
        )
        return AvailabilityResult(
            date=day,
            slots=slots,
            open_minutes=hours.open_minutes,
            close_minutes=hours.close_minutes,
        )
