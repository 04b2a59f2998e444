"""Data models for calendar synchronization and availability."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from .core.datetime_utils import format_utc_iso, now_utc as _now_utc

DEFAULT_EVENT_MINUTES = 30

WEEKDAY_CODES = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")


class Frequency(str, Enum):
    """Recurrence frequencies the expander understands."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


SUPPORTED_FREQUENCIES = frozenset(f.value for f in Frequency)


class ProviderKind(str, Enum):
    """Tag identifying which external system an event came from."""

    CALDAV = "caldav"
    REST = "rest"


class RecurrenceRule(BaseModel):
    """Structured recurrence rule (FREQ, INTERVAL, COUNT, UNTIL, BYDAY).

    ``frequency`` is kept as a plain string so an unrecognized value can be
    carried to the expander and reported rather than failing the parse.
    """

    frequency: str = Field(..., description="DAILY, WEEKLY, MONTHLY or YEARLY")
    interval: int = Field(default=1, ge=1, description="Step between occurrences")
    until: Optional[datetime] = Field(default=None, description="Inclusive upper bound")
    count: Optional[int] = Field(default=None, ge=1, description="Occurrence cap")
    by_weekday: list[str] = Field(
        default_factory=list, description="Weekday codes (WEEKLY only)"
    )

    @property
    def is_supported(self) -> bool:
        return self.frequency in SUPPORTED_FREQUENCIES


class RawEvent(BaseModel):
    """Provider-neutral parsed calendar event."""

    id: Optional[str] = Field(default=None, description="Stable series identifier (UID)")
    summary: str = Field(default="(No Title)", description="Event title")
    start: datetime = Field(..., description="Start instant (rule anchor when recurring)")
    end: Optional[datetime] = Field(default=None, description="End instant")
    all_day: bool = Field(default=False, description="Date-only event")
    recurrence_rule: Optional[RecurrenceRule] = None
    exception_dates: set[datetime] = Field(default_factory=set)
    recurrence_id: Optional[datetime] = Field(
        default=None, description="Original start of the series instance this event replaces"
    )
    cancelled: bool = Field(default=False, description="STATUS:CANCELLED")
    source_calendar_id: str = Field(default="", description="Calendar the event came from")
    source_provider: ProviderKind = ProviderKind.CALDAV

    model_config = ConfigDict(use_enum_values=True)

    def duration(self, default_minutes: int = DEFAULT_EVENT_MINUTES) -> timedelta:
        """Return ``end - start``, or the default duration when end is absent."""
        if self.end is None or self.end < self.start:
            return timedelta(minutes=default_minutes)
        return self.end - self.start

    @property
    def is_recurring(self) -> bool:
        return self.recurrence_rule is not None


class Occurrence(BaseModel):
    """One concrete event instance; immutable once classified."""

    series_id: Optional[str] = None
    start: datetime
    end: datetime
    summary: str = ""
    source_calendar_id: str = ""
    source_provider: ProviderKind = ProviderKind.CALDAV
    all_day: bool = False
    is_blocking: bool = False
    color: Optional[str] = None
    # Generated from a recurrence rule; such instances only count in a window
    # they start in.
    recurring: bool = False

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    @field_serializer("start", "end")
    def _serialize_instant(self, value: datetime) -> str:
        return format_utc_iso(value)

    @property
    def dedup_key(self) -> tuple[str, datetime]:
        """Identity used when merging providers: (series id or summary, start)."""
        return (self.series_id or self.summary, self.start)

    def to_api_dict(self) -> dict[str, Any]:
        """Serialize to the shape returned by the calendar endpoints."""
        return {
            "uid": self.series_id,
            "summary": self.summary,
            "start": format_utc_iso(self.start),
            "end": format_utc_iso(self.end),
            "calendarUrl": self.source_calendar_id,
            "provider": self.source_provider,
            "blocking": self.is_blocking,
            "color": self.color,
            "allDay": self.all_day,
        }


class BusyConfig(BaseModel):
    """Blocking configuration shared by every request.

    Precedence: whitelist, then force-busy, then calendar default. An empty
    ``busy_calendar_ids`` set means every calendar is busy.
    """

    busy_calendar_ids: set[str] = Field(default_factory=set)
    whitelist_ids: set[str] = Field(default_factory=set)
    force_busy_ids: set[str] = Field(default_factory=set)
    calendar_colors: dict[str, str] = Field(default_factory=dict)

    @field_serializer("busy_calendar_ids", "whitelist_ids", "force_busy_ids")
    def _serialize_ids(self, value: set[str]) -> list[str]:
        return sorted(value)

    def is_calendar_busy(self, calendar_id: Optional[str]) -> bool:
        if not self.busy_calendar_ids:
            return True
        if not calendar_id:
            return True
        return calendar_id in self.busy_calendar_ids


class CalendarInfo(BaseModel):
    """A calendar exposed by one provider."""

    id: str = Field(..., description="Calendar identifier (collection URL or rest://id)")
    provider: ProviderKind
    display_name: str = ""
    sync_token: Optional[str] = Field(default=None, description="ctag / sync token if known")

    model_config = ConfigDict(use_enum_values=True)


class CalendarStatus(BaseModel):
    """Per-calendar outcome of one merge."""

    calendar_id: str
    provider: str
    display_name: str = ""
    status: str = "ok"  # "ok", "synced" or "error"
    count: int = 0
    error: Optional[str] = None
    elapsed_ms: int = 0


class MergeResult(BaseModel):
    """Merged occurrences plus the per-calendar status map."""

    occurrences: list[Occurrence] = Field(default_factory=list)
    calendars: dict[str, CalendarStatus] = Field(default_factory=dict)

    @property
    def failed_calendars(self) -> list[str]:
        return [cid for cid, st in self.calendars.items() if st.status == "error"]


class CacheEntry(BaseModel):
    """Stored occurrence list for one (scope, window)."""

    scope: str
    window_start: datetime
    window_end: datetime
    occurrences: list[Occurrence] = Field(default_factory=list)
    calendars: dict[str, CalendarStatus] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=_now_utc)
    ttl_seconds: int = 300

    @property
    def expires_at(self) -> datetime:
        return self.fetched_at + timedelta(seconds=self.ttl_seconds)

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        return (now or _now_utc()) < self.expires_at


class SyncState(BaseModel):
    """Background sync bookkeeping for one provider calendar."""

    provider: str
    calendar_id: str
    display_name: str = ""
    last_sync_at: Optional[datetime] = None
    is_syncing: bool = False
    consecutive_errors: int = 0
    next_sync_at: Optional[datetime] = None
    sync_token: Optional[str] = None
    last_error: Optional[str] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        return not self.is_syncing and (self.next_sync_at is None or self.next_sync_at <= now)

    def covers(self, window_start: datetime, window_end: datetime) -> bool:
        """True when the last successful sync fetched a superset of the window."""
        if self.last_sync_at is None or self.window_start is None or self.window_end is None:
            return False
        return self.window_start <= window_start and window_end <= self.window_end


class AvailabilitySlot(BaseModel):
    """One candidate booking slot."""

    start: datetime
    end: datetime
    available: bool = True

    @field_serializer("start", "end")
    def _serialize_instant(self, value: datetime) -> str:
        return format_utc_iso(value)


class BusinessHours(BaseModel):
    """Opening hours for one weekday, in minutes from local midnight."""

    day_of_week: str
    display_format: str = ""
    open_minutes: Optional[int] = None
    close_minutes: Optional[int] = None
    is_closed: bool = False

    @property
    def is_open(self) -> bool:
        return (
            not self.is_closed
            and self.open_minutes is not None
            and self.close_minutes is not None
            and self.close_minutes > self.open_minutes
        )


class MeetingStatus(str, Enum):
    """Lifecycle of an internally scheduled meeting."""

    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"


class Meeting(BaseModel):
    """Meeting booked through slotsync itself."""

    id: str
    title: str = ""
    start: datetime
    end: datetime
    status: MeetingStatus = MeetingStatus.SCHEDULED
    created_at: datetime = Field(default_factory=_now_utc)

    model_config = ConfigDict(use_enum_values=True)

    @field_serializer("start", "end", "created_at")
    def _serialize_instant(self, value: datetime) -> str:
        return format_utc_iso(value)
