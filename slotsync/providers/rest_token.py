"""Token-authenticated REST calendar provider.

The REST API returns JSON event items; recurring series come back as one
master item carrying a native ``recurrence`` array (``RRULE:`` and
``EXDATE:`` lines), so expansion happens locally like for CalDAV data.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import quote

import httpx
from icalendar.parser import Contentline

from slotsync.calendar.event_parser import parse_rrule_string
from slotsync.core.datetime_utils import (
    format_utc_iso,
    get_business_timezone,
    parse_ical_datetime,
    parse_iso_datetime,
)
from slotsync.exceptions import DateParseError, ProviderError, RecurrenceRuleError
from slotsync.models import CalendarInfo, ProviderKind, RawEvent, RecurrenceRule

from .base import HttpProviderAdapter, RestEventPayload, RestEventTime

logger = logging.getLogger(__name__)

CALENDAR_ID_PREFIX = "rest://"
MAX_PAGES = 50


def to_calendar_id(native_id: str) -> str:
    return f"{CALENDAR_ID_PREFIX}{native_id}"


def to_native_id(calendar_id: str) -> str:
    if calendar_id.startswith(CALENDAR_ID_PREFIX):
        return calendar_id[len(CALENDAR_ID_PREFIX):]
    return calendar_id


class RestTokenAdapter(HttpProviderAdapter):
    """REST calendars behind a bearer access token."""

    name = ProviderKind.REST.value

    def __init__(
        self,
        base_url: str,
        access_token: str,
        calendar_ids: Optional[list[str]] = None,
        tz: Optional[Any] = None,
        default_event_minutes: int = 30,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize REST adapter.

        Args:
            base_url: API root, e.g. ``https://calendar.example.com/v3``
            access_token: Bearer token
            calendar_ids: Fixed native calendar ids; skips calendarList when given
            tz: Business timezone for all-day dates
            default_event_minutes: Duration for items without an end
            client: Explicit httpx client (tests); shared client otherwise
        """
        super().__init__(client)
        self.base_url = base_url.rstrip("/")
        self.calendar_ids = list(calendar_ids or [])
        self.tz = tz or get_business_timezone()
        self.default_event_minutes = default_event_minutes
        self._headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        self._next_sync_tokens: dict[str, str] = {}

    def last_sync_token(self, calendar_id: str) -> Optional[str]:
        """``nextSyncToken`` reported by the last complete event listing."""
        return self._next_sync_tokens.get(calendar_id)

    async def _get_json(self, url: str, calendar_id: str = "", **params: Any) -> dict:
        response = await self._request(
            "GET", url, calendar_id=calendar_id, headers=self._headers, params=params or None
        )
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(
                f"malformed JSON from {url}", provider=self.name, calendar_id=calendar_id
            ) from e
        if not isinstance(payload, dict):
            raise ProviderError(
                f"unexpected payload from {url}", provider=self.name, calendar_id=calendar_id
            )
        return payload

    async def list_calendars(self) -> list[CalendarInfo]:
        if self.calendar_ids:
            return [
                CalendarInfo(id=to_calendar_id(cid), provider=ProviderKind.REST)
                for cid in self.calendar_ids
            ]

        payload = await self._get_json(f"{self.base_url}/users/me/calendarList")
        calendars = []
        for item in payload.get("items") or []:
            native_id = item.get("id") if isinstance(item, dict) else None
            if not native_id:
                continue
            calendars.append(
                CalendarInfo(
                    id=to_calendar_id(native_id),
                    provider=ProviderKind.REST,
                    display_name=item.get("summary") or "",
                    sync_token=item.get("etag"),
                )
            )
        logger.debug("Listed %d REST calendars", len(calendars))
        return calendars

    async def fetch_payloads(
        self, calendar: CalendarInfo, window_start: datetime, window_end: datetime
    ) -> list[RestEventPayload]:
        url = f"{self.base_url}/calendars/{quote(to_native_id(calendar.id), safe='')}/events"
        params = {
            "timeMin": format_utc_iso(window_start),
            "timeMax": format_utc_iso(window_end),
            "singleEvents": "false",
        }
        items: list[RestEventPayload] = []
        page_token = None
        for _ in range(MAX_PAGES):
            if page_token:
                params["pageToken"] = page_token
            payload = await self._get_json(url, calendar_id=calendar.id, **params)
            for raw in payload.get("items") or []:
                try:
                    items.append(RestEventPayload.model_validate(raw))
                except ValueError:
                    logger.debug("Skipping malformed REST item in %s", calendar.id)
            page_token = payload.get("nextPageToken")
            if not page_token:
                if payload.get("nextSyncToken"):
                    self._next_sync_tokens[calendar.id] = payload["nextSyncToken"]
                break
        else:
            logger.warning("Stopped paging %s after %d pages", calendar.id, MAX_PAGES)
        return items

    async def fetch_events(
        self, calendar: CalendarInfo, window_start: datetime, window_end: datetime
    ) -> list[RawEvent]:
        events = []
        for item in await self.fetch_payloads(calendar, window_start, window_end):
            event = self.to_raw_event(item, calendar.id)
            if event is not None:
                events.append(event)
        logger.debug("Fetched %d REST events from %s", len(events), calendar.id)
        return events

    # ----------------------------------------------------------- conversion

    def _parse_time(self, value: Optional[RestEventTime]) -> tuple[Optional[datetime], bool]:
        if value is None:
            return None, False
        if value.date_time:
            return parse_iso_datetime(value.date_time), False
        if value.date:
            return parse_ical_datetime(value.date.replace("-", ""), self.tz), True
        return None, False

    def to_raw_event(self, item: RestEventPayload, calendar_id: str) -> Optional[RawEvent]:
        """Convert one REST item; None when the item cannot be used.

        A cancelled instance of a recurring series becomes a cancelled
        override so the series skips that slot; other cancelled items are
        dropped.
        """
        cancelled = (item.status or "").lower() == "cancelled"
        try:
            recurrence_id, _ = self._parse_time(item.original_start_time)
            if cancelled and not (item.recurring_event_id and recurrence_id):
                return None
            start, all_day = self._parse_time(item.start)
            if start is None and cancelled:
                start = recurrence_id
            if start is None:
                logger.debug("Skipping REST item %s without start", item.id)
                return None
            end, _ = self._parse_time(item.end)
        except DateParseError:
            logger.debug("Skipping REST item %s with unparseable dates", item.id)
            return None

        if end is None:
            end = start + (
                timedelta(days=1) if all_day else timedelta(minutes=self.default_event_minutes)
            )

        rule, exception_dates = self._parse_recurrence(item.recurrence)
        return RawEvent(
            id=item.recurring_event_id or item.id,
            summary=item.summary or "(No Title)",
            start=start,
            end=end,
            all_day=all_day,
            recurrence_rule=rule,
            exception_dates=exception_dates,
            recurrence_id=recurrence_id if item.recurring_event_id else None,
            cancelled=cancelled,
            source_calendar_id=calendar_id,
            source_provider=ProviderKind.REST,
        )

    def _parse_recurrence(
        self, lines: list[str]
    ) -> tuple[Optional[RecurrenceRule], set[datetime]]:
        rule = None
        exception_dates: set[datetime] = set()
        for line in lines:
            try:
                name, params, value = Contentline(line).parts()
            except ValueError:
                logger.debug("Skipping malformed recurrence line %r", line)
                continue
            name = name.upper()
            if name == "RRULE" and rule is None:
                try:
                    rule = parse_rrule_string(value, self.tz)
                except RecurrenceRuleError as e:
                    logger.warning("Treating REST event as one-off, bad RRULE: %s", e)
            elif name == "EXDATE":
                tzid = params.get("TZID")
                for chunk in value.split(","):
                    try:
                        exception_dates.add(parse_ical_datetime(chunk.strip(), self.tz, tzid))
                    except DateParseError:
                        logger.debug("Ignoring unparseable EXDATE %r", chunk)
        return rule, exception_dates
