"""CalDAV provider adapter.

Calendars are either configured explicitly (collection URLs) or discovered
with a ``PROPFIND`` on the account URL. Events come from a ``REPORT``
calendar-query restricted to the requested time range; every returned
``calendar-data`` body goes through the EventParser.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET  # nosec B405 - responses from configured provider
from datetime import datetime
from typing import Optional
from urllib.parse import urljoin

import httpx

from slotsync.calendar.event_parser import EventParser
from slotsync.exceptions import ProviderError
from slotsync.models import CalendarInfo, ProviderKind, RawEvent

from .base import CalDavObject, HttpProviderAdapter

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"
CS_NS = "http://calendarserver.org/ns/"

_NS = {"d": DAV_NS, "c": CALDAV_NS, "cs": CS_NS}

PROPFIND_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:cs="http://calendarserver.org/ns/">
  <d:prop>
    <d:resourcetype/>
    <d:displayname/>
    <cs:getctag/>
  </d:prop>
</d:propfind>"""

REPORT_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag/>
    <c:calendar-data/>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}"/>
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""


def _caldav_stamp(value: datetime) -> str:
    return value.strftime("%Y%m%dT%H%M%SZ")


def _parse_multistatus(body: bytes, url: str) -> ET.Element:
    try:
        return ET.fromstring(body)  # nosec B314
    except ET.ParseError as e:
        raise ProviderError(f"malformed XML from {url}: {e}", provider="caldav") from e


def parse_calendar_collections(body: bytes, base_url: str) -> list[CalendarInfo]:
    """Extract calendar collections from a PROPFIND multistatus body."""
    root = _parse_multistatus(body, base_url)
    calendars: list[CalendarInfo] = []
    for response in root.findall("d:response", _NS):
        href = response.findtext("d:href", default="", namespaces=_NS).strip()
        if not href:
            continue
        for propstat in response.findall("d:propstat", _NS):
            status = propstat.findtext("d:status", default="", namespaces=_NS)
            if status and " 200 " not in f"{status} ":
                continue
            prop = propstat.find("d:prop", _NS)
            if prop is None:
                continue
            resourcetype = prop.find("d:resourcetype", _NS)
            if resourcetype is None or resourcetype.find("c:calendar", _NS) is None:
                continue
            calendars.append(
                CalendarInfo(
                    id=urljoin(base_url, href),
                    provider=ProviderKind.CALDAV,
                    display_name=(prop.findtext("d:displayname", default="", namespaces=_NS)
                                  or "").strip(),
                    sync_token=(prop.findtext("cs:getctag", default="", namespaces=_NS)
                                or None),
                )
            )
            break
    return calendars


def parse_calendar_objects(body: bytes, url: str) -> list[CalDavObject]:
    """Extract calendar objects from a REPORT multistatus body."""
    root = _parse_multistatus(body, url)
    objects: list[CalDavObject] = []
    for response in root.findall("d:response", _NS):
        href = response.findtext("d:href", default="", namespaces=_NS).strip()
        data = None
        etag = None
        for propstat in response.findall("d:propstat", _NS):
            prop = propstat.find("d:prop", _NS)
            if prop is None:
                continue
            data = prop.findtext("c:calendar-data", default=data, namespaces=_NS)
            etag = prop.findtext("d:getetag", default=etag, namespaces=_NS)
        if data:
            objects.append(CalDavObject(href=href, etag=etag, calendar_data=data))
    return objects


class CalDavAdapter(HttpProviderAdapter):
    """CalDAV calendars over HTTP Basic auth."""

    name = ProviderKind.CALDAV.value

    def __init__(
        self,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        calendar_urls: Optional[list[str]] = None,
        parser: Optional[EventParser] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize CalDAV adapter.

        Args:
            base_url: Account or calendar-home URL used for discovery
            username: Basic auth user
            password: Basic auth password
            calendar_urls: Fixed collection URLs; skips discovery when given
            parser: EventParser for calendar-data bodies
            client: Explicit httpx client (tests); shared client otherwise
        """
        super().__init__(client)
        self.base_url = base_url
        self.calendar_urls = list(calendar_urls or [])
        self.parser = parser or EventParser()
        self._auth = httpx.BasicAuth(username, password or "") if username else None

    async def list_calendars(self) -> list[CalendarInfo]:
        if self.calendar_urls:
            return [
                CalendarInfo(id=urljoin(self.base_url, url), provider=ProviderKind.CALDAV)
                for url in self.calendar_urls
            ]

        response = await self._request(
            "PROPFIND",
            self.base_url,
            content=PROPFIND_BODY,
            headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
            auth=self._auth,
        )
        calendars = parse_calendar_collections(response.content, self.base_url)
        logger.debug("Discovered %d CalDAV calendars at %s", len(calendars), self.base_url)
        return calendars

    async def fetch_objects(
        self, calendar: CalendarInfo, window_start: datetime, window_end: datetime
    ) -> list[CalDavObject]:
        body = REPORT_TEMPLATE.format(
            start=_caldav_stamp(window_start), end=_caldav_stamp(window_end)
        )
        response = await self._request(
            "REPORT",
            calendar.id,
            calendar_id=calendar.id,
            content=body,
            headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
            auth=self._auth,
        )
        try:
            return parse_calendar_objects(response.content, calendar.id)
        except ProviderError as e:
            e.calendar_id = calendar.id
            raise

    async def fetch_events(
        self, calendar: CalendarInfo, window_start: datetime, window_end: datetime
    ) -> list[RawEvent]:
        events: list[RawEvent] = []
        for obj in await self.fetch_objects(calendar, window_start, window_end):
            events.extend(self.to_raw_events(obj, calendar.id))
        logger.debug("Fetched %d CalDAV events from %s", len(events), calendar.id)
        return events

    def to_raw_events(self, obj: CalDavObject, calendar_id: str) -> list[RawEvent]:
        """Convert one calendar object resource into RawEvents."""
        return self.parser.parse(obj.calendar_data, calendar_id, ProviderKind.CALDAV)
