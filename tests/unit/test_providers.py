"""Tests for the CalDAV and REST provider adapters (httpx MockTransport)."""

import json

import httpx
import pytest

from conftest import make_calendar, utc
from slotsync.exceptions import ProviderError
from slotsync.providers.base import ProviderAdapter, RestEventPayload
from slotsync.providers.caldav import (
    CalDavAdapter,
    parse_calendar_collections,
    parse_calendar_objects,
)
from slotsync.providers.rest_token import RestTokenAdapter, to_calendar_id, to_native_id

pytestmark = pytest.mark.unit

DAV_BASE = "https://dav.example.com/dav/calendars/alice/"

PROPFIND_RESPONSE = """<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav"
               xmlns:cs="http://calendarserver.org/ns/">
  <d:response>
    <d:href>/dav/calendars/alice/</d:href>
    <d:propstat>
      <d:prop>
        <d:resourcetype><d:collection/></d:resourcetype>
        <d:displayname>Home</d:displayname>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/dav/calendars/alice/work/</d:href>
    <d:propstat>
      <d:prop>
        <d:resourcetype><d:collection/><c:calendar/></d:resourcetype>
        <d:displayname>Work</d:displayname>
        <cs:getctag>ctag-7</cs:getctag>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""

REPORT_RESPONSE = """<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/dav/calendars/alice/work/standup.ics</d:href>
    <d:propstat>
      <d:prop>
        <d:getetag>"etag-1"</d:getetag>
        <c:calendar-data>BEGIN:VCALENDAR
VERSION:2.0
BEGIN:VEVENT
UID:standup
DTSTART:20240115T160000Z
DTEND:20240115T161500Z
SUMMARY:Standup
RRULE:FREQ=DAILY;COUNT=3
END:VEVENT
END:VCALENDAR
</c:calendar-data>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/dav/calendars/alice/work/empty.ics</d:href>
    <d:propstat>
      <d:prop><d:getetag>"etag-2"</d:getetag></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""


class Recorder:
    """MockTransport handler serving canned responses in order."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def _xml(body: str, status: int = 207) -> httpx.Response:
    return httpx.Response(status, content=body.encode("utf-8"))


class TestCalDavParsing:
    def test_parse_collections_when_mixed_resources_then_calendars_only(self) -> None:
        calendars = parse_calendar_collections(PROPFIND_RESPONSE.encode(), DAV_BASE)
        assert len(calendars) == 1
        assert calendars[0].id == "https://dav.example.com/dav/calendars/alice/work/"
        assert calendars[0].display_name == "Work"
        assert calendars[0].sync_token == "ctag-7"
        assert calendars[0].provider == "caldav"

    def test_parse_objects_when_missing_calendar_data_then_skipped(self) -> None:
        objects = parse_calendar_objects(REPORT_RESPONSE.encode(), DAV_BASE)
        assert [o.href for o in objects] == ["/dav/calendars/alice/work/standup.ics"]
        assert objects[0].etag == '"etag-1"'
        assert "UID:standup" in objects[0].calendar_data

    def test_parse_when_malformed_xml_then_provider_error(self) -> None:
        with pytest.raises(ProviderError):
            parse_calendar_objects(b"<not-xml", DAV_BASE)


class TestCalDavAdapter:
    def test_adapter_when_constructed_then_satisfies_protocol(self) -> None:
        assert isinstance(CalDavAdapter(DAV_BASE), ProviderAdapter)

    async def test_list_calendars_when_urls_configured_then_no_request(self) -> None:
        recorder = Recorder()
        adapter = CalDavAdapter(DAV_BASE, calendar_urls=["work/"], client=recorder.client())

        calendars = await adapter.list_calendars()

        assert [c.id for c in calendars] == [DAV_BASE + "work/"]
        assert recorder.requests == []

    async def test_list_calendars_when_discovering_then_propfind_with_auth(self) -> None:
        recorder = Recorder(_xml(PROPFIND_RESPONSE))
        adapter = CalDavAdapter(DAV_BASE, "alice", "pw", client=recorder.client())

        calendars = await adapter.list_calendars()

        request = recorder.requests[0]
        assert request.method == "PROPFIND"
        assert request.headers["Depth"] == "1"
        assert request.headers["Authorization"].startswith("Basic ")
        assert [c.display_name for c in calendars] == ["Work"]

    async def test_fetch_events_when_report_then_time_range_and_parsed_events(self) -> None:
        recorder = Recorder(_xml(REPORT_RESPONSE))
        adapter = CalDavAdapter(DAV_BASE, client=recorder.client())
        calendar = make_calendar(DAV_BASE + "work/")

        events = await adapter.fetch_events(calendar, utc(2024, 1, 15), utc(2024, 1, 22))

        request = recorder.requests[0]
        assert request.method == "REPORT"
        assert str(request.url) == DAV_BASE + "work/"
        assert b'start="20240115T000000Z"' in request.content
        assert b'end="20240122T000000Z"' in request.content
        assert len(events) == 1
        assert events[0].id == "standup"
        assert events[0].recurrence_rule.count == 3
        assert events[0].source_calendar_id == DAV_BASE + "work/"

    async def test_fetch_events_when_unauthorized_then_provider_error(self) -> None:
        recorder = Recorder(httpx.Response(401))
        adapter = CalDavAdapter(DAV_BASE, client=recorder.client())
        calendar = make_calendar(DAV_BASE + "work/")

        with pytest.raises(ProviderError) as exc_info:
            await adapter.fetch_events(calendar, utc(2024, 1, 15), utc(2024, 1, 22))
        assert "401" in str(exc_info.value)
        assert exc_info.value.calendar_id == DAV_BASE + "work/"

    async def test_fetch_events_when_connection_fails_then_provider_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        adapter = CalDavAdapter(
            DAV_BASE, client=httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        )
        with pytest.raises(ProviderError):
            await adapter.list_calendars()


REST_BASE = "https://api.example.com/v3"


def _json(payload, status: int = 200) -> httpx.Response:
    return httpx.Response(status, content=json.dumps(payload).encode("utf-8"),
                          headers={"Content-Type": "application/json"})


class TestRestTokenAdapter:
    def _adapter(self, recorder: Recorder, **kwargs) -> RestTokenAdapter:
        return RestTokenAdapter(REST_BASE, "secret-token", client=recorder.client(), **kwargs)

    def test_calendar_id_helpers_when_round_trip_then_native_id(self) -> None:
        assert to_calendar_id("primary") == "rest://primary"
        assert to_native_id("rest://primary") == "primary"
        assert to_native_id("plain") == "plain"

    async def test_list_calendars_when_listing_then_bearer_and_etag(self) -> None:
        recorder = Recorder(
            _json({"items": [{"id": "primary", "summary": "Main", "etag": "e1"}, {"summary": "x"}]})
        )

        calendars = await self._adapter(recorder).list_calendars()

        request = recorder.requests[0]
        assert request.url.path == "/v3/users/me/calendarList"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert [(c.id, c.display_name, c.sync_token) for c in calendars] == [
            ("rest://primary", "Main", "e1")
        ]

    async def test_list_calendars_when_ids_configured_then_no_request(self) -> None:
        recorder = Recorder()
        calendars = await self._adapter(recorder, calendar_ids=["a@example.com"]).list_calendars()
        assert [c.id for c in calendars] == ["rest://a@example.com"]
        assert recorder.requests == []

    async def test_fetch_events_when_paged_then_all_pages_and_sync_token(self) -> None:
        recorder = Recorder(
            _json(
                {
                    "items": [{"id": "a", "summary": "A",
                               "start": {"dateTime": "2024-01-15T09:00:00-07:00"},
                               "end": {"dateTime": "2024-01-15T10:00:00-07:00"}}],
                    "nextPageToken": "page-2",
                }
            ),
            _json(
                {
                    "items": [{"id": "b", "start": {"dateTime": "2024-01-15T18:00:00Z"}}],
                    "nextSyncToken": "sync-1",
                }
            ),
        )
        adapter = self._adapter(recorder)
        calendar = make_calendar("rest://team@example.com", "rest")

        events = await adapter.fetch_events(calendar, utc(2024, 1, 15), utc(2024, 1, 16))

        assert [e.id for e in events] == ["a", "b"]
        assert events[0].start == utc(2024, 1, 15, 16)
        assert events[1].summary == "(No Title)"
        assert events[1].end == utc(2024, 1, 15, 18, 30)
        assert recorder.requests[0].url.path == "/v3/calendars/team@example.com/events"
        assert recorder.requests[0].url.params["timeMin"] == "2024-01-15T00:00:00.000Z"
        assert "pageToken" not in recorder.requests[0].url.params
        assert recorder.requests[1].url.params["pageToken"] == "page-2"
        assert adapter.last_sync_token("rest://team@example.com") == "sync-1"

    async def test_fetch_events_when_recurrence_then_rule_and_exdates(self) -> None:
        recorder = Recorder(
            _json(
                {
                    "items": [
                        {
                            "id": "series",
                            "summary": "Weekly",
                            "start": {"dateTime": "2024-01-15T16:00:00Z"},
                            "end": {"dateTime": "2024-01-15T16:30:00Z"},
                            "recurrence": [
                                "RRULE:FREQ=WEEKLY;BYDAY=MO",
                                "EXDATE:20240122T160000Z",
                                "not a line",
                            ],
                        }
                    ]
                }
            )
        )
        events = await self._adapter(recorder).fetch_events(
            make_calendar("rest://primary", "rest"), utc(2024, 1, 1), utc(2024, 2, 1)
        )

        assert events[0].recurrence_rule.frequency == "WEEKLY"
        assert events[0].recurrence_rule.by_weekday == ["MO"]
        assert events[0].exception_dates == {utc(2024, 1, 22, 16)}

    async def test_fetch_events_when_cancelled_items_then_override_or_dropped(self) -> None:
        recorder = Recorder(
            _json(
                {
                    "items": [
                        {
                            "id": "series_20240122",
                            "status": "cancelled",
                            "recurringEventId": "series",
                            "originalStartTime": {"dateTime": "2024-01-22T16:00:00Z"},
                        },
                        {"id": "gone", "status": "cancelled"},
                    ]
                }
            )
        )
        events = await self._adapter(recorder).fetch_events(
            make_calendar("rest://primary", "rest"), utc(2024, 1, 1), utc(2024, 2, 1)
        )

        assert len(events) == 1
        assert events[0].id == "series"
        assert events[0].cancelled
        assert events[0].recurrence_id == utc(2024, 1, 22, 16)

    async def test_fetch_events_when_all_day_then_local_midnight_span(self, business_tz) -> None:
        recorder = Recorder(
            _json({"items": [{"id": "h", "start": {"date": "2024-01-15"},
                              "end": {"date": "2024-01-16"}}]})
        )
        events = await self._adapter(recorder, tz=business_tz).fetch_events(
            make_calendar("rest://primary", "rest"), utc(2024, 1, 1), utc(2024, 2, 1)
        )
        assert events[0].all_day
        assert events[0].start == utc(2024, 1, 15, 7)
        assert events[0].end == utc(2024, 1, 16, 7)

    async def test_fetch_events_when_unauthorized_then_provider_error(self) -> None:
        recorder = Recorder(_json({"error": "invalid_token"}, status=401))
        with pytest.raises(ProviderError) as exc_info:
            await self._adapter(recorder).fetch_events(
                make_calendar("rest://primary", "rest"), utc(2024, 1, 1), utc(2024, 2, 1)
            )
        assert exc_info.value.provider == "rest"

    async def test_fetch_events_when_not_json_then_provider_error(self) -> None:
        recorder = Recorder(httpx.Response(200, content=b"<html>maintenance</html>"))
        with pytest.raises(ProviderError):
            await self._adapter(recorder).list_calendars()

    def test_payload_when_aliases_then_fields_populated(self) -> None:
        payload = RestEventPayload.model_validate(
            {"id": "x", "recurringEventId": "s", "originalStartTime": {"date": "2024-01-15"},
             "unknown": 1}
        )
        assert payload.recurring_event_id == "s"
        assert payload.original_start_time.date == "2024-01-15"
        assert payload.kind == "rest"
