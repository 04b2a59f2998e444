"""HTTP-level tests for the slotsync aiohttp application."""

import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from conftest import FakeAdapter, make_calendar, make_event, utc
from slotsync.api.server import _make_app, _serve
from slotsync.config_loader import Config
from slotsync.core.dependencies import DependencyContainer
from slotsync.exceptions import ProviderError

pytestmark = pytest.mark.integration

WEEK = "/calendar/week?start=2024-01-15&end=2024-01-21"


def _adapters() -> list[FakeAdapter]:
    return [
        FakeAdapter(
            "caldav",
            [
                make_calendar("dav-work", display_name="Work"),
                make_calendar("dav-personal", display_name="Personal"),
            ],
            {
                # 09:00-09:30 and 11:00-12:00 Denver time
                "dav-work": [make_event("standup", utc(2024, 1, 15, 16), utc(2024, 1, 15, 16, 30),
                                        summary="Standup")],
                "dav-personal": [make_event("gym", utc(2024, 1, 15, 18), utc(2024, 1, 15, 19),
                                            summary="Gym")],
            },
        )
    ]


def _config(tmp_path, **overrides) -> Config:
    data = {
        "database_path": str(tmp_path / "api.db"),
        "business_timezone": "America/Denver",
        "business_hours": {"monday": "9am - 5pm", "sunday": "closed"},
    }
    data.update(overrides)
    return Config.from_dict(data)


@pytest.fixture
async def client(tmp_path):
    deps = DependencyContainer.build_dependencies(_config(tmp_path), adapters=_adapters())
    async with TestClient(TestServer(_make_app(deps))) as test_client:
        yield test_client
    await deps.cache.close()


def _ids(body) -> list[str]:
    return [e["uid"] for e in body["events"]]


class TestCalendarViews:
    async def test_day_when_valid_date_then_all_events(self, client) -> None:
        resp = await client.get("/calendar/day?date=2024-01-15")
        body = await resp.json()

        assert resp.status == 200
        assert body["date"] == "2024-01-15"
        assert _ids(body) == ["standup", "gym"]
        assert body["events"][0]["start"] == "2024-01-15T16:00:00.000Z"
        assert body["events"][0]["calendarUrl"] == "dav-work"
        assert body["events"][0]["blocking"] is True
        assert body["cached"] is False

    async def test_day_when_requested_twice_then_served_from_cache(self, client) -> None:
        await client.get("/calendar/day?date=2024-01-15")
        body = await (await client.get("/calendar/day?date=2024-01-15")).json()
        assert body["cached"] is True

    @pytest.mark.parametrize("query", ["", "?date=2024-13-01", "?date=yesterday"])
    async def test_day_when_invalid_date_then_400(self, client, query: str) -> None:
        resp = await client.get(f"/calendar/day{query}")
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_date"

    async def test_week_when_valid_then_local_range_inclusive_of_end(self, client) -> None:
        body = await (await client.get(WEEK)).json()
        assert body["range"] == {
            "start": "2024-01-15T07:00:00.000Z",
            "end": "2024-01-22T07:00:00.000Z",
        }
        assert _ids(body) == ["standup", "gym"]

    @pytest.mark.parametrize(
        "query", ["start=2024-01-21&end=2024-01-15", "start=2024-01-15", "start=x&end=y"]
    )
    async def test_week_when_invalid_range_then_400(self, client, query: str) -> None:
        resp = await client.get(f"/calendar/week?{query}")
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_start_or_end_date"

    async def test_month_when_valid_then_month_range(self, client) -> None:
        body = await (await client.get("/calendar/month?year=2024&month=1")).json()
        assert body["range"]["start"] == "2024-01-01T07:00:00.000Z"
        assert body["range"]["end"] == "2024-02-01T07:00:00.000Z"
        assert len(body["events"]) == 2

    @pytest.mark.parametrize("query", ["year=2024&month=13", "year=2024", "year=abc&month=1"])
    async def test_month_when_invalid_then_400(self, client, query: str) -> None:
        resp = await client.get(f"/calendar/month?{query}")
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_year_month"

    async def test_week_when_debug_then_per_calendar_diagnostics(self, client) -> None:
        body = await (await client.get(WEEK + "&debug=1")).json()
        statuses = {d["calendarUrl"]: d["status"] for d in body["debug"]}
        assert statuses == {"dav-work": "ok", "dav-personal": "ok"}

    async def test_week_when_debug_on_cached_read_then_diagnostics_kept(self, client) -> None:
        await client.get(WEEK + "&debug=1")
        body = await (await client.get(WEEK + "&debug=1")).json()

        assert body["cached"] is True
        assert sorted(d["calendarUrl"] for d in body["debug"]) == ["dav-personal", "dav-work"]
        assert {d["count"] for d in body["debug"]} == {1}

    async def test_request_when_id_supplied_then_echoed(self, client) -> None:
        resp = await client.get(WEEK, headers={"X-Request-ID": "req-42"})
        assert resp.headers["X-Request-ID"] == "req-42"


class TestBusyConfiguration:
    async def test_get_config_when_default_then_every_calendar_busy(self, client) -> None:
        body = await (await client.get("/calendar/config")).json()
        assert [(c["url"], c["busy"]) for c in body["calendars"]] == [
            ("dav-work", True),
            ("dav-personal", True),
        ]
        assert body["whitelist"] == []
        assert body["providerErrors"] == {}

    async def test_post_config_when_busy_subset_then_list_views_hide_others(self, client) -> None:
        resp = await client.post(
            "/calendar/config",
            json={"busy": ["dav-work"], "colors": {"dav-work": "ff0000", "dav-personal": "red"}},
        )
        body = await resp.json()

        assert resp.status == 200
        assert body["colors"] == {"dav-work": "#ff0000"}
        assert [(c["url"], c["busy"]) for c in body["calendars"]] == [
            ("dav-work", True),
            ("dav-personal", False),
        ]
        week = await (await client.get(WEEK)).json()
        assert _ids(week) == ["standup"]
        assert week["events"][0]["color"] == "#ff0000"
        day = await (await client.get("/calendar/day?date=2024-01-15")).json()
        assert _ids(day) == ["standup", "gym"]
        assert day["events"][1]["blocking"] is False

    async def test_post_config_when_busy_not_list_then_400(self, client) -> None:
        resp = await client.post("/calendar/config", json={"busy": "dav-work"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_busy"

    async def test_post_config_when_body_not_json_then_400(self, client) -> None:
        resp = await client.post("/calendar/config", data="not json",
                                 headers={"Content-Type": "application/json"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_json"

    async def test_whitelist_when_added_then_blocking_only_excludes_it(self, client) -> None:
        resp = await client.post("/calendar/whitelist", json={"uid": "standup", "action": "add"})
        assert (await resp.json())["whitelist"] == ["standup"]

        week = await (await client.get(WEEK + "&blockingOnly=1")).json()
        assert _ids(week) == ["gym"]

    async def test_event_busy_when_added_then_hidden_calendar_event_shown(self, client) -> None:
        await client.post("/calendar/config", json={"busy": ["dav-work"]})
        resp = await client.post("/calendar/event-busy", json={"uid": "gym", "action": "add"})
        assert (await resp.json())["forceBusy"] == ["gym"]

        week = await (await client.get(WEEK)).json()
        assert _ids(week) == ["standup", "gym"]
        assert week["events"][1]["blocking"] is True

    @pytest.mark.parametrize(
        ("payload", "code"),
        [
            ({"action": "add"}, "uid_and_action_required"),
            ({"uid": "x"}, "uid_and_action_required"),
            ({"uid": "x", "action": "toggle"}, "invalid_action"),
        ],
    )
    async def test_whitelist_when_invalid_body_then_400(self, client, payload, code) -> None:
        resp = await client.post("/calendar/whitelist", json=payload)
        assert resp.status == 400
        assert (await resp.json())["error"] == code

    async def test_cache_clear_when_entries_then_cleared(self, client) -> None:
        await client.get(WEEK)
        body = await (await client.post("/calendar/cache/clear")).json()
        assert body == {"ok": True, "cleared": 1}
        assert (await (await client.get(WEEK)).json())["cached"] is False


class TestAvailabilityAndAdmin:
    async def test_availability_when_event_then_first_slot_busy(self, client) -> None:
        resp = await client.get("/availability?date=2024-01-15&duration=30")
        body = await resp.json()

        assert resp.status == 200
        assert len(body["slots"]) == 16
        assert body["slots"][0] == {
            "start": "2024-01-15T16:00:00.000Z",
            "end": "2024-01-15T16:30:00.000Z",
            "available": False,
        }
        assert body["openMinutes"] == 540

    async def test_availability_when_closed_day_then_empty(self, client) -> None:
        body = await (await client.get("/availability?date=2024-01-14")).json()
        assert body["slots"] == []
        assert body["openMinutes"] is None

    @pytest.mark.parametrize(
        ("query", "code"),
        [
            ("date=bad", "invalid_date"),
            ("date=2024-01-15&duration=abc", "invalid_duration"),
            ("date=2024-01-15&buffer=1.5", "invalid_buffer"),
        ],
    )
    async def test_availability_when_invalid_query_then_400(self, client, query, code) -> None:
        resp = await client.get(f"/availability?{query}")
        assert resp.status == 400
        assert (await resp.json())["error"] == code

    async def test_hours_when_updated_then_returned(self, client) -> None:
        resp = await client.put("/hours/mon", json={"displayFormat": "10am - 4pm"})
        assert (await resp.json())["hours"]["openMinutes"] == 600

        body = await (await client.get("/hours")).json()
        assert body["hours"][0]["dayOfWeek"] == "monday"
        assert body["hours"][0]["closeMinutes"] == 960

    @pytest.mark.parametrize(
        ("path", "payload", "code"),
        [
            ("/hours/monday", {"displayFormat": "5pm - 9am"}, "invalid_hours"),
            ("/hours/monday", {"isClosed": "yes"}, "invalid_hours"),
            ("/hours/caturday", {"displayFormat": "9am - 5pm"}, "invalid_day"),
        ],
    )
    async def test_hours_when_invalid_then_400(self, client, path, payload, code) -> None:
        resp = await client.put(path, json=payload)
        assert resp.status == 400
        assert (await resp.json())["error"] == code

    async def test_meetings_when_created_then_listed_blocking_and_cancellable(
        self, client
    ) -> None:
        resp = await client.post(
            "/meetings",
            json={"title": "Intro", "start": "2024-01-15T20:00:00Z", "end": "2024-01-15T21:00:00Z"},
        )
        assert resp.status == 201
        meeting = (await resp.json())["meeting"]
        assert meeting["status"] == "scheduled"

        listed = await (await client.get("/meetings?start=2024-01-15T00:00:00Z")).json()
        assert [m["id"] for m in listed["meetings"]] == [meeting["id"]]

        slots = (await (await client.get("/availability?date=2024-01-15&duration=60")).json())[
            "slots"
        ]
        assert [s["available"] for s in slots][4] is False

        resp = await client.delete(f"/meetings/{meeting['id']}")
        assert (await resp.json()) == {"ok": True, "id": meeting["id"]}
        cancelled = await (await client.get("/meetings?status=cancelled")).json()
        assert [m["id"] for m in cancelled["meetings"]] == [meeting["id"]]

    async def test_meetings_when_unknown_id_then_404(self, client) -> None:
        resp = await client.delete("/meetings/nope")
        assert resp.status == 404
        assert (await resp.json())["error"] == "meeting_not_found"

    @pytest.mark.parametrize(
        "payload",
        [
            {"start": "2024-01-15T20:00:00Z"},
            {"start": "2024-01-15T20:00:00Z", "end": "2024-01-15T19:00:00Z"},
            {"start": "noon", "end": "2024-01-15T21:00:00Z"},
        ],
    )
    async def test_meetings_when_invalid_then_400(self, client, payload) -> None:
        resp = await client.post("/meetings", json=payload)
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_range"


class TestSyncAndHealth:
    async def test_health_when_never_synced_then_degraded(self, client) -> None:
        resp = await client.get("/health")
        body = await resp.json()
        assert resp.status == 503
        assert body["status"] == "degraded"
        assert body["sync"]["running"] is False
        assert "uptime_s" in body["server_status"]

    async def test_sync_trigger_when_called_then_health_ok(self, client) -> None:
        resp = await client.post("/calendar/sync/trigger")
        body = await resp.json()
        assert body["ok"] is True
        assert body["summary"]["synced"] == 2

        health = await client.get("/health")
        assert health.status == 200
        health_body = await health.json()
        assert health_body["data_status"]["calendar_count"] == 2
        assert health_body["sync"]["last_tick"]["synced"] == 2

    async def test_sync_status_when_synced_then_calendars_reported(self, client) -> None:
        await client.post("/calendar/sync/trigger")
        body = await (await client.get("/calendar/sync/status")).json()
        assert sorted(c["calendar_id"] for c in body["calendars"]) == ["dav-personal", "dav-work"]
        assert body["concurrency"] == 3

    async def test_sync_reset_when_called_then_everything_resynced(self, client) -> None:
        await client.post("/calendar/sync/trigger")
        body = await (await client.post("/calendar/sync/reset")).json()
        assert body["summary"]["synced"] == 2


class TestProviderFailures:
    async def test_week_when_every_calendar_fails_then_502(self, tmp_path) -> None:
        adapter = FakeAdapter(
            "caldav", [make_calendar("down")], errors={"down": ProviderError("HTTP 500")}
        )
        deps = DependencyContainer.build_dependencies(_config(tmp_path), adapters=[adapter])
        async with TestClient(TestServer(_make_app(deps))) as client:
            resp = await client.get(WEEK)
            body = await resp.json()
        assert resp.status == 502
        assert body["error"] == "providers_unavailable"
        assert "down" in body["calendars"]

    async def test_week_when_one_calendar_fails_then_partial_200(self, tmp_path) -> None:
        adapters = _adapters()
        adapters[0].errors["dav-personal"] = ProviderError("HTTP 500")
        deps = DependencyContainer.build_dependencies(_config(tmp_path), adapters=adapters)
        async with TestClient(TestServer(_make_app(deps))) as client:
            body = await (await client.get(WEEK + "&debug=1")).json()
        assert _ids(body) == ["standup"]
        assert {d["calendarUrl"]: d["status"] for d in body["debug"]}["dav-personal"] == "error"


class TestAdminToken:
    @pytest.fixture
    async def secured(self, tmp_path):
        deps = DependencyContainer.build_dependencies(
            _config(tmp_path, admin_bearer_token="s3cret"), adapters=_adapters()
        )
        async with TestClient(TestServer(_make_app(deps))) as test_client:
            yield test_client

    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("post", "/calendar/config"),
            ("post", "/calendar/whitelist"),
            ("post", "/calendar/cache/clear"),
            ("post", "/calendar/sync/trigger"),
            ("put", "/hours/monday"),
            ("post", "/meetings"),
            ("delete", "/meetings/x"),
        ],
    )
    async def test_mutation_when_token_missing_then_401(self, secured, method, path) -> None:
        resp = await getattr(secured, method)(path, json={})
        assert resp.status == 401
        assert (await resp.json())["error"] == "unauthorized"

    async def test_mutation_when_token_valid_then_allowed(self, secured) -> None:
        resp = await secured.post(
            "/calendar/whitelist",
            json={"uid": "standup", "action": "add"},
            headers={"Authorization": "Bearer s3cret"},
        )
        assert resp.status == 200

    async def test_read_when_token_missing_then_allowed(self, secured) -> None:
        assert (await secured.get("/calendar/config")).status == 200


class TestServe:
    async def test_serve_when_stop_event_set_then_shuts_down_cleanly(self, tmp_path) -> None:
        stop = asyncio.Event()
        config = _config(tmp_path, server_bind="127.0.0.1", server_port=0)

        task = asyncio.create_task(_serve(config, external_stop_event=stop))
        await asyncio.sleep(0.2)
        assert not task.done()
        stop.set()
        await asyncio.wait_for(task, timeout=5)
