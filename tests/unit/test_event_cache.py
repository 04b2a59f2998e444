"""Tests for slotsync.cache.event_cache."""

import asyncio

import pytest

from conftest import utc
from slotsync.cache.event_cache import EventCache, make_cache_key
from slotsync.models import CalendarStatus, MergeResult, Occurrence

pytestmark = pytest.mark.unit

WINDOW = (utc(2024, 1, 15), utc(2024, 1, 16))


def _occ(series_id: str) -> Occurrence:
    return Occurrence(series_id=series_id, start=utc(2024, 1, 15, 16), end=utc(2024, 1, 15, 17))


def _merged(*series_ids: str) -> MergeResult:
    return MergeResult(
        occurrences=[_occ(s) for s in series_ids],
        calendars={"cal-a": CalendarStatus(calendar_id="cal-a", provider="caldav", count=1)},
    )


class CountingFetcher:
    def __init__(self, *batches: list[Occurrence], delay: float = 0) -> None:
        self.batches = list(batches)
        self.calls = 0
        self.delay = delay

    async def __call__(self) -> list[Occurrence]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.batches[min(self.calls, len(self.batches)) - 1]


class TestEventCache:
    def setup_method(self) -> None:
        self.cache = EventCache(default_ttl_seconds=300)

    def test_make_cache_key_when_equal_instants_then_equal_keys(self) -> None:
        assert make_cache_key("merged", *WINDOW) == make_cache_key("merged", *WINDOW)
        assert make_cache_key("merged", *WINDOW) != make_cache_key("other", *WINDOW)

    async def test_get_or_fetch_when_miss_then_fetches_and_stores(self, monkeypatch) -> None:
        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T12:00:00Z")
        fetcher = CountingFetcher([_occ("a")])

        lookup = await self.cache.get_or_fetch("merged", *WINDOW, fetcher)

        assert not lookup.from_cache
        assert lookup.fresh
        assert [o.series_id for o in lookup.occurrences] == ["a"]
        assert len(self.cache) == 1

    async def test_get_or_fetch_when_fresh_then_no_fetch(self, monkeypatch) -> None:
        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T12:00:00Z")
        fetcher = CountingFetcher([_occ("a")])
        await self.cache.get_or_fetch("merged", *WINDOW, fetcher)

        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T12:04:59Z")
        lookup = await self.cache.get_or_fetch("merged", *WINDOW, fetcher)

        assert lookup.from_cache
        assert lookup.fresh
        assert fetcher.calls == 1

    async def test_get_or_fetch_when_stale_then_served_and_revalidated(self, monkeypatch) -> None:
        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T12:00:00Z")
        fetcher = CountingFetcher([_occ("old")], [_occ("new")])
        await self.cache.get_or_fetch("merged", *WINDOW, fetcher)

        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T12:06:00Z")
        stale = await self.cache.get_or_fetch("merged", *WINDOW, fetcher)
        assert stale.from_cache
        assert not stale.fresh
        assert [o.series_id for o in stale.occurrences] == ["old"]

        await self.cache.wait_for_refreshes()
        refreshed = await self.cache.get("merged", *WINDOW)
        assert refreshed.fresh
        assert [o.series_id for o in refreshed.occurrences] == ["new"]
        assert fetcher.calls == 2

    async def test_get_or_fetch_when_refresh_fails_then_stale_kept(self, monkeypatch) -> None:
        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T12:00:00Z")
        await self.cache.put("merged", *WINDOW, [_occ("old")])

        async def failing() -> list[Occurrence]:
            raise RuntimeError("provider down")

        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T13:00:00Z")
        lookup = await self.cache.get_or_fetch("merged", *WINDOW, failing)
        await self.cache.wait_for_refreshes()

        assert [o.series_id for o in lookup.occurrences] == ["old"]
        assert [o.series_id for o in (await self.cache.get("merged", *WINDOW)).occurrences] == [
            "old"
        ]

    async def test_get_or_fetch_when_concurrent_misses_then_single_fetch(self) -> None:
        fetcher = CountingFetcher([_occ("a")], delay=0.05)
        results = await asyncio.gather(
            *(self.cache.get_or_fetch("merged", *WINDOW, fetcher) for _ in range(5))
        )
        assert fetcher.calls == 1
        assert all(r.occurrences[0].series_id == "a" for r in results)

    async def test_get_or_fetch_when_merge_result_then_calendars_served_on_hit(self) -> None:
        async def fetcher() -> MergeResult:
            return _merged("a")

        first = await self.cache.get_or_fetch("merged", *WINDOW, fetcher)
        second = await self.cache.get_or_fetch("merged", *WINDOW, fetcher)

        assert list(first.calendars) == ["cal-a"]
        assert second.from_cache
        assert second.calendars["cal-a"].count == 1
        assert [o.series_id for o in second.occurrences] == ["a"]

    async def test_get_or_fetch_when_miss_finished_then_lock_released(self) -> None:
        await self.cache.get_or_fetch("merged", *WINDOW, CountingFetcher([_occ("a")]))
        assert self.cache._miss_locks == {}

    async def test_get_when_far_past_expiry_then_miss(self, monkeypatch) -> None:
        cache = EventCache(default_ttl_seconds=300, max_stale_seconds=3600)
        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T12:00:00Z")
        await cache.put("merged", *WINDOW, [_occ("a")])

        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T14:00:00Z")
        assert await cache.get("merged", *WINDOW) is None

    async def test_put_when_ttl_given_then_overrides_default(self, monkeypatch) -> None:
        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T12:00:00Z")
        entry = await self.cache.put("merged", *WINDOW, [], ttl_seconds=60)
        assert entry.expires_at == utc(2024, 1, 15, 12, 1)

    async def test_invalidate_when_scope_then_only_that_scope(self) -> None:
        await self.cache.put("merged", *WINDOW, [])
        await self.cache.put("other", *WINDOW, [])

        assert await self.cache.invalidate("merged") == 1
        assert await self.cache.get("merged", *WINDOW) is None
        assert await self.cache.get("other", *WINDOW) is not None

    async def test_prune_expired_when_old_entries_then_removed(self, monkeypatch) -> None:
        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T12:00:00Z")
        await self.cache.put("merged", *WINDOW, [])
        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T13:00:00Z")
        assert await self.cache.prune_expired() == 1
        assert len(self.cache) == 0


class TestEventCacheWithDatabase:
    async def test_get_when_new_instance_then_entry_reloaded_from_database(
        self, database, monkeypatch
    ) -> None:
        monkeypatch.setenv("SLOTSYNC_TEST_TIME", "2024-01-15T12:00:00Z")
        await EventCache(database).put("merged", *WINDOW, [_occ("persisted")])

        lookup = await EventCache(database).get("merged", *WINDOW)

        assert lookup is not None
        assert lookup.fresh
        assert [o.series_id for o in lookup.occurrences] == ["persisted"]
        assert lookup.occurrences[0].start == utc(2024, 1, 15, 16)

    async def test_get_when_reloaded_then_calendar_statuses_kept(self, database) -> None:
        merged = _merged("a")
        await EventCache(database).put(
            "merged", *WINDOW, merged.occurrences, calendars=merged.calendars
        )

        lookup = await EventCache(database).get("merged", *WINDOW)

        assert lookup.calendars["cal-a"].provider == "caldav"

    async def test_invalidate_when_all_then_database_rows_removed(self, database) -> None:
        cache = EventCache(database)
        await cache.put("merged", *WINDOW, [])
        await cache.invalidate()
        assert await EventCache(database).get("merged", *WINDOW) is None
