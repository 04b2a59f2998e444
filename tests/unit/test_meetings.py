"""Tests for slotsync.domain.meetings."""

import pytest

from conftest import utc
from slotsync.domain.meetings import MeetingStore
from slotsync.exceptions import ValidationError

pytestmark = pytest.mark.unit


class TestMeetingStore:
    async def test_create_when_valid_then_listed(self, database) -> None:
        store = MeetingStore(database)
        meeting = await store.create("  Intro call ", utc(2024, 1, 15, 17), utc(2024, 1, 15, 18))

        meetings = await store.list_meetings()
        assert [m.id for m in meetings] == [meeting.id]
        assert meetings[0].title == "Intro call"
        assert meetings[0].status == "scheduled"
        assert meetings[0].start == utc(2024, 1, 15, 17)

    async def test_create_when_end_not_after_start_then_invalid_range(self, database) -> None:
        store = MeetingStore(database)
        with pytest.raises(ValidationError) as exc_info:
            await store.create("x", utc(2024, 1, 15, 17), utc(2024, 1, 15, 17))
        assert exc_info.value.code == "invalid_range"

    async def test_list_when_window_then_only_overlapping(self, database) -> None:
        store = MeetingStore(database)
        await store.create("early", utc(2024, 1, 15, 15), utc(2024, 1, 15, 16))
        await store.create("late", utc(2024, 1, 15, 19), utc(2024, 1, 15, 20))

        # Half-open: a meeting ending exactly at the window start does not overlap.
        found = await store.list_meetings(utc(2024, 1, 15, 16), utc(2024, 1, 15, 21))
        assert [m.title for m in found] == ["late"]

    async def test_cancel_when_exists_then_excluded_from_scheduled(self, database) -> None:
        store = MeetingStore(database)
        meeting = await store.create("x", utc(2024, 1, 15, 17), utc(2024, 1, 15, 18))

        assert await store.cancel(meeting.id)
        assert await store.scheduled_between(utc(2024, 1, 15), utc(2024, 1, 16)) == []
        cancelled = await store.list_meetings(status="cancelled")
        assert [m.id for m in cancelled] == [meeting.id]

    async def test_cancel_when_missing_then_false(self, database) -> None:
        assert not await MeetingStore(database).cancel("does-not-exist")
