"""Shared fixtures for slotsync tests."""

from collections.abc import AsyncIterator, Generator
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from slotsync.core.datetime_utils import get_business_timezone
from slotsync.core.http_client import close_all_clients
from slotsync.models import CalendarInfo, ProviderKind, RawEvent
from slotsync.storage.database import DatabaseManager

SAMPLE_ICS_WEEKLY = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//slotsync test//EN
BEGIN:VEVENT
UID:weekly-sync@slotsync.test
DTSTART:20240115T160000Z
DTEND:20240115T163000Z
SUMMARY:Weekly Sync
RRULE:FREQ=WEEKLY;BYDAY=MO,WE
END:VEVENT
END:VCALENDAR"""


class FakeAdapter:
    """In-memory ProviderAdapter.

    ``events`` maps calendar id to RawEvents; ``errors`` maps calendar id to
    the exception its fetch raises. ``discovery_error`` fails list_calendars.
    """

    def __init__(
        self,
        name: str,
        calendars: list[CalendarInfo],
        events: Optional[dict[str, list[RawEvent]]] = None,
        errors: Optional[dict[str, Exception]] = None,
        discovery_error: Optional[Exception] = None,
    ) -> None:
        self.name = name
        self.calendars = calendars
        self.events = events or {}
        self.errors = errors or {}
        self.discovery_error = discovery_error
        self.fetch_calls: list[str] = []

    async def list_calendars(self) -> list[CalendarInfo]:
        if self.discovery_error is not None:
            raise self.discovery_error
        return list(self.calendars)

    async def fetch_events(
        self, calendar: CalendarInfo, window_start: datetime, window_end: datetime
    ) -> list[RawEvent]:
        self.fetch_calls.append(calendar.id)
        if calendar.id in self.errors:
            raise self.errors[calendar.id]
        return list(self.events.get(calendar.id, []))


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_calendar(calendar_id: str, provider: str = "caldav", **kwargs: Any) -> CalendarInfo:
    return CalendarInfo(id=calendar_id, provider=ProviderKind(provider), **kwargs)


def make_event(
    uid: Optional[str],
    start: datetime,
    end: Optional[datetime] = None,
    summary: str = "Meeting",
    **kwargs: Any,
) -> RawEvent:
    return RawEvent(id=uid, summary=summary, start=start, end=end, **kwargs)


@pytest.fixture
def business_tz() -> Any:
    """Deterministic business timezone (America/Denver)."""
    return get_business_timezone("America/Denver")


@pytest.fixture
def database(tmp_path: Any) -> DatabaseManager:
    """DatabaseManager on a throwaway SQLite file."""
    return DatabaseManager(tmp_path / "slotsync.db")


@pytest.fixture
def sample_ics_weekly() -> str:
    """Weekly Monday/Wednesday 09:00-09:30 (Denver) series anchored 2024-01-15."""
    return SAMPLE_ICS_WEEKLY


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: Any) -> Generator[None, Any, None]:
    """Clear slotsync environment overrides between tests."""
    for name in ("SLOTSYNC_TEST_TIME", "SLOTSYNC_CONFIG", "SLOTSYNC_DEBUG"):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture(autouse=True)
async def cleanup_shared_http_clients() -> AsyncIterator[None]:
    """Close shared httpx clients after every test."""
    yield
    await close_all_clients()


def pytest_configure(config: Any) -> None:
    """Register slotsync markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: HTTP-level tests")
