"""Merge occurrences from every provider calendar into one ordered list.

Each calendar is fetched in its own task with a time budget; a failing
calendar contributes nothing but an error record in the status map.
Occurrences are deduplicated on ``(series_id or summary, start)`` with the
first one seen winning, in provider enumeration order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from slotsync.calendar.rrule_expander import RecurrenceExpander
from slotsync.core.datetime_utils import ensure_utc
from slotsync.exceptions import ProviderError, ProvidersUnavailableError, ProviderTimeoutError
from slotsync.models import CalendarInfo, CalendarStatus, MergeResult, Occurrence, SyncState
from slotsync.providers.base import ProviderAdapter
from slotsync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 20.0


@dataclass
class CalendarSource:
    """One calendar together with the adapter that serves it."""

    adapter: ProviderAdapter
    calendar: CalendarInfo

    @property
    def key(self) -> str:
        return self.calendar.id


def dedupe_occurrences(occurrences: Iterable[Occurrence]) -> list[Occurrence]:
    """Drop later occurrences sharing a dedup key, then sort by start.

    Events without a series id fall back to their summary, so two different
    untitled events starting together collapse into one.
    """
    seen: set[tuple[str, datetime]] = set()
    unique = []
    for occ in occurrences:
        key = occ.dedup_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(occ)
    unique.sort(key=lambda o: (o.start, o.end))
    return unique


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class MergeEngine:
    """Fetch, expand and merge occurrences across provider calendars."""

    def __init__(
        self,
        adapters: Sequence[ProviderAdapter],
        expander: Optional[RecurrenceExpander] = None,
        database: Optional[DatabaseManager] = None,
        timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize merge engine.

        Args:
            adapters: Provider adapters in enumeration (dedup priority) order
            expander: Recurrence expander shared with the scheduler
            database: Store holding background-synced occurrences
            timeout_seconds: Time budget for each provider call
        """
        self.adapters = list(adapters)
        self.expander = expander or RecurrenceExpander()
        self.database = database
        self.timeout_seconds = timeout_seconds

    # ------------------------------------------------------------ discovery

    async def discover(self) -> tuple[list[CalendarSource], dict[str, CalendarStatus]]:
        """List calendars of every adapter concurrently.

        Returns:
            (sources in enumeration order, error records for failed providers)
        """
        results = await asyncio.gather(
            *(self._with_timeout(a.list_calendars(), a.name) for a in self.adapters),
            return_exceptions=True,
        )

        sources: list[CalendarSource] = []
        failures: dict[str, CalendarStatus] = {}
        for adapter, result in zip(self.adapters, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Calendar discovery failed for %s: %s", adapter.name, result)
                failures[f"{adapter.name}:*"] = CalendarStatus(
                    calendar_id=f"{adapter.name}:*",
                    provider=adapter.name,
                    status="error",
                    error=str(result) or type(result).__name__,
                )
                continue
            sources.extend(CalendarSource(adapter, cal) for cal in result)
        return sources, failures

    async def _with_timeout(self, coro, provider: str, calendar_id: str = ""):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"no answer within {self.timeout_seconds:g}s",
                provider=provider,
                calendar_id=calendar_id,
            ) from e

    # ---------------------------------------------------------------- fetch

    async def fetch_calendar(
        self, source: CalendarSource, window_start: datetime, window_end: datetime
    ) -> list[Occurrence]:
        """Live fetch of one calendar, parsed and expanded into the window."""
        events = await self._with_timeout(
            source.adapter.fetch_events(source.calendar, window_start, window_end),
            source.adapter.name,
            source.calendar.id,
        )
        occurrences = self.expander.expand_events(events, window_start, window_end)
        return [
            occ.model_copy(
                update={
                    "start": ensure_utc(occ.start),
                    "end": ensure_utc(occ.end),
                    "source_calendar_id": source.calendar.id,
                    "source_provider": source.adapter.name,
                }
            )
            for occ in occurrences
        ]

    async def _load_sync_states(self) -> dict[tuple[str, str], SyncState]:
        if self.database is None:
            return {}
        states = {}
        for record in await self.database.get_sync_states():
            state = SyncState.model_validate(record)
            states[(state.provider, state.calendar_id)] = state
        return states

    async def _load_synced(
        self, source: CalendarSource, window_start: datetime, window_end: datetime
    ) -> list[Occurrence]:
        payloads = await self.database.get_synced_events(
            source.adapter.name, source.calendar.id, window_start, window_end
        )
        occurrences = []
        for payload in payloads:
            try:
                occurrence = Occurrence.model_validate(json.loads(payload))
            except ValueError:
                logger.debug("Skipping unreadable synced row for %s", source.calendar.id)
                continue
            # Same containment as a live expansion: a series instance belongs to
            # the window it starts in.
            if occurrence.recurring and occurrence.start < window_start:
                continue
            occurrences.append(occurrence)
        return occurrences

    async def _merge_one(
        self,
        source: CalendarSource,
        window_start: datetime,
        window_end: datetime,
        state: Optional[SyncState],
    ) -> tuple[list[Occurrence], str, int]:
        started = time.monotonic()
        if self.database is not None and state is not None and state.covers(
            window_start, window_end
        ):
            occurrences = await self._load_synced(source, window_start, window_end)
            return occurrences, "synced", _elapsed_ms(started)
        occurrences = await self.fetch_calendar(source, window_start, window_end)
        return occurrences, "ok", _elapsed_ms(started)

    # ---------------------------------------------------------------- merge

    async def merge(
        self,
        window_start: datetime,
        window_end: datetime,
        sources: Optional[list[CalendarSource]] = None,
    ) -> MergeResult:
        """Merge every calendar's occurrences in ``[window_start, window_end)``.

        Args:
            window_start: Inclusive start (aware)
            window_end: Exclusive end (aware)
            sources: Calendars to merge; discovered from the adapters when None

        Returns:
            Deduplicated, start-ordered occurrences and a per-calendar status map

        Raises:
            ProvidersUnavailableError: If every attempted calendar failed
        """
        calendars: dict[str, CalendarStatus] = {}
        if sources is None:
            sources, failures = await self.discover()
            calendars.update(failures)

        states = await self._load_sync_states()
        started = time.monotonic()
        results = await asyncio.gather(
            *(
                self._merge_one(
                    s,
                    window_start,
                    window_end,
                    states.get((s.adapter.name, s.calendar.id)),
                )
                for s in sources
            ),
            return_exceptions=True,
        )

        collected: list[Occurrence] = []
        for source, result in zip(sources, results):
            status = CalendarStatus(
                calendar_id=source.calendar.id,
                provider=source.adapter.name,
                display_name=source.calendar.display_name,
                elapsed_ms=_elapsed_ms(started),
            )
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                if not isinstance(result, ProviderError):
                    logger.error(
                        "Unexpected error merging %s", source.calendar.id, exc_info=result
                    )
                else:
                    logger.warning("Calendar %s failed: %s", source.calendar.id, result)
                status.status = "error"
                status.error = str(result) or type(result).__name__
            else:
                occurrences, status.status, status.elapsed_ms = result
                status.count = len(occurrences)
                collected.extend(occurrences)
            calendars[source.calendar.id] = status

        merged = MergeResult(occurrences=dedupe_occurrences(collected), calendars=calendars)
        if calendars and all(st.status == "error" for st in calendars.values()):
            raise ProvidersUnavailableError(
                f"all {len(calendars)} calendars failed",
                calendars={cid: st.model_dump() for cid, st in calendars.items()},
            )

        logger.debug(
            "Merged %d occurrences from %d calendars (%d failed)",
            len(merged.occurrences),
            len(calendars),
            len(merged.failed_calendars),
        )
        return merged
