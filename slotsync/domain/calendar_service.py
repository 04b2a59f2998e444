"""Request-time access to merged, classified occurrences.

Reads go through the EventCache; a miss merges the providers. The cache
holds unclassified occurrences, so classification is applied on every read
and BusyConfig changes show up without invalidating anything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from slotsync.cache.event_cache import EventCache
from slotsync.models import BusyConfig, CalendarInfo, CalendarStatus, MergeResult, Occurrence

from .busy_config import BusyConfigService
from .merge_engine import MergeEngine
from .occurrence_filter import annotate

logger = logging.getLogger(__name__)

MERGED_SCOPE = "merged"


@dataclass
class CalendarView:
    """Classified occurrences for one window plus where they came from."""

    occurrences: list[Occurrence]
    config: BusyConfig
    cached: bool = False
    fresh: bool = True
    calendars: dict[str, CalendarStatus] = field(default_factory=dict)


class CalendarService:
    """Glue between MergeEngine, EventCache and BusyConfigService."""

    def __init__(
        self,
        merge_engine: MergeEngine,
        cache: EventCache,
        busy_config: BusyConfigService,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self.merge_engine = merge_engine
        self.cache = cache
        self.busy_config = busy_config
        self.ttl_seconds = ttl_seconds

    async def view(
        self, window_start: datetime, window_end: datetime, scope: str = MERGED_SCOPE
    ) -> CalendarView:
        """Classified occurrences in ``[window_start, window_end)``.

        Raises:
            ProvidersUnavailableError: On a cache miss when every calendar failed
        """

        async def _fetch() -> MergeResult:
            return await self.merge_engine.merge(window_start, window_end)

        lookup = await self.cache.get_or_fetch(
            scope, window_start, window_end, _fetch, self.ttl_seconds
        )
        config = await self.busy_config.get()
        return CalendarView(
            occurrences=annotate(lookup.occurrences, config),
            config=config,
            cached=lookup.from_cache,
            fresh=lookup.fresh,
            calendars=lookup.calendars,
        )

    async def calendars(self) -> tuple[list[CalendarInfo], dict[str, CalendarStatus]]:
        """Discover calendars across providers."""
        sources, failures = await self.merge_engine.discover()
        return [s.calendar for s in sources], failures
