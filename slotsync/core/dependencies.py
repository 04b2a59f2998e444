"""Dependency container for the slotsync server."""

from __future__ import annotations

import datetime
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

from slotsync.cache.event_cache import EventCache
from slotsync.calendar.event_parser import EventParser
from slotsync.calendar.rrule_expander import ExpanderConfig, RecurrenceExpander
from slotsync.config_loader import Config
from slotsync.core.datetime_utils import get_business_timezone, now_utc
from slotsync.core.health_tracker import HealthTracker
from slotsync.domain.availability import AvailabilityEngine
from slotsync.domain.business_hours import BusinessHoursStore
from slotsync.domain.busy_config import BusyConfigService
from slotsync.domain.calendar_service import CalendarService
from slotsync.domain.meetings import MeetingStore
from slotsync.domain.merge_engine import MergeEngine
from slotsync.providers.base import ProviderAdapter
from slotsync.providers.caldav import CalDavAdapter
from slotsync.providers.rest_token import RestTokenAdapter
from slotsync.storage.database import DatabaseManager
from slotsync.sync.scheduler import SyncScheduler


@dataclass
class AppDependencies:
    """Everything the routes and background tasks share.

    Built once per process by :meth:`DependencyContainer.build_dependencies`;
    tests build it with fake adapters and a temporary database.
    """

    config: Config
    tz: datetime.tzinfo
    database: DatabaseManager
    busy_config: BusyConfigService
    cache: EventCache
    merge_engine: MergeEngine
    calendar_service: CalendarService
    scheduler: SyncScheduler
    hours: BusinessHoursStore
    meetings: MeetingStore
    availability: AvailabilityEngine
    health_tracker: HealthTracker
    time_provider: Callable[[], datetime.datetime]


def build_adapters(config: Config, parser: EventParser, tz: datetime.tzinfo) -> list[Any]:
    """Provider adapters for every configured provider, CalDAV first."""
    adapters: list[Any] = []
    if config.caldav is not None:
        adapters.append(
            CalDavAdapter(
                base_url=config.caldav.base_url,
                username=config.caldav.username,
                password=config.caldav.password,
                calendar_urls=config.caldav.calendar_urls,
                parser=parser,
            )
        )
    if config.rest is not None:
        adapters.append(
            RestTokenAdapter(
                base_url=config.rest.base_url,
                access_token=config.rest.access_token,
                calendar_ids=config.rest.calendar_ids,
                tz=tz,
                default_event_minutes=config.default_event_minutes,
            )
        )
    return adapters


class DependencyContainer:
    """Factory for building application dependencies."""

    @staticmethod
    def build_dependencies(
        config: Config,
        adapters: Optional[list[ProviderAdapter]] = None,
        time_provider: Callable[[], datetime.datetime] = now_utc,
    ) -> AppDependencies:
        """Build all application dependencies.

        Args:
            config: Application configuration
            adapters: Provider adapters; built from ``config`` when None
            time_provider: Clock used by the scheduler and routes

        Returns:
            AppDependencies container
        """
        tz = get_business_timezone(config.business_timezone)
        parser = EventParser(tz=tz, default_event_minutes=config.default_event_minutes)
        expander = RecurrenceExpander(tz=tz, config=ExpanderConfig.from_settings(config))
        if adapters is None:
            adapters = build_adapters(config, parser, tz)

        database = DatabaseManager(config.database_path)
        busy_config = BusyConfigService(database)
        cache = EventCache(database, default_ttl_seconds=config.cache_ttl_seconds)
        merge_engine = MergeEngine(
            adapters,
            expander=expander,
            database=database,
            timeout_seconds=config.provider_timeout_seconds,
        )
        calendar_service = CalendarService(merge_engine, cache, busy_config)
        health_tracker = HealthTracker()
        scheduler = SyncScheduler(
            merge_engine,
            database,
            cache=cache,
            interval_seconds=config.sync_interval_seconds,
            concurrency=config.sync_concurrency,
            backoff_step_minutes=config.sync_backoff_step_minutes,
            backoff_max_minutes=config.sync_backoff_max_minutes,
            window_past_days=config.sync_window_past_days,
            window_future_days=config.sync_window_future_days,
            tz=tz,
            time_provider=time_provider,
            health_tracker=health_tracker,
        )
        hours = BusinessHoursStore(database, config.business_hours)
        meetings = MeetingStore(database)
        availability = AvailabilityEngine(hours, meetings, calendar_service, tz=tz)

        return AppDependencies(
            config=config,
            tz=tz,
            database=database,
            busy_config=busy_config,
            cache=cache,
            merge_engine=merge_engine,
            calendar_service=calendar_service,
            scheduler=scheduler,
            hours=hours,
            meetings=meetings,
            availability=availability,
            health_tracker=health_tracker,
            time_provider=time_provider,
        )
