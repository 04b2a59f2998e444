"""Background calendar synchronization.

A repeating timer discovers calendars, picks the ones whose ``next_sync_at``
has passed, and syncs at most ``concurrency`` of them at a time into the
``synced_events`` table. Failures push ``next_sync_at`` out linearly with the
number of consecutive errors, capped. A tick never raises.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, tzinfo
from typing import Any, Optional

from slotsync.cache.event_cache import EventCache
from slotsync.core.datetime_utils import (
    format_utc_iso,
    get_business_timezone,
    local_midnight,
    now_utc,
    to_local,
)
from slotsync.domain.merge_engine import CalendarSource, MergeEngine
from slotsync.exceptions import SlotSyncError
from slotsync.models import SyncState
from slotsync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL_SECONDS = 300
DEFAULT_SYNC_CONCURRENCY = 3
DEFAULT_BACKOFF_STEP_MINUTES = 5
DEFAULT_BACKOFF_MAX_MINUTES = 60


def compute_backoff(
    consecutive_errors: int,
    step_minutes: int = DEFAULT_BACKOFF_STEP_MINUTES,
    max_minutes: int = DEFAULT_BACKOFF_MAX_MINUTES,
) -> timedelta:
    """Delay before retrying a calendar: ``min(errors * step, max)``."""
    return timedelta(minutes=min(max(consecutive_errors, 1) * step_minutes, max_minutes))


class SyncScheduler:
    """Keeps per-calendar synced snapshots fresh on a timer."""

    def __init__(
        self,
        merge_engine: MergeEngine,
        database: DatabaseManager,
        cache: Optional[EventCache] = None,
        interval_seconds: int = DEFAULT_SYNC_INTERVAL_SECONDS,
        concurrency: int = DEFAULT_SYNC_CONCURRENCY,
        backoff_step_minutes: int = DEFAULT_BACKOFF_STEP_MINUTES,
        backoff_max_minutes: int = DEFAULT_BACKOFF_MAX_MINUTES,
        window_past_days: int = 7,
        window_future_days: int = 90,
        tz: Optional[tzinfo] = None,
        time_provider: Callable[[], datetime] = now_utc,
        health_tracker: Any = None,
    ) -> None:
        self.merge_engine = merge_engine
        self.database = database
        self.cache = cache
        self.interval_seconds = interval_seconds
        self.concurrency = max(1, concurrency)
        self.backoff_step_minutes = backoff_step_minutes
        self.backoff_max_minutes = backoff_max_minutes
        self.window_past_days = window_past_days
        self.window_future_days = window_future_days
        self.tz = tz or get_business_timezone()
        self.time_provider = time_provider
        self.health_tracker = health_tracker

        self._tick_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.last_tick_at: Optional[datetime] = None
        self.last_tick_summary: dict[str, int] = {}

    # ------------------------------------------------------------ lifecycle

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background timer; the first tick runs immediately."""
        if self.running:
            return
        await self.database.clear_syncing_flags()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(self._stop_event))
        logger.info(
            "Sync scheduler started (interval %ds, concurrency %d)",
            self.interval_seconds,
            self.concurrency,
        )

    async def stop(self) -> None:
        """Stop the timer and wait for the loop to exit."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sync scheduler stopped")

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await self.tick()
            if self.health_tracker is not None:
                self.health_tracker.record_background_heartbeat()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    # ----------------------------------------------------------------- tick

    def desired_window(self, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
        """Sync window: local today minus past days to local today plus future days."""
        today = to_local(now or self.time_provider(), self.tz).date()
        return (
            local_midnight(today - timedelta(days=self.window_past_days), self.tz),
            local_midnight(today + timedelta(days=self.window_future_days), self.tz),
        )

    async def tick(self) -> dict[str, int]:
        """Run one sync pass. Never raises.

        Returns:
            Counts of calendars synced, skipped (unchanged), failed and not due
        """
        summary = {"synced": 0, "unchanged": 0, "failed": 0, "not_due": 0}
        async with self._tick_lock:
            try:
                await self._tick(summary)
            except Exception:
                logger.exception("Sync tick failed unexpectedly")
            await self._prune_cache()
            self.last_tick_at = self.time_provider()
            self.last_tick_summary = summary
        if self.health_tracker is not None:
            self.health_tracker.record_refresh_attempt()
            if summary["failed"] == 0:
                self.health_tracker.record_refresh_success(summary["synced"] + summary["unchanged"])
        return summary

    async def _tick(self, summary: dict[str, int]) -> None:
        now = self.time_provider()
        sources, failures = await self.merge_engine.discover()
        for key, status in failures.items():
            logger.warning("Skipping provider %s this tick: %s", key, status.error)

        stored = {
            (s.provider, s.calendar_id): s
            for s in (SyncState.model_validate(r) for r in await self.database.get_sync_states())
        }

        due: list[tuple[CalendarSource, SyncState]] = []
        for source in sources:
            key = (source.adapter.name, source.calendar.id)
            state = stored.get(key)
            if state is None:
                state = SyncState(
                    provider=source.adapter.name,
                    calendar_id=source.calendar.id,
                    display_name=source.calendar.display_name,
                )
                await self.database.upsert_sync_state(state.model_dump())
            if state.is_due(now):
                due.append((source, state))
            else:
                summary["not_due"] += 1

        if not due:
            logger.debug("No calendars due for sync")
            return

        window_start, window_end = self.desired_window(now)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(source: CalendarSource, state: SyncState) -> str:
            async with semaphore:
                return await self.sync_calendar(source, state, window_start, window_end)

        outcomes = await asyncio.gather(
            *(_bounded(src, st) for src, st in due), return_exceptions=True
        )
        for (source, _), outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("Sync of %s crashed", source.calendar.id, exc_info=outcome)
                summary["failed"] += 1
            else:
                summary[outcome] += 1

        if summary["synced"] and self.cache is not None:
            await self.cache.invalidate()
        logger.info(
            "Sync tick: %d synced, %d unchanged, %d failed, %d not due",
            summary["synced"],
            summary["unchanged"],
            summary["failed"],
            summary["not_due"],
        )

    async def _prune_cache(self) -> None:
        """Drop cache windows too old to be served again."""
        if self.cache is None:
            return
        try:
            await self.cache.prune_expired(self.cache.max_stale_seconds)
        except Exception:
            logger.exception("Cache pruning failed")

    async def sync_calendar(
        self,
        source: CalendarSource,
        state: SyncState,
        window_start: datetime,
        window_end: datetime,
    ) -> str:
        """Sync one calendar and persist its SyncState.

        Returns:
            "synced", "unchanged" or "failed"
        """
        state = state.model_copy(update={"is_syncing": True})
        await self.database.upsert_sync_state(state.model_dump())

        outcome = "failed"
        update: dict[str, Any] = {}
        try:
            token = source.calendar.sync_token
            if (
                token
                and token == state.sync_token
                and state.consecutive_errors == 0
                and state.covers(window_start, window_end)
            ):
                outcome = "unchanged"
                logger.debug("Calendar %s unchanged (token %s)", source.calendar.id, token)
            else:
                occurrences = await self.merge_engine.fetch_calendar(
                    source, window_start, window_end
                )
                rows = [
                    (occ.start, occ.end, json.dumps(occ.model_dump(mode="json")))
                    for occ in occurrences
                ]
                if not await self.database.replace_synced_events(
                    source.adapter.name, source.calendar.id, rows
                ):
                    raise SlotSyncError(f"could not store synced events for {source.calendar.id}")
                outcome = "synced"
                update.update(window_start=window_start, window_end=window_end)
                logger.debug(
                    "Synced %d occurrences for %s", len(occurrences), source.calendar.id
                )

            now = self.time_provider()
            update.update(
                last_sync_at=now,
                consecutive_errors=0,
                next_sync_at=now + timedelta(seconds=self.interval_seconds),
                sync_token=token,
                last_error=None,
                display_name=source.calendar.display_name or state.display_name,
            )
        except Exception as e:
            errors = state.consecutive_errors + 1
            delay = compute_backoff(errors, self.backoff_step_minutes, self.backoff_max_minutes)
            update = {
                "consecutive_errors": errors,
                "next_sync_at": self.time_provider() + delay,
                "last_error": str(e) or type(e).__name__,
            }
            logger.warning(
                "Sync of %s failed (%d consecutive), retry in %s: %s",
                source.calendar.id,
                errors,
                delay,
                e,
            )
        finally:
            update["is_syncing"] = False
            await self.database.upsert_sync_state(state.model_copy(update=update).model_dump())
        return outcome

    # ------------------------------------------------------------ controls

    async def trigger(self) -> dict[str, int]:
        """Run a tick now (due calendars only)."""
        logger.info("Manual sync triggered")
        return await self.tick()

    async def force_full_resync(self) -> dict[str, int]:
        """Forget tokens, windows, backoff and synced rows, then tick."""
        logger.info("Full resync requested")
        await self.database.reset_sync_states()
        await self.database.clear_synced_events()
        if self.cache is not None:
            await self.cache.invalidate()
        return await self.tick()

    async def status(self) -> dict[str, Any]:
        """Report scheduler state and every stored SyncState."""
        states = [SyncState.model_validate(r) for r in await self.database.get_sync_states()]
        return {
            "running": self.running,
            "intervalSeconds": self.interval_seconds,
            "concurrency": self.concurrency,
            "lastTickAt": format_utc_iso(self.last_tick_at) if self.last_tick_at else None,
            "lastTick": dict(self.last_tick_summary),
            "calendars": [s.model_dump(mode="json") for s in states],
        }
