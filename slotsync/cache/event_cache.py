"""Stale-while-revalidate cache of merged occurrence lists.

Entries are keyed on the exact ``(scope, window_start, window_end)`` triple.
A fetcher may return a bare occurrence list or a MergeResult; the per-calendar
status map of a MergeResult is kept with the entry and served on every hit.
The in-memory map is authoritative while the process runs; every write is
mirrored to the ``cache_entries`` table so a restart starts warm.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from slotsync.core.datetime_utils import format_utc_iso, now_utc, parse_iso_datetime
from slotsync.models import CacheEntry, CalendarStatus, MergeResult, Occurrence
from slotsync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
DEFAULT_MAX_STALE_SECONDS = 24 * 3600

Fetcher = Callable[[], Awaitable[Union[list[Occurrence], MergeResult]]]
CacheKey = tuple[str, str, str]


@dataclass
class CacheLookup:
    """Result of a cache read."""

    occurrences: list[Occurrence]
    fresh: bool
    fetched_at: datetime
    from_cache: bool = True
    calendars: dict[str, CalendarStatus] = field(default_factory=dict)


def make_cache_key(scope: str, window_start: datetime, window_end: datetime) -> CacheKey:
    return (scope, format_utc_iso(window_start), format_utc_iso(window_end))


def _storage_key(key: CacheKey) -> str:
    return "|".join(key)


def _split(
    fetched: Union[list[Occurrence], MergeResult],
) -> tuple[list[Occurrence], dict[str, CalendarStatus]]:
    if isinstance(fetched, MergeResult):
        return fetched.occurrences, fetched.calendars
    return list(fetched), {}


def _lookup(entry: CacheEntry, fresh: bool, from_cache: bool = True) -> CacheLookup:
    return CacheLookup(
        occurrences=list(entry.occurrences),
        fresh=fresh,
        fetched_at=entry.fetched_at,
        from_cache=from_cache,
        calendars={cid: st.model_copy() for cid, st in entry.calendars.items()},
    )


class EventCache:
    """Occurrence cache with TTL expiry and background revalidation."""

    def __init__(
        self,
        database: Optional[DatabaseManager] = None,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_stale_seconds: int = DEFAULT_MAX_STALE_SECONDS,
    ) -> None:
        """Initialize event cache.

        Args:
            database: Optional durable backing store
            default_ttl_seconds: TTL used when ``put`` is not given one
            max_stale_seconds: Entries older than this past expiry count as misses
        """
        self._database = database
        self.default_ttl_seconds = default_ttl_seconds
        self.max_stale_seconds = max_stale_seconds
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._refreshing: dict[CacheKey, asyncio.Task] = {}
        self._miss_locks: dict[CacheKey, asyncio.Lock] = {}

    # ---------------------------------------------------------------- reads

    async def get(
        self, scope: str, window_start: datetime, window_end: datetime
    ) -> Optional[CacheLookup]:
        """Return the entry for the key, marked fresh or stale, or None."""
        key = make_cache_key(scope, window_start, window_end)
        entry = self._entries.get(key)
        if entry is None:
            entry = await self._load(key)
        if entry is None:
            return None

        now = now_utc()
        if now - entry.expires_at > timedelta(seconds=self.max_stale_seconds):
            logger.debug("Cache entry %s too old to serve", key)
            return None
        return _lookup(entry, entry.is_fresh(now))

    async def _load(self, key: CacheKey) -> Optional[CacheEntry]:
        if self._database is None:
            return None
        row = await self._database.get_cache_entry(_storage_key(key))
        if not row:
            return None
        try:
            payload: Any = json.loads(row["payload"])
            entry = CacheEntry(
                scope=row["scope"],
                window_start=parse_iso_datetime(row["window_start"]),
                window_end=parse_iso_datetime(row["window_end"]),
                occurrences=[Occurrence.model_validate(o) for o in payload["occurrences"]],
                calendars={
                    cid: CalendarStatus.model_validate(st)
                    for cid, st in payload["calendars"].items()
                },
                fetched_at=parse_iso_datetime(row["fetched_at"]),
                ttl_seconds=row["ttl_seconds"],
            )
        except (ValueError, TypeError, KeyError, AttributeError):
            logger.warning("Discarding unreadable cache entry %s", key)
            return None
        self._entries[key] = entry
        return entry

    # --------------------------------------------------------------- writes

    async def put(
        self,
        scope: str,
        window_start: datetime,
        window_end: datetime,
        occurrences: list[Occurrence],
        ttl_seconds: Optional[int] = None,
        calendars: Optional[dict[str, CalendarStatus]] = None,
    ) -> CacheEntry:
        """Store an occurrence list, replacing any previous entry for the key."""
        key = make_cache_key(scope, window_start, window_end)
        entry = CacheEntry(
            scope=scope,
            window_start=window_start,
            window_end=window_end,
            occurrences=list(occurrences),
            calendars=dict(calendars or {}),
            fetched_at=now_utc(),
            ttl_seconds=ttl_seconds or self.default_ttl_seconds,
        )
        self._entries[key] = entry

        if self._database is not None:
            payload = json.dumps(
                {
                    "occurrences": [o.model_dump(mode="json") for o in entry.occurrences],
                    "calendars": {
                        cid: st.model_dump(mode="json") for cid, st in entry.calendars.items()
                    },
                }
            )
            await self._database.put_cache_entry(
                _storage_key(key),
                scope,
                window_start,
                window_end,
                payload,
                entry.fetched_at,
                entry.ttl_seconds,
                entry.expires_at,
            )
        logger.debug("Cached %d occurrences for %s", len(entry.occurrences), key)
        return entry

    async def get_or_fetch(
        self,
        scope: str,
        window_start: datetime,
        window_end: datetime,
        fetcher: Fetcher,
        ttl_seconds: Optional[int] = None,
    ) -> CacheLookup:
        """Serve from cache, revalidating stale entries in the background.

        Fresh hit: returned as is. Stale hit: returned immediately while one
        background refresh per key runs. Miss: ``fetcher`` is awaited (one
        caller per key at a time), the result stored and returned. Fetcher
        exceptions propagate on a miss only.
        """
        lookup = await self.get(scope, window_start, window_end)
        if lookup is not None:
            if not lookup.fresh:
                self._schedule_refresh(scope, window_start, window_end, fetcher, ttl_seconds)
            return lookup

        key = make_cache_key(scope, window_start, window_end)
        lock = self._miss_locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                lookup = await self.get(scope, window_start, window_end)
                if lookup is not None and lookup.fresh:
                    return lookup
                occurrences, calendars = _split(await fetcher())
                entry = await self.put(
                    scope, window_start, window_end, occurrences, ttl_seconds, calendars
                )
        finally:
            # Waiters already hold a reference; later misses start a new lock.
            if not lock.locked() and self._miss_locks.get(key) is lock:
                del self._miss_locks[key]
        return _lookup(entry, fresh=True, from_cache=False)

    def _schedule_refresh(
        self,
        scope: str,
        window_start: datetime,
        window_end: datetime,
        fetcher: Fetcher,
        ttl_seconds: Optional[int],
    ) -> None:
        key = make_cache_key(scope, window_start, window_end)
        running = self._refreshing.get(key)
        if running is not None and not running.done():
            return

        async def _refresh() -> None:
            try:
                occurrences, calendars = _split(await fetcher())
                await self.put(
                    scope, window_start, window_end, occurrences, ttl_seconds, calendars
                )
                logger.debug("Revalidated cache entry %s", key)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Background refresh of %s failed; keeping stale entry", key,
                               exc_info=True)
            finally:
                self._refreshing.pop(key, None)

        self._refreshing[key] = asyncio.create_task(_refresh())

    # ------------------------------------------------------------ eviction

    async def invalidate(self, scope: Optional[str] = None) -> int:
        """Drop entries for one scope, or everything when scope is None."""
        keys = [k for k in self._entries if scope is None or k[0] == scope]
        for key in keys:
            del self._entries[key]
        removed = len(keys)
        if self._database is not None:
            removed = max(removed, await self._database.delete_cache_entries(scope))
        logger.info("Invalidated %d cache entries (scope=%s)", removed, scope or "*")
        return removed

    async def prune_expired(self, grace_seconds: int = 0) -> int:
        """Delete entries that expired more than ``grace_seconds`` ago."""
        cutoff = now_utc() - timedelta(seconds=grace_seconds)
        keys = [k for k, e in self._entries.items() if e.expires_at < cutoff]
        for key in keys:
            del self._entries[key]
        removed = len(keys)
        if self._database is not None:
            removed = max(removed, await self._database.prune_cache_entries(cutoff))
        if removed:
            logger.debug("Pruned %d expired cache entries", removed)
        return removed

    async def wait_for_refreshes(self) -> None:
        """Wait until every running background refresh has finished."""
        tasks = list(self._refreshing.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        """Cancel background refreshes."""
        tasks = list(self._refreshing.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refreshing.clear()

    def __len__(self) -> int:
        return len(self._entries)
