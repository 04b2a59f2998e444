"""Busy-calendar configuration service.

One logical record (busy calendars, whitelist, force-busy ids, colors) is
loaded lazily from storage on first use, served from memory afterwards, and
persisted after every mutation. Concurrent writers are last-write-wins.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Optional

from slotsync.models import BusyConfig
from slotsync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

BUSY_CONFIG_KEY = "busy_config"


class BusyConfigService:
    """Read-through cache in front of the persisted BusyConfig record."""

    def __init__(self, database: DatabaseManager, key: str = BUSY_CONFIG_KEY) -> None:
        self._database = database
        self._key = key
        self._config: Optional[BusyConfig] = None
        self._load_lock = asyncio.Lock()

    async def get(self) -> BusyConfig:
        """Return the current configuration, loading it on first use."""
        if self._config is not None:
            return self._config
        async with self._load_lock:
            if self._config is None:
                self._config = await self._load()
        return self._config

    async def reload(self) -> BusyConfig:
        """Drop the in-memory copy and read the stored record again."""
        async with self._load_lock:
            self._config = await self._load()
        return self._config

    async def _load(self) -> BusyConfig:
        stored = await self._database.get_json(self._key)
        if not stored:
            logger.debug("No stored busy config; every calendar defaults to busy")
            return BusyConfig()
        try:
            config = BusyConfig.model_validate(stored)
        except ValueError:
            logger.warning("Stored busy config is malformed; starting from defaults")
            return BusyConfig()
        logger.debug(
            "Loaded busy config: %d busy calendars, %d whitelisted, %d forced busy",
            len(config.busy_calendar_ids),
            len(config.whitelist_ids),
            len(config.force_busy_ids),
        )
        return config

    async def _persist(self, config: BusyConfig) -> BusyConfig:
        self._config = config
        if not await self._database.put_json(self._key, config.model_dump(mode="json")):
            logger.warning("Busy config change kept in memory only (persist failed)")
        return config

    async def update_calendars(
        self,
        busy: Optional[Iterable[str]] = None,
        colors: Optional[dict[str, str]] = None,
    ) -> BusyConfig:
        """Replace the busy calendar set and/or merge calendar colors."""
        current = await self.get()
        update: dict = {}
        if busy is not None:
            update["busy_calendar_ids"] = {str(c) for c in busy if c}
        if colors is not None:
            merged = dict(current.calendar_colors)
            for calendar_id, color in colors.items():
                if color:
                    merged[str(calendar_id)] = str(color)
                else:
                    merged.pop(str(calendar_id), None)
            update["calendar_colors"] = merged
        return await self._persist(current.model_copy(update=update))

    async def set_busy_calendars(self, calendar_ids: Iterable[str]) -> BusyConfig:
        return await self.update_calendars(busy=calendar_ids)

    async def set_colors(self, colors: dict[str, str]) -> BusyConfig:
        return await self.update_calendars(colors=colors)

    async def set_whitelist(self, uid: str, add: bool) -> BusyConfig:
        """Add or remove a series id from the never-blocking whitelist."""
        current = await self.get()
        ids = set(current.whitelist_ids)
        if add:
            ids.add(uid)
        else:
            ids.discard(uid)
        return await self._persist(current.model_copy(update={"whitelist_ids": ids}))

    async def set_force_busy(self, uid: str, add: bool) -> BusyConfig:
        """Add or remove a series id from the always-blocking set."""
        current = await self.get()
        ids = set(current.force_busy_ids)
        if add:
            ids.add(uid)
        else:
            ids.discard(uid)
        return await self._persist(current.model_copy(update={"force_busy_ids": ids}))
