"""Health route for slotsync."""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable
from typing import Any, Optional

from slotsync.cache.event_cache import EventCache
from slotsync.core.datetime_utils import format_utc_iso
from slotsync.core.health_tracker import HealthTracker, get_system_diagnostics
from slotsync.sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


def register_health_routes(
    app: Any,
    health_tracker: HealthTracker,
    cache: EventCache,
    time_provider: Callable[[], datetime.datetime],
    scheduler: Optional[SyncScheduler] = None,
) -> None:
    """Register GET /health.

    Args:
        app: aiohttp web application
        health_tracker: Sync and heartbeat bookkeeping
        cache: Event cache (entry count is reported)
        time_provider: Clock for ``server_time_iso``
        scheduler: Sync scheduler whose last tick is reported
    """
    from aiohttp import web

    async def health_check(_request: Any) -> Any:
        """Health check endpoint for monitoring system status."""
        health_status = health_tracker.get_health_status(format_utc_iso(time_provider()))
        diag = get_system_diagnostics()

        health_data = {
            "status": health_status.status,
            "server_time_iso": health_status.server_time_iso,
            "server_status": {
                "uptime_s": health_status.uptime_seconds,
                "pid": health_status.pid,
            },
            "data_status": {
                "calendar_count": health_status.calendar_count,
                "last_sync_success_age_s": health_status.last_sync_success_age_seconds,
                "cached_windows": len(cache),
            },
            "background_tasks": health_status.background_tasks,
            "sync": {
                "running": scheduler.running if scheduler else False,
                "last_tick": dict(scheduler.last_tick_summary) if scheduler else {},
            },
            "system_diagnostics": {
                "platform": diag.platform,
                "python_version": diag.python_version,
                "event_loop_running": diag.event_loop_running,
            },
        }

        http_status = 200 if health_status.status == "ok" else 503
        return web.json_response(health_data, status=http_status)

    app.router.add_get("/health", health_check)
