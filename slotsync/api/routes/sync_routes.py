"""Background sync control routes for slotsync."""

from __future__ import annotations

import logging
from typing import Any, Optional

from slotsync.api.request_utils import check_bearer_token, unauthorized
from slotsync.sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


def register_sync_routes(
    app: Any, scheduler: SyncScheduler, admin_token: Optional[str] = None
) -> None:
    """Register /calendar/sync/* routes.

    Args:
        app: aiohttp web application
        scheduler: Background sync scheduler
        admin_token: Bearer token required by trigger and reset, if set
    """
    from aiohttp import web

    async def sync_status(_request: Any) -> Any:
        return web.json_response(await scheduler.status())

    async def sync_trigger(request: Any) -> Any:
        """Run one sync tick now and report its outcome."""
        if not check_bearer_token(request, admin_token):
            return unauthorized()
        summary = await scheduler.trigger()
        return web.json_response({"ok": True, "summary": summary})

    async def sync_reset(request: Any) -> Any:
        """Forget every sync token and synced event, then resync everything."""
        if not check_bearer_token(request, admin_token):
            return unauthorized()
        summary = await scheduler.force_full_resync()
        return web.json_response({"ok": True, "summary": summary})

    app.router.add_get("/calendar/sync/status", sync_status)
    app.router.add_post("/calendar/sync/trigger", sync_trigger)
    app.router.add_post("/calendar/sync/reset", sync_reset)
