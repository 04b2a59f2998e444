"""Calendar view and busy-configuration routes for slotsync."""

from __future__ import annotations

import calendar as _calendar
import datetime
import logging
import re
from typing import Any, Optional

from slotsync.api.request_utils import (
    check_bearer_token,
    flag_query,
    read_json_object,
    unauthorized,
)
from slotsync.cache.event_cache import EventCache
from slotsync.core.datetime_utils import (
    format_utc_iso,
    local_day_bounds,
    local_midnight,
    parse_query_date,
)
from slotsync.domain.busy_config import BusyConfigService
from slotsync.domain.calendar_service import CalendarService, CalendarView
from slotsync.domain.occurrence_filter import filter_for_list
from slotsync.exceptions import DateParseError, ValidationError
from slotsync.models import BusyConfig, CalendarInfo

logger = logging.getLogger(__name__)

_COLOR_RE = re.compile(r"^#?[0-9a-fA-F]{3,8}$")
_ACTIONS = ("add", "remove")


def _normalize_colors(raw: Any) -> dict[str, str]:
    """Keep valid hex colors (``#`` added when missing); drop everything else."""
    if not isinstance(raw, dict):
        return {}
    colors = {}
    for calendar_id, color in raw.items():
        if isinstance(color, str) and _COLOR_RE.match(color):
            colors[str(calendar_id)] = color if color.startswith("#") else f"#{color}"
        else:
            logger.debug("Ignoring invalid color %r for %s", color, calendar_id)
    return colors


def _calendar_entries(calendars: list[CalendarInfo], config: BusyConfig) -> list[dict[str, Any]]:
    return [
        {
            "displayName": c.display_name or c.id,
            "url": c.id,
            "provider": c.provider,
            "busy": config.is_calendar_busy(c.id),
            "color": config.calendar_colors.get(c.id),
        }
        for c in calendars
    ]


def _diagnostics(view: CalendarView) -> list[dict[str, Any]]:
    return [
        {
            "calendarUrl": status.calendar_id,
            "calendar": status.display_name or status.calendar_id,
            "provider": status.provider,
            "status": status.status,
            "count": status.count,
            "error": status.error,
            "elapsedMs": status.elapsed_ms,
        }
        for status in view.calendars.values()
    ]


def _uid_action(data: dict[str, Any]) -> tuple[str, bool]:
    uid = data.get("uid")
    action = data.get("action")
    if not uid or not action or not isinstance(uid, str):
        raise ValidationError("uid_and_action_required", "uid and action are required")
    if action not in _ACTIONS:
        raise ValidationError("invalid_action", "action must be 'add' or 'remove'")
    return uid, action == "add"


def register_calendar_routes(
    app: Any,
    calendar_service: CalendarService,
    busy_config: BusyConfigService,
    cache: EventCache,
    tz: datetime.tzinfo,
    admin_token: Optional[str] = None,
) -> None:
    """Register the /calendar/* view and configuration routes.

    Args:
        app: aiohttp web application
        calendar_service: Cached merged occurrences
        busy_config: Busy configuration service
        cache: Event cache (for explicit invalidation)
        tz: Business timezone defining days and months
        admin_token: Bearer token required by mutating routes, if set
    """
    from aiohttp import web

    async def _list_response(
        request: Any, window_start: datetime.datetime, window_end: datetime.datetime
    ) -> Any:
        view = await calendar_service.view(window_start, window_end)
        events = filter_for_list(
            view.occurrences, view.config, blocking_only=flag_query(request, "blockingOnly")
        )
        body: dict[str, Any] = {
            "range": {"start": format_utc_iso(window_start), "end": format_utc_iso(window_end)},
            "events": [e.to_api_dict() for e in events],
            "cached": view.cached,
        }
        if flag_query(request, "debug"):
            body["debug"] = _diagnostics(view)
        return web.json_response(body)

    async def get_day(request: Any) -> Any:
        """Every occurrence of one local day, hidden calendars included."""
        try:
            day = parse_query_date(request.query.get("date"))
        except DateParseError as e:
            raise ValidationError("invalid_date", str(e)) from e
        window_start, window_end = local_day_bounds(day, tz)
        view = await calendar_service.view(window_start, window_end)
        return web.json_response(
            {
                "date": day.isoformat(),
                "events": [o.to_api_dict() for o in view.occurrences],
                "cached": view.cached,
            }
        )

    async def get_week(request: Any) -> Any:
        """Occurrences from ``start`` through ``end`` (both inclusive local dates)."""
        try:
            start = parse_query_date(request.query.get("start"))
            end = parse_query_date(request.query.get("end"))
        except DateParseError as e:
            raise ValidationError("invalid_start_or_end_date", str(e)) from e
        if end < start:
            raise ValidationError("invalid_start_or_end_date", "end precedes start")
        return await _list_response(
            request,
            local_midnight(start, tz),
            local_midnight(end + datetime.timedelta(days=1), tz),
        )

    async def get_month(request: Any) -> Any:
        """Occurrences of one local calendar month (``month`` is 1-12)."""
        try:
            year = int(request.query.get("year", ""))
            month = int(request.query.get("month", ""))
        except ValueError as e:
            raise ValidationError("invalid_year_month", "year and month are required") from e
        if not 1 <= month <= 12 or not 1 <= year <= 9998:
            raise ValidationError("invalid_year_month", "month must be 1-12")
        first = datetime.date(year, month, 1)
        days = _calendar.monthrange(year, month)[1]
        return await _list_response(
            request,
            local_midnight(first, tz),
            local_midnight(first + datetime.timedelta(days=days), tz),
        )

    async def get_config(_request: Any) -> Any:
        """Known calendars with busy flags, plus whitelist and force-busy ids."""
        calendars, failures = await calendar_service.calendars()
        config = await busy_config.get()
        return web.json_response(
            {
                "calendars": _calendar_entries(calendars, config),
                "whitelist": sorted(config.whitelist_ids),
                "forceBusy": sorted(config.force_busy_ids),
                "colors": config.calendar_colors,
                "providerErrors": {k: v.error for k, v in failures.items()},
            }
        )

    async def post_config(request: Any) -> Any:
        """Replace busy calendars (``busy``) and merge colors (``colors``)."""
        if not check_bearer_token(request, admin_token):
            return unauthorized()
        data = await read_json_object(request)
        busy = data.get("busy")
        if busy is not None and not isinstance(busy, list):
            raise ValidationError("invalid_busy", "busy must be a list of calendar ids")
        colors = _normalize_colors(data.get("colors")) if "colors" in data else None

        config = await busy_config.update_calendars(busy=busy, colors=colors)
        calendars, _ = await calendar_service.calendars()
        logger.info("Busy calendars now %s", sorted(config.busy_calendar_ids) or "all")
        return web.json_response(
            {
                "ok": True,
                "calendars": _calendar_entries(calendars, config),
                "colors": config.calendar_colors,
            }
        )

    async def post_whitelist(request: Any) -> Any:
        """Add or remove a series id from the never-blocking whitelist."""
        if not check_bearer_token(request, admin_token):
            return unauthorized()
        uid, add = _uid_action(await read_json_object(request))
        config = await busy_config.set_whitelist(uid, add)
        return web.json_response(
            {
                "ok": True,
                "whitelist": sorted(config.whitelist_ids),
                "forceBusy": sorted(config.force_busy_ids),
            }
        )

    async def post_event_busy(request: Any) -> Any:
        """Add or remove a series id from the always-blocking set."""
        if not check_bearer_token(request, admin_token):
            return unauthorized()
        uid, add = _uid_action(await read_json_object(request))
        config = await busy_config.set_force_busy(uid, add)
        return web.json_response(
            {
                "ok": True,
                "forceBusy": sorted(config.force_busy_ids),
                "whitelist": sorted(config.whitelist_ids),
            }
        )

    async def post_cache_clear(request: Any) -> Any:
        """Drop every cached window."""
        if not check_bearer_token(request, admin_token):
            return unauthorized()
        removed = await cache.invalidate()
        return web.json_response({"ok": True, "cleared": removed})

    app.router.add_get("/calendar/day", get_day)
    app.router.add_get("/calendar/week", get_week)
    app.router.add_get("/calendar/month", get_month)
    app.router.add_get("/calendar/config", get_config)
    app.router.add_post("/calendar/config", post_config)
    app.router.add_post("/calendar/whitelist", post_whitelist)
    app.router.add_post("/calendar/event-busy", post_event_busy)
    app.router.add_post("/calendar/cache/clear", post_cache_clear)
