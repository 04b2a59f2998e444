"""Business hours and internal meeting routes for slotsync."""

from __future__ import annotations

import logging
from typing import Any, Optional

from slotsync.api.request_utils import check_bearer_token, read_json_object, unauthorized
from slotsync.core.datetime_utils import format_utc_iso, parse_iso_datetime
from slotsync.domain.business_hours import BusinessHoursStore
from slotsync.domain.meetings import MeetingStore
from slotsync.exceptions import DateParseError, ValidationError
from slotsync.models import BusinessHours, Meeting

logger = logging.getLogger(__name__)


def _hours_dict(hours: BusinessHours) -> dict[str, Any]:
    return {
        "dayOfWeek": hours.day_of_week,
        "displayFormat": hours.display_format,
        "openMinutes": hours.open_minutes,
        "closeMinutes": hours.close_minutes,
        "isClosed": hours.is_closed,
    }


def _meeting_dict(meeting: Meeting) -> dict[str, Any]:
    return {
        "id": meeting.id,
        "title": meeting.title,
        "start": format_utc_iso(meeting.start),
        "end": format_utc_iso(meeting.end),
        "status": meeting.status,
        "createdAt": format_utc_iso(meeting.created_at),
    }


def _optional_instant(raw: Optional[str], code: str) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return parse_iso_datetime(raw)
    except DateParseError as e:
        raise ValidationError(code, str(e)) from e


def register_admin_routes(
    app: Any,
    hours: BusinessHoursStore,
    meetings: MeetingStore,
    admin_token: Optional[str] = None,
) -> None:
    """Register /hours and /meetings routes.

    Args:
        app: aiohttp web application
        hours: Business hours store
        meetings: Internal meeting store
        admin_token: Bearer token required by mutating routes, if set
    """
    from aiohttp import web

    async def get_hours(_request: Any) -> Any:
        return web.json_response({"hours": [_hours_dict(h) for h in await hours.get_all()]})

    async def put_hours(request: Any) -> Any:
        """Set one weekday's ``displayFormat`` (e.g. ``9:00 AM - 5:00 PM``) or ``isClosed``."""
        if not check_bearer_token(request, admin_token):
            return unauthorized()
        data = await read_json_object(request)
        display_format = data.get("displayFormat")
        is_closed = data.get("isClosed")
        if display_format is not None and not isinstance(display_format, str):
            raise ValidationError("invalid_hours", "displayFormat must be a string")
        if is_closed is not None and not isinstance(is_closed, bool):
            raise ValidationError("invalid_hours", "isClosed must be a boolean")
        updated = await hours.update(request.match_info["day"], display_format, is_closed)
        return web.json_response({"ok": True, "hours": _hours_dict(updated)})

    async def list_meetings(request: Any) -> Any:
        start = _optional_instant(request.query.get("start"), "invalid_range")
        end = _optional_instant(request.query.get("end"), "invalid_range")
        status = request.query.get("status") or None
        found = await meetings.list_meetings(start, end, status)
        return web.json_response({"meetings": [_meeting_dict(m) for m in found]})

    async def create_meeting(request: Any) -> Any:
        """Book a meeting from ``{title, start, end}`` (ISO 8601 instants)."""
        if not check_bearer_token(request, admin_token):
            return unauthorized()
        data = await read_json_object(request)
        start = _optional_instant(data.get("start"), "invalid_range")
        end = _optional_instant(data.get("end"), "invalid_range")
        if start is None or end is None:
            raise ValidationError("invalid_range", "start and end are required")
        meeting = await meetings.create(str(data.get("title") or ""), start, end)
        return web.json_response({"ok": True, "meeting": _meeting_dict(meeting)}, status=201)

    async def cancel_meeting(request: Any) -> Any:
        if not check_bearer_token(request, admin_token):
            return unauthorized()
        meeting_id = request.match_info["meeting_id"]
        if not await meetings.cancel(meeting_id):
            return web.json_response({"error": "meeting_not_found"}, status=404)
        return web.json_response({"ok": True, "id": meeting_id})

    app.router.add_get("/hours", get_hours)
    app.router.add_put("/hours/{day}", put_hours)
    app.router.add_get("/meetings", list_meetings)
    app.router.add_post("/meetings", create_meeting)
    app.router.add_delete("/meetings/{meeting_id}", cancel_meeting)
