"""Availability route for slotsync."""

from __future__ import annotations

import logging
from typing import Any

from slotsync.api.request_utils import int_query
from slotsync.core.datetime_utils import parse_query_date
from slotsync.domain.availability import DEFAULT_SLOT_MINUTES, AvailabilityEngine
from slotsync.exceptions import DateParseError, ValidationError

logger = logging.getLogger(__name__)


def register_availability_routes(app: Any, availability: AvailabilityEngine) -> None:
    """Register GET /availability.

    Args:
        app: aiohttp web application
        availability: Slot computation engine
    """
    from aiohttp import web

    async def get_availability(request: Any) -> Any:
        """Slots for ``date`` with ``duration`` minute slots and ``buffer`` padding."""
        try:
            day = parse_query_date(request.query.get("date"))
        except DateParseError as e:
            raise ValidationError("invalid_date", str(e)) from e
        duration = int_query(request, "duration", DEFAULT_SLOT_MINUTES, "invalid_duration")
        buffer = int_query(request, "buffer", 0, "invalid_buffer")

        result = await availability.slots(day, duration, buffer)
        return web.json_response(result.to_api_dict())

    app.router.add_get("/availability", get_availability)
