"""Request middleware: correlation ids and error mapping.

Handlers raise ``ValidationError`` for bad input and let
``ProvidersUnavailableError`` escape when no provider answered; this module
turns both into JSON error bodies.
"""

import logging
import uuid
from collections.abc import Callable
from contextvars import ContextVar
from typing import Any

from aiohttp import web

from slotsync.exceptions import ProvidersUnavailableError, ValidationError

logger = logging.getLogger(__name__)

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


@web.middleware
async def correlation_id_middleware(
    request: web.Request, handler: Callable[[web.Request], Any]
) -> web.StreamResponse:
    """Take ``X-Request-ID`` / ``X-Correlation-ID`` from the client or generate one.

    The id is stored in a context variable for log records and echoed back in
    the ``X-Request-ID`` response header.
    """
    correlation_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid.uuid4())
    )
    request_id_var.set(correlation_id)
    request["correlation_id"] = correlation_id

    response = await handler(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@web.middleware
async def error_middleware(
    request: web.Request, handler: Callable[[web.Request], Any]
) -> web.StreamResponse:
    """Map domain errors to JSON responses (400 validation, 502 providers)."""
    try:
        return await handler(request)
    except ValidationError as e:
        logger.debug("Rejected %s %s: %s", request.method, request.path, e.code)
        return web.json_response({"error": e.code, "message": e.message}, status=400)
    except ProvidersUnavailableError as e:
        logger.warning("All providers failed for %s: %s", request.path, e)
        return web.json_response(
            {"error": "providers_unavailable", "message": str(e), "calendars": e.calendars},
            status=502,
        )


def get_request_id() -> str:
    """Current request correlation id, or ``no-request-id`` outside a request."""
    return request_id_var.get() or "no-request-id"
