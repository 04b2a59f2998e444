"""Helpers shared by the route modules."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from aiohttp import web

from slotsync.exceptions import ValidationError

logger = logging.getLogger(__name__)


def check_bearer_token(request: web.Request, required_token: Optional[str]) -> bool:
    """Check if request has valid bearer token.

    Args:
        request: aiohttp request object
        required_token: Expected bearer token, or None to skip auth

    Returns:
        True if auth is valid or not required, False otherwise
    """
    if required_token is None:
        return True

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return False
    return auth_header[7:] == required_token


def unauthorized() -> web.Response:
    return web.json_response({"error": "unauthorized"}, status=401)


async def read_json_object(request: web.Request) -> dict[str, Any]:
    """Read the request body as a JSON object.

    Raises:
        ValidationError: ``invalid_json`` when the body is not a JSON object
    """
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("invalid_json", "Request body must be JSON") from e
    if not isinstance(data, dict):
        raise ValidationError("invalid_json", "Request body must be a JSON object")
    return data


def int_query(request: web.Request, name: str, default: int, code: str) -> int:
    """Integer query parameter with a default.

    Raises:
        ValidationError: with ``code`` when present but not an integer
    """
    raw = request.query.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError(code, f"{name} must be an integer") from e


def flag_query(request: web.Request, name: str) -> bool:
    return request.query.get(name, "").strip().lower() in ("1", "true", "yes")
