"""Provider adapter contract and provider-tagged payload variants.

Each adapter speaks its provider's wire format and hands RawEvent objects to
the rest of the system. Provider payload shapes (``CalDavObject``,
``RestEventPayload``) never leave the adapter that produced them.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal, Optional, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from slotsync.core.http_client import (
    get_shared_client,
    record_client_error,
    record_client_success,
)
from slotsync.exceptions import ProviderError
from slotsync.models import CalendarInfo, RawEvent

logger = logging.getLogger(__name__)


class CalDavObject(BaseModel):
    """One calendar object resource returned by a CalDAV REPORT."""

    kind: Literal["caldav"] = "caldav"
    href: str
    etag: Optional[str] = None
    calendar_data: str = ""


class RestEventTime(BaseModel):
    """``start`` / ``end`` object of a REST event: dateTime or date."""

    date_time: Optional[str] = Field(default=None, alias="dateTime")
    date: Optional[str] = None
    time_zone: Optional[str] = Field(default=None, alias="timeZone")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RestEventPayload(BaseModel):
    """One item of a REST ``events`` listing."""

    kind: Literal["rest"] = "rest"
    id: Optional[str] = None
    status: Optional[str] = None
    summary: Optional[str] = None
    start: Optional[RestEventTime] = None
    end: Optional[RestEventTime] = None
    recurrence: list[str] = Field(default_factory=list)
    recurring_event_id: Optional[str] = Field(default=None, alias="recurringEventId")
    original_start_time: Optional[RestEventTime] = Field(
        default=None, alias="originalStartTime"
    )

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


@runtime_checkable
class ProviderAdapter(Protocol):
    """Interface every calendar provider implements."""

    name: str

    async def list_calendars(self) -> list[CalendarInfo]:
        """Enumerate the provider's calendars.

        Raises:
            ProviderError: When the provider cannot be reached or answers badly
        """
        ...

    async def fetch_events(
        self, calendar: CalendarInfo, window_start: datetime, window_end: datetime
    ) -> list[RawEvent]:
        """Fetch raw events of one calendar overlapping the window.

        Raises:
            ProviderError: When the provider cannot be reached or answers badly
        """
        ...


class HttpProviderAdapter:
    """Base for adapters that talk HTTP through the shared httpx client."""

    name = "http"

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        """Initialize adapter.

        Args:
            client: Explicit client to use; the shared client otherwise
        """
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await get_shared_client(self.name)

    async def _request(
        self, method: str, url: str, calendar_id: str = "", **kwargs: Any
    ) -> httpx.Response:
        """Send a request, mapping transport and HTTP failures to ProviderError."""
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            await record_client_error(self.name)
            raise ProviderError(
                f"timeout calling {url}", provider=self.name, calendar_id=calendar_id
            ) from e
        except httpx.HTTPError as e:
            await record_client_error(self.name)
            raise ProviderError(
                f"{type(e).__name__} calling {url}: {e}",
                provider=self.name,
                calendar_id=calendar_id,
            ) from e

        if response.status_code >= 400:
            await record_client_error(self.name)
            raise ProviderError(
                f"HTTP {response.status_code} from {url}",
                provider=self.name,
                calendar_id=calendar_id,
            )
        await record_client_success(self.name)
        logger.debug("%s %s -> %d", method, url, response.status_code)
        return response
