"""Exception hierarchy for slotsync.

Errors below the merge boundary (parse, rule and provider errors) are always
recovered locally and turned into partial results plus diagnostics. Only
request validation failures and a total provider outage reach HTTP callers.
"""

from __future__ import annotations

from typing import Any, Optional


class SlotSyncError(Exception):
    """Base exception for all slotsync errors."""


class DateParseError(SlotSyncError, ValueError):
    """A calendar or query date value could not be parsed."""


class EventParseError(SlotSyncError):
    """A calendar object block is malformed.

    The offending block is dropped; the surrounding batch continues.
    """


class RecurrenceRuleError(SlotSyncError):
    """A recurrence rule is unrecognized or carries a corrupted bound.

    Raised when:
    - FREQ is missing or not one of DAILY/WEEKLY/MONTHLY/YEARLY
    - INTERVAL or COUNT is not a positive integer
    - UNTIL cannot be parsed or lies decades out of range

    The event is treated as a non-recurring one-off.
    """


class ProviderError(SlotSyncError):
    """Fetching from one external calendar failed (network, auth, payload)."""

    def __init__(self, message: str, provider: str = "", calendar_id: str = "") -> None:
        super().__init__(message)
        self.provider = provider
        self.calendar_id = calendar_id


class ProviderTimeoutError(ProviderError):
    """A provider fetch exceeded its time budget."""


class ProvidersUnavailableError(SlotSyncError):
    """Every calendar of every enabled provider failed.

    Should result in HTTP 502 Bad Gateway.
    """

    def __init__(self, message: str, calendars: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.calendars = calendars or {}


class ConfigurationError(SlotSyncError):
    """Configuration is missing or malformed (e.g. unparseable business hours)."""


class ValidationError(SlotSyncError):
    """Request parameters failed validation.

    Carries a machine-readable ``code`` that is returned to the caller
    together with HTTP 400 Bad Request.
    """

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code
