"""Calendar object text parser producing provider-neutral RawEvents.

The parser is deliberately line oriented: folded lines are unfolded first,
then each ``BEGIN:VEVENT`` / ``END:VEVENT`` block is collected and its
``NAME[;PARAMS]:VALUE`` lines are split with icalendar's content-line
tokenizer. Malformed lines and blocks are dropped without failing the batch.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Optional

from icalendar.parser import Contentline

from slotsync.core.datetime_utils import (
    get_business_timezone,
    is_date_only,
    parse_ical_datetime,
    parse_ical_duration,
)
from slotsync.exceptions import DateParseError, EventParseError, RecurrenceRuleError
from slotsync.models import (
    DEFAULT_EVENT_MINUTES,
    WEEKDAY_CODES,
    ProviderKind,
    RawEvent,
    RecurrenceRule,
)

logger = logging.getLogger(__name__)


def unfold_lines(text: str) -> list[str]:
    """Unfold continuation lines.

    A line starting with a space or tab continues the previous logical line;
    it is appended with the leading whitespace stripped.
    """
    logical: list[str] = []
    for raw in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if raw[:1] in (" ", "\t") and logical:
            logical[-1] += raw.lstrip(" \t")
        elif raw.strip():
            logical.append(raw)
    return logical


def _unescape_text(value: str) -> str:
    return value.replace("\\n", "\n").replace("\\N", "\n").replace("\\,", ",").replace(
        "\\;", ";"
    ).replace("\\\\", "\\")


def parse_rrule_string(
    rule_text: str, tz: Optional[datetime.tzinfo] = None
) -> RecurrenceRule:
    """Parse an RRULE value (``FREQ=WEEKLY;BYDAY=MO,WE;COUNT=4``).

    An unrecognized FREQ is carried through unchanged; the expander reports it.

    Args:
        rule_text: Rule value, with or without a leading ``RRULE:``
        tz: Timezone for a local UNTIL value

    Returns:
        Parsed RecurrenceRule

    Raises:
        RecurrenceRuleError: If FREQ is missing or a part is malformed
    """
    text = (rule_text or "").strip()
    if text.upper().startswith("RRULE:"):
        text = text[6:]

    parts: dict[str, str] = {}
    for chunk in text.split(";"):
        if not chunk.strip():
            continue
        if "=" not in chunk:
            raise RecurrenceRuleError(f"Malformed rule part {chunk!r} in {rule_text!r}")
        key, value = chunk.split("=", 1)
        parts[key.strip().upper()] = value.strip()

    frequency = parts.get("FREQ", "").upper()
    if not frequency:
        raise RecurrenceRuleError(f"Rule without FREQ: {rule_text!r}")

    try:
        interval = int(parts.get("INTERVAL", "1"))
        count = int(parts["COUNT"]) if "COUNT" in parts else None
    except ValueError as e:
        raise RecurrenceRuleError(f"Non-numeric INTERVAL/COUNT in {rule_text!r}") from e
    if interval < 1 or (count is not None and count < 1):
        raise RecurrenceRuleError(f"INTERVAL and COUNT must be positive in {rule_text!r}")

    until = None
    if parts.get("UNTIL"):
        try:
            until = parse_ical_datetime(parts["UNTIL"], tz)
        except DateParseError as e:
            raise RecurrenceRuleError(f"Unparseable UNTIL in {rule_text!r}") from e

    by_weekday: list[str] = []
    if parts.get("BYDAY"):
        for code in parts["BYDAY"].split(","):
            # Ordinal prefixes (e.g. 2MO) are outside the supported subset.
            day = code.strip().upper()[-2:]
            if day in WEEKDAY_CODES and day not in by_weekday:
                by_weekday.append(day)

    return RecurrenceRule(
        frequency=frequency,
        interval=interval,
        until=until,
        count=count,
        by_weekday=by_weekday,
    )


@dataclass
class _EventBlock:
    """Properties collected for one VEVENT before normalization."""

    props: dict[str, tuple[str, dict[str, str]]] = field(default_factory=dict)
    exdates: list[tuple[str, dict[str, str]]] = field(default_factory=list)


class EventParser:
    """Turn raw calendar object text into RawEvents."""

    def __init__(
        self,
        tz: Optional[datetime.tzinfo] = None,
        default_event_minutes: int = DEFAULT_EVENT_MINUTES,
    ) -> None:
        """Initialize parser.

        Args:
            tz: Business timezone used for date-only and floating values
            default_event_minutes: Duration applied when DTEND/DURATION are absent
        """
        self.tz = tz or get_business_timezone()
        self.default_event_minutes = default_event_minutes

    def parse(
        self,
        text: str,
        calendar_id: str = "",
        provider: ProviderKind = ProviderKind.CALDAV,
    ) -> list[RawEvent]:
        """Parse every VEVENT block in ``text``.

        Args:
            text: Raw calendar object text (one or many VCALENDAR objects)
            calendar_id: Source calendar tag for the produced events
            provider: Source provider tag

        Returns:
            Parsed events; blocks without a usable start are dropped
        """
        events: list[RawEvent] = []
        dropped = 0
        for block in self._iter_blocks(unfold_lines(text or "")):
            try:
                events.append(self._build_event(block, calendar_id, provider))
            except EventParseError as e:
                dropped += 1
                logger.debug("Dropping calendar block from %s: %s", calendar_id or "?", e)

        if dropped:
            logger.info(
                "Parsed %d events from %s (%d malformed blocks dropped)",
                len(events),
                calendar_id or "calendar data",
                dropped,
            )
        return events

    def _iter_blocks(self, lines: list[str]):
        block: Optional[_EventBlock] = None
        nested = 0
        for line in lines:
            upper = line.strip().upper()
            if upper == "BEGIN:VEVENT":
                block = _EventBlock()
                nested = 0
                continue
            if upper == "END:VEVENT":
                if block is not None:
                    yield block
                block = None
                continue
            if block is None:
                continue
            # Skip sub-components such as VALARM so their SUMMARY/DESCRIPTION
            # never override the event's own fields.
            if upper.startswith("BEGIN:"):
                nested += 1
                continue
            if upper.startswith("END:"):
                nested = max(0, nested - 1)
                continue
            if nested:
                continue

            try:
                name, params, value = Contentline(line).parts()
            except ValueError:
                logger.debug("Skipping malformed content line: %r", line[:80])
                continue

            name = name.upper()
            param_map = {str(k).upper(): str(v) for k, v in params.items()}
            if name == "EXDATE":
                block.exdates.append((value, param_map))
            else:
                block.props[name] = (value, param_map)

    def _parse_date_prop(self, value: str, params: dict[str, str]) -> datetime.datetime:
        return parse_ical_datetime(value, self.tz, params.get("TZID"))

    def _build_event(
        self, block: _EventBlock, calendar_id: str, provider: ProviderKind
    ) -> RawEvent:
        if "DTSTART" not in block.props:
            raise EventParseError("block has no DTSTART")

        start_value, start_params = block.props["DTSTART"]
        try:
            start = self._parse_date_prop(start_value, start_params)
        except DateParseError as e:
            raise EventParseError(str(e)) from e
        all_day = is_date_only(start_value) or start_params.get("VALUE", "").upper() == "DATE"

        end: Optional[datetime.datetime] = None
        if "DTEND" in block.props:
            try:
                end = self._parse_date_prop(*block.props["DTEND"])
            except DateParseError:
                logger.debug("Ignoring unparseable DTEND %r", block.props["DTEND"][0])
        elif "DURATION" in block.props:
            try:
                end = start + parse_ical_duration(block.props["DURATION"][0])
            except DateParseError:
                logger.debug("Ignoring unparseable DURATION %r", block.props["DURATION"][0])
        if end is None and all_day:
            end = start + datetime.timedelta(days=1)

        rule = None
        if "RRULE" in block.props:
            try:
                rule = parse_rrule_string(block.props["RRULE"][0], self.tz)
            except RecurrenceRuleError as e:
                logger.warning("Treating event as one-off, bad RRULE: %s", e)

        exception_dates: set[datetime.datetime] = set()
        for value, params in block.exdates:
            for item in value.split(","):
                if not item.strip():
                    continue
                try:
                    exception_dates.add(self._parse_date_prop(item, params))
                except DateParseError:
                    logger.debug("Ignoring unparseable EXDATE %r", item)

        recurrence_id = None
        if "RECURRENCE-ID" in block.props:
            try:
                recurrence_id = self._parse_date_prop(*block.props["RECURRENCE-ID"])
            except DateParseError:
                logger.debug("Ignoring unparseable RECURRENCE-ID")

        uid = block.props.get("UID", ("", {}))[0].strip() or None
        summary = _unescape_text(block.props.get("SUMMARY", ("", {}))[0]).strip()

        return RawEvent(
            id=uid,
            summary=summary or "(No Title)",
            start=start,
            end=end,
            all_day=all_day,
            recurrence_rule=rule,
            exception_dates=exception_dates,
            recurrence_id=recurrence_id,
            cancelled=block.props.get("STATUS", ("", {}))[0].strip().upper() == "CANCELLED",
            source_calendar_id=calendar_id,
            source_provider=provider,
        )
