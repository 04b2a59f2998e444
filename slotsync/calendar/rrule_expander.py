"""Recurrence expansion for slotsync.

Expansion is a pure function of (event, window): the same inputs always
produce the same ordered list. Stepping happens on business-timezone
wall-clock time so a 09:00 meeting stays at 09:00 across DST changes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Any, Optional

from dateutil.relativedelta import relativedelta

from slotsync.core.datetime_utils import get_business_timezone, localize, now_utc, to_local
from slotsync.models import (
    DEFAULT_EVENT_MINUTES,
    WEEKDAY_CODES,
    Frequency,
    Occurrence,
    RawEvent,
    RecurrenceRule,
)

logger = logging.getLogger(__name__)


@dataclass
class ExpanderConfig:
    """Configuration for recurrence expansion."""

    max_iterations_per_rule: int = 50_000
    corrupt_until_past_years: int = 10
    corrupt_until_future_years: int = 100
    default_event_minutes: int = DEFAULT_EVENT_MINUTES

    @classmethod
    def from_settings(cls, settings: Any) -> "ExpanderConfig":
        """Extract expansion configuration from a settings object.

        Args:
            settings: Configuration object (Config dataclass or namespace)

        Returns:
            ExpanderConfig with values from settings or defaults
        """
        return cls(
            max_iterations_per_rule=getattr(settings, "max_iterations_per_rule", 50_000),
            corrupt_until_past_years=getattr(settings, "corrupt_until_past_years", 10),
            corrupt_until_future_years=getattr(settings, "corrupt_until_future_years", 100),
            default_event_minutes=getattr(
                settings, "default_event_minutes", DEFAULT_EVENT_MINUTES
            ),
        )


def _week_start(day: datetime) -> datetime:
    """Sunday 00:00 of the week containing ``day`` (naive wall time)."""
    offset = (day.weekday() + 1) % 7  # Monday=0 -> 1, Sunday=6 -> 0
    return (day - timedelta(days=offset)).replace(hour=0, minute=0, second=0, microsecond=0)


def _weekday_code(day: datetime) -> str:
    return WEEKDAY_CODES[(day.weekday() + 1) % 7]


def _add_months_rolling(value: datetime, months: int) -> datetime:
    """Add months keeping the day number; days past month end roll into the next.

    Jan 31 2024 plus one month is Mar 2 (Feb 2024 has 29 days).
    Each step starts from the previous result, so the series stays on the
    rolled-over day afterwards.
    """
    first = value.replace(day=1) + relativedelta(months=months)
    return first + timedelta(days=value.day - 1)


class RecurrenceExpander:
    """Expands RawEvents into concrete Occurrences inside a window."""

    def __init__(self, tz: Optional[tzinfo] = None, config: Optional[ExpanderConfig] = None):
        """Initialize expander.

        Args:
            tz: Business timezone whose wall clock recurrences follow
            config: Expansion limits; defaults when omitted
        """
        self.tz = tz or get_business_timezone()
        self.config = config or ExpanderConfig()

    # ------------------------------------------------------------------ core

    def expand(
        self, event: RawEvent, window_start: datetime, window_end: datetime
    ) -> list[Occurrence]:
        """Expand a recurring event into occurrences in ``[window_start, window_end)``.

        The occurrence counter only advances for occurrences actually emitted
        (inside the window and not excluded), and expansion stops once it
        reaches ``count``. An unrecognized frequency yields no occurrences.

        Args:
            event: Recurring event; ``start`` is the rule anchor
            window_start: Inclusive window start (aware)
            window_end: Exclusive window end (aware)

        Returns:
            Occurrences ordered by start
        """
        rule = event.recurrence_rule
        if rule is None:
            return []
        if not rule.is_supported:
            logger.warning(
                "Unrecognized recurrence frequency %r for event %s; no occurrences",
                rule.frequency,
                event.id or event.summary,
            )
            return []

        effective_end = window_end
        if rule.until is not None and rule.until < effective_end:
            effective_end = rule.until
        if effective_end <= window_start:
            return []

        duration = event.duration(self.config.default_event_minutes)
        anchor_local = to_local(event.start, self.tz).replace(tzinfo=None)

        occurrences: list[Occurrence] = []
        emitted = 0
        iterations = 0
        for candidate_local in self._candidates(rule, anchor_local):
            iterations += 1
            if iterations > self.config.max_iterations_per_rule:
                logger.warning(
                    "Stopping expansion of %s after %d iterations",
                    event.id or event.summary,
                    iterations - 1,
                )
                break

            start = localize(candidate_local, self.tz)
            if start >= effective_end:
                break
            if start < window_start or start < event.start:
                continue
            if start in event.exception_dates:
                continue

            occurrences.append(
                self._make_occurrence(event, start, start + duration, recurring=True)
            )
            emitted += 1
            if rule.count is not None and emitted >= rule.count:
                break

        return occurrences

    def _candidates(self, rule: RecurrenceRule, anchor: datetime) -> Iterator[datetime]:
        """Yield naive wall-clock candidates in ascending order, without end."""
        if rule.frequency == Frequency.DAILY.value:
            step = timedelta(days=rule.interval)
            current = anchor
            while True:
                yield current
                current += step

        elif rule.frequency == Frequency.WEEKLY.value:
            codes = rule.by_weekday or [_weekday_code(anchor)]
            offsets = sorted({WEEKDAY_CODES.index(c) for c in codes if c in WEEKDAY_CODES})
            week = _week_start(anchor)
            time_of_day = timedelta(
                hours=anchor.hour, minutes=anchor.minute, seconds=anchor.second
            )
            while True:
                for offset in offsets:
                    candidate = week + timedelta(days=offset) + time_of_day
                    if candidate < anchor:
                        continue
                    yield candidate
                week += timedelta(weeks=rule.interval)

        else:
            months = rule.interval
            if rule.frequency == Frequency.YEARLY.value:
                months *= 12
            current = anchor
            while True:
                yield current
                current = _add_months_rolling(current, months)

    def _make_occurrence(
        self, event: RawEvent, start: datetime, end: datetime, recurring: bool = False
    ) -> Occurrence:
        return Occurrence(
            series_id=event.id,
            start=start,
            end=end,
            summary=event.summary,
            source_calendar_id=event.source_calendar_id,
            source_provider=event.source_provider,
            all_day=event.all_day,
            recurring=recurring,
        )

    # -------------------------------------------------------------- pipeline

    def rule_problem(self, rule: RecurrenceRule) -> Optional[str]:
        """Describe why a rule cannot be expanded, or None when it is usable."""
        if not rule.is_supported:
            return f"unrecognized frequency {rule.frequency!r}"
        if rule.until is not None:
            year = now_utc().year
            if not (
                year - self.config.corrupt_until_past_years
                <= rule.until.year
                <= year + self.config.corrupt_until_future_years
            ):
                return f"UNTIL year {rule.until.year} out of range"
        return None

    def single_occurrence(
        self, event: RawEvent, window_start: datetime, window_end: datetime
    ) -> list[Occurrence]:
        """Pass a one-off event through when it overlaps the window."""
        end = event.start + event.duration(self.config.default_event_minutes)
        if event.start >= window_end:
            return []
        if end <= window_start and event.start < window_start:
            return []
        return [self._make_occurrence(event, event.start, end)]

    def expand_event(
        self, event: RawEvent, window_start: datetime, window_end: datetime
    ) -> list[Occurrence]:
        """Turn one RawEvent into occurrences, recovering from rule errors.

        Non-recurring events pass through; an unusable rule (unknown frequency,
        corrupted UNTIL) falls back to the original single occurrence.
        """
        if event.cancelled:
            return []
        rule = event.recurrence_rule
        if rule is None:
            return self.single_occurrence(event, window_start, window_end)

        problem = self.rule_problem(rule)
        if problem:
            logger.warning(
                "Treating %r as one-off event: %s", event.summary, problem
            )
            return self.single_occurrence(event, window_start, window_end)
        return self.expand(event, window_start, window_end)

    def expand_events(
        self, events: list[RawEvent], window_start: datetime, window_end: datetime
    ) -> list[Occurrence]:
        """Expand a calendar's events, applying RECURRENCE-ID overrides.

        A modified instance (same UID plus RECURRENCE-ID) replaces the series
        occurrence it points at, so the original slot is excluded from the
        master's expansion.

        Returns:
            Occurrences ordered by start
        """
        overridden: dict[str, set[datetime]] = {}
        for ev in events:
            if ev.id and ev.recurrence_id is not None:
                overridden.setdefault(ev.id, set()).add(ev.recurrence_id)

        occurrences: list[Occurrence] = []
        for ev in events:
            if ev.recurrence_id is None and ev.id in overridden and ev.recurrence_rule:
                ev = ev.model_copy(
                    update={"exception_dates": set(ev.exception_dates) | overridden[ev.id]}
                )
            occurrences.extend(self.expand_event(ev, window_start, window_end))

        occurrences.sort(key=lambda o: o.start)
        return occurrences
