"""Blocking classification and list visibility for occurrences."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from slotsync.models import BusyConfig, Occurrence


def classify(occurrence: Occurrence, config: BusyConfig) -> tuple[bool, Optional[str]]:
    """Decide whether an occurrence blocks availability.

    Order: whitelisted series never block, force-busy series always block,
    otherwise the calendar's busy flag decides (every calendar is busy while
    no busy calendars are configured). Occurrences without a series id go
    straight to the calendar check.

    Returns:
        (blocking, color) where color comes from the calendar color map
    """
    color = config.calendar_colors.get(occurrence.source_calendar_id)
    series_id = occurrence.series_id
    if series_id:
        if series_id in config.whitelist_ids:
            return False, color
        if series_id in config.force_busy_ids:
            return True, color
    return config.is_calendar_busy(occurrence.source_calendar_id), color


def annotate(occurrences: Iterable[Occurrence], config: BusyConfig) -> list[Occurrence]:
    """Return classified copies of ``occurrences`` (inputs are not modified)."""
    annotated = []
    for occ in occurrences:
        blocking, color = classify(occ, config)
        annotated.append(occ.model_copy(update={"is_blocking": blocking, "color": color}))
    return annotated


def visible_in_list(occurrence: Occurrence, config: BusyConfig) -> bool:
    """List views show busy calendars plus force-busy series; the rest is hidden."""
    if config.is_calendar_busy(occurrence.source_calendar_id):
        return True
    return bool(occurrence.series_id and occurrence.series_id in config.force_busy_ids)


def filter_for_list(
    occurrences: Iterable[Occurrence], config: BusyConfig, blocking_only: bool = False
) -> list[Occurrence]:
    """Apply list-view visibility (and optionally keep blocking occurrences only)."""
    result = [o for o in occurrences if visible_in_list(o, config)]
    if blocking_only:
        result = [o for o in result if o.is_blocking]
    return result
