"""Meetings booked through slotsync itself."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from slotsync.core.datetime_utils import now_utc
from slotsync.exceptions import SlotSyncError, ValidationError
from slotsync.models import Meeting, MeetingStatus
from slotsync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class MeetingStore:
    """CRUD over the ``meetings`` table."""

    def __init__(self, database: DatabaseManager) -> None:
        self._database = database

    async def list_meetings(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        status: Optional[str] = None,
    ) -> list[Meeting]:
        """Meetings overlapping ``[start, end)``, optionally filtered by status."""
        rows = await self._database.get_meetings(start, end, status)
        return [Meeting.model_validate(row) for row in rows]

    async def scheduled_between(self, start: datetime, end: datetime) -> list[Meeting]:
        return await self.list_meetings(start, end, MeetingStatus.SCHEDULED.value)

    async def create(self, title: str, start: datetime, end: datetime) -> Meeting:
        """Book a meeting.

        Raises:
            ValidationError: ``invalid_range`` when end does not follow start
            SlotSyncError: When the meeting could not be stored
        """
        if end <= start:
            raise ValidationError("invalid_range", "Meeting end must be after its start")
        meeting = Meeting(
            id=uuid.uuid4().hex,
            title=(title or "").strip(),
            start=start,
            end=end,
            created_at=now_utc(),
        )
        record = {
            "id": meeting.id,
            "title": meeting.title,
            "start": meeting.start,
            "end": meeting.end,
            "status": meeting.status,
            "created_at": meeting.created_at,
        }
        if not await self._database.insert_meeting(record):
            raise SlotSyncError(f"could not store meeting {meeting.id}")
        logger.info("Scheduled meeting %s (%s - %s)", meeting.id, start, end)
        return meeting

    async def cancel(self, meeting_id: str) -> bool:
        """Mark a meeting cancelled; False when no such meeting exists."""
        cancelled = await self._database.update_meeting_status(
            meeting_id, MeetingStatus.CANCELLED.value
        )
        if cancelled:
            logger.info("Cancelled meeting %s", meeting_id)
        return cancelled
