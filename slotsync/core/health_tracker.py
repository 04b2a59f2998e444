"""Health tracking for the slotsync server."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Any, Optional

STALE_HEARTBEAT_SECONDS = 900
DEGRADED_AFTER_SECONDS = 1800


@dataclass
class HealthStatus:
    """Health status information for the server."""

    status: str  # "ok" or "degraded"
    server_time_iso: str
    uptime_seconds: int
    pid: int
    calendar_count: int
    last_sync_success_age_seconds: Optional[int]
    background_tasks: list[dict[str, Any]]


@dataclass
class SystemDiagnostics:
    """System diagnostics information."""

    platform: str
    python_version: str
    event_loop_running: bool


class HealthTracker:
    """Records sync attempts and scheduler heartbeats for the health endpoint."""

    def __init__(self) -> None:
        self._start_time: float = time.time()
        self._last_refresh_attempt: Optional[float] = None
        self._last_refresh_success: Optional[float] = None
        self._current_count: int = 0
        self._background_task_heartbeat: Optional[float] = None

    def record_refresh_attempt(self) -> None:
        """Record that a sync tick ran."""
        self._last_refresh_attempt = time.time()

    def record_refresh_success(self, count: int) -> None:
        """Record a sync tick without failures.

        Args:
            count: Calendars synced or confirmed unchanged by the tick
        """
        self._last_refresh_success = time.time()
        self._current_count = count

    def record_background_heartbeat(self) -> None:
        """Record that the scheduler loop is alive."""
        self._background_task_heartbeat = time.time()

    def get_uptime_seconds(self) -> int:
        return int(time.time() - self._start_time)

    def get_last_refresh_age_seconds(self) -> Optional[int]:
        if self._last_refresh_success is None:
            return None
        return int(time.time() - self._last_refresh_success)

    def get_background_task_status(self) -> dict[str, Any]:
        if self._background_task_heartbeat is None:
            return {"name": "sync_scheduler", "status": "unknown", "last_heartbeat_age_s": None}

        heartbeat_age = int(time.time() - self._background_task_heartbeat)
        return {
            "name": "sync_scheduler",
            "status": "running" if heartbeat_age < STALE_HEARTBEAT_SECONDS else "stale",
            "last_heartbeat_age_s": heartbeat_age,
        }

    def determine_overall_status(self) -> str:
        """Return "ok" or "degraded".

        A server that never completed a clean sync tick, or has not done so
        for half an hour, is degraded. Requests still work from live fetches.
        """
        age = self.get_last_refresh_age_seconds()
        if age is None or age > DEGRADED_AFTER_SECONDS:
            return "degraded"
        return "ok"

    def get_health_status(self, current_time_iso: str) -> HealthStatus:
        return HealthStatus(
            status=self.determine_overall_status(),
            server_time_iso=current_time_iso,
            uptime_seconds=self.get_uptime_seconds(),
            pid=os.getpid(),
            calendar_count=self._current_count,
            last_sync_success_age_seconds=self.get_last_refresh_age_seconds(),
            background_tasks=[self.get_background_task_status()],
        )


def get_system_diagnostics() -> SystemDiagnostics:
    """Get platform and runtime information."""
    import asyncio
    import platform
    import sys

    event_loop_running = False
    try:
        asyncio.get_running_loop()
        event_loop_running = True
    except RuntimeError:
        pass

    return SystemDiagnostics(
        platform=platform.system(),
        python_version=sys.version.split()[0],
        event_loop_running=event_loop_running,
    )
