"""SQLite persistence for slotsync (busy config, sync state, caches, hours, meetings)."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

import aiosqlite

from slotsync.core.datetime_utils import format_utc_iso, now_utc, parse_iso_datetime

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS busy_config (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        provider TEXT NOT NULL,
        calendar_id TEXT NOT NULL,
        display_name TEXT NOT NULL DEFAULT '',
        last_sync_at TEXT,
        is_syncing INTEGER NOT NULL DEFAULT 0,
        consecutive_errors INTEGER NOT NULL DEFAULT 0,
        next_sync_at TEXT,
        sync_token TEXT,
        last_error TEXT,
        window_start TEXT,
        window_end TEXT,
        PRIMARY KEY (provider, calendar_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS synced_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        provider TEXT NOT NULL,
        calendar_id TEXT NOT NULL,
        start_utc TEXT NOT NULL,
        end_utc TEXT NOT NULL,
        payload TEXT NOT NULL,
        synced_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_synced_events_calendar
    ON synced_events(provider, calendar_id, start_utc)
    """,
    """
    CREATE TABLE IF NOT EXISTS cache_entries (
        cache_key TEXT PRIMARY KEY,
        scope TEXT NOT NULL,
        window_start TEXT NOT NULL,
        window_end TEXT NOT NULL,
        payload TEXT NOT NULL,
        fetched_at TEXT NOT NULL,
        ttl_seconds INTEGER NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_cache_entries_expires
    ON cache_entries(expires_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS business_hours (
        day_of_week TEXT PRIMARY KEY,
        display_format TEXT NOT NULL DEFAULT '',
        open_minutes INTEGER,
        close_minutes INTEGER,
        is_closed INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS meetings (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL DEFAULT '',
        start_utc TEXT NOT NULL,
        end_utc TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'scheduled',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_meetings_start
    ON meetings(start_utc)
    """,
)

_SYNC_STATE_COLUMNS = (
    "provider",
    "calendar_id",
    "display_name",
    "last_sync_at",
    "is_syncing",
    "consecutive_errors",
    "next_sync_at",
    "sync_token",
    "last_error",
    "window_start",
    "window_end",
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return format_utc_iso(value) if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return parse_iso_datetime(value) if value else None


class DatabaseManager:
    """Manages SQLite operations for slotsync's durable state.

    Every public method opens its own connection. Failures are logged and
    reported through the return value so callers never crash on storage.
    """

    def __init__(self, database_path: Union[Path, str]):
        """Initialize database manager.

        Args:
            database_path: Path to SQLite database file
        """
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False
        self._initialization_lock: Optional[asyncio.Lock] = None

        logger.info("Database manager initialized (lazy): %s", self.database_path)

    async def _ensure_initialized(self) -> bool:
        """Ensure the schema exists before the first operation.

        Returns:
            True if initialization successful, False otherwise
        """
        if self._initialized:
            return True

        if self._initialization_lock is None:
            self._initialization_lock = asyncio.Lock()

        async with self._initialization_lock:
            if self._initialized:
                return True
            try:
                async with aiosqlite.connect(str(self.database_path)) as db:
                    await db.execute("PRAGMA journal_mode=WAL")
                    await db.execute("PRAGMA synchronous=NORMAL")
                    for statement in _SCHEMA:
                        await db.execute(statement)
                    await db.commit()
                self._initialized = True
                logger.debug("Database schema ready at %s", self.database_path)
            except Exception:
                logger.exception("Failed to initialize database")
                return False
        return True

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        if not await self._ensure_initialized():
            raise RuntimeError(f"database {self.database_path} unavailable")
        async with aiosqlite.connect(str(self.database_path)) as db:
            db.row_factory = aiosqlite.Row
            yield db

    # ------------------------------------------------------------ key/value

    async def get_json(self, key: str) -> Optional[Any]:
        """Load a JSON document stored under ``key`` in the busy_config table."""
        try:
            async with self._connect() as db:
                cursor = await db.execute("SELECT value FROM busy_config WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return json.loads(row["value"]) if row else None
        except Exception:
            logger.exception("Failed to load %s", key)
            return None

    async def put_json(self, key: str, value: Any) -> bool:
        """Store a JSON document under ``key`` (insert or replace)."""
        try:
            async with self._connect() as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO busy_config (key, value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    """,
                    (key, json.dumps(value)),
                )
                await db.commit()
                return True
        except Exception:
            logger.exception("Failed to persist %s", key)
            return False

    # ----------------------------------------------------------- sync state

    async def get_sync_states(self) -> list[dict[str, Any]]:
        """Return all sync_state rows as dicts with datetimes decoded."""
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    "SELECT * FROM sync_state ORDER BY provider, calendar_id"
                )
                rows = await cursor.fetchall()
        except Exception:
            logger.exception("Failed to load sync states")
            return []

        states = []
        for row in rows:
            record = dict(row)
            for key in ("last_sync_at", "next_sync_at", "window_start", "window_end"):
                record[key] = _from_iso(record[key])
            record["is_syncing"] = bool(record["is_syncing"])
            states.append(record)
        return states

    async def upsert_sync_state(self, state: dict[str, Any]) -> bool:
        """Insert or replace one sync_state row."""
        values = []
        for column in _SYNC_STATE_COLUMNS:
            value = state.get(column)
            if isinstance(value, datetime):
                value = _iso(value)
            elif isinstance(value, bool):
                value = int(value)
            values.append(value)
        if values[4] is None:
            values[4] = 0
        if values[5] is None:
            values[5] = 0
        if values[2] is None:
            values[2] = ""

        try:
            async with self._connect() as db:
                await db.execute(
                    f"""
                    INSERT OR REPLACE INTO sync_state ({", ".join(_SYNC_STATE_COLUMNS)})
                    VALUES ({", ".join("?" for _ in _SYNC_STATE_COLUMNS)})
                    """,  # nosec B608 - column names are module constants
                    values,
                )
                await db.commit()
                return True
        except Exception:
            logger.exception(
                "Failed to persist sync state for %s", state.get("calendar_id")
            )
            return False

    async def reset_sync_states(self) -> int:
        """Forget tokens, windows and backoff for every calendar."""
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    UPDATE sync_state
                    SET sync_token = NULL, last_sync_at = NULL, next_sync_at = NULL,
                        consecutive_errors = 0, last_error = NULL,
                        window_start = NULL, window_end = NULL, is_syncing = 0
                    """
                )
                await db.commit()
                return cursor.rowcount
        except Exception:
            logger.exception("Failed to reset sync states")
            return 0

    async def clear_syncing_flags(self) -> None:
        """Release ``is_syncing`` gates left over from a previous process."""
        try:
            async with self._connect() as db:
                await db.execute("UPDATE sync_state SET is_syncing = 0 WHERE is_syncing = 1")
                await db.commit()
        except Exception:
            logger.exception("Failed to clear syncing flags")

    # -------------------------------------------------------- synced events

    async def replace_synced_events(
        self,
        provider: str,
        calendar_id: str,
        rows: list[tuple[datetime, datetime, str]],
    ) -> bool:
        """Replace one calendar's synced occurrences.

        Args:
            provider: Provider tag
            calendar_id: Calendar identifier
            rows: (start, end, json payload) per occurrence
        """
        synced_at = _iso(now_utc())
        try:
            async with self._connect() as db:
                await db.execute(
                    "DELETE FROM synced_events WHERE provider = ? AND calendar_id = ?",
                    (provider, calendar_id),
                )
                await db.executemany(
                    """
                    INSERT INTO synced_events
                        (provider, calendar_id, start_utc, end_utc, payload, synced_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (provider, calendar_id, _iso(start), _iso(end), payload, synced_at)
                        for start, end, payload in rows
                    ],
                )
                await db.commit()
                logger.debug("Stored %d synced occurrences for %s", len(rows), calendar_id)
                return True
        except Exception:
            logger.exception("Failed to store synced events for %s", calendar_id)
            return False

    async def get_synced_events(
        self, provider: str, calendar_id: str, window_start: datetime, window_end: datetime
    ) -> list[str]:
        """Return JSON payloads of synced occurrences overlapping the window."""
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    """
                    SELECT payload FROM synced_events
                    WHERE provider = ? AND calendar_id = ?
                      AND start_utc < ? AND (end_utc > ? OR start_utc >= ?)
                    ORDER BY start_utc
                    """,
                    (
                        provider,
                        calendar_id,
                        _iso(window_end),
                        _iso(window_start),
                        _iso(window_start),
                    ),
                )
                rows = await cursor.fetchall()
                return [row["payload"] for row in rows]
        except Exception:
            logger.exception("Failed to read synced events for %s", calendar_id)
            return []

    async def clear_synced_events(self) -> int:
        """Delete every synced occurrence."""
        try:
            async with self._connect() as db:
                cursor = await db.execute("DELETE FROM synced_events")
                await db.commit()
                return cursor.rowcount
        except Exception:
            logger.exception("Failed to clear synced events")
            return 0

    # -------------------------------------------------------- cache entries

    async def get_cache_entry(self, cache_key: str) -> Optional[dict[str, Any]]:
        """Return one cache row or None."""
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    "SELECT * FROM cache_entries WHERE cache_key = ?", (cache_key,)
                )
                row = await cursor.fetchone()
                return dict(row) if row else None
        except Exception:
            logger.exception("Failed to read cache entry %s", cache_key)
            return None

    async def put_cache_entry(
        self,
        cache_key: str,
        scope: str,
        window_start: datetime,
        window_end: datetime,
        payload: str,
        fetched_at: datetime,
        ttl_seconds: int,
        expires_at: datetime,
    ) -> bool:
        """Insert or replace one cache row."""
        try:
            async with self._connect() as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO cache_entries (
                        cache_key, scope, window_start, window_end,
                        payload, fetched_at, ttl_seconds, expires_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        cache_key,
                        scope,
                        _iso(window_start),
                        _iso(window_end),
                        payload,
                        _iso(fetched_at),
                        ttl_seconds,
                        _iso(expires_at),
                    ),
                )
                await db.commit()
                return True
        except Exception:
            logger.exception("Failed to store cache entry %s", cache_key)
            return False

    async def delete_cache_entries(self, scope: Optional[str] = None) -> int:
        """Delete cache rows for one scope, or all rows."""
        try:
            async with self._connect() as db:
                if scope is None:
                    cursor = await db.execute("DELETE FROM cache_entries")
                else:
                    cursor = await db.execute(
                        "DELETE FROM cache_entries WHERE scope = ?", (scope,)
                    )
                await db.commit()
                return cursor.rowcount
        except Exception:
            logger.exception("Failed to delete cache entries")
            return 0

    async def prune_cache_entries(self, cutoff: datetime) -> int:
        """Delete cache rows that expired before ``cutoff``."""
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    "DELETE FROM cache_entries WHERE expires_at < ?", (_iso(cutoff),)
                )
                await db.commit()
                return cursor.rowcount
        except Exception:
            logger.exception("Failed to prune cache entries")
            return 0

    # -------------------------------------------------------- business hours

    async def get_business_hours(self) -> list[dict[str, Any]]:
        """Return all business_hours rows."""
        try:
            async with self._connect() as db:
                cursor = await db.execute("SELECT * FROM business_hours")
                rows = await cursor.fetchall()
                return [dict(row) | {"is_closed": bool(row["is_closed"])} for row in rows]
        except Exception:
            logger.exception("Failed to load business hours")
            return []

    async def upsert_business_hours(self, record: dict[str, Any]) -> bool:
        """Insert or replace one weekday's hours."""
        try:
            async with self._connect() as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO business_hours
                        (day_of_week, display_format, open_minutes, close_minutes, is_closed)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        record["day_of_week"],
                        record.get("display_format") or "",
                        record.get("open_minutes"),
                        record.get("close_minutes"),
                        int(bool(record.get("is_closed"))),
                    ),
                )
                await db.commit()
                return True
        except Exception:
            logger.exception("Failed to store business hours for %s", record.get("day_of_week"))
            return False

    # ------------------------------------------------------------- meetings

    async def insert_meeting(self, record: dict[str, Any]) -> bool:
        """Insert one meeting row."""
        try:
            async with self._connect() as db:
                await db.execute(
                    """
                    INSERT INTO meetings (id, title, start_utc, end_utc, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record["id"],
                        record.get("title") or "",
                        _iso(record["start"]),
                        _iso(record["end"]),
                        record.get("status", "scheduled"),
                        _iso(record["created_at"]),
                    ),
                )
                await db.commit()
                return True
        except Exception:
            logger.exception("Failed to store meeting %s", record.get("id"))
            return False

    async def get_meetings(
        self,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        status: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Return meetings overlapping the optional window, ordered by start."""
        clauses = []
        params: list[Any] = []
        if window_end is not None:
            clauses.append("start_utc < ?")
            params.append(_iso(window_end))
        if window_start is not None:
            clauses.append("end_utc > ?")
            params.append(_iso(window_start))
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    f"SELECT * FROM meetings {where} ORDER BY start_utc",  # nosec B608
                    params,
                )
                rows = await cursor.fetchall()
        except Exception:
            logger.exception("Failed to load meetings")
            return []

        return [
            {
                "id": row["id"],
                "title": row["title"],
                "start": parse_iso_datetime(row["start_utc"]),
                "end": parse_iso_datetime(row["end_utc"]),
                "status": row["status"],
                "created_at": parse_iso_datetime(row["created_at"]),
            }
            for row in rows
        ]

    async def update_meeting_status(self, meeting_id: str, status: str) -> bool:
        """Set a meeting's status; False when the meeting does not exist."""
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE meetings SET status = ? WHERE id = ?", (status, meeting_id)
                )
                await db.commit()
                return cursor.rowcount > 0
        except Exception:
            logger.exception("Failed to update meeting %s", meeting_id)
            return False
