"""SQLite session history for the recorder agent.

This module defines a thin wrapper around ``aiosqlite`` that stores one row
per capture or VOD download attempt, and a ``HistoryRecorder`` that fills
it from process lifecycle events.  The history is informational only; the
state documents remain the source of truth.
"""

import datetime as dt
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple

import aiosqlite
import structlog

from ..recorder.events import DownloadEnded, DownloadStarted, EventChannel, RecordingEnded, RecordingStarted

logger = structlog.get_logger(__name__)


class Database:
    """Asynchronous SQLite helper class."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._db: Optional[aiosqlite.Connection] = None

    async def initialise(self) -> None:
        """Opens the connection and creates tables if needed."""
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._path)
        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                username TEXT,
                vod_num INTEGER,
                pid INTEGER,
                start_time TIMESTAMP NOT NULL,
                end_time TIMESTAMP,
                status TEXT NOT NULL,
                file_path TEXT
            );
            """
        )
        await self._db.commit()

    async def execute(self, query: str, params: Iterable[Any] = ()) -> None:
        assert self._db is not None
        await self._db.execute(query, params)
        await self._db.commit()

    async def fetchall(self, query: str, params: Iterable[Any] = ()) -> Iterable[Tuple]:
        assert self._db is not None
        cursor = await self._db.execute(query, params)
        rows = await cursor.fetchall()
        await cursor.close()
        return rows

    async def open_session(
        self,
        kind: str,
        channel_id: str,
        username: str,
        start_time: dt.datetime,
        pid: Optional[int] = None,
        vod_num: Optional[int] = None,
        file_path: str = "",
    ) -> None:
        await self.execute(
            "INSERT INTO sessions (kind, channel_id, username, vod_num, pid, start_time, status, file_path)"
            " VALUES (?, ?, ?, ?, ?, ?, 'running', ?)",
            (kind, channel_id, username, vod_num, pid, start_time.isoformat(), file_path),
        )

    async def close_session(
        self,
        kind: str,
        channel_id: str,
        end_time: dt.datetime,
        returncode: Optional[int],
        vod_num: Optional[int] = None,
    ) -> None:
        status = "exited" if returncode == 0 else f"exited({returncode})"
        await self.execute(
            "UPDATE sessions SET end_time = ?, status = ? WHERE id = ("
            " SELECT id FROM sessions WHERE kind = ? AND channel_id = ? AND vod_num IS ?"
            " AND end_time IS NULL ORDER BY id DESC LIMIT 1)",
            (end_time.isoformat(), status, kind, channel_id, vod_num),
        )

    async def recent_sessions(self, limit: int = 20) -> List[Tuple]:
        rows = await self.fetchall(
            "SELECT kind, channel_id, username, vod_num, start_time, end_time, status, file_path"
            " FROM sessions ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return list(rows)

    async def close(self) -> None:
        if self._db:
            await self._db.close()


class HistoryRecorder:
    """Subscribes to lifecycle events and mirrors them into ``sessions``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def subscribe(self, events: EventChannel) -> None:
        events.subscribe(RecordingStarted, self.on_recording_started)
        events.subscribe(RecordingEnded, self.on_recording_ended)
        events.subscribe(DownloadStarted, self.on_download_started)
        events.subscribe(DownloadEnded, self.on_download_ended)

    async def _safely(self, coro) -> None:
        try:
            await coro
        except aiosqlite.Error as e:
            logger.error("failed to write session history", error=str(e))

    async def on_recording_started(self, event: RecordingStarted) -> None:
        await self._safely(
            self.db.open_session(
                "live", event.entry.channel_id, event.entry.username, event.at,
                pid=event.pid, file_path=event.file_path,
            )
        )

    async def on_recording_ended(self, event: RecordingEnded) -> None:
        await self._safely(self.db.close_session("live", event.entry.channel_id, event.at, event.returncode))

    async def on_download_started(self, event: DownloadStarted) -> None:
        item = event.item
        await self._safely(
            self.db.open_session(
                "vod", item.channel_id, item.username, event.at,
                pid=event.pid, vod_num=item.vod_num, file_path=event.file_path,
            )
        )

    async def on_download_ended(self, event: DownloadEnded) -> None:
        item = event.item
        await self._safely(
            self.db.close_session("vod", item.channel_id, event.at, event.returncode, vod_num=item.vod_num)
        )
