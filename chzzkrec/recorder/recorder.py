"""Capture process supervision.

This module defines the ``Recorder``, which turns a "record this live" or
"download this VOD" decision into exactly one detached external process
and reports the process lifecycle as events on an
:class:`~chzzkrec.recorder.events.EventChannel`.

Live captures are fire-and-forget from the caller's point of view: the
process is spawned and a watcher task waits for it to exit.  VOD downloads
are awaited to completion, which makes :meth:`Recorder.record_vod` the unit
of work that the download admission control schedules.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from pathlib import Path
from typing import Dict, Optional, Set

import structlog

from ..api.client import ChzzkApi, LiveInfo
from ..state.models import RosterEntry, VodDownloadEntry
from ..state.store import Domain, PersistentState
from .commands import CaptureCommand, live_file_path, make_capture_command, vod_download_command, vod_file_path
from .events import DownloadEnded, DownloadStarted, EventChannel, RecordingEnded, RecordingStarted

logger = structlog.get_logger(__name__)


class ProcessLauncher:
    """Spawns shell commands as detached processes.

    Each process gets its own session so it survives the agent and is not
    hit by a terminal's Ctrl+C.  The returned handle exposes ``pid`` and an
    awaitable ``wait()``.
    """

    async def spawn(self, command: str) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )


class Recorder:
    """Runs live captures and VOD downloads as external processes."""

    def __init__(
        self,
        settings,
        api: ChzzkApi,
        state: PersistentState,
        events: EventChannel,
        launcher: Optional[ProcessLauncher] = None,
        capture: Optional[CaptureCommand] = None,
    ) -> None:
        self.settings = settings
        self.api = api
        self.state = state
        self.events = events
        self.launcher = launcher or ProcessLauncher()
        self.capture = capture or make_capture_command(settings)
        # Creators with a capture being spawned or running in this process.
        self._reserved: Set[str] = set()
        self._watchers: Dict[str, asyncio.Task] = {}

    def is_recording(self, channel_id: str) -> bool:
        return channel_id in self._reserved or channel_id in self.state.read(Domain.RECORDINGS)

    async def _adult_allowed(self) -> bool:
        if self.settings.adult_content == "skip":
            return False
        return await self.api.is_able_to_record_adult()

    def live_command(self, live: LiveInfo, entry: RosterEntry, output: Path) -> str:
        cookie = self.api.cookie_header() if live.adult else None
        return self.capture.build(self.api.source_url(entry.channel_id), live, output, cookie)

    async def start_recording(self, live: LiveInfo, entry: RosterEntry) -> bool:
        """Spawn a capture for ``entry`` unless one is already known.

        Returns ``True`` when a process was spawned.
        """
        channel_id = entry.channel_id
        if self.is_recording(channel_id):
            logger.warning("creator is already recording, abort record process", creator=entry.username)
            return False

        self._reserved.add(channel_id)
        try:
            if live.adult and not await self._adult_allowed():
                logger.warning("cannot record live stream due to adult content", creator=entry.username)
                self._reserved.discard(channel_id)
                return False

            output = live_file_path(self.settings, entry, live.live_id)
            output.parent.mkdir(parents=True, exist_ok=True)
            proc = await self.launcher.spawn(self.live_command(live, entry, output))
        except BaseException:
            self._reserved.discard(channel_id)
            raise

        logger.info("start to record creator", creator=entry.username, pid=proc.pid, file=output.name)
        try:
            await self.events.publish(RecordingStarted(entry=entry, pid=proc.pid, file_path=str(output)))
        finally:
            self._watchers[channel_id] = asyncio.create_task(self._watch_recording(proc, entry))
        return True

    async def _watch_recording(self, proc, entry: RosterEntry) -> None:
        try:
            returncode = await proc.wait()
            logger.info("creator is offline, capture ended", creator=entry.username, returncode=returncode)
            await self.events.publish(RecordingEnded(entry=entry, pid=proc.pid, returncode=returncode))
        finally:
            self._reserved.discard(entry.channel_id)
            self._watchers.pop(entry.channel_id, None)

    def vod_file_path(self, item: VodDownloadEntry) -> Path:
        return vod_file_path(self.settings, item)

    def vod_command(self, item: VodDownloadEntry) -> str:
        cookie = self.api.cookie_header() if item.adult else None
        return vod_download_command(self.settings, item, cookie)

    async def record_vod(self, item: VodDownloadEntry) -> Optional[int]:
        """Download one VOD and return the process exit code.

        Returns ``None`` without spawning anything when adult content cannot
        be downloaded with the current credential.
        """
        if item.adult and not await self._adult_allowed():
            logger.warning("cannot download vod due to adult content", creator=item.username, vod=item.vod_num)
            return None

        output = self.vod_file_path(item)
        output.parent.mkdir(parents=True, exist_ok=True)
        proc = await self.launcher.spawn(self.vod_command(item))
        logger.info("start to download vod", vod=item.vod_num, url=item.vod_url, pid=proc.pid)
        await self.events.publish(DownloadStarted(item=item, pid=proc.pid, file_path=str(output)))

        returncode = await proc.wait()
        logger.info("vod download process exited", vod=item.vod_num, returncode=returncode)
        await self.events.publish(
            DownloadEnded(item=item, pid=proc.pid, returncode=returncode, file_path=str(output), at=dt.datetime.now())
        )
        return returncode

    async def detach(self) -> None:
        """Stop watching running captures; the processes themselves keep running."""
        for task in list(self._watchers.values()):
            task.cancel()
        await asyncio.gather(*self._watchers.values(), return_exceptions=True)
        self._watchers.clear()
