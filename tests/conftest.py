"""Shared fixtures and dummies.

The dummies stand in for the platform API and for real processes so no
test touches the network or spawns streamlink.
"""

import asyncio
import contextlib
import itertools
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from chzzkrec.api.client import LiveDetail, LiveInfo, VideoSummary
from chzzkrec.config.config import AppSettings
from chzzkrec.recorder.events import EventChannel
from chzzkrec.state.models import RosterEntry
from chzzkrec.state.store import Domain, PersistentState, WatchPolicy


class DummyProcess:
    """Process handle whose exit is controlled by the test."""

    def __init__(self, pid: int, command: str) -> None:
        self.pid = pid
        self.command = command
        self.returncode: Optional[int] = None
        self._exited = asyncio.Event()

    def finish(self, returncode: int = 0) -> None:
        self.returncode = returncode
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class DummyLauncher:
    def __init__(self, auto_exit: bool = False, on_spawn=None) -> None:
        self.auto_exit = auto_exit
        self.on_spawn = on_spawn
        self.processes: List[DummyProcess] = []
        self._pids = itertools.count(4000)

    async def spawn(self, command: str) -> DummyProcess:
        proc = DummyProcess(next(self._pids), command)
        self.processes.append(proc)
        if self.on_spawn:
            self.on_spawn(command)
        if self.auto_exit:
            proc.finish(0)
        return proc


class DummyApi:
    """In-memory replacement of ``ChzzkApi``."""

    def __init__(self) -> None:
        self.adult_ok = True
        self.lives: List[LiveInfo] = []
        self.details: Dict[str, object] = {}
        self.videos: Dict[str, List[VideoSummary]] = {}
        self.channel_names: Dict[str, str] = {}
        self.detail_calls: List[str] = []

    def source_url(self, channel_id: str) -> str:
        return f"https://chzzk.naver.com/live/{channel_id}"

    def cookie_header(self) -> str:
        return "NID_SES=session;NID_AUT=auth"

    async def is_able_to_record_adult(self) -> bool:
        return self.adult_ok

    async def search_lives(self, tags) -> List[LiveInfo]:
        return list(self.lives)

    async def get_live_detail(self, channel_id: str) -> Optional[LiveDetail]:
        self.detail_calls.append(channel_id)
        result = self.details.get(channel_id)
        if isinstance(result, Exception):
            raise result
        return result

    async def get_channel_name(self, channel_id: str) -> Optional[str]:
        return self.channel_names.get(channel_id)


class DummyFetcher:
    def __init__(self, videos: Optional[Dict[str, List[VideoSummary]]] = None) -> None:
        self.videos = videos or {}
        self.error: Optional[Exception] = None

    async def list_videos(self, channel_id: str) -> Optional[List[VideoSummary]]:
        if self.error:
            raise self.error
        return self.videos.get(channel_id)

    async def get_video(self, vod_num: int) -> Optional[VideoSummary]:
        for videos in self.videos.values():
            for video in videos:
                if video.video_no == vod_num:
                    return video
        return None


def video(no: int, channel_id: str = "c1", duration: float = 7200, adult: bool = False) -> VideoSummary:
    return VideoSummary(
        video_no=no,
        channel_id=channel_id,
        duration=duration,
        publish_date="2024-05-01 20:00:00",
        adult=adult,
    )


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def settings(tmp_path) -> AppSettings:
    return AppSettings(
        save_directory=tmp_path / "recordings",
        state_directory=tmp_path / "model",
        state_poll_interval_sec=0.01,
        state_debounce_sec=0.02,
        state_empty_read_retries=3,
        state_empty_read_delay_sec=0.01,
    )


@pytest_asyncio.fixture
async def state(settings):
    store = PersistentState(settings.state_directory, WatchPolicy.from_settings(settings))
    await store.load()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def events():
    channel = EventChannel()
    task = asyncio.create_task(channel.run())
    yield channel
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


@pytest.fixture
def api() -> DummyApi:
    return DummyApi()


async def add_roster(state: PersistentState, *entries: RosterEntry) -> None:
    await state.mutate(Domain.ROSTER, lambda r: {**r, **{e.channel_id: e for e in entries}})
