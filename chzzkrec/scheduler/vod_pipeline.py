"""VOD discovery, scheduling and download admission.

When a creator with VOD auto-download enabled goes offline, a few delayed
checks of their VOD list are scheduled.  Every scheduler tick resolves at
most one due check: VODs newer than the last one known when the check was
scheduled become ``waiting`` download entries, and finding any cancels the
creator's other pending checks.

Waiting entries are admitted into downloads while fewer than
``dl_vod_concurrency`` are running.  Each download moves through::

    waiting -> ongoing -> success | waiting (retry) | failed

A finished download succeeds when the file exists and its probed duration
is within ``VALID_DURATION_DIFF`` seconds of the reported one.  A missing
file fails permanently; a duration mismatch is retried until
``MAX_RETRY_COUNT`` attempts were made.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

import structlog

from ..api.client import TransientNetworkError, VideoSummary
from ..api.vod_fetch import VodFetcher
from ..recorder.events import DownloadEnded, DownloadStarted, EventChannel
from ..recorder.probe import ProbeError, get_media_duration
from ..recorder.recorder import Recorder
from ..state.models import VodCheckEntry, VodCheckList, VodDownloadEntry, VodDownloadList, VodStatus
from ..state.store import Domain, PersistentState
from ..utils.helpers import epoch_millis, is_process_running

logger = structlog.get_logger(__name__)

MAX_RETRY_COUNT = 3
VALID_DURATION_DIFF = 60 * 2
TICK_INTERVAL_SEC = 10
UNKNOWN_USER = "unknown_user"

DurationProbe = Callable[[Path], Awaitable[float]]


class VodPipeline:
    def __init__(
        self,
        settings,
        state: PersistentState,
        recorder: Recorder,
        fetcher: VodFetcher,
        probe: Optional[DurationProbe] = None,
        is_alive: Optional[Callable[[Optional[int]], bool]] = None,
    ) -> None:
        self.settings = settings
        self.state = state
        self.recorder = recorder
        self.fetcher = fetcher
        self.probe = probe or get_media_duration
        self.is_alive = is_alive or is_process_running
        self.running: Dict[int, asyncio.Task] = {}
        # Entries the adult-content gate refused on their last admission.
        self._deferred: Set[int] = set()
        # Online ids seen by each discovery source on its previous cycle.
        self._online: Dict[str, Set[str]] = {}

    def subscribe(self, events: EventChannel) -> None:
        events.subscribe(DownloadStarted, self.on_download_started)
        events.subscribe(DownloadEnded, self.on_download_ended)

    async def update_online(self, source: str, online_ids: Iterable[str], unknown: Iterable[str] = ()) -> None:
        """Record the online set of one discovery source and react to creators that left it.

        Creators in ``unknown`` could not be checked this cycle and keep
        whatever state they had on the previous one.
        """
        current = set(online_ids)
        previous = self._online.get(source, set())
        current |= previous & (set(unknown) - current)
        self._online[source] = current
        for channel_id in sorted(previous - current):
            try:
                await self.schedule_checks(channel_id)
            except TransientNetworkError as e:
                # still counted as online so the next cycle sees the transition again
                current.add(channel_id)
                logger.debug("vod check scheduling skipped", creator=channel_id, error=str(e))
            except Exception:
                logger.exception("vod check scheduling failed", creator=channel_id)

    def has_pending_check(self, channel_id: str) -> bool:
        return any(c.channel_id == channel_id for c in self.state.read(Domain.VOD_CHECKS).values())

    async def schedule_checks(self, channel_id: str, now: Optional[dt.datetime] = None) -> List[VodCheckEntry]:
        """Schedule the staggered VOD checks for a creator that just went offline."""
        user = self.state.read(Domain.ROSTER).get(channel_id)
        if user is None:
            logger.error("vod check task failed due to unknown creator", creator=channel_id)
            return []
        if not user.enable_auto_download_vod:
            return []
        if self.has_pending_check(channel_id):
            logger.warning("vod check task skipped, already pending", creator=user.username)
            return []

        videos = await self.fetcher.list_videos(channel_id)
        last_vod_number = max((v.video_no for v in videos), default=None) if videos else None

        now = now or dt.datetime.now()
        checks = []
        for minutes in self.settings.check_user_vod_minutes:
            check_at = now + dt.timedelta(minutes=minutes)
            checks.append(
                VodCheckEntry(
                    check_time=epoch_millis(check_at),
                    channel_id=channel_id,
                    username=user.username,
                    local_time=check_at.strftime("%Y-%m-%d %H:%M:%S"),
                    last_vod_number=last_vod_number,
                )
            )

        def _add(check_list: VodCheckList) -> None:
            for check in checks:
                while check.check_time in check_list:
                    check.check_time += 1
                check_list[check.check_time] = check

        await self.state.mutate(Domain.VOD_CHECKS, _add)
        logger.info("vod checks scheduled", creator=user.username, at=[c.local_time for c in checks])
        return checks

    def download_item(self, vod: VideoSummary) -> VodDownloadEntry:
        user = self.state.read(Domain.ROSTER).get(vod.channel_id)
        item = VodDownloadEntry(
            vod_num=vod.video_no,
            channel_id=vod.channel_id,
            username=user.username if user else UNKNOWN_USER,
            publish_date=vod.publish_date,
            duration=vod.duration,
            adult=vod.adult,
            vod_url=f"https://chzzk.naver.com/video/{vod.video_no}",
        )
        item.cmd = self.recorder.vod_command(item)
        return item

    async def add_download_items(self, items: List[VodDownloadEntry]) -> None:
        """Insert new waiting entries; known VOD numbers only get their metadata refreshed."""

        def _merge(download_list: VodDownloadList) -> None:
            for item in items:
                known = download_list.get(item.vod_num)
                if known is None:
                    download_list[item.vod_num] = item
                    continue
                known.duration = item.duration
                known.adult = item.adult
                known.publish_date = item.publish_date
                known.cmd = item.cmd

        await self.state.mutate(Domain.VOD_DOWNLOADS, _merge)

    async def process_due_check(self, now_ms: Optional[int] = None) -> Optional[VodCheckEntry]:
        """Resolve the earliest due check, if any.  Returns the processed check."""
        now_ms = now_ms if now_ms is not None else epoch_millis()
        check_list: VodCheckList = self.state.read(Domain.VOD_CHECKS)
        due = [key for key in sorted(check_list) if key <= now_ms]
        if not due:
            return None

        check_time = due[0]
        check = check_list[check_time]

        def _drop_processed(cl: VodCheckList) -> None:
            cl.pop(check_time, None)

        try:
            videos = await self.fetcher.list_videos(check.channel_id)
            if videos:
                if check.last_vod_number is None:
                    new_videos = list(videos)
                else:
                    new_videos = [v for v in videos if v.video_no > check.last_vod_number]
                if new_videos:
                    await self.add_download_items([self.download_item(v) for v in new_videos])
                    await self.state.mutate(
                        Domain.VOD_CHECKS,
                        lambda cl: {k: c for k, c in cl.items() if c.channel_id != check.channel_id},
                    )
                    logger.info(
                        "new vods found",
                        creator=check.username,
                        vods=[v.video_no for v in new_videos],
                    )
        finally:
            await self.state.mutate(Domain.VOD_CHECKS, _drop_processed)
        return check

    @property
    def available_slots(self) -> int:
        return self.settings.dl_vod_concurrency - len(self.running)

    def admit(self) -> List[int]:
        """Start downloads for waiting entries while slots are free."""
        admitted: List[int] = []
        if self.available_slots <= 0:
            return admitted
        download_list: VodDownloadList = self.state.read(Domain.VOD_DOWNLOADS)
        candidates = [
            n for n, i in download_list.items() if i.status == VodStatus.WAITING and n not in self.running
        ]
        # refused entries go last so they cannot starve the others
        candidates.sort(key=lambda n: n in self._deferred)
        for vod_num in candidates:
            if self.available_slots <= 0:
                break
            task = asyncio.create_task(self._download(download_list[vod_num].model_copy()))
            self.running[vod_num] = task
            admitted.append(vod_num)
        return admitted

    async def _download(self, item: VodDownloadEntry) -> None:
        try:
            returncode = await self.recorder.record_vod(item)
            if returncode is None:
                self._deferred.add(item.vod_num)
            else:
                self._deferred.discard(item.vod_num)
        except Exception:
            logger.exception("vod download failed to run", vod=item.vod_num)
        finally:
            self.running.pop(item.vod_num, None)

    async def tick(self, now_ms: Optional[int] = None) -> None:
        try:
            await self.process_due_check(now_ms)
        except TransientNetworkError as e:
            logger.debug("vod check skipped", error=str(e))
        except Exception:
            logger.exception("vod check failed")
        self.admit()

    async def recover_interrupted(self) -> Optional[asyncio.Task]:
        """Settle entries left ``ongoing`` by a previous run.

        Entries whose download process is gone go back to ``waiting``.  A
        download still running detached stays ``ongoing`` and is watched;
        returns the watching task when there is one.
        """
        ongoing = {
            n: i.pid for n, i in self.state.read(Domain.VOD_DOWNLOADS).items() if i.status == VodStatus.ONGOING
        }
        alive = {n: pid for n, pid in ongoing.items() if self.is_alive(pid)}
        stale = {n: pid for n, pid in ongoing.items() if n not in alive}

        if stale:
            def _reset(download_list: VodDownloadList) -> None:
                for vod_num, pid in stale.items():
                    item = download_list.get(vod_num)
                    if item is not None and item.status == VodStatus.ONGOING and item.pid == pid:
                        item.status = VodStatus.WAITING
                        item.pid = None

            await self.state.mutate(Domain.VOD_DOWNLOADS, _reset)
            logger.warning("interrupted vod downloads requeued", vods=sorted(stale))

        if not alive:
            return None
        logger.warning("detached vod downloads still running, watching until they end", vods=sorted(alive))
        return asyncio.create_task(self.watch_detached(alive))

    async def watch_detached(self, watch_list: Dict[int, Optional[int]]) -> None:
        """Poll downloads left by a previous run and validate each one once it exits."""
        watch_list = dict(watch_list)
        while watch_list:
            await asyncio.sleep(self.settings.check_interval_sec)
            for vod_num, pid in list(watch_list.items()):
                if self.is_alive(pid):
                    continue
                del watch_list[vod_num]
                item = self.state.read(Domain.VOD_DOWNLOADS).get(vod_num)
                if item is None or item.status != VodStatus.ONGOING or item.pid != pid:
                    continue
                await self.on_download_ended(DownloadEnded(item=item.model_copy(), pid=pid))
        logger.info("all detached vod downloads ended")

    async def run(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(TICK_INTERVAL_SEC)

    async def on_download_started(self, event: DownloadStarted) -> None:
        vod_num = event.item.vod_num

        def _start(download_list: VodDownloadList) -> None:
            item = download_list.get(vod_num)
            if item is not None:
                item.status = VodStatus.ONGOING
                item.pid = event.pid

        await self.state.mutate(Domain.VOD_DOWNLOADS, _start)

    async def validate(self, item: VodDownloadEntry, file_path: Path) -> Optional[bool]:
        """``None`` when the file is missing, else whether the duration matches."""
        if not file_path.exists():
            return None
        try:
            probed = await self.probe(file_path)
        except ProbeError as e:
            logger.error("cannot probe vod duration", vod=item.vod_num, error=str(e))
            return False
        return abs(item.duration - probed) <= VALID_DURATION_DIFF

    async def on_download_ended(self, event: DownloadEnded) -> None:
        vod_num = event.item.vod_num
        file_path = Path(event.file_path) if event.file_path else self.recorder.vod_file_path(event.item)
        valid = await self.validate(event.item, file_path)
        if valid is None:
            logger.error("cannot find vod to check duration", vod=vod_num, url=event.item.vod_url)

        def _finish(download_list: VodDownloadList) -> None:
            item = download_list.get(vod_num)
            if item is None:
                return
            item.pid = None
            if valid:
                item.status = VodStatus.SUCCESS
                return
            if valid is None:
                item.status = VodStatus.FAILED
                return
            item.try_count += 1
            item.status = VodStatus.FAILED if item.try_count >= MAX_RETRY_COUNT else VodStatus.WAITING

        result = await self.state.mutate(Domain.VOD_DOWNLOADS, _finish)
        item = result.get(vod_num)
        if item is None:
            logger.warning("finished vod is not in the download list", vod=vod_num)
        elif item.status == VodStatus.SUCCESS:
            logger.info("vod downloaded successfully", vod=vod_num, creator=item.username)
        elif item.status == VodStatus.FAILED:
            logger.error("failed to download vod", vod=vod_num, attempts=item.try_count)
        else:
            logger.warning("vod duration mismatch, will retry", vod=vod_num, attempts=item.try_count)
