"""Live discovery cycles.

Two independently paced loops decide who should be recording:

* the broad cycle searches live channels by interest tag and intersects the
  result with the roster;
* the narrow cycle asks for the live detail of every roster creator, which
  also covers creators the tag search misses.

Both report the creators they saw online to the VOD pipeline, which keeps
a separate "previously online" set per cycle because ids returned by the
two platform surfaces are not guaranteed to agree.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Set

import structlog

from ..api.client import ChzzkApi, LiveInfo, TransientNetworkError
from ..recorder.recorder import Recorder
from ..scheduler.vod_pipeline import VodPipeline
from ..state.models import RosterEntry
from ..state.store import Domain, PersistentState
from ..utils.helpers import is_invalid_live_category

logger = structlog.get_logger(__name__)

NARROW_CHECK_INTERVAL_SEC = 300
NARROW_REQUEST_DELAY_SEC = 1

BROAD = "broad"
NARROW = "narrow"


class DiscoveryLoop:
    def __init__(
        self,
        settings,
        api: ChzzkApi,
        state: PersistentState,
        recorder: Recorder,
        pipeline: VodPipeline,
    ) -> None:
        self.settings = settings
        self.api = api
        self.state = state
        self.recorder = recorder
        self.pipeline = pipeline

    @property
    def roster(self) -> Dict[str, RosterEntry]:
        return self.state.read(Domain.ROSTER)

    async def consider(self, live: LiveInfo, user: RosterEntry) -> bool:
        """Start a capture for ``user`` if nothing rules it out."""
        if self.recorder.is_recording(user.channel_id):
            logger.debug("creator is recording", creator=user.username, url=self.api.source_url(user.channel_id))
            return False
        if user.disable_record:
            logger.debug("recording disabled by configuration", creator=user.username)
            return False
        if is_invalid_live_category(user.allow_category, live.category):
            logger.info("recording skipped due to category", creator=user.username, category=live.category)
            return False
        return await self.recorder.start_recording(live, user)

    async def consider_isolated(self, live: LiveInfo, user: RosterEntry) -> None:
        try:
            await self.consider(live, user)
        except TransientNetworkError as e:
            logger.debug("creator check skipped", creator=user.username, error=str(e))
        except Exception:
            logger.exception("creator check failed", creator=user.username)

    async def broad_cycle(self) -> Set[str]:
        logger.info("checking creators by tag", tags=self.settings.search_tags)
        online: Set[str] = set()
        try:
            lives = await self.api.search_lives(self.settings.search_tags)
        except TransientNetworkError as e:
            logger.debug("tag search skipped", error=str(e))
            return online
        except Exception:
            logger.exception("tag search failed")
            return online

        roster = self.roster
        for live in lives:
            user = roster.get(live.channel_id)
            if user is None:
                continue
            online.add(live.channel_id)
            await self.consider_isolated(live, user)

        await self.pipeline.update_online(BROAD, online)
        return online

    async def run_broad(self) -> None:
        while True:
            await self.broad_cycle()
            await asyncio.sleep(self.settings.check_interval_sec)

    def should_check(self, user: RosterEntry) -> bool:
        if user.enable_auto_download_vod or self.settings.proactive_search:
            return True
        return not user.disable_record

    async def narrow_cycle(self) -> Set[str]:
        online: Set[str] = set()
        # creators whose state could not be determined this cycle
        unknown: Set[str] = set()
        for channel_id, user in list(self.roster.items()):
            if not self.should_check(user):
                continue
            try:
                detail = await self.api.get_live_detail(channel_id)
            except TransientNetworkError as e:
                unknown.add(channel_id)
                logger.debug("live detail skipped", creator=user.username, error=str(e))
            except Exception:
                unknown.add(channel_id)
                logger.exception("live detail failed", creator=user.username)
            else:
                if detail is not None and detail.open:
                    online.add(channel_id)
                    await self.consider_isolated(detail.as_live_info(), user)
            await asyncio.sleep(NARROW_REQUEST_DELAY_SEC)

        await self.pipeline.update_online(NARROW, online, unknown=unknown)
        return online

    async def run_narrow(self) -> None:
        while True:
            await self.narrow_cycle()
            await asyncio.sleep(NARROW_CHECK_INTERVAL_SEC)
