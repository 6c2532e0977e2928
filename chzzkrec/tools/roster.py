"""Operator tools: growing the roster and queueing VODs by hand.

These run as one-shot commands next to (or instead of) the agent.  They
write through :class:`PersistentState`, re-reading each document right
before changing it, so a running agent's newer progress is kept and the
agent notices the changed documents and picks them up.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Union

import structlog

from ..api.client import ChzzkApi, TransientNetworkError
from ..api.vod_fetch import VodFetcher
from ..recorder.commands import vod_download_command
from ..state.files import read_json_or_default, write_json_atomic
from ..state.models import Roster, RosterEntry, VodDownloadEntry, VodDownloadList
from ..state.store import Domain, PersistentState
from ..utils.helpers import parse_vod_id

logger = structlog.get_logger(__name__)

LOOKUP_DELAY_SEC = 1


async def add_users(state: PersistentState, api: ChzzkApi, add_list_path: Path) -> List[str]:
    """Add every ``{channel_id: username}`` of the add-list missing from the roster."""
    new_users: Dict[str, str] = read_json_or_default(add_list_path, {})
    if not new_users:
        logger.info("no add list found", path=str(add_list_path))
        return []

    roster: Roster = state.read(Domain.ROSTER)
    added: Dict[str, RosterEntry] = {}
    for channel_id, username in new_users.items():
        if channel_id in roster:
            continue
        try:
            channel_name = await api.get_channel_name(channel_id)
        except TransientNetworkError as e:
            logger.warning("channel lookup skipped", creator=username, error=str(e))
            continue
        if channel_name is None:
            logger.error("unknown channel", creator=username, channel_id=channel_id)
            continue
        added[channel_id] = RosterEntry(channel_id=channel_id, username=username, channel_name=channel_name)
        logger.info("creator added", creator=username)
        await asyncio.sleep(LOOKUP_DELAY_SEC)

    if not added:
        logger.info("no creators were added")
        return []

    def _add(roster: Roster) -> None:
        for channel_id, entry in added.items():
            roster.setdefault(channel_id, entry)

    await state.mutate(Domain.ROSTER, _add, fresh=True)
    return list(added)


def sort_add_list(add_list_path: Path) -> int:
    """Sort the add-list by username, lower-casing each name's first letter."""
    new_users: Dict[str, str] = read_json_or_default(add_list_path, {})
    if not new_users:
        return 0
    ordered = sorted(new_users.items(), key=lambda kv: kv[1])
    write_json_atomic(add_list_path, {cid: name[:1].lower() + name[1:] for cid, name in ordered})
    logger.info("add list sorted", count=len(ordered))
    return len(ordered)


async def enqueue_vods(state: PersistentState, settings, fetcher: VodFetcher, vod_list_path: Path) -> List[int]:
    """Resolve VOD ids or URLs into waiting download entries."""
    raw: List[Union[int, str]] = read_json_or_default(vod_list_path, [])
    vod_nums = []
    for value in raw:
        try:
            vod_nums.append(parse_vod_id(value))
        except ValueError:
            logger.error("not a vod id or url", value=value)
    roster: Roster = state.read(Domain.ROSTER)

    items: List[VodDownloadEntry] = []
    for vod_num in sorted(set(vod_nums)):
        try:
            vod = await fetcher.get_video(vod_num)
        except Exception as e:
            logger.error("fetch failed", vod=vod_num, error=str(e))
            continue
        if vod is None:
            logger.error("vod not found", vod=vod_num)
            continue
        user = roster.get(vod.channel_id)
        item = VodDownloadEntry(
            vod_num=vod_num,
            channel_id=vod.channel_id,
            username=user.username if user else "unknown_user",
            publish_date=vod.publish_date,
            duration=vod.duration,
            adult=vod.adult,
            vod_url=f"https://chzzk.naver.com/video/{vod_num}",
        )
        item.cmd = vod_download_command(settings, item)
        items.append(item)
        await asyncio.sleep(LOOKUP_DELAY_SEC)

    def _insert(download_list: VodDownloadList) -> None:
        for item in items:
            download_list.setdefault(item.vod_num, item)

    await state.mutate(Domain.VOD_DOWNLOADS, _insert, fresh=True)
    logger.info("vods queued", vods=[i.vod_num for i in items])
    return [i.vod_num for i in items]
