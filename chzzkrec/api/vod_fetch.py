"""VOD metadata fetchers.

Two interchangeable strategies for reading a creator's VOD list and single
VOD metadata.  The public fetcher uses anonymous requests; the
authenticated fetcher sends the stored cookie so that adult VODs resolve
too.  The strategy is chosen once, from settings, by :func:`make_vod_fetcher`.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from .client import ChzzkApi, VideoSummary


class VodFetcher(Protocol):
    async def list_videos(self, channel_id: str) -> Optional[List[VideoSummary]]:
        ...

    async def get_video(self, vod_num: int) -> Optional[VideoSummary]:
        ...


class PublicVodFetcher:
    def __init__(self, api: ChzzkApi) -> None:
        self.api = api

    async def list_videos(self, channel_id: str) -> Optional[List[VideoSummary]]:
        return await self.api.list_videos(channel_id)

    async def get_video(self, vod_num: int) -> Optional[VideoSummary]:
        return await self.api.get_video(vod_num)


class AuthenticatedVodFetcher:
    def __init__(self, api: ChzzkApi) -> None:
        self.api = api

    async def list_videos(self, channel_id: str) -> Optional[List[VideoSummary]]:
        return await self.api.list_videos(channel_id, authenticated=True)

    async def get_video(self, vod_num: int) -> Optional[VideoSummary]:
        return await self.api.get_video(vod_num, authenticated=True)


def make_vod_fetcher(settings, api: ChzzkApi) -> VodFetcher:
    if settings.vod_fetch_mode == "authenticated":
        return AuthenticatedVodFetcher(api)
    return PublicVodFetcher(api)
