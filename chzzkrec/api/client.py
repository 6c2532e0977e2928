"""Chzzk platform API client.

Thin asynchronous wrapper around the public Chzzk endpoints the agent
needs: tag search of live channels, live status and detail per channel,
channel and video metadata, plus the cookie based session handling that is
required to capture adult content.

Network level failures (DNS, refused connections, timeouts) are raised as
:class:`TransientNetworkError` so callers can skip a single item for the
current cycle.  "Not found" is reported as ``None``; anything malformed is
raised as :class:`ApiResponseError`.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from http.cookies import SimpleCookie
from typing import Any, Dict, Iterable, List, Optional

import aiohttp
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..state.models import AuthCookie
from ..state.store import Domain, PersistentState

logger = structlog.get_logger(__name__)

API_BASE_URL = "https://api.chzzk.naver.com"
GAME_BASE_URL = "https://comm-api.game.naver.com/nng_main"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
SEARCH_PAGE_SIZE = 50
SEARCH_PAGE_DELAY_SEC = 3
SEARCH_MAX_ATTEMPTS = 5
MAX_REFRESH_FAILURES = 2
REQUEST_TIMEOUT_SEC = 15


class ApiError(Exception):
    """Base class of platform API failures."""


class TransientNetworkError(ApiError):
    """The request never reached the platform; retrying later may succeed."""


class ApiResponseError(ApiError):
    """The platform answered with something unusable."""


class AuthenticationError(ApiError):
    """The stored credential is missing or was rejected."""


@dataclass
class LiveInfo:
    channel_id: str
    live_id: int = 0
    title: str = ""
    category: Optional[str] = None
    adult: bool = False
    open: bool = True


@dataclass
class LiveStatus:
    open: bool
    title: str = ""
    category: Optional[str] = None
    adult: bool = False


@dataclass
class MediaSource:
    media_id: str
    protocol: str
    path: str


@dataclass
class LiveDetail:
    channel_id: str
    open: bool
    live_id: int = 0
    title: str = ""
    category: Optional[str] = None
    adult: bool = False
    media_sources: List[MediaSource] = field(default_factory=list)

    def as_live_info(self) -> LiveInfo:
        return LiveInfo(
            channel_id=self.channel_id,
            live_id=self.live_id,
            title=self.title,
            category=self.category,
            adult=self.adult,
            open=self.open,
        )


@dataclass
class VideoSummary:
    video_no: int
    channel_id: str
    duration: float
    publish_date: str
    adult: bool = False
    title: str = ""


@dataclass
class SearchPage:
    items: List[LiveInfo]
    size: int


def _live_info_from_search(entry: Dict[str, Any]) -> LiveInfo:
    live = entry.get("live") or {}
    channel = entry.get("channel") or {}
    return LiveInfo(
        channel_id=channel.get("channelId") or live.get("channelId") or "",
        live_id=live.get("liveId") or 0,
        title=live.get("liveTitle") or "",
        category=live.get("liveCategoryValue") or live.get("liveCategory"),
        adult=bool(live.get("adult")),
    )


def _video_from_payload(payload: Dict[str, Any]) -> VideoSummary:
    try:
        return VideoSummary(
            video_no=int(payload["videoNo"]),
            channel_id=(payload.get("channel") or {}).get("channelId") or payload.get("channelId") or "",
            duration=float(payload.get("duration") or 0),
            publish_date=payload.get("publishDate") or "",
            adult=bool(payload.get("adult")),
            title=payload.get("videoTitle") or "",
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ApiResponseError(f"malformed video payload: {e}") from e


class ChzzkApi:
    """Asynchronous Chzzk client bound to the agent's credential store."""

    def __init__(self, state: PersistentState, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.state = state
        self._session = session
        self.refresh_fail_count = 0

    @property
    def credential(self) -> AuthCookie:
        return self.state.read(Domain.CREDENTIAL)

    @property
    def refresh_disabled(self) -> bool:
        return self.refresh_fail_count > MAX_REFRESH_FAILURES

    def source_url(self, channel_id: str) -> str:
        return f"https://chzzk.naver.com/live/{channel_id}"

    def cookie_header(self) -> str:
        cookie = self.credential
        return f"NID_SES={cookie.session};NID_AUT={cookie.auth}"

    def headers(self, authenticated: bool = False) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        if authenticated:
            if not self.credential.available:
                raise AuthenticationError("no auth cookie available")
            headers["Cookie"] = self.cookie_header()
        return headers

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SEC))
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = False,
    ) -> aiohttp.ClientResponse:
        try:
            response = await self._client().get(url, params=params, headers=self.headers(authenticated))
            await response.read()
            return response
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"{url}: {e}") from e

    async def _get_content(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = False,
    ) -> Optional[Any]:
        response = await self._request(url, params=params, authenticated=authenticated)
        if response.status == 404:
            return None
        if response.status != 200:
            raise ApiResponseError(f"{url} answered {response.status}")
        try:
            payload = json.loads(await response.text())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ApiResponseError(f"{url} returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise ApiResponseError(f"{url} returned unexpected payload")
        return payload.get("content")

    async def search_lives_by_tag(self, tag: str, offset: int = 0, size: int = SEARCH_PAGE_SIZE) -> SearchPage:
        content = await self._get_content(
            f"{API_BASE_URL}/service/v1/search/lives",
            params={"keyword": tag, "offset": offset, "size": size},
        )
        if not content:
            return SearchPage(items=[], size=0)
        data = content.get("data") or []
        items = [_live_info_from_search(entry) for entry in data]
        return SearchPage(items=[i for i in items if i.channel_id], size=int(content.get("size") or len(data)))

    async def _search_all_pages(self, tag: str) -> List[LiveInfo]:
        lives: List[LiveInfo] = []
        offset = 0
        while True:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(SEARCH_MAX_ATTEMPTS),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type(TransientNetworkError),
                reraise=True,
            ):
                with attempt:
                    page = await self.search_lives_by_tag(tag, offset=offset)
            lives.extend(page.items)
            if page.size == 0:
                return lives
            offset += SEARCH_PAGE_SIZE
            await asyncio.sleep(SEARCH_PAGE_DELAY_SEC)

    async def search_lives(self, tags: Iterable[str]) -> List[LiveInfo]:
        """Currently open lives matching any tag, de-duplicated by channel id."""
        results = await asyncio.gather(*(self._search_all_pages(tag) for tag in tags))
        merged: Dict[str, LiveInfo] = {}
        for lives in results:
            for live in lives:
                merged[live.channel_id] = live
        return list(merged.values())

    async def get_live_status(self, channel_id: str) -> Optional[LiveStatus]:
        content = await self._get_content(f"{API_BASE_URL}/polling/v2/channels/{channel_id}/live-status")
        if not content:
            return None
        return LiveStatus(
            open=content.get("status") == "OPEN",
            title=content.get("liveTitle") or "",
            category=content.get("liveCategoryValue") or content.get("liveCategory"),
            adult=bool(content.get("adult")),
        )

    async def get_live_detail(self, channel_id: str) -> Optional[LiveDetail]:
        content = await self._get_content(f"{API_BASE_URL}/service/v2/channels/{channel_id}/live-detail")
        if not content:
            return None
        media: List[MediaSource] = []
        playback = content.get("livePlaybackJson")
        if playback:
            try:
                for m in json.loads(playback).get("media") or []:
                    media.append(MediaSource(m.get("mediaId", ""), m.get("protocol", ""), m.get("path", "")))
            except (json.JSONDecodeError, AttributeError) as e:
                raise ApiResponseError(f"malformed live playback for {channel_id}") from e
        return LiveDetail(
            channel_id=channel_id,
            open=content.get("status") == "OPEN",
            live_id=content.get("liveId") or 0,
            title=content.get("liveTitle") or "",
            category=content.get("liveCategoryValue") or content.get("liveCategory"),
            adult=bool(content.get("adult")),
            media_sources=media,
        )

    async def get_channel_name(self, channel_id: str) -> Optional[str]:
        content = await self._get_content(f"{API_BASE_URL}/service/v1/channels/{channel_id}")
        if not content or not content.get("channelId"):
            return None
        return content.get("channelName") or ""

    async def list_videos(self, channel_id: str, authenticated: bool = False) -> Optional[List[VideoSummary]]:
        content = await self._get_content(
            f"{API_BASE_URL}/service/v1/channels/{channel_id}/videos",
            authenticated=authenticated,
        )
        if content is None:
            return None
        return [_video_from_payload(v) for v in content.get("data") or []]

    async def get_video(self, vod_num: int, authenticated: bool = False) -> Optional[VideoSummary]:
        content = await self._get_content(f"{API_BASE_URL}/service/v2/videos/{vod_num}", authenticated=authenticated)
        if not content:
            return None
        return _video_from_payload(content)

    def has_auth_and_session(self) -> bool:
        cookie = self.credential
        if not cookie.session:
            logger.warning("no session available for authenticated requests")
        if not cookie.auth:
            logger.warning("no authentication available for authenticated requests")
        return cookie.available

    async def is_authenticated(self) -> bool:
        try:
            response = await self._request(
                f"{API_BASE_URL}/service/v1/channels/followings/live",
                authenticated=True,
            )
        except (AuthenticationError, TransientNetworkError):
            return False
        if response.status != 200:
            return False
        try:
            payload = json.loads(await response.text())
        except (json.JSONDecodeError, UnicodeDecodeError):
            return False
        return isinstance(payload, dict) and payload.get("code") == 200

    async def refresh_session(self) -> Optional[str]:
        """Ask the platform for a fresh session cookie using the auth cookie."""
        if self.refresh_disabled:
            logger.warning("session refresh disabled after repeated failures")
            return None
        if not self.has_auth_and_session():
            return None

        response = await self._request(f"{GAME_BASE_URL}/v1/user/getUserStatus", authenticated=True)
        set_cookie = response.headers.getall("Set-Cookie", [])
        if not set_cookie:
            self.refresh_fail_count += 1
            raise AuthenticationError("no set-cookie header in getUserStatus response")

        jar = SimpleCookie()
        for header in set_cookie:
            jar.load(header)
        morsel = jar.get("NID_SES")
        if morsel is None or not morsel.value:
            self.refresh_fail_count += 1
            raise AuthenticationError("no session in getUserStatus response")
        return morsel.value

    async def set_session(self, session: str) -> None:
        def _update(cookie: AuthCookie) -> AuthCookie:
            cookie.session = session
            return cookie

        await self.state.mutate(Domain.CREDENTIAL, _update)

    async def is_able_to_record_adult(self) -> bool:
        if not self.has_auth_and_session():
            return False
        if await self.is_authenticated():
            return True
        try:
            session = await self.refresh_session()
        except (AuthenticationError, TransientNetworkError) as e:
            logger.warning("session refresh failed", error=str(e), failures=self.refresh_fail_count)
            return False
        if not session:
            return False
        await self.set_session(session)
        logger.info("session refreshed")
        return True
