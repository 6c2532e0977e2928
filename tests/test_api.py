"""Tests for the platform client.

``ChzzkApi._request`` is replaced with canned responses so nothing leaves
the machine.
"""

import json

import pytest

from chzzkrec.api import client as client_module
from chzzkrec.api.client import ApiResponseError, ChzzkApi, LiveInfo, LiveStatus, SearchPage
from chzzkrec.api.vod_fetch import AuthenticatedVodFetcher, PublicVodFetcher, make_vod_fetcher
from chzzkrec.state.models import AuthCookie
from chzzkrec.state.store import Domain


class FakeHeaders:
    def __init__(self, set_cookie=None):
        self._set_cookie = set_cookie or []

    def getall(self, name, default=None):
        if name == "Set-Cookie" and self._set_cookie:
            return list(self._set_cookie)
        return default


class FakeResponse:
    def __init__(self, status=200, payload=None, set_cookie=None):
        self.status = status
        self._body = json.dumps(payload if payload is not None else {})
        self.headers = FakeHeaders(set_cookie)

    async def text(self):
        return self._body


def serve(monkeypatch, api, routes):
    """Answer requests by the first route fragment found in the URL."""
    calls = []

    async def fake_request(url, params=None, authenticated=False):
        calls.append((url, authenticated))
        for fragment, response in routes.items():
            if fragment in url:
                return response
        return FakeResponse(404)

    monkeypatch.setattr(api, "_request", fake_request)
    return calls


async def login(state):
    await state.mutate(Domain.CREDENTIAL, lambda _: AuthCookie(auth="AUT", session="SES"))


@pytest.mark.asyncio
async def test_live_detail_is_parsed(monkeypatch, state):
    api = ChzzkApi(state)
    playback = json.dumps({"media": [{"mediaId": "HLS", "protocol": "HLS", "path": "https://cdn/x.m3u8"}]})
    serve(monkeypatch, api, {
        "/live-detail": FakeResponse(payload={"content": {
            "status": "OPEN", "liveId": 42, "liveTitle": "drawing",
            "liveCategoryValue": "Art", "adult": True, "livePlaybackJson": playback,
        }}),
    })

    detail = await api.get_live_detail("c1")

    assert detail.open and detail.adult
    assert detail.media_sources[0].path == "https://cdn/x.m3u8"
    assert detail.as_live_info() == LiveInfo(
        channel_id="c1", live_id=42, title="drawing", category="Art", adult=True, open=True,
    )


@pytest.mark.asyncio
async def test_live_status_is_parsed(monkeypatch, state):
    api = ChzzkApi(state)
    serve(monkeypatch, api, {
        "/on/live-status": FakeResponse(payload={"content": {
            "status": "OPEN", "liveTitle": "late night", "liveCategoryValue": "Talk", "adult": False,
        }}),
        "/off/live-status": FakeResponse(payload={"content": {"status": "CLOSE", "liveTitle": None}}),
    })

    assert await api.get_live_status("on") == LiveStatus(open=True, title="late night", category="Talk")
    assert await api.get_live_status("off") == LiveStatus(open=False)
    assert await api.get_live_status("gone") is None


@pytest.mark.asyncio
async def test_not_found_and_server_errors(monkeypatch, state):
    api = ChzzkApi(state)
    serve(monkeypatch, api, {"/videos/": FakeResponse(500)})

    assert await api.get_channel_name("missing") is None
    with pytest.raises(ApiResponseError):
        await api.get_video(1)


@pytest.mark.asyncio
async def test_list_videos_sends_cookie_only_when_asked(monkeypatch, state):
    await login(state)
    api = ChzzkApi(state)
    calls = serve(monkeypatch, api, {
        "/videos": FakeResponse(payload={"content": {"data": [
            {"videoNo": 501, "channel": {"channelId": "c1"}, "duration": 7200,
             "publishDate": "2024-05-01 20:00:00", "adult": False},
        ]}}),
    })

    public = await PublicVodFetcher(api).list_videos("c1")
    authed = await AuthenticatedVodFetcher(api).list_videos("c1")

    assert public == authed
    assert public[0].video_no == 501 and public[0].channel_id == "c1"
    assert [authenticated for _, authenticated in calls] == [False, True]


@pytest.mark.asyncio
async def test_vod_fetcher_is_chosen_from_settings(settings, state):
    api = ChzzkApi(state)
    assert isinstance(make_vod_fetcher(settings, api), PublicVodFetcher)
    authed = settings.model_copy(update={"vod_fetch_mode": "authenticated"})
    assert isinstance(make_vod_fetcher(authed, api), AuthenticatedVodFetcher)


@pytest.mark.asyncio
async def test_search_walks_pages_and_dedupes(monkeypatch, state):
    api = ChzzkApi(state)
    monkeypatch.setattr(client_module, "SEARCH_PAGE_DELAY_SEC", 0)
    pages = {
        "art": [SearchPage([LiveInfo("a"), LiveInfo("b")], 2), SearchPage([], 0)],
        "talk": [SearchPage([LiveInfo("b", live_id=9)], 1), SearchPage([], 0)],
    }

    async def fake_page(tag, offset=0, size=client_module.SEARCH_PAGE_SIZE):
        return pages[tag].pop(0)

    monkeypatch.setattr(api, "search_lives_by_tag", fake_page)

    lives = await api.search_lives(["art", "talk"])

    assert sorted(live.channel_id for live in lives) == ["a", "b"]
    assert all(not remaining for remaining in pages.values())


@pytest.mark.asyncio
async def test_adult_access_needs_credential(monkeypatch, state):
    api = ChzzkApi(state)
    calls = serve(monkeypatch, api, {})

    assert await api.is_able_to_record_adult() is False
    assert calls == []


@pytest.mark.asyncio
async def test_expired_session_is_refreshed(monkeypatch, state):
    await login(state)
    api = ChzzkApi(state)
    serve(monkeypatch, api, {
        "/followings/live": FakeResponse(payload={"code": 401}),
        "/getUserStatus": FakeResponse(set_cookie=["NID_SES=FRESH; Path=/; Domain=.naver.com"]),
    })

    assert await api.is_able_to_record_adult() is True
    assert state.read(Domain.CREDENTIAL) == AuthCookie(auth="AUT", session="FRESH")
    assert api.cookie_header() == "NID_SES=FRESH;NID_AUT=AUT"


@pytest.mark.asyncio
async def test_refresh_gives_up_after_repeated_failures(monkeypatch, state):
    await login(state)
    api = ChzzkApi(state)
    calls = serve(monkeypatch, api, {
        "/followings/live": FakeResponse(payload={"code": 401}),
        "/getUserStatus": FakeResponse(),
    })

    for _ in range(3):
        assert await api.is_able_to_record_adult() is False
    assert api.refresh_disabled

    before = sum("getUserStatus" in url for url, _ in calls)
    assert await api.is_able_to_record_adult() is False
    assert sum("getUserStatus" in url for url, _ in calls) == before == 3
