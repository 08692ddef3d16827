import asyncio
import json
import sys

import httpx
import pytest

import providers
from providers import (
    DEFAULT_PROVIDER_ORDER,
    SAVETUBE,
    VREDEN,
    SavetubeAdapter,
    VredenAdapter,
    YtDlpAdapter,
    build_provider_registry,
    extract_video_info,
)
from resolution import (
    AudioPayload,
    AudioResolver,
    ProviderInvalidResponse,
    ProviderTransientError,
    ProviderUnavailable,
)


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _fetch(adapter_cls, handler, locator: str, quality: int, base_url: str = "https://api.example/"):
    async def run():
        async with _mock_client(handler) as client:
            adapter = adapter_cls(client, base_url, timeout=3.0)
            return await adapter.fetch(locator, quality)

    return asyncio.run(run())


# ── Direct HTTP adapters ────────────────────────────────────────────

def test_vreden_sends_url_and_quality_as_query_params(payload, video_url) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, json=payload())

    result = _fetch(VredenAdapter, handler, video_url, 256)

    request = seen["request"]
    assert request.method == "GET"
    assert request.url.host == "api.example"
    assert request.url.path == "/api/v1/download/youtube/audio"
    assert request.url.params["url"] == video_url
    assert request.url.params["quality"] == "256"
    assert isinstance(result, AudioPayload)
    assert result.download.url == "https://cdn.example/audio.mp3"
    assert result.metadata == {"title": "Test Song"}


def test_savetube_posts_url_and_quality_as_json(payload, video_url) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, json=payload(url="https://cdn.example/st.m4a"))

    result = _fetch(SavetubeAdapter, handler, video_url, 128)

    request = seen["request"]
    assert request.method == "POST"
    assert request.url.path == "/v2/info"
    assert json.loads(request.content) == {"url": video_url, "quality": 128}
    assert result.download.url == "https://cdn.example/st.m4a"


def test_http_adapter_sets_per_call_timeout() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    adapter = VredenAdapter(client, "https://api.example", timeout=3.0)

    request = adapter.build_request("https://youtu.be/abc", 320)

    assert request.extensions["timeout"]["read"] == 3.0
    assert request.extensions["timeout"]["connect"] == 3.0

    request = VredenAdapter(client, "https://api.example", timeout=8.0).build_request("https://youtu.be/abc", 320)
    assert request.extensions["timeout"]["read"] == 8.0
    assert request.extensions["timeout"]["connect"] == 5.0

    request = SavetubeAdapter(client, "https://api.example", timeout=8.0).build_request("https://youtu.be/abc", 320)
    assert request.extensions["timeout"]["connect"] == 5.0


def test_http_adapter_follows_redirect_to_mirror(payload, video_url) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        if request.url.host == "mirror.example":
            return httpx.Response(200, json=payload(url="https://cdn.example/mirror.mp3"))
        return httpx.Response(302, headers={"Location": "https://mirror.example/audio"})

    result = _fetch(VredenAdapter, handler, video_url, 320)

    assert seen == ["api.example", "mirror.example"]
    assert result.download.url == "https://cdn.example/mirror.mp3"


def test_http_error_status_is_transient_with_body(video_url) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, json={"error": "bad gateway"})

    with pytest.raises(ProviderTransientError) as excinfo:
        _fetch(VredenAdapter, handler, video_url, 320)

    err = excinfo.value
    assert err.provider == VREDEN
    assert err.status == 502
    assert err.data == {"error": "bad gateway"}


def test_network_timeout_is_transient(video_url) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(ProviderTransientError) as excinfo:
        _fetch(SavetubeAdapter, handler, video_url, 320)

    assert "ConnectTimeout" in excinfo.value.message
    assert excinfo.value.status is None


def test_non_json_body_is_invalid_response(video_url) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>captcha</html>")

    with pytest.raises(ProviderInvalidResponse) as excinfo:
        _fetch(VredenAdapter, handler, video_url, 320)

    assert excinfo.value.data == "<html>captcha</html>"
    assert excinfo.value.status == 200


def test_payload_missing_download_url_is_invalid_response(video_url) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": True, "download": {}, "metadata": {}})

    with pytest.raises(ProviderInvalidResponse) as excinfo:
        _fetch(SavetubeAdapter, handler, video_url, 320)

    assert excinfo.value.provider == SAVETUBE


def test_engine_falls_back_across_http_adapters(payload, video_url, sleeps) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "vreden.example":
            return httpx.Response(500, text="internal error")
        return httpx.Response(200, json=payload(url="https://cdn.example/fallback.mp3"))

    async def run():
        async with _mock_client(handler) as client:
            resolver = AudioResolver(
                [
                    VredenAdapter(client, "https://vreden.example"),
                    SavetubeAdapter(client, "https://savetube.example"),
                ],
                sleep=sleeps,
            )
            return await resolver.resolve(video_url, 320)

    result = asyncio.run(run())

    assert result.success is True
    assert result.provider_used == SAVETUBE
    assert result.url == "https://cdn.example/fallback.mp3"
    assert sleeps.recorded == [0.4]


# ── yt-dlp adapter ──────────────────────────────────────────────────

def test_ytdlp_options_select_audio_within_tier() -> None:
    adapter = YtDlpAdapter("android_music", timeout=5.0)

    opts = adapter.build_options(128)

    assert adapter.name == "yt-dlp:android_music"
    assert opts["format"] == "ba[abr<=128]/ba"
    assert opts["socket_timeout"] == 5.0
    assert opts["extractor_args"]["youtube"]["player_client"] == ["android_music"]


def test_ytdlp_normalize_uses_direct_url_and_sanitizes_filename() -> None:
    adapter = YtDlpAdapter("web")
    info = {
        "id": "abc",
        "title": "AC/DC: Live?",
        "url": "https://rr1.googlevideo.com/audio",
        "ext": "webm",
        "abr": 160,
        "acodec": "opus",
        "uploader": "ACDCVEVO",
        "duration": 300,
    }

    result = adapter.normalize(info, 320)

    assert result.download.url == "https://rr1.googlevideo.com/audio"
    assert result.download.filename == "AC_DC_ Live_.webm"
    assert result.metadata["uploader"] == "ACDCVEVO"
    assert result.metadata["abr"] == 160


def test_ytdlp_normalize_picks_best_audio_format_within_tier() -> None:
    adapter = YtDlpAdapter("web")
    info = {
        "id": "abc",
        "title": "Song",
        "formats": [
            {"url": "https://v/1", "acodec": "aac", "vcodec": "avc1", "abr": 128},
            {"url": "https://a/48", "acodec": "aac", "vcodec": "none", "abr": 48, "ext": "m4a"},
            {"url": "https://a/128", "acodec": "aac", "vcodec": "none", "abr": 128, "ext": "m4a"},
            {"url": "https://a/160", "acodec": "opus", "vcodec": "none", "abr": 160, "ext": "webm"},
        ],
    }

    result = adapter.normalize(info, 128)

    assert result.download.url == "https://a/128"
    assert result.download.filename == "Song.m4a"
    assert result.metadata["abr"] == 128


def test_ytdlp_normalize_without_audio_is_invalid_response() -> None:
    adapter = YtDlpAdapter("web")

    with pytest.raises(ProviderInvalidResponse):
        adapter.normalize({"id": "abc", "formats": []}, 320)


def test_ytdlp_fetch_runs_extraction_and_normalizes(video_url, monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = YtDlpAdapter("web")
    seen = []

    def fake_extract(locator: str, quality: int) -> dict:
        seen.append((locator, quality))
        return {"id": "abc", "title": "Song", "url": "https://a/1", "ext": "m4a"}

    monkeypatch.setattr(adapter, "_extract_sync", fake_extract)

    result = asyncio.run(adapter.fetch(video_url, 92))

    assert seen == [(video_url, 92)]
    assert result.download.filename == "Song.m4a"


def test_ytdlp_missing_library_raises_unavailable(video_url, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "yt_dlp", None)
    adapter = YtDlpAdapter("web")

    with pytest.raises(ProviderUnavailable):
        adapter._extract_sync(video_url, 320)


def test_ytdlp_video_info_options_skip_format_selection() -> None:
    assert "format" not in YtDlpAdapter("web").build_options(None)


def test_extract_video_info_falls_back_to_next_player_client(video_url, monkeypatch: pytest.MonkeyPatch) -> None:
    tried = []

    def fake_run(self, locator: str, options: dict) -> dict:
        tried.append(self.player_client)
        if self.player_client == "android_music":
            raise ProviderTransientError("Sign in to confirm", provider=self.name)
        return {"id": "abc", "title": "Song", "duration": 215, "formats": [{"url": "https://a/1"}]}

    monkeypatch.setattr(YtDlpAdapter, "_run_extraction", fake_run)

    info = extract_video_info(video_url)

    assert tried == ["android_music", "web"]
    assert info["id"] == "abc"
    assert info["duration"] == 215
    assert info["uploader"] is None
    assert "formats" not in info


def test_extract_video_info_raises_last_error_when_every_client_fails(video_url, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(self, locator: str, options: dict) -> dict:
        raise ProviderTransientError(f"{self.player_client} failed", provider=self.name)

    monkeypatch.setattr(YtDlpAdapter, "_run_extraction", fake_run)

    with pytest.raises(ProviderTransientError, match="web failed"):
        extract_video_info(video_url)


def test_extract_video_info_without_library_is_unavailable(video_url, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "yt_dlp", None)

    with pytest.raises(ProviderUnavailable):
        extract_video_info(video_url)


# ── Registry ────────────────────────────────────────────────────────

def test_registry_keeps_default_order_when_ytdlp_installed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(providers, "ytdlp_installed", lambda: True)

    registry = build_provider_registry(httpx.AsyncClient())

    assert registry.names == DEFAULT_PROVIDER_ORDER
    assert registry.skipped == []


def test_registry_excludes_unavailable_library_adapters(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(providers, "ytdlp_installed", lambda: False)

    registry = build_provider_registry(httpx.AsyncClient())

    assert registry.names == [VREDEN, SAVETUBE]
    assert registry.skipped == [
        {"name": "yt-dlp:android_music", "reason": "unavailable"},
        {"name": "yt-dlp:web", "reason": "unavailable"},
    ]


def test_registry_honours_configured_order_and_drops_unknown(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(providers, "ytdlp_installed", lambda: True)

    registry = build_provider_registry(
        httpx.AsyncClient(),
        names=[SAVETUBE, "bogus", SAVETUBE, VREDEN],
        vreden_base="https://mirror.example/",
    )

    assert registry.names == [SAVETUBE, VREDEN]
    assert registry.skipped == [{"name": "bogus", "reason": "unknown"}]
    assert registry.providers[1].base_url == "https://mirror.example"
