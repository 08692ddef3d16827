"""
Provider adapters for the audio resolver.

Two flavors:

- library-backed adapters that run `yt-dlp` in-process. The library is
  optional; when it is not installed these adapters report themselves
  unavailable and are left out of the registry.
- direct HTTP adapters that call a third-party scraping API with a bounded
  timeout.

Every adapter returns an `AudioPayload` or raises a `ProviderError`.
"""

import asyncio
import importlib.util
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import httpx

from common.sidecar_runtime_utils import DEFAULT_PROVIDER_TIMEOUT, provider_timeout
from resolution import (
    AudioPayload,
    ProviderInvalidResponse,
    ProviderTransientError,
    ProviderUnavailable,
)

log = logging.getLogger("audio-resolver")

YTDLP_ANDROID_MUSIC = "yt-dlp:android_music"
YTDLP_WEB = "yt-dlp:web"
VREDEN = "api.vreden.my.id"
SAVETUBE = "cdn403.savetube.vip"

# Library-backed adapters rank above the direct HTTP ones.
DEFAULT_PROVIDER_ORDER = [YTDLP_ANDROID_MUSIC, YTDLP_WEB, VREDEN, SAVETUBE]

DEFAULT_VREDEN_BASE = "https://api.vreden.my.id"
DEFAULT_SAVETUBE_BASE = "https://cdn403.savetube.vip"

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)


def _sanitize_filename(name: str) -> str:
    """Remove or replace chars that are invalid on most filesystems."""
    for ch in '<>:"/\\|?*':
        name = name.replace(ch, "_")
    return name.strip(". ") or "audio"


class ProviderAdapter:
    """Base class for one external audio source."""

    name = "unknown"

    def available(self) -> bool:
        return True

    async def fetch(self, locator: str, quality: int) -> AudioPayload:
        raise NotImplementedError


# ════════════════════════════════════════════════════════════════════
# yt-dlp (optional library)
# ════════════════════════════════════════════════════════════════════

def ytdlp_installed() -> bool:
    return importlib.util.find_spec("yt_dlp") is not None


class YtDlpAdapter(ProviderAdapter):
    """
    Extract a direct audio URL with yt-dlp using one InnerTube player client.

    Extraction is blocking, so it runs in a worker thread. yt-dlp's own
    `socket_timeout` bounds each network read.
    """

    def __init__(self, player_client: str, timeout: float = DEFAULT_PROVIDER_TIMEOUT):
        self.player_client = player_client
        self.name = f"yt-dlp:{player_client}"
        self.timeout = timeout

    def available(self) -> bool:
        return ytdlp_installed()

    def build_options(self, quality: Optional[int]) -> dict:
        """Options for one extraction. `None` skips format selection."""
        options = {
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "extract_flat": False,
            "socket_timeout": self.timeout,
            "http_headers": {
                "User-Agent": USER_AGENT,
                "Accept-Language": "en-US,en;q=0.9",
            },
            "extractor_args": {
                "youtube": {
                    "player_client": [self.player_client],
                },
            },
        }
        if quality is not None:
            options["format"] = f"ba[abr<={quality}]/ba"
        return options

    def _extract_sync(self, locator: str, quality: int) -> dict:
        return self._run_extraction(locator, self.build_options(quality))

    def _run_extraction(self, locator: str, options: dict) -> dict:
        try:
            import yt_dlp
        except ImportError as e:
            raise ProviderUnavailable("yt-dlp is not installed", provider=self.name) from e

        try:
            with yt_dlp.YoutubeDL(options) as ydl:
                info = ydl.extract_info(locator, download=False)
        except yt_dlp.utils.DownloadError as e:
            raise ProviderTransientError(str(e), provider=self.name) from e
        return info or {}

    async def fetch(self, locator: str, quality: int) -> AudioPayload:
        info = await asyncio.to_thread(self._extract_sync, locator, quality)
        return self.normalize(info, quality)

    def normalize(self, info: dict, quality: int) -> AudioPayload:
        """Turn a yt-dlp info dict into the tagged payload."""
        stream_url = info.get("url")
        abr = info.get("abr")
        ext = info.get("ext") or info.get("audio_ext")
        acodec = info.get("acodec")

        if not stream_url:
            # Fall back to the best audio-only format within the tier
            formats = info.get("formats") or []
            audio_formats = [
                f for f in formats
                if f.get("url") and f.get("acodec") != "none" and f.get("vcodec") in ("none", None)
            ]
            within_tier = [f for f in audio_formats if (f.get("abr") or 0) <= quality]
            candidates = within_tier or audio_formats
            if candidates:
                best = max(candidates, key=lambda f: f.get("abr") or 0)
                stream_url = best.get("url")
                abr = best.get("abr")
                ext = best.get("ext") or ext
                acodec = best.get("acodec") or acodec

        if not stream_url:
            raise ProviderInvalidResponse(
                "No audio stream URL found",
                provider=self.name,
                data={"id": info.get("id"), "title": info.get("title")},
            )

        title = info.get("title") or info.get("id") or "audio"
        return AudioPayload(
            status=True,
            download={
                "url": stream_url,
                "filename": f"{_sanitize_filename(title)}.{ext or 'm4a'}",
            },
            metadata={
                "id": info.get("id"),
                "title": info.get("title"),
                "uploader": info.get("artist") or info.get("uploader"),
                "duration": info.get("duration"),
                "thumbnail": info.get("thumbnail"),
                "abr": abr,
                "acodec": acodec,
            },
        )


VIDEO_INFO_FIELDS = (
    "id",
    "title",
    "uploader",
    "channel",
    "channel_id",
    "duration",
    "view_count",
    "upload_date",
    "thumbnail",
    "webpage_url",
)
VIDEO_INFO_CLIENTS = ("android_music", "web")


def extract_video_info(
    locator: str,
    timeout: float = DEFAULT_PROVIDER_TIMEOUT,
    player_clients: Sequence[str] = VIDEO_INFO_CLIENTS,
) -> dict:
    """
    Fetch video details with yt-dlp, trying each player client in order.

    Blocking; callers run it in a worker thread. Raises `ProviderUnavailable`
    when yt-dlp is missing and the last client's `ProviderTransientError`
    when every client fails.
    """
    last_error: Optional[ProviderTransientError] = None
    for player_client in player_clients:
        adapter = YtDlpAdapter(player_client, timeout)
        try:
            info = adapter._run_extraction(locator, adapter.build_options(None))
        except ProviderTransientError as e:
            log.warning(f"Video info via {adapter.name} failed: {e}")
            last_error = e
            continue
        return {key: info.get(key) for key in VIDEO_INFO_FIELDS}

    if last_error is None:
        raise ValueError("player_clients must not be empty")
    raise last_error


# ════════════════════════════════════════════════════════════════════
# Direct HTTP scraping APIs
# ════════════════════════════════════════════════════════════════════

def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpJsonAdapter(ProviderAdapter):
    """Shared send/validate logic for JSON scraping APIs."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        timeout: float = DEFAULT_PROVIDER_TIMEOUT,
    ):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def build_request(self, locator: str, quality: int) -> httpx.Request:
        raise NotImplementedError

    async def fetch(self, locator: str, quality: int) -> AudioPayload:
        request = self.build_request(locator, quality)
        try:
            response = await self.client.send(request, follow_redirects=True)
        except httpx.HTTPError as e:
            raise ProviderTransientError(
                f"{type(e).__name__}: {e}",
                provider=self.name,
            ) from e

        body = _response_body(response)
        if response.is_error:
            raise ProviderTransientError(
                f"{self.name} returned HTTP {response.status_code}",
                provider=self.name,
                status=response.status_code,
                data=body,
            )
        if not isinstance(body, dict):
            raise ProviderInvalidResponse(
                f"Non-JSON response from {self.name}",
                provider=self.name,
                status=response.status_code,
                data=body,
            )
        return AudioPayload.from_raw(body, self.name, status_code=response.status_code)


class VredenAdapter(HttpJsonAdapter):
    name = VREDEN

    def build_request(self, locator: str, quality: int) -> httpx.Request:
        return self.client.build_request(
            "GET",
            f"{self.base_url}/api/v1/download/youtube/audio",
            params={"url": locator, "quality": quality},
            timeout=provider_timeout(self.timeout),
        )


class SavetubeAdapter(HttpJsonAdapter):
    name = SAVETUBE

    def build_request(self, locator: str, quality: int) -> httpx.Request:
        return self.client.build_request(
            "POST",
            f"{self.base_url}/v2/info",
            json={"url": locator, "quality": quality},
            timeout=provider_timeout(self.timeout),
        )


# ════════════════════════════════════════════════════════════════════
# Registry
# ════════════════════════════════════════════════════════════════════

@dataclass
class ProviderRegistry:
    """Providers that passed the startup capability check, in order."""
    providers: list[ProviderAdapter] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)

    @property
    def names(self) -> list[str]:
        return [p.name for p in self.providers]


def build_provider_registry(
    client: httpx.AsyncClient,
    *,
    names: Optional[Sequence[str]] = None,
    timeout: float = DEFAULT_PROVIDER_TIMEOUT,
    vreden_base: str = DEFAULT_VREDEN_BASE,
    savetube_base: str = DEFAULT_SAVETUBE_BASE,
) -> ProviderRegistry:
    """
    Instantiate adapters in the configured order.

    Unknown names, duplicates and adapters whose dependency is missing are
    skipped with a warning. Availability is checked here once, not per call.
    """
    factories: dict[str, Callable[[], ProviderAdapter]] = {
        YTDLP_ANDROID_MUSIC: lambda: YtDlpAdapter("android_music", timeout),
        YTDLP_WEB: lambda: YtDlpAdapter("web", timeout),
        VREDEN: lambda: VredenAdapter(client, vreden_base, timeout),
        SAVETUBE: lambda: SavetubeAdapter(client, savetube_base, timeout),
    }

    registry = ProviderRegistry()
    seen: set[str] = set()
    for name in names if names is not None else DEFAULT_PROVIDER_ORDER:
        if name in seen:
            continue
        seen.add(name)

        factory = factories.get(name)
        if factory is None:
            log.warning("Unknown audio provider %r in configuration; ignoring", name)
            registry.skipped.append({"name": name, "reason": "unknown"})
            continue

        adapter = factory()
        if not adapter.available():
            log.warning("Audio provider %s is unavailable (missing dependency); skipping", name)
            registry.skipped.append({"name": name, "reason": "unavailable"})
            continue
        registry.providers.append(adapter)

    log.info("Audio provider order: %s", ", ".join(registry.names) or "(none)")
    return registry
