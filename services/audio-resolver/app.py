"""
Audio Resolver: FastAPI sidecar for the music client.

Turns a YouTube video URL into a direct, downloadable audio URL by walking
a fallback chain of (quality, provider) pairs. Providers are `yt-dlp`
(optional, in-process) and third-party scraping APIs reached over HTTP.

The mobile client calls `POST /resolve-audio` (or the legacy `POST /a-dl`)
with `{url, quality?}` on port 4000. `GET /video-info?url=` returns basic
video details when yt-dlp is installed.
"""

import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

SERVICES_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICES_ROOT) not in sys.path:
    sys.path.append(str(SERVICES_ROOT))

from common.logging_utils import configure_service_logger
from common.sidecar_runtime_utils import (
    build_provider_client,
    env_bool,
    env_float,
    env_int,
    env_list,
)
from providers import (
    DEFAULT_PROVIDER_ORDER,
    DEFAULT_SAVETUBE_BASE,
    DEFAULT_VREDEN_BASE,
    USER_AGENT,
    ProviderRegistry,
    build_provider_registry,
    extract_video_info,
    ytdlp_installed,
)
from resolution import (
    AudioResolver,
    ExhaustionError,
    InputError,
    ProviderTransientError,
    ProviderUnavailable,
)

# ── Logging ─────────────────────────────────────────────────────────
log = configure_service_logger("audio-resolver")

# ── FastAPI app ─────────────────────────────────────────────────────
app = FastAPI(title="Audio Resolver", version="1.0.0")

# ════════════════════════════════════════════════════════════════════
# Configuration
# ════════════════════════════════════════════════════════════════════

PORT = env_int("PORT", "4000")

# Attempts per (quality, provider) pair and the backoff base in seconds.
# Delay after failed attempt i is base * 2**i.
RETRY_ATTEMPTS = env_int("RESOLVER_RETRY_ATTEMPTS", "2")
RETRY_BASE_DELAY = env_float("RESOLVER_RETRY_BASE_DELAY", "0.4")

# Upper bound for a single outbound provider call, independent of retries.
PROVIDER_TIMEOUT = env_float("PROVIDER_TIMEOUT", "8")

# Run all providers of one tier concurrently instead of one by one.
PARALLEL_TIERS = env_bool("RESOLVER_PARALLEL_TIERS", False)

AUDIO_PROVIDERS = env_list("AUDIO_PROVIDERS", DEFAULT_PROVIDER_ORDER)
VREDEN_API_BASE = os.getenv("VREDEN_API_BASE", DEFAULT_VREDEN_BASE)
SAVETUBE_API_BASE = os.getenv("SAVETUBE_API_BASE", DEFAULT_SAVETUBE_BASE)
CORS_ALLOW_ORIGINS = env_list("CORS_ALLOW_ORIGINS", ["*"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Engine state (built once at startup) ────────────────────────────
_http_client: Optional[httpx.AsyncClient] = None
_registry: Optional[ProviderRegistry] = None
_resolver: Optional[AudioResolver] = None


# ════════════════════════════════════════════════════════════════════
# Models
# ════════════════════════════════════════════════════════════════════

class ResolveAudioRequest(BaseModel):
    """Payload for audio URL resolution."""
    url: Optional[str] = None
    quality: Optional[int] = None


# ════════════════════════════════════════════════════════════════════
# Helpers
# ════════════════════════════════════════════════════════════════════

def _error_response(status_code: int, error: str, details: Any = None) -> JSONResponse:
    content = {"status": False, "error": error}
    if details is not None:
        content["details"] = jsonable_encoder(details)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(InputError)
async def _input_error_handler(request: Request, exc: InputError):
    log.info(f"Rejected {request.url.path} request: {exc}")
    return _error_response(400, str(exc))


@app.exception_handler(ExhaustionError)
async def _exhaustion_error_handler(request: Request, exc: ExhaustionError):
    details = [attempt.as_detail() for attempt in exc.result.failure_details]
    return _error_response(500, str(exc), details)


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    return _error_response(400, "Invalid request body", exc.errors())


@app.middleware("http")
async def _log_requests(request: Request, call_next):
    log.info(f"{request.method} {request.url.path} - params: {dict(request.query_params)}")
    return await call_next(request)


# ════════════════════════════════════════════════════════════════════
# Routes
# ════════════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "audio-resolver",
        "providers": _resolver.provider_names if _resolver else [],
    }


@app.get("/providers")
async def list_providers():
    """Report the provider order chosen at startup and what was skipped."""
    return {
        "order": _resolver.provider_names if _resolver else [],
        "skipped": _registry.skipped if _registry else [],
        "retry_attempts": RETRY_ATTEMPTS,
        "retry_base_delay": RETRY_BASE_DELAY,
        "timeout": PROVIDER_TIMEOUT,
        "parallel_tiers": PARALLEL_TIERS,
    }


@app.post("/resolve-audio")
@app.post("/a-dl")
async def resolve_audio(req: ResolveAudioRequest):
    """Resolve a video URL to a direct audio URL via the provider fallback chain."""
    if _resolver is None:
        return _error_response(503, "Audio resolver is not initialised")

    result = await _resolver.resolve(req.url, req.quality)
    result.raise_for_failure()
    return {
        "status": True,
        "url": result.url,
        "filename": result.filename,
        "metadata": result.metadata,
        "quality": result.quality_used,
        "provider": result.provider_used,
    }


@app.get("/video-info")
async def video_info(url: Optional[str] = None):
    """Return basic video details (title, uploader, duration, ...) via yt-dlp."""
    if not url or not url.strip():
        return _error_response(400, "url required")
    if not ytdlp_installed():
        return _error_response(503, "Video info requires yt-dlp, which is not installed")

    try:
        info = await asyncio.to_thread(extract_video_info, url.strip(), PROVIDER_TIMEOUT)
    except ProviderUnavailable as e:
        return _error_response(503, str(e))
    except ProviderTransientError as e:
        log.warning(f"Video info failed for {url}: {e}")
        return _error_response(500, "video-info failed", str(e))
    return {"info": info}


# ── Lifecycle ───────────────────────────────────────────────────────

@app.on_event("startup")
async def startup():
    global _http_client, _registry, _resolver

    log.info("Audio resolver starting up")
    log.info(
        f"Resolver config: retry_attempts={RETRY_ATTEMPTS}, "
        f"retry_base_delay={RETRY_BASE_DELAY}s, "
        f"provider_timeout={PROVIDER_TIMEOUT}s, "
        f"parallel_tiers={PARALLEL_TIERS}"
    )

    _http_client = build_provider_client(PROVIDER_TIMEOUT, user_agent=USER_AGENT)
    _registry = build_provider_registry(
        _http_client,
        names=AUDIO_PROVIDERS,
        timeout=PROVIDER_TIMEOUT,
        vreden_base=VREDEN_API_BASE,
        savetube_base=SAVETUBE_API_BASE,
    )
    _resolver = AudioResolver(
        _registry.providers,
        retry_attempts=RETRY_ATTEMPTS,
        retry_base_delay=RETRY_BASE_DELAY,
        parallel_tiers=PARALLEL_TIERS,
    )

    if not _registry.providers:
        log.error("No audio providers available; every resolution request will fail")


@app.on_event("shutdown")
async def shutdown():
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
    log.info("Audio resolver shutting down")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
