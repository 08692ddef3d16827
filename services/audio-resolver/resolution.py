"""
Audio resolution fallback engine.

Given a video URL, walks a matrix of (quality, provider) pairs and returns
the first direct audio URL a provider hands back. Quality tiers form the
outer loop and providers the inner one, so every provider is tried at the
preferred bitrate before the engine settles for a lower one.

Each pair is called through `with_retries` (serial, exponential backoff).
Provider failures never escape `AudioResolver.resolve`: they are collected
as `ProviderAttempt` diagnostics and only reported when the whole matrix
is exhausted.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Literal, Optional, Protocol, Sequence

from pydantic import BaseModel, Field, ValidationError

from common.logging_utils import log_timing, truncate_for_log

log = logging.getLogger("audio-resolver")

DEFAULT_QUALITY_ORDER = [320, 256, 128, 92]
DEFAULT_RETRY_ATTEMPTS = 2
DEFAULT_RETRY_BASE_DELAY = 0.4  # seconds

EXHAUSTED_MESSAGE = "Audio download failed for all providers/qualities."
NO_PROVIDERS_MESSAGE = "No audio providers are available on this server."
MISSING_URL_MESSAGE = "YouTube URL is required"


# ════════════════════════════════════════════════════════════════════
# Errors
# ════════════════════════════════════════════════════════════════════

class ResolverError(Exception):
    """Base class for audio resolution errors."""


class InputError(ResolverError):
    """Request rejected before any provider was called."""


class ProviderError(ResolverError):
    """A single provider call failed. Never fatal on its own."""

    kind = "provider_error"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status: Optional[int] = None,
        data: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status = status
        self.data = data
        self.attempts = 1


class ProviderUnavailable(ProviderError):
    """Optional dependency behind the provider is not installed."""

    kind = "unavailable"
    retryable = False


class ProviderTransientError(ProviderError):
    """Network error, timeout or non-2xx answer."""

    kind = "transient"


class ProviderInvalidResponse(ProviderError):
    """Provider answered, but not with a usable audio payload."""

    kind = "invalid_response"


class ExhaustionError(ResolverError):
    """No (quality, provider) pair produced audio."""

    def __init__(self, result: "ResolutionResult"):
        super().__init__(result.error or EXHAUSTED_MESSAGE)
        self.result = result


# ════════════════════════════════════════════════════════════════════
# Models
# ════════════════════════════════════════════════════════════════════

class DownloadInfo(BaseModel):
    """Direct audio location returned by a provider."""
    url: str = Field(min_length=1)
    filename: Optional[str] = None


class AudioPayload(BaseModel):
    """Tagged success payload every provider adapter normalizes to."""
    status: Literal[True]
    download: DownloadInfo
    metadata: Optional[dict[str, Any]] = None

    @classmethod
    def from_raw(
        cls,
        raw: Any,
        provider: str,
        status_code: Optional[int] = None,
    ) -> "AudioPayload":
        """Validate a raw provider answer; unknown fields are ignored."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise ProviderInvalidResponse(
                f"Invalid response from {provider}",
                provider=provider,
                status=status_code,
                data=raw,
            ) from e


class AttemptError(BaseModel):
    """Diagnostic captured for a failed provider slot."""
    kind: str
    message: str
    status: Optional[int] = None
    data: Any = None


class ProviderAttempt(BaseModel):
    """Outcome of one (quality, provider) slot, retries included."""
    provider: str
    quality: int
    outcome: Literal["success", "failure"]
    attempts: int = 1
    error: Optional[AttemptError] = None

    def as_detail(self) -> dict:
        """Flatten into the shape the HTTP failure body reports."""
        detail = {
            "provider": self.provider,
            "quality": self.quality,
            "attempts": self.attempts,
            "kind": None,
            "status": None,
            "data": None,
        }
        if self.error is not None:
            detail["kind"] = self.error.kind
            detail["status"] = self.error.status
            detail["data"] = self.error.data if self.error.data is not None else self.error.message
        return detail


class ResolutionResult(BaseModel):
    """Final answer of one resolution request."""
    success: bool
    url: Optional[str] = None
    filename: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    quality_used: Optional[int] = None
    provider_used: Optional[str] = None
    failure_details: list[ProviderAttempt] = Field(default_factory=list)
    error: Optional[str] = None

    def raise_for_failure(self) -> "ResolutionResult":
        if not self.success:
            raise ExhaustionError(self)
        return self


class AudioProvider(Protocol):
    name: str

    def available(self) -> bool: ...

    async def fetch(self, locator: str, quality: int) -> Any: ...


# ════════════════════════════════════════════════════════════════════
# Helpers
# ════════════════════════════════════════════════════════════════════

def build_quality_order(preferred_quality: Optional[int] = None) -> list[int]:
    """
    Return the tier search order.

    The preferred tier moves to the front; the rest keep the default
    descending order.
    """
    if preferred_quality is None:
        return list(DEFAULT_QUALITY_ORDER)
    if isinstance(preferred_quality, bool) or preferred_quality not in DEFAULT_QUALITY_ORDER:
        raise InputError(
            f"Unsupported quality {preferred_quality!r}; expected one of {DEFAULT_QUALITY_ORDER}"
        )
    return [preferred_quality] + [q for q in DEFAULT_QUALITY_ORDER if q != preferred_quality]


async def with_retries(
    func: Callable[[], Awaitable[Any]],
    *,
    attempts: int = DEFAULT_RETRY_ATTEMPTS,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "provider",
) -> tuple[Any, int]:
    """
    Call `func` up to `attempts` times with exponential backoff.

    Waits `base_delay * 2**i` after failed attempt `i`; there is no wait
    after the last attempt. Non-retryable provider errors are re-raised
    straight away. Returns `(value, attempts_used)`.
    """
    attempts = max(1, attempts)
    for index in range(attempts):
        try:
            return await func(), index + 1
        except ProviderError as err:
            err.attempts = index + 1
            if not err.retryable or index == attempts - 1:
                raise
            delay = base_delay * (2 ** index)
            log.warning(
                "[%s] attempt %d/%d failed: %s; retrying in %dms",
                label,
                index + 1,
                attempts,
                err,
                int(delay * 1000),
            )
            await sleep(delay)


# ════════════════════════════════════════════════════════════════════
# Engine
# ════════════════════════════════════════════════════════════════════

class AudioResolver:
    """Stateless fallback engine over a fixed, ordered provider list."""

    def __init__(
        self,
        providers: Sequence[AudioProvider],
        *,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        parallel_tiers: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._providers = list(providers)
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._parallel_tiers = parallel_tiers
        self._sleep = sleep

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self._providers]

    async def resolve(
        self,
        locator: Optional[str],
        preferred_quality: Optional[int] = None,
    ) -> ResolutionResult:
        """Resolve `locator` to a direct audio URL. Raises InputError only."""
        if locator is None or not str(locator).strip():
            raise InputError(MISSING_URL_MESSAGE)
        order = build_quality_order(preferred_quality)
        return await self._search(str(locator).strip(), order)

    @log_timing(log, "audio resolution")
    async def _search(self, locator: str, order: list[int]) -> ResolutionResult:
        if not self._providers:
            log.error("No audio providers registered; cannot resolve %s", locator)
            return ResolutionResult(success=False, error=NO_PROVIDERS_MESSAGE)

        failures: list[ProviderAttempt] = []
        for quality in order:
            if self._parallel_tiers:
                winner, tier_failures = await self._run_tier_parallel(locator, quality)
            else:
                winner, tier_failures = await self._run_tier_sequential(locator, quality)

            if winner is not None:
                attempt, payload = winner
                log.info(
                    "Resolved audio for %s via %s at %dkbps (%d attempt(s))",
                    locator,
                    attempt.provider,
                    quality,
                    attempt.attempts,
                )
                return ResolutionResult(
                    success=True,
                    url=payload.download.url,
                    filename=payload.download.filename,
                    metadata=payload.metadata,
                    quality_used=quality,
                    provider_used=attempt.provider,
                )
            failures.extend(tier_failures)

        log.error(
            "Audio resolution exhausted %d provider/quality combination(s) for %s",
            len(failures),
            locator,
        )
        return ResolutionResult(success=False, failure_details=failures, error=EXHAUSTED_MESSAGE)

    async def _run_tier_sequential(self, locator: str, quality: int):
        failures: list[ProviderAttempt] = []
        for provider in self._providers:
            attempt, payload = await self._run_slot(provider, locator, quality)
            if payload is not None:
                return (attempt, payload), failures
            failures.append(attempt)
        return None, failures

    async def _run_tier_parallel(self, locator: str, quality: int):
        """
        Run every provider of one tier concurrently.

        The first valid success by completion time wins. Everything still
        in flight is cancelled and awaited before returning.
        """
        tasks = {
            asyncio.create_task(self._run_slot(provider, locator, quality)): index
            for index, provider in enumerate(self._providers)
        }
        failures: dict[int, ProviderAttempt] = {}
        winner = None
        pending = set(tasks)
        try:
            while pending and winner is None:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=tasks.__getitem__):
                    attempt, payload = task.result()
                    if payload is not None and winner is None:
                        winner = (attempt, payload)
                    elif payload is None:
                        failures[tasks[task]] = attempt
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return winner, [failures[index] for index in sorted(failures)]

    async def _run_slot(
        self,
        provider: AudioProvider,
        locator: str,
        quality: int,
    ) -> tuple[ProviderAttempt, Optional[AudioPayload]]:
        """Call one provider at one quality, retries included."""
        name = provider.name
        try:
            payload, used = await with_retries(
                lambda: self._fetch_validated(provider, locator, quality),
                attempts=self._retry_attempts,
                base_delay=self._retry_base_delay,
                sleep=self._sleep,
                label=f"{name}@{quality}",
            )
        except ProviderError as err:
            log.warning(
                "[%s] failed at %dkbps (kind=%s, status=%s): %s",
                name,
                quality,
                err.kind,
                err.status,
                truncate_for_log(err.data if err.data is not None else err.message),
            )
            attempt = ProviderAttempt(
                provider=name,
                quality=quality,
                outcome="failure",
                attempts=err.attempts,
                error=AttemptError(
                    kind=err.kind,
                    message=err.message,
                    status=err.status,
                    data=err.data,
                ),
            )
            return attempt, None

        return ProviderAttempt(provider=name, quality=quality, outcome="success", attempts=used), payload

    async def _fetch_validated(self, provider: AudioProvider, locator: str, quality: int) -> AudioPayload:
        try:
            raw = await provider.fetch(locator, quality)
        except ProviderError as err:
            err.provider = err.provider or provider.name
            raise
        except Exception as e:
            # Adapter bugs count as a failed call, never as a crash.
            raise ProviderTransientError(
                f"{type(e).__name__}: {e}",
                provider=provider.name,
            ) from e
        return AudioPayload.from_raw(raw, provider.name)
