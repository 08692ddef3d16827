from typing import Any, Callable

import pytest

VIDEO_URL = "https://www.youtube.com/watch?v=abc"


class FakeProvider:
    """Provider double: `behavior(quality, call_number)` returns a payload or an exception."""

    def __init__(self, name: str, behavior: Callable[[int, int], Any]):
        self.name = name
        self._behavior = behavior
        self.calls: list[tuple[str, int]] = []

    def available(self) -> bool:
        return True

    async def fetch(self, locator: str, quality: int) -> Any:
        self.calls.append((locator, quality))
        outcome = self._behavior(quality, len(self.calls))
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def success_payload(url: str = "https://cdn.example/audio.mp3", **metadata: Any) -> dict:
    return {
        "status": True,
        "download": {"url": url, "filename": "audio.mp3"},
        "metadata": metadata or {"title": "Test Song"},
    }


@pytest.fixture
def video_url() -> str:
    return VIDEO_URL


@pytest.fixture
def make_provider():
    return FakeProvider


@pytest.fixture
def payload():
    return success_payload


@pytest.fixture
def sleeps():
    """Records backoff delays instead of waiting."""
    recorded: list[float] = []

    async def fake_sleep(delay: float) -> None:
        recorded.append(delay)

    fake_sleep.recorded = recorded
    return fake_sleep
